# Runtime configuration for the pool relay backend

import os
from dataclasses import dataclass, field
from typing import Dict, Optional

from dotenv import load_dotenv
from solders.pubkey import Pubkey

from models import ConfigError, PoolKind

# Load environment variables
load_dotenv()

# Solana devnet RPC
DEFAULT_RPC_URL = 'https://api.devnet.solana.com'

# AMM program deployed on devnet
DEFAULT_PROGRAM_ID = '6xHiHJTYYHGiqX3jz65pmK6XXALQB8uESRJ72Ze29ZnD'

# Test tokens minted by the devnet setup script
TOKENS = {
    "NTD": {"mint": os.getenv('NTD_MINT', 'EzuizPB11ShdvPgLsfXKf1U6TXxTpAbiCMBzaJyjkE7u'), "decimals": 6},
    "USD": {"mint": os.getenv('USD_MINT', '5ru1xrqJtfcJfr2uEr4yr9q39RWiLUX6zaWy7PnbtR6A'), "decimals": 6},
    "YEN": {"mint": os.getenv('YEN_MINT', '9qp6x7Y7miKUVgfQk4fy8yTwJcvSr8X6fzbxvHaJFGx5'), "decimals": 6},
}

# Pools watched by the backend. Token order is the order used at initialize_pool time.
POOL_DEFINITIONS = {
    "NTD-USD": {"token_a": "NTD", "token_b": "USD", "kind": PoolKind.STABLE},
    "USD-YEN": {"token_a": "USD", "token_b": "YEN", "kind": PoolKind.STANDARD},
    "NTD-YEN": {"token_a": "NTD", "token_b": "YEN", "kind": PoolKind.CONCENTRATED},
}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Settings:
    rpc_url: str = DEFAULT_RPC_URL
    program_id: str = DEFAULT_PROGRAM_ID
    poll_interval: float = 3.0
    broadcast_interval: float = 3.0
    cache_ttl: float = 5.0
    fetch_timeout: float = 2.0
    lock_threshold: int = 3
    down_threshold: int = 20
    database_url: Optional[str] = None
    log_level: str = 'INFO'
    environment: str = 'development'
    audit_log_path: Optional[str] = 'logs/health_audit.csv'
    frontend_url: str = 'http://localhost:3000'
    port: int = 3001
    safe_mode: bool = True
    start_background_tasks: bool = True
    jwt_secret: Optional[str] = None
    jwt_audience: str = 'authenticated'
    admin_api_key: Optional[str] = None
    airdrop_sol: float = 1.0
    tokens: Dict[str, dict] = field(default_factory=lambda: {k: dict(v) for k, v in TOKENS.items()})
    pools: Dict[str, dict] = field(default_factory=lambda: {k: dict(v) for k, v in POOL_DEFINITIONS.items()})

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from the process environment (after .env is loaded)"""
        settings = cls(
            rpc_url=os.getenv('SOLANA_RPC_URL', DEFAULT_RPC_URL),
            program_id=os.getenv('SOLANA_PROGRAM_ID', DEFAULT_PROGRAM_ID),
            poll_interval=_env_float('POOL_POLL_INTERVAL_SECONDS', 3.0),
            broadcast_interval=_env_float('BROADCAST_INTERVAL_SECONDS', 3.0),
            cache_ttl=_env_float('POOL_CACHE_TTL_SECONDS', 5.0),
            fetch_timeout=_env_float('POOL_FETCH_TIMEOUT_SECONDS', 2.0),
            lock_threshold=_env_int('MAX_FAILURES', 3),
            down_threshold=_env_int('MAX_DOWNTIME', 20),
            database_url=os.getenv('DATABASE_URL') or None,
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            environment=os.getenv('APP_ENV', 'development').lower(),
            audit_log_path=os.getenv('AUDIT_LOG_PATH', 'logs/health_audit.csv') or None,
            frontend_url=os.getenv('FRONTEND_URL', 'http://localhost:3000'),
            port=_env_int('PORT', 3001),
            safe_mode=_env_bool('SAFE_MODE', True),
            start_background_tasks=_env_bool('START_BACKGROUND_TASKS', True),
            jwt_secret=os.getenv('SUPABASE_JWT_SECRET') or None,
            jwt_audience=os.getenv('JWT_AUDIENCE', 'authenticated'),
            admin_api_key=os.getenv('ADMIN_API_KEY') or None,
            airdrop_sol=_env_float('NEW_WALLET_AIRDROP_SOL', 1.0),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Reject deployments that would silently watch the wrong accounts or never trip the breaker"""
        _parse_pubkey('SOLANA_PROGRAM_ID', self.program_id)

        for symbol, token in self.tokens.items():
            _parse_pubkey(f"{symbol} mint", token['mint'])
            if not 0 <= int(token['decimals']) <= 18:
                raise ConfigError(f"{symbol} decimals out of range: {token['decimals']}")

        if not self.pools:
            raise ConfigError("At least one pool must be configured")
        for name, pool in self.pools.items():
            for side in ('token_a', 'token_b'):
                if pool[side] not in self.tokens:
                    raise ConfigError(f"Pool {name} references unknown token {pool[side]}")
            if pool['token_a'] == pool['token_b']:
                raise ConfigError(f"Pool {name} uses the same token on both sides")
            if not isinstance(pool['kind'], PoolKind):
                raise ConfigError(f"Pool {name} has invalid kind {pool['kind']!r}")

        if self.lock_threshold < 1:
            raise ConfigError("MAX_FAILURES must be at least 1")
        if self.down_threshold <= self.lock_threshold:
            raise ConfigError("MAX_DOWNTIME must be greater than MAX_FAILURES")
        if self.poll_interval <= 0 or self.broadcast_interval <= 0:
            raise ConfigError("Polling and broadcast intervals must be positive")
        if self.broadcast_interval > self.poll_interval:
            raise ConfigError("Broadcast interval cannot be slower than the polling interval")
        if self.cache_ttl < self.poll_interval:
            raise ConfigError("Pool cache TTL must cover at least one polling interval")
        if not 0 < self.fetch_timeout < self.poll_interval:
            raise ConfigError("Fetch timeout must be positive and shorter than the polling interval")
        if self.airdrop_sol < 0:
            raise ConfigError("NEW_WALLET_AIRDROP_SOL cannot be negative")
        if self.environment == 'production' and not self.jwt_secret:
            raise ConfigError("SUPABASE_JWT_SECRET is required in production")


def _parse_pubkey(label: str, value: str) -> Pubkey:
    try:
        return Pubkey.from_string(value)
    except Exception as e:
        raise ConfigError(f"Invalid {label}: {value!r} ({e})")
