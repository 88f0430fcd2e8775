# models.py
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Optional


class PoolWatchError(Exception):
    """Base class for errors raised by the pool relay"""


class ConfigError(PoolWatchError):
    """Deployment/configuration defect. Always raised, never converted to health state."""


class UnknownPoolError(PoolWatchError):
    """A pool name or mint pair that is not configured was requested"""

    def __init__(self, pool: str):
        super().__init__(f"Unknown pool: {pool}")
        self.pool = pool


class TransientUpstreamError(PoolWatchError):
    """Timeout, RPC failure or undecodable account data"""


class TransactionRejected(PoolWatchError):
    """A write request refused before reaching the chain. The message is shown to the user."""

    def __init__(self, reason: str, code: str = "rejected"):
        super().__init__(reason)
        self.reason = reason
        self.code = code


class PoolKind(IntEnum):
    """Pool type tag stored in the on-chain pool record"""
    STANDARD = 0
    STABLE = 1
    CONCENTRATED = 2

    @property
    def fee_rate(self) -> int:
        return {PoolKind.STANDARD: 300, PoolKind.STABLE: 50, PoolKind.CONCENTRATED: 500}[self]

    @property
    def label(self) -> str:
        return self.name.capitalize()


@dataclass(frozen=True, slots=True)
class PoolIdentity:
    """
    Stable key for one pool. token_a/token_b are kept in the order the pool was
    initialized with, since every address derivation depends on that order.
    """
    name: str
    token_a: str
    token_b: str
    kind: PoolKind
    program_id: str

    @property
    def pair(self) -> frozenset:
        return frozenset((self.token_a, self.token_b))


@dataclass(frozen=True, slots=True)
class PoolAddresses:
    pool_state: str
    authority: str
    vault_a: str
    vault_b: str
    lp_mint: str


@dataclass(frozen=True, slots=True)
class PoolSnapshot:
    """
    Authoritative state of one pool at capture time.
    A new fetch produces a new snapshot; snapshots are never mutated.
    """
    pool_name: str
    kind: PoolKind
    token_a: str
    token_b: str
    lp_mint: str
    fee_rate: int
    reserve_a: int
    reserve_b: int
    pool_state_address: str
    vault_a_address: str
    vault_b_address: str
    captured_at: float
    vault_a_missing: bool = False
    vault_b_missing: bool = False

    @property
    def has_complete_reserves(self) -> bool:
        # Share math must not trust a zero that stands in for a missing vault
        return not (self.vault_a_missing or self.vault_b_missing)

    def to_dict(self) -> dict:
        return {
            "poolType": self.pool_name,
            "poolTypeNum": int(self.kind),
            "poolKind": self.kind.label,
            "tokenA": self.token_a,
            "tokenB": self.token_b,
            "lpMint": self.lp_mint,
            "feeRate": self.fee_rate,
            "vaultABalance": self.reserve_a,
            "vaultBBalance": self.reserve_b,
            "vaultAMissing": self.vault_a_missing,
            "vaultBMissing": self.vault_b_missing,
            "vaultAAddress": self.vault_a_address,
            "vaultBAddress": self.vault_b_address,
            "poolStateAddress": self.pool_state_address,
            "lastUpdated": int(self.captured_at * 1000),
        }


class FetchStatus(Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of reading one pool. Only TRANSIENT counts against upstream health."""
    pool_name: str
    status: FetchStatus
    snapshot: Optional[PoolSnapshot] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, snapshot: PoolSnapshot) -> "FetchResult":
        return cls(snapshot.pool_name, FetchStatus.OK, snapshot=snapshot)

    @classmethod
    def not_found(cls, pool_name: str, detail: str = None) -> "FetchResult":
        return cls(pool_name, FetchStatus.NOT_FOUND, error=detail)

    @classmethod
    def transient(cls, pool_name: str, detail: str) -> "FetchResult":
        return cls(pool_name, FetchStatus.TRANSIENT, error=detail)


class HealthLevel(Enum):
    UP = "up"
    UNSTABLE = "unstable"
    DOWN = "down"


@dataclass
class HealthState:
    """
    Process-wide upstream health. Written only by the pool watchdog.
    Never persisted: a restart begins all-clear.
    """
    failure_count: int = 0
    locked: bool = False
    down: bool = False

    @property
    def level(self) -> HealthLevel:
        if self.down:
            return HealthLevel.DOWN
        if self.locked:
            return HealthLevel.UNSTABLE
        return HealthLevel.UP

    def clear(self) -> None:
        self.failure_count = 0
        self.locked = False
        self.down = False
