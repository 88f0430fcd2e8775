"""
Shared fixtures: a manual clock, an in-memory RPC node and a scripted pool reader.
"""
import asyncio
import time
from types import SimpleNamespace

import jwt
import pytest

from expiring_cache import PoolCache
from models import FetchResult, HealthState, PoolKind, PoolSnapshot
from pool_reader import ChainStateReader, PoolRecord, PoolRegistry, encode_pool_state
from pool_watchdog import PoolWatchdog
from settings import Settings

JWT_SECRET = "test-jwt-secret-with-enough-length"
ADMIN_KEY = "test-admin-key"


def make_token(sub: str = "alice", secret: str = JWT_SECRET, audience: str = "authenticated",
               expires_in: float = 3600, email: str = "alice@example.com") -> str:
    claims = {"sub": sub, "email": email, "aud": audience, "exp": int(time.time() + expires_in)}
    return jwt.encode(claims, secret, algorithm="HS256")


class ManualClock:
    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeRpcClient:
    """Mimics the AsyncClient calls the reader and writer make."""

    def __init__(self):
        self.accounts = {}
        self.balances = {}
        self.supplies = {}
        self.airdrops = []
        self.error = None
        self.hang = False
        self.calls = []

    def put_account(self, address: str, data: bytes = b""):
        self.accounts[str(address)] = data

    async def _maybe_fail(self):
        if self.hang:
            await asyncio.sleep(3600)
        if self.error is not None:
            raise self.error

    async def get_account_info(self, pubkey, commitment=None):
        self.calls.append(("get_account_info", str(pubkey)))
        await self._maybe_fail()
        data = self.accounts.get(str(pubkey))
        if data is None:
            return SimpleNamespace(value=None)
        return SimpleNamespace(value=SimpleNamespace(data=data))

    async def get_token_account_balance(self, pubkey, commitment=None):
        self.calls.append(("get_token_account_balance", str(pubkey)))
        await self._maybe_fail()
        amount = self.balances.get(str(pubkey), 0)
        return SimpleNamespace(value=SimpleNamespace(amount=str(amount)))

    async def get_token_supply(self, pubkey, commitment=None):
        self.calls.append(("get_token_supply", str(pubkey)))
        await self._maybe_fail()
        amount = self.supplies.get(str(pubkey), 0)
        return SimpleNamespace(value=SimpleNamespace(amount=str(amount)))

    async def request_airdrop(self, pubkey, lamports, commitment=None):
        self.calls.append(("request_airdrop", str(pubkey)))
        await self._maybe_fail()
        self.airdrops.append((str(pubkey), lamports))
        return SimpleNamespace(value="airdrop-signature")


def install_pool(client: FakeRpcClient, registry: PoolRegistry, name: str,
                 reserve_a: int = 1_000_000, reserve_b: int = 2_000_000,
                 with_vault_a: bool = True, with_vault_b: bool = True):
    identity = registry.get(name)
    addresses = registry.addresses(name)
    record = PoolRecord(
        token_a=identity.token_a,
        token_b=identity.token_b,
        lp_mint=addresses.lp_mint,
        fee_rate=identity.kind.fee_rate,
        kind=identity.kind,
        bump=255,
    )
    client.put_account(addresses.pool_state, encode_pool_state(record))
    if with_vault_a:
        client.put_account(addresses.vault_a, b"\x00" * 165)
        client.balances[addresses.vault_a] = reserve_a
    if with_vault_b:
        client.put_account(addresses.vault_b, b"\x00" * 165)
        client.balances[addresses.vault_b] = reserve_b


def make_snapshot(name: str, reserve_a: int = 100, reserve_b: int = 200,
                  captured_at: float = 1_000.0) -> PoolSnapshot:
    return PoolSnapshot(
        pool_name=name,
        kind=PoolKind.STANDARD,
        token_a="A" * 32,
        token_b="B" * 32,
        lp_mint="L" * 32,
        fee_rate=300,
        reserve_a=reserve_a,
        reserve_b=reserve_b,
        pool_state_address="S" * 32,
        vault_a_address="VA" * 16,
        vault_b_address="VB" * 16,
        captured_at=captured_at,
    )


class ScriptedReader:
    """
    Stand-in for ChainStateReader. Each pool answers with its scripted mode:
    'ok', 'not_found', 'transient' or 'raise'.
    """

    def __init__(self, registry: PoolRegistry):
        self.registry = registry
        self.modes = {name: "ok" for name in registry.names}
        self.calls = []
        self.reserve = 100

    def set_all(self, mode: str):
        for name in self.modes:
            self.modes[name] = mode

    async def fetch_pool(self, pool_name: str) -> FetchResult:
        self.registry.get(pool_name)
        self.calls.append(pool_name)
        await asyncio.sleep(0)
        mode = self.modes[pool_name]
        if mode == "ok":
            return FetchResult.ok(make_snapshot(pool_name, reserve_a=self.reserve))
        if mode == "not_found":
            return FetchResult.not_found(pool_name)
        if mode == "raise":
            raise RuntimeError("reader blew up")
        return FetchResult.transient(pool_name, "timeout")


@pytest.fixture
def settings():
    return Settings(start_background_tasks=False, audit_log_path=None,
                    jwt_secret=JWT_SECRET, admin_api_key=ADMIN_KEY)


@pytest.fixture
def registry(settings):
    return PoolRegistry.from_settings(settings)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def cache(clock):
    return PoolCache(pool_ttl=5.0, clock=clock)


@pytest.fixture
def rpc():
    return FakeRpcClient()


@pytest.fixture
def chain_reader(rpc, registry):
    return ChainStateReader(rpc, registry, timeout=0.05)


@pytest.fixture
def scripted_reader(registry):
    return ScriptedReader(registry)


class RecordingAudit:
    def __init__(self):
        self.events = []

    def record(self, event, failure_count, locked, down, detail=""):
        self.events.append((event, failure_count, locked, down))


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def watchdog(scripted_reader, cache, registry, audit):
    return PoolWatchdog(scripted_reader, cache, registry, health=HealthState(),
                        lock_threshold=3, down_threshold=20, poll_interval=3.0, audit=audit)
