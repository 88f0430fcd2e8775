# pool_reader.py
import asyncio
import logging
import struct
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Tuple

from solders.pubkey import Pubkey
from solana.rpc.commitment import Confirmed

from models import (
    FetchResult,
    PoolAddresses,
    PoolIdentity,
    PoolKind,
    PoolSnapshot,
    TransientUpstreamError,
    UnknownPoolError,
)

logger = logging.getLogger(__name__)

# Seed scheme v1. Must match the seeds declared by the on-chain program.
SEED_SCHEME_VERSION = 1
POOL_SEED = b"pool"
AUTHORITY_SEED = b"pool_authority"
VAULT_A_SEED = b"vault_a"
VAULT_B_SEED = b"vault_b"
LP_MINT_SEED = b"lp_mint"

# Anchor account discriminator for PoolState
POOL_STATE_DISCRIMINATOR = bytes([247, 237, 227, 245, 215, 195, 222, 70])
# discriminator + token_a + token_b + lp_mint + fee_rate + pool_type + bump
POOL_STATE_SIZE = 8 + 32 + 32 + 32 + 4 + 1 + 1


@dataclass(frozen=True, slots=True)
class PoolRecord:
    token_a: str
    token_b: str
    lp_mint: str
    fee_rate: int
    kind: PoolKind
    bump: int


def _pda(seed: bytes, mint_a: Pubkey, mint_b: Pubkey, program_id: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address([seed, bytes(mint_a), bytes(mint_b)], program_id)
    return address


def derive_pool_addresses(token_a: str, token_b: str, program_id: str) -> PoolAddresses:
    """Derive every program address of a pool from its mints, in initialization order"""
    mint_a = Pubkey.from_string(token_a)
    mint_b = Pubkey.from_string(token_b)
    program = Pubkey.from_string(program_id)
    return PoolAddresses(
        pool_state=str(_pda(POOL_SEED, mint_a, mint_b, program)),
        authority=str(_pda(AUTHORITY_SEED, mint_a, mint_b, program)),
        vault_a=str(_pda(VAULT_A_SEED, mint_a, mint_b, program)),
        vault_b=str(_pda(VAULT_B_SEED, mint_a, mint_b, program)),
        lp_mint=str(_pda(LP_MINT_SEED, mint_a, mint_b, program)),
    )


def decode_pool_state(data: bytes) -> PoolRecord:
    """Decode the raw PoolState account. Raises TransientUpstreamError on anything unexpected."""
    data = bytes(data)
    if len(data) < POOL_STATE_SIZE:
        raise TransientUpstreamError(f"Pool state account too short: {len(data)} bytes")
    if data[:8] != POOL_STATE_DISCRIMINATOR:
        raise TransientUpstreamError("Pool state account has an unexpected discriminator")

    token_a = Pubkey(data[8:40])
    token_b = Pubkey(data[40:72])
    lp_mint = Pubkey(data[72:104])
    fee_rate, pool_type, bump = struct.unpack_from('<IBB', data, 104)
    try:
        kind = PoolKind(pool_type)
    except ValueError:
        raise TransientUpstreamError(f"Pool state has unknown pool type {pool_type}")

    return PoolRecord(
        token_a=str(token_a),
        token_b=str(token_b),
        lp_mint=str(lp_mint),
        fee_rate=fee_rate,
        kind=kind,
        bump=bump,
    )


def encode_pool_state(record: PoolRecord) -> bytes:
    """Inverse of decode_pool_state, used to build fixtures and local validators"""
    return (
        POOL_STATE_DISCRIMINATOR
        + bytes(Pubkey.from_string(record.token_a))
        + bytes(Pubkey.from_string(record.token_b))
        + bytes(Pubkey.from_string(record.lp_mint))
        + struct.pack('<IBB', record.fee_rate, int(record.kind), record.bump)
    )


class PoolRegistry:
    """Configured pools by name. At most one pool per unordered mint pair."""

    def __init__(self, identities: List[PoolIdentity]):
        self._by_name: Dict[str, PoolIdentity] = {}
        self._addresses: Dict[str, PoolAddresses] = {}
        pairs: Dict[frozenset, str] = {}
        for identity in identities:
            if identity.name in self._by_name:
                raise ValueError(f"Duplicate pool name: {identity.name}")
            if identity.pair in pairs:
                raise ValueError(f"Pools {pairs[identity.pair]} and {identity.name} trade the same mint pair")
            pairs[identity.pair] = identity.name
            self._by_name[identity.name] = identity
            self._addresses[identity.name] = derive_pool_addresses(
                identity.token_a, identity.token_b, identity.program_id
            )

    @classmethod
    def from_settings(cls, settings) -> "PoolRegistry":
        identities = []
        for name, pool in settings.pools.items():
            identities.append(PoolIdentity(
                name=name,
                token_a=settings.tokens[pool['token_a']]['mint'],
                token_b=settings.tokens[pool['token_b']]['mint'],
                kind=pool['kind'],
                program_id=settings.program_id,
            ))
        return cls(identities)

    def get(self, pool_name: str) -> PoolIdentity:
        identity = self._by_name.get(pool_name)
        if identity is None:
            raise UnknownPoolError(pool_name)
        return identity

    def addresses(self, pool_name: str) -> PoolAddresses:
        self.get(pool_name)
        return self._addresses[pool_name]

    def __contains__(self, pool_name: str) -> bool:
        return pool_name in self._by_name

    def __iter__(self) -> Iterator[PoolIdentity]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    @property
    def names(self) -> List[str]:
        return list(self._by_name.keys())


class ChainStateReader:
    """
    Reads one pool's authoritative state from the RPC node.
    Every failure comes back as a FetchResult; only an unknown pool name raises.
    """
    def __init__(self, client, registry: PoolRegistry, timeout: float = 2.0,
                 clock: Callable[[], float] = time.time):
        self.client = client
        self.registry = registry
        self.timeout = timeout
        self._clock = clock

    async def fetch_pool(self, pool_name: str) -> FetchResult:
        identity = self.registry.get(pool_name)
        try:
            return await asyncio.wait_for(self._fetch(identity), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Timed out after {self.timeout}s reading {pool_name}")
            return FetchResult.transient(pool_name, f"timeout after {self.timeout}s")
        except TransientUpstreamError as e:
            logger.warning(f"Upstream error reading {pool_name}: {e}")
            return FetchResult.transient(pool_name, str(e))
        except Exception as e:
            logger.warning(f"Unexpected error reading {pool_name}: {e!r}")
            return FetchResult.transient(pool_name, repr(e))

    async def _fetch(self, identity: PoolIdentity) -> FetchResult:
        addresses = self.registry.addresses(identity.name)
        pool_state = Pubkey.from_string(addresses.pool_state)

        info = await self.client.get_account_info(pool_state, commitment=Confirmed)
        if info is None or info.value is None:
            logger.debug(f"Pool state account does not exist yet: {addresses.pool_state} ({identity.name})")
            return FetchResult.not_found(identity.name, f"pool state account {addresses.pool_state} not found")

        record = decode_pool_state(info.value.data)
        if (record.token_a, record.token_b) != (identity.token_a, identity.token_b):
            raise TransientUpstreamError(
                f"Pool record mints {record.token_a}/{record.token_b} do not match {identity.name}"
            )

        reserve_a, missing_a = await self._vault_balance(addresses.vault_a)
        reserve_b, missing_b = await self._vault_balance(addresses.vault_b)

        snapshot = PoolSnapshot(
            pool_name=identity.name,
            kind=record.kind,
            token_a=record.token_a,
            token_b=record.token_b,
            lp_mint=record.lp_mint,
            fee_rate=record.fee_rate,
            reserve_a=reserve_a,
            reserve_b=reserve_b,
            pool_state_address=addresses.pool_state,
            vault_a_address=addresses.vault_a,
            vault_b_address=addresses.vault_b,
            captured_at=self._clock(),
            vault_a_missing=missing_a,
            vault_b_missing=missing_b,
        )
        return FetchResult.ok(snapshot)

    async def _vault_balance(self, vault_address: str) -> Tuple[int, bool]:
        """Returns (raw amount, missing). A vault that does not exist reads as zero."""
        vault = Pubkey.from_string(vault_address)
        info = await self.client.get_account_info(vault, commitment=Confirmed)
        if info is None or info.value is None:
            logger.debug(f"Vault account does not exist: {vault_address}")
            return 0, True

        balance = await self.client.get_token_account_balance(vault, commitment=Confirmed)
        try:
            return int(balance.value.amount), False
        except (AttributeError, TypeError, ValueError) as e:
            raise TransientUpstreamError(f"Malformed balance for vault {vault_address}: {e}")


def snapshots_as_dict(snapshots: Dict[str, PoolSnapshot]) -> Dict[str, dict]:
    return {name: snapshot.to_dict() for name, snapshot in snapshots.items()}
