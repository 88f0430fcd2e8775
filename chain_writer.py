# chain_writer.py
import logging
import struct
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import List, Optional

from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction
from solana.rpc.commitment import Confirmed, Finalized
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import create_associated_token_account, get_associated_token_address

from models import PoolIdentity
from pool_reader import PoolRegistry

logger = logging.getLogger(__name__)

# Anchor instruction discriminators from the program IDL
SWAP_DISCRIMINATOR = bytes([248, 198, 158, 145, 225, 117, 135, 200])
ADD_LIQUIDITY_DISCRIMINATOR = bytes([181, 157, 89, 67, 143, 182, 52, 72])
REMOVE_LIQUIDITY_DISCRIMINATOR = bytes([80, 85, 209, 72, 24, 206, 177, 108])

LP_DECIMALS = 6
U64_MAX = 2 ** 64 - 1


@dataclass(frozen=True, slots=True)
class TxResult:
    success: bool
    signature: Optional[str] = None
    error: Optional[str] = None


def to_raw_amount(amount: float, decimals: int) -> int:
    """UI amount to raw u64 units, rounding down like the frontend does"""
    raw = (Decimal(str(amount)) * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN)
    raw = int(raw)
    if raw < 0 or raw > U64_MAX:
        raise ValueError(f"Amount {amount} does not fit in u64 at {decimals} decimals")
    return raw


def swap_data(amount_in: int, minimum_amount_out: int, a_to_b: bool) -> bytes:
    return SWAP_DISCRIMINATOR + struct.pack('<QQ?', amount_in, minimum_amount_out, a_to_b)


def add_liquidity_data(amount_a: int, amount_b: int) -> bytes:
    return ADD_LIQUIDITY_DISCRIMINATOR + struct.pack('<QQ', amount_a, amount_b)


def remove_liquidity_data(lp_amount: int, minimum_a_out: int, minimum_b_out: int) -> bytes:
    return REMOVE_LIQUIDITY_DISCRIMINATOR + struct.pack('<QQQ', lp_amount, minimum_a_out, minimum_b_out)


class TransactionSubmitter:
    """
    Builds, signs and broadcasts AMM instructions for one user.
    Chain failures come back as TxResult(success=False); nothing here raises for them.
    """
    def __init__(self, client, registry: PoolRegistry, tokens: dict, safe_mode: bool = True):
        self.client = client
        self.registry = registry
        self.decimals = {token['mint']: int(token['decimals']) for token in tokens.values()}
        self.safe_mode = safe_mode

    def _decimals(self, mint: str) -> int:
        return self.decimals.get(mint, 6)

    def _accounts(self, identity: PoolIdentity, user: Pubkey):
        addresses = self.registry.addresses(identity.name)
        mint_a = Pubkey.from_string(identity.token_a)
        mint_b = Pubkey.from_string(identity.token_b)
        lp_mint = Pubkey.from_string(addresses.lp_mint)
        return {
            "pool_state": Pubkey.from_string(addresses.pool_state),
            "authority": Pubkey.from_string(addresses.authority),
            "vault_a": Pubkey.from_string(addresses.vault_a),
            "vault_b": Pubkey.from_string(addresses.vault_b),
            "mint_a": mint_a,
            "mint_b": mint_b,
            "lp_mint": lp_mint,
            "user_a": get_associated_token_address(user, mint_a),
            "user_b": get_associated_token_address(user, mint_b),
            "user_lp": get_associated_token_address(user, lp_mint),
        }

    async def swap(self, kp: Keypair, pool_name: str, amount_in: float, token_type: str,
                   min_amount_out: float) -> TxResult:
        identity = self.registry.get(pool_name)
        user = kp.pubkey()
        acc = self._accounts(identity, user)
        a_to_b = token_type == 'A'
        try:
            raw_in = to_raw_amount(amount_in, self._decimals(identity.token_a if a_to_b else identity.token_b))
            raw_min_out = to_raw_amount(min_amount_out, self._decimals(identity.token_b if a_to_b else identity.token_a))
        except ValueError as e:
            return TxResult(False, error=str(e))
        if raw_in == 0:
            return TxResult(False, error="Amount is too small")

        ix = Instruction(
            program_id=Pubkey.from_string(identity.program_id),
            data=swap_data(raw_in, raw_min_out, a_to_b),
            accounts=[
                AccountMeta(acc["pool_state"], is_signer=False, is_writable=False),
                AccountMeta(acc["user_a"], is_signer=False, is_writable=True),
                AccountMeta(acc["user_b"], is_signer=False, is_writable=True),
                AccountMeta(acc["vault_a"], is_signer=False, is_writable=True),
                AccountMeta(acc["vault_b"], is_signer=False, is_writable=True),
                AccountMeta(acc["authority"], is_signer=False, is_writable=False),
                AccountMeta(user, is_signer=True, is_writable=False),
                AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        logger.info(f"Swap {pool_name}: {raw_in} raw {'A->B' if a_to_b else 'B->A'}, min out {raw_min_out}")
        return await self._send(kp, [(acc["user_a"], acc["mint_a"]), (acc["user_b"], acc["mint_b"])], ix)

    async def add_liquidity(self, kp: Keypair, pool_name: str, amount_a: float, amount_b: float) -> TxResult:
        identity = self.registry.get(pool_name)
        user = kp.pubkey()
        acc = self._accounts(identity, user)
        try:
            raw_a = to_raw_amount(amount_a, self._decimals(identity.token_a))
            raw_b = to_raw_amount(amount_b, self._decimals(identity.token_b))
        except ValueError as e:
            return TxResult(False, error=str(e))
        if raw_a == 0 or raw_b == 0:
            return TxResult(False, error="Amounts are too small")

        ix = Instruction(
            program_id=Pubkey.from_string(identity.program_id),
            data=add_liquidity_data(raw_a, raw_b),
            accounts=[
                AccountMeta(acc["pool_state"], is_signer=False, is_writable=False),
                AccountMeta(acc["user_a"], is_signer=False, is_writable=True),
                AccountMeta(acc["user_b"], is_signer=False, is_writable=True),
                AccountMeta(acc["user_lp"], is_signer=False, is_writable=True),
                AccountMeta(acc["vault_a"], is_signer=False, is_writable=True),
                AccountMeta(acc["vault_b"], is_signer=False, is_writable=True),
                AccountMeta(acc["lp_mint"], is_signer=False, is_writable=True),
                AccountMeta(acc["authority"], is_signer=False, is_writable=False),
                AccountMeta(user, is_signer=True, is_writable=False),
                AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        logger.info(f"Add liquidity {pool_name}: {raw_a} A, {raw_b} B")
        owned = [(acc["user_a"], acc["mint_a"]), (acc["user_b"], acc["mint_b"]), (acc["user_lp"], acc["lp_mint"])]
        return await self._send(kp, owned, ix)

    async def remove_liquidity(self, kp: Keypair, pool_name: str, lp_amount: float,
                               min_amount_a: float, min_amount_b: float) -> TxResult:
        identity = self.registry.get(pool_name)
        user = kp.pubkey()
        acc = self._accounts(identity, user)
        try:
            raw_lp = to_raw_amount(lp_amount, LP_DECIMALS)
            raw_min_a = to_raw_amount(min_amount_a, self._decimals(identity.token_a))
            raw_min_b = to_raw_amount(min_amount_b, self._decimals(identity.token_b))
        except ValueError as e:
            return TxResult(False, error=str(e))
        if raw_lp == 0:
            return TxResult(False, error="LP amount is too small")

        ix = Instruction(
            program_id=Pubkey.from_string(identity.program_id),
            data=remove_liquidity_data(raw_lp, raw_min_a, raw_min_b),
            accounts=[
                AccountMeta(acc["pool_state"], is_signer=False, is_writable=False),
                AccountMeta(acc["user_a"], is_signer=False, is_writable=True),
                AccountMeta(acc["user_b"], is_signer=False, is_writable=True),
                AccountMeta(acc["user_lp"], is_signer=False, is_writable=True),
                AccountMeta(acc["vault_a"], is_signer=False, is_writable=True),
                AccountMeta(acc["vault_b"], is_signer=False, is_writable=True),
                AccountMeta(acc["lp_mint"], is_signer=False, is_writable=True),
                AccountMeta(acc["authority"], is_signer=False, is_writable=False),
                AccountMeta(user, is_signer=True, is_writable=False),
                AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
            ],
        )
        logger.info(f"Remove liquidity {pool_name}: {raw_lp} LP, min {raw_min_a} A / {raw_min_b} B")
        return await self._send(kp, [(acc["user_a"], acc["mint_a"]), (acc["user_b"], acc["mint_b"])], ix)

    async def request_airdrop(self, wallet_address: str, sol: float) -> TxResult:
        """Devnet SOL for a new wallet's fees. Failure is reported, not raised."""
        try:
            lamports = to_raw_amount(sol, 9)
            if lamports == 0:
                return TxResult(False, error="Airdrop disabled")
            resp = await self.client.request_airdrop(Pubkey.from_string(wallet_address), lamports)
            signature = str(resp.value)
            logger.info(f"Airdrop of {sol} SOL requested for {wallet_address}: {signature}")
            return TxResult(True, signature=signature)
        except Exception as e:
            logger.warning(f"Airdrop failed for {wallet_address}: {e}")
            return TxResult(False, error=f"Airdrop failed: {e}")

    async def _missing_token_accounts(self, user: Pubkey, owned) -> List[Instruction]:
        instructions = []
        for ata, mint in owned:
            try:
                info = await self.client.get_account_info(ata, commitment=Confirmed)
                exists = info.value is not None
            except Exception as e:
                logger.warning(f"Error checking token account {ata}: {e}")
                exists = False
            if not exists:
                instructions.append(create_associated_token_account(payer=user, owner=user, mint=mint))
        return instructions

    async def _send(self, kp: Keypair, owned, ix: Instruction) -> TxResult:
        user = kp.pubkey()
        try:
            instructions = await self._missing_token_accounts(user, owned)
            instructions.append(ix)

            blockhash_resp = await self.client.get_latest_blockhash(Finalized)
            if not blockhash_resp or not blockhash_resp.value:
                return TxResult(False, error="Failed to get recent blockhash from Solana RPC")
            recent_blockhash = blockhash_resp.value.blockhash

            message = Message.new_with_blockhash(instructions, user, recent_blockhash)
            txn = Transaction([kp], message, recent_blockhash)

            if self.safe_mode:
                simulation = await self.client.simulate_transaction(txn)
                if simulation.value and simulation.value.err:
                    return TxResult(False, error=f"Transaction simulation failed: {simulation.value.err}")

            send_result = await self.client.send_raw_transaction(
                bytes(txn),
                opts=TxOpts(skip_preflight=not self.safe_mode, preflight_commitment=Confirmed),
            )
            if not send_result or not send_result.value:
                return TxResult(False, error="Failed to send transaction: No response from RPC")
            signature = str(send_result.value)
            logger.info(f"Transaction sent: {signature}")
            return TxResult(True, signature=signature)
        except RPCException as e:
            logger.error(f"RPC error sending transaction: {e}")
            return TxResult(False, error=f"RPC error sending transaction: {e}")
        except Exception as e:
            logger.error(f"Transaction failed: {e}")
            return TxResult(False, error=f"Transaction failed: {e}")
