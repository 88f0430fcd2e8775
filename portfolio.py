# portfolio.py
import logging
from decimal import Decimal
from typing import Dict, Optional, Tuple

from solders.pubkey import Pubkey
from solana.rpc.commitment import Confirmed
from spl.token.instructions import get_associated_token_address

from chain_writer import LP_DECIMALS
from models import PoolSnapshot
from pool_reader import PoolRegistry

logger = logging.getLogger(__name__)


def to_ui_amount(raw: int, decimals: int) -> float:
    return float(Decimal(raw) / (Decimal(10) ** decimals))


class PortfolioReader:
    """
    Per-user wallet token and LP balances, plus LP positions valued against
    the cached pool reserves.
    """
    def __init__(self, client, registry: PoolRegistry, tokens: dict):
        self.client = client
        self.registry = registry
        self.tokens = tokens
        self._symbols = {token['mint']: symbol for symbol, token in tokens.items()}

    async def _token_account(self, owner: Pubkey, mint: Pubkey) -> Tuple[str, int, bool]:
        """Returns (associated account, raw amount, exists)"""
        ata = get_associated_token_address(owner, mint)
        info = await self.client.get_account_info(ata, commitment=Confirmed)
        if info is None or info.value is None:
            return str(ata), 0, False
        balance = await self.client.get_token_account_balance(ata, commitment=Confirmed)
        return str(ata), int(balance.value.amount), True

    async def token_balances(self, wallet_address: str) -> dict:
        owner = Pubkey.from_string(wallet_address)

        tokens = {}
        for symbol, token in self.tokens.items():
            _, raw, _ = await self._token_account(owner, Pubkey.from_string(token['mint']))
            tokens[symbol] = to_ui_amount(raw, int(token['decimals']))

        lp_tokens = {}
        for name in self.registry.names:
            lp_mint = self.registry.addresses(name).lp_mint
            account, raw, exists = await self._token_account(owner, Pubkey.from_string(lp_mint))
            lp_tokens[name] = {
                "balance": raw,
                "uiAmount": to_ui_amount(raw, LP_DECIMALS),
                "lpMint": lp_mint,
                "userLpAccount": account,
                "accountExists": exists,
            }

        return {"walletAddress": wallet_address, "tokens": tokens, "lpTokens": lp_tokens}

    async def lp_supply(self, lp_mint: str) -> int:
        supply = await self.client.get_token_supply(Pubkey.from_string(lp_mint), commitment=Confirmed)
        return int(supply.value.amount)

    async def portfolio(self, wallet_address: str, pools: Dict[str, PoolSnapshot]) -> dict:
        balances = await self.token_balances(wallet_address)
        positions = {}
        for name, lp in balances["lpTokens"].items():
            positions[name] = await self._position(name, lp, pools.get(name))
        return {
            "walletAddress": wallet_address,
            "walletTokens": balances["tokens"],
            "lpPositions": positions,
        }

    async def _position(self, name: str, lp: dict, snapshot: Optional[PoolSnapshot]) -> dict:
        identity = self.registry.get(name)
        symbol_a = self._symbols.get(identity.token_a, identity.token_a)
        symbol_b = self._symbols.get(identity.token_b, identity.token_b)
        position = {
            "lpAmount": lp["uiAmount"],
            "sharePercent": 0.0,
            "underlying": {symbol_a: 0, symbol_b: 0},
            "reservesComplete": snapshot is not None and snapshot.has_complete_reserves,
        }
        if lp["balance"] == 0:
            return position
        if not position["reservesComplete"]:
            # A zero standing in for a missing vault would understate the position
            logger.debug(f"Skipping share math for {name}: reserves unavailable or incomplete")
            return position

        total_supply = await self.lp_supply(lp["lpMint"])
        if total_supply == 0:
            logger.warning(f"LP mint has zero supply for pool {name}")
            return position

        position["sharePercent"] = lp["balance"] / total_supply * 100
        position["underlying"] = {
            symbol_a: snapshot.reserve_a * lp["balance"] // total_supply,
            symbol_b: snapshot.reserve_b * lp["balance"] // total_supply,
        }
        return position
