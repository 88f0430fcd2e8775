# transaction_gateway.py
import asyncio
import logging
import secrets
from dataclasses import dataclass
from typing import Dict, Optional

from fastapi import WebSocket
from pydantic import BaseModel, ValidationError, field_validator

from chain_writer import TransactionSubmitter, TxResult
from models import TransactionRejected
from pool_reader import snapshots_as_dict
from pool_watchdog import DOWN_MESSAGE, UNSTABLE_MESSAGE, PoolWatchdog
from portfolio import PortfolioReader
from user_store import UserStore

logger = logging.getLogger(__name__)

NOT_AUTHENTICATED = 'User not authenticated or wallet not created'
WALLET_CREATION_DOWN = 'Devnet is currently offline. Wallet creation unavailable.'


# Write request models

class SwapRequest(BaseModel):
    poolType: str
    amountIn: float
    tokenType: str
    minAmountOut: float = 0.0

    @field_validator('amountIn')
    @classmethod
    def validate_amount_in(cls, v):
        if v <= 0:
            raise ValueError('Amount must be positive')
        return v

    @field_validator('minAmountOut')
    @classmethod
    def validate_min_amount_out(cls, v):
        if v < 0:
            raise ValueError('Minimum amount out cannot be negative')
        return v

    @field_validator('tokenType')
    @classmethod
    def validate_token_type(cls, v):
        if v not in ['A', 'B']:
            raise ValueError('Token type must be "A" or "B"')
        return v


class AddLiquidityRequest(BaseModel):
    poolType: str
    amountA: float
    amountB: float

    @field_validator('amountA', 'amountB')
    @classmethod
    def validate_amounts(cls, v):
        if v <= 0:
            raise ValueError('Amounts must be positive')
        return v


class RemoveLiquidityRequest(BaseModel):
    poolType: str
    lpAmount: float
    minAmountA: float = 0.0
    minAmountB: float = 0.0

    @field_validator('lpAmount')
    @classmethod
    def validate_lp_amount(cls, v):
        if v <= 0:
            raise ValueError('LP amount must be positive')
        return v

    @field_validator('minAmountA', 'minAmountB')
    @classmethod
    def validate_minimums(cls, v):
        if v < 0:
            raise ValueError('Minimum amounts cannot be negative')
        return v


WRITE_REQUESTS = {
    'swap': SwapRequest,
    'add_liquidity': AddLiquidityRequest,
    'remove_liquidity': RemoveLiquidityRequest,
}


@dataclass
class ClientConnection:
    connection_id: str
    websocket: WebSocket
    user_id: Optional[str] = None
    has_wallet: bool = False
    email: Optional[str] = None


class ConnectionManager:
    """
    Connected WebSocket clients. Broadcasts are fire-and-forget and go out
    concurrently; a client that does not take a message within send_timeout
    is dropped.
    """

    def __init__(self, send_timeout: float = 2.0):
        self.clients: Dict[str, ClientConnection] = {}
        self.send_timeout = send_timeout

    async def connect(self, websocket: WebSocket, user_id: Optional[str] = None,
                      has_wallet: bool = False, email: Optional[str] = None) -> ClientConnection:
        await websocket.accept()
        conn = ClientConnection(secrets.token_hex(8), websocket, user_id, has_wallet, email)
        self.clients[conn.connection_id] = conn
        logger.info(f"Client connected: {conn.connection_id} (user={user_id}, wallet={has_wallet})")
        return conn

    def disconnect(self, conn: ClientConnection):
        self.clients.pop(conn.connection_id, None)
        logger.info(f"Client disconnected: {conn.connection_id}")

    async def send(self, conn: ClientConnection, event: str, data: dict) -> bool:
        try:
            await asyncio.wait_for(
                conn.websocket.send_json({"event": event, "data": data}),
                timeout=self.send_timeout,
            )
            return True
        except asyncio.TimeoutError:
            logger.warning(f"Dropping client {conn.connection_id}: send timed out after {self.send_timeout}s")
            self.disconnect(conn)
            return False
        except Exception as e:
            logger.debug(f"Dropping client {conn.connection_id}: {e}")
            self.disconnect(conn)
            return False

    async def broadcast(self, event: str, data: dict) -> int:
        results = await asyncio.gather(
            *(self.send(conn, event, data) for conn in list(self.clients.values()))
        )
        return sum(1 for ok in results if ok)

    def __len__(self) -> int:
        return len(self.clients)


class TransactionGateway:
    """
    Front door for client writes and the periodic pool broadcast.
    Reads the watchdog's gates, never writes to them.
    """
    def __init__(self, watchdog: PoolWatchdog, submitter: TransactionSubmitter,
                 user_store: UserStore, manager: Optional[ConnectionManager] = None,
                 broadcast_interval: float = 3.0, portfolio: Optional[PortfolioReader] = None,
                 airdrop_sol: float = 0.0):
        self.watchdog = watchdog
        self.submitter = submitter
        self.user_store = user_store
        self.portfolio = portfolio
        self.airdrop_sol = airdrop_sol
        self.manager = manager if manager is not None else ConnectionManager()
        self.broadcast_interval = broadcast_interval
        self._task: Optional[asyncio.Task] = None

    def check_gates(self):
        """Raises TransactionRejected when upstream health forbids writes. Down is checked first."""
        if self.watchdog.is_down:
            raise TransactionRejected(DOWN_MESSAGE, code="devnet_down")
        if self.watchdog.is_transactions_locked:
            raise TransactionRejected(UNSTABLE_MESSAGE, code="transactions_locked")

    async def handle_write(self, conn: ClientConnection, action: str, payload: dict) -> dict:
        """Runs one write for one client and reports the result to that client only."""
        try:
            result = await self._execute_write(conn, action, payload)
        except TransactionRejected as e:
            logger.info(f"{action} rejected for {conn.user_id or conn.connection_id}: {e.reason}")
            result = {"success": False, "error": e.reason, "code": e.code}
        except Exception as e:
            logger.exception(f"{action} error for client {conn.connection_id}")
            result = {"success": False, "error": str(e)}
        await self.manager.send(conn, 'transaction_result', result)
        if result.get("success"):
            await self.send_balance_update(conn)
        return result

    async def _execute_write(self, conn: ClientConnection, action: str, payload: dict) -> dict:
        model = WRITE_REQUESTS.get(action)
        if model is None:
            raise TransactionRejected(f"Unsupported action: {action}", code="invalid_request")
        try:
            req = model.model_validate(payload or {})
        except ValidationError as e:
            raise TransactionRejected(_validation_message(e), code="invalid_request")

        if not conn.user_id or not conn.has_wallet:
            raise TransactionRejected(NOT_AUTHENTICATED, code="not_authenticated")
        if req.poolType not in self.watchdog.registry:
            raise TransactionRejected(f"Unknown pool: {req.poolType}", code="unknown_pool")

        self.check_gates()

        kp = await self.user_store.get_user_keypair(conn.user_id)
        if kp is None:
            raise TransactionRejected(NOT_AUTHENTICATED, code="not_authenticated")

        logger.info(f"{action} request from {conn.user_id}: {payload}")
        tx = await self._submit(kp, action, req)

        if not tx.success:
            return {"success": False, "error": tx.error or f"{_label(action)} failed"}

        # Refresh the traded pool before broadcasting
        await self.watchdog.force_refresh(req.poolType)
        await self.broadcast_pool_states()
        return {
            "success": True,
            "txSignature": tx.signature,
            "message": f"{_label(action)} completed successfully",
        }

    async def _submit(self, kp, action: str, req) -> TxResult:
        if action == 'swap':
            return await self.submitter.swap(kp, req.poolType, req.amountIn, req.tokenType, req.minAmountOut)
        if action == 'add_liquidity':
            return await self.submitter.add_liquidity(kp, req.poolType, req.amountA, req.amountB)
        return await self.submitter.remove_liquidity(kp, req.poolType, req.lpAmount, req.minAmountA, req.minAmountB)

    # ---- broadcast side ----

    def current_pools_payload(self) -> Dict[str, dict]:
        return snapshots_as_dict(self.watchdog.get_pools_view())

    async def broadcast_pool_states(self):
        if self.watchdog.is_down:
            await self.manager.broadcast('devnet_status', self.watchdog.devnet_status())
            logger.debug("Devnet is offline, broadcasted down status")
            return

        pools = self.current_pools_payload()
        if pools:
            await self.manager.broadcast('pools_update', {"data": pools})
            logger.debug(f"Broadcasted {len(pools)} pools to {len(self.manager)} clients")
        else:
            logger.debug("No pool data available to broadcast")
        await self.manager.broadcast('devnet_status', self.watchdog.devnet_status())

    async def send_initial_state(self, conn: ClientConnection):
        if self.watchdog.is_down:
            await self.manager.send(conn, 'devnet_status', self.watchdog.devnet_status())
            return
        pools = self.current_pools_payload()
        if pools:
            await self.manager.send(conn, 'pools_update', {"data": pools})
        await self.manager.send(conn, 'devnet_status', self.watchdog.devnet_status())

    async def handle_message(self, conn: ClientConnection, message) -> None:
        if not isinstance(message, dict):
            await self.manager.send(conn, 'error', {"error": "Messages must be JSON objects"})
            return
        event = message.get('event')
        data = message.get('data') or {}
        if event in WRITE_REQUESTS:
            await self.handle_write(conn, event, data)
        elif event == 'get_pools':
            await self.send_initial_state(conn)
        elif event == 'get_devnet_status':
            await self.manager.send(conn, 'devnet_status', self.watchdog.devnet_status())
        elif event == 'create_wallet':
            await self.create_wallet(conn)
        elif event == 'get_portfolio':
            await self.send_portfolio(conn)
        else:
            await self.manager.send(conn, 'error', {"error": f"Unknown event: {event}"})

    # ---- user wallet side ----

    async def create_wallet(self, conn: ClientConnection) -> dict:
        """Creates the custodial wallet of the connected user and answers with wallet_created."""
        if not conn.user_id:
            result = {"success": False, "error": NOT_AUTHENTICATED}
        elif self.watchdog.is_down:
            result = {"success": False, "error": WALLET_CREATION_DOWN, "devnetDown": True}
        else:
            result = await self.user_store.create_wallet(conn.user_id, conn.email)

        await self.manager.send(conn, 'wallet_created', result)
        if not result.get("success"):
            return result

        conn.has_wallet = True
        if self.airdrop_sol > 0:
            await self.submitter.request_airdrop(result["wallet_address"], self.airdrop_sol)
        await self.send_portfolio(conn)
        return result

    async def _wallet_address(self, conn: ClientConnection) -> Optional[str]:
        if not conn.user_id or not conn.has_wallet:
            return None
        wallet = await self.user_store.get_user_wallet(conn.user_id)
        return wallet['wallet_address'] if wallet else None

    async def send_portfolio(self, conn: ClientConnection):
        wallet_address = await self._wallet_address(conn)
        if wallet_address is None:
            await self.manager.send(conn, 'user_portfolio', {"success": False, "error": NOT_AUTHENTICATED})
            return
        if self.portfolio is None:
            return
        if self.watchdog.is_down:
            await self.manager.send(conn, 'user_portfolio', {"success": False, "error": DOWN_MESSAGE})
            return
        try:
            data = await self.portfolio.portfolio(wallet_address, self.watchdog.get_pools_view())
        except Exception as e:
            logger.warning(f"Portfolio read failed for {conn.user_id}: {e!r}")
            await self.manager.send(conn, 'user_portfolio', {"success": False, "error": "Failed to load portfolio"})
            return
        await self.manager.send(conn, 'user_portfolio', {"success": True, "data": data})

    async def send_balance_update(self, conn: ClientConnection):
        """Fresh wallet balances for the user whose write just landed"""
        if self.portfolio is None:
            return
        wallet_address = await self._wallet_address(conn)
        if wallet_address is None:
            return
        try:
            balances = await self.portfolio.token_balances(wallet_address)
        except Exception as e:
            logger.warning(f"Balance update failed for {conn.user_id}: {e!r}")
            return
        await self.manager.send(conn, 'balance_update', {"data": balances})

    async def run_broadcast_loop(self):
        logger.info(f"Pool broadcast started every {self.broadcast_interval}s")
        while True:
            try:
                await self.broadcast_pool_states()
            except Exception:
                logger.exception("Pool broadcast failed")
            await asyncio.sleep(self.broadcast_interval)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_broadcast_loop())
        return self._task

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


def _label(action: str) -> str:
    return {
        'swap': 'Swap',
        'add_liquidity': 'Add liquidity',
        'remove_liquidity': 'Remove liquidity',
    }.get(action, action)


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    field = '.'.join(str(part) for part in first.get('loc', ()))
    return f"Invalid request: {field} {first.get('msg', '')}".strip()
