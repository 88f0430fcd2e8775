# Pool relay backend (backend.py)

# To run this code, install the package and start uvicorn:

# pip install -e . && python backend.py

import json
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed

from auth import admin_key_matches, bearer_token, verify_user_token
from chain_writer import TransactionSubmitter
from expiring_cache import PoolCache
from log_config import AsyncAuditLogger, setup_console_logger
from models import UnknownPoolError
from pool_reader import SEED_SCHEME_VERSION, ChainStateReader, PoolRegistry
from pool_watchdog import PoolWatchdog
from portfolio import PortfolioReader
from settings import Settings
from transaction_gateway import ConnectionManager, TransactionGateway
from user_store import UserStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything the app wires together once at startup"""
    settings: Settings
    client: object
    registry: PoolRegistry
    cache: PoolCache
    reader: ChainStateReader
    watchdog: PoolWatchdog
    submitter: TransactionSubmitter
    portfolio: PortfolioReader
    user_store: UserStore
    gateway: TransactionGateway
    audit: Optional[AsyncAuditLogger] = None


def build_services(settings: Settings, client=None, user_store: Optional[UserStore] = None) -> Services:
    settings.validate()
    if client is None:
        client = AsyncClient(settings.rpc_url, commitment=Confirmed)
    registry = PoolRegistry.from_settings(settings)
    cache = PoolCache(pool_ttl=settings.cache_ttl)
    reader = ChainStateReader(client, registry, timeout=settings.fetch_timeout)
    audit = AsyncAuditLogger(settings.audit_log_path) if settings.audit_log_path else None
    watchdog = PoolWatchdog.from_settings(settings, reader, cache, registry, audit=audit)
    submitter = TransactionSubmitter(client, registry, settings.tokens, safe_mode=settings.safe_mode)
    portfolio = PortfolioReader(client, registry, settings.tokens)
    if user_store is None:
        user_store = UserStore(settings.database_url)
    gateway = TransactionGateway(
        watchdog, submitter, user_store,
        manager=ConnectionManager(),
        broadcast_interval=settings.broadcast_interval,
        portfolio=portfolio,
        airdrop_sol=settings.airdrop_sol,
    )
    return Services(
        settings=settings,
        client=client,
        registry=registry,
        cache=cache,
        reader=reader,
        watchdog=watchdog,
        submitter=submitter,
        portfolio=portfolio,
        user_store=user_store,
        gateway=gateway,
        audit=audit,
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    if services is None:
        services = build_services(Settings.from_env())
    settings = services.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        setup_console_logger(settings.log_level, settings.environment)
        await services.user_store.init_db()
        if settings.start_background_tasks:
            if services.audit is not None:
                await services.audit.start()
            services.watchdog.start()
            services.gateway.start()
        logger.info(f"Pool relay backend ready on port {settings.port} (rpc={settings.rpc_url}, env={settings.environment})")
        yield
        # Shutdown
        await services.gateway.stop()
        await services.watchdog.stop()
        if services.audit is not None:
            await services.audit.stop()
        await services.user_store.close()
        close = getattr(services.client, "close", None)
        if close is not None:
            await close()

    app = FastAPI(
        title="AMM Pool Relay",
        description="Pool state watchdog, circuit breaker and transaction gateway for the devnet AMM",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.services = services

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _services(request: Request) -> Services:
        return request.app.state.services

    def require_admin(request: Request, x_admin_key: Optional[str] = Header(default=None)) -> bool:
        """Operator credential for the endpoints that change relay state"""
        if not admin_key_matches(x_admin_key, _services(request).settings.admin_api_key):
            raise HTTPException(status_code=401, detail="Admin credential required")
        return True

    @app.get("/health", summary="Health check")
    async def health_check(request: Request):
        """Health check endpoint"""
        svc = _services(request)
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "solana_rpc": svc.settings.rpc_url,
            "safe_mode": svc.settings.safe_mode,
            "seed_scheme": SEED_SCHEME_VERSION,
            "devnet": svc.watchdog.devnet_status(),
            "connected_clients": len(svc.gateway.manager),
        }

    @app.get("/pools", summary="Latest cached state of every pool")
    async def get_pools(request: Request):
        svc = _services(request)
        if svc.watchdog.is_down:
            raise HTTPException(status_code=503, detail=svc.watchdog.devnet_status()["message"])
        pools = svc.gateway.current_pools_payload()
        return {"count": len(pools), "data": pools}

    @app.get("/pools/{pool_name}", summary="Latest cached state of one pool")
    async def get_pool(pool_name: str, request: Request):
        svc = _services(request)
        try:
            snapshot = svc.watchdog.get_pool_from_cache(pool_name)
        except UnknownPoolError:
            raise HTTPException(status_code=404, detail=f"Unknown pool: {pool_name}")
        if snapshot is None:
            raise HTTPException(status_code=404, detail=f"No fresh data for {pool_name}")
        return {"data": snapshot.to_dict()}

    @app.get("/admin/devnet-status", summary="Upstream health and circuit breaker state")
    async def get_devnet_status(request: Request):
        return _services(request).watchdog.status()

    @app.post("/admin/devnet-status/reset", summary="Manually clear the circuit breaker")
    async def reset_devnet_status(request: Request, authorized: bool = Depends(require_admin)):
        svc = _services(request)
        actor = request.client.host if request.client else "admin"
        svc.watchdog.reset(actor=actor)
        return {"status": "success", "message": "Devnet status manually reset", **svc.watchdog.status()}

    @app.post("/admin/pools/refresh", summary="Run one polling round now")
    async def refresh_pools(request: Request, authorized: bool = Depends(require_admin)):
        svc = _services(request)
        ran = await svc.watchdog.trigger_round()
        if not ran:
            return {"status": "skipped", "message": "A polling round is already running"}
        return {"status": "success", **svc.watchdog.status()}

    @app.get("/admin/cache/stats", summary="Pool cache contents")
    async def cache_stats(request: Request):
        return _services(request).cache.stats()

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = None):
        svc: Services = websocket.app.state.services
        gateway = svc.gateway
        presented = bearer_token(websocket.headers.get("authorization")) or token
        user = verify_user_token(presented, svc.settings.jwt_secret, svc.settings.jwt_audience)
        if user is None:
            logger.warning("Refusing WebSocket connection without a valid access token")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        has_wallet = await svc.user_store.has_wallet(user.user_id)
        conn = await gateway.manager.connect(websocket, user.user_id, has_wallet, email=user.email)
        try:
            await gateway.send_initial_state(conn)
            while True:
                raw = await websocket.receive_text()
                try:
                    message = json.loads(raw)
                except ValueError:
                    await gateway.manager.send(conn, 'error', {"error": "Messages must be JSON"})
                    continue
                await gateway.handle_message(conn, message)
        except WebSocketDisconnect:
            pass
        finally:
            gateway.manager.disconnect(conn)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get("PORT", app.state.services.settings.port))
    uvicorn.run(app, host="0.0.0.0", port=port)
