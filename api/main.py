"""
Main FastAPI application for the Agent Vault.

Exposes the contract entry points (agent lifecycle, trading, administration)
and the read paths of the event-indexed mirror used by the dashboard.
"""
import asyncio
import inspect
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from functools import wraps
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from api.auth import verify_sender
from vault.agent_wallet import AgentWallet
from vault.chain import Chain, market_id as hash_market_id, to_address
from vault.config import Settings, settings
from vault.deployment import Deployment, deploy_system
from vault.errors import ContractNotFound, VaultError
from vault.indexer import EventIndexer
from vault.logging import log
from vault.models import RiskProfile, TradeDirection
from vault.redis_client import redis_client

STATUS_BY_CATEGORY = {
    "Authorization": 403,
    "PolicyViolation": 422,
    "StateConflict": 409,
    "CircuitBreaker": 423,
    "ExternalFailure": 502,
}

# Rate limiting storage: endpoint -> client key -> request times in the window
rate_limit_storage: Dict[str, Dict[str, List[float]]] = {}


def rate_limit(max_requests: int = 100, window_seconds: int = 60):
    """Rate limiting decorator."""
    def decorator(func):
        signature = inspect.signature(func)
        expects_request = "request" in signature.parameters

        @wraps(func)
        async def wrapper(request: Request, *args, **kwargs):
            client_ip = request.client.host if request.client else "unknown"
            key = f"{client_ip}:{request.url.path}"
            now = time.time()
            window_start = now - window_seconds

            buckets = rate_limit_storage.setdefault(func.__name__, {})
            for stale in [k for k, times in buckets.items() if not times or times[-1] <= window_start]:
                del buckets[stale]

            recent = [req_time for req_time in buckets.get(key, []) if req_time > window_start]
            if len(recent) >= max_requests:
                buckets[key] = recent
                raise HTTPException(
                    status_code=429,
                    detail="Rate limit exceeded. Please try again later.",
                )
            recent.append(now)
            buckets[key] = recent

            if expects_request:
                return await func(request, *args, **kwargs)
            return await func(*args, **kwargs)

        if expects_request:
            wrapper.__signature__ = signature
        else:
            request_param = inspect.Parameter(
                "request",
                inspect.Parameter.POSITIONAL_OR_KEYWORD,
                annotation=Request,
            )
            wrapper.__signature__ = signature.replace(
                parameters=(request_param, *signature.parameters.values())
            )
        return wrapper
    return decorator


class VaultState:
    """The deployment served by this process and its event mirror."""

    def __init__(self):
        self.deployment: Optional[Deployment] = None
        self.indexer: Optional[EventIndexer] = None

    def reset(self, config: Optional[Settings] = None, chain: Optional[Chain] = None) -> Deployment:
        self.deployment = deploy_system(config, chain)
        self.indexer = EventIndexer(self.deployment.chain)
        self.indexer.sync()
        return self.deployment


state = VaultState()
state.reset()


async def call_contract(func, *args, **kwargs):
    """Run a contract entry point off the event loop."""
    return await asyncio.to_thread(func, *args, **kwargs)


async def refresh_mirror() -> None:
    """Index newly committed events and publish the mirror when enabled."""
    applied = await asyncio.to_thread(state.indexer.sync)
    if applied and settings.mirror_redis_enabled:
        await state.indexer.publish(redis_client)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown."""
    log.info("Starting Agent Vault API...")
    if settings.mirror_redis_enabled:
        await redis_client.connect()
        await state.indexer.publish(redis_client)
    log.info(f"Serving deployment {state.deployment.summary()}")

    yield

    log.info("Shutting down Agent Vault API...")
    if settings.mirror_redis_enabled:
        await redis_client.disconnect()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Custody and risk controls for autonomous prediction-market agents",
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

if settings.is_production:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["localhost", "127.0.0.1"],
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if not settings.is_production else [],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    request_id = str(uuid.uuid4())
    request.state.request_id = request_id

    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(VaultError)
async def vault_exception_handler(request: Request, exc: VaultError):
    status_code = STATUS_BY_CATEGORY.get(exc.category, 400)
    log.warning(f"{request.method} {request.url.path} rejected: {exc.code} - {exc.message}")
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "category": exc.category,
            "detail": exc.message,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTPError",
            "category": "Request",
            "detail": exc.detail,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    log.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "error": "InternalServerError",
            "category": "Internal",
            "detail": "Internal server error",
            "request_id": getattr(request.state, "request_id", None),
        },
    )



# ----------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------

def resolve_market_id(value: str) -> str:
    """Accept either a 32-byte hex market id or a human-readable market key."""
    if value.startswith("0x") and len(value) == 66:
        return value.lower()
    return hash_market_id(value)


class SenderRequest(BaseModel):
    """Body of every state-changing request; signed by `sender`."""
    sender: str
    issued_at: int = Field(..., description="Unix time the request was signed")
    nonce: Optional[str] = Field(default=None, description="Distinguishes otherwise identical requests")

    @field_validator("sender")
    @classmethod
    def _checksum_sender(cls, value: str) -> str:
        return to_address(value)


class CreateAgentRequest(SenderRequest):
    markets: List[str] = Field(..., description="Market ids or market keys to whitelist")
    name: str = ""
    risk_profile: Optional[RiskProfile] = None
    max_trade_size: Optional[int] = None
    daily_loss_limit: Optional[int] = None
    max_open_positions: Optional[int] = None


class AmountRequest(SenderRequest):
    amount: int


class TradeRequest(SenderRequest):
    market: str
    amount: int
    direction: TradeDirection = TradeDirection.BUY


class RegisterMarketRequest(SenderRequest):
    key: str
    name: str
    region: str


class MarketStatusRequest(SenderRequest):
    active: bool


class ExecutorRequest(SenderRequest):
    executor: str
    authorized: bool = True


class ConstraintsRequest(SenderRequest):
    min_trade_size: int
    max_trade_size: int
    min_daily_loss_limit: int
    max_daily_loss_limit: int


class FaucetRequest(BaseModel):
    address: str
    amount: int = Field(..., gt=0)


async def authenticate(request: Request, body: SenderRequest) -> str:
    return await verify_sender(request, body.sender, body.issued_at)


def get_agent_or_404(address: str) -> AgentWallet:
    try:
        return state.deployment.agent(address)
    except (ContractNotFound, ValueError):
        raise HTTPException(status_code=404, detail=f"Agent {address} not found")


def agent_summary(wallet: AgentWallet) -> Dict[str, Any]:
    metrics = wallet.get_performance_metrics()
    return {
        "address": wallet.address,
        "owner": wallet.owner,
        "paused": wallet.paused,
        "native_balance": wallet.native_balance,
        "config": wallet.get_config().model_dump(mode="json"),
        "metrics": {
            **metrics.model_dump(),
            "total_value": metrics.total_value,
            "win_rate": metrics.win_rate,
        },
        "open_positions": wallet.get_open_positions(),
    }


# ----------------------------------------------------------------------
# Health
# ----------------------------------------------------------------------

@app.get("/health")
async def health_check():
    """Health check with chain and mirror status."""
    deployment = state.deployment
    health_status = {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "environment": settings.environment,
        "version": settings.app_version,
        "block_number": deployment.chain.block_number,
        "chain_timestamp": deployment.chain.timestamp,
        "global_trading_paused": deployment.permission_manager.global_trading_paused,
        "indexer_cursor": state.indexer.cursor,
        "dependencies": {},
    }
    if settings.mirror_redis_enabled:
        if redis_client.redis is None:
            health_status["dependencies"]["redis"] = "disconnected"
            health_status["status"] = "degraded"
        else:
            try:
                await redis_client.redis.ping()
                health_status["dependencies"]["redis"] = "healthy"
            except Exception as e:
                health_status["dependencies"]["redis"] = f"unhealthy: {str(e)}"
                health_status["status"] = "degraded"
    return health_status


@app.get("/api/contracts")
async def get_contracts():
    return state.deployment.summary()


# ----------------------------------------------------------------------
# Markets
# ----------------------------------------------------------------------

@app.get("/api/markets")
async def list_markets(active_only: bool = False):
    await refresh_mirror()
    deployment = state.deployment
    markets = []
    for record in deployment.permission_manager.get_registered_markets():
        if active_only and not record.is_active:
            continue
        mirror = state.indexer.markets.get(record.market_id)
        markets.append(
            {
                **record.model_dump(),
                "yes_price": deployment.venue.price(record.market_id, TradeDirection.BUY),
                "volume": mirror.volume if mirror else 0,
                "trade_count": mirror.trade_count if mirror else 0,
            }
        )
    return {"markets": markets, "count": len(markets)}


@app.get("/api/markets/{market}")
async def get_market(market: str):
    deployment = state.deployment
    market_id = resolve_market_id(market)
    record = deployment.permission_manager.get_market(market_id)
    if record.registered_at is None:
        raise HTTPException(status_code=404, detail=f"Market {market} not registered")
    await refresh_mirror()
    mirror = state.indexer.markets.get(market_id)
    return {
        **record.model_dump(),
        "yes_price": deployment.venue.price(market_id, TradeDirection.BUY),
        "no_price": deployment.venue.price(market_id, TradeDirection.SELL),
        "volume": mirror.volume if mirror else 0,
        "trade_count": mirror.trade_count if mirror else 0,
    }


# ----------------------------------------------------------------------
# Agents
# ----------------------------------------------------------------------

@app.post("/api/agents", status_code=201)
async def create_agent(body: CreateAgentRequest, request: Request):
    sender = await authenticate(request, body)
    factory = state.deployment.factory
    market_ids = [resolve_market_id(market) for market in body.markets]
    if body.risk_profile is not None:
        address = await call_contract(
            factory.create_agent_with_profile, body.risk_profile, market_ids, sender=sender, name=body.name
        )
    else:
        if body.max_trade_size is None or body.daily_loss_limit is None:
            raise HTTPException(
                status_code=400,
                detail="Either risk_profile or both max_trade_size and daily_loss_limit are required",
            )
        address = await call_contract(
            factory.create_agent,
            body.max_trade_size,
            body.daily_loss_limit,
            market_ids,
            sender=sender,
            max_open_positions=body.max_open_positions,
            name=body.name,
        )
    await refresh_mirror()
    return agent_summary(state.deployment.agent(address))


@app.get("/api/agents")
async def list_agents(owner: Optional[str] = None):
    await refresh_mirror()
    try:
        records = state.indexer.get_agents(owner)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid owner address {owner}")
    return {
        "agents": [{**record.model_dump(), "win_rate": record.win_rate} for record in records],
        "count": len(records),
    }


@app.get("/api/agents/{address}")
async def get_agent(address: str):
    return agent_summary(get_agent_or_404(address))


@app.post("/api/agents/{address}/deposit")
async def deposit(address: str, body: AmountRequest, request: Request):
    sender = await authenticate(request, body)
    wallet = get_agent_or_404(address)
    balance = await call_contract(wallet.deposit_capital, sender=sender, value=body.amount)
    await refresh_mirror()
    return {"agent": wallet.address, "available_balance": balance}


@app.post("/api/agents/{address}/withdraw")
async def withdraw(address: str, body: AmountRequest, request: Request):
    sender = await authenticate(request, body)
    wallet = get_agent_or_404(address)
    balance = await call_contract(wallet.withdraw_capital, body.amount, sender=sender)
    await refresh_mirror()
    return {"agent": wallet.address, "available_balance": balance}


@app.post("/api/agents/{address}/trades", status_code=201)
async def execute_trade(address: str, body: TradeRequest, request: Request):
    sender = await authenticate(request, body)
    wallet = get_agent_or_404(address)
    position_id = await call_contract(
        wallet.execute_trade,
        resolve_market_id(body.market),
        body.amount,
        body.direction,
        sender=sender,
    )
    await refresh_mirror()
    return {"agent": wallet.address, "position": wallet.get_position(position_id).model_dump(mode="json")}


@app.post("/api/agents/{address}/positions/{position_id}/close")
async def close_position(address: str, position_id: int, body: SenderRequest, request: Request):
    sender = await authenticate(request, body)
    wallet = get_agent_or_404(address)
    payout = await call_contract(wallet.close_position, position_id, sender=sender)
    await refresh_mirror()
    return {
        "agent": wallet.address,
        "payout": payout,
        "position": wallet.get_position(position_id).model_dump(mode="json"),
    }


@app.post("/api/agents/{address}/pause")
async def pause_agent(address: str, body: SenderRequest, request: Request):
    sender = await authenticate(request, body)
    wallet = get_agent_or_404(address)
    await call_contract(wallet.pause, sender=sender)
    await refresh_mirror()
    return {"agent": wallet.address, "paused": wallet.paused}


@app.post("/api/agents/{address}/unpause")
async def unpause_agent(address: str, body: SenderRequest, request: Request):
    sender = await authenticate(request, body)
    wallet = get_agent_or_404(address)
    await call_contract(wallet.unpause, sender=sender)
    await refresh_mirror()
    return {"agent": wallet.address, "paused": wallet.paused}


@app.get("/api/agents/{address}/positions")
async def get_positions(address: str, status: Optional[str] = None):
    wallet = get_agent_or_404(address)
    positions = wallet.get_positions(include_closed=status != "open")
    if status == "closed":
        positions = [position for position in positions if not position.is_open]
    return {
        "agent": wallet.address,
        "positions": [position.model_dump(mode="json") for position in positions],
        "count": len(positions),
    }


@app.get("/api/agents/{address}/trades")
async def get_agent_trades(address: str, limit: int = 50, offset: int = 0):
    wallet = get_agent_or_404(address)
    await refresh_mirror()
    trades = state.indexer.get_trades(agent=wallet.address)
    page = trades[offset:offset + limit]
    return {
        "trades": [trade.model_dump() for trade in page],
        "count": len(page),
        "total": len(trades),
        "limit": limit,
        "offset": offset,
    }


# ----------------------------------------------------------------------
# Portfolio
# ----------------------------------------------------------------------

@app.get("/api/portfolio/stats")
async def portfolio_stats(owner: str):
    await refresh_mirror()
    try:
        return state.indexer.portfolio_stats(owner).model_dump()
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid owner address {owner}")


@app.get("/api/portfolio/trades")
async def portfolio_trades(owner: str, limit: int = Query(default=20, ge=1, le=200)):
    """Most recent trades across every agent of `owner`."""
    await refresh_mirror()
    try:
        trades = state.indexer.get_trades(owner=owner, limit=limit)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid owner address {owner}")
    return {"trades": [trade.model_dump() for trade in trades], "count": len(trades)}


@app.get("/api/events")
async def list_events(event: Optional[str] = None, address: Optional[str] = None, limit: int = 100):
    events = state.deployment.chain.get_events(event=event, address=address)
    return {"events": [entry.model_dump() for entry in events[-limit:]], "count": len(events)}


# ----------------------------------------------------------------------
# Administration
# ----------------------------------------------------------------------

@app.post("/api/admin/markets", status_code=201)
async def register_market(body: RegisterMarketRequest, request: Request):
    sender = await authenticate(request, body)
    record = await call_contract(
        state.deployment.permission_manager.register_market,
        resolve_market_id(body.key),
        body.name,
        body.region,
        sender=sender,
    )
    await refresh_mirror()
    return record.model_dump()


@app.post("/api/admin/markets/{market}/status")
async def set_market_status(market: str, body: MarketStatusRequest, request: Request):
    sender = await authenticate(request, body)
    permissions = state.deployment.permission_manager
    market_id = resolve_market_id(market)
    await call_contract(permissions.set_market_active, market_id, body.active, sender=sender)
    await refresh_mirror()
    return permissions.get_market(market_id).model_dump()


@app.post("/api/admin/executors")
async def authorize_executor(body: ExecutorRequest, request: Request):
    sender = await authenticate(request, body)
    permissions = state.deployment.permission_manager
    await call_contract(permissions.authorize_executor, body.executor, body.authorized, sender=sender)
    return {
        "executor": to_address(body.executor),
        "authorized": permissions.is_executor_authorized(body.executor),
    }


@app.get("/api/admin/constraints")
async def get_constraints():
    return state.deployment.permission_manager.get_global_constraints().model_dump()


@app.put("/api/admin/constraints")
async def update_constraints(body: ConstraintsRequest, request: Request):
    sender = await authenticate(request, body)
    constraints = await call_contract(
        state.deployment.permission_manager.update_global_constraints,
        body.min_trade_size,
        body.max_trade_size,
        body.min_daily_loss_limit,
        body.max_daily_loss_limit,
        sender=sender,
    )
    return constraints.model_dump()


@app.post("/api/admin/trading/pause")
async def pause_global_trading(body: SenderRequest, request: Request):
    sender = await authenticate(request, body)
    await call_contract(state.deployment.permission_manager.pause_global_trading, sender=sender)
    return {"global_trading_paused": True}


@app.post("/api/admin/trading/resume")
async def resume_global_trading(body: SenderRequest, request: Request):
    sender = await authenticate(request, body)
    await call_contract(state.deployment.permission_manager.resume_global_trading, sender=sender)
    return {"global_trading_paused": False}


# ----------------------------------------------------------------------
# Development
# ----------------------------------------------------------------------

@app.post("/api/dev/faucet")
@rate_limit(max_requests=20, window_seconds=60)
async def faucet(body: FaucetRequest):
    """Credit native balance to an account. Disabled in production."""
    if settings.is_production:
        raise HTTPException(status_code=403, detail="Faucet is disabled in production")
    if body.amount > settings.faucet_max_wei:
        raise HTTPException(
            status_code=422,
            detail=f"Faucet amount {body.amount} exceeds maximum {settings.faucet_max_wei}",
        )
    try:
        address = to_address(body.address)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid address {body.address}")
    chain = state.deployment.chain
    balance = chain.fund(address, body.amount)
    log.info(f"Faucet credited {body.amount} wei to {address}")
    return {"address": address, "balance": balance}


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "status": "running",
        "docs": "/docs" if not settings.is_production else None,
        "health": "/health",
        "endpoints": {
            "markets": "/api/markets",
            "agents": "/api/agents",
            "portfolio": "/api/portfolio/stats",
            "portfolio_trades": "/api/portfolio/trades",
            "admin": "/api/admin",
        },
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
