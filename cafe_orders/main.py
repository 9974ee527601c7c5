"""
HTTP surface of the cafe order engine: order lifecycle, branch tokens
and cancellation windows.
Timers run in-process (development) or on the Celery worker (staging/production).

Endpoints (all order routes are tenant scoped):
    - POST /api/tenants/{tenant_id}/orders: Place an order
    - GET /api/tenants/{tenant_id}/orders: List orders
    - GET /api/tenants/{tenant_id}/orders/{order_id}: Get one order
    - POST /api/tenants/{tenant_id}/orders/{order_id}/transitions: Advance status
    - POST /api/tenants/{tenant_id}/orders/{order_id}/cancellation: Request cancellation
    - POST /api/tenants/{tenant_id}/orders/{order_id}/cancellation/resolve: Accept/reject
    - PUT /api/tenants/{tenant_id}/orders/{order_id}/lines: Replace a PENDING cart
    - GET /health: System health check

Staff bound to one branch send its id in the X-Branch-Id header.
"""

import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

# Windows-specific event loop policy
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Internal imports
from cafe_orders.core.clock import utcnow
from cafe_orders.core.config import get_settings, setup_logging
from cafe_orders.core.exceptions import OrderEngineError
from cafe_orders.database import get_db, get_engine, init_db
from cafe_orders.models import OrderStatus
from cafe_orders.schemas import (
    CancellationRequest,
    CancellationResolution,
    ErrorResponse,
    HealthResponse,
    LinesReplace,
    OrderCreate,
    OrderListResponse,
    OrderResponse,
    TransitionRequest,
)
from cafe_orders.services import (
    CartLine,
    CustomerInfo,
    OrderFilter,
    OrderService,
    get_order_service,
)

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables and re-arm pending cancellation timers; release them on exit."""
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("Database initialized")

    # Pending cancellations survive restarts through their persisted deadline
    service = get_order_service()
    await service.recover_timers()
    logger.info(f"Timer Backend: {service.timer.backend.provider_name}")
    logger.info(f"Catalogue Service: {service.catalogue.provider_name}")

    logger.info("=" * 60)
    logger.info("Application ready!")
    logger.info("=" * 60)

    yield  # Application runs

    # Shutdown
    logger.info("Shutting down...")
    await service.timer.backend.shutdown()
    await get_engine().dispose()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Order lifecycle and token assignment engine for multi-tenant cafes. "
        "Issues per-branch display tokens and runs the cancellation window."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# =============================================================================
# DEPENDENCIES
# =============================================================================

def order_service() -> OrderService:
    return get_order_service()


def branch_scope(x_branch_id: Optional[str] = Header(None, alias="X-Branch-Id")) -> Optional[str]:
    """Branch constraint of branch-bound staff; absent for tenant-wide callers."""
    return x_branch_id


def to_cart(lines) -> list[CartLine]:
    return [CartLine(menu_item_id=line.menu_item_id, quantity=line.quantity) for line in lines]


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": f"Welcome to {settings.app_name}",
        "version": settings.app_version,
        "environment": settings.env_mode.value,
        "documentation": "/docs",
        "health": "/health",
    }


@app.get(
    "/health",
    response_model=HealthResponse,
    tags=["Health"],
    summary="System Health Check",
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    service: OrderService = Depends(order_service),
) -> HealthResponse:
    """Verify all system components are operational."""

    # Check database
    db_status = "healthy"
    try:
        await db.execute(select(func.now()))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    # Check Redis (only needed when timers run on Celery)
    timer_backend = service.timer.backend.provider_name
    redis_status = "not used"
    if settings.use_celery_timers:
        redis_status = "healthy"
        try:
            r = aioredis.Redis.from_url(settings.redis_url, socket_timeout=2)
            try:
                await r.ping()
            finally:
                await r.aclose()
        except Exception as e:
            redis_status = f"unhealthy: {str(e)}"
            logger.error(f"Redis health check failed: {e}")

    overall = "operational" if all(
        s in ("healthy", "not used") for s in [db_status, redis_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        timer_backend=timer_backend,
        timestamp=utcnow(),
    )


# =============================================================================
# ORDER API ENDPOINTS
# =============================================================================

@app.post(
    "/api/tenants/{tenant_id}/orders",
    response_model=OrderResponse,
    status_code=201,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Place Order",
)
async def create_order(
    tenant_id: str,
    order_data: OrderCreate,
    service: OrderService = Depends(order_service),
) -> OrderResponse:
    """
    Place a new order.

    Prices are snapshotted from the catalogue and a branch token is issued
    in the same transaction as the insert.
    """
    logger.info(f"Creating order for tenant {tenant_id} at branch {order_data.branch_id}")

    order = await service.create_order(
        tenant_id,
        order_data.branch_id,
        order_data.order_type,
        to_cart(order_data.lines),
        customer=CustomerInfo(
            name=order_data.customer_name,
            phone=order_data.customer_phone,
            device_id=order_data.device_id,
        ),
    )
    return OrderResponse.model_validate(order)


@app.get(
    "/api/tenants/{tenant_id}/orders",
    response_model=OrderListResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="List Orders",
)
async def list_orders(
    tenant_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    status: Optional[OrderStatus] = Query(None),
    branch_id: Optional[str] = Query(None),
    device_id: Optional[str] = Query(None),
    created_from: Optional[datetime] = Query(None),
    created_to: Optional[datetime] = Query(None),
    scope: Optional[str] = Depends(branch_scope),
    service: OrderService = Depends(order_service),
) -> OrderListResponse:
    """Retrieve paginated list of orders, newest first."""
    total, orders = await service.list_orders(
        tenant_id,
        OrderFilter(
            branch_id=scope or branch_id,
            status=status,
            created_from=created_from,
            created_to=created_to,
            device_id=device_id,
            skip=skip,
            limit=limit,
        ),
    )
    return OrderListResponse(
        total=total,
        orders=[OrderResponse.model_validate(order) for order in orders],
    )


@app.get(
    "/api/tenants/{tenant_id}/orders/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
)
async def get_order(
    tenant_id: str,
    order_id: str,
    scope: Optional[str] = Depends(branch_scope),
    service: OrderService = Depends(order_service),
) -> OrderResponse:
    """Get a specific order by ID."""
    order = await service.get_order(tenant_id, order_id, branch_id=scope)
    return OrderResponse.model_validate(order)


@app.post(
    "/api/tenants/{tenant_id}/orders/{order_id}/transitions",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Advance Order Status",
)
async def request_transition(
    tenant_id: str,
    order_id: str,
    body: TransitionRequest,
    scope: Optional[str] = Depends(branch_scope),
    service: OrderService = Depends(order_service),
) -> OrderResponse:
    """Move an order one step along PENDING -> PREPARING -> READY -> COMPLETED."""
    order = await service.request_transition(
        tenant_id,
        order_id,
        body.target,
        branch_id=scope,
        actor=body.actor,
        expected_status=body.expected_status,
        expected_version=body.expected_version,
    )
    return OrderResponse.model_validate(order)


@app.post(
    "/api/tenants/{tenant_id}/orders/{order_id}/cancellation",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Cancellation"],
    summary="Request Cancellation",
)
async def request_cancellation(
    tenant_id: str,
    order_id: str,
    body: Optional[CancellationRequest] = None,
    scope: Optional[str] = Depends(branch_scope),
    service: OrderService = Depends(order_service),
) -> OrderResponse:
    """Open the cancellation window. Unresolved requests revert on expiry."""
    order = await service.request_cancellation(
        tenant_id,
        order_id,
        requested_by=body.requested_by if body else None,
        branch_id=scope,
    )
    return OrderResponse.model_validate(order)


@app.post(
    "/api/tenants/{tenant_id}/orders/{order_id}/cancellation/resolve",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Cancellation"],
    summary="Accept or Reject Cancellation",
)
async def resolve_cancellation(
    tenant_id: str,
    order_id: str,
    body: CancellationResolution,
    scope: Optional[str] = Depends(branch_scope),
    service: OrderService = Depends(order_service),
) -> OrderResponse:
    order = await service.resolve_cancellation(
        tenant_id, order_id, body.accept, branch_id=scope
    )
    return OrderResponse.model_validate(order)


@app.put(
    "/api/tenants/{tenant_id}/orders/{order_id}/lines",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    tags=["Orders"],
    summary="Replace Order Lines",
)
async def replace_lines(
    tenant_id: str,
    order_id: str,
    body: LinesReplace,
    scope: Optional[str] = Depends(branch_scope),
    service: OrderService = Depends(order_service),
) -> OrderResponse:
    """Re-price the cart of an order that has not been started yet."""
    order = await service.replace_lines(
        tenant_id, order_id, to_cart(body.lines), branch_id=scope
    )
    return OrderResponse.model_validate(order)


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(OrderEngineError)
async def order_engine_exception_handler(request: Request, exc: OrderEngineError) -> JSONResponse:
    """Render engine errors with their status code and context."""
    if exc.retryable:
        logger.warning(f"{exc.code} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.url.path}: {exc.message}")

    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "message": str(exc) if settings.debug else "An unexpected error occurred",
            "retryable": False,
        },
    )
