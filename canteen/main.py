"""
FastAPI Application Entry Point

Smart Canteen Ordering API.
Uses the mock payment gateway in development and Stripe otherwise.

Endpoints:
    - GET/POST/PUT/PATCH/DELETE /api/menu: Menu browsing and admin edits
    - POST /api/orders/checkout: Create an order and a payment handle
    - POST /api/orders/verify: Confirm payment, issue the QR token
    - PATCH /api/orders/scan/{token}: Redeem a QR token at the counter
    - PATCH /api/orders/{id}/deliver, /cancel: Fulfilment and cancellation
    - POST /api/payments/mock/{handle}/complete: Simulated payment (development)
    - GET /health: System health check

Callers identify themselves with the ``X-User-Id`` header.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import Any, List, Optional

import redis
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.exceptions import HTTPException as StarletteHTTPException

from canteen.core.config import get_settings, setup_logging
from canteen.core.errors import CanteenError
from canteen.database import get_db, get_engine, get_session_factory, init_db
from canteen.models import Account, MenuCategory, Order
from canteen.schemas import (
    ApiResponse,
    CheckoutRequest,
    CheckoutResponseData,
    ErrorResponse,
    HealthResponse,
    MenuItemCreate,
    MenuItemResponse,
    MenuItemUpdate,
    MockPaymentCompletion,
    OrderResponse,
    StockUpdate,
    VerifyPaymentRequest,
)
from canteen.services.accounts import AccountRepository
from canteen.services.catalog import CatalogRepository
from canteen.services.orders import CheckoutResult, LineRequest, OrderLifecycleManager
from canteen.services.payment import MockPaymentService, get_payment_service

# Initialize configuration and logging
settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)


# =============================================================================
# APPLICATION LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage application startup and shutdown events.
    """
    logger.info("=" * 60)
    logger.info(f"Starting {settings.app_name}")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Debug: {settings.debug}")
    logger.info("=" * 60)

    await init_db()
    logger.info("Database initialized")

    payment_service = get_payment_service()
    logger.info(f"Payment Service: {payment_service.provider_name}")

    if settings.use_real_services:
        missing = settings.validate_production_config()
        if missing:
            logger.warning(f"Missing production config: {missing}")
    if settings.payment_signature_bypass and not settings.is_development:
        logger.warning("PAYMENT_SIGNATURE_BYPASS ignored outside development mode")

    logger.info("Application ready")

    yield  # Application runs

    logger.info("Shutting down...")
    await get_engine().dispose()
    logger.info("Cleanup complete")


# =============================================================================
# APPLICATION INSTANCE
# =============================================================================

app = FastAPI(
    title=settings.app_name,
    description=(
        "Canteen ordering backend: menu, checkout, gateway payments, "
        "QR redemption tokens and counter scanning."
    ),
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

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

@lru_cache()
def get_order_manager() -> OrderLifecycleManager:
    """Process-wide lifecycle manager wired to the configured collaborators."""
    return OrderLifecycleManager(
        session_factory=get_session_factory(),
        payment_service=get_payment_service(),
        settings=settings,
    )


async def get_current_account(
    x_user_id: Optional[int] = Header(None, alias="X-User-Id"),
    db: AsyncSession = Depends(get_db),
) -> Account:
    """Resolve the caller; the credential check itself happens upstream."""
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Not authorized, no caller identity")
    account = await AccountRepository(db).find_by_id(x_user_id)
    if account is None:
        raise HTTPException(status_code=401, detail="Not authorized, unknown caller")
    return account


async def require_admin(account: Account = Depends(get_current_account)) -> Account:
    if not account.is_admin:
        raise HTTPException(
            status_code=403,
            detail=f"Role {account.role.value} is not authorized to access this route",
        )
    return account


def ensure_can_access(account: Account, order: Order) -> None:
    if not account.is_admin and order.owner_id != account.id:
        raise HTTPException(status_code=403, detail="Not authorized")


def checkout_payload(result: CheckoutResult) -> CheckoutResponseData:
    return CheckoutResponseData(
        order=OrderResponse.model_validate(result.order),
        payment_handle=result.payment_handle,
        amount=result.amount_minor,
        currency=result.currency,
        degraded=result.degraded,
        client_secret=result.client_secret,
    )


# =============================================================================
# ROOT & HEALTH ENDPOINTS
# =============================================================================

@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """API root with navigation links."""
    return {
        "message": settings.app_name,
        "status": "Running",
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
    db: AsyncSession = Depends(get_db)
) -> HealthResponse:
    """Verify all system components are operational."""

    db_status = "healthy"
    try:
        await db.execute(select(func.now()))
    except Exception as e:
        db_status = f"unhealthy: {str(e)}"
        logger.error(f"Database health check failed: {e}")

    redis_status = "healthy"
    try:
        r = redis.Redis.from_url(settings.redis_url, socket_timeout=2)
        r.ping()
        r.close()
    except Exception as e:
        redis_status = f"unhealthy: {str(e)}"
        logger.error(f"Redis health check failed: {e}")

    payment_service = get_payment_service()
    payment_status = "healthy" if await payment_service.health_check() else "unhealthy"

    overall = "operational" if all(
        s == "healthy" for s in [db_status, redis_status, payment_status]
    ) else "degraded"

    return HealthResponse(
        status=overall,
        database=db_status,
        redis=redis_status,
        payment_service=payment_status,
        timestamp=datetime.now(),
    )


# =============================================================================
# MENU ENDPOINTS
# =============================================================================

@app.get(
    "/api/menu",
    response_model=ApiResponse[List[MenuItemResponse]],
    tags=["Menu"],
)
async def list_menu(
    category: Optional[MenuCategory] = Query(None),
    available: bool = Query(False),
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[List[MenuItemResponse]]:
    """Menu sorted by category and name, optionally filtered."""
    items = await CatalogRepository(db).list_items(category=category, available_only=available)
    return ApiResponse(data=[MenuItemResponse.model_validate(i) for i in items])


@app.get(
    "/api/menu/{item_id}",
    response_model=ApiResponse[MenuItemResponse],
    tags=["Menu"],
)
async def get_menu_item(
    item_id: int,
    db: AsyncSession = Depends(get_db),
) -> ApiResponse[MenuItemResponse]:
    item = await CatalogRepository(db).get(item_id)
    return ApiResponse(data=MenuItemResponse.model_validate(item))


@app.post(
    "/api/menu",
    status_code=201,
    response_model=ApiResponse[MenuItemResponse],
    tags=["Menu"],
)
async def create_menu_item(
    payload: MenuItemCreate,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(require_admin),
) -> ApiResponse[MenuItemResponse]:
    item = await CatalogRepository(db).create_item(**payload.model_dump())
    return ApiResponse(
        message="Menu item added successfully",
        data=MenuItemResponse.model_validate(item),
    )


@app.put(
    "/api/menu/{item_id}",
    response_model=ApiResponse[MenuItemResponse],
    tags=["Menu"],
)
async def update_menu_item(
    item_id: int,
    payload: MenuItemUpdate,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(require_admin),
) -> ApiResponse[MenuItemResponse]:
    item = await CatalogRepository(db).update_item(item_id, payload.model_dump(exclude_none=True))
    return ApiResponse(
        message="Menu item updated successfully",
        data=MenuItemResponse.model_validate(item),
    )


@app.patch(
    "/api/menu/{item_id}/stock",
    response_model=ApiResponse[MenuItemResponse],
    tags=["Menu"],
)
async def update_menu_stock(
    item_id: int,
    payload: StockUpdate,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(require_admin),
) -> ApiResponse[MenuItemResponse]:
    item = await CatalogRepository(db).set_stock(item_id, payload.stock_count)
    return ApiResponse(
        message="Stock updated successfully",
        data=MenuItemResponse.model_validate(item),
    )


@app.delete(
    "/api/menu/{item_id}",
    response_model=ApiResponse[None],
    tags=["Menu"],
)
async def delete_menu_item(
    item_id: int,
    db: AsyncSession = Depends(get_db),
    admin: Account = Depends(require_admin),
) -> ApiResponse[None]:
    await CatalogRepository(db).delete_item(item_id)
    return ApiResponse(message="Menu item deleted successfully")


# =============================================================================
# ORDER ENDPOINTS
# =============================================================================

@app.post(
    "/api/orders/checkout",
    status_code=201,
    response_model=ApiResponse[CheckoutResponseData],
    tags=["Orders"],
)
async def checkout(
    payload: CheckoutRequest,
    account: Account = Depends(get_current_account),
    manager: OrderLifecycleManager = Depends(get_order_manager),
) -> ApiResponse[CheckoutResponseData]:
    """Snapshot the cart and return a payment handle to pay against."""
    result = await manager.checkout(
        account.id,
        [LineRequest(item.menu_item_id, item.quantity) for item in payload.items],
    )
    return ApiResponse(data=checkout_payload(result))


@app.post(
    "/api/orders/verify",
    response_model=ApiResponse[OrderResponse],
    tags=["Orders"],
)
async def verify_payment(
    payload: VerifyPaymentRequest,
    account: Account = Depends(get_current_account),
    manager: OrderLifecycleManager = Depends(get_order_manager),
) -> ApiResponse[OrderResponse]:
    """Confirm payment; the response carries the QR redemption token."""
    order = await manager.verify_payment(
        payload.payment_handle, payload.payment_id, payload.signature
    )
    return ApiResponse(
        message="Order activated and QR generated",
        data=OrderResponse.model_validate(order),
    )


@app.get(
    "/api/orders",
    response_model=ApiResponse[List[OrderResponse]],
    tags=["Orders"],
)
async def list_orders(
    account: Account = Depends(get_current_account),
    manager: OrderLifecycleManager = Depends(get_order_manager),
) -> ApiResponse[List[OrderResponse]]:
    """Students see their own orders; admins see every order."""
    orders = await manager.list_orders(owner_id=None if account.is_admin else account.id)
    return ApiResponse(data=[OrderResponse.model_validate(o) for o in orders])


@app.get(
    "/api/orders/{order_id}",
    response_model=ApiResponse[OrderResponse],
    tags=["Orders"],
)
async def get_order(
    order_id: int,
    account: Account = Depends(get_current_account),
    manager: OrderLifecycleManager = Depends(get_order_manager),
) -> ApiResponse[OrderResponse]:
    order = await manager.get_order(order_id)
    ensure_can_access(account, order)
    return ApiResponse(data=OrderResponse.model_validate(order))


@app.patch(
    "/api/orders/scan/{redemption_token}",
    response_model=ApiResponse[OrderResponse],
    tags=["Orders"],
)
async def scan_order(
    redemption_token: str,
    admin: Account = Depends(require_admin),
    manager: OrderLifecycleManager = Depends(get_order_manager),
) -> ApiResponse[OrderResponse]:
    order = await manager.scan(redemption_token)
    return ApiResponse(
        message="Order scanned successfully",
        data=OrderResponse.model_validate(order),
    )


@app.patch(
    "/api/orders/{order_id}/deliver",
    response_model=ApiResponse[OrderResponse],
    tags=["Orders"],
)
async def deliver_order(
    order_id: int,
    admin: Account = Depends(require_admin),
    manager: OrderLifecycleManager = Depends(get_order_manager),
) -> ApiResponse[OrderResponse]:
    order = await manager.deliver(order_id)
    return ApiResponse(message="Delivered", data=OrderResponse.model_validate(order))


@app.patch(
    "/api/orders/{order_id}/cancel",
    response_model=ApiResponse[OrderResponse],
    tags=["Orders"],
)
async def cancel_order(
    order_id: int,
    account: Account = Depends(get_current_account),
    manager: OrderLifecycleManager = Depends(get_order_manager),
) -> ApiResponse[OrderResponse]:
    ensure_can_access(account, await manager.get_order(order_id))
    order = await manager.cancel(order_id)
    return ApiResponse(message="Cancelled", data=OrderResponse.model_validate(order))


@app.post(
    "/api/orders/{order_id}/payment-handle",
    response_model=ApiResponse[CheckoutResponseData],
    tags=["Orders"],
)
async def refresh_payment_handle(
    order_id: int,
    account: Account = Depends(get_current_account),
    manager: OrderLifecycleManager = Depends(get_order_manager),
) -> ApiResponse[CheckoutResponseData]:
    """Swap a placeholder handle for a real one once the gateway is back."""
    ensure_can_access(account, await manager.get_order(order_id))
    result = await manager.refresh_payment_handle(order_id)
    return ApiResponse(data=checkout_payload(result))


# =============================================================================
# SIMULATION ENDPOINTS (DEVELOPMENT)
# =============================================================================

@app.post(
    "/api/payments/mock/{payment_handle}/complete",
    response_model=ApiResponse[MockPaymentCompletion],
    tags=["Simulation"],
)
async def complete_mock_payment(payment_handle: str) -> ApiResponse[MockPaymentCompletion]:
    """
    Pay against a handle with the mock gateway.

    Returns the payment id and signature a real gateway would hand the
    client, ready to post to /api/orders/verify.
    """
    payment_service = get_payment_service()
    if not settings.is_development or not isinstance(payment_service, MockPaymentService):
        raise HTTPException(
            status_code=403,
            detail="Simulated payments are only available in development mode",
        )
    payment_id, signature = payment_service.complete_payment(payment_handle)
    return ApiResponse(
        data=MockPaymentCompletion(
            payment_handle=payment_handle,
            payment_id=payment_id,
            signature=signature,
        )
    )


# =============================================================================
# ERROR HANDLERS
# =============================================================================

def error_response(status_code: int, body: ErrorResponse) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(CanteenError)
async def canteen_error_handler(request: Request, exc: CanteenError) -> JSONResponse:
    """Domain failures carry their own status code."""
    return error_response(exc.status_code, ErrorResponse(message=exc.message))


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return error_response(exc.status_code, ErrorResponse(message=str(exc.detail)))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors: list[dict[str, Any]] = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()
    ]
    return error_response(422, ErrorResponse(message="Invalid request", errors=errors))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all exception handler."""
    logger.exception(f"Unhandled exception: {exc}")

    return error_response(
        500,
        ErrorResponse(
            message="Something went wrong!",
            detail=str(exc) if settings.debug else None,
        ),
    )
