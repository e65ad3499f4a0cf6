"""
Sandbox Server of Record

FastAPI application serving the gateway REST contract from the in-memory
MockOrderingAPI, with a python-socketio server on the same ASGI app for
the /realtime namespace. Staff-side status changes made through the
sandbox endpoints are broadcast to the order rooms exactly as the real
gateway does.

Endpoints (prefix /api/v1):
    - Cart:     GET/DELETE /tenants/{t}/tables/{tb}/cart
                POST  .../cart/items, PATCH/DELETE .../cart/items/{itemKey}
                POST  .../cart/checkout
    - Orders:   GET /orders, GET /orders/{id}
                POST /orders/{id}/cancel, POST /orders/{id}/items/status
    - Payment:  POST /payment/qr, POST /payment/bill
    - Identity: GET /identity/auth/refresh (refresh_token cookie)
    - Sandbox:  POST /staff/orders/{id}/items/status
                POST /payment/settle/{orderId}
    - GET /health

Run with any ASGI server, e.g.:
    uvicorn tableside.main:asgi_app --port 8888
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

import socketio
from fastapi import APIRouter, Body, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tableside.core.config import get_settings, setup_logging
from tableside.core.exceptions import (
    ApiError,
    LocalValidationError,
    OrderingError,
    SessionExpiredError,
    SUCCESS_CODE,
    TransientNetworkError,
    VALIDATION_ERROR_CODE,
)
from tableside.schemas import (
    AddCartItemRequest,
    CancelOrderRequest,
    CheckoutRequest,
    PaymentRequest,
    PaymentStatus,
    UpdateCartItemRequest,
    UpdateItemsStatusRequest,
)
from tableside.services.api.mock import MockOrderingAPI
from tableside.services.realtime.base import JOIN_ORDER, LEAVE_ORDER, RealtimeEvent
from tableside.services.realtime.mock import room_name

settings = get_settings()
setup_logging()
logger = logging.getLogger(__name__)

REFRESH_COOKIE = "refresh_token"


def envelope(data: Any = None, message: str = "Success", code: int = SUCCESS_CODE) -> dict:
    """Gateway response envelope."""
    return {"code": code, "message": message, "data": data}


def _error_status(error: OrderingError) -> int:
    if isinstance(error, ApiError):
        return error.status_code
    if isinstance(error, TransientNetworkError):
        return 503
    if isinstance(error, LocalValidationError):
        return 400
    return 500


# =============================================================================
# SOCKET.IO
# =============================================================================

def create_socket_server(backend: MockOrderingAPI) -> socketio.AsyncServer:
    """Socket.IO server for the realtime namespace, fed by the backend's events."""
    namespace = settings.realtime_namespace
    sio = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins="*",
        always_connect=True,
        logger=False,
        engineio_logger=False,
    )

    @sio.on("connect", namespace=namespace)
    async def on_connect(sid, environ, auth=None):
        auth = auth or {}
        await sio.save_session(sid, auth, namespace=namespace)
        logger.info(
            f"Realtime: {sid} connected ({auth.get('tenantId')}/{auth.get('tableId')})"
        )
        await sio.emit(
            RealtimeEvent.CONNECTION_SUCCESS.value,
            {
                "tenantId": auth.get("tenantId"),
                "tableId": auth.get("tableId"),
                "authenticated": bool(auth.get("token")),
            },
            to=sid,
            namespace=namespace,
        )

    @sio.on("disconnect", namespace=namespace)
    async def on_disconnect(sid, *args):
        logger.info(f"Realtime: {sid} disconnected")

    @sio.on(JOIN_ORDER, namespace=namespace)
    async def on_join(sid, data):
        order_id = (data or {}).get("orderId")
        if not order_id:
            return {"success": False, "error": "orderId is required"}
        await sio.enter_room(sid, room_name(order_id), namespace=namespace)
        return {"success": True, "message": f"Joined order room: {order_id}"}

    @sio.on(LEAVE_ORDER, namespace=namespace)
    async def on_leave(sid, data):
        order_id = (data or {}).get("orderId")
        if not order_id:
            return {"success": False, "error": "orderId is required"}
        await sio.leave_room(sid, room_name(order_id), namespace=namespace)
        return {"success": True, "message": f"Left order room: {order_id}"}

    async def broadcast(event: str, order_id: str, payload: dict) -> None:
        await sio.emit(
            event,
            {
                "event": event,
                "room": room_name(order_id),
                "data": payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            room=room_name(order_id),
            namespace=namespace,
        )

    backend.add_event_listener(broadcast)
    return sio


# =============================================================================
# REST ROUTES
# =============================================================================

def create_router(backend: MockOrderingAPI) -> APIRouter:
    router = APIRouter(prefix="/api/v1")
    table = "/tenants/{tenant_id}/tables/{table_id}"

    # ----------------------------------------------------------------- cart

    @router.get(f"{table}/cart", tags=["Cart"])
    async def get_cart(tenant_id: str, table_id: str) -> dict:
        cart = await backend.get_cart(tenant_id, table_id)
        return envelope(cart.to_wire())

    @router.post(f"{table}/cart/items", tags=["Cart"])
    async def add_cart_item(tenant_id: str, table_id: str, item: AddCartItemRequest) -> dict:
        await backend.add_cart_item(tenant_id, table_id, item)
        cart = await backend.get_cart(tenant_id, table_id)
        return envelope(cart.to_wire(), message="Item added to cart")

    @router.patch(f"{table}/cart/items/{{item_key}}", tags=["Cart"])
    async def update_cart_item(
        tenant_id: str,
        table_id: str,
        item_key: str,
        body: UpdateCartItemRequest,
    ) -> dict:
        await backend.update_cart_item(tenant_id, table_id, item_key, body.quantity)
        cart = await backend.get_cart(tenant_id, table_id)
        return envelope(cart.to_wire(), message="Cart item updated")

    @router.delete(f"{table}/cart/items/{{item_key}}", tags=["Cart"])
    async def remove_cart_item(tenant_id: str, table_id: str, item_key: str) -> dict:
        await backend.remove_cart_item(tenant_id, table_id, item_key)
        return envelope(message="Cart item removed")

    @router.delete(f"{table}/cart", tags=["Cart"])
    async def clear_cart(tenant_id: str, table_id: str) -> dict:
        await backend.clear_cart(tenant_id, table_id)
        return envelope(message="Cart cleared")

    @router.post(f"{table}/cart/checkout", tags=["Cart"])
    async def checkout_cart(
        tenant_id: str,
        table_id: str,
        body: Optional[CheckoutRequest] = Body(default=None),
    ) -> dict:
        order = await backend.checkout_cart(tenant_id, table_id, body.notes if body else None)
        return envelope(order.to_wire(), message="Order placed")

    # --------------------------------------------------------------- orders

    @router.get("/orders", tags=["Orders"])
    async def list_orders(
        tenant_id: str = Query(..., alias="tenantId"),
        table_id: str = Query(..., alias="tableId"),
        payment_status: Optional[PaymentStatus] = Query(None, alias="paymentStatus"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
    ) -> dict:
        result = await backend.list_orders(tenant_id, table_id, payment_status, page, limit)
        return envelope(result.to_wire())

    @router.get("/orders/{order_id}", tags=["Orders"])
    async def get_order(order_id: str) -> dict:
        order = await backend.get_order(order_id)
        return envelope(order.to_wire())

    @router.post("/orders/{order_id}/cancel", tags=["Orders"])
    async def cancel_order(order_id: str, body: CancelOrderRequest) -> dict:
        order = await backend.cancel_order(order_id, body.reason)
        return envelope(order.to_wire(), message="Order cancelled")

    @router.post("/orders/{order_id}/items/status", tags=["Orders"])
    async def update_items_status(order_id: str, body: UpdateItemsStatusRequest) -> dict:
        order = await backend.update_items_status(order_id, body.item_ids, body.status)
        return envelope(order.to_wire())

    # -------------------------------------------------------------- payment

    @router.post("/payment/qr", tags=["Payment"])
    async def create_payment_qr(body: PaymentRequest) -> dict:
        qr = await backend.create_payment_qr(body.tenant_id, body.order_id)
        return envelope(qr.to_wire())

    @router.post("/payment/bill", tags=["Payment"])
    async def generate_bill(body: PaymentRequest) -> dict:
        bill = await backend.generate_bill(body.tenant_id, body.order_id)
        return envelope(bill.to_wire())

    # ------------------------------------------------------------- identity

    @router.get("/identity/auth/refresh", tags=["Identity"])
    async def refresh(request: Request) -> dict:
        if not request.cookies.get(REFRESH_COOKIE):
            raise SessionExpiredError("Refresh token missing")
        grant = await backend.refresh_session()
        return envelope(grant.to_wire())

    # -------------------------------------------------------------- sandbox

    @router.post("/staff/orders/{order_id}/items/status", tags=["Sandbox"])
    async def staff_update_items(order_id: str, body: UpdateItemsStatusRequest) -> dict:
        order = await backend.set_items_status(
            order_id, body.item_ids, body.status, reason=body.reason
        )
        return envelope(order.to_wire())

    @router.post("/payment/settle/{order_id}", tags=["Sandbox"])
    async def settle_payment(order_id: str) -> dict:
        order = await backend.settle_payment(order_id)
        return envelope(order.to_wire(), message="Payment settled")

    @router.get("/health", tags=["Health"])
    async def health() -> dict:
        healthy = await backend.health_check()
        return envelope({
            "status": "operational" if healthy else "degraded",
            "provider": backend.provider_name,
            "environment": settings.env_mode.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    return router


# =============================================================================
# APPLICATION
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("=" * 60)
    logger.info(f"🚀 Starting {settings.app_name} sandbox")
    logger.info(f"   Version: {settings.app_version}")
    logger.info(f"   Environment: {settings.env_mode.value}")
    logger.info(f"   Realtime namespace: {settings.realtime_namespace}")
    logger.info("=" * 60)

    yield

    logger.info("Shutting down sandbox...")


def create_app(backend: Optional[MockOrderingAPI] = None) -> FastAPI:
    """
    Build the sandbox FastAPI app around a mock backend.

    The backend and Socket.IO server are available as app.state.backend
    and app.state.sio.
    """
    backend = backend or MockOrderingAPI(
        failure_rate=settings.mock_failure_rate,
        min_latency=settings.mock_min_latency,
        max_latency=settings.mock_max_latency,
        tax_rate=settings.tax_rate,
        currency=settings.currency,
        payment_base_url=settings.payment_base_url,
    )

    app = FastAPI(
        title=f"{settings.app_name} Sandbox",
        description="In-memory server of record for table ordering.",
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(OrderingError)
    async def ordering_error_handler(request: Request, exc: OrderingError) -> JSONResponse:
        status = _error_status(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status, content=envelope(message=exc.message, code=exc.code))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        message = first.get("msg", "Invalid request")
        return JSONResponse(
            status_code=400,
            content=envelope(message=message, code=VALIDATION_ERROR_CODE),
        )

    app.include_router(create_router(backend))
    app.state.backend = backend
    app.state.sio = create_socket_server(backend)
    return app


def create_asgi_app(app: FastAPI) -> socketio.ASGIApp:
    """Mount the app's Socket.IO server in front of the REST routes."""
    return socketio.ASGIApp(app.state.sio, other_asgi_app=app)


app = create_app()
asgi_app = create_asgi_app(app)
