"""
FastAPI application for the storefront cart and checkout API, plus the
payment, product and sales tax admin routes.
"""
import time
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.cart_token import resolve_token
from storefront.config import Config
from storefront.exceptions import (
    CartItemNotFoundError,
    CartNotActiveError,
    CartNotFoundError,
    CartTotalsMismatchError,
    ConfigurationError,
    PaymentError,
    PaymentNotFoundError,
    ProductNotFoundError,
    RedisConnectionError,
    ShippingGatewayError,
    TaxRateNotFoundError,
    ValidationError,
)
from storefront.middleware import RequestLoggingMiddleware, hash_identifier
from storefront.models import (
    AddItemRequest,
    Cart,
    CheckoutRequest,
    CheckoutResponse,
    ItemIdRequest,
    ItemQtyRequest,
    PaymentIdRequest,
    PaymentListResponse,
    PayPalExecuteRequest,
    PayPalOrderResponse,
    Product,
    ProductListResponse,
    ShippingAddress,
    ShippingLabelRequest,
    ShippingRate,
    TaxRate,
    TaxRateListResponse,
)
from storefront.services import Services, build_services

logger = logging.getLogger(__name__)

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def with_cart_token(response: JSONResponse, token: Optional[str]) -> JSONResponse:
    """Attach the cart token as X-Cart-Token header and cart_token cookie"""
    if token:
        response.headers["X-Cart-Token"] = token
        response.set_cookie(
            Config.CART_COOKIE_NAME,
            token,
            max_age=Config.CART_TTL_SECONDS,
            httponly=True,
            samesite="lax",
        )
    return response


def cart_response(cart: Cart, token: str) -> JSONResponse:
    return with_cart_token(JSONResponse(content=cart.model_dump(mode="json", by_alias=True)), token)


def request_token(request: Request) -> Optional[str]:
    token = resolve_token(request.headers.get("cookie"))
    request.state.cart_token = token
    return token


def active_cart_token(request: Request, services: Services) -> tuple:
    """
    Token of the active cart for the request.

    When the request has no open cart a new one is created and returned as
    the second element, which the route sends back as-is.
    """
    token, cart, created = services.cart_service.get_or_create_active(request_token(request))
    request.state.cart_token = token
    return token, (cart if created else None)


# Health check endpoint
@router.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Always 200; reports Redis connectivity without failing on it."""
    ping_start = time.time()
    redis_ok = services.redis.ping()
    return {
        "status": "healthy",
        "service": "storefront",
        "redis": {
            "status": "healthy" if redis_ok else "unhealthy",
            "latency_ms": round((time.time() - ping_start) * 1000, 2) if redis_ok else None
        },
        "timestamp": time.time()
    }


# Cart endpoints
@router.get("/cart/get")
def get_cart(request: Request, services: Services = Depends(get_services)):
    """Current cart for the cookie token; a brand new cart if there is none."""
    token, _ = active_cart_token(request, services)
    return cart_response(services.cart_service.get_cart(token), token)


@router.post("/cart/item/add")
def add_cart_item(body: AddItemRequest, request: Request, services: Services = Depends(get_services)):
    """Add a product to the cart. Same product and size increments the quantity."""
    token, cart = services.cart_service.add_item(
        request_token(request), body.id, body.options.size, body.options.qty
    )
    request.state.cart_token = token
    request.state.event_name = "CartItemAdded"
    return cart_response(cart, token)


@router.post("/cart/item/remove")
def remove_cart_item(body: ItemIdRequest, request: Request, services: Services = Depends(get_services)):
    token, new_cart = active_cart_token(request, services)
    if new_cart is not None:
        return cart_response(new_cart, token)
    return cart_response(services.cart_service.remove_item(token, body.id), token)


@router.post("/cart/item/qty")
def set_cart_item_qty(body: ItemQtyRequest, request: Request, services: Services = Depends(get_services)):
    token, new_cart = active_cart_token(request, services)
    if new_cart is not None:
        return cart_response(new_cart, token)
    return cart_response(services.cart_service.set_item_qty(token, body.id, body.qty), token)


@router.post("/cart/shipping/address")
def set_shipping_address(body: ShippingAddress, request: Request, services: Services = Depends(get_services)):
    """Set the shipping address; recomputes sales tax and the lowest shipping rate."""
    token, new_cart = active_cart_token(request, services)
    if new_cart is not None:
        return cart_response(new_cart, token)
    return cart_response(services.cart_service.set_shipping_address(token, body), token)


@router.get("/cart/shipping/rates")
def get_shipping_rates(request: Request, services: Services = Depends(get_services)):
    token, new_cart = active_cart_token(request, services)
    if new_cart is not None:
        return cart_response(new_cart, token)
    rates = services.cart_service.get_shipping_rates(token)
    return with_cart_token(
        JSONResponse(content=[rate.model_dump(mode="json") for rate in rates]), token
    )


@router.post("/cart/shipping/rate")
def set_shipping_rate(body: ShippingRate, request: Request, services: Services = Depends(get_services)):
    token, new_cart = active_cart_token(request, services)
    if new_cart is not None:
        return cart_response(new_cart, token)
    return cart_response(services.cart_service.set_shipping_rate(token, body), token)


@router.post("/cart/checkout", response_model=CheckoutResponse)
def checkout(
    body: CheckoutRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services)
):
    """
    Charge the cart and close it.
    Confirmation emails are sent after the response.
    """
    outcome = services.checkout_service.checkout(
        request_token(request), body, schedule=background_tasks.add_task
    )
    request.state.event_name = "CheckoutCompleted"
    return with_cart_token(
        JSONResponse(content=CheckoutResponse(transactionId=outcome.payment.id).model_dump()),
        outcome.cart_token,
    )


@router.post("/cart/paypal/create", response_model=PayPalOrderResponse)
def create_paypal_order(request: Request, services: Services = Depends(get_services)):
    """Create a PayPal order for the cart; the client has the buyer approve it."""
    token = request_token(request)
    order_id = services.checkout_service.create_paypal_order(token)
    return with_cart_token(
        JSONResponse(content=PayPalOrderResponse(paymentToken=order_id).model_dump()), token
    )


@router.post("/cart/paypal/execute", response_model=CheckoutResponse)
def execute_paypal_payment(
    body: PayPalExecuteRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services)
):
    """Capture the approved PayPal order and close the cart."""
    checkout_request = CheckoutRequest(
        nonce=body.paymentToken, **body.model_dump(exclude={"paymentToken"})
    )
    outcome = services.checkout_service.checkout_paypal(
        request_token(request), checkout_request, schedule=background_tasks.add_task
    )
    request.state.event_name = "CheckoutCompleted"
    return with_cart_token(
        JSONResponse(content=CheckoutResponse(transactionId=outcome.payment.id).model_dump()),
        outcome.cart_token,
    )


@router.api_route("/cart/{param:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE"])
def cart_not_found(param: str):
    raise HTTPException(status_code=404, detail="Not Found")


# Payment admin endpoints
@router.get("/payments", response_model=PaymentListResponse)
def list_payments(
    limit: int = Query(25, ge=1, le=100),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services)
):
    return PaymentListResponse(
        data=services.payments.list(limit=limit, offset=offset),
        total=services.payments.count(),
        limit=limit,
        offset=offset,
    )


@router.get("/payment")
def get_payment(id: str = Query(...), services: Services = Depends(get_services)):
    detail = services.labels.get_payment_detail(id)
    return JSONResponse(content=detail.model_dump(mode="json", by_alias=True))


@router.post("/payment/shipping/order")
def create_shipping_order(body: PaymentIdRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Create the carrier order for a payment (needed for packing slips)."""
    return services.labels.create_order(body.id)


@router.post("/payment/shipping/packingslip")
def get_packing_slip(body: PaymentIdRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Packing slip for a paid order; the carrier order is created first if needed."""
    return services.labels.get_packing_slip(body.id)


@router.post("/payment/shipping/label")
def purchase_shipping_label(body: ShippingLabelRequest, services: Services = Depends(get_services)) -> Dict[str, Any]:
    data = body.model_dump(exclude={"id"})
    return services.labels.purchase_label(body.id, data)


@router.get("/payment/shipping/label")
def get_shipping_label(id: str = Query(..., description="Label transaction id"),
                       services: Services = Depends(get_services)) -> Dict[str, Any]:
    return services.labels.get_label(id)


@router.delete("/payment/shipping/label")
def delete_shipping_label(id: str = Query(..., description="Payment id"),
                          services: Services = Depends(get_services)) -> Dict[str, Any]:
    services.labels.clear_label(id)
    return {"id": id}


# Product admin endpoints
@router.get("/products", response_model=ProductListResponse)
def list_products(
    limit: int = Query(25, ge=1, le=100),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services)
):
    return ProductListResponse(
        data=services.catalog.list(limit=limit, offset=offset),
        total=services.catalog.count(),
        limit=limit,
        offset=offset,
    )


@router.get("/product", response_model=Product)
def get_product(id: str = Query(...), services: Services = Depends(get_services)):
    return services.catalog.require(id)


@router.post("/product", response_model=Product)
def create_product(body: Product, services: Services = Depends(get_services)):
    if services.catalog.get(body.id) is not None:
        raise ValidationError(f"Product already exists: {body.id}")
    return services.catalog.save(body)


@router.put("/product", response_model=Product)
def update_product(body: Product, services: Services = Depends(get_services)):
    """Replace a product; inventory counts are reset to the ones sent."""
    services.catalog.require(body.id)
    return services.catalog.save(body)


@router.delete("/product")
def delete_product(id: str = Query(...), services: Services = Depends(get_services)) -> Dict[str, Any]:
    services.catalog.delete(id)
    return {"id": id}


# Sales tax admin endpoints
@router.get("/taxes", response_model=TaxRateListResponse)
def list_tax_rates(services: Services = Depends(get_services)):
    return TaxRateListResponse(data=services.tax_rates.list())


@router.get("/tax", response_model=TaxRate)
def get_tax_rate(id: str = Query(...), services: Services = Depends(get_services)):
    return services.tax_rates.require(id)


@router.post("/tax", response_model=TaxRate)
def create_tax_rate(body: TaxRate, services: Services = Depends(get_services)):
    if services.tax_rates.get(body.id) is not None:
        raise ValidationError(f"Tax rate already exists: {body.id}")
    return services.tax_rates.save(body)


@router.put("/tax", response_model=TaxRate)
def update_tax_rate(body: TaxRate, services: Services = Depends(get_services)):
    return services.tax_rates.update(body)


@router.delete("/tax")
def delete_tax_rate(id: str = Query(...), services: Services = Depends(get_services)) -> Dict[str, Any]:
    services.tax_rates.delete(id)
    return {"id": id}


# Error handlers

def error_response(request: Request, status_code: int, content: Dict[str, Any]) -> JSONResponse:
    token = getattr(request.state, "cart_token", None)
    logger.warning(
        f"{request.method} {request.url.path} -> {status_code}: {content.get('message')}",
        extra={
            "status_code": status_code,
            "hashed_cart_id": hash_identifier(token) if token else None
        }
    )
    return with_cart_token(JSONResponse(status_code=status_code, content=content), token)


async def validation_error_handler(request: Request, exc: ValidationError):
    return error_response(request, 400, {"error": "Validation error", "message": str(exc)})


async def not_found_handler(request: Request, exc: Exception):
    return error_response(request, 404, {"error": "Not found", "message": str(exc)})


async def cart_conflict_handler(request: Request, exc: CartNotActiveError):
    return error_response(request, 409, {"error": "Cart not active", "message": str(exc)})


async def totals_mismatch_handler(request: Request, exc: CartTotalsMismatchError):
    return error_response(request, 409, {"error": "Cart totals out of date", "message": str(exc)})


async def payment_error_handler(request: Request, exc: PaymentError):
    content: Dict[str, Any] = {"error": "Payment declined", "message": exc.message}
    if exc.errors is not None:
        content["errors"] = exc.errors
    return error_response(request, 402, content)


async def shipping_error_handler(request: Request, exc: ShippingGatewayError):
    return error_response(
        request, 502, {"error": "Shipping carrier error", "message": exc.message, "details": exc.payload}
    )


async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Service not configured: {exc}")
    return error_response(request, 503, {"error": "Service unavailable", "message": str(exc)})


async def redis_error_handler(request: Request, exc: RedisConnectionError):
    logger.error(f"Redis failure: {exc}", exc_info=exc)
    return error_response(request, 503, {"error": "Service unavailable", "message": "Redis connection failed"})


async def generic_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {type(exc).__name__}: {exc}", exc_info=exc)
    return error_response(
        request, 500, {"error": "Internal server error", "message": str(exc), "type": type(exc).__name__}
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the application around an explicit set of services."""
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        logger.info("Shutting down, closing Redis connections")
        app.state.services.redis.close()

    app = FastAPI(
        title="Storefront API",
        description="Shopping cart, checkout and store admin API",
        version="1.0.0",
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Cart-Token", "X-Request-ID"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.state.services = services or build_services()
    app.include_router(router)

    app.add_exception_handler(ValidationError, validation_error_handler)
    for exc_class in (CartNotFoundError, CartItemNotFoundError, ProductNotFoundError, PaymentNotFoundError,
                      TaxRateNotFoundError):
        app.add_exception_handler(exc_class, not_found_handler)
    app.add_exception_handler(CartNotActiveError, cart_conflict_handler)
    app.add_exception_handler(CartTotalsMismatchError, totals_mismatch_handler)
    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_exception_handler(ShippingGatewayError, shipping_error_handler)
    app.add_exception_handler(ConfigurationError, configuration_error_handler)
    app.add_exception_handler(RedisConnectionError, redis_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("storefront.main:create_app", factory=True, host="0.0.0.0", port=Config.APP_PORT)
