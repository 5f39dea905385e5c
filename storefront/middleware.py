"""
Request logging middleware.

Every request gets a request id and is logged on the way in and out with
its latency and the hashed cart token, never the token itself.
"""
import time
import uuid
import hashlib
import logging
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from storefront.cart_token import resolve_token

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def hash_identifier(identifier: str) -> str:
    """Hash identifier for logging (no PII)"""
    return hashlib.sha256(identifier.encode()).hexdigest()[:8]


def _hashed(token: Optional[str]) -> Optional[str]:
    return hash_identifier(token) if token else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs requests, responses and unhandled errors; sets latency and request id headers"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.time()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        incoming_cart = _hashed(resolve_token(request.headers.get("cookie")))

        logger.info(
            f"Request: {request.method} {request.url.path}",
            extra={
                "request_id": request_id,
                "hashed_cart_id": incoming_cart,
                "remote_addr": request.client.host if request.client else None
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"Error: {request.method} {request.url.path}",
                extra={
                    "request_id": request_id,
                    "error_type": type(e).__name__,
                    "hashed_cart_id": incoming_cart
                },
                exc_info=True
            )
            raise

        latency_ms = round((time.time() - start_time) * 1000, 2)
        # The route may have issued a new cart; log the token actually used
        served_cart = _hashed(getattr(request.state, "cart_token", None)) or incoming_cart

        logger.info(
            f"Response: {request.method} {request.url.path} {response.status_code}",
            extra={
                "request_id": request_id,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
                "hashed_cart_id": served_cart,
                "new_cart": served_cart != incoming_cart
            }
        )

        response.headers["X-Response-Time-Ms"] = f"{latency_ms:.2f}"
        response.headers[REQUEST_ID_HEADER] = request_id

        event = getattr(request.state, "event_name", None)
        if event:
            logger.info(f"Event: {event}", extra={"request_id": request_id, "hashed_cart_id": served_cart})

        return response
