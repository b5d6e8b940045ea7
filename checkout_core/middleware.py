"""
Request logging for the checkout API.

Shopper identifiers (session, cart, email) only ever reach the logs hashed.
"""
import hashlib
import logging
import time
import uuid
from typing import Callable, Optional, Tuple

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
TIMING_HEADER = "X-Response-Time-Ms"


def hash_identifier(identifier: str) -> str:
    """Short sha256 prefix, stable across processes"""
    return hashlib.sha256(identifier.encode()).hexdigest()[:8]


def checkout_target(path: str) -> Tuple[Optional[str], Optional[str]]:
    """
    Split a checkout path into (session id, step).

    /checkout/abc/zip -> ("abc", "zip"); /checkout/abc/merge/confirm ->
    ("abc", "merge/confirm"); anything outside /checkout/ -> (None, None).
    """
    parts = [p for p in path.split("/") if p]
    if len(parts) < 2 or parts[0] != "checkout" or parts[1] == "sessions":
        return None, None
    return parts[1], "/".join(parts[2:]) or "view"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Times each request and logs it against the checkout it drives"""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        started = time.perf_counter()
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]

        session_id, step = checkout_target(request.url.path)
        session_id = session_id or request.headers.get("X-Session-ID")
        cart_id = request.headers.get("X-Cart-ID")

        context = {
            "request_id": request_id,
            "route": f"{request.method} {request.url.path}",
            "checkout_step": step,
            "hashed_session_id": hash_identifier(session_id) if session_id else None,
            "hashed_cart_id": hash_identifier(cart_id) if cart_id else None,
        }

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                f"[{request_id}] {context['route']} raised {type(e).__name__}",
                extra={**context, "error": str(e)},
                exc_info=True
            )
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        label = f"step={step} " if step else ""
        logger.log(
            level,
            f"[{request_id}] {context['route']} {label}-> {status} in {elapsed_ms:.1f}ms",
            extra={**context, "status_code": status, "latency_ms": round(elapsed_ms, 2)}
        )

        response.headers[TIMING_HEADER] = f"{elapsed_ms:.2f}"
        response.headers[REQUEST_ID_HEADER] = request_id
        return response
