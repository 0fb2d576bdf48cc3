import logging
import re
import time
from uuid import uuid4

from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

# /<project>/<region>/<function>/path, as seen behind a cloud-function emulator.
# Only stripped when something follows, so /api/admin/digest survives.
FUNCTION_PREFIX = re.compile(r"^/[^/]+/[^/]+/[^/]+(?=/)")
API_PREFIX = re.compile(r"^/api(?=/|$)")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "X-DNS-Prefetch-Control": "off",
}


def normalize_path(path: str) -> str:
    if FUNCTION_PREFIX.match(path):
        path = FUNCTION_PREFIX.sub("", path, count=1) or "/"
    return API_PREFIX.sub("", path, count=1) or "/"


class PathNormalizeMiddleware:
    """Strips hosting prefixes so routes match however the request was proxied."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            path = normalize_path(scope["path"])
            if path != scope["path"]:
                logger.debug(f"ROUTE: Normalized {scope['path']} -> {path}")
                scope = dict(scope)
                scope["path"] = path
                scope["raw_path"] = path.encode("utf-8")
        await self.app(scope, receive, send)


class BodySizeLimitMiddleware:
    """
    Rejects requests whose body is larger than max_bytes.

    A declared Content-Length is refused up front. Otherwise (chunked uploads)
    the body is read and counted before the app sees it, then replayed.
    """

    def __init__(self, app, max_bytes: int):
        self.app = app
        self.max_bytes = max_bytes

    async def _reject(self, scope, receive, send, size):
        logger.warning(f"INGRESS: Rejected {size} byte body on {scope['path']}")
        response = JSONResponse({"error": "Payload too large."}, status_code=413)
        await response(scope, receive, send)

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        declared = Headers(scope=scope).get("content-length")
        if declared and declared.isdigit() and int(declared) > self.max_bytes:
            await self._reject(scope, receive, send, declared)
            return

        messages = []
        received = 0
        while True:
            message = await receive()
            messages.append(message)
            if message["type"] != "http.request":
                break
            received += len(message.get("body", b""))
            if received > self.max_bytes:
                await self._reject(scope, receive, send, f">{self.max_bytes}")
                return
            if not message.get("more_body", False):
                break

        async def replay():
            if messages:
                return messages.pop(0)
            return await receive()

        await self.app(scope, replay, send)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tags every request with a short id, echoes it in X-Request-ID and logs
    method, path, origin, status and duration once the response is ready.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = uuid4().hex[:16]
        request.state.request_id = request_id
        start_time = time.time()

        response = await call_next(request)

        response.headers["X-Request-ID"] = request_id
        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            f"REQUEST: id={request_id} {request.method} {request.url.path} "
            f"origin={request.headers.get('origin', 'unknown')} "
            f"status={response.status_code} duration_ms={duration_ms:.2f}"
        )
        return response
