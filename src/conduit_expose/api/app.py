"""HTTP boundary serving the latest snapshot.

Routes:
- GET /health: liveness, no auth
- GET /status: latest snapshot, requires the X-Conduit-Auth header
"""

from __future__ import annotations

import hmac
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from conduit_expose import __version__
from conduit_expose.core.constants import AUTH_HEADER
from conduit_expose.orchestrator import StatusCache

logger = logging.getLogger(__name__)


def is_authorized(token: str | None, secret: str) -> bool:
    """Constant-time comparison of the request token with the shared secret."""
    if token is None:
        return False
    return hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


def create_app(cache: StatusCache, secret: str) -> FastAPI:
    """Build the FastAPI application around a status cache.

    Args:
        cache: Cache the poller publishes into
        secret: Shared secret expected in the X-Conduit-Auth header

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(title="conduit-expose", version=__version__)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/status")
    def status(request: Request) -> JSONResponse:
        if not is_authorized(request.headers.get(AUTH_HEADER), secret):
            logger.debug(f"Rejected /status request from {request.client}")
            return JSONResponse(status_code=401, content={"error": "unauthorized"})

        snapshot = cache.get()
        if snapshot is None:
            return JSONResponse(status_code=503, content={"error": "data not yet available"})
        return JSONResponse(content=snapshot.to_json_dict())

    return app
