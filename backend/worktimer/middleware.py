from __future__ import annotations

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from .config import settings

PUBLIC_PATHS = {"/healthz", "/docs", "/openapi.json", "/redoc"}


class IdentityMiddleware(BaseHTTPMiddleware):
    """Attach the caller identity supplied by the upstream identity provider."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[override]
        if request.url.path in PUBLIC_PATHS:
            return await call_next(request)
        user_id = (request.headers.get(settings.user_id_header) or "").strip()
        if not user_id:
            return JSONResponse({"detail": "Missing user identity"}, status_code=401)
        user_name = (request.headers.get(settings.user_name_header) or "").strip() or None
        request.state.user_id = user_id
        request.state.user_name = user_name
        return await call_next(request)
