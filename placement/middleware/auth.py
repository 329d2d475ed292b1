"""Coarse gate in front of the API: every /api request must carry a bearer token.

Routes still decode and check the token; this only turns away anonymous calls
before a database connection is opened for them.
"""

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

API_PREFIX = "/api/"


def _has_bearer(request: Request) -> bool:
    scheme, _, token = request.headers.get("Authorization", "").partition(" ")
    return scheme.lower() == "bearer" and bool(token.strip())


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        # Docs, schema and /health live outside /api
        if not request.url.path.startswith(API_PREFIX) or request.method == "OPTIONS":
            return await call_next(request)

        if _has_bearer(request):
            return await call_next(request)

        return JSONResponse(status_code=401, content={"detail": "Not authenticated"})
