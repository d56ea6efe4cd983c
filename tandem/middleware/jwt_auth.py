"""JWT verification middleware for FastAPI.

Validates the Bearer token on every request (except public routes),
extracts claims, and sets ``request.state.auth`` with the authenticated
caller that route handlers consume via ``get_current_user``.

Keys come from a static PEM (``jwt_public_key``) when configured, otherwise
from the JWKS endpoint (Google's certs by default, for Google ID tokens).
"""

from __future__ import annotations

import logging
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from jwt import PyJWKClient
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from tandem.config import Settings, get_settings
from tandem.dependencies import AuthContext

logger = logging.getLogger("tandem.auth")

# Paths that do not require authentication
PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
}


def _is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith("/docs") or path.startswith("/redoc")


def _unauthorized(detail: str) -> Response:
    return Response(
        content=f'{{"detail":"{detail}"}}',
        status_code=401,
        media_type="application/json",
        headers={"WWW-Authenticate": "Bearer"},
    )


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Verify Bearer JWTs and populate request.state.auth."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()
        self._jwks_client: PyJWKClient | None = None
        if not self._settings.jwt_public_key:
            self._jwks_client = PyJWKClient(
                self._settings.jwt_jwks_url,
                cache_keys=True,
                lifespan=3600,
            )

    def _signing_key(self, token: str) -> Any:
        if self._jwks_client is None:
            return self._settings.jwt_public_key
        return self._jwks_client.get_signing_key_from_jwt(token).key

    def decode(self, token: str) -> dict[str, Any]:
        """Verify signature, expiry and (when configured) issuer/audience.

        Raises:
            jwt.PyJWTError: On any verification failure.
        """
        s = self._settings
        return pyjwt.decode(
            token,
            self._signing_key(token),
            algorithms=s.jwt_algorithms,
            audience=s.jwt_audience,
            issuer=s.jwt_issuer,
            options={
                "verify_aud": s.jwt_audience is not None,
                "require": ["sub", "exp"],
            },
        )

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if _is_public(request.url.path):
            return await call_next(request)

        # OPTIONS requests pass through (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return _unauthorized("Missing or invalid Authorization header")

        token = auth_header.removeprefix("Bearer ").strip()

        try:
            payload = self.decode(token)
        except pyjwt.ExpiredSignatureError:
            return _unauthorized("Token expired")
        except pyjwt.PyJWTError as exc:
            logger.warning("JWT validation failed: %s", exc)
            return _unauthorized("Invalid token")

        subject = str(payload.get("sub") or "").strip()
        if not subject:
            logger.warning("JWT without subject rejected")
            return _unauthorized("Invalid token")

        request.state.auth = AuthContext(
            user_id=subject,
            email=payload.get("email"),
            session_id=payload.get("sid"),
        )

        return await call_next(request)
