from __future__ import annotations

import hmac
import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

from notion_relay.settings import Settings

logger = logging.getLogger("uvicorn.error")

PROTECTED_PATH_PREFIXES = ("/v1", "/cookies", "/proxies")


class AuthConfigurationError(RuntimeError):
    """Raised when the relay is started without a usable auth token."""


class Authenticator:
    def __init__(self, settings: Settings):
        token = (settings.proxy_auth_token or "").strip()
        if not token:
            raise AuthConfigurationError(
                "PROXY_AUTH_TOKEN is empty; refusing to start without ingress auth.",
            )
        if token == "default_token":
            logger.warning("auth_default_token_in_use set PROXY_AUTH_TOKEN to a secret value")
        self._token = token

    @staticmethod
    def protects(path: str) -> bool:
        return path.startswith(PROTECTED_PATH_PREFIXES)

    def authenticate_request(self, request: Request) -> JSONResponse | None:
        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            logger.warning(
                "auth_failed path=%s reason=missing_bearer_token", request.url.path
            )
            return _unauthorized(
                "Authentication required. Please provide a valid Bearer token."
            )

        if not hmac.compare_digest(token.strip().encode(), self._token.encode()):
            logger.warning("auth_failed path=%s reason=invalid_token", request.url.path)
            return _unauthorized("Invalid authentication credentials")

        return None


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
            },
        },
    )
