from __future__ import annotations

import hmac
import logging
from typing import Protocol

from fastapi import Request
from fastapi.responses import JSONResponse

from llm_proxy.errors import AdminAuthError, AuthConfigurationError
from llm_proxy.runtime.store import OperationalStore
from llm_proxy.settings import Settings

logger = logging.getLogger("uvicorn.error")


class AdminAuthenticator(Protocol):
    async def authenticate_request(self, request: Request) -> JSONResponse | None: ...


class CredentialAdminAuthenticator:
    """Bearer check against the stored admin credential and the static one.

    With neither configured every request is rejected.
    """

    def __init__(self, settings: Settings, store: OperationalStore):
        self.static_password = settings.admin_password_value
        self.store = store

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        bearer_token = token.strip()
        if scheme.lower() != "bearer" or not bearer_token:
            return unauthorized_response()

        for candidate in await self._credentials():
            if _constant_time_equals(bearer_token, candidate):
                return None

        logger.warning("admin_auth_rejected path=%s", request.url.path)
        return unauthorized_response()

    async def _credentials(self) -> list[str]:
        credentials: list[str] = []
        try:
            config = await self.store.get_config()
        except Exception as exc:
            logger.error("admin_auth_store_read_failed error=%s", exc)
        else:
            stored = config.get("adminPassword")
            if isinstance(stored, str) and stored.strip():
                credentials.append(stored.strip())
        if self.static_password:
            credentials.append(self.static_password)
        return credentials


class AllowAllAdminAuthenticator:
    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        return None


def build_admin_authenticator(
    settings: Settings,
    store: OperationalStore,
) -> AdminAuthenticator:
    if settings.admin_auth_mode == "disabled":
        if settings.is_production:
            raise AuthConfigurationError(
                "ADMIN_AUTH_MODE=disabled is not allowed when ENVIRONMENT=production.",
            )
        logger.warning(
            "admin_auth_disabled environment=%s reason=every admin request is allowed",
            settings.environment,
        )
        return AllowAllAdminAuthenticator()

    if not settings.admin_password_value:
        logger.info(
            "admin_auth_static_credential_missing fallback=stored adminPassword only",
        )
    return CredentialAdminAuthenticator(settings, store)


def _constant_time_equals(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def unauthorized_response() -> JSONResponse:
    error = AdminAuthError("Unauthorized")
    return JSONResponse(
        status_code=error.status_code,
        headers={"WWW-Authenticate": "Bearer"},
        content=error.to_payload(),
    )
