# shopguard/services/supabase_auth.py
"""
Auth provider backed by the hosted backend's GoTrue REST API.

Endpoints used:
- POST /auth/v1/token?grant_type=password
- POST /auth/v1/token?grant_type=refresh_token
- POST /auth/v1/signup
- POST /auth/v1/logout
- GET  /auth/v1/user

The REST API does not push events, so this adapter emits SIGNED_IN,
SIGNED_OUT and TOKEN_REFRESHED itself after each successful call.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import httpx

from shopguard.core.exceptions import (
    AuthError,
    NetworkError,
    credentials_error,
    rate_limit_error,
)
from shopguard.core.service_base import BaseService, ServiceConfig
from shopguard.core.timeutils import Clock, parse_timestamp, utcnow
from shopguard.models.session import AuthEventPayload, AuthEventType
from shopguard.services.auth_provider import AuthProvider

logger = logging.getLogger(__name__)

AUTH_PATH = "/auth/v1"


def _json(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class SupabaseAuthProvider(BaseService[ServiceConfig], AuthProvider):
    """GoTrue-backed AuthProvider"""

    def __init__(
        self,
        config: ServiceConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utcnow
    ):
        BaseService.__init__(self, config, transport=transport, logger=logger)
        AuthProvider.__init__(self)
        self._clock = clock
        self._session: Optional[AuthEventPayload] = None

    # ===========================================
    # RESPONSE MAPPING
    # ===========================================

    def _payload_from_session(self, body: Dict[str, Any]) -> AuthEventPayload:
        user = body.get("user") or {}
        expires_at = parse_timestamp(body.get("expires_at"))
        if expires_at is None and body.get("expires_in") is not None:
            expires_at = self._clock() + timedelta(seconds=float(body["expires_in"]))
        return AuthEventPayload(
            user_id=user.get("id"),
            email=user.get("email"),
            last_sign_in_at=parse_timestamp(user.get("last_sign_in_at")),
            expires_at=expires_at,
            access_token=body.get("access_token"),
            refresh_token=body.get("refresh_token"),
        )

    def _raise_for_status(self, response: httpx.Response, operation: str) -> None:
        status = response.status_code
        if status < 400:
            return
        if status == 429:
            raise rate_limit_error(operation, float(response.headers.get("Retry-After", 60)))
        if status >= 500:
            raise NetworkError(
                f"Auth service returned {status}",
                service_name=self.service_name,
                operation=operation,
                details={'status': status}
            )
        raise AuthError(
            f"Auth service rejected {operation}",
            reason="rejected",
            details={'status': status}
        )

    @property
    def access_token(self) -> Optional[str]:
        """User access token for row-level-security requests"""
        return self._session.access_token if self._session else None

    def _user_headers(self) -> Dict[str, str]:
        token = self.access_token
        return {"Authorization": f"Bearer {token}"} if token else {}

    # ===========================================
    # PROVIDER INTERFACE
    # ===========================================

    async def sign_in_with_password(self, email: str, password: str) -> AuthEventPayload:
        response = await self._send(
            "POST", f"{AUTH_PATH}/token", "sign in",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if response.status_code in (400, 401, 422):
            # Never tell the caller which half of the credentials was wrong
            raise credentials_error()
        self._raise_for_status(response, "LOGIN")

        self._session = self._payload_from_session(_json(response))
        logger.info("🔑 Password sign-in accepted by auth service")
        await self._emit(AuthEventType.SIGNED_IN, self._session)
        return self._session

    async def sign_up(
        self,
        email: str,
        password: str,
        full_name: Optional[str] = None
    ) -> Optional[AuthEventPayload]:
        body: Dict[str, Any] = {"email": email, "password": password}
        if full_name:
            body["data"] = {"full_name": full_name}

        response = await self._send("POST", f"{AUTH_PATH}/signup", "sign up", json=body)
        if response.status_code in (400, 422):
            body_text = _json(response)
            message = str(body_text.get("msg") or body_text.get("error_description") or "").lower()
            if "registered" in message or "exists" in message:
                raise AuthError("User already registered", reason="exists")
            raise AuthError("Sign-up rejected", reason="rejected", details={'status': response.status_code})
        self._raise_for_status(response, "SIGN_UP")

        data = _json(response)
        if not data.get("access_token"):
            logger.info("📧 Sign-up accepted, confirmation e-mail pending")
            return None

        self._session = self._payload_from_session(data)
        await self._emit(AuthEventType.SIGNED_IN, self._session)
        return self._session

    async def sign_out(self) -> None:
        headers = self._user_headers()
        self._session = None
        if headers:
            response = await self._send("POST", f"{AUTH_PATH}/logout", "sign out", headers=headers)
            if response.status_code >= 500:
                self._raise_for_status(response, "sign out")
        await self._emit(AuthEventType.SIGNED_OUT, None)

    async def get_session(self) -> Optional[AuthEventPayload]:
        """Current session if the auth service still accepts its token"""
        if self._session is None:
            return None

        response = await self._send(
            "GET", f"{AUTH_PATH}/user", "get session", headers=self._user_headers()
        )
        if response.status_code in (401, 403):
            logger.info("🔒 Auth service no longer accepts the access token")
            self._session = None
            return None
        self._raise_for_status(response, "get session")

        user = _json(response)
        self._session = self._session.model_copy(update={
            "user_id": user.get("id") or self._session.user_id,
            "email": user.get("email") or self._session.email,
            "last_sign_in_at": parse_timestamp(user.get("last_sign_in_at")) or self._session.last_sign_in_at,
        })
        return self._session

    async def refresh_session(self) -> AuthEventPayload:
        if self._session is None or not self._session.refresh_token:
            raise AuthError("No session to refresh", reason="expired")

        response = await self._send(
            "POST", f"{AUTH_PATH}/token", "refresh session",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": self._session.refresh_token},
        )
        if response.status_code in (400, 401):
            self._session = None
            raise AuthError("Refresh token rejected", reason="expired")
        self._raise_for_status(response, "refresh session")

        self._session = self._payload_from_session(_json(response))
        await self._emit(AuthEventType.TOKEN_REFRESHED, self._session)
        return self._session

    async def close(self) -> None:
        await self.shutdown()

    async def health_check(self) -> Dict[str, Any]:
        try:
            response = await self._send("GET", f"{AUTH_PATH}/health", "health")
        except NetworkError as e:
            return {"healthy": False, "status": "unreachable", "details": {"error": e.message}}
        return {
            "healthy": response.status_code < 400,
            "status": "connected" if response.status_code < 400 else "degraded",
            "details": {"status_code": response.status_code},
        }
