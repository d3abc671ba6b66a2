"""Client-credentials token cache for the KiotViet public API."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import httpx
import structlog

from kiotviet_sync.config import SyncSettings
from kiotviet_sync.errors import AuthenticationError, AuthFailureKind

logger = structlog.get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class AccessToken:
    access_token: str
    token_type: str
    expires_at: datetime

    def is_valid(self, now: datetime, safety_margin: float) -> bool:
        return now < self.expires_at - timedelta(seconds=safety_margin)


class CredentialManager:
    """
    Obtains and caches one bearer token per instance.

    Concurrent callers share a single exchange. A downstream 401 should be
    followed by ``invalidate()`` and exactly one retry.
    """

    def __init__(
        self,
        settings: SyncSettings,
        http: httpx.AsyncClient,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self._http = http
        self._now = now or _utcnow
        self._token: Optional[AccessToken] = None
        self._lock = asyncio.Lock()
        self.exchange_count = 0

    @property
    def cached_token(self) -> Optional[AccessToken]:
        return self._token

    async def get_token(self) -> AccessToken:
        """Return a valid cached token, exchanging credentials when needed"""
        self.settings.require_credentials()

        token = self._token
        if token and token.is_valid(self._now(), self.settings.token_safety_margin):
            return token

        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self._token
            if token and token.is_valid(self._now(), self.settings.token_safety_margin):
                return token
            self._token = await self._exchange()
            return self._token

    def invalidate(self) -> None:
        if self._token is not None:
            logger.info("access_token_invalidated")
        self._token = None

    def reset(self) -> None:
        """Drop all cached state, e.g. after credential rotation"""
        self._token = None
        self.exchange_count = 0

    async def auth_headers(self) -> Dict[str, str]:
        token = await self.get_token()
        return {
            "Authorization": f"Bearer {token.access_token}",
            "Retailer": self.settings.retailer_name or "",
        }

    async def _exchange(self) -> AccessToken:
        settings = self.settings
        self.exchange_count += 1
        logger.info("token_exchange_started", token_url=settings.token_url, scope=settings.scope)

        try:
            response = await self._http.post(
                settings.token_url,
                data={
                    "grant_type": "client_credentials",
                    "client_id": settings.client_id,
                    "client_secret": settings.client_secret,
                    "scopes": settings.scope,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=settings.token_timeout,
            )
        except httpx.TransportError as exc:
            logger.error("token_exchange_network_error", error=str(exc))
            raise AuthenticationError(
                f"Could not reach token endpoint: {exc}", AuthFailureKind.NETWORK
            ) from exc

        status = response.status_code
        if status in (400, 401, 403):
            logger.error("token_exchange_rejected", status_code=status)
            raise AuthenticationError(
                "Invalid KiotViet credentials. Please check your client ID and secret.",
                AuthFailureKind.INVALID_CREDENTIALS,
                status,
            )
        if status >= 500:
            logger.error("token_exchange_server_error", status_code=status)
            raise AuthenticationError(
                f"Token endpoint server error: {status}", AuthFailureKind.SERVER_ERROR, status
            )
        if status >= 400:
            raise AuthenticationError(
                f"Token exchange failed: {status}", AuthFailureKind.INVALID_CREDENTIALS, status
            )

        try:
            payload = response.json()
            access_token = payload["access_token"]
            expires_in = float(payload.get("expires_in", 0))
        except (ValueError, KeyError, TypeError) as exc:
            raise AuthenticationError(
                "Token endpoint returned an unexpected payload", AuthFailureKind.MALFORMED_RESPONSE, status
            ) from exc
        if not access_token:
            raise AuthenticationError(
                "Token endpoint returned an empty access token", AuthFailureKind.MALFORMED_RESPONSE, status
            )

        token = AccessToken(
            access_token=access_token,
            token_type=payload.get("token_type") or "Bearer",
            expires_at=self._now() + timedelta(seconds=expires_in),
        )
        logger.info("token_exchange_succeeded", expires_at=token.expires_at.isoformat())
        return token
