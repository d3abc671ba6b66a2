"""Authenticated, rate-governed access to KiotViet catalog endpoints."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from kiotviet_sync.auth import CredentialManager
from kiotviet_sync.config import SyncSettings
from kiotviet_sync.errors import (
    AuthenticationError,
    AuthFailureKind,
    ErrorCategory,
    ProviderError,
    RateLimitExceeded,
    RetryPolicy,
    TokenRejectedError,
    raise_for_provider_status,
)
from kiotviet_sync.models import EntityKind, Page
from kiotviet_sync.rate_limit import RateGovernor

logger = structlog.get_logger(__name__)


def build_http_client(settings: SyncSettings) -> httpx.AsyncClient:
    """HTTP/2 client with connection pooling"""
    return httpx.AsyncClient(
        http2=True,
        limits=httpx.Limits(
            max_keepalive_connections=10,
            max_connections=20,
            keepalive_expiry=30,
        ),
        timeout=httpx.Timeout(settings.request_timeout, pool=5.0),
    )


class KiotVietClient:
    """
    Every request spends one slot of the rate budget, including retries.

    A 401 invalidates the cached token and the request is repeated once with a
    fresh one. Transient failures are retried with exponential backoff.
    """

    def __init__(
        self,
        settings: SyncSettings,
        credentials: CredentialManager,
        governor: RateGovernor,
        http: httpx.AsyncClient,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.credentials = credentials
        self.governor = governor
        self._http = http
        self._sleep = sleep or asyncio.sleep
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.max_retries,
            initial_delay=settings.retry_delay,
        )
        self.request_count = 0

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.settings.base_url}{endpoint}"
        token_refreshed = False
        attempt = 0

        while True:
            await self.governor.acquire()
            headers = await self.credentials.auth_headers()
            self.request_count += 1
            try:
                response = await self._http.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=self.settings.request_timeout,
                )
                raise_for_provider_status(response)
                try:
                    return response.json()
                except ValueError as exc:
                    raise ProviderError(
                        f"Invalid JSON from {endpoint}", ErrorCategory.VALIDATION, response.status_code
                    ) from exc

            except TokenRejectedError as exc:
                if token_refreshed:
                    logger.error("fresh_token_rejected", endpoint=endpoint)
                    raise AuthenticationError(
                        "KiotViet rejected a freshly issued access token",
                        AuthFailureKind.TOKEN_REJECTED,
                        401,
                    ) from exc
                logger.warning("token_rejected_retrying", endpoint=endpoint)
                self.credentials.invalidate()
                token_refreshed = True

            except (ProviderError, httpx.TransportError) as exc:
                attempt += 1
                if not self.retry_policy.should_retry(exc) or attempt >= self.retry_policy.max_attempts:
                    raise self._final_error(exc, endpoint) from exc
                retry_after = getattr(exc, "retry_after", None)
                delay = self.retry_policy.calculate_delay(attempt - 1, retry_after)
                logger.warning(
                    "request_retry",
                    endpoint=endpoint,
                    attempt=attempt,
                    max_attempts=self.retry_policy.max_attempts,
                    delay_seconds=round(delay, 2),
                    error=str(exc),
                )
                await self._sleep(delay)

    @staticmethod
    def _final_error(exc: BaseException, endpoint: str) -> Exception:
        if isinstance(exc, ProviderError):
            if exc.category == ErrorCategory.RATE_LIMIT:
                return RateLimitExceeded(
                    f"KiotViet rate limit exceeded on {endpoint}", retry_after=exc.retry_after
                )
            return exc
        return ProviderError(f"Network error on {endpoint}: {exc}", ErrorCategory.NETWORK)

    async def get_page(self, entity: EntityKind, params: Dict[str, Any], page_size: int) -> Page:
        payload = await self.get(entity.endpoint, params=params)
        try:
            return Page.from_api(payload, page_size)
        except ValueError as exc:
            raise ProviderError(str(exc), ErrorCategory.VALIDATION) from exc

    async def check_connection(self) -> Dict[str, Any]:
        """Authenticate and read one category page without raising"""
        try:
            await self.credentials.get_token()
            page = await self.get_page(
                EntityKind.CATEGORY, {"pageSize": 1, "currentItem": 0}, page_size=1
            )
        except Exception as exc:  # reported to the caller, not raised
            logger.error("connection_check_failed", error=str(exc))
            return {
                "success": False,
                "message": f"Connection failed: {exc}",
                "details": {"errorType": type(exc).__name__},
            }
        return {
            "success": True,
            "message": "Connection successful",
            "details": {
                "categoriesAvailable": page.total,
                "retailer": self.settings.retailer_name,
                "rateLimit": self.governor.stats(),
                "requestsMade": self.request_count,
                "tokenExchanges": self.credentials.exchange_count,
            },
        }
