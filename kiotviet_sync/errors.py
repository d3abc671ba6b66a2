"""
Error kinds and retry policy for the KiotViet catalog sync engine.

Only ConfigurationError and AuthenticationError abort a sync invocation.
Everything else degrades into an entry in the result's error list.
"""

from __future__ import annotations

import random
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type

import httpx


class ErrorCategory(Enum):
    """Categories of errors for appropriate handling"""
    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    NOT_FOUND = "not_found"
    VALIDATION = "validation"
    SERVER_ERROR = "server_error"
    FETCH = "fetch"
    RECORD = "record"
    UNKNOWN = "unknown"


class AuthFailureKind(Enum):
    """Why a credential exchange (or its use) failed"""
    INVALID_CREDENTIALS = "invalid_credentials"
    SERVER_ERROR = "server_error"
    NETWORK = "network"
    MALFORMED_RESPONSE = "malformed_response"
    TOKEN_REJECTED = "token_rejected"


class SyncError(Exception):
    """Base exception for sync engine errors"""
    category: ErrorCategory = ErrorCategory.UNKNOWN

    def __init__(self, message: str, category: Optional[ErrorCategory] = None):
        super().__init__(message)
        if category is not None:
            self.category = category
        self.timestamp = datetime.now(timezone.utc)


class ConfigurationError(SyncError):
    """Credentials or settings are missing; raised before any network call"""
    category = ErrorCategory.CONFIGURATION

    def __init__(self, message: str, missing: Tuple[str, ...] = ()):
        super().__init__(message)
        self.missing = missing


class AuthenticationError(SyncError):
    """The client-credentials exchange was rejected or a fresh token was refused"""
    category = ErrorCategory.AUTHENTICATION

    def __init__(self, message: str, kind: AuthFailureKind, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code

    @property
    def is_transient(self) -> bool:
        return self.kind in (AuthFailureKind.SERVER_ERROR, AuthFailureKind.NETWORK)


class RateLimitExceeded(SyncError):
    """Request budget exhausted and the caller would not wait for the window"""
    category = ErrorCategory.RATE_LIMIT

    def __init__(self, message: str = "Rate limit exceeded", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TokenRejectedError(SyncError):
    """Downstream call answered 401; the cached token must be discarded"""
    category = ErrorCategory.AUTHENTICATION


class ProviderError(SyncError):
    """Catalog API answered with an error status or could not be reached"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, category)
        self.status_code = status_code
        self.retry_after = retry_after

    @property
    def is_transient(self) -> bool:
        return self.category in (
            ErrorCategory.NETWORK,
            ErrorCategory.SERVER_ERROR,
            ErrorCategory.RATE_LIMIT,
        )


class FetchError(SyncError):
    """A specific page or category failed to fetch"""
    category = ErrorCategory.FETCH

    def __init__(
        self,
        message: str,
        entity: str,
        offset: int,
        category_id: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.entity = entity
        self.offset = offset
        self.category_id = category_id
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": f"{self.entity}@{self.offset}" if self.category_id is None
            else f"{self.entity}@{self.offset}/category:{self.category_id}",
            "message": str(self),
            "kind": self.category.value,
        }


class RecordSyncError(SyncError):
    """One record's upsert failed"""
    category = ErrorCategory.RECORD

    def __init__(self, message: str, external_id: Any):
        super().__init__(message)
        self.external_id = external_id

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.external_id, "message": str(self), "kind": self.category.value}


FATAL_ERRORS: Tuple[Type[SyncError], ...] = (ConfigurationError, AuthenticationError)


class RetryPolicy:
    """Exponential backoff with optional jitter for transient provider failures"""

    def __init__(
        self,
        max_attempts: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
    ):
        self.max_attempts = max(1, max_attempts)
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def calculate_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay before retry number ``attempt`` (0-based)"""
        if retry_after:
            return min(retry_after, self.max_delay)
        delay = min(
            self.initial_delay * (self.exponential_base ** attempt),
            self.max_delay,
        )
        if self.jitter:
            delay *= (0.5 + random.random())
        return delay

    def should_retry(self, exc: BaseException) -> bool:
        if isinstance(exc, FATAL_ERRORS):
            return False
        if isinstance(exc, ProviderError):
            return exc.is_transient
        return isinstance(exc, httpx.TransportError)


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_provider_status(response: httpx.Response, api_name: str = "KiotViet API") -> None:
    """
    Raise the typed error matching an HTTP response status.

    Args:
        response: HTTP response object
        api_name: Name of the API for error messages
    """
    status = response.status_code
    if status < 400:
        return

    if status == 401:
        raise TokenRejectedError(f"{api_name} rejected the access token")
    if status == 429:
        raise ProviderError(
            f"{api_name} rate limit exceeded",
            ErrorCategory.RATE_LIMIT,
            status,
            _retry_after(response),
        )
    if status == 404:
        raise ProviderError(f"{api_name} resource not found", ErrorCategory.NOT_FOUND, status)
    if 500 <= status < 600:
        raise ProviderError(f"{api_name} server error: {status}", ErrorCategory.SERVER_ERROR, status)
    raise ProviderError(f"{api_name} client error: {status}", ErrorCategory.VALIDATION, status)
