"""
Settings for the KiotViet catalog sync engine.

Values come from environment variables or a local .env file.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Union

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kiotviet_sync.errors import ConfigurationError

logger = structlog.get_logger(__name__)


def parse_category_names(value: Optional[str]) -> List[str]:
    """Split a comma-separated list of category names, keeping first occurrences"""
    if not value or not value.strip():
        return []
    names = [name.strip() for name in value.split(",")]
    return list(dict.fromkeys(name for name in names if name))


def parse_category_ids(value: Optional[str]) -> List[int]:
    """Split a comma-separated list of category ids, dropping anything not a positive int"""
    if not value or not value.strip():
        return []
    ids: List[int] = []
    for chunk in value.split(","):
        try:
            category_id = int(chunk.strip())
        except ValueError:
            continue
        if category_id > 0:
            ids.append(category_id)
    return list(dict.fromkeys(ids))


def parse_since(
    value: Union[str, date, datetime, None],
    now: Optional[datetime] = None,
) -> Optional[datetime]:
    """
    Validate an incremental sync cutoff.

    Accepts an ISO-8601 string, a date or a datetime. Naive values are taken
    as UTC. Future dates are rejected; dates older than a year only warn.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ValueError(f"Invalid date format: {value!r}") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    if parsed > now:
        raise ValueError(f"Date cannot be in the future: {parsed.isoformat()}")
    if parsed < now - timedelta(days=365):
        logger.warning("sync_date_older_than_one_year", since=parsed.isoformat())
    return parsed


class SyncSettings(BaseSettings):
    """Typed configuration for credentials, quotas, paging and storage"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    # Provider credentials
    retailer_name: Optional[str] = Field(None, alias="KIOTVIET_RETAILER_NAME")
    client_id: Optional[str] = Field(None, alias="KIOTVIET_CLIENT_ID")
    client_secret: Optional[str] = Field(None, alias="KIOTVIET_CLIENT_SECRET")
    scope: str = Field("PublicApi.Access", alias="KIOTVIET_SCOPE")
    token_url: str = Field("https://id.kiotviet.vn/connect/token", alias="KIOTVIET_TOKEN_URL")
    base_url: str = Field("https://public.kiotapi.com", alias="KIOTVIET_BASE_URL")
    token_safety_margin: int = Field(300, ge=0, alias="KIOTVIET_TOKEN_SAFETY_MARGIN")

    # Request budget
    max_requests_per_window: int = Field(4900, ge=1, alias="KIOTVIET_MAX_REQUESTS_PER_WINDOW")
    rate_window_seconds: float = Field(3600, gt=0, alias="KIOTVIET_RATE_WINDOW_SECONDS")

    # Paging
    page_size: int = Field(100, ge=1, le=100, alias="KIOTVIET_PAGE_SIZE")
    page_delay: float = Field(0.1, ge=0, alias="KIOTVIET_PAGE_DELAY")
    max_empty_pages: int = Field(3, ge=1, alias="KIOTVIET_MAX_EMPTY_PAGES")
    max_error_pages: int = Field(3, ge=1, alias="KIOTVIET_MAX_ERROR_PAGES")
    max_pages: int = Field(500, ge=1, alias="KIOTVIET_MAX_PAGES")
    category_concurrency: int = Field(1, ge=1, le=16, alias="KIOTVIET_CATEGORY_CONCURRENCY")

    # Retries and timeouts
    max_retries: int = Field(3, ge=1, le=10, alias="KIOTVIET_MAX_RETRIES")
    retry_delay: float = Field(2.0, ge=0, alias="KIOTVIET_RETRY_DELAY")
    request_timeout: float = Field(30.0, gt=0, alias="KIOTVIET_REQUEST_TIMEOUT")
    token_timeout: float = Field(10.0, gt=0, alias="KIOTVIET_TOKEN_TIMEOUT")

    # Categories
    category_cache_ttl: float = Field(3600, ge=0, alias="KIOTVIET_CATEGORY_CACHE_TTL")
    max_category_depth: int = Field(10, ge=1, alias="KIOTVIET_MAX_CATEGORY_DEPTH")
    product_categories: str = Field("", alias="KIOTVIET_PRODUCT_CATEGORIES")

    # State
    state_directory: str = Field("state", alias="KIOTVIET_STATE_DIR")

    # CDF storage
    cdf_host: Optional[str] = Field(None, alias="CDF_HOST")
    cdf_project: Optional[str] = Field(None, alias="CDF_PROJECT")
    cdf_client_id: Optional[str] = Field(None, alias="CDF_CLIENT_ID")
    cdf_client_secret: Optional[str] = Field(None, alias="CDF_CLIENT_SECRET")
    cdf_token_url: Optional[str] = Field(None, alias="CDF_TOKEN_URL")
    cdf_dataset_id: Optional[int] = Field(None, gt=0, alias="CDF_DATASET_CATALOG")

    @field_validator("base_url", "token_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def product_category_names(self) -> List[str]:
        return parse_category_names(self.product_categories)

    def missing_credentials(self) -> List[str]:
        """Environment variable names of credentials that are not set"""
        required = {
            "KIOTVIET_RETAILER_NAME": self.retailer_name,
            "KIOTVIET_CLIENT_ID": self.client_id,
            "KIOTVIET_CLIENT_SECRET": self.client_secret,
        }
        return [name for name, value in required.items() if not value or not value.strip()]

    def require_credentials(self) -> None:
        missing = self.missing_credentials()
        if missing:
            raise ConfigurationError(
                f"KiotViet credentials not configured. Please set {', '.join(missing)}.",
                missing=tuple(missing),
            )

    def credential_warnings(self) -> List[str]:
        warnings: List[str] = []
        if self.client_id and len(self.client_id) < 10:
            warnings.append("Client ID appears to be too short")
        if self.client_secret and len(self.client_secret) < 20:
            warnings.append("Client secret appears to be too short")
        return warnings

    def missing_cdf_settings(self) -> List[str]:
        required = {
            "CDF_HOST": self.cdf_host,
            "CDF_PROJECT": self.cdf_project,
            "CDF_CLIENT_ID": self.cdf_client_id,
            "CDF_CLIENT_SECRET": self.cdf_client_secret,
            "CDF_TOKEN_URL": self.cdf_token_url,
        }
        return [name for name, value in required.items() if not value]
