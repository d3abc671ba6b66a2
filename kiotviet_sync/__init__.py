"""KiotViet catalog synchronization engine."""

from kiotviet_sync.auth import AccessToken, CredentialManager
from kiotviet_sync.categories import CategoryResolver
from kiotviet_sync.config import SyncSettings
from kiotviet_sync.errors import (
    AuthenticationError,
    ConfigurationError,
    FetchError,
    RateLimitExceeded,
    RecordSyncError,
    SyncError,
)
from kiotviet_sync.fetcher import BatchFetcher, FetchOutcome
from kiotviet_sync.models import EntityKind, FullSyncResult, SyncResult
from kiotviet_sync.orchestrator import CatalogSyncOrchestrator, build_engine
from kiotviet_sync.rate_limit import RateGovernor
from kiotviet_sync.storage import CatalogStore, InMemoryCatalogStore
from kiotviet_sync.validator import validate_fetch

__all__ = [
    "AccessToken",
    "AuthenticationError",
    "BatchFetcher",
    "CatalogStore",
    "CatalogSyncOrchestrator",
    "CategoryResolver",
    "ConfigurationError",
    "CredentialManager",
    "EntityKind",
    "FetchError",
    "FetchOutcome",
    "FullSyncResult",
    "InMemoryCatalogStore",
    "RateGovernor",
    "RateLimitExceeded",
    "RecordSyncError",
    "SyncError",
    "SyncResult",
    "SyncSettings",
    "build_engine",
    "validate_fetch",
]
