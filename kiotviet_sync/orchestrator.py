"""
Catalog sync orchestration: fetch, validate, then upsert each record.

Stages run in dependency order (trademark, category, product). Only
configuration and authentication failures abort a run; everything else ends
up in the result's error list.
"""

from __future__ import annotations

import os
import uuid
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

import httpx
import structlog

from kiotviet_sync.auth import CredentialManager
from kiotviet_sync.categories import CategoryResolver
from kiotviet_sync.client import KiotVietClient, build_http_client
from kiotviet_sync.config import SyncSettings, parse_since
from kiotviet_sync.errors import FATAL_ERRORS, ErrorCategory, RecordSyncError, SyncError
from kiotviet_sync.fetcher import BatchFetcher
from kiotviet_sync.models import (
    ENTITY_PARSERS,
    EntityKind,
    ExternalId,
    FullSyncResult,
    RecordAction,
    RecordOutcome,
    extract_external_id,
    SyncReadiness,
    SyncResult,
)
from kiotviet_sync.rate_limit import RateGovernor
from kiotviet_sync.state import StateTracker
from kiotviet_sync.storage import CatalogStore, build_cognite_stores, build_memory_stores
from kiotviet_sync.validator import validate_fetch

logger = structlog.get_logger(__name__)

SinceValue = Union[str, date, datetime, None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_sync_id(operation: str, now: Optional[datetime] = None) -> str:
    timestamp = (now or _utcnow()).strftime("%Y%m%dT%H%M%S%f")
    return f"{operation}_{timestamp}_{uuid.uuid4().hex[:6]}"


class CatalogSyncOrchestrator:
    def __init__(
        self,
        settings: SyncSettings,
        client: KiotVietClient,
        resolver: CategoryResolver,
        fetcher: BatchFetcher,
        stores: Mapping[EntityKind, CatalogStore],
        state: Optional[StateTracker] = None,
        now: Optional[Callable[[], datetime]] = None,
        http: Optional[httpx.AsyncClient] = None,
        owns_stores: bool = False,
    ):
        self.settings = settings
        self.client = client
        self.resolver = resolver
        self.fetcher = fetcher
        self.stores = stores
        self.state = state
        self._now = now or _utcnow
        self._http = http
        self._owns_stores = owns_stores

    async def __aenter__(self) -> CatalogSyncOrchestrator:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
        if self._owns_stores:
            for store in self.stores.values():
                store.close()

    def reset(self) -> None:
        """Forget cached token, rate counters and categories"""
        self.client.credentials.reset()
        self.client.governor.reset()
        self.resolver.clear_cache()

    async def _count(self, store: CatalogStore, result: SyncResult) -> int:
        try:
            return await store.count()
        except Exception as exc:  # store outage is reported, not raised
            logger.error("store_count_failed", entity=result.entity, error=str(exc))
            result.add_error(None, f"Count failed: {exc}", ErrorCategory.RECORD.value)
            return 0

    async def _upsert(
        self,
        entity: EntityKind,
        store: CatalogStore,
        record: Dict[str, Any],
        synced_at: str,
    ) -> RecordOutcome:
        try:
            item = ENTITY_PARSERS[entity](record)
        except Exception as exc:  # malformed payloads become skipped records
            logger.warning("record_parse_failed", entity=entity.label, error=str(exc))
            return RecordOutcome(
                external_id=extract_external_id(record, entity),
                action=RecordAction.SKIPPED,
                error=str(exc),
            )

        external_id = item.external_id
        fields = {"external_id": external_id, **item.to_fields(), "synced_at": synced_at}
        try:
            existing = await store.find_by_external_id(external_id)
            if existing is None:
                await store.insert(fields)
                return RecordOutcome(external_id, RecordAction.CREATED)
            fields.pop("external_id")
            await store.update(external_id, fields)
            return RecordOutcome(external_id, RecordAction.UPDATED)
        except FATAL_ERRORS:
            raise
        except Exception as exc:  # one bad record must not stop the run
            logger.error("record_sync_failed", entity=entity.label, id=external_id, error=str(exc))
            return RecordOutcome(external_id, RecordAction.FAILED, error=str(exc))

    async def _sync_entity(
        self,
        entity: EntityKind,
        since: Optional[datetime] = None,
        category_names: Optional[List[str]] = None,
        category_ids: Optional[List[ExternalId]] = None,
    ) -> SyncResult:
        self.settings.require_credentials()
        started_at = self._now()
        result = SyncResult(
            entity=entity.label,
            sync_id=generate_sync_id(f"sync_{entity.label}", started_at),
            started_at=started_at,
        )
        log = logger.bind(entity=entity.label, sync_id=result.sync_id)
        log.info(
            "sync_started",
            since=since.isoformat() if since else None,
            categories=category_names or None,
            category_ids=category_ids or None,
        )

        store = self.stores[entity]
        result.before_count = await self._count(store, result)

        fetched = await self.fetcher.fetch_all(
            entity, modified_since=since, category_names=category_names, category_ids=category_ids
        )
        result.total_fetched = len(fetched.records)
        result.removed_ids = list(fetched.removed_ids)
        result.batches = list(fetched.batches)
        for error in fetched.errors:
            result.errors.append(error.to_dict())

        result.integrity = validate_fetch(
            fetched.raw_records, entity, fetched.reported_total, filtered=fetched.filtered
        )
        if fetched.removed_ids:
            log.info("provider_reported_removals", count=len(fetched.removed_ids))

        synced_at = self._now().isoformat()
        outcomes: List[RecordOutcome] = []
        for record in fetched.records:
            outcomes.append(await self._upsert(entity, store, record, synced_at))

        for outcome in outcomes:
            if outcome.action is RecordAction.CREATED:
                result.new_count += 1
            elif outcome.action is RecordAction.UPDATED:
                result.updated_count += 1
            elif outcome.action is RecordAction.SKIPPED:
                result.skipped_count += 1
                result.add_error(outcome.external_id, outcome.error or "Invalid record", ErrorCategory.VALIDATION.value)
            else:
                result.skipped_count += 1
                result.errors.append(RecordSyncError(outcome.error or "Upsert failed", outcome.external_id).to_dict())

        result.after_count = await self._count(store, result)
        result.finished_at = self._now()

        if result.success and self.state is not None:
            self.state.set_last_sync_time(entity.label, started_at, result.sync_id)

        log.info(
            "sync_completed",
            success=result.success,
            fetched=result.total_fetched,
            created=result.new_count,
            updated=result.updated_count,
            skipped=result.skipped_count,
            errors=len(result.errors),
            before=result.before_count,
            after=result.after_count,
        )
        return result

    async def sync_trademarks(self) -> SyncResult:
        return await self._sync_entity(EntityKind.TRADEMARK)

    async def sync_categories(self) -> SyncResult:
        result = await self._sync_entity(EntityKind.CATEGORY)
        try:
            result.hierarchy = await self.resolver.hierarchy_stats()
        except FATAL_ERRORS:
            raise
        except SyncError as exc:
            logger.warning("hierarchy_stats_unavailable", error=str(exc))
        return result

    async def sync_products(
        self,
        since: SinceValue = None,
        category_names: Optional[Iterable[str]] = None,
        category_ids: Optional[Iterable[ExternalId]] = None,
    ) -> SyncResult:
        modified_since = parse_since(since, now=self._now())
        ids = list(category_ids or [])
        if category_names is not None:
            names = list(category_names)
        elif ids:
            # explicit ids replace the configured names
            names = []
        else:
            names = self.settings.product_category_names
        return await self._sync_entity(
            EntityKind.PRODUCT, since=modified_since, category_names=names, category_ids=ids
        )

    async def sync_incremental_products(
        self,
        category_names: Optional[Iterable[str]] = None,
        category_ids: Optional[Iterable[ExternalId]] = None,
    ) -> SyncResult:
        since = self.state.get_last_sync_time(EntityKind.PRODUCT.label) if self.state else None
        if since is None:
            logger.info("no_previous_product_sync_running_full")
        return await self.sync_products(since=since, category_names=category_names, category_ids=category_ids)

    async def full_sync(
        self,
        since: SinceValue = None,
        category_names: Optional[Iterable[str]] = None,
        category_ids: Optional[Iterable[ExternalId]] = None,
    ) -> FullSyncResult:
        self.settings.require_credentials()
        modified_since = parse_since(since, now=self._now())
        logger.info("full_sync_started")

        stages = (
            (EntityKind.TRADEMARK, self.sync_trademarks),
            (EntityKind.CATEGORY, self.sync_categories),
            (EntityKind.PRODUCT, lambda: self.sync_products(modified_since, category_names, category_ids)),
        )
        results: Dict[EntityKind, SyncResult] = {}
        for entity, stage in stages:
            try:
                results[entity] = await stage()
            except FATAL_ERRORS:
                raise
            except Exception as exc:  # stage failure is recorded; later stages still run
                logger.error("sync_stage_failed", entity=entity.label, error=str(exc))
                failed = SyncResult(entity=entity.label, sync_id=generate_sync_id(f"sync_{entity.label}"))
                kind = exc.category.value if isinstance(exc, SyncError) else ErrorCategory.UNKNOWN.value
                failed.add_error(None, str(exc), kind)
                failed.finished_at = self._now()
                results[entity] = failed

        full = FullSyncResult(
            trademarks=results[EntityKind.TRADEMARK],
            categories=results[EntityKind.CATEGORY],
            products=results[EntityKind.PRODUCT],
        )
        logger.info("full_sync_completed", success=full.success, errors=len(full.errors))
        return full

    async def check_readiness(self) -> SyncReadiness:
        categories = await self.stores[EntityKind.CATEGORY].count()
        trademarks = await self.stores[EntityKind.TRADEMARK].count()
        recommendations: List[str] = []
        if categories == 0:
            recommendations.append("Run category sync before syncing products")
        if trademarks == 0:
            recommendations.append("Run trademark sync before syncing products")
        if not recommendations:
            recommendations.append("Ready to sync products")
        return SyncReadiness(
            can_sync_products=categories > 0 and trademarks > 0,
            categories_count=categories,
            trademarks_count=trademarks,
            recommendations=recommendations,
        )

    async def check_connection(self) -> Dict[str, Any]:
        missing = self.settings.missing_credentials()
        if missing:
            return {
                "success": False,
                "message": f"Missing credentials: {', '.join(missing)}",
                "details": {"missing": missing},
            }
        for warning in self.settings.credential_warnings():
            logger.warning("credential_warning", warning=warning)
        return await self.client.check_connection()


def build_engine(
    settings: Optional[SyncSettings] = None,
    store: str = "memory",
    stores: Optional[Mapping[EntityKind, CatalogStore]] = None,
    http: Optional[httpx.AsyncClient] = None,
    state: Optional[StateTracker] = None,
) -> CatalogSyncOrchestrator:
    """Wire credential cache, rate governor, resolver, fetcher and stores"""
    settings = settings or SyncSettings()
    owns_http = http is None
    http = http or build_http_client(settings)

    credentials = CredentialManager(settings, http)
    governor = RateGovernor(settings.max_requests_per_window, settings.rate_window_seconds)
    client = KiotVietClient(settings, credentials, governor, http)
    resolver = CategoryResolver(client, settings)
    fetcher = BatchFetcher(client, resolver, settings)

    owns_stores = stores is None
    if stores is None:
        if store == "cdf":
            stores = build_cognite_stores(settings)
        elif store == "memory":
            stores = build_memory_stores()
        else:
            raise ValueError(f"Unknown store: {store}")

    if state is None:
        state = StateTracker(os.path.join(settings.state_directory, "kiotviet_sync_state.json"))

    return CatalogSyncOrchestrator(
        settings,
        client,
        resolver,
        fetcher,
        stores,
        state=state,
        http=http if owns_http else None,
        owns_stores=owns_stores,
    )
