"""
Paginated retrieval of catalog entities.

A failing page is recorded and skipped; only configuration and
authentication errors escape ``fetch_all``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import structlog

from kiotviet_sync.categories import CategoryResolver
from kiotviet_sync.client import KiotVietClient
from kiotviet_sync.config import SyncSettings
from kiotviet_sync.errors import FATAL_ERRORS, FetchError, SyncError
from kiotviet_sync.models import BatchInfo, EntityKind, ExternalId, Page, extract_external_id

logger = structlog.get_logger(__name__)


@dataclass
class FetchOutcome:
    """
    Everything one ``fetch_all`` call pulled.

    ``records`` holds each external id once (first occurrence wins).
    ``raw_records`` keeps repeats seen within one listing so the integrity
    check can report them; overlaps between filtered categories are expected
    and only counted in ``category_overlaps``.
    """
    entity: EntityKind
    records: List[Dict[str, Any]] = field(default_factory=list)
    raw_records: List[Dict[str, Any]] = field(default_factory=list)
    removed_ids: List[ExternalId] = field(default_factory=list)
    reported_total: Optional[int] = None
    pages_requested: int = 0
    errors: List[FetchError] = field(default_factory=list)
    batches: List[BatchInfo] = field(default_factory=list)
    category_ids: List[ExternalId] = field(default_factory=list)
    category_overlaps: int = 0

    @property
    def filtered(self) -> bool:
        return bool(self.category_ids)


@dataclass
class _ListingResult:
    category_id: Optional[ExternalId]
    records: List[Dict[str, Any]] = field(default_factory=list)
    removed_ids: List[ExternalId] = field(default_factory=list)
    total: Optional[int] = None
    pages_requested: int = 0
    errors: List[FetchError] = field(default_factory=list)
    batches: List[BatchInfo] = field(default_factory=list)


class BatchFetcher:
    def __init__(
        self,
        client: KiotVietClient,
        resolver: CategoryResolver,
        settings: SyncSettings,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        self.client = client
        self.resolver = resolver
        self.settings = settings
        self._sleep = sleep or asyncio.sleep

    def _build_params(
        self,
        entity: EntityKind,
        offset: int,
        page_size: int,
        modified_since: Optional[datetime],
        category_id: Optional[ExternalId],
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {"currentItem": offset, "pageSize": page_size}
        if category_id is not None:
            params["categoryId"] = category_id
        if modified_since is not None:
            params["lastModifiedFrom"] = modified_since.isoformat()
            params["includeRemoveIds"] = "true"
        if entity is EntityKind.PRODUCT:
            params["includeInventory"] = "false"
        elif entity is EntityKind.CATEGORY:
            params["hierarchicalData"] = "false"
        return params

    async def fetch_page(
        self,
        entity: EntityKind,
        offset: int,
        page_size: Optional[int] = None,
        modified_since: Optional[datetime] = None,
        category_id: Optional[ExternalId] = None,
    ) -> Page:
        page_size = page_size or self.settings.page_size
        params = self._build_params(entity, offset, page_size, modified_since, category_id)
        try:
            page = await self.client.get_page(entity, params, page_size)
        except FATAL_ERRORS:
            raise
        except SyncError as exc:
            raise FetchError(
                f"Failed to fetch {entity.label} page at offset {offset}: {exc}",
                entity=entity.label,
                offset=offset,
                category_id=category_id,
                cause=exc,
            ) from exc

        logger.debug(
            "page_fetched",
            entity=entity.label,
            offset=offset,
            category_id=category_id,
            items=len(page.records),
            total=page.total,
        )
        return page

    async def _fetch_listing(
        self,
        entity: EntityKind,
        modified_since: Optional[datetime],
        category_id: Optional[ExternalId],
    ) -> _ListingResult:
        """Page through one listing until the reported total is covered"""
        settings = self.settings
        page_size = settings.page_size
        result = _ListingResult(category_id=category_id)
        offset = 0
        empty_pages = 0
        error_pages = 0

        while True:
            if result.total is not None and offset >= result.total:
                break
            if result.pages_requested >= settings.max_pages:
                logger.warning(
                    "max_pages_reached",
                    entity=entity.label,
                    category_id=category_id,
                    max_pages=settings.max_pages,
                )
                break
            if result.pages_requested and settings.page_delay:
                await self._sleep(settings.page_delay)

            result.pages_requested += 1
            try:
                page = await self.fetch_page(entity, offset, page_size, modified_since, category_id)
            except FetchError as exc:
                result.errors.append(exc)
                error_pages += 1
                logger.error(
                    "page_fetch_failed",
                    entity=entity.label,
                    offset=offset,
                    category_id=category_id,
                    attempt=error_pages,
                    max_error_pages=settings.max_error_pages,
                    error=str(exc),
                )
                if error_pages >= settings.max_error_pages:
                    logger.error("too_many_page_errors", entity=entity.label, category_id=category_id)
                    break
                offset += page_size
                continue

            error_pages = 0
            if result.total is not None and page.total != result.total:
                logger.warning(
                    "reported_total_changed",
                    entity=entity.label,
                    previous=result.total,
                    current=page.total,
                )
            result.total = page.total
            result.removed_ids.extend(page.removed_ids)

            if not page.records:
                empty_pages += 1
                logger.warning("empty_page", entity=entity.label, offset=offset, category_id=category_id)
                if empty_pages >= settings.max_empty_pages:
                    logger.info("stopping_after_empty_pages", entity=entity.label, empty_pages=empty_pages)
                    break
                offset += page_size
                continue

            empty_pages = 0
            result.records.extend(page.records)
            result.batches.append(
                BatchInfo(
                    batch_number=len(result.batches) + 1,
                    offset=offset,
                    items_fetched=len(page.records),
                    category_id=category_id,
                )
            )
            offset += page_size

        return result

    async def _resolve_filter(
        self,
        category_names: Optional[Iterable[str]],
        category_ids: Optional[Iterable[ExternalId]],
    ) -> List[ExternalId]:
        roots: List[ExternalId] = list(category_ids or [])
        names = list(category_names or [])
        if names:
            roots.extend(await self.resolver.resolve_names(names))
        if not roots:
            return []
        return await self.resolver.resolve_descendants(roots)

    async def fetch_all(
        self,
        entity: EntityKind,
        modified_since: Optional[datetime] = None,
        category_names: Optional[Iterable[str]] = None,
        category_ids: Optional[Iterable[ExternalId]] = None,
    ) -> FetchOutcome:
        category_names = list(category_names or [])
        category_ids = list(category_ids or [])
        outcome = FetchOutcome(entity=entity)

        if category_names or category_ids:
            try:
                targets = await self._resolve_filter(category_names, category_ids)
            except FATAL_ERRORS:
                raise
            except SyncError as exc:
                logger.error("category_filter_resolution_failed", entity=entity.label, error=str(exc))
                outcome.errors.append(
                    FetchError(
                        f"Could not resolve category filter: {exc}",
                        entity=entity.label,
                        offset=0,
                        cause=exc,
                    )
                )
                return outcome
            if not targets:
                logger.warning("no_matching_categories", entity=entity.label, names=category_names)
                outcome.errors.append(
                    FetchError(
                        f"No categories matched filter {category_names or category_ids}",
                        entity=entity.label,
                        offset=0,
                    )
                )
                return outcome
            outcome.category_ids = targets
            listings = await self._fetch_categories(entity, modified_since, targets)
        else:
            listings = [await self._fetch_listing(entity, modified_since, None)]

        self._merge(outcome, listings)
        logger.info(
            "fetch_completed",
            entity=entity.label,
            unique_records=len(outcome.records),
            reported_total=outcome.reported_total,
            pages=outcome.pages_requested,
            errors=len(outcome.errors),
            categories=len(outcome.category_ids),
        )
        return outcome

    async def _fetch_categories(
        self,
        entity: EntityKind,
        modified_since: Optional[datetime],
        category_ids: List[ExternalId],
    ) -> List[_ListingResult]:
        concurrency = self.settings.category_concurrency
        if concurrency <= 1:
            listings = []
            for index, category_id in enumerate(category_ids):
                if index and self.settings.page_delay:
                    await self._sleep(self.settings.page_delay)
                listings.append(await self._fetch_listing(entity, modified_since, category_id))
            return listings

        semaphore = asyncio.Semaphore(concurrency)

        async def fetch_with_limit(category_id: ExternalId) -> _ListingResult:
            async with semaphore:
                return await self._fetch_listing(entity, modified_since, category_id)

        tasks = [asyncio.ensure_future(fetch_with_limit(cid)) for cid in category_ids]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    def _merge(self, outcome: FetchOutcome, listings: List[_ListingResult]) -> None:
        """Combine listings in order, keeping the first occurrence of each id"""
        seen = set()
        removed_seen = set()
        totals: List[int] = []
        for listing in listings:
            listing_seen = set()
            outcome.pages_requested += listing.pages_requested
            outcome.errors.extend(listing.errors)
            outcome.batches.extend(listing.batches)
            if listing.total is not None:
                totals.append(listing.total)
            for removed in listing.removed_ids:
                if removed not in removed_seen:
                    removed_seen.add(removed)
                    outcome.removed_ids.append(removed)

            for record in listing.records:
                external_id = extract_external_id(record, outcome.entity)
                if external_id is None:
                    outcome.raw_records.append(record)
                    outcome.records.append(record)
                    continue
                if external_id in listing_seen:
                    outcome.raw_records.append(record)
                    continue
                listing_seen.add(external_id)
                if external_id in seen:
                    outcome.category_overlaps += 1
                    logger.debug("duplicate_across_categories", id=external_id, category_id=listing.category_id)
                    continue
                seen.add(external_id)
                outcome.raw_records.append(record)
                outcome.records.append(record)

        outcome.reported_total = sum(totals) if totals else None
