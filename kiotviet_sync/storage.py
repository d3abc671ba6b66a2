"""
Upsert-by-external-id storage used by the sync orchestrator.

The engine never issues raw queries; anything implementing ``CatalogStore``
can receive synced catalog data.
"""

from __future__ import annotations

import asyncio
import copy
import json
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Mapping, Optional, Union

import structlog
from cognite.client import ClientConfig, CogniteClient
from cognite.client.credentials import OAuthClientCredentials
from cognite.client.data_classes import Asset, AssetFilter, AssetUpdate, AssetWrite

from kiotviet_sync.config import SyncSettings
from kiotviet_sync.errors import ConfigurationError
from kiotviet_sync.models import EntityKind, ExternalId

logger = structlog.get_logger(__name__)


class CatalogStore(ABC):
    """Records are plain dicts keyed by ``external_id``"""

    @abstractmethod
    async def find_by_external_id(self, external_id: ExternalId) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def update(self, external_id: ExternalId, fields: Dict[str, Any]) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def count(self, filter: Optional[Mapping[str, Any]] = None) -> int:
        ...

    def close(self) -> None:
        """Release resources held by the store"""


class InMemoryCatalogStore(CatalogStore):
    """Dict-backed store for tests and dry runs"""

    def __init__(self) -> None:
        self.records: Dict[ExternalId, Dict[str, Any]] = {}

    async def find_by_external_id(self, external_id: ExternalId) -> Optional[Dict[str, Any]]:
        record = self.records.get(external_id)
        return copy.deepcopy(record) if record is not None else None

    async def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        external_id = fields.get("external_id")
        if external_id is None:
            raise ValueError("Cannot insert a record without external_id")
        if external_id in self.records:
            raise ValueError(f"Record {external_id} already exists")
        self.records[external_id] = copy.deepcopy(fields)
        return copy.deepcopy(fields)

    async def update(self, external_id: ExternalId, fields: Dict[str, Any]) -> Dict[str, Any]:
        if external_id not in self.records:
            raise KeyError(f"Record {external_id} not found")
        self.records[external_id].update(copy.deepcopy(fields))
        return copy.deepcopy(self.records[external_id])

    async def count(self, filter: Optional[Mapping[str, Any]] = None) -> int:
        if not filter:
            return len(self.records)
        return sum(
            1 for record in self.records.values()
            if all(record.get(key) == value for key, value in filter.items())
        )


def _metadata_value(value: Any) -> str:
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def to_metadata(fields: Mapping[str, Any]) -> Dict[str, str]:
    """CDF metadata only holds strings; unset values are left out"""
    return {key: _metadata_value(value) for key, value in fields.items() if value is not None}


def create_cognite_client(settings: SyncSettings) -> CogniteClient:
    missing = settings.missing_cdf_settings()
    if missing:
        raise ConfigurationError(
            f"CDF storage not configured. Please set {', '.join(missing)}.",
            missing=tuple(missing),
        )
    credentials = OAuthClientCredentials(
        token_url=settings.cdf_token_url,
        client_id=settings.cdf_client_id,
        client_secret=settings.cdf_client_secret,
        scopes=[f"{settings.cdf_host.rstrip('/')}/.default"],
    )
    return CogniteClient(
        ClientConfig(
            client_name="kiotviet-catalog-sync",
            base_url=settings.cdf_host,
            project=settings.cdf_project,
            credentials=credentials,
        )
    )


class CogniteCatalogStore(CatalogStore):
    """
    One CDF asset per catalog record.

    External ids are prefixed with the entity label and every synced field
    lives in asset metadata. SDK calls are blocking, so they run in a thread
    pool.
    """

    def __init__(
        self,
        client: CogniteClient,
        entity: EntityKind,
        data_set_id: Optional[int] = None,
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self._client = client
        self.entity = entity
        self.data_set_id = data_set_id
        self._executor = executor or ThreadPoolExecutor(max_workers=4)
        self.prefix = f"kiotviet_{entity.label}_"

    def cdf_external_id(self, external_id: ExternalId) -> str:
        return f"{self.prefix}{external_id}"

    async def _run(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    def _to_record(self, asset: Union[Asset, AssetWrite]) -> Dict[str, Any]:
        record: Dict[str, Any] = dict(asset.metadata or {})
        record["external_id"] = int(asset.external_id[len(self.prefix):])
        return record

    async def find_by_external_id(self, external_id: ExternalId) -> Optional[Dict[str, Any]]:
        asset = await self._run(self._client.assets.retrieve, external_id=self.cdf_external_id(external_id))
        return self._to_record(asset) if asset is not None else None

    async def insert(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        external_id = fields["external_id"]
        asset = AssetWrite(
            external_id=self.cdf_external_id(external_id),
            name=str(fields.get("name") or external_id),
            description=fields.get("description"),
            data_set_id=self.data_set_id,
            metadata=to_metadata({**fields, "entity": self.entity.label}),
        )
        created = await self._run(self._client.assets.create, asset)
        logger.debug("cdf_asset_created", external_id=asset.external_id)
        return self._to_record(created)

    async def update(self, external_id: ExternalId, fields: Dict[str, Any]) -> Dict[str, Any]:
        update = AssetUpdate(external_id=self.cdf_external_id(external_id))
        if fields.get("name"):
            update.name.set(str(fields["name"]))
        # metadata.add merges keys, matching partial-update semantics
        update.metadata.add(to_metadata({k: v for k, v in fields.items() if k != "external_id"}))
        updated = await self._run(self._client.assets.update, update)
        return self._to_record(updated)

    async def count(self, filter: Optional[Mapping[str, Any]] = None) -> int:
        asset_filter = AssetFilter(
            external_id_prefix=self.prefix,
            data_set_ids=[{"id": self.data_set_id}] if self.data_set_id else None,
            metadata=to_metadata(filter) if filter else None,
        )
        return await self._run(self._client.assets.aggregate_count, filter=asset_filter)

    def close(self) -> None:
        # shared between the per-entity stores; shutdown is idempotent
        self._executor.shutdown(wait=True)


def build_cognite_stores(settings: SyncSettings) -> Dict[EntityKind, CatalogStore]:
    client = create_cognite_client(settings)
    executor = ThreadPoolExecutor(max_workers=4)
    return {
        kind: CogniteCatalogStore(client, kind, settings.cdf_dataset_id, executor)
        for kind in EntityKind
    }


def build_memory_stores() -> Dict[EntityKind, CatalogStore]:
    return {kind: InMemoryCatalogStore() for kind in EntityKind}
