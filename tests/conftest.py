"""Pytest fixtures: a fake KiotViet provider, a fake clock and wired engines."""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from kiotviet_sync.auth import CredentialManager
from kiotviet_sync.categories import CategoryResolver
from kiotviet_sync.client import KiotVietClient
from kiotviet_sync.config import SyncSettings
from kiotviet_sync.fetcher import BatchFetcher
from kiotviet_sync.orchestrator import CatalogSyncOrchestrator
from kiotviet_sync.rate_limit import RateGovernor
from kiotviet_sync.state import StateTracker
from kiotviet_sync.storage import build_memory_stores

TOKEN_URL = "https://id.test/connect/token"
BASE_URL = "https://api.test"


class FakeClock:
    """Monotonic and wall time that only move when told to (or slept on)"""

    def __init__(self, start=datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)):
        self.start = start
        self.elapsed = 0.0
        self.sleeps = []

    def monotonic(self):
        return self.elapsed

    def now(self):
        return self.start + timedelta(seconds=self.elapsed)

    def advance(self, seconds):
        self.elapsed += seconds

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.elapsed += seconds


class FakeProvider:
    """httpx.MockTransport handler imitating the token endpoint and catalog API"""

    def __init__(self):
        self.products = []
        self.categories = []
        self.category_tree = None
        self.trademarks = []
        self.removed_ids = []
        self.total_override = {}
        self.fail_pages = {}
        self.unauthorized_responses = 0
        self.token_status = 200
        self.token_payload = None
        self.expires_in = 3600
        self.token_requests = 0
        self.requests = []

    def catalog_requests(self, path):
        return [r for r in self.requests if r.url.path == path]

    def _token(self, request):
        self.token_requests += 1
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_client"})
        payload = self.token_payload or {
            "access_token": f"token-{self.token_requests}",
            "expires_in": self.expires_in,
            "token_type": "Bearer",
        }
        return httpx.Response(200, json=payload)

    def __call__(self, request):
        if str(request.url).startswith(TOKEN_URL):
            return self._token(request)

        self.requests.append(request)
        if self.unauthorized_responses > 0:
            self.unauthorized_responses -= 1
            return httpx.Response(401)

        path = request.url.path
        params = request.url.params
        offset = int(params.get("currentItem", 0))
        size = int(params.get("pageSize", 100))

        # int fails every time; a list of statuses fails once per entry
        failure = self.fail_pages.get((path, offset))
        if isinstance(failure, list):
            if failure:
                return httpx.Response(failure.pop(0))
        elif failure:
            return httpx.Response(failure)

        if path == "/products":
            data = self.products
        elif path == "/categories":
            if params.get("hierarchicalData") == "true" and self.category_tree is not None:
                data = self.category_tree
            else:
                data = self.categories
        elif path == "/trademark":
            data = self.trademarks
        else:
            return httpx.Response(404)

        category_id = params.get("categoryId")
        if category_id:
            wanted = int(category_id)
            data = [r for r in data if wanted in r.get("categoryIds", [r.get("categoryId")])]

        return httpx.Response(
            200,
            json={
                "total": self.total_override.get(path, len(data)),
                "pageSize": size,
                "data": data[offset:offset + size],
                "removeId": self.removed_ids if path == "/products" else [],
            },
        )


def make_products(count, start=1, **extra):
    return [
        {
            "id": i,
            "code": f"SP{i:05d}",
            "name": f"Product {i}",
            "basePrice": 1000 * i,
            "categoryId": 1,
            "images": [f"https://img.test/{i}.jpg"],
            "type": 2,
            **extra,
        }
        for i in range(start, start + count)
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def settings(tmp_path):
    return SyncSettings(
        _env_file=None,
        retailer_name="demoshop",
        client_id="client-id-1234567890",
        client_secret="client-secret-abcdefghijklmnop",
        token_url=TOKEN_URL,
        base_url=BASE_URL,
        max_retries=2,
        retry_delay=0.01,
        state_directory=str(tmp_path / "state"),
    )


@pytest.fixture
async def http(provider):
    client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
    yield client
    await client.aclose()


@pytest.fixture
def credentials(settings, http, clock):
    return CredentialManager(settings, http, now=clock.now)


@pytest.fixture
def build_client(http, clock):
    def build(settings, governor=None):
        credentials = CredentialManager(settings, http, now=clock.now)
        governor = governor or RateGovernor(
            settings.max_requests_per_window,
            settings.rate_window_seconds,
            clock=clock.monotonic,
            sleep=clock.sleep,
        )
        return KiotVietClient(settings, credentials, governor, http, sleep=clock.sleep)

    return build


@pytest.fixture
def build_fetcher(build_client, clock):
    def build(settings):
        client = build_client(settings)
        resolver = CategoryResolver(client, settings, clock=clock.monotonic)
        return BatchFetcher(client, resolver, settings, sleep=clock.sleep)

    return build


@pytest.fixture
def build_engine(settings, build_fetcher, clock, tmp_path):
    def build(stores=None, **overrides):
        engine_settings = settings.model_copy(update=overrides)
        fetcher = build_fetcher(engine_settings)
        return CatalogSyncOrchestrator(
            engine_settings,
            fetcher.client,
            fetcher.resolver,
            fetcher,
            stores or build_memory_stores(),
            state=StateTracker(str(tmp_path / "state.json")),
            now=clock.now,
        )

    return build
