from datetime import date, datetime, timezone

import pytest

from kiotviet_sync.config import SyncSettings, parse_category_ids, parse_category_names, parse_since
from kiotviet_sync.errors import ConfigurationError

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def test_parse_category_names_trims_and_deduplicates():
    assert parse_category_names(" Lamps, Decor ,,Lamps ") == ["Lamps", "Decor"]
    assert parse_category_names("") == []
    assert parse_category_names(None) == []


def test_parse_category_ids_keeps_positive_integers():
    assert parse_category_ids("3, 1, x, -2, 0, 3") == [3, 1]
    assert parse_category_ids("  ") == []


def test_parse_since_accepts_strings_dates_and_datetimes():
    assert parse_since("2026-01-10", now=NOW) == datetime(2026, 1, 10, tzinfo=timezone.utc)
    assert parse_since("2026-01-10T08:30:00Z", now=NOW) == datetime(2026, 1, 10, 8, 30, tzinfo=timezone.utc)
    assert parse_since(date(2026, 1, 1), now=NOW) == datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert parse_since(None) is None


def test_parse_since_rejects_future_and_garbage():
    with pytest.raises(ValueError):
        parse_since("2026-06-01", now=NOW)
    with pytest.raises(ValueError):
        parse_since("not a date", now=NOW)


def test_parse_since_allows_old_dates():
    assert parse_since("2023-01-01", now=NOW).year == 2023


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("KIOTVIET_RETAILER_NAME", "shop")
    monkeypatch.setenv("KIOTVIET_CLIENT_ID", "id")
    monkeypatch.setenv("KIOTVIET_CLIENT_SECRET", "secret")
    monkeypatch.setenv("KIOTVIET_BASE_URL", "https://example.test/")
    monkeypatch.setenv("KIOTVIET_MAX_REQUESTS_PER_WINDOW", "100")
    monkeypatch.setenv("KIOTVIET_PRODUCT_CATEGORIES", "Lamps,Decor")
    monkeypatch.setenv("CDF_DATASET_CATALOG", "42")

    settings = SyncSettings(_env_file=None)

    assert settings.retailer_name == "shop"
    assert settings.base_url == "https://example.test"
    assert settings.max_requests_per_window == 100
    assert settings.product_category_names == ["Lamps", "Decor"]
    assert settings.cdf_dataset_id == 42
    assert settings.missing_credentials() == []


def test_defaults(monkeypatch):
    for name in ("KIOTVIET_PAGE_SIZE", "KIOTVIET_MAX_REQUESTS_PER_WINDOW", "KIOTVIET_TOKEN_SAFETY_MARGIN"):
        monkeypatch.delenv(name, raising=False)

    settings = SyncSettings(_env_file=None)

    assert settings.page_size == 100
    assert settings.max_requests_per_window == 4900
    assert settings.rate_window_seconds == 3600
    assert settings.token_safety_margin == 300
    assert settings.scope == "PublicApi.Access"


def test_require_credentials_lists_missing(settings):
    incomplete = settings.model_copy(update={"retailer_name": "", "client_id": None})

    with pytest.raises(ConfigurationError) as exc_info:
        incomplete.require_credentials()

    assert exc_info.value.missing == ("KIOTVIET_RETAILER_NAME", "KIOTVIET_CLIENT_ID")


def test_short_credentials_produce_warnings(settings):
    weak = settings.model_copy(update={"client_id": "abc", "client_secret": "short"})

    assert len(weak.credential_warnings()) == 2
    assert settings.credential_warnings() == []


def test_page_size_is_capped():
    with pytest.raises(ValueError):
        SyncSettings(_env_file=None, page_size=500)
