"""Shared pytest fixtures for mandi-sync."""

from datetime import date, datetime, timezone

import pytest

from mandi_sync.core.config import SourceConfig, StorageConfig, SyncConfig
from mandi_sync.core.models import PriceRecord
from mandi_sync.ingestion.store import SqliteStore

API_URL = "https://api.test.local/resource/prices"


@pytest.fixture
def source_config() -> SourceConfig:
    """Fast client settings: 1ms spacing, no backoff sleeps."""
    return SourceConfig(
        api_key="test-key",
        base_url=API_URL,
        request_delay_ms=1,
        max_retries=2,
        retry_backoff_seconds=0,
        page_size=1000,
        request_timeout=5,
    )


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig(
        chunk_size=1000,
        inter_date_delay_seconds=0,
        bulk_date_delay_seconds=0,
        hourly_states=["Karnataka", "Punjab"],
    )


@pytest.fixture
async def store():
    """Create an in-memory SqliteStore for testing."""
    s = SqliteStore(StorageConfig(sqlite_path=":memory:"))
    await s.initialize()
    yield s
    await s.close()


@pytest.fixture
def make_record():
    """Factory for PriceRecord with overridable defaults."""

    def _make(**overrides) -> PriceRecord:
        defaults = dict(
            arrival_date=date(2025, 11, 3),
            state="Karnataka",
            district="Bangalore",
            market="Binny Mill",
            commodity="Onion",
            variety="Local",
            grade="FAQ",
            min_price=1800.0,
            max_price=2400.0,
            modal_price=2100.0,
            arrival_quantity=None,
            synced_at=datetime(2025, 11, 4, 0, 30, tzinfo=timezone.utc),
        )
        defaults.update(overrides)
        return PriceRecord(**defaults)

    return _make


@pytest.fixture
def raw_row():
    """Factory for raw API rows as the price resource returns them."""

    def _make(**overrides) -> dict:
        row = {
            "State": "Karnataka",
            "District": "Bangalore",
            "Market": "Binny Mill",
            "Commodity": "Onion",
            "Variety": "Local",
            "Grade": "FAQ",
            "Arrival_Date": "03-11-2025",
            "Min_Price": "1800",
            "Max_Price": "2400",
            "Modal_Price": "2100",
        }
        row.update(overrides)
        return row

    return _make


def _api_page(records: list[dict], total: int | None = None) -> dict:
    return {
        "status": "ok",
        "total": total if total is not None else len(records),
        "count": len(records),
        "records": records,
    }


def _make_rows(n: int, *, start: int = 0, arrival_date: str = "03-11-2025") -> list[dict]:
    return [
        {
            "State": "Karnataka",
            "District": "Bangalore",
            "Market": f"Market {i}",
            "Commodity": "Onion",
            "Variety": "Local",
            "Arrival_Date": arrival_date,
            "Modal_Price": str(1000 + i),
        }
        for i in range(start, start + n)
    ]


@pytest.fixture
def api_page():
    """Build the JSON body of one page from the price resource."""
    return _api_page


@pytest.fixture
def make_rows():
    """Build n distinct raw rows (distinct markets) for one date."""
    return _make_rows
