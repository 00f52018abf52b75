"""Tests for mandi_sync.core.models."""

from datetime import date, datetime, timezone

import pytest
from pydantic import ValidationError

from mandi_sync.core.models import (
    UNKNOWN_VARIETY,
    FetchResult,
    PersistResult,
    PriceRecord,
    RecordFilters,
    SourceTag,
    SyncHealth,
    SyncJob,
    SyncStatus,
    SyncType,
)


class TestEnums:
    def test_sync_type_values(self):
        assert {t.value for t in SyncType} == {"daily", "bulk", "hourly"}

    def test_source_tag_default_value(self):
        assert SourceTag.GOVERNMENT_API == "govt_api"

    @pytest.mark.parametrize(
        "status,terminal",
        [
            (SyncStatus.PENDING, False),
            (SyncStatus.RUNNING, False),
            (SyncStatus.COMPLETED, True),
            (SyncStatus.FAILED, True),
            (SyncStatus.PARTIAL, True),
        ],
    )
    def test_is_terminal(self, status, terminal):
        assert status.is_terminal is terminal


class TestPriceRecord:
    def test_natural_key(self, make_record):
        record = make_record()
        assert record.natural_key == (
            date(2025, 11, 3),
            "Karnataka",
            "Bangalore",
            "Binny Mill",
            "Onion",
            "Local",
        )

    def test_blank_variety_becomes_unknown(self, make_record):
        assert make_record(variety="  ").variety == UNKNOWN_VARIETY
        assert make_record(variety=None).variety == UNKNOWN_VARIETY

    def test_text_fields_are_stripped(self, make_record):
        record = make_record(market="  Binny Mill ")
        assert record.market == "Binny Mill"

    def test_blank_market_rejected(self, make_record):
        with pytest.raises(ValidationError):
            make_record(market="   ")

    def test_defaults(self):
        record = PriceRecord(
            arrival_date=date(2025, 11, 3),
            state="Punjab",
            district="Ludhiana",
            market="Khanna",
            commodity="Wheat",
            synced_at=datetime(2025, 11, 4, tzinfo=timezone.utc),
        )
        assert record.variety == UNKNOWN_VARIETY
        assert record.modal_price == 0.0
        assert record.source == SourceTag.GOVERNMENT_API
        assert record.min_price is None

    def test_frozen(self, make_record):
        record = make_record()
        with pytest.raises(ValidationError):
            record.modal_price = 5.0


class TestRecordFilters:
    def test_empty(self):
        assert RecordFilters().is_empty()

    def test_not_empty(self):
        assert not RecordFilters(state="Kerala").is_empty()


class TestResults:
    def test_fetch_result_count(self):
        result = FetchResult(success=True, records=[{"a": 1}, {"b": 2}])
        assert result.count == 2

    def test_persist_result_persisted(self):
        result = PersistResult(count=2500, written=1500, failed=1000, failed_chunks=1)
        assert result.persisted == 1500
        assert result.has_failures

    def test_persist_result_clean(self):
        result = PersistResult(count=10, written=10)
        assert result.persisted == 10
        assert not result.has_failures

    def test_sync_job_defaults(self):
        job = SyncJob(sync_date=date(2025, 11, 3))
        assert job.sync_type == SyncType.DAILY
        assert job.status == SyncStatus.PENDING
        assert job.records_synced == 0

    def test_sync_health_rate_bounds(self):
        with pytest.raises(ValidationError):
            SyncHealth(healthy=True, window_days=7, success_rate=120.0)
