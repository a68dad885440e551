"""
Tests for the collection run lifecycle.

Uses an in-memory adapter and a mocked gateway so every path is visible:
- Stats for insert / update / skip
- Per-record error isolation
- Zero-record warning
- Connection release, error wrapping and best-effort notifications
"""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from metrics_collector.collector import CollectorRuntime, RunOptions, RunState
from metrics_collector.database.models import CORE_TABLES
from metrics_collector.errors import (
    APIError,
    CollectorError,
    ConnectivityError,
    RecordError,
)


class FakeAdapter:
    """SourceAdapter over a dict keyed by record id."""

    service_name = "fake"
    tables = []
    schema_script = None

    def __init__(self, records=None, stored=None):
        self.records = list(records or [])
        self.stored = dict(stored or {})
        self.context = None
        self.bind_calls = []
        self.fetch_calls = []
        self.check_connection = AsyncMock()

    def bind(self, context):
        self.bind_calls.append(context)
        self.context = context

    async def fetch(self, start_date, end_date):
        self.fetch_calls.append((start_date, end_date))
        return self.records

    def validate(self, raw):
        if raw.get("invalid"):
            return None
        if raw.get("bad_value"):
            raise RecordError("bad value")
        return {"id": raw["id"], "value": raw.get("value")}

    def business_key(self, record):
        return str(record["id"])

    def exists(self, record):
        return record["id"] in self.stored

    def insert(self, record):
        if record["value"] == "explode":
            raise RuntimeError("constraint violated")
        self.stored[record["id"]] = record["value"]

    def update(self, record):
        self.stored[record["id"]] = record["value"]


def make_runtime(adapter, notifier=None, gateway=None):
    return CollectorRuntime(adapter, gateway or MagicMock(), notifier)


OPTIONS = RunOptions(start_date="2025-09-15", end_date="2025-09-15")


# =============================================================================
# SUCCESS PATH TESTS
# =============================================================================

class TestRunStats:
    """Test stats for a successful run."""

    @pytest.mark.asyncio
    async def test_new_records_inserted(self):
        adapter = FakeAdapter(records=[{"id": 1, "value": "a"}, {"id": 2, "value": "b"}])
        runtime = make_runtime(adapter)

        stats = await runtime.run(OPTIONS)

        assert (stats.processed, stats.inserted, stats.updated, stats.errors) == (2, 2, 0, 0)
        assert adapter.stored == {1: "a", 2: "b"}
        assert adapter.fetch_calls == [("2025-09-15", "2025-09-15")]
        assert runtime.state is RunState.COMPLETED

    @pytest.mark.asyncio
    async def test_existing_records_skipped_and_not_counted(self):
        adapter = FakeAdapter(records=[{"id": 1, "value": "new"}], stored={1: "old"})

        stats = await make_runtime(adapter).run(OPTIONS)

        assert (stats.processed, stats.inserted, stats.updated) == (0, 0, 0)
        assert adapter.stored == {1: "old"}

    @pytest.mark.asyncio
    async def test_force_override_updates(self):
        adapter = FakeAdapter(records=[{"id": 1, "value": "new"}], stored={1: "old"})

        stats = await make_runtime(adapter).run(RunOptions(
            start_date="2025-09-15", end_date="2025-09-15", force_override=True,
        ))

        assert (stats.processed, stats.inserted, stats.updated) == (1, 0, 1)
        assert adapter.stored == {1: "new"}

    @pytest.mark.asyncio
    async def test_duplicate_key_in_one_fetch_inserted_once(self):
        adapter = FakeAdapter(records=[{"id": 1, "value": "a"}, {"id": 1, "value": "a"}])

        stats = await make_runtime(adapter).run(OPTIONS)

        assert stats.inserted == 1
        assert stats.processed == 1

    @pytest.mark.asyncio
    async def test_no_records_adds_warning(self):
        notifier = AsyncMock()
        adapter = FakeAdapter(records=[])

        stats = await make_runtime(adapter, notifier).run(OPTIONS)

        assert stats.warnings == ["No data received from API"]
        assert stats.processed == 0
        notifier.notify_success.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_date_objects_passed_as_iso_strings(self):
        from datetime import date

        adapter = FakeAdapter(records=[])
        await make_runtime(adapter).run(RunOptions(start_date=date(2025, 9, 1), end_date=date(2025, 9, 2)))

        assert adapter.fetch_calls == [("2025-09-01", "2025-09-02")]


# =============================================================================
# RECORD ERROR TESTS
# =============================================================================

class TestRecordErrors:
    """Per-record failures are counted and never abort the run."""

    @pytest.mark.asyncio
    async def test_bad_records_counted_good_records_saved(self):
        adapter = FakeAdapter(records=[
            {"id": 1, "value": "a"},
            {"id": 2, "invalid": True},
            {"id": 3, "bad_value": True},
            {"id": 4, "value": "explode"},
            "not a dict",
            {"id": 5, "value": "e"},
        ])

        stats = await make_runtime(adapter).run(OPTIONS)

        assert stats.errors == 4
        assert stats.inserted == 2
        assert stats.processed == 2
        assert adapter.stored == {1: "a", 5: "e"}

    @pytest.mark.asyncio
    async def test_rejected_record_logged_with_payload(self, caplog):
        adapter = FakeAdapter(records=[{"id": 3, "bad_value": True}])

        with caplog.at_level(logging.WARNING, logger="metrics_collector.collector.runtime"):
            stats = await make_runtime(adapter).run(OPTIONS)

        assert stats.errors == 1
        warning = next(r for r in caplog.records if "Skipping record" in r.getMessage())
        assert 'record={"id": 3, "bad_value": true}' in warning.getMessage()


# =============================================================================
# LIFECYCLE TESTS
# =============================================================================

class TestLifecycle:
    """Test connection handling, failures and notifications."""

    @pytest.mark.asyncio
    async def test_connection_released_on_success(self):
        gateway = MagicMock()
        adapter = FakeAdapter(records=[{"id": 1, "value": "a"}])

        await make_runtime(adapter, gateway=gateway).run(OPTIONS)

        gateway.connect.assert_called_once()
        gateway.disconnect.assert_called_once()
        gateway.ensure_tables.assert_called_once_with(list(CORE_TABLES))
        assert adapter.bind_calls[-1] is None

    @pytest.mark.asyncio
    async def test_fetch_failure_releases_connection_and_reraises(self):
        gateway = MagicMock()
        notifier = AsyncMock()
        adapter = FakeAdapter()
        adapter.fetch = AsyncMock(side_effect=APIError("bad gateway", status_code=502))
        runtime = make_runtime(adapter, notifier, gateway)

        with pytest.raises(APIError) as exc_info:
            await runtime.run(OPTIONS)

        assert exc_info.value.stats["errors"] == 1
        assert runtime.state is RunState.FAILED
        gateway.disconnect.assert_called_once()
        notifier.notify_error.assert_awaited_once()
        notifier.notify_success.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unexpected_error_wrapped(self):
        gateway = MagicMock()
        adapter = FakeAdapter()
        adapter.fetch = AsyncMock(side_effect=KeyError("result"))

        with pytest.raises(CollectorError) as exc_info:
            await make_runtime(adapter, gateway=gateway).run(OPTIONS)

        assert isinstance(exc_info.value.__cause__, KeyError)
        assert "fake collector failed" in str(exc_info.value)
        gateway.disconnect.assert_called_once()

    @pytest.mark.asyncio
    async def test_connectivity_failure_skips_fetch(self):
        gateway = MagicMock()
        adapter = FakeAdapter(records=[{"id": 1, "value": "a"}])
        adapter.check_connection.side_effect = ConnectivityError("API down")

        with pytest.raises(ConnectivityError):
            await make_runtime(adapter, gateway=gateway).run(OPTIONS)

        assert adapter.fetch_calls == []
        gateway.disconnect.assert_called_once()

    @pytest.mark.asyncio
    async def test_connect_failure_still_disconnects(self):
        gateway = MagicMock()
        gateway.connect.side_effect = CollectorError("db down")
        adapter = FakeAdapter()

        with pytest.raises(CollectorError):
            await make_runtime(adapter, gateway=gateway).run(OPTIONS)

        gateway.disconnect.assert_called_once()
        adapter.check_connection.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_notifier_failures_do_not_affect_run(self):
        notifier = MagicMock()
        notifier.notify_start = AsyncMock(side_effect=RuntimeError("telegram down"))
        notifier.notify_success = AsyncMock(side_effect=RuntimeError("telegram down"))
        adapter = FakeAdapter(records=[{"id": 1, "value": "a"}])

        stats = await make_runtime(adapter, notifier).run(OPTIONS)

        assert stats.inserted == 1

    @pytest.mark.asyncio
    async def test_error_notification_failure_keeps_fetch_error(self):
        notifier = MagicMock()
        notifier.notify_start = AsyncMock()
        notifier.notify_error = AsyncMock(side_effect=RuntimeError("telegram down"))
        adapter = FakeAdapter()
        adapter.fetch = AsyncMock(side_effect=APIError("boom"))

        with pytest.raises(APIError):
            await make_runtime(adapter, notifier).run(OPTIONS)

    @pytest.mark.asyncio
    async def test_schema_script_applied_when_present(self, tmp_path):
        script = tmp_path / "schema.sql"
        script.write_text("CREATE TABLE IF NOT EXISTS extra (id INTEGER);")
        gateway = MagicMock()
        adapter = FakeAdapter()
        adapter.schema_script = script

        await make_runtime(adapter, gateway=gateway).run(OPTIONS)

        gateway.apply_schema.assert_called_once_with("CREATE TABLE IF NOT EXISTS extra (id INTEGER);")

    @pytest.mark.asyncio
    async def test_missing_schema_script_ignored(self, tmp_path):
        gateway = MagicMock()
        adapter = FakeAdapter()
        adapter.schema_script = tmp_path / "missing.sql"

        await make_runtime(adapter, gateway=gateway).run(OPTIONS)

        gateway.apply_schema.assert_not_called()
