"""Tests for indexer.workers.ingest_worker.

These tests drive the worker with a scripted delegation source instead of
the network, against a real SQLite checkpoint store:
- A cycle reads the watermark from the store and upserts what it fetched
- Fetch failures back off and never advance the watermark
- Malformed items and failed writes are skipped without aborting the batch
- A stop request never interrupts an in-flight cycle, but ends a wait early
- A full page never stores part of a timestamp group
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from indexer.config import DEFAULT_START_TIMESTAMP
from indexer.core.errors import DecodeError, NetworkError, StorageWriteError
from indexer.db import CheckpointStore
from indexer.workers.backoff import BackoffState
from indexer.workers.ingest_worker import (
    IngestionWorker,
    WorkerState,
    is_single_group_page,
    split_partial_group,
)


class ScriptedSource:
    """Returns (or raises) one scripted response per fetch, then asks the worker to stop."""

    def __init__(self, responses: list[Any]) -> None:
        self.responses = list(responses)
        self.watermarks: list[str] = []
        self.worker: IngestionWorker | None = None

    async def fetch_since(self, last_timestamp: str) -> list[dict[str, Any]]:
        self.watermarks.append(last_timestamp)
        if not self.responses:
            assert self.worker is not None
            self.worker.request_stop()
            return []
        response = self.responses.pop(0)
        if isinstance(response, BaseException):
            raise response
        return response


class BlockingSource:
    """Blocks inside fetch_since until released, to simulate an in-flight cycle."""

    def __init__(self, items: list[dict[str, Any]]) -> None:
        self.items = items
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.calls = 0

    async def fetch_since(self, last_timestamp: str) -> list[dict[str, Any]]:
        self.calls += 1
        self.started.set()
        await self.release.wait()
        return self.items


class PagedSource:
    """In-memory feed that honours timestamp.gt, timestamp.eq, offset, limit and ascending sort."""

    def __init__(self, items: list[dict[str, Any]], page_size: int) -> None:
        self.items = sorted(items, key=lambda item: item["timestamp"])
        self.page_size = page_size
        self.exact_calls: list[tuple[str, int]] = []
        self.worker: IngestionWorker | None = None

    async def fetch_since(self, last_timestamp: str) -> list[dict[str, Any]]:
        page = [item for item in self.items if item["timestamp"] > last_timestamp][: self.page_size]
        if not page and self.worker is not None:
            self.worker.request_stop()
        return page

    async def fetch_at(self, timestamp: str, offset: int = 0) -> list[dict[str, Any]]:
        self.exact_calls.append((timestamp, offset))
        group = [item for item in self.items if item["timestamp"] == timestamp]
        return group[offset : offset + self.page_size]


class FlakyStore(CheckpointStore):
    """Fails writes for one delegator address."""

    def __init__(self, *args: Any, failing_delegator: str, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.failing_delegator = failing_delegator

    def upsert(self, record):
        if record.delegator == self.failing_delegator:
            raise StorageWriteError("disk I/O error")
        return super().upsert(record)


def _worker(store, source, **kwargs) -> IngestionWorker:
    kwargs.setdefault("poll_interval", 0)
    kwargs.setdefault("backoff", BackoffState(base_delay=0))
    worker = IngestionWorker(store, source, **kwargs)
    if isinstance(source, (ScriptedSource, PagedSource)):
        source.worker = worker
    return worker


class TestRunCycle:
    @pytest.mark.asyncio
    async def test_first_cycle_uses_default_watermark(self, store, tzkt_item_factory):
        source = ScriptedSource([[tzkt_item_factory()]])
        worker = _worker(store, source)

        result = await worker.run_cycle()

        assert source.watermarks == [DEFAULT_START_TIMESTAMP]
        assert result.watermark == DEFAULT_START_TIMESTAMP
        assert result.fetched == 1
        assert result.inserted == 1
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_next_cycle_resumes_from_max_stored_timestamp(self, store, tzkt_item_factory):
        source = ScriptedSource(
            [
                [
                    tzkt_item_factory(timestamp="2023-09-01T00:00:00Z"),
                    tzkt_item_factory(timestamp="2023-09-02T00:00:00Z", address="tz1Other"),
                ],
                [],
            ]
        )
        worker = _worker(store, source)

        await worker.run_cycle()
        await worker.run_cycle()

        assert source.watermarks == [DEFAULT_START_TIMESTAMP, "2023-09-02T00:00:00Z"]

    @pytest.mark.asyncio
    async def test_refetched_items_count_as_duplicates(self, store, tzkt_item_factory):
        item = tzkt_item_factory()
        source = ScriptedSource([[item], [item]])
        worker = _worker(store, source)

        await worker.run_cycle()
        result = await worker.run_cycle()

        assert result.inserted == 0
        assert result.duplicates == 1
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_malformed_items_are_skipped(self, store, tzkt_item_factory):
        items = [
            tzkt_item_factory(address="tz1Good"),
            {"timestamp": "2023-09-01T00:00:00Z", "amount": 5, "level": 1},
            tzkt_item_factory(timestamp="not-a-date", address="tz1BadTime"),
            tzkt_item_factory(address=""),
        ]
        worker = _worker(store, ScriptedSource([items]))

        result = await worker.run_cycle()

        assert result.fetched == 4
        assert result.inserted == 1
        assert result.skipped == 3
        assert [r.delegator for r in store.query()] == ["tz1Good"]

    @pytest.mark.asyncio
    async def test_write_failure_does_not_abort_batch(self, db_path, tzkt_item_factory, caplog):
        flaky = FlakyStore(f"sqlite:///{db_path}", failing_delegator="tz1Broken")
        flaky.initialize()
        items = [
            tzkt_item_factory(timestamp="2023-09-01T00:00:00Z", address="tz1A"),
            tzkt_item_factory(timestamp="2023-09-01T00:00:01Z", address="tz1Broken"),
            tzkt_item_factory(timestamp="2023-09-01T00:00:02Z", address="tz1C"),
        ]
        worker = _worker(flaky, ScriptedSource([items]))

        with caplog.at_level("ERROR"):
            result = await worker.run_cycle()

        assert result.inserted == 2
        assert result.failed_writes == 1
        assert sorted(r.delegator for r in flaky.query()) == ["tz1A", "tz1C"]
        assert "Database insert error" in caplog.text

    @pytest.mark.asyncio
    async def test_fetch_errors_propagate_from_run_cycle(self, store):
        worker = _worker(store, ScriptedSource([NetworkError("down")]))

        with pytest.raises(NetworkError):
            await worker.run_cycle()


class TestGuardedCycle:
    @pytest.mark.asyncio
    async def test_failure_returns_backoff_delay(self, store):
        worker = _worker(
            store,
            ScriptedSource([NetworkError("down")]),
            poll_interval=30.0,
            backoff=BackoffState(base_delay=12.0),
        )

        delay = await worker._run_guarded_cycle()

        assert delay == 12.0
        assert worker.backoff.consecutive_failures == 1
        assert worker.stats.last_error == "down"

    @pytest.mark.asyncio
    async def test_success_returns_poll_interval(self, store, tzkt_item_factory):
        worker = _worker(
            store,
            ScriptedSource([[tzkt_item_factory()]]),
            poll_interval=45.0,
            backoff=BackoffState(base_delay=12.0),
        )

        delay = await worker._run_guarded_cycle()

        assert delay == 45.0
        assert worker.stats.successful_cycles == 1
        assert worker.stats.records_inserted == 1
        assert worker.stats.last_watermark == DEFAULT_START_TIMESTAMP

    @pytest.mark.asyncio
    async def test_unexpected_error_is_contained(self, store, caplog):
        worker = _worker(store, ScriptedSource([RuntimeError("boom")]))

        with caplog.at_level("ERROR"):
            await worker._run_guarded_cycle()

        assert worker.backoff.total_failures == 1
        assert worker.stats.last_error == "RuntimeError: boom"
        assert "Unexpected error in ingestion cycle" in caplog.text


class TestRunLoop:
    @pytest.mark.asyncio
    async def test_recovers_after_consecutive_failures(self, store, tzkt_item_factory):
        """N failed fetches, then a success: watermark unchanged until the success lands."""
        source = ScriptedSource(
            [
                NetworkError("connection refused"),
                DecodeError("not json"),
                NetworkError("HTTP 502"),
                [tzkt_item_factory(timestamp="2023-10-10T10:10:10Z")],
            ]
        )
        worker = _worker(store, source)

        await asyncio.wait_for(worker.run(), timeout=5)

        assert source.watermarks == [DEFAULT_START_TIMESTAMP] * 4 + ["2023-10-10T10:10:10Z"]
        assert worker.backoff.total_failures == 3
        assert worker.backoff.consecutive_failures == 0
        assert worker.state is WorkerState.STOPPED
        assert store.count() == 1

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_cycle(self, store, tzkt_item_factory):
        source = BlockingSource([tzkt_item_factory()])
        worker = _worker(store, source, poll_interval=3600)
        task = asyncio.create_task(worker.run())

        await asyncio.wait_for(source.started.wait(), timeout=5)
        worker.request_stop()
        await asyncio.sleep(0.05)
        assert not task.done()

        source.release.set()
        await asyncio.wait_for(task, timeout=5)

        assert source.calls == 1
        assert store.count() == 1
        assert worker.state is WorkerState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_ends_poll_wait_early(self, store):
        source = BlockingSource([])
        source.release.set()
        worker = _worker(store, source, poll_interval=3600)
        task = asyncio.create_task(worker.run())

        await asyncio.wait_for(source.started.wait(), timeout=5)
        await asyncio.sleep(0.05)
        worker.request_stop()

        await asyncio.wait_for(task, timeout=1)
        assert source.calls == 1

    @pytest.mark.asyncio
    async def test_stop_before_start_runs_no_cycle(self, store):
        source = ScriptedSource([])
        worker = _worker(store, source)
        worker.request_stop()

        await worker.run()

        assert source.watermarks == []
        assert worker.stats.cycles == 0

    @pytest.mark.asyncio
    async def test_second_run_is_rejected(self, store):
        source = BlockingSource([])
        worker = _worker(store, source)
        task = asyncio.create_task(worker.run())
        await asyncio.wait_for(source.started.wait(), timeout=5)

        with pytest.raises(RuntimeError):
            await worker.run()

        worker.request_stop()
        source.release.set()
        await asyncio.wait_for(task, timeout=5)


class TestTimestampGroups:
    @pytest.mark.asyncio
    async def test_group_cut_by_page_limit_is_not_lost(self, store, tzkt_item_factory):
        items = [
            tzkt_item_factory(timestamp="2023-09-01T00:00:00Z", address=f"tz1A{index}")
            for index in range(3)
        ]
        items.append(tzkt_item_factory(timestamp="2023-09-02T00:00:00Z", address="tz1B"))
        source = PagedSource(items, page_size=2)
        worker = _worker(store, source)

        await asyncio.wait_for(worker.run(), timeout=5)

        assert store.count() == 4
        assert {record.delegator for record in store.query()} == {"tz1A0", "tz1A1", "tz1A2", "tz1B"}
        assert source.exact_calls == [("2023-09-01T00:00:00Z", 0), ("2023-09-01T00:00:00Z", 2)]

    @pytest.mark.asyncio
    async def test_full_page_defers_trailing_group(self, store, tzkt_item_factory):
        items = [
            tzkt_item_factory(timestamp="2023-09-01T00:00:00Z", address="tz1First"),
            tzkt_item_factory(timestamp="2023-09-02T00:00:00Z", address="tz1B0"),
            tzkt_item_factory(timestamp="2023-09-02T00:00:00Z", address="tz1B1"),
            tzkt_item_factory(timestamp="2023-09-02T00:00:00Z", address="tz1B2"),
        ]
        worker = _worker(store, PagedSource(items, page_size=3))

        result = await worker.run_cycle()

        assert result.inserted == 1
        assert result.deferred == 2
        assert store.latest_timestamp() == "2023-09-01T00:00:00Z"

        result = await worker.run_cycle()

        assert result.inserted == 3
        assert store.count() == 4

    @pytest.mark.asyncio
    async def test_short_page_is_stored_whole(self, store, tzkt_item_factory):
        items = [
            tzkt_item_factory(timestamp="2023-09-01T00:00:00Z", address="tz1A"),
            tzkt_item_factory(timestamp="2023-09-02T00:00:00Z", address="tz1B"),
        ]
        source = PagedSource(items, page_size=5)
        worker = _worker(store, source)

        result = await worker.run_cycle()

        assert result.inserted == 2
        assert result.deferred == 0
        assert source.exact_calls == []


class TestGroupHelpers:
    def test_split_drops_trailing_group_of_full_page(self, tzkt_item_factory):
        items = [
            tzkt_item_factory(timestamp="2023-09-01T00:00:00Z"),
            tzkt_item_factory(timestamp="2023-09-02T00:00:00Z"),
            tzkt_item_factory(timestamp="2023-09-02T00:00:00Z"),
        ]

        kept, deferred = split_partial_group(items, 3)

        assert kept == items[:1]
        assert deferred == 2

    def test_split_keeps_short_page(self, tzkt_item_factory):
        items = [tzkt_item_factory(), tzkt_item_factory()]

        assert split_partial_group(items, 3) == (items, 0)
        assert split_partial_group(items, None) == (items, 0)

    def test_single_group_page(self, tzkt_item_factory):
        same = [tzkt_item_factory(timestamp="2023-09-01T00:00:00Z") for _ in range(2)]
        mixed = [same[0], tzkt_item_factory(timestamp="2023-09-02T00:00:00Z")]

        assert is_single_group_page(same, 2) is True
        assert is_single_group_page(same, 3) is False
        assert is_single_group_page(mixed, 2) is False
        assert is_single_group_page([], 2) is False


class TestSnapshot:
    def test_snapshot_is_json_friendly(self, store):
        worker = _worker(store, ScriptedSource([]))

        snap = worker.snapshot()

        assert snap["state"] == "stopped"
        assert snap["stop_requested"] is False
        assert snap["cycles"] == 0
        assert snap["consecutive_failures"] == 0
        assert snap["seconds_since_last_failure"] is None
        assert snap["last_success_at"] is None

    def test_negative_poll_interval_rejected(self, store):
        with pytest.raises(ValueError):
            IngestionWorker(store, ScriptedSource([]), poll_interval=-1)
