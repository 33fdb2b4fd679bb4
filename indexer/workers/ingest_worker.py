"""
Tezos Delegation Indexer - Ingestion Worker

Long-lived background task that keeps the checkpoint store in sync with the
TzKT delegations feed.

Cycle:
    1. Read the watermark (max stored timestamp) from the checkpoint store
    2. Fetch delegations newer than the watermark
    3. Fetch failed: log, wait the backoff interval, start over
    4. Fetch succeeded: validate and upsert every item; a bad item or a failed
       write is logged and skipped, the rest of the batch still runs. A full
       page never stores part of a timestamp group: a trailing group is left
       for the next cycle, and a page that is one group is paged through whole
    5. Wait the poll interval, start over

The watermark is re-read from the store on every cycle, so a restart resumes
from durable state and never from worker memory.

Stop semantics: the stop flag is checked at the top of each cycle only. A
batch that has started always finishes; a stop request during one of the
waits ends the wait immediately.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from pydantic import ValidationError

from ..core.errors import DecodeError, NetworkError, StorageWriteError
from ..core.logging import LogContext, get_logger
from ..db import CheckpointStore
from ..models import DelegationRecord, TzktDelegation
from .backoff import DEFAULT_BACKOFF_SECONDS, BackoffState

logger = get_logger(__name__)

DEFAULT_POLL_INTERVAL = 30.0


def split_partial_group(
    items: list[dict[str, Any]], page_size: int | None
) -> tuple[list[dict[str, Any]], int]:
    """
    Drop the trailing records that share the last timestamp of a full page.

    The next fetch asks for ``timestamp.gt=<watermark>``, so storing part of a
    timestamp group would make the rest of it unreachable. Leaving the group
    out keeps the watermark below it and the next page starts with it.

    Returns:
        (items to store, number of records deferred). When the whole page is
        one timestamp group nothing is dropped and the count is 0.
    """
    if not page_size or len(items) < page_size:
        return items, 0
    last = items[-1].get("timestamp")
    cut = len(items)
    while cut > 0 and items[cut - 1].get("timestamp") == last:
        cut -= 1
    if cut == 0:
        return items, 0
    return items[:cut], len(items) - cut


def is_single_group_page(items: list[dict[str, Any]], page_size: int | None) -> bool:
    """True for a full page whose records all carry the same timestamp."""
    if not page_size or not items or len(items) < page_size:
        return False
    first = items[0].get("timestamp")
    return first is not None and all(item.get("timestamp") == first for item in items)


class DelegationSource(Protocol):
    page_size: int

    async def fetch_since(self, last_timestamp: str) -> list[dict[str, Any]]: ...

    async def fetch_at(self, timestamp: str, offset: int = 0) -> list[dict[str, Any]]: ...


class WorkerState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one successful fetch/upsert cycle."""

    watermark: str
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed_writes: int = 0
    deferred: int = 0


@dataclass
class WorkerStats:
    cycles: int = 0
    successful_cycles: int = 0
    records_inserted: int = 0
    last_watermark: str | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None


class IngestionWorker:
    """
    Polls the delegation source and upserts new events into the store.

    Usage:
        worker = IngestionWorker(store, client)
        task = asyncio.create_task(worker.run())
        ...
        worker.request_stop()
        await task
    """

    def __init__(
        self,
        store: CheckpointStore,
        client: DelegationSource,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        backoff: BackoffState | None = None,
        page_size: int | None = None,
    ) -> None:
        if poll_interval < 0:
            raise ValueError("poll_interval must be >= 0")
        if page_size is None:
            page_size = getattr(client, "page_size", None)
        self._page_size = page_size
        self._store = store
        self._client = client
        self._poll_interval = poll_interval
        self._backoff = backoff or BackoffState(base_delay=DEFAULT_BACKOFF_SECONDS)
        self._stop_event = asyncio.Event()
        self._state = WorkerState.STOPPED
        self._stats = WorkerStats()

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    @property
    def stats(self) -> WorkerStats:
        return self._stats

    @property
    def backoff(self) -> BackoffState:
        return self._backoff

    def request_stop(self) -> None:
        """Ask the worker to stop before its next cycle. Idempotent."""
        if not self._stop_event.is_set():
            logger.info("Ingestion worker stop requested")
        self._stop_event.set()

    def snapshot(self) -> dict[str, Any]:
        """JSON-friendly view of state and counters for the health endpoint."""
        stats = asdict(self._stats)
        if self._stats.last_success_at is not None:
            stats["last_success_at"] = self._stats.last_success_at.isoformat()
        return {
            "state": self._state.value,
            "stop_requested": self.stop_requested,
            "consecutive_failures": self._backoff.consecutive_failures,
            "total_failures": self._backoff.total_failures,
            "seconds_since_last_failure": self._backoff.time_since_last_failure,
            **stats,
        }

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run(self) -> None:
        """Run cycles until a stop is requested. Never raises on cycle failures."""
        if self._state is WorkerState.RUNNING:
            raise RuntimeError("IngestionWorker.run() is already active")

        self._state = WorkerState.RUNNING
        logger.info(
            "Starting ingestion worker poll_interval=%.1fs backoff=%.1fs",
            self._poll_interval,
            self._backoff.base_delay,
        )
        try:
            while not self._stop_event.is_set():
                self._stats.cycles += 1
                with LogContext(cycle=self._stats.cycles):
                    delay = await self._run_guarded_cycle()
                await self._sleep(delay)
        finally:
            self._state = WorkerState.STOPPED
            logger.info("Ingestion worker stopped after %d cycles", self._stats.cycles)

    async def _run_guarded_cycle(self) -> float:
        """Run one cycle, recording the outcome. Returns the delay before the next one."""
        try:
            result = await self.run_cycle()
        except (NetworkError, DecodeError) as exc:
            delay = self._backoff.record_failure()
            self._stats.last_error = str(exc)
            logger.warning(
                f"Fetch failed, retrying in {delay:.1f}s: {exc}",
                extra={
                    "error_type": type(exc).__name__,
                    "delay_s": delay,
                    "consecutive_failures": self._backoff.consecutive_failures,
                },
            )
            return delay
        except Exception as exc:
            delay = self._backoff.record_failure()
            self._stats.last_error = f"{type(exc).__name__}: {exc}"
            logger.exception(
                f"Unexpected error in ingestion cycle, retrying in {delay:.1f}s",
                extra={"error_type": type(exc).__name__, "delay_s": delay},
            )
            return delay

        self._backoff.record_success()
        self._stats.successful_cycles += 1
        self._stats.records_inserted += result.inserted
        self._stats.last_watermark = result.watermark
        self._stats.last_success_at = datetime.now(timezone.utc)
        self._stats.last_error = None
        logger.info(
            "Ingestion cycle completed",
            extra={
                "watermark": result.watermark,
                "fetched": result.fetched,
                "inserted": result.inserted,
                "duplicates": result.duplicates,
                "skipped": result.skipped + result.failed_writes,
            },
        )
        return self._poll_interval

    async def run_cycle(self) -> CycleResult:
        """
        Execute one watermark -> fetch -> upsert pass.

        Raises:
            NetworkError, DecodeError: from the delegation source
        """
        watermark = await asyncio.to_thread(self._store.latest_timestamp)
        raw_items = await self._client.fetch_since(watermark)
        if is_single_group_page(raw_items, self._page_size):
            batch = await self._fetch_whole_group(raw_items[0]["timestamp"])
            deferred = 0
        else:
            batch, deferred = split_partial_group(raw_items, self._page_size)
        if deferred:
            logger.info(
                f"Full page ends inside a timestamp group, deferring {deferred} record(s) to the next cycle",
                extra={"record_timestamp": raw_items[-1].get("timestamp")},
            )

        records: list[DelegationRecord] = []
        skipped = 0
        for item in batch:
            try:
                records.append(TzktDelegation.model_validate(item).to_record())
            except ValidationError as exc:
                skipped += 1
                logger.warning(
                    f"Skipping malformed delegation: {exc.error_count()} validation error(s)",
                    extra={
                        "record_timestamp": item.get("timestamp") if isinstance(item, dict) else None
                    },
                )

        inserted, duplicates, failed = await asyncio.to_thread(self._upsert_batch, records)
        return CycleResult(
            watermark=watermark,
            fetched=len(raw_items),
            inserted=inserted,
            duplicates=duplicates,
            skipped=skipped,
            failed_writes=failed,
            deferred=deferred,
        )

    async def _fetch_whole_group(self, timestamp: str) -> list[dict[str, Any]]:
        """Page through every record at ``timestamp`` with offset paging."""
        group: list[dict[str, Any]] = []
        while True:
            page = await self._client.fetch_at(timestamp, offset=len(group))
            group.extend(page)
            if len(page) < self._page_size:
                break
        logger.info(
            f"Fetched {len(group)} records sharing one timestamp",
            extra={"record_timestamp": timestamp},
        )
        return group

    def _upsert_batch(self, records: list[DelegationRecord]) -> tuple[int, int, int]:
        """Upsert each record independently. Returns (inserted, duplicates, failed)."""
        inserted = duplicates = failed = 0
        for record in records:
            logger.debug(
                "Fetched delegation timestamp=%s amount=%d delegator=%s level=%d",
                record.timestamp,
                record.amount,
                record.delegator,
                record.level,
            )
            try:
                if self._store.upsert(record):
                    inserted += 1
                else:
                    duplicates += 1
            except StorageWriteError as exc:
                failed += 1
                logger.error(
                    f"Database insert error: {exc}",
                    extra={"record_timestamp": record.timestamp, "delegator": record.delegator},
                )
        return inserted, duplicates, failed

    async def _sleep(self, seconds: float) -> None:
        """Wait up to ``seconds``; returns early once a stop is requested."""
        if seconds <= 0 or self._stop_event.is_set():
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
