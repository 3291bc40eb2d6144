import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Union

from ..artifacts.service import refresh_order_urls
from ..artifacts.store import LocalArtifactStore
from ..common.config import settings
from ..common.database import fetch_dispatchable_entries, fetch_orders_expiring, fetch_unqueued_items
from ..common.db import utcnow
from ..common.errors import StorageError
from ..common.metrics import MONITOR_TICK_ERRORS, MONITOR_TICKS, STORAGE_ALERTS
from ..generation import queue
from ..generation.processor import GenerationProcessor

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Idle:
    name = "idle"


@dataclass(frozen=True)
class Running:
    task: asyncio.Task
    stop_event: asyncio.Event
    started_at: datetime
    name = "running"


MonitorState = Union[Idle, Running]


@dataclass
class _StorageFailures:
    count: int = 0
    next_attempt: float = 0.0
    alerted: bool = False
    last_error: str = field(default="")


class OrderMonitor:
    """Background loop that drives generation and keeps signed URLs fresh.

    Each tick:
      - fails entries stuck in ``processing`` that no task here owns,
      - dispatches pending entries of paid orders onto a bounded pool,
      - re-signs URLs of completed items that are about to expire.

    ``start``/``stop`` are idempotent and serialized by a lock. ``stop``
    returns once the loop task has exited; generation tasks already running
    are left to finish.
    """

    def __init__(
        self,
        processor: GenerationProcessor,
        store: LocalArtifactStore,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
        concurrency: Optional[int] = None,
        refresh_margin: Optional[int] = None,
        alert_threshold: Optional[int] = None,
        backoff_max: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.processor = processor
        self.store = store
        self.poll_interval = poll_interval if poll_interval is not None else settings.POLL_INTERVAL
        self.batch_size = batch_size or settings.MONITOR_BATCH_SIZE
        self.concurrency = concurrency or settings.GENERATION_CONCURRENCY
        self.refresh_margin = refresh_margin if refresh_margin is not None else settings.REFRESH_MARGIN
        self.alert_threshold = alert_threshold or settings.STORAGE_ALERT_THRESHOLD
        self.backoff_max = backoff_max if backoff_max is not None else settings.STORAGE_BACKOFF_MAX
        self._clock = clock

        self._state: MonitorState = Idle()
        self._lock = asyncio.Lock()
        self._semaphore = asyncio.Semaphore(max(1, self.concurrency))
        self._in_flight: Dict[int, asyncio.Task] = {}
        self._storage_failures: Dict[int, _StorageFailures] = {}

        self.last_tick_at: Optional[datetime] = None
        self.tick_count = 0
        self.error_count = 0

    @property
    def running(self) -> bool:
        return isinstance(self._state, Running) and not self._state.task.done()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def start(self) -> bool:
        """Start the loop. Returns False if it was already running."""
        async with self._lock:
            if self.running:
                return False
            stop_event = asyncio.Event()
            task = asyncio.create_task(self._run(stop_event), name="order-monitor")
            self._state = Running(task=task, stop_event=stop_event, started_at=utcnow())
            _logger.info(
                "Order monitor started | poll_interval=%ss concurrency=%s batch=%s",
                self.poll_interval, self.concurrency, self.batch_size,
            )
            return True

    async def stop(self) -> bool:
        """Stop the loop and wait for it to exit. Returns False if it was idle."""
        async with self._lock:
            state = self._state
            if not isinstance(state, Running):
                return False
            state.stop_event.set()
            try:
                await state.task
            finally:
                self._state = Idle()
            _logger.info("Order monitor stopped | in_flight=%s", self.in_flight)
            return True

    async def drain(self, timeout: float) -> bool:
        """Wait up to ``timeout`` for in-flight generation; cancel what is left."""
        tasks = list(self._in_flight.values())
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if not pending:
            return True
        for task in pending:
            task.cancel()
        # Cancelled tasks still record their failure before exiting
        await asyncio.wait(pending, timeout=max(timeout, 1.0))
        _logger.warning("Cancelled in-flight generation on shutdown | count=%s", len(pending))
        return False

    def status(self) -> Dict:
        return {
            "running": self.running,
            "state": self._state.name,
            "started_at": self._state.started_at.isoformat() if isinstance(self._state, Running) else None,
            "last_tick_at": self.last_tick_at.isoformat() if self.last_tick_at else None,
            "tick_count": self.tick_count,
            "error_count": self.error_count,
            "in_flight": self.in_flight,
            "poll_interval": self.poll_interval,
            "concurrency": self.concurrency,
            "storage_alerts": sorted(
                order_id for order_id, f in self._storage_failures.items() if f.count >= self.alert_threshold
            ),
        }

    async def _run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            try:
                await self.tick(stop_event)
            except Exception:
                self.error_count += 1
                MONITOR_TICK_ERRORS.inc()
                _logger.exception("Order monitor tick failed | errors=%s", self.error_count)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def tick(self, stop_event: Optional[asyncio.Event] = None) -> None:
        now = utcnow()
        self.last_tick_at = now
        self.tick_count += 1
        MONITOR_TICKS.inc()

        stale_after = self.processor.timeout + max(self.poll_interval, 30.0)
        await queue.fail_stale(now - timedelta(seconds=stale_after), exclude=self._in_flight.keys())

        for item_id in await fetch_unqueued_items(self.batch_size):
            _logger.warning("Paid item had no queue entry, enqueuing | order_item_id=%s", item_id)
            await queue.enqueue(item_id)

        entry_ids = await fetch_dispatchable_entries(self.batch_size, exclude=set(self._in_flight))
        if entry_ids:
            _logger.info("Found pending order items | count=%s", len(entry_ids))
        for entry_id in entry_ids:
            if stop_event is not None and stop_event.is_set():
                break
            self._dispatch(entry_id, stop_event)

        order_ids = await fetch_orders_expiring(now + timedelta(seconds=self.refresh_margin))
        # Orders that left the expiring set no longer need a backoff record
        for order_id in set(self._storage_failures) - set(order_ids):
            del self._storage_failures[order_id]
        for order_id in order_ids:
            if stop_event is not None and stop_event.is_set():
                break
            await self._refresh_order(order_id)

    def _dispatch(self, entry_id: int, stop_event: Optional[asyncio.Event] = None) -> None:
        task = asyncio.create_task(self._run_entry(entry_id, stop_event), name=f"generation-{entry_id}")
        self._in_flight[entry_id] = task
        task.add_done_callback(lambda _t: self._in_flight.pop(entry_id, None))

    async def _run_entry(self, entry_id: int, stop_event: Optional[asyncio.Event] = None) -> None:
        async with self._semaphore:
            # Still queued for a slot when its loop was stopped: leave it pending
            if stop_event is not None and stop_event.is_set():
                return
            try:
                await self.processor.process(entry_id)
            except Exception:
                _logger.exception("Generation task failed | entry_id=%s", entry_id)

    async def _refresh_order(self, order_id: int) -> None:
        failures = self._storage_failures.get(order_id)
        if failures is not None and self._clock() < failures.next_attempt:
            return
        try:
            await refresh_order_urls(self.store, order_id, margin=self.refresh_margin)
        except StorageError as e:
            failures = failures or _StorageFailures()
            failures.count += 1
            failures.last_error = e.message
            delay = min(self.poll_interval * (2 ** (failures.count - 1)), self.backoff_max)
            failures.next_attempt = self._clock() + delay
            self._storage_failures[order_id] = failures
            _logger.warning(
                "URL refresh failed, backing off | order_id=%s failures=%s retry_in=%.0fs err=%s",
                order_id, failures.count, delay, e.message,
            )
            if failures.count >= self.alert_threshold and not failures.alerted:
                failures.alerted = True
                STORAGE_ALERTS.inc()
                _logger.error(
                    "ALERT signed URL refresh keeps failing | order_id=%s failures=%s err=%s",
                    order_id, failures.count, e.message,
                )
            return
        if order_id in self._storage_failures:
            _logger.info("URL refresh recovered | order_id=%s", order_id)
            del self._storage_failures[order_id]
