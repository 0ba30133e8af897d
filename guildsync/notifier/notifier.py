"""
Change Notifier — tells the live bot process that a key's configuration changed.

Behavioral Contract:
- notify() never blocks on I/O: it only enqueues, so it is safe to call
  while a key's critical section is held.
- Events are routed to a fixed lane by a stable hash of their key. Each lane
  is a bounded FIFO drained by one background thread, so events for the same
  key are delivered in commit order while different keys proceed in parallel.
- Failed deliveries are retried with exponential backoff up to max_attempts,
  then dropped and recorded as NotificationDeliveryFailure. A dropped event
  never affects the durability of the write it describes.
- Delivery is at-least-once. No deduplication here; receivers compare
  new_version with the last version they applied.
"""

import logging
import threading
import time
import zlib
from collections import deque
from datetime import datetime, timezone
from typing import Deque, List, Optional, Protocol

import httpx

from guildsync.errors import NotificationDeliveryFailure
from guildsync.models.config import NotificationEvent
from guildsync.models.notifier import DeliveryFailureRecord, DeliveryStatus
from guildsync.models.settings import NotifierSettings

logger = logging.getLogger(__name__)


class EventSink(Protocol):
    """Transport to the bot's subscription endpoint. Raises on failure."""

    def deliver(self, event: NotificationEvent) -> None:
        ...


class HttpEventSink:
    """POSTs each event as JSON to the bot's callback URL."""

    def __init__(
        self,
        endpoint_url: str,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self.endpoint_url = endpoint_url
        self._client = client or httpx.Client(timeout=timeout)

    def deliver(self, event: NotificationEvent) -> None:
        response = self._client.post(
            self.endpoint_url, json=event.model_dump(mode="json")
        )
        response.raise_for_status()

    def close(self) -> None:
        self._client.close()


class LogOnlySink:
    """Used when no bot endpoint is configured; the bot polls storage instead."""

    def deliver(self, event: NotificationEvent) -> None:
        logger.debug("No notification endpoint; %s v%d not pushed", event.key, event.new_version)


class _Lane:
    def __init__(self, index: int):
        self.index = index
        self.pending: Deque[NotificationEvent] = deque()
        self.in_flight: Optional[NotificationEvent] = None
        self.cond = threading.Condition()
        self.thread: Optional[threading.Thread] = None


class ChangeNotifier:
    """Bounded, laned, retrying delivery of NotificationEvents."""

    def __init__(self, sink: EventSink, settings: Optional[NotifierSettings] = None):
        self.sink = sink
        self.settings = settings or NotifierSettings()
        self._lanes = [_Lane(i) for i in range(self.settings.lanes)]
        self._stopping = threading.Event()
        self._stats_lock = threading.Lock()
        self._delivered = 0
        self._failures: Deque[DeliveryFailureRecord] = deque(
            maxlen=self.settings.failure_history
        )
        self._failure_count = 0
        self._started = False

    # --- Producer side ---

    def notify(self, event: NotificationEvent) -> DeliveryStatus:
        """Queue an event for delivery. Never blocks on the network."""
        lane = self._lane_for(event.key)
        with lane.cond:
            if len(lane.pending) >= self.settings.queue_capacity:
                if self.settings.overflow_policy == "reject":
                    self._record_failure(event, 0, "notification queue full")
                    return DeliveryStatus.DROPPED
                oldest = lane.pending.popleft()
                self._record_failure(oldest, 0, "evicted by newer event, queue full")
            lane.pending.append(event)
            lane.cond.notify_all()
        return DeliveryStatus.QUEUED

    def _lane_for(self, key: str) -> _Lane:
        return self._lanes[zlib.crc32(key.encode("utf-8")) % len(self._lanes)]

    # --- Lifecycle ---

    @property
    def running(self) -> bool:
        return self._started and not self._stopping.is_set()

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stopping.clear()
        for lane in self._lanes:
            lane.thread = threading.Thread(
                target=self._run_lane,
                args=(lane,),
                name=f"guildsync-notifier-{lane.index}",
                daemon=True,
            )
            lane.thread.start()
        logger.info("Change notifier started with %d lane(s)", len(self._lanes))

    def stop(self, timeout: float = 5.0) -> None:
        """Stop workers, interrupting any backoff wait. Undelivered events are recorded."""
        self._stopping.set()
        for lane in self._lanes:
            with lane.cond:
                lane.cond.notify_all()
        for lane in self._lanes:
            if lane.thread is not None:
                lane.thread.join(timeout)
                lane.thread = None

        abandoned = 0
        for lane in self._lanes:
            with lane.cond:
                while lane.pending:
                    self._record_failure(lane.pending.popleft(), 0, "notifier stopped")
                    abandoned += 1
        if abandoned:
            logger.warning("Change notifier stopped with %d undelivered event(s)", abandoned)
        self._started = False
        logger.info("Change notifier stopped")

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been delivered or given up on."""
        deadline = None if timeout is None else time.monotonic() + timeout
        for lane in self._lanes:
            with lane.cond:
                while lane.pending or lane.in_flight is not None:
                    remaining = None if deadline is None else deadline - time.monotonic()
                    if remaining is not None and remaining <= 0:
                        return False
                    lane.cond.wait(remaining)
        return True

    # --- Worker side ---

    def _run_lane(self, lane: _Lane) -> None:
        while True:
            with lane.cond:
                while not lane.pending and not self._stopping.is_set():
                    lane.cond.wait()
                if self._stopping.is_set():
                    return
                event = lane.pending.popleft()
                lane.in_flight = event

            try:
                self._deliver_with_retry(event)
            finally:
                with lane.cond:
                    lane.in_flight = None
                    lane.cond.notify_all()

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        s = self.settings
        return min(s.max_backoff_seconds, s.initial_backoff_seconds * s.backoff_multiplier ** (attempt - 1))

    def _deliver_with_retry(self, event: NotificationEvent) -> bool:
        attempts = 0
        reason = "notifier stopped"
        while attempts < self.settings.max_attempts and not self._stopping.is_set():
            attempts += 1
            try:
                self.sink.deliver(event)
            except Exception as e:
                reason = f"{type(e).__name__}: {e}"
                if attempts >= self.settings.max_attempts:
                    break
                delay = self.backoff_delay(attempts)
                logger.warning(
                    "Delivery of %s v%d failed (attempt %d/%d), retrying in %.2fs: %s",
                    event.key, event.new_version, attempts, self.settings.max_attempts, delay, reason,
                )
                if self._stopping.wait(delay):
                    reason = "notifier stopped"
                    break
                continue

            with self._stats_lock:
                self._delivered += 1
            logger.debug("Delivered %s v%d", event.key, event.new_version)
            return True

        self._record_failure(event, attempts, reason)
        return False

    def _record_failure(self, event: NotificationEvent, attempts: int, reason: str) -> None:
        failure = NotificationDeliveryFailure(event.key, event.new_version, attempts, reason)
        logger.error("%s", failure)
        with self._stats_lock:
            self._failure_count += 1
            self._failures.append(
                DeliveryFailureRecord(
                    key=event.key,
                    new_version=event.new_version,
                    attempts=attempts,
                    reason=reason,
                    failed_at=datetime.now(timezone.utc),
                )
            )

    # --- Operator visibility ---

    @property
    def delivered_count(self) -> int:
        with self._stats_lock:
            return self._delivered

    @property
    def failures(self) -> List[DeliveryFailureRecord]:
        with self._stats_lock:
            return list(self._failures)

    def pending_count(self) -> int:
        total = 0
        for lane in self._lanes:
            with lane.cond:
                total += len(lane.pending) + (1 if lane.in_flight is not None else 0)
        return total

    def status(self) -> dict:
        with self._stats_lock:
            delivered = self._delivered
            failure_count = self._failure_count
            recent = [f.model_dump(mode="json") for f in self._failures]
        return {
            "running": self.running,
            "lanes": len(self._lanes),
            "pending": self.pending_count(),
            "delivered": delivered,
            "failed": failure_count,
            "recent_failures": recent,
        }
