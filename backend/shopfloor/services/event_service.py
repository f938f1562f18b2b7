"""
Event Service

Outbound domain events for collaborators outside the core (notifications,
reporting). Events are handed off through a bounded queue: publishing never
blocks, and delivery problems stay on the consumer side.

    publisher = EventPublisher()
    publisher.subscribe(notify_dashboard)
    publisher.start()
"""
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Union

from shopfloor.core.clock import utcnow
from shopfloor.core.settings import get_settings
from shopfloor.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class WorkOrderStatusChanged:
    work_order_id: int
    previous_status: Optional[str]
    new_status: str
    timestamp: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class LotMovement:
    lot_id: int
    product_id: int
    delta: Decimal
    reason: str
    timestamp: datetime = field(default_factory=utcnow)


DomainEvent = Union[WorkOrderStatusChanged, LotMovement]
EventHandler = Callable[[DomainEvent], None]


class EventPublisher:
    """Bounded, non-blocking outbound event queue with an optional dispatcher thread"""

    def __init__(self, maxsize: Optional[int] = None):
        self._queue: "queue.Queue[DomainEvent]" = queue.Queue(
            maxsize=maxsize or get_settings().EVENT_QUEUE_MAXSIZE
        )
        self._handlers: List[EventHandler] = []
        self._thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self.dropped = 0

    def publish(self, event: DomainEvent) -> bool:
        """Queue an event; returns False (and drops it) when the queue is full."""
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(
                "Event queue full, dropping event",
                extra={"event_type": type(event).__name__, "dropped_total": self.dropped},
            )
            return False

    def publish_all(self, events: List[DomainEvent]) -> None:
        for event in events:
            self.publish(event)

    def drain(self) -> List[DomainEvent]:
        """Remove and return every queued event."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                return events

    def pending(self) -> int:
        return self._queue.qsize()

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    def start(self) -> None:
        """Deliver queued events to subscribers on a daemon thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stopping.clear()
        self._thread = threading.Thread(target=self._run, name="shopfloor-events", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stopping.is_set() or not self._queue.empty():
            try:
                event = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            for handler in list(self._handlers):
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Event handler failed",
                        extra={"event_type": type(event).__name__, "handler": getattr(handler, "__name__", repr(handler))},
                    )


_default_publisher: Optional[EventPublisher] = None
_default_lock = threading.Lock()


def get_event_publisher() -> EventPublisher:
    """Process-wide publisher used when a service is not given one."""
    global _default_publisher
    with _default_lock:
        if _default_publisher is None:
            _default_publisher = EventPublisher()
        return _default_publisher
