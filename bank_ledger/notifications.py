"""
Notification Dispatcher Module

Post-commit events for out-of-band delivery (e-mail alerts, webhooks).
Dispatch is fire-and-forget: ``notify`` only submits the event to a worker
pool, and a failing channel is logged without ever reaching the operation
that produced the event.
"""

import uuid
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent import futures
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

import requests

from .logging_config import get_logger, log_action


class LedgerEvent(Enum):
    """Events emitted after a ledger operation commits"""
    ACCOUNT_CREATED = "account.created"
    ACCOUNT_CREDITED = "account.credited"
    ACCOUNT_DEBITED = "account.debited"
    ACCOUNT_CLOSED = "account.closed"
    PROFILE_UPDATED = "account.updated"


@dataclass
class EventPayload:
    """Payload for ledger events"""
    event_type: LedgerEvent
    account_id: str
    data: Dict[str, Any]
    correlation_id: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization"""
        return {
            'event_type': self.event_type.value,
            'account_id': self.account_id,
            'data': self.data,
            'correlation_id': self.correlation_id,
            'timestamp': self.timestamp.isoformat(),
            'event_id': self.event_id
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EventPayload':
        """Create from dictionary"""
        return cls(
            event_type=LedgerEvent(data['event_type']),
            account_id=data['account_id'],
            data=data['data'],
            correlation_id=data.get('correlation_id'),
            timestamp=datetime.fromisoformat(data['timestamp']) if isinstance(data['timestamp'], str) else data['timestamp'],
            event_id=data['event_id']
        )


class NotificationChannel(ABC):
    """Abstract base class for delivery channels"""

    name = "channel"

    @abstractmethod
    def send(self, event: EventPayload) -> None:
        """Deliver one event; raise on failure"""
        pass


class LogChannel(NotificationChannel):
    """Writes events to the log instead of delivering them"""

    name = "log"

    def __init__(self, logger=None):
        self.logger = logger or get_logger("ledger.notifications.log")

    def send(self, event: EventPayload) -> None:
        log_action(
            self.logger, "INFO",
            f"{event.event_type.value} for account {event.account_id}",
            action=event.event_type.value,
            resource=f"account:{event.account_id}",
            correlation_id=event.correlation_id,
            extra=event.data
        )


class WebhookChannel(NotificationChannel):
    """Posts events as JSON to an HTTP endpoint"""

    name = "webhook"

    def __init__(self, url: str, timeout: float = 5.0, session: Optional[requests.Session] = None):
        self.url = url
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, event: EventPayload) -> None:
        response = self.session.post(
            self.url,
            json=event.to_dict(),
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()


class NotificationDispatcher(ABC):
    """Receives post-commit events; must never block or fail the caller"""

    @abstractmethod
    def notify(self, event: EventPayload) -> None:
        pass

    def shutdown(self, wait: bool = True) -> None:
        pass


class NullNotificationDispatcher(NotificationDispatcher):
    """Discards every event"""

    def notify(self, event: EventPayload) -> None:
        pass


class ThreadPoolNotificationDispatcher(NotificationDispatcher):
    """
    Delivers events to channels and subscribed handlers on a worker pool.

    Every channel receives every event; handlers can be subscribed to a
    single event type or to all of them.
    """

    def __init__(self, channels: Optional[List[NotificationChannel]] = None, max_workers: int = 2):
        self.channels: List[NotificationChannel] = list(channels or [])
        self._handlers: Dict[LedgerEvent, List[Callable]] = {}
        self._global_handlers: List[Callable] = []
        self._lock = RLock()
        self._pending: List[Future] = []
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="ledger-notify")
        self.logger = get_logger("ledger.notifications")

    def add_channel(self, channel: NotificationChannel) -> None:
        with self._lock:
            self.channels.append(channel)

    def subscribe(self, event_type: LedgerEvent, handler: Callable) -> None:
        """Subscribe to a specific event type"""
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)
            self.logger.debug(f"Subscribed handler {getattr(handler, '__name__', repr(handler))} to {event_type.value}")

    def subscribe_all(self, handler: Callable) -> None:
        """Subscribe to ALL events"""
        with self._lock:
            self._global_handlers.append(handler)

    def notify(self, event: EventPayload) -> None:
        """Submit an event for delivery and return immediately"""
        try:
            future = self._executor.submit(self._deliver, event)
        except RuntimeError as e:
            # Pool already shut down
            self.logger.error(f"Dropped {event.event_type.value} event {event.event_id}: {e}")
            return
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def _deliver(self, event: EventPayload) -> None:
        with self._lock:
            targets = [(channel.name, channel.send) for channel in self.channels]
            targets += [(getattr(h, '__name__', repr(h)), h)
                        for h in self._handlers.get(event.event_type, [])]
            targets += [(getattr(h, '__name__', repr(h)), h) for h in self._global_handlers]

        for name, send in targets:
            try:
                send(event)
            except Exception as e:
                # Log but don't break delivery to the remaining targets
                log_action(
                    self.logger, "ERROR",
                    f"Notification {event.event_type.value} via {name} failed: {e}",
                    action="notification_failed",
                    resource=f"account:{event.account_id}",
                    correlation_id=event.correlation_id,
                    extra={"event_id": event.event_id, "target": name}
                )

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until every submitted event has been delivered"""
        with self._lock:
            pending = list(self._pending)
        futures.wait(pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
