from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Literal

logger = logging.getLogger(__name__)

EventKind = Literal["outcome", "reply_sent", "escalated", "delivery_failed", "campaign_reply", "campaign_open"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class OutboundEvent:
    kind: EventKind
    thread_id: str | None = None
    message_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=_now_utc)


EventHandler = Callable[[OutboundEvent], None]


class EventBus:
    """Synchronous fan-out to observers such as dashboards and notifiers."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def publish(self, event: OutboundEvent) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("event handler failed for %s event on thread %s", event.kind, event.thread_id)


@dataclass(frozen=True)
class PipelineStatsSnapshot:
    total_received: int
    replies_sent: int
    escalated: int
    suppressed: int
    failed: int
    last_processed_at: datetime | None


class PipelineStats:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counts = {"sent": 0, "escalated": 0, "suppressed": 0, "failed": 0}
        self._total_received = 0
        self._last_processed_at: datetime | None = None

    def reset(self) -> None:
        with self._lock:
            self._counts = {key: 0 for key in self._counts}
            self._total_received = 0
            self._last_processed_at = None

    def __call__(self, event: OutboundEvent) -> None:
        if event.kind != "outcome":
            return
        status = str(event.payload.get("status", ""))
        if status == "success":
            status = "sent" if event.payload.get("action") == "send" else ""
        with self._lock:
            self._total_received += 1
            if status in self._counts:
                self._counts[status] += 1
            self._last_processed_at = event.occurred_at

    def snapshot(self) -> PipelineStatsSnapshot:
        with self._lock:
            return PipelineStatsSnapshot(
                total_received=self._total_received,
                replies_sent=self._counts["sent"],
                escalated=self._counts["escalated"],
                suppressed=self._counts["suppressed"],
                failed=self._counts["failed"],
                last_processed_at=self._last_processed_at,
            )
