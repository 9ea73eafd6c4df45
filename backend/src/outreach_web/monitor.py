from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from .email_provider import EmailProvider, EmailProviderError
from .pipeline import ConversationPipeline, InboundMessage

logger = logging.getLogger(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MonitorStatus:
    is_running: bool
    check_interval: float
    last_check_time: datetime | None
    next_check_in: float | None


@dataclass(frozen=True)
class MonitorTickResult:
    fetched: int = 0
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    error: str | None = None


class ContinuousMonitor:
    """Polls the inbox for unread mail as a backstop to webhook delivery.

    One daemon worker thread at most. ``stop`` and ``update_interval`` wake the
    worker through an event so neither waits out the current interval.
    """

    def __init__(
        self,
        *,
        pipeline: ConversationPipeline | None,
        provider: EmailProvider | None,
        inbox: str,
        interval_seconds: float = 5,
        batch_limit: int = 100,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if interval_seconds < 1:
            raise ValueError("interval_seconds must be at least 1")
        self._pipeline = pipeline
        self._provider = provider
        self._inbox = inbox.strip().lower()
        self._interval = float(interval_seconds)
        self._batch_limit = batch_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._tick_lock = threading.Lock()
        self._wake = threading.Event()
        self._stop_event: threading.Event | None = None
        self._worker: threading.Thread | None = None
        self._last_check_time: datetime | None = None
        self._next_check_at: datetime | None = None

    def is_ready(self) -> bool:
        return self._pipeline is not None and self._provider is not None and bool(self._inbox)

    def is_running(self) -> bool:
        with self._lock:
            return self._worker is not None

    def start(self) -> bool:
        with self._lock:
            if self._worker is not None:
                logger.info("email monitor already running")
                return False
            if not self.is_ready():
                logger.warning("email monitor not started: pipeline or email provider is not configured")
                return False
            stop_event = threading.Event()
            self._wake.clear()
            self._stop_event = stop_event
            self._next_check_at = self._clock()
            self._worker = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name="outreach-email-monitor",
                daemon=True,
            )
            self._worker.start()
        logger.info("email monitor started for %s every %.0fs", self._inbox, self._interval)
        return True

    def stop(self) -> bool:
        with self._lock:
            worker = self._worker
            if worker is None or self._stop_event is None:
                return False
            self._stop_event.set()
            self._wake.set()
            self._worker = None
            self._stop_event = None
            self._next_check_at = None
        if worker is not threading.current_thread():
            worker.join(timeout=self._interval + 5)
        logger.info("email monitor stopped")
        return True

    def restart(self) -> bool:
        self.stop()
        return self.start()

    def update_interval(self, seconds: float) -> MonitorStatus:
        if seconds < 1:
            raise ValueError("interval must be at least 1 second")
        with self._lock:
            self._interval = float(seconds)
            if self._worker is not None:
                self._next_check_at = self._clock() + timedelta(seconds=self._interval)
                self._wake.set()
        logger.info("email monitor interval set to %.0fs", seconds)
        return self.status()

    def status(self) -> MonitorStatus:
        with self._lock:
            next_check_in: float | None = None
            if self._worker is not None and self._next_check_at is not None:
                next_check_in = max(0.0, (self._next_check_at - self._clock()).total_seconds())
            return MonitorStatus(
                is_running=self._worker is not None,
                check_interval=self._interval,
                last_check_time=self._last_check_time,
                next_check_in=next_check_in,
            )

    def run_once(self) -> MonitorTickResult:
        if self._pipeline is None or self._provider is None:
            return MonitorTickResult(error="monitor_not_ready")
        with self._tick_lock:
            try:
                result = self._tick(self._pipeline, self._provider)
            finally:
                with self._lock:
                    self._last_check_time = self._clock()
        return result

    def _run(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("email monitor tick failed")
            with self._lock:
                if stop_event.is_set():
                    break
                self._next_check_at = self._clock() + timedelta(seconds=self._interval)
            while not stop_event.is_set():
                with self._lock:
                    next_check_at = self._next_check_at
                if next_check_at is None:
                    break
                remaining = (next_check_at - self._clock()).total_seconds()
                if remaining <= 0:
                    break
                self._wake.wait(remaining)
                self._wake.clear()

    def _tick(self, pipeline: ConversationPipeline, provider: EmailProvider) -> MonitorTickResult:
        try:
            messages = provider.list_unread(self._inbox, self._batch_limit)
        except EmailProviderError as exc:
            logger.warning("email monitor could not list unread mail (%s): %s", exc.error_code, exc.message)
            return MonitorTickResult(error=exc.error_code)

        processed = skipped = failed = 0
        for raw in messages:
            inbound = InboundMessage.from_raw(raw, source="monitor")
            if raw.sender_address == self._inbox or pipeline.is_processed(inbound):
                skipped += 1
                self._mark_read(provider, raw.id)
                continue
            outcome = pipeline.process(inbound)
            if outcome.status == "failed" and outcome.reason == "processing_error":
                # Reservation was released; leave unread so the next tick retries.
                failed += 1
                continue
            if outcome.status == "failed":
                failed += 1
            else:
                processed += 1
            self._mark_read(provider, raw.id)

        if messages:
            logger.info(
                "email monitor tick: fetched=%d processed=%d skipped=%d failed=%d",
                len(messages),
                processed,
                skipped,
                failed,
            )
        return MonitorTickResult(fetched=len(messages), processed=processed, skipped=skipped, failed=failed)

    @staticmethod
    def _mark_read(provider: EmailProvider, message_id: str) -> None:
        try:
            provider.mark_read(message_id)
        except EmailProviderError as exc:
            logger.warning("could not mark message %s read (%s): %s", message_id, exc.error_code, exc.message)
