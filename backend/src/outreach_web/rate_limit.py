from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable

_WINDOW_LENGTH = timedelta(hours=1)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _recipient_key(recipient: str | None) -> str:
    return recipient.strip().lower() if recipient else ""


@dataclass(frozen=True)
class RateLimitSnapshot:
    sent_in_current_hour: int
    window_start_at: datetime
    max_per_hour: int

    @property
    def remaining(self) -> int:
        return max(0, self.max_per_hour - self.sent_in_current_hour)


class RateLimitWindow:
    """Hourly cap on autonomous replies plus an optional per-recipient cooldown."""

    def __init__(
        self,
        *,
        max_per_hour: int,
        recipient_cooldown_seconds: int = 0,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if max_per_hour < 0:
            raise ValueError("max_per_hour must be non-negative")
        self._lock = Lock()
        self._clock = clock
        self._max_per_hour = max_per_hour
        self._cooldown = timedelta(seconds=max(0, recipient_cooldown_seconds))
        self._sent_in_current_hour = 0
        self._window_start_at = clock()
        self._last_sent_by_recipient: dict[str, datetime] = {}

    def reset(self) -> None:
        with self._lock:
            self._sent_in_current_hour = 0
            self._window_start_at = self._clock()
            self._last_sent_by_recipient.clear()

    def check(self, recipient: str | None = None) -> str | None:
        """Refusal reason a send would hit right now, without consuming a slot."""
        with self._lock:
            now = self._clock()
            self._roll_window(now)
            return self._refusal(now, _recipient_key(recipient))

    def try_consume(self, recipient: str | None = None) -> str | None:
        """Consume one send slot; returns the refusal reason, or None when consumed."""
        with self._lock:
            now = self._clock()
            self._roll_window(now)
            key = _recipient_key(recipient)
            refusal = self._refusal(now, key)
            if refusal is not None:
                return refusal
            self._sent_in_current_hour += 1
            if key:
                self._last_sent_by_recipient[key] = now
            return None

    def snapshot(self) -> RateLimitSnapshot:
        with self._lock:
            self._roll_window(self._clock())
            return RateLimitSnapshot(
                sent_in_current_hour=self._sent_in_current_hour,
                window_start_at=self._window_start_at,
                max_per_hour=self._max_per_hour,
            )

    def _refusal(self, now: datetime, key: str) -> str | None:
        if self._sent_in_current_hour >= self._max_per_hour:
            return "rate_limited"
        if key and self._cooldown:
            last_sent = self._last_sent_by_recipient.get(key)
            if last_sent is not None and now - last_sent < self._cooldown:
                return "recipient_rate_limited"
        return None

    def _roll_window(self, now: datetime) -> None:
        if now - self._window_start_at >= _WINDOW_LENGTH:
            self._sent_in_current_hour = 0
            self._window_start_at = now
