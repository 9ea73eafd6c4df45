from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from typing import Protocol

from .models import Intent


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EventSummary:
    id: str
    name: str
    date: str
    time: str
    venue: str
    target_donors: int
    current_rsvps: int
    status: str = "active"


@dataclass(frozen=True)
class AnalyticsSummary:
    total_events: int
    active_events: int
    total_emails_sent: int
    average_response_rate: float
    total_bookings: int


@dataclass(frozen=True)
class DashboardContext:
    events: tuple[EventSummary, ...]
    analytics: AnalyticsSummary

    def primary_event(self) -> EventSummary | None:
        active = [event for event in self.events if event.status == "active"]
        return active[0] if active else (self.events[0] if self.events else None)

    def render(self) -> str:
        return json.dumps(
            {
                "events": [asdict(event) for event in self.events],
                "analytics": asdict(self.analytics),
            },
            indent=2,
        )


class DashboardDataProvider(Protocol):
    def snapshot(self) -> DashboardContext: ...


DEFAULT_DASHBOARD_CONTEXT = DashboardContext(
    events=(
        EventSummary(
            id="1",
            name="Community Center Blood Drive",
            date="2025-09-20",
            time="9:00 AM - 3:00 PM",
            venue="Downtown Community Center",
            target_donors=50,
            current_rsvps=12,
        ),
    ),
    analytics=AnalyticsSummary(
        total_events=2,
        active_events=2,
        total_emails_sent=45,
        average_response_rate=72.5,
        total_bookings=18,
    ),
)


class StaticDashboardDataProvider:
    def __init__(self, context: DashboardContext = DEFAULT_DASHBOARD_CONTEXT) -> None:
        self._context = context

    def snapshot(self) -> DashboardContext:
        return self._context


@dataclass(frozen=True)
class CampaignRecord:
    campaign_id: str
    opens: int = 0
    replies: int = 0
    sentiment_counts: dict[str, int] = field(default_factory=dict)
    responders: frozenset[str] = field(default_factory=frozenset)
    last_reply_at: datetime | None = None
    last_opened_at: datetime | None = None


class CampaignRecordRepository(Protocol):
    def reset(self) -> None: ...

    # A message id that was already counted for the campaign leaves the record unchanged.
    def record_reply(
        self,
        campaign_id: str,
        sender_address: str,
        sentiment: Intent,
        *,
        message_id: str | None = None,
    ) -> CampaignRecord: ...

    def record_open(self, campaign_id: str) -> CampaignRecord: ...

    def get(self, campaign_id: str) -> CampaignRecord | None: ...


class InMemoryCampaignRecordRepository:
    def __init__(self) -> None:
        self._lock = Lock()
        self._records: dict[str, CampaignRecord] = {}
        self._counted: set[tuple[str, str]] = set()

    def reset(self) -> None:
        with self._lock:
            self._records.clear()
            self._counted.clear()

    def record_reply(
        self,
        campaign_id: str,
        sender_address: str,
        sentiment: Intent,
        *,
        message_id: str | None = None,
    ) -> CampaignRecord:
        with self._lock:
            current = self._records.get(campaign_id) or CampaignRecord(campaign_id=campaign_id)
            if message_id is not None:
                if (campaign_id, message_id) in self._counted:
                    return current
                self._counted.add((campaign_id, message_id))
            counts = dict(current.sentiment_counts)
            counts[sentiment] = counts.get(sentiment, 0) + 1
            updated = replace(
                current,
                replies=current.replies + 1,
                sentiment_counts=counts,
                responders=current.responders | {sender_address.strip().lower()},
                last_reply_at=_now_utc(),
            )
            self._records[campaign_id] = updated
            return updated

    def record_open(self, campaign_id: str) -> CampaignRecord:
        with self._lock:
            current = self._records.get(campaign_id) or CampaignRecord(campaign_id=campaign_id)
            updated = replace(current, opens=current.opens + 1, last_opened_at=_now_utc())
            self._records[campaign_id] = updated
            return updated

    def get(self, campaign_id: str) -> CampaignRecord | None:
        with self._lock:
            return self._records.get(campaign_id)
