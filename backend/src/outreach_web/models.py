from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ThreadStatus = Literal["active", "needs_attention", "completed"]
MessageDirection = Literal["inbound", "outbound"]
Intent = Literal["positive", "negative", "neutral", "question"]
DecisionAction = Literal["send", "escalate", "suppress"]
SuggestedActionType = Literal["schedule_appointment", "send_info", "escalate", "close_conversation"]
OutcomeStatus = Literal["success", "escalated", "suppressed", "failed"]
DeliveryChannel = Literal["primary", "fallback", "none"]
MonitorAction = Literal["start", "stop", "restart", "update_interval"]


def _clean_optional(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


class WebhookEnvelope(BaseModel):
    """Inbound webhook payload; unknown keys are ignored to tolerate schema drift."""

    model_config = ConfigDict(extra="ignore")

    type: str = Field(min_length=1, max_length=128)
    sender_email: str | None = Field(default=None, max_length=320)
    recipient_email: str | None = Field(default=None, max_length=320)
    message_content: str = Field(default="", max_length=20000)
    thread_id: str | None = Field(default=None, max_length=256)
    campaign_id: str | None = Field(default=None, max_length=128)
    requires_response: bool = False
    message_id: str | None = Field(default=None, max_length=256)
    subject: str | None = Field(default=None, max_length=998)
    data: dict[str, Any] | None = None

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("type cannot be blank")
        return normalized

    @field_validator("sender_email", "recipient_email")
    @classmethod
    def _normalize_address(cls, value: str | None) -> str | None:
        cleaned = _clean_optional(value)
        return cleaned.lower() if cleaned else None

    @field_validator("thread_id", "campaign_id", "message_id", "subject")
    @classmethod
    def _normalize_text(cls, value: str | None) -> str | None:
        return _clean_optional(value)


class WebhookResponse(BaseModel):
    success: bool
    message: str
    details: dict[str, Any] | None = None


class MonitorControlRequest(BaseModel):
    action: MonitorAction
    interval: float | None = None


class MonitorStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_running: bool = Field(alias="isRunning")
    check_interval: float = Field(alias="checkInterval")
    last_check_time: datetime | None = Field(default=None, alias="lastCheckTime")
    next_check_in: float | None = Field(default=None, alias="nextCheckIn")


class MonitorControlResponse(BaseModel):
    success: bool
    message: str
    monitor: MonitorStatusResponse


class ConversationMessageItem(BaseModel):
    id: str
    sender_address: str
    content: str
    received_at: datetime
    direction: MessageDirection
    campaign_id: str | None = None
    intent: Intent | None = None


class ConversationThreadItem(BaseModel):
    thread_id: str
    participant_address_masked: str
    campaign_id: str | None = None
    status: ThreadStatus
    message_count: int
    last_activity_at: datetime
    participant_name: str | None = None
    event_name: str | None = None
    event_date: str | None = None
    interests: list[str] = Field(default_factory=list)


class ConversationThreadListResponse(BaseModel):
    items: list[ConversationThreadItem]


class ConversationThreadDetailResponse(BaseModel):
    thread: ConversationThreadItem
    messages: list[ConversationMessageItem]


class ThreadResolveResponse(BaseModel):
    thread_id: str
    status: ThreadStatus
    last_activity_at: datetime


class PipelineStatsItem(BaseModel):
    total_received: int
    replies_sent: int
    escalated: int
    suppressed: int
    failed: int
    last_processed_at: datetime | None = None


class PipelineStatusItem(BaseModel):
    autoreply_enabled: bool
    monitor_running: bool
    email_provider: str
    language_model: str
    inbox: str


class PipelineStatsResponse(BaseModel):
    stats: PipelineStatsItem
    status: PipelineStatusItem


class WebhookConfigItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    auto_reply_enabled: bool = Field(alias="autoReplyEnabled")
    confidence_threshold: float = Field(alias="confidenceThreshold")
    max_replies_per_hour: int = Field(alias="maxRepliesPerHour")
    model: str
    temperature: float


class WebhookConfigResponse(BaseModel):
    success: bool
    message: str
    config: WebhookConfigItem
