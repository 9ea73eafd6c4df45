from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, HTTPException, Query

from .config import Settings, get_settings
from .dashboard import InMemoryCampaignRecordRepository, StaticDashboardDataProvider
from .decision import DecisionEngine
from .dispatcher import DeliveryDispatcher
from .email_provider import EmailProvider, HttpEmailProvider, StubEmailProvider, mask_address
from .events import EventBus, PipelineStats
from .ledger import create_processed_message_ledger
from .llm import HttpLanguageModelClient, LanguageModelClient, StubLanguageModelClient
from .models import (
    ConversationMessageItem,
    ConversationThreadDetailResponse,
    ConversationThreadItem,
    ConversationThreadListResponse,
    MonitorControlRequest,
    MonitorControlResponse,
    MonitorStatusResponse,
    PipelineStatsItem,
    PipelineStatsResponse,
    PipelineStatusItem,
    ThreadResolveResponse,
    WebhookConfigItem,
    WebhookConfigResponse,
    WebhookEnvelope,
    WebhookResponse,
)
from .monitor import ContinuousMonitor, MonitorStatus
from .pipeline import ConversationPipeline
from .rate_limit import RateLimitWindow
from .responder import ResponseGenerator
from .router import EventRouter, InvalidWebhookPayloadError
from .threads import ConversationThread, InvalidStatusTransitionError, ThreadNotFoundError, create_thread_repository

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/outreach", tags=["outreach"])


def _create_email_provider(settings: Settings) -> EmailProvider | None:
    if settings.email_provider_is_live():
        try:
            return HttpEmailProvider(
                base_url=settings.agent_mail_api_base_url,
                api_key=settings.agent_mail_api_key,
                inbox=settings.agent_mail_inbox,
                timeout_seconds=settings.email_provider_timeout_seconds,
            )
        except ValueError as exc:
            logger.error("email provider unavailable: %s", exc)
            return None
    return StubEmailProvider()


def _create_llm_client(settings: Settings) -> LanguageModelClient | None:
    if settings.llm_is_live():
        try:
            return HttpLanguageModelClient(
                base_url=settings.llm_api_base_url,
                api_key=settings.anthropic_api_key,
                model=settings.llm_model,
                timeout_seconds=settings.llm_timeout_seconds,
            )
        except ValueError as exc:
            logger.error("language model client unavailable: %s", exc)
            return None
    return StubLanguageModelClient()


thread_store = create_thread_repository(backend=_settings.thread_store_backend, database_url=_settings.database_url)
ledger = create_processed_message_ledger(
    backend=_settings.ledger_backend,
    database_url=_settings.database_url,
    checkpoint_path=_settings.ledger_checkpoint_path,
)
rate_window = RateLimitWindow(
    max_per_hour=_settings.conversation_max_replies_per_hour,
    recipient_cooldown_seconds=_settings.conversation_recipient_cooldown_seconds,
)
event_bus = EventBus()
pipeline_stats = PipelineStats()
event_bus.subscribe(pipeline_stats)
campaign_records = InMemoryCampaignRecordRepository()
dashboard_provider = StaticDashboardDataProvider()

email_provider: EmailProvider | None = None
llm_client: LanguageModelClient | None = None
runtime_settings: Settings = _settings
decision_engine: DecisionEngine | None = None
pipeline: ConversationPipeline | None = None
event_router: EventRouter | None = None
monitor: ContinuousMonitor | None = None


def configure_collaborators(
    *,
    provider: EmailProvider | None,
    language_model: LanguageModelClient | None,
    settings: Settings | None = None,
) -> None:
    """Wire the pipeline, router and monitor around the given external clients."""
    global email_provider, llm_client, runtime_settings, decision_engine, pipeline, event_router, monitor

    active_settings = settings or _settings
    runtime_settings = active_settings
    if monitor is not None:
        monitor.stop()

    email_provider = provider
    llm_client = language_model
    pipeline = None
    event_router = None
    decision_engine = DecisionEngine(
        ledger=ledger,
        rate_window=rate_window,
        threads=thread_store,
        bus=event_bus,
        confidence_threshold=active_settings.conversation_confidence_threshold,
        autoreply_enabled=active_settings.conversation_autoreply_enabled,
    )
    if provider is not None and language_model is not None:
        pipeline = ConversationPipeline(
            threads=thread_store,
            ledger=ledger,
            responder=ResponseGenerator(
                language_model,
                max_tokens=active_settings.llm_max_tokens,
                temperature=active_settings.llm_temperature,
                context_window=active_settings.conversation_context_window,
            ),
            decision_engine=decision_engine,
            dispatcher=DeliveryDispatcher(provider, inbox=active_settings.agent_mail_inbox),
            dashboard=dashboard_provider,
            bus=event_bus,
        )
        event_router = EventRouter(
            pipeline=pipeline,
            threads=thread_store,
            campaigns=campaign_records,
            bus=event_bus,
            inbox=active_settings.agent_mail_inbox,
        )
    monitor = ContinuousMonitor(
        pipeline=pipeline,
        provider=provider,
        inbox=active_settings.agent_mail_inbox,
        interval_seconds=max(1, active_settings.monitor_interval_seconds),
        batch_limit=active_settings.monitor_batch_limit,
    )


configure_collaborators(provider=_create_email_provider(_settings), language_model=_create_llm_client(_settings))


def reset_runtime_state_for_tests() -> None:
    if monitor is not None:
        monitor.stop()
    thread_store.reset()
    ledger.reset()
    rate_window.reset()
    pipeline_stats.reset()
    campaign_records.reset()
    if decision_engine is not None:
        decision_engine.set_autoreply_enabled(runtime_settings.conversation_autoreply_enabled)
    if isinstance(email_provider, StubEmailProvider):
        email_provider.reset()


def _active_monitor() -> ContinuousMonitor:
    if monitor is None:
        raise HTTPException(status_code=503, detail="email monitor is not configured")
    return monitor


def _monitor_status_response(current: MonitorStatus) -> MonitorStatusResponse:
    return MonitorStatusResponse(
        is_running=current.is_running,
        check_interval=current.check_interval,
        last_check_time=current.last_check_time,
        next_check_in=current.next_check_in,
    )


def _autoreply_enabled() -> bool:
    if decision_engine is None:
        return runtime_settings.conversation_autoreply_enabled
    return decision_engine.autoreply_enabled


def _webhook_config_item() -> WebhookConfigItem:
    return WebhookConfigItem(
        auto_reply_enabled=_autoreply_enabled(),
        confidence_threshold=runtime_settings.conversation_confidence_threshold,
        max_replies_per_hour=rate_window.snapshot().max_per_hour,
        model=runtime_settings.llm_model,
        temperature=runtime_settings.llm_temperature,
    )


def _thread_item(thread: ConversationThread) -> ConversationThreadItem:
    return ConversationThreadItem(
        thread_id=thread.thread_id,
        participant_address_masked=mask_address(thread.participant_address),
        campaign_id=thread.campaign_id,
        status=thread.status,
        message_count=thread.message_count,
        last_activity_at=thread.last_activity_at,
        participant_name=thread.context.participant_name,
        event_name=thread.context.event_name,
        event_date=thread.context.event_date,
        interests=sorted(thread.context.interests),
    )


@router.get("/health")
def health() -> dict[str, object]:
    return {
        "status": "ok",
        "pipeline_ready": pipeline is not None,
        "monitor_running": monitor.is_running() if monitor is not None else False,
        "processed_messages": ledger.count(),
    }


@router.post("/webhooks/email", response_model=WebhookResponse)
def receive_email_webhook(payload: WebhookEnvelope) -> WebhookResponse:
    if event_router is None:
        raise HTTPException(status_code=503, detail="conversation pipeline is not configured")
    try:
        return event_router.route(payload)
    except InvalidWebhookPayloadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.get("/webhooks/email/stats", response_model=PipelineStatsResponse)
def get_webhook_stats() -> PipelineStatsResponse:
    snapshot = pipeline_stats.snapshot()
    return PipelineStatsResponse(
        stats=PipelineStatsItem(
            total_received=snapshot.total_received,
            replies_sent=snapshot.replies_sent,
            escalated=snapshot.escalated,
            suppressed=snapshot.suppressed,
            failed=snapshot.failed,
            last_processed_at=snapshot.last_processed_at,
        ),
        status=PipelineStatusItem(
            autoreply_enabled=_autoreply_enabled(),
            monitor_running=monitor.is_running() if monitor is not None else False,
            email_provider="http" if isinstance(email_provider, HttpEmailProvider) else ("stub" if email_provider else "unconfigured"),
            language_model="http" if isinstance(llm_client, HttpLanguageModelClient) else ("stub" if llm_client else "unconfigured"),
            inbox=runtime_settings.agent_mail_inbox,
        ),
    )


@router.get("/webhooks/email/config", response_model=WebhookConfigResponse)
def get_webhook_config() -> WebhookConfigResponse:
    return WebhookConfigResponse(success=True, message="current webhook configuration", config=_webhook_config_item())


@router.post("/webhooks/email/config", response_model=WebhookConfigResponse)
def update_webhook_config(payload: dict[str, Any] = Body(...)) -> WebhookConfigResponse:
    enabled = payload.get("autoReplyEnabled")
    if not isinstance(enabled, bool):
        raise HTTPException(status_code=400, detail="autoReplyEnabled must be a boolean")
    if decision_engine is None:
        raise HTTPException(status_code=503, detail="decision engine is not configured")
    decision_engine.set_autoreply_enabled(enabled)
    return WebhookConfigResponse(
        success=True,
        message=f"automatic replies {'enabled' if enabled else 'disabled'}",
        config=_webhook_config_item(),
    )


@router.get("/monitor", response_model=MonitorControlResponse)
def get_monitor_status() -> MonitorControlResponse:
    current = _active_monitor().status()
    return MonitorControlResponse(
        success=True,
        message="monitor is running" if current.is_running else "monitor is stopped",
        monitor=_monitor_status_response(current),
    )


@router.post("/monitor", response_model=MonitorControlResponse)
def control_monitor(payload: MonitorControlRequest) -> MonitorControlResponse:
    active = _active_monitor()
    if payload.action == "start":
        started = active.start()
        if started:
            message = "monitor started"
        elif active.is_running():
            message = "monitor is already running"
        else:
            message = "monitor could not start: email provider or pipeline is not configured"
        success = started
    elif payload.action == "stop":
        success = active.stop()
        message = "monitor stopped" if success else "monitor was not running"
    elif payload.action == "restart":
        success = active.restart()
        message = "monitor restarted" if success else "monitor could not restart: email provider or pipeline is not configured"
    else:
        if payload.interval is None:
            raise HTTPException(status_code=400, detail="interval is required for update_interval")
        try:
            active.update_interval(payload.interval)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        success = True
        message = f"monitor interval updated to {payload.interval:g}s"
    return MonitorControlResponse(success=success, message=message, monitor=_monitor_status_response(active.status()))


@router.get("/conversations", response_model=ConversationThreadListResponse)
def list_conversations(limit: int = Query(default=50, ge=1, le=500)) -> ConversationThreadListResponse:
    return ConversationThreadListResponse(items=[_thread_item(thread) for thread in thread_store.list_threads(limit=limit)])


@router.get("/conversations/{thread_id}", response_model=ConversationThreadDetailResponse)
def get_conversation(thread_id: str) -> ConversationThreadDetailResponse:
    thread = thread_store.get(thread_id)
    if thread is None:
        raise HTTPException(status_code=404, detail=f"thread not found: {thread_id}")
    return ConversationThreadDetailResponse(
        thread=_thread_item(thread),
        messages=[
            ConversationMessageItem(
                id=message.id,
                sender_address=mask_address(message.sender_address) if message.direction == "inbound" else message.sender_address,
                content=message.content,
                received_at=message.received_at,
                direction=message.direction,
                campaign_id=message.campaign_id,
                intent=message.intent,
            )
            for message in thread.messages
        ],
    )


@router.post("/conversations/{thread_id}/resolve", response_model=ThreadResolveResponse)
def resolve_conversation(thread_id: str) -> ThreadResolveResponse:
    try:
        thread = thread_store.resolve_escalation(thread_id)
    except ThreadNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"thread not found: {thread_id}") from exc
    except InvalidStatusTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return ThreadResolveResponse(thread_id=thread.thread_id, status=thread.status, last_activity_at=thread.last_activity_at)
