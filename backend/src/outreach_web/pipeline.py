from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal

from .dashboard import DashboardDataProvider
from .decision import DecisionEngine
from .dispatcher import DeliveryDispatcher, DeliveryResult
from .email_provider import RawMessage, mask_address
from .events import EventBus, OutboundEvent
from .intent import classify
from .ledger import ProcessedMessageLedger
from .models import DecisionAction, Intent, OutcomeStatus
from .responder import ResponseGenerator
from .threads import ConversationMessage, ThreadRepository

logger = logging.getLogger(__name__)

MessageSource = Literal["webhook", "monitor"]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def derive_message_id(thread_id: str, sender_address: str, content: str) -> str:
    normalized = f"{thread_id.strip()}\n{sender_address.strip().lower()}\n{content.strip()}"
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return f"derived_{digest[:32]}"


@dataclass(frozen=True)
class InboundMessage:
    message_id: str
    thread_id: str
    sender_address: str
    content: str
    received_at: datetime = field(default_factory=_now_utc)
    subject: str | None = None
    campaign_id: str | None = None
    requires_response: bool = True
    source: MessageSource = "webhook"

    @classmethod
    def from_raw(cls, raw: RawMessage, *, source: MessageSource) -> InboundMessage:
        return cls(
            message_id=raw.id,
            thread_id=raw.thread_id,
            sender_address=raw.sender_address,
            content=raw.text,
            received_at=raw.received_at,
            subject=raw.subject or None,
            requires_response=True,
            source=source,
        )

    def ledger_keys(self) -> tuple[str, ...]:
        """The message id plus its content-derived id, so webhook and polled copies collide."""
        derived = derive_message_id(self.thread_id, self.sender_address, self.content)
        if derived == self.message_id:
            return (self.message_id,)
        return (self.message_id, derived)


@dataclass(frozen=True)
class PipelineOutcome:
    status: OutcomeStatus
    thread_id: str
    message_id: str
    reason: str
    intent: Intent | None = None
    action: DecisionAction | None = None
    delivery: DeliveryResult | None = None

    def as_details(self) -> dict[str, Any]:
        details: dict[str, Any] = {
            "status": self.status,
            "thread_id": self.thread_id,
            "message_id": self.message_id,
            "reason": self.reason,
            "intent": self.intent,
            "action": self.action,
        }
        if self.delivery is not None:
            details["delivery"] = {
                "delivered": self.delivery.delivered,
                "channel_used": self.delivery.channel_used,
                "error": self.delivery.error,
            }
        return details


class ConversationPipeline:
    """Thread store, classifier, generator, decision engine and dispatcher wired in order."""

    def __init__(
        self,
        *,
        threads: ThreadRepository,
        ledger: ProcessedMessageLedger,
        responder: ResponseGenerator,
        decision_engine: DecisionEngine,
        dispatcher: DeliveryDispatcher,
        dashboard: DashboardDataProvider,
        bus: EventBus,
    ) -> None:
        self._threads = threads
        self._ledger = ledger
        self._responder = responder
        self._decision_engine = decision_engine
        self._dispatcher = dispatcher
        self._dashboard = dashboard
        self._bus = bus

    @property
    def ledger(self) -> ProcessedMessageLedger:
        return self._ledger

    def reserve(self, inbound: InboundMessage) -> bool:
        """Reserve every ledger key of ``inbound``, or none of them."""
        held: list[str] = []
        for key in inbound.ledger_keys():
            if not self._ledger.reserve(key):
                for reserved in held:
                    self._ledger.release(reserved)
                return False
            held.append(key)
        return True

    def release(self, inbound: InboundMessage) -> None:
        for key in inbound.ledger_keys():
            self._ledger.release(key)

    def commit(self, inbound: InboundMessage) -> None:
        for key in inbound.ledger_keys():
            self._ledger.commit(key)

    def is_processed(self, inbound: InboundMessage) -> bool:
        return any(self._ledger.contains(key) for key in inbound.ledger_keys())

    def process(self, inbound: InboundMessage) -> PipelineOutcome:
        if not self.reserve(inbound):
            return self._finish(
                PipelineOutcome(
                    status="suppressed",
                    thread_id=inbound.thread_id,
                    message_id=inbound.message_id,
                    reason="duplicate_message",
                    action="suppress",
                )
            )

        try:
            outcome = self._process_reserved(inbound)
        except Exception:
            logger.exception(
                "pipeline failed for message %s on thread %s from %s",
                inbound.message_id,
                inbound.thread_id,
                mask_address(inbound.sender_address),
            )
            outcome = PipelineOutcome(
                status="failed",
                thread_id=inbound.thread_id,
                message_id=inbound.message_id,
                reason="processing_error",
            )
        # The decision engine commits the message id itself; aliases follow it.
        if self._ledger.contains(inbound.message_id):
            self.commit(inbound)
        else:
            self.release(inbound)
        return self._finish(outcome)

    def _process_reserved(self, inbound: InboundMessage) -> PipelineOutcome:
        thread = self._threads.get_or_create(inbound.thread_id, inbound.sender_address, inbound.campaign_id)
        dashboard_context = self._dashboard.snapshot()
        event = dashboard_context.primary_event()
        if event is not None and thread.context.event_name is None:
            self._threads.update_context(inbound.thread_id, event_name=event.name, event_date=event.date)

        intent = classify(inbound.content)
        thread = self._threads.append_message(
            inbound.thread_id,
            ConversationMessage(
                id=inbound.message_id,
                sender_address=inbound.sender_address,
                content=inbound.content,
                received_at=inbound.received_at,
                direction="inbound",
                thread_id=inbound.thread_id,
                campaign_id=inbound.campaign_id,
                intent=intent,
            ),
        )

        if not inbound.requires_response:
            self._ledger.commit(inbound.message_id)
            return PipelineOutcome(
                status="success",
                thread_id=inbound.thread_id,
                message_id=inbound.message_id,
                reason="tracked_only",
                intent=intent,
            )

        generated = self._responder.generate(thread, inbound.content, dashboard_context)
        decision = self._decision_engine.decide(
            inbound.thread_id,
            inbound.message_id,
            generated,
            recipient=inbound.sender_address,
        )
        if decision.action == "suppress":
            return PipelineOutcome(
                status="suppressed",
                thread_id=inbound.thread_id,
                message_id=inbound.message_id,
                reason=decision.reason,
                intent=intent,
                action="suppress",
            )
        if decision.action == "escalate":
            return PipelineOutcome(
                status="escalated",
                thread_id=inbound.thread_id,
                message_id=inbound.message_id,
                reason=decision.reason,
                intent=intent,
                action="escalate",
            )

        delivery = self._dispatcher.deliver(
            inbound.thread_id,
            inbound.sender_address,
            generated.content,
            subject=inbound.subject,
        )
        if not delivery.delivered:
            current = self._threads.get(inbound.thread_id)
            if current is not None and current.status == "active":
                self._threads.set_status(inbound.thread_id, "needs_attention")
            self._bus.publish(
                OutboundEvent(
                    kind="delivery_failed",
                    thread_id=inbound.thread_id,
                    message_id=inbound.message_id,
                    payload={"error": delivery.error},
                )
            )
            return PipelineOutcome(
                status="failed",
                thread_id=inbound.thread_id,
                message_id=inbound.message_id,
                reason="delivery_failed",
                intent=intent,
                action="send",
                delivery=delivery,
            )

        self._threads.append_message(
            inbound.thread_id,
            ConversationMessage(
                id=delivery.provider_message_id or f"{inbound.message_id}_reply",
                sender_address=self._dispatcher.inbox,
                content=generated.content,
                received_at=_now_utc(),
                direction="outbound",
                thread_id=inbound.thread_id,
                campaign_id=inbound.campaign_id,
            ),
        )
        if any(action.type == "close_conversation" for action in generated.suggested_actions):
            self._threads.set_status(inbound.thread_id, "completed")
        self._bus.publish(
            OutboundEvent(
                kind="reply_sent",
                thread_id=inbound.thread_id,
                message_id=inbound.message_id,
                payload={"channel": delivery.channel_used, "content": generated.content},
            )
        )
        return PipelineOutcome(
            status="success",
            thread_id=inbound.thread_id,
            message_id=inbound.message_id,
            reason=decision.reason,
            intent=intent,
            action="send",
            delivery=delivery,
        )

    def _finish(self, outcome: PipelineOutcome) -> PipelineOutcome:
        logger.info(
            "message %s on thread %s: %s (%s)",
            outcome.message_id,
            outcome.thread_id,
            outcome.status,
            outcome.reason,
        )
        self._bus.publish(
            OutboundEvent(
                kind="outcome",
                thread_id=outcome.thread_id,
                message_id=outcome.message_id,
                payload={"status": outcome.status, "reason": outcome.reason, "action": outcome.action},
            )
        )
        return outcome
