from __future__ import annotations

import logging

from .dashboard import CampaignRecordRepository
from .email_provider import mask_address, parse_raw_message
from .events import EventBus, OutboundEvent
from .intent import classify
from .models import WebhookEnvelope, WebhookResponse
from .pipeline import ConversationPipeline, InboundMessage, derive_message_id
from .threads import ConversationMessage, ThreadRepository

logger = logging.getLogger(__name__)


class InvalidWebhookPayloadError(ValueError):
    """Raised when a recognised event type is missing required fields."""


class EventRouter:
    """Maps webhook envelopes onto pipeline calls or campaign bookkeeping."""

    def __init__(
        self,
        *,
        pipeline: ConversationPipeline,
        threads: ThreadRepository,
        campaigns: CampaignRecordRepository,
        bus: EventBus,
        inbox: str,
    ) -> None:
        self._pipeline = pipeline
        self._threads = threads
        self._campaigns = campaigns
        self._bus = bus
        self._inbox = inbox.strip().lower()

    def route(self, envelope: WebhookEnvelope) -> WebhookResponse:
        event_type = envelope.type
        if event_type == "message.received":
            return self._handle_provider_message(envelope)
        if event_type == "email_received":
            inbound = self._inbound_from_envelope(envelope, requires_response=envelope.requires_response)
            return self._run_pipeline(inbound)
        if event_type == "email_reply":
            return self._handle_campaign_reply(envelope)
        if event_type == "email_opened":
            return self._handle_open(envelope)

        logger.info("ignoring unrecognised webhook event type: %s", event_type)
        return WebhookResponse(success=True, message=f"event type ignored: {event_type}")

    def _run_pipeline(self, inbound: InboundMessage) -> WebhookResponse:
        outcome = self._pipeline.process(inbound)
        return WebhookResponse(
            success=outcome.status != "failed",
            message=f"message {outcome.status}: {outcome.reason}",
            details=outcome.as_details(),
        )

    def _handle_provider_message(self, envelope: WebhookEnvelope) -> WebhookResponse:
        raw = parse_raw_message(envelope.data or {})
        if raw is None or not raw.sender_address or not raw.text.strip():
            raise InvalidWebhookPayloadError("message.received requires data.id, data.from and data.text")
        if raw.sender_address == self._inbox:
            return WebhookResponse(success=True, message="message from own inbox ignored")
        return self._run_pipeline(InboundMessage.from_raw(raw, source="webhook"))

    def _handle_campaign_reply(self, envelope: WebhookEnvelope) -> WebhookResponse:
        if not envelope.campaign_id:
            inbound = self._inbound_from_envelope(envelope, requires_response=False)
            return self._run_pipeline(inbound)

        inbound = self._inbound_from_envelope(envelope, requires_response=False)
        if not self._pipeline.reserve(inbound):
            return WebhookResponse(
                success=True,
                message="message suppressed: duplicate_message",
                details={"message_id": inbound.message_id, "thread_id": inbound.thread_id},
            )
        try:
            sentiment = classify(inbound.content)
            self._threads.get_or_create(inbound.thread_id, inbound.sender_address, envelope.campaign_id)
            self._threads.append_message(
                inbound.thread_id,
                ConversationMessage(
                    id=inbound.message_id,
                    sender_address=inbound.sender_address,
                    content=inbound.content,
                    received_at=inbound.received_at,
                    direction="inbound",
                    thread_id=inbound.thread_id,
                    campaign_id=envelope.campaign_id,
                    intent=sentiment,
                ),
            )
            record = self._campaigns.record_reply(
                envelope.campaign_id,
                inbound.sender_address,
                sentiment,
                message_id=inbound.message_id,
            )
        except Exception:
            self._pipeline.release(inbound)
            raise
        self._pipeline.commit(inbound)

        self._bus.publish(
            OutboundEvent(
                kind="campaign_reply",
                thread_id=inbound.thread_id,
                message_id=inbound.message_id,
                payload={"campaign_id": envelope.campaign_id, "sentiment": sentiment},
            )
        )
        logger.info(
            "campaign %s reply from %s tagged %s",
            envelope.campaign_id,
            mask_address(inbound.sender_address),
            sentiment,
        )
        return WebhookResponse(
            success=True,
            message="campaign reply recorded",
            details={
                "campaign_id": envelope.campaign_id,
                "sentiment": sentiment,
                "replies": record.replies,
                "thread_id": inbound.thread_id,
                "message_id": inbound.message_id,
            },
        )

    def _handle_open(self, envelope: WebhookEnvelope) -> WebhookResponse:
        if not envelope.campaign_id:
            return WebhookResponse(success=True, message="email_opened without campaign_id ignored")
        record = self._campaigns.record_open(envelope.campaign_id)
        self._bus.publish(OutboundEvent(kind="campaign_open", payload={"campaign_id": envelope.campaign_id}))
        return WebhookResponse(
            success=True,
            message="campaign open recorded",
            details={"campaign_id": envelope.campaign_id, "opens": record.opens},
        )

    def _inbound_from_envelope(self, envelope: WebhookEnvelope, *, requires_response: bool) -> InboundMessage:
        sender = envelope.sender_email or envelope.recipient_email
        content = envelope.message_content.strip()
        if not sender:
            raise InvalidWebhookPayloadError(f"{envelope.type} requires sender_email or recipient_email")
        if not content:
            raise InvalidWebhookPayloadError(f"{envelope.type} requires message_content")
        thread_id = envelope.thread_id or f"sender_{sender}"
        return InboundMessage(
            message_id=envelope.message_id or derive_message_id(thread_id, sender, content),
            thread_id=thread_id,
            sender_address=sender,
            content=content,
            subject=envelope.subject,
            campaign_id=envelope.campaign_id,
            requires_response=requires_response,
            source="webhook",
        )
