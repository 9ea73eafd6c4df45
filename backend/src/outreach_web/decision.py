from __future__ import annotations

import logging
from dataclasses import dataclass
from threading import Lock

from .events import EventBus, OutboundEvent
from .ledger import ProcessedMessageLedger
from .models import DecisionAction
from .rate_limit import RateLimitWindow
from .responder import GeneratedReply
from .threads import ThreadRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    action: DecisionAction
    reason: str


class DecisionEngine:
    """Chooses send, escalate or suppress for a generated reply.

    Rules are evaluated in order: duplicate message, human review requested,
    rate limits, confidence threshold. Escalation always wins over sending.

    The message id is committed to the ledger before ``send`` is returned so a
    retried delivery cannot double-send. For ``escalate`` the id is committed
    only after the escalation has been recorded, so a failure while recording
    leaves the id free for the event source to retry.
    """

    def __init__(
        self,
        *,
        ledger: ProcessedMessageLedger,
        rate_window: RateLimitWindow,
        threads: ThreadRepository,
        bus: EventBus,
        confidence_threshold: float,
        autoreply_enabled: bool = True,
    ) -> None:
        self._ledger = ledger
        self._rate_window = rate_window
        self._threads = threads
        self._bus = bus
        self._confidence_threshold = confidence_threshold
        self._autoreply_enabled = autoreply_enabled
        self._settings_lock = Lock()

    @property
    def confidence_threshold(self) -> float:
        return self._confidence_threshold

    @property
    def autoreply_enabled(self) -> bool:
        with self._settings_lock:
            return self._autoreply_enabled

    def set_autoreply_enabled(self, enabled: bool) -> bool:
        """Toggle automatic replies at runtime; returns the previous setting."""
        with self._settings_lock:
            previous = self._autoreply_enabled
            self._autoreply_enabled = enabled
        if previous != enabled:
            logger.info("automatic replies %s", "enabled" if enabled else "disabled")
        return previous

    def decide(
        self,
        thread_id: str,
        message_id: str,
        generated: GeneratedReply,
        recipient: str | None = None,
    ) -> Decision:
        if self._ledger.contains(message_id):
            return Decision(action="suppress", reason="duplicate_message")

        if generated.requires_human_review:
            return self._escalate(thread_id, message_id, "human_review_required")

        if not self.autoreply_enabled:
            return self._escalate(thread_id, message_id, "autoreply_disabled")

        if not generated.should_send:
            self._ledger.commit(message_id)
            return Decision(action="suppress", reason="generator_declined")

        refusal = self._rate_window.check(recipient)
        if refusal is not None:
            return self._escalate(thread_id, message_id, refusal)

        if generated.confidence is not None and generated.confidence < self._confidence_threshold:
            return self._escalate(thread_id, message_id, "confidence_below_threshold")

        # Another worker may have taken the last slot since check().
        refusal = self._rate_window.try_consume(recipient)
        if refusal is not None:
            return self._escalate(thread_id, message_id, refusal)

        self._ledger.commit(message_id)
        return Decision(action="send", reason="policy_ok")

    def _escalate(self, thread_id: str, message_id: str, reason: str) -> Decision:
        thread = self._threads.get(thread_id)
        if thread is not None and thread.status == "active":
            self._threads.set_status(thread_id, "needs_attention")
        self._bus.publish(
            OutboundEvent(
                kind="escalated",
                thread_id=thread_id,
                message_id=message_id,
                payload={"reason": reason},
            )
        )
        logger.info("escalated thread %s message %s: %s", thread_id, message_id, reason)
        self._ledger.commit(message_id)
        return Decision(action="escalate", reason=reason)
