from __future__ import annotations

import logging
from dataclasses import dataclass

from .email_provider import EmailProvider, EmailProviderError, mask_address, reply_subject, text_to_html
from .models import DeliveryChannel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    channel_used: DeliveryChannel
    error: str | None = None
    provider_message_id: str | None = None


class DeliveryDispatcher:
    """Reply on the thread, falling back once to a fresh ``Re:`` message."""

    def __init__(self, provider: EmailProvider, *, inbox: str) -> None:
        self._provider = provider
        self._inbox = inbox

    @property
    def inbox(self) -> str:
        return self._inbox

    def deliver(
        self,
        thread_id: str,
        recipient_address: str,
        content: str,
        subject: str | None = None,
    ) -> DeliveryResult:
        masked = mask_address(recipient_address)
        try:
            result = self._provider.reply(thread_id, content)
        except EmailProviderError as exc:
            primary_error = f"primary {exc.error_code}: {exc.message}"
            logger.warning("primary reply failed for thread %s (%s), trying fallback", thread_id, exc.error_code)
        else:
            logger.info("reply delivered on thread %s to %s", thread_id, masked)
            return DeliveryResult(delivered=True, channel_used="primary", provider_message_id=result.message_id)

        try:
            result = self._provider.send(
                self._inbox,
                recipient_address,
                reply_subject(subject),
                content,
                text_to_html(content),
                thread_id=thread_id,
            )
        except EmailProviderError as exc:
            fallback_error = f"fallback {exc.error_code}: {exc.message}"
            logger.error("delivery failed for thread %s to %s: %s; %s", thread_id, masked, primary_error, fallback_error)
            return DeliveryResult(delivered=False, channel_used="none", error=f"{primary_error}; {fallback_error}")

        logger.info("fallback message delivered for thread %s to %s", thread_id, masked)
        return DeliveryResult(delivered=True, channel_used="fallback", provider_message_id=result.message_id)
