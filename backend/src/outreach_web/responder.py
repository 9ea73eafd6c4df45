from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from .dashboard import DashboardContext
from .email_provider import mask_address
from .intent import SuggestedAction, classify, requires_escalation, suggest_actions
from .llm import ChatTurn, LanguageModelClient, LanguageModelError
from .models import Intent
from .threads import ConversationThread

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """You are the outreach assistant for a blood drive and volunteer events team, replying to {participant} by email.

CONVERSATION CONTEXT:
- Participant email: {participant}
- Participant name: {participant_name}
- Campaign ID: {campaign_id}

CURRENT EVENTS AND ANALYTICS:
{dashboard}

RESPONSE REQUIREMENTS:
- Reply in 2-4 sentences, friendly and professional.
- Only state facts present in the context above; never invent dates, times, venues or policies.
- If the participant is interested, help them pick a time slot; if they decline, thank them respectfully.
- If the request needs a staff member, say that a coordinator will follow up.
- Respond with the email body only.
- If the message needs no reply at all (an automated notice or a bare acknowledgement), respond with exactly {no_reply}."""

NO_REPLY_SENTINEL = "NO_REPLY"


class MalformedModelOutputError(LanguageModelError):
    def __init__(self, message: str) -> None:
        super().__init__("malformed_output", message)


@dataclass(frozen=True)
class GeneratedReply:
    content: str
    should_send: bool
    requires_human_review: bool
    suggested_actions: tuple[SuggestedAction, ...]
    confidence: float | None = None
    used_fallback: bool = False
    error_code: str | None = None


def _fallback_text(intent: Intent, dashboard_context: DashboardContext) -> str:
    event = dashboard_context.primary_event()
    if event is None:
        event_line = "our upcoming event"
    else:
        event_line = f"{event.name} on {event.date} ({event.time}) at {event.venue}"

    if intent == "positive":
        return (
            f"Thank you for your response! We're glad you'd like to take part in {event_line}. "
            "A coordinator will follow up shortly to confirm a time that works for you."
        )
    if intent == "question":
        return (
            f"Thank you for your question! Our next event is {event_line}. "
            "A coordinator will follow up shortly with any other details you need."
        )
    if intent == "negative":
        return (
            "Thank you for letting us know. We completely understand, and if your plans change "
            "we'd love to have you join us in the future."
        )
    return (
        f"Thank you for your email. Our next event is {event_line}. "
        "A coordinator will follow up shortly with any questions you have."
    )


@dataclass(frozen=True)
class ParsedModelOutput:
    content: str
    confidence: float | None = None
    should_send: bool = True


def parse_model_output(raw: str) -> ParsedModelOutput:
    """Accept plain text, the no-reply sentinel, or a JSON object.

    The JSON form carries ``reply``/``replyContent`` and optionally ``confidence``
    and ``should_send``/``shouldSend``. A reply text is only required when the
    model wants the reply sent.
    """
    text = raw.strip()
    if text.startswith("```"):
        text = text.strip("`").strip()
        if text.lower().startswith("json"):
            text = text[4:].strip()
    if not text:
        raise MalformedModelOutputError("model returned empty output")
    if text == NO_REPLY_SENTINEL:
        return ParsedModelOutput(content="", should_send=False)
    if not text.startswith("{"):
        return ParsedModelOutput(content=text)

    end = text.rfind("}")
    try:
        payload = json.loads(text[: end + 1])
    except ValueError as exc:
        raise MalformedModelOutputError(f"model output is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedModelOutputError("model output JSON is not an object")

    should_send = payload.get("should_send", payload.get("shouldSend", True))
    if not isinstance(should_send, bool):
        raise MalformedModelOutputError("should_send must be a boolean")
    reply = payload.get("reply", payload.get("replyContent"))
    if reply is None and not should_send:
        reply = ""
    if not isinstance(reply, str) or (should_send and not reply.strip()):
        raise MalformedModelOutputError("model output JSON has no reply text")

    confidence = payload.get("confidence")
    if confidence is None:
        return ParsedModelOutput(content=reply.strip(), should_send=should_send)
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise MalformedModelOutputError("confidence must be a number")
    if not 0.0 <= float(confidence) <= 1.0:
        raise MalformedModelOutputError("confidence must be between 0 and 1")
    return ParsedModelOutput(content=reply.strip(), confidence=float(confidence), should_send=should_send)


def build_message_history(thread: ConversationThread, incoming_text: str, context_window: int) -> list[ChatTurn]:
    turns: list[ChatTurn] = []
    for message in thread.recent_messages(context_window):
        role = "user" if message.direction == "inbound" else "assistant"
        if turns and turns[-1].role == role:
            turns[-1] = ChatTurn(role=role, content=f"{turns[-1].content}\n\n{message.content}")
        else:
            turns.append(ChatTurn(role=role, content=message.content))

    while turns and turns[0].role != "user":
        turns.pop(0)
    if not turns or turns[-1].role != "user" or not turns[-1].content.endswith(incoming_text):
        if turns and turns[-1].role == "user":
            turns[-1] = ChatTurn(role="user", content=f"{turns[-1].content}\n\n{incoming_text}")
        else:
            turns.append(ChatTurn(role="user", content=incoming_text))
    return turns


class ResponseGenerator:
    def __init__(
        self,
        client: LanguageModelClient,
        *,
        max_tokens: int,
        temperature: float,
        context_window: int = 10,
    ) -> None:
        self._client = client
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._context_window = context_window

    def generate(
        self,
        thread: ConversationThread,
        incoming_text: str,
        dashboard_context: DashboardContext,
    ) -> GeneratedReply:
        actions = tuple(suggest_actions(incoming_text))
        needs_review = requires_escalation(list(actions))
        system_prompt = SYSTEM_PROMPT_TEMPLATE.format(
            participant=thread.participant_address,
            participant_name=thread.context.participant_name or "N/A",
            campaign_id=thread.campaign_id or "N/A",
            dashboard=dashboard_context.render(),
            no_reply=NO_REPLY_SENTINEL,
        )
        history = build_message_history(thread, incoming_text, self._context_window)

        try:
            raw = self._client.complete(system_prompt, history, self._max_tokens, self._temperature)
            parsed = parse_model_output(raw)
        except LanguageModelError as exc:
            logger.warning(
                "reply generation failed for thread %s (%s): %s; using fallback for %s",
                thread.thread_id,
                exc.error_code,
                exc.message,
                mask_address(thread.participant_address),
            )
            return GeneratedReply(
                content=_fallback_text(classify(incoming_text), dashboard_context),
                should_send=True,
                requires_human_review=True,
                suggested_actions=actions,
                used_fallback=True,
                error_code=exc.error_code,
            )

        if not parsed.should_send:
            logger.info("model declined to reply on thread %s", thread.thread_id)
        return GeneratedReply(
            content=parsed.content,
            should_send=parsed.should_send,
            requires_human_review=needs_review,
            suggested_actions=actions,
            confidence=parsed.confidence,
        )
