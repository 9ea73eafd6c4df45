from __future__ import annotations

import http.client
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from outreach_web.dashboard import DEFAULT_DASHBOARD_CONTEXT
from outreach_web.llm import ChatTurn, HttpLanguageModelClient, LanguageModelError, StubLanguageModelClient
from outreach_web.responder import (
    MalformedModelOutputError,
    ParsedModelOutput,
    ResponseGenerator,
    build_message_history,
    parse_model_output,
)
from outreach_web.threads import ConversationMessage, InMemoryThreadRepository


def _thread_with(*messages: tuple[str, str]):
    repo = InMemoryThreadRepository()
    repo.get_or_create("t1", "jane.doe@example.org", "camp-1")
    thread = repo.get("t1")
    for index, (direction, content) in enumerate(messages):
        thread = repo.append_message(
            "t1",
            ConversationMessage(
                id=f"m{index}",
                sender_address="jane.doe@example.org" if direction == "inbound" else "outreach@agentmail.to",
                content=content,
                received_at=datetime(2026, 3, 1, 12, index, tzinfo=timezone.utc),
                direction=direction,  # type: ignore[arg-type]
                thread_id="t1",
            ),
        )
    return thread


class _TimeoutClient:
    def complete(self, system_prompt, message_history, max_tokens, temperature) -> str:
        raise LanguageModelError("timeout", "Request timed out")


def test_successful_generation_uses_model_text_and_incoming_actions() -> None:
    client = StubLanguageModelClient()
    generator = ResponseGenerator(client, max_tokens=1000, temperature=0.3)
    thread = _thread_with(("inbound", "I'd like to schedule an appointment"))

    reply = generator.generate(thread, "I'd like to schedule an appointment", DEFAULT_DASHBOARD_CONTEXT)

    assert "schedule" in reply.content.lower()
    assert reply.should_send is True
    assert reply.requires_human_review is False
    assert [action.type for action in reply.suggested_actions] == ["schedule_appointment"]
    assert reply.used_fallback is False

    system_prompt, history = client.calls[0]
    assert "Community Center Blood Drive" in system_prompt
    assert "jane.doe@example.org" in system_prompt
    assert history[-1] == ChatTurn(role="user", content="I'd like to schedule an appointment")


def test_model_failure_returns_canned_reply_with_forced_review() -> None:
    generator = ResponseGenerator(_TimeoutClient(), max_tokens=1000, temperature=0.3)
    thread = _thread_with(("inbound", "When does the drive start?"))

    reply = generator.generate(thread, "When does the drive start?", DEFAULT_DASHBOARD_CONTEXT)

    assert reply.should_send is True
    assert reply.requires_human_review is True
    assert reply.content.strip()
    assert "Community Center Blood Drive" in reply.content
    assert reply.used_fallback is True
    assert reply.error_code == "timeout"


def test_malformed_json_output_is_a_generation_failure() -> None:
    generator = ResponseGenerator(StubLanguageModelClient(reply='{"confidence": 0.9}'), max_tokens=100, temperature=0.3)
    thread = _thread_with(("inbound", "Yes, count me in!"))

    reply = generator.generate(thread, "Yes, count me in!", DEFAULT_DASHBOARD_CONTEXT)

    assert reply.used_fallback is True
    assert reply.requires_human_review is True
    assert reply.error_code == "malformed_output"


def test_escalation_keyword_forces_review_even_on_success() -> None:
    generator = ResponseGenerator(StubLanguageModelClient(reply="Happy to help."), max_tokens=100, temperature=0.3)
    thread = _thread_with(("inbound", "I need a disability accommodation"))

    reply = generator.generate(thread, "I need a disability accommodation", DEFAULT_DASHBOARD_CONTEXT)

    assert reply.used_fallback is False
    assert reply.requires_human_review is True


def test_json_output_carries_confidence() -> None:
    generator = ResponseGenerator(
        StubLanguageModelClient(reply='{"replyContent": "See you Saturday!", "confidence": 0.42}'),
        max_tokens=100,
        temperature=0.3,
    )
    thread = _thread_with(("inbound", "Yes"))

    reply = generator.generate(thread, "Yes", DEFAULT_DASHBOARD_CONTEXT)

    assert reply.content == "See you Saturday!"
    assert reply.confidence == pytest.approx(0.42)


def test_parse_model_output_variants() -> None:
    assert parse_model_output("  Plain reply.  ") == ParsedModelOutput(content="Plain reply.")
    assert parse_model_output('```json\n{"reply": "Hi", "confidence": 1}\n```') == ParsedModelOutput(content="Hi", confidence=1.0)
    assert parse_model_output("NO_REPLY") == ParsedModelOutput(content="", should_send=False)
    assert parse_model_output('{"shouldSend": false}') == ParsedModelOutput(content="", should_send=False)
    for raw in ("", '{"reply": "x", "should_send": "no"}', "   ", '{"reply": ""}', '{"reply": "x", "confidence": 1.5}', "{broken"):
        with pytest.raises(MalformedModelOutputError):
            parse_model_output(raw)


def test_history_is_bounded_and_starts_with_participant() -> None:
    messages = []
    for index in range(14):
        messages.append(("inbound" if index % 2 == 0 else "outbound", f"turn {index}"))
    messages.append(("inbound", "latest question?"))
    thread = _thread_with(*messages)

    history = build_message_history(thread, "latest question?", 10)

    assert history[0].role == "user"
    assert history[-1] == ChatTurn(role="user", content="latest question?")
    assert len(history) <= 10
    assert all(first.role != second.role for first, second in zip(history, history[1:]))


def test_model_can_decline_to_reply() -> None:
    generator = ResponseGenerator(StubLanguageModelClient(reply="NO_REPLY"), max_tokens=1000, temperature=0.3)
    thread = _thread_with(("inbound", "Out of office until Monday"))

    reply = generator.generate(thread, "Out of office until Monday", DEFAULT_DASHBOARD_CONTEXT)

    assert reply.should_send is False
    assert reply.content == ""
    assert reply.used_fallback is False


@patch("outreach_web.llm.urllib.request.urlopen")
def test_truncated_model_response_uses_fallback(mock_urlopen: MagicMock) -> None:
    response = MagicMock()
    response.read.side_effect = http.client.IncompleteRead(b"{")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    mock_urlopen.return_value = response
    client = HttpLanguageModelClient(base_url="https://llm.example.test", api_key="test-llm-key", model="m")
    generator = ResponseGenerator(client, max_tokens=1000, temperature=0.3)
    thread = _thread_with(("inbound", "Yes, I'm interested"))

    reply = generator.generate(thread, "Yes, I'm interested", DEFAULT_DASHBOARD_CONTEXT)

    assert reply.used_fallback is True
    assert reply.requires_human_review is True
    assert reply.error_code == "connection_error"
