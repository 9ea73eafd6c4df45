from __future__ import annotations

from fastapi.testclient import TestClient

from outreach_web import api as api_module
from outreach_web.email_provider import StubEmailProvider
from outreach_web.llm import StubLanguageModelClient
from outreach_web.main import create_app


PREFIX = "/api/v1/outreach"


def _client(
    *,
    provider: StubEmailProvider | None = None,
    language_model: StubLanguageModelClient | None = None,
) -> TestClient:
    api_module.reset_runtime_state_for_tests()
    api_module.configure_collaborators(
        provider=provider or StubEmailProvider(),
        language_model=language_model or StubLanguageModelClient(),
    )
    return TestClient(create_app())


def _received(content: str, *, sender: str = "volunteer@example.org", thread_id: str = "t1") -> dict[str, object]:
    return {
        "type": "email_received",
        "sender_email": sender,
        "message_content": content,
        "thread_id": thread_id,
        "requires_response": True,
    }


def test_scheduling_request_gets_reply_on_thread() -> None:
    provider = StubEmailProvider()
    client = _client(provider=provider)

    response = client.post(f"{PREFIX}/webhooks/email", json=_received("Hi! I'd like to schedule an appointment."))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["details"]["status"] == "success"
    assert body["details"]["intent"] == "positive"
    assert body["details"]["delivery"]["channel_used"] == "primary"
    assert len(provider.outbox.replies) == 1
    assert provider.outbox.replies[0][0] == "t1"

    thread = client.get(f"{PREFIX}/conversations/t1").json()
    assert thread["thread"]["status"] == "active"
    assert thread["thread"]["message_count"] == 2
    assert thread["thread"]["participant_name"] == "Volunteer"
    assert thread["thread"]["event_name"] == "Community Center Blood Drive"
    assert [message["direction"] for message in thread["messages"]] == ["inbound", "outbound"]
    assert thread["messages"][0]["sender_address"] == "v***@example.org"
    assert thread["messages"][1]["sender_address"] == "outreach@agentmail.to"


def test_redelivered_webhook_is_suppressed() -> None:
    provider = StubEmailProvider()
    client = _client(provider=provider)
    payload = _received("Hi! I'd like to schedule an appointment.")

    client.post(f"{PREFIX}/webhooks/email", json=payload)
    response = client.post(f"{PREFIX}/webhooks/email", json=payload)

    body = response.json()
    assert body["success"] is True
    assert body["details"]["status"] == "suppressed"
    assert body["details"]["reason"] == "duplicate_message"
    assert len(provider.outbox.replies) == 1
    assert client.get(f"{PREFIX}/conversations/t1").json()["thread"]["message_count"] == 2


def test_explicit_message_id_deduplicates_across_content() -> None:
    client = _client()
    first = {**_received("Yes please"), "message_id": "msg-77"}
    second = {**_received("Yes please, again"), "message_id": "msg-77"}

    client.post(f"{PREFIX}/webhooks/email", json=first)
    response = client.post(f"{PREFIX}/webhooks/email", json=second)

    assert response.json()["details"]["status"] == "suppressed"


def test_escalation_keyword_marks_thread_for_attention_then_resolves() -> None:
    provider = StubEmailProvider()
    client = _client(provider=provider)

    response = client.post(
        f"{PREFIX}/webhooks/email",
        json=_received("I have a complaint about my last visit"),
    )

    body = response.json()
    assert body["details"]["status"] == "escalated"
    assert body["details"]["reason"] == "human_review_required"
    assert provider.outbox.replies == []
    thread = client.get(f"{PREFIX}/conversations/t1").json()
    assert thread["thread"]["status"] == "needs_attention"
    assert thread["thread"]["message_count"] == 1

    resolved = client.post(f"{PREFIX}/conversations/t1/resolve")
    assert resolved.status_code == 200
    assert resolved.json()["status"] == "active"


def test_model_failure_escalates_with_fallback() -> None:
    provider = StubEmailProvider()
    client = _client(provider=provider, language_model=StubLanguageModelClient(fail=True))

    response = client.post(f"{PREFIX}/webhooks/email", json=_received("Yes, I'm interested"))

    assert response.json()["details"]["status"] == "escalated"
    assert provider.outbox.replies == []


def test_decline_closes_conversation_after_reply() -> None:
    client = _client()

    response = client.post(f"{PREFIX}/webhooks/email", json=_received("No thanks, I cannot make it this time."))

    assert response.json()["details"]["intent"] == "negative"
    assert client.get(f"{PREFIX}/conversations/t1").json()["thread"]["status"] == "completed"
    conflict = client.post(f"{PREFIX}/conversations/t1/resolve")
    assert conflict.status_code == 409


def test_delivery_failure_is_reported_and_flags_thread() -> None:
    client = _client(provider=StubEmailProvider(fail_replies=True))

    response = client.post(
        f"{PREFIX}/webhooks/email",
        json=_received("Hi! I'd like to schedule an appointment.", sender="fail@example.org"),
    )

    body = response.json()
    assert response.status_code == 200
    assert body["success"] is False
    assert body["details"]["reason"] == "delivery_failed"
    assert body["details"]["delivery"]["channel_used"] == "none"
    assert client.get(f"{PREFIX}/conversations/t1").json()["thread"]["status"] == "needs_attention"


def test_tracking_only_message_gets_no_reply() -> None:
    provider = StubEmailProvider()
    client = _client(provider=provider)

    response = client.post(
        f"{PREFIX}/webhooks/email",
        json={**_received("Just letting you know I got the flyer."), "requires_response": False},
    )

    assert response.json()["details"]["reason"] == "tracked_only"
    assert provider.outbox.replies == []


def test_provider_message_received_envelope() -> None:
    provider = StubEmailProvider()
    client = _client(provider=provider)

    response = client.post(
        f"{PREFIX}/webhooks/email",
        json={
            "type": "message.received",
            "data": {
                "message_id": "am-1",
                "thread_id": "am-thread",
                "from": "Pat Lee <Pat.Lee@example.org>",
                "subject": "Drive",
                "text": "What time does it start?",
            },
        },
    )

    body = response.json()
    assert body["success"] is True
    assert body["details"]["intent"] == "question"
    assert body["details"]["message_id"] == "am-1"
    thread = client.get(f"{PREFIX}/conversations/am-thread").json()
    assert thread["thread"]["participant_name"] == "Pat Lee"


def test_message_from_own_inbox_is_ignored() -> None:
    client = _client()

    response = client.post(
        f"{PREFIX}/webhooks/email",
        json={
            "type": "message.received",
            "data": {"message_id": "am-2", "from": "outreach@agentmail.to", "text": "Our own reply"},
        },
    )

    assert response.json() == {"success": True, "message": "message from own inbox ignored", "details": None}
    assert client.get(f"{PREFIX}/conversations").json()["items"] == []


def test_missing_content_is_bad_request() -> None:
    client = _client()

    response = client.post(
        f"{PREFIX}/webhooks/email",
        json={"type": "email_received", "sender_email": "a@x.com", "thread_id": "t1"},
    )

    assert response.status_code == 400
    assert "message_content" in response.json()["detail"]


def test_unknown_event_type_is_acknowledged() -> None:
    client = _client()

    response = client.post(f"{PREFIX}/webhooks/email", json={"type": "email_bounced"})

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert response.json()["message"] == "event type ignored: email_bounced"


def test_campaign_open_and_reply_are_recorded() -> None:
    provider = StubEmailProvider()
    client = _client(provider=provider)

    opened = client.post(f"{PREFIX}/webhooks/email", json={"type": "email_opened", "campaign_id": "c1"})
    assert opened.json()["details"] == {"campaign_id": "c1", "opens": 1}

    replied = client.post(
        f"{PREFIX}/webhooks/email",
        json={
            "type": "email_reply",
            "campaign_id": "c1",
            "sender_email": "donor@example.org",
            "message_content": "Yes, count me in!",
        },
    )
    details = replied.json()["details"]
    assert details["sentiment"] == "positive"
    assert details["replies"] == 1
    assert details["thread_id"] == "sender_donor@example.org"
    assert provider.outbox.replies == []

    thread = client.get(f"{PREFIX}/conversations/sender_donor@example.org").json()
    assert thread["thread"]["campaign_id"] == "c1"
    assert thread["messages"][0]["intent"] == "positive"


def test_stats_count_outcomes() -> None:
    client = _client()
    client.post(f"{PREFIX}/webhooks/email", json=_received("Hi! I'd like to schedule an appointment."))
    client.post(f"{PREFIX}/webhooks/email", json=_received("I have a complaint", thread_id="t2"))

    body = client.get(f"{PREFIX}/webhooks/email/stats").json()

    assert body["stats"]["total_received"] == 2
    assert body["stats"]["replies_sent"] == 1
    assert body["stats"]["escalated"] == 1
    assert body["stats"]["last_processed_at"] is not None
    assert body["status"]["email_provider"] == "stub"
    assert body["status"]["language_model"] == "stub"


def test_conversation_endpoints_404_for_unknown_thread() -> None:
    client = _client()

    assert client.get(f"{PREFIX}/conversations/missing").status_code == 404
    assert client.post(f"{PREFIX}/conversations/missing/resolve").status_code == 404


def test_list_conversations_masks_participants() -> None:
    client = _client()
    client.post(f"{PREFIX}/webhooks/email", json=_received("Yes please", thread_id="t1"))
    client.post(f"{PREFIX}/webhooks/email", json=_received("Yes please", sender="b@example.org", thread_id="t2"))

    items = client.get(f"{PREFIX}/conversations", params={"limit": 10}).json()["items"]

    assert {item["thread_id"] for item in items} == {"t1", "t2"}
    assert {item["participant_address_masked"] for item in items} == {"v***@example.org", "*@example.org"}


def test_unconfigured_pipeline_returns_service_unavailable() -> None:
    api_module.reset_runtime_state_for_tests()
    api_module.configure_collaborators(provider=None, language_model=StubLanguageModelClient())
    client = TestClient(create_app())

    response = client.post(f"{PREFIX}/webhooks/email", json=_received("Hello"))
    assert response.status_code == 503

    started = client.post(f"{PREFIX}/monitor", json={"action": "start"})
    assert started.status_code == 200
    assert started.json()["success"] is False
    assert started.json()["monitor"]["isRunning"] is False


def test_monitor_control_round_trip() -> None:
    client = _client()

    status = client.get(f"{PREFIX}/monitor").json()
    assert status["monitor"]["isRunning"] is False
    assert status["monitor"]["checkInterval"] == 5

    started = client.post(f"{PREFIX}/monitor", json={"action": "start"}).json()
    try:
        assert started["success"] is True
        assert started["monitor"]["isRunning"] is True

        again = client.post(f"{PREFIX}/monitor", json={"action": "start"}).json()
        assert again["success"] is False
        assert again["message"] == "monitor is already running"

        updated = client.post(f"{PREFIX}/monitor", json={"action": "update_interval", "interval": 30}).json()
        assert updated["success"] is True
        assert updated["monitor"]["checkInterval"] == 30
    finally:
        stopped = client.post(f"{PREFIX}/monitor", json={"action": "stop"}).json()
    assert stopped["success"] is True
    assert stopped["monitor"]["isRunning"] is False


def test_monitor_rejects_bad_interval() -> None:
    client = _client()

    assert client.post(f"{PREFIX}/monitor", json={"action": "update_interval", "interval": 0}).status_code == 400
    assert client.post(f"{PREFIX}/monitor", json={"action": "update_interval"}).status_code == 400
    assert client.post(f"{PREFIX}/monitor", json={"action": "pause"}).status_code == 422


def test_health_reports_pipeline_and_ledger() -> None:
    client = _client()
    client.post(f"{PREFIX}/webhooks/email", json=_received("Yes please"))

    body = client.get(f"{PREFIX}/health").json()

    assert body == {"status": "ok", "pipeline_ready": True, "monitor_running": False, "processed_messages": 1}


def test_webhook_config_reports_runtime_settings() -> None:
    client = _client()

    body = client.get(f"{PREFIX}/webhooks/email/config").json()

    assert body["success"] is True
    assert body["config"] == {
        "autoReplyEnabled": True,
        "confidenceThreshold": 0.7,
        "maxRepliesPerHour": 50,
        "model": "claude-3-haiku-20240307",
        "temperature": 0.3,
    }


def test_disabling_auto_reply_escalates_next_message() -> None:
    provider = StubEmailProvider()
    client = _client(provider=provider)

    toggled = client.post(f"{PREFIX}/webhooks/email/config", json={"autoReplyEnabled": False})
    assert toggled.status_code == 200
    assert toggled.json()["config"]["autoReplyEnabled"] is False
    assert client.get(f"{PREFIX}/webhooks/email/stats").json()["status"]["autoreply_enabled"] is False

    response = client.post(f"{PREFIX}/webhooks/email", json=_received("Hi! I'd like to schedule an appointment."))

    assert response.json()["details"]["status"] == "escalated"
    assert response.json()["details"]["reason"] == "autoreply_disabled"
    assert provider.outbox.replies == []

    client.post(f"{PREFIX}/webhooks/email/config", json={"autoReplyEnabled": True})
    again = client.post(f"{PREFIX}/webhooks/email", json=_received("Can I book Saturday?", thread_id="t2"))
    assert again.json()["details"]["status"] == "success"


def test_webhook_config_rejects_non_boolean_toggle() -> None:
    client = _client()

    for body in ({"autoReplyEnabled": "yes"}, {"autoReplyEnabled": 1}, {}):
        response = client.post(f"{PREFIX}/webhooks/email/config", json=body)
        assert response.status_code == 400
    assert client.get(f"{PREFIX}/webhooks/email/config").json()["config"]["autoReplyEnabled"] is True


def test_model_declining_to_reply_suppresses_message() -> None:
    provider = StubEmailProvider()
    client = _client(provider=provider, language_model=StubLanguageModelClient(reply="NO_REPLY"))

    response = client.post(f"{PREFIX}/webhooks/email", json=_received("Thanks, got it."))

    details = response.json()["details"]
    assert details["status"] == "suppressed"
    assert details["reason"] == "generator_declined"
    assert provider.outbox.replies == []
    redelivered = client.post(f"{PREFIX}/webhooks/email", json=_received("Thanks, got it."))
    assert redelivered.json()["details"]["reason"] == "duplicate_message"
