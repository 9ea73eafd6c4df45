from __future__ import annotations

import http.client
import io
import json
import socket
import urllib.error
from unittest.mock import MagicMock, patch

import pytest

from outreach_web.dispatcher import DeliveryDispatcher
from outreach_web.email_provider import (
    EmailProviderError,
    HttpEmailProvider,
    ProviderNotFoundError,
    ProviderRateLimitedError,
    ProviderTimeoutError,
    ProviderUnauthorizedError,
    ProviderUnavailableError,
    mask_address,
    parse_raw_message,
    reply_subject,
    text_to_html,
)


def _make_provider(
    *,
    base_url: str = "https://api.agentmail.test",
    api_key: str = "test-agentmail-key",
    inbox: str = "outreach@agentmail.to",
) -> HttpEmailProvider:
    return HttpEmailProvider(base_url=base_url, api_key=api_key, inbox=inbox)


def _mock_response(body: object) -> MagicMock:
    """Create a mock HTTP response that works as a context manager."""
    response = MagicMock()
    response.status = 200
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _http_error(code: int, reason: str = "error") -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        url="https://api.agentmail.test",
        code=code,
        msg=reason,
        hdrs=None,  # type: ignore[arg-type]
        fp=io.BytesIO(b"{}"),
    )


@patch("outreach_web.email_provider.urllib.request.urlopen")
def test_reply_posts_to_thread_endpoint(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "msg-1", "thread_id": "thr-1"})
    provider = _make_provider()

    result = provider.reply("thr-1", "Thanks!\n\nSee you soon.")

    assert result.message_id == "msg-1"
    assert result.thread_id == "thr-1"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://api.agentmail.test/v0/inboxes/outreach@agentmail.to/threads/thr-1/reply"
    assert request_arg.get_method() == "POST"
    assert request_arg.get_header("Authorization") == "Bearer test-agentmail-key"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["text"] == "Thanks!\n\nSee you soon."
    assert sent_body["html"] == "<p>Thanks!</p><p>See you soon.</p>"


@patch("outreach_web.email_provider.urllib.request.urlopen")
def test_send_includes_thread_label(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"id": "msg-2"})
    provider = _make_provider()

    result = provider.send("outreach@agentmail.to", "a@x.com", "Re: Hi", "Hello", thread_id="thr-9")

    assert result.message_id == "msg-2"
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url.endswith("/v0/inboxes/outreach@agentmail.to/messages/send")
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["to"] == ["a@x.com"]
    assert sent_body["thread_id"] == "thr-9"
    assert sent_body["labels"] == ["thread_thr-9"]


@patch("outreach_web.email_provider.urllib.request.urlopen")
def test_list_unread_parses_messages(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response(
        {
            "messages": [
                {
                    "message_id": "m1",
                    "thread_id": "t1",
                    "from": "Jane Doe <Jane@Example.org>",
                    "subject": "Question",
                    "extracted_text": "When does it start?",
                    "timestamp": "2025-09-01T12:00:00Z",
                    "labels": ["unread"],
                },
                {"subject": "no id"},
            ]
        }
    )
    provider = _make_provider()

    messages = provider.list_unread("outreach@agentmail.to", 25)

    assert len(messages) == 1
    assert messages[0].sender_address == "jane@example.org"
    assert messages[0].text == "When does it start?"
    assert messages[0].received_at.isoformat() == "2025-09-01T12:00:00+00:00"
    request_arg = mock_urlopen.call_args[0][0]
    assert "limit=25" in request_arg.full_url
    assert "labels=unread" in request_arg.full_url


@patch("outreach_web.email_provider.urllib.request.urlopen")
def test_mark_read_patches_labels(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({})
    provider = _make_provider()

    assert provider.mark_read("m1") is True
    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.get_method() == "PATCH"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body == {"add_labels": ["read"], "remove_labels": ["unread"]}


@pytest.mark.parametrize(
    ("status", "error_type", "error_code"),
    [
        (401, ProviderUnauthorizedError, "unauthorized"),
        (403, ProviderUnauthorizedError, "unauthorized"),
        (404, ProviderNotFoundError, "not_found"),
        (429, ProviderRateLimitedError, "rate_limited"),
        (503, ProviderUnavailableError, "http_503"),
        (422, EmailProviderError, "http_422"),
    ],
)
@patch("outreach_web.email_provider.urllib.request.urlopen")
def test_http_errors_map_to_typed_errors(
    mock_urlopen: MagicMock,
    status: int,
    error_type: type[EmailProviderError],
    error_code: str,
) -> None:
    mock_urlopen.side_effect = _http_error(status)
    provider = _make_provider()

    with pytest.raises(error_type) as excinfo:
        provider.reply("thr-1", "Hello")
    assert excinfo.value.error_code == error_code


@patch("outreach_web.email_provider.urllib.request.urlopen")
def test_timeout_maps_to_timeout_error(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = socket.timeout("timed out")
    with pytest.raises(ProviderTimeoutError):
        _make_provider().reply("thr-1", "Hello")


@patch("outreach_web.email_provider.urllib.request.urlopen")
def test_connection_error_maps_to_unavailable(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Name or service not known")
    with pytest.raises(ProviderUnavailableError) as excinfo:
        _make_provider().reply("thr-1", "Hello")
    assert excinfo.value.error_code == "connection_error"


@patch("outreach_web.email_provider.urllib.request.urlopen")
def test_missing_message_id_is_malformed(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"status": "queued"})
    with pytest.raises(EmailProviderError) as excinfo:
        _make_provider().reply("thr-1", "Hello")
    assert excinfo.value.error_code == "malformed_response"


def test_constructor_rejects_empty_config() -> None:
    with pytest.raises(ValueError):
        _make_provider(api_key="  ")
    with pytest.raises(ValueError):
        _make_provider(base_url="")
    with pytest.raises(ValueError):
        _make_provider(inbox="")


def test_helpers() -> None:
    assert text_to_html("a <b>") == "<p>a &lt;b&gt;</p>"
    assert reply_subject("RE: Hello") == "RE: Hello"
    assert reply_subject("Hello") == "Re: Hello"
    assert mask_address("jane@example.org") == "j***@example.org"


def test_parse_raw_message_accepts_alternate_field_names() -> None:
    raw = parse_raw_message({"messageId": "m9", "from": {"email": "B@X.COM"}, "preview": "hi"})
    assert raw is not None
    assert raw.id == "m9"
    assert raw.thread_id == "m9"
    assert raw.sender_address == "b@x.com"
    assert raw.text == "hi"


@patch("outreach_web.email_provider.urllib.request.urlopen")
def test_truncated_response_maps_to_unavailable(mock_urlopen: MagicMock) -> None:
    response = _mock_response({})
    response.read.side_effect = http.client.IncompleteRead(b'{"message_id"')
    mock_urlopen.return_value = response

    with pytest.raises(ProviderUnavailableError) as excinfo:
        _make_provider().reply("thr-1", "Hello")
    assert excinfo.value.error_code == "connection_error"


@patch("outreach_web.email_provider.urllib.request.urlopen")
def test_broken_primary_response_falls_back_to_fresh_message(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = [
        http.client.BadStatusLine("garbage"),
        _mock_response({"message_id": "msg-fallback"}),
    ]
    dispatcher = DeliveryDispatcher(_make_provider(), inbox="outreach@agentmail.to")

    result = dispatcher.deliver("thr-1", "a@x.com", "Hello", subject="Drive")

    assert result.delivered is True
    assert result.channel_used == "fallback"
    assert result.provider_message_id == "msg-fallback"
    assert mock_urlopen.call_count == 2
