from __future__ import annotations

import html
import http.client
import itertools
import json
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Protocol


class EmailProviderError(Exception):
    """Base error for email provider failures."""

    error_code = "provider_error"

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code


class ProviderUnauthorizedError(EmailProviderError):
    error_code = "unauthorized"


class ProviderRateLimitedError(EmailProviderError):
    error_code = "rate_limited"


class ProviderNotFoundError(EmailProviderError):
    error_code = "not_found"


class ProviderTimeoutError(EmailProviderError):
    error_code = "timeout"


class ProviderUnavailableError(EmailProviderError):
    error_code = "unavailable"


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class RawMessage:
    id: str
    thread_id: str
    sender_address: str
    subject: str
    text: str
    received_at: datetime
    labels: tuple[str, ...] = ()


@dataclass(frozen=True)
class SendResult:
    message_id: str
    accepted_at: datetime
    thread_id: str | None = None


class EmailProvider(Protocol):
    def list_unread(self, inbox: str, limit: int) -> list[RawMessage]: ...

    def send(
        self,
        inbox: str,
        to: str,
        subject: str,
        text: str,
        html: str | None = None,
        *,
        thread_id: str | None = None,
    ) -> SendResult: ...

    def reply(self, thread_id: str, text: str) -> SendResult: ...

    def mark_read(self, message_id: str) -> bool: ...


def text_to_html(text: str) -> str:
    escaped = html.escape(text.strip())
    return "<p>" + escaped.replace("\n\n", "</p><p>").replace("\n", "<br>") + "</p>"


def reply_subject(subject: str | None) -> str:
    cleaned = (subject or "").strip()
    if not cleaned:
        return "Re: Your message"
    if cleaned.lower().startswith("re:"):
        return cleaned
    return f"Re: {cleaned}"


def mask_address(address: str) -> str:
    normalized = address.strip()
    if not normalized:
        return "***"
    if "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"
    if len(normalized) <= 4:
        return "*" * len(normalized)
    return f"{normalized[:2]}***{normalized[-2:]}"


@dataclass
class _StubOutbox:
    replies: list[tuple[str, str]] = field(default_factory=list)
    sends: list[dict[str, Any]] = field(default_factory=list)
    read_ids: list[str] = field(default_factory=list)


class StubEmailProvider:
    """In-memory provider for development and tests."""

    def __init__(
        self,
        *,
        fail_replies: bool = False,
        fail_sends: bool = False,
        fail_listing: bool = False,
    ) -> None:
        self.fail_replies = fail_replies
        self.fail_sends = fail_sends
        self.fail_listing = fail_listing
        self.outbox = _StubOutbox()
        self._unread: dict[str, list[RawMessage]] = {}
        self._lock = Lock()
        self._ids = itertools.count(1)

    def reset(self) -> None:
        with self._lock:
            self.outbox = _StubOutbox()
            self._unread.clear()

    def add_unread(self, inbox: str, message: RawMessage) -> None:
        with self._lock:
            self._unread.setdefault(inbox, []).append(message)

    def list_unread(self, inbox: str, limit: int) -> list[RawMessage]:
        if self.fail_listing:
            raise ProviderUnavailableError("Stub provider forced listing failure")
        with self._lock:
            return list(self._unread.get(inbox, []))[:limit]

    def send(
        self,
        inbox: str,
        to: str,
        subject: str,
        text: str,
        html: str | None = None,
        *,
        thread_id: str | None = None,
    ) -> SendResult:
        if self.fail_sends or "fail" in to.lower():
            raise ProviderUnavailableError("Stub provider forced send failure")
        with self._lock:
            self.outbox.sends.append(
                {"inbox": inbox, "to": to, "subject": subject, "text": text, "html": html, "thread_id": thread_id}
            )
            return SendResult(message_id=f"stub_msg_{next(self._ids):06d}", accepted_at=_now_utc(), thread_id=thread_id)

    def reply(self, thread_id: str, text: str) -> SendResult:
        if self.fail_replies:
            raise ProviderUnavailableError("Stub provider forced reply failure")
        with self._lock:
            self.outbox.replies.append((thread_id, text))
            return SendResult(message_id=f"stub_msg_{next(self._ids):06d}", accepted_at=_now_utc(), thread_id=thread_id)

    def mark_read(self, message_id: str) -> bool:
        with self._lock:
            self.outbox.read_ids.append(message_id)
            found = False
            for inbox, messages in self._unread.items():
                remaining = [item for item in messages if item.id != message_id]
                if len(remaining) != len(messages):
                    self._unread[inbox] = remaining
                    found = True
            return found


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return _now_utc()
        if parsed.tzinfo is None:
            return parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    return _now_utc()


def _parse_sender(value: Any) -> str:
    if isinstance(value, dict):
        value = value.get("email", "")
    if isinstance(value, list):
        value = value[0] if value else ""
    sender = str(value or "").strip()
    # "Jane Doe <jane@example.org>"
    if "<" in sender and sender.endswith(">"):
        sender = sender[sender.rfind("<") + 1 : -1]
    return sender.lower()


def parse_raw_message(payload: dict[str, Any]) -> RawMessage | None:
    message_id = payload.get("message_id") or payload.get("messageId") or payload.get("id")
    if not message_id:
        return None
    thread_id = payload.get("thread_id") or payload.get("threadId") or message_id
    text = (
        payload.get("text")
        or payload.get("extracted_text")
        or payload.get("preview")
        or payload.get("body")
        or ""
    )
    labels = payload.get("labels") or []
    return RawMessage(
        id=str(message_id),
        thread_id=str(thread_id),
        sender_address=_parse_sender(payload.get("from")),
        subject=str(payload.get("subject") or ""),
        text=str(text),
        received_at=_parse_timestamp(payload.get("timestamp") or payload.get("created_at") or payload.get("createdAt")),
        labels=tuple(str(label) for label in labels if isinstance(label, str)),
    )


class HttpEmailProvider:
    """AgentMail-compatible REST client."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        inbox: str,
        timeout_seconds: int = 15,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        if not inbox.strip():
            raise ValueError("inbox must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._inbox = inbox.strip()
        self._timeout_seconds = timeout_seconds

    def list_unread(self, inbox: str, limit: int) -> list[RawMessage]:
        query = urllib.parse.urlencode({"limit": limit, "labels": "unread"})
        data = self._request("GET", f"/v0/inboxes/{_quote(inbox)}/messages?{query}")
        items = data.get("messages") if isinstance(data, dict) else data
        if not isinstance(items, list):
            return []
        parsed = (parse_raw_message(item) for item in items if isinstance(item, dict))
        return [item for item in parsed if item is not None]

    def send(
        self,
        inbox: str,
        to: str,
        subject: str,
        text: str,
        html: str | None = None,
        *,
        thread_id: str | None = None,
    ) -> SendResult:
        body: dict[str, Any] = {
            "to": [to],
            "subject": subject,
            "text": text,
            "html": html if html is not None else text_to_html(text),
        }
        if thread_id:
            body["thread_id"] = thread_id
            body["labels"] = [f"thread_{thread_id}"]
        data = self._request("POST", f"/v0/inboxes/{_quote(inbox)}/messages/send", body)
        return self._send_result(data, thread_id)

    def reply(self, thread_id: str, text: str) -> SendResult:
        body = {"text": text, "html": text_to_html(text)}
        data = self._request("POST", f"/v0/inboxes/{_quote(self._inbox)}/threads/{_quote(thread_id)}/reply", body)
        return self._send_result(data, thread_id)

    def mark_read(self, message_id: str) -> bool:
        body = {"add_labels": ["read"], "remove_labels": ["unread"]}
        self._request("PATCH", f"/v0/inboxes/{_quote(self._inbox)}/messages/{_quote(message_id)}", body)
        return True

    @staticmethod
    def _send_result(data: Any, thread_id: str | None) -> SendResult:
        payload = data if isinstance(data, dict) else {}
        message_id = payload.get("message_id") or payload.get("id")
        if not message_id:
            raise EmailProviderError("provider accepted the request without a message id", error_code="malformed_response")
        return SendResult(
            message_id=str(message_id),
            accepted_at=_now_utc(),
            thread_id=str(payload.get("thread_id") or thread_id or "") or None,
        )

    def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        request = urllib.request.Request(
            f"{self._base_url}{path}",
            data=json.dumps(body).encode("utf-8") if body is not None else None,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method=method,
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raise _error_for_status(exc.code, f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise ProviderTimeoutError(f"Request timed out: {exc.reason}") from exc
            raise ProviderUnavailableError(f"Connection error: {exc.reason}", error_code="connection_error") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise ProviderTimeoutError(f"Request timed out: {exc}") from exc
        except OSError as exc:
            raise ProviderUnavailableError(f"Connection error: {exc}", error_code="connection_error") from exc
        except http.client.HTTPException as exc:
            raise ProviderUnavailableError(f"Connection error: {exc!r}", error_code="connection_error") from exc
        if not raw.strip():
            return {}
        try:
            return json.loads(raw)
        except ValueError as exc:
            raise EmailProviderError(f"Response was not JSON: {exc}", error_code="malformed_response") from exc


def _quote(value: str) -> str:
    return urllib.parse.quote(value, safe="@")


def _error_for_status(status_code: int, message: str) -> EmailProviderError:
    if status_code in {401, 403}:
        return ProviderUnauthorizedError(message)
    if status_code == 404:
        return ProviderNotFoundError(message)
    if status_code == 429:
        return ProviderRateLimitedError(message)
    if status_code >= 500:
        return ProviderUnavailableError(message, error_code=f"http_{status_code}")
    return EmailProviderError(message, error_code=f"http_{status_code}")
