from __future__ import annotations

import http.client
import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Literal, Protocol

ChatRole = Literal["user", "assistant"]

_ANTHROPIC_VERSION = "2023-06-01"


class LanguageModelError(Exception):
    """Raised when the language model service fails or returns nothing usable."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


@dataclass(frozen=True)
class ChatTurn:
    role: ChatRole
    content: str


class LanguageModelClient(Protocol):
    def complete(
        self,
        system_prompt: str,
        message_history: list[ChatTurn],
        max_tokens: int,
        temperature: float,
    ) -> str: ...


class StubLanguageModelClient:
    """Deterministic replies keyed off the latest participant message."""

    def __init__(self, *, reply: str | None = None, fail: bool = False) -> None:
        self._reply = reply
        self._fail = fail
        self.calls: list[tuple[str, list[ChatTurn]]] = []

    def complete(
        self,
        system_prompt: str,
        message_history: list[ChatTurn],
        max_tokens: int,
        temperature: float,
    ) -> str:
        self.calls.append((system_prompt, list(message_history)))
        if self._fail:
            raise LanguageModelError("stub_failure", "Stub language model forced failure")
        if self._reply is not None:
            return self._reply

        latest = next((turn.content for turn in reversed(message_history) if turn.role == "user"), "")
        lowered = latest.lower()
        if any(keyword in lowered for keyword in ("schedule", "book", "appointment", "sign up")):
            return (
                "Thank you for wanting to schedule a donation appointment! "
                "We have open time slots throughout the event day, so just reply with the time that works best "
                "and we will reserve it for you."
            )
        if "?" in lowered:
            return (
                "Thanks for your question! "
                "Our coordinator will follow up with the details from the event schedule shortly."
            )
        return "Thank you for getting back to us! We appreciate you taking the time to reply."


class HttpLanguageModelClient:
    """Anthropic Messages API client with a hard request timeout."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        timeout_seconds: int = 20,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        if not model.strip():
            raise ValueError("model must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._model = model.strip()
        self._timeout_seconds = timeout_seconds

    def complete(
        self,
        system_prompt: str,
        message_history: list[ChatTurn],
        max_tokens: int,
        temperature: float,
    ) -> str:
        if not message_history:
            raise LanguageModelError("empty_history", "message_history must contain at least one turn")
        body = {
            "model": self._model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system_prompt,
            "messages": [{"role": turn.role, "content": turn.content} for turn in message_history],
        }
        response_data = self._post(body)
        content = response_data.get("content")
        if not isinstance(content, list):
            raise LanguageModelError("malformed_response", "response has no content blocks")
        text = "".join(
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ).strip()
        if not text:
            raise LanguageModelError("empty_response", "response contained no text")
        return text

    def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self._base_url}/v1/messages"
        request = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={
                "x-api-key": self._api_key,
                "anthropic-version": _ANTHROPIC_VERSION,
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise LanguageModelError(f"http_{exc.code}", f"HTTP {exc.code}: {exc.reason}") from exc
        except urllib.error.URLError as exc:
            raise LanguageModelError("connection_error", f"Connection error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise LanguageModelError("timeout", f"Request timed out: {exc}") from exc
        except OSError as exc:
            raise LanguageModelError("connection_error", f"Connection error: {exc}") from exc
        except http.client.HTTPException as exc:
            raise LanguageModelError("connection_error", f"Connection error: {exc!r}") from exc
        except ValueError as exc:
            raise LanguageModelError("malformed_response", f"Response was not JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise LanguageModelError("malformed_response", "response body is not an object")
        return payload
