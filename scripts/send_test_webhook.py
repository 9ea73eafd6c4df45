#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any


def _load_dotenv(path: Path) -> None:
    if not path.is_file():
        return
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        parsed = value.strip()
        if parsed and (parsed[0] == parsed[-1]) and parsed[0] in {'"', "'"}:
            parsed = parsed[1:-1]
        os.environ[key] = parsed


def _resolve_api_base_url(explicit_value: str | None) -> str:
    if explicit_value:
        candidate = explicit_value.strip()
    else:
        candidate = os.getenv("OUTREACH_API_BASE_URL", "").strip() or "http://localhost:8000"
    if candidate.endswith("/api/v1/outreach"):
        return candidate
    return f"{candidate.rstrip('/')}/api/v1/outreach"


def _request_json(
    method: str,
    base_url: str,
    path: str,
    *,
    payload: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = None if payload is None else json.dumps(payload).encode("utf-8")
    headers: dict[str, str] = {"Accept": "application/json"}
    if payload is not None:
        headers["Content-Type"] = "application/json"

    request = urllib.request.Request(
        f"{base_url}/{path.lstrip('/')}",
        data=body,
        headers=headers,
        method=method,
    )
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            return json.loads(response.read().decode("utf-8"))
    except urllib.error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="replace")
        raise RuntimeError(f"{method} {path} failed with {exc.code}: {detail}") from exc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Post a simulated inbound email to the outreach webhook and print the resulting thread."
    )
    parser.add_argument(
        "--api-base-url",
        default=None,
        help=(
            "Backend base URL. Accepts either host root (e.g. http://localhost:8000) "
            "or full API prefix (e.g. http://localhost:8000/api/v1/outreach)."
        ),
    )
    parser.add_argument("--sender", default="volunteer.test@example.com", help="Participant email address.")
    parser.add_argument(
        "--message",
        default="Hi! I'd like to schedule an appointment for the blood drive.",
        help="Inbound message body.",
    )
    parser.add_argument("--thread-id", default="test-thread-001", help="Provider thread id to post under.")
    parser.add_argument("--campaign-id", default=None, help="Campaign id; with --event-type email_reply records a reply.")
    parser.add_argument(
        "--event-type",
        default="email_received",
        choices=["email_received", "email_reply", "email_opened"],
        help="Webhook event type to simulate.",
    )
    parser.add_argument(
        "--no-response",
        action="store_true",
        help="Track the message without asking the pipeline for a reply.",
    )
    return parser.parse_args()


def main() -> int:
    root_dir = Path(__file__).resolve().parents[1]
    _load_dotenv(root_dir / ".env")
    args = parse_args()

    if args.event_type in {"email_reply", "email_opened"} and not args.campaign_id:
        raise SystemExit(f"--campaign-id is required for {args.event_type}")

    api_base_url = _resolve_api_base_url(args.api_base_url)
    payload: dict[str, Any] = {
        "type": args.event_type,
        "sender_email": args.sender,
        "message_content": args.message,
        "thread_id": args.thread_id,
        "requires_response": not args.no_response,
    }
    if args.campaign_id:
        payload["campaign_id"] = args.campaign_id

    result = _request_json("POST", api_base_url, "webhooks/email", payload=payload)
    print(json.dumps(result, indent=2))
    if not result.get("success"):
        return 1

    if args.event_type != "email_opened":
        thread = _request_json("GET", api_base_url, f"conversations/{args.thread_id}")
        print(json.dumps(thread, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
