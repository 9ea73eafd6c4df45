from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str, *, defaults: set[str]) -> bool:
    normalized = value.strip()
    if not normalized:
        return True
    if normalized in defaults:
        return True
    lower = normalized.lower()
    return lower in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Outreach Conversation Service"
    api_prefix: str = "/api/v1"
    # Email provider (AgentMail-compatible REST API).
    email_provider_type: str = "stub"
    agent_mail_api_key: str = ""
    agent_mail_api_base_url: str = "https://api.agentmail.to"
    agent_mail_inbox: str = "outreach@agentmail.to"
    email_provider_timeout_seconds: int = 15
    # Language model service.
    llm_provider_type: str = "stub"
    anthropic_api_key: str = ""
    llm_api_base_url: str = "https://api.anthropic.com"
    llm_model: str = "claude-3-haiku-20240307"
    llm_max_tokens: int = 1000
    llm_temperature: float = 0.3
    llm_timeout_seconds: int = 20
    # Conversation policy.
    conversation_autoreply_enabled: bool = True
    conversation_confidence_threshold: float = 0.7
    conversation_max_replies_per_hour: int = 50
    conversation_recipient_cooldown_seconds: int = 0
    conversation_context_window: int = 10
    # State backends.
    thread_store_backend: str = "inmemory"
    ledger_backend: str = "inmemory"
    ledger_checkpoint_path: str = ""
    database_url: str = ""
    # Continuous monitor.
    monitor_autostart: bool = False
    monitor_interval_seconds: int = 5
    monitor_batch_limit: int = 100
    runtime_secret_guard_mode: str = "warn"

    def email_provider_is_live(self) -> bool:
        return self.email_provider_type.strip().lower() == "http"

    def llm_is_live(self) -> bool:
        return self.llm_provider_type.strip().lower() == "http"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("OUTREACH_APP_NAME", "Outreach Conversation Service"),
        api_prefix=os.getenv("OUTREACH_API_PREFIX", "/api/v1"),
        email_provider_type=_normalize_mode(
            os.getenv("EMAIL_PROVIDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        agent_mail_api_key=os.getenv("AGENT_MAIL_API_KEY", ""),
        agent_mail_api_base_url=os.getenv("AGENT_MAIL_API_BASE_URL", "https://api.agentmail.to"),
        agent_mail_inbox=os.getenv("AGENT_MAIL_INBOX", "outreach@agentmail.to"),
        email_provider_timeout_seconds=_as_int(os.getenv("EMAIL_PROVIDER_TIMEOUT_SECONDS"), 15),
        llm_provider_type=_normalize_mode(
            os.getenv("LLM_PROVIDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
        llm_api_base_url=os.getenv("LLM_API_BASE_URL", "https://api.anthropic.com"),
        llm_model=os.getenv("LLM_MODEL", "claude-3-haiku-20240307"),
        llm_max_tokens=_as_int(os.getenv("LLM_MAX_TOKENS"), 1000),
        llm_temperature=_as_float(os.getenv("LLM_TEMPERATURE"), 0.3),
        llm_timeout_seconds=_as_int(os.getenv("LLM_TIMEOUT_SECONDS"), 20),
        conversation_autoreply_enabled=_as_bool(os.getenv("CONVERSATION_AUTOREPLY_ENABLED"), True),
        conversation_confidence_threshold=_as_float(os.getenv("CONVERSATION_CONFIDENCE_THRESHOLD"), 0.7),
        conversation_max_replies_per_hour=_as_int(os.getenv("CONVERSATION_MAX_REPLIES_PER_HOUR"), 50),
        conversation_recipient_cooldown_seconds=_as_int(os.getenv("CONVERSATION_RECIPIENT_COOLDOWN_SECONDS"), 0),
        conversation_context_window=_as_int(os.getenv("CONVERSATION_CONTEXT_WINDOW"), 10),
        thread_store_backend=os.getenv("THREAD_STORE_BACKEND", "inmemory"),
        ledger_backend=os.getenv("LEDGER_BACKEND", "inmemory"),
        ledger_checkpoint_path=os.getenv("LEDGER_CHECKPOINT_PATH", ""),
        database_url=os.getenv("DATABASE_URL", ""),
        monitor_autostart=_as_bool(os.getenv("MONITOR_AUTOSTART"), False),
        monitor_interval_seconds=_as_int(os.getenv("MONITOR_INTERVAL_SECONDS"), 5),
        monitor_batch_limit=_as_int(os.getenv("MONITOR_BATCH_LIMIT"), 100),
        runtime_secret_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_SECRET_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_secret_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    if settings.email_provider_is_live() and _is_placeholder(
        settings.agent_mail_api_key,
        defaults={"dev-agent-mail-key", "change-me-in-production"},
    ):
        issues.append("AGENT_MAIL_API_KEY is required when EMAIL_PROVIDER_TYPE=http")
    if settings.email_provider_is_live() and not settings.agent_mail_inbox.strip():
        issues.append("AGENT_MAIL_INBOX is required when EMAIL_PROVIDER_TYPE=http")
    if settings.llm_is_live() and _is_placeholder(
        settings.anthropic_api_key,
        defaults={"dev-anthropic-key", "change-me-in-production"},
    ):
        issues.append("ANTHROPIC_API_KEY is required when LLM_PROVIDER_TYPE=http")
    for backend_name, backend in (
        ("THREAD_STORE_BACKEND", settings.thread_store_backend),
        ("LEDGER_BACKEND", settings.ledger_backend),
    ):
        if backend.strip().lower() == "postgres" and not settings.database_url.strip():
            issues.append(f"DATABASE_URL is required when {backend_name}=postgres")
    return tuple(issues)
