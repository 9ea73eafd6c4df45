from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from .models import Intent, SuggestedActionType

QUESTION_MARKERS: tuple[str, ...] = ("?", "when", "where", "how", "what")
POSITIVE_KEYWORDS: tuple[str, ...] = (
    "yes",
    "interested",
    "sign up",
    "count me in",
    "participate",
    "volunteer",
    "schedule",
    "book",
    "appointment",
)
NEGATIVE_KEYWORDS: tuple[str, ...] = (
    "no",
    "not interested",
    "unsubscribe",
    "remove",
    "decline",
    "busy",
    "cannot",
)

SCHEDULING_KEYWORDS: tuple[str, ...] = ("schedule", "book", "sign up")
CLOSING_KEYWORDS: tuple[str, ...] = ("no", "not interested", "decline", "cannot")
ESCALATION_KEYWORDS: tuple[str, ...] = (
    "complaint",
    "problem",
    "manager",
    "supervisor",
    "accommodation",
    "medical",
    "disability",
)

Predicate = Callable[[str], bool]


@dataclass(frozen=True)
class SuggestedAction:
    type: SuggestedActionType
    details: str


def _normalize(text: str) -> str:
    return " ".join(text.lower().split())


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def _without_negative_phrases(text: str) -> str:
    masked = text
    for keyword in sorted(NEGATIVE_KEYWORDS, key=len, reverse=True):
        masked = masked.replace(keyword, " " * len(keyword))
    return masked


def _has_positive(text: str) -> bool:
    # "interested" inside "not interested" is not a positive signal.
    return _contains_any(_without_negative_phrases(text), POSITIVE_KEYWORDS)


def _has_negative(text: str) -> bool:
    return _contains_any(text, NEGATIVE_KEYWORDS)


INTENT_RULES: tuple[tuple[Predicate, Intent], ...] = (
    (lambda text: _contains_any(text, QUESTION_MARKERS), "question"),
    (lambda text: _has_positive(text) and not _has_negative(text), "positive"),
    (lambda text: _has_negative(text) and not _has_positive(text), "negative"),
    (lambda text: _has_positive(text) and _has_negative(text), "neutral"),
)


def classify(text: str) -> Intent:
    normalized = _normalize(text)
    for predicate, result in INTENT_RULES:
        if predicate(normalized):
            return result
    return "neutral"


ACTION_RULES: tuple[tuple[Predicate, SuggestedAction], ...] = (
    (
        lambda text: _contains_any(text, SCHEDULING_KEYWORDS),
        SuggestedAction(type="schedule_appointment", details="Participant wants to schedule a time slot"),
    ),
    (
        lambda text: _contains_any(text, QUESTION_MARKERS),
        SuggestedAction(type="send_info", details="Participant asked for event information"),
    ),
    (
        lambda text: _contains_any(text, CLOSING_KEYWORDS),
        SuggestedAction(type="close_conversation", details="Participant declined or cannot attend"),
    ),
    (
        lambda text: _contains_any(text, ESCALATION_KEYWORDS),
        SuggestedAction(type="escalate", details="Message needs a coordinator's attention"),
    ),
)


def suggest_actions(text: str) -> list[SuggestedAction]:
    normalized = _normalize(text)
    return [action for predicate, action in ACTION_RULES if predicate(normalized)]


def requires_escalation(actions: list[SuggestedAction]) -> bool:
    return any(action.type == "escalate" for action in actions)
