"""Input sanitization for text entering the assistant."""

import re
from typing import Any, Iterable

from luna.contracts.intents import HistoryEntry

_TAG_RE = re.compile(r"<[^>]*>")
_ENTITY_RE = re.compile(r"&[a-z]+;", re.IGNORECASE)
# Control characters except \t, \n, \r
_CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")

VALID_HISTORY_ROLES = frozenset({"user", "assistant"})


def strip_html(text: str) -> str:
    """Remove HTML tags, entities and control characters."""
    text = _TAG_RE.sub("", text)
    text = _ENTITY_RE.sub("", text)
    text = _CONTROL_RE.sub("", text)
    return text.strip()


def sanitize_text(value: Any, max_length: int) -> str:
    """Strip markup, trim and clamp to ``max_length``."""
    raw = "" if value is None else str(value)
    cleaned = strip_html(raw.strip())
    if len(cleaned) > max_length:
        cleaned = cleaned[:max_length].rstrip()
    return cleaned


def normalize_command(text: str) -> str:
    """Lowercase, collapse whitespace and drop trailing punctuation for keyword matching."""
    return " ".join(text.lower().split()).rstrip(".!?")


def sanitize_history(
    entries: Iterable[Any],
    max_entries: int,
    max_length: int,
) -> list[HistoryEntry]:
    """Keep the most recent user/assistant turns with non-empty content."""
    kept: list[HistoryEntry] = []
    for entry in entries:
        role = getattr(entry, "role", None)
        content = getattr(entry, "content", None)
        if role not in VALID_HISTORY_ROLES or not isinstance(content, str):
            continue
        cleaned = sanitize_text(content, max_length)
        if cleaned:
            kept.append(HistoryEntry(role=role, content=cleaned))
    return kept[-max_entries:]
