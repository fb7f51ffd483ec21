from __future__ import annotations

from typing import Any

ACTIVITYSTREAMS_CONTEXT = "https://www.w3.org/ns/activitystreams"
SUPPORTED_CONTEXTS = {ACTIVITYSTREAMS_CONTEXT}


def as_array(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def value_or_id(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        identifier = value.get("id")
        if isinstance(identifier, str):
            return identifier
    return None


def equals_or_includes(haystack: Any, needle: str) -> bool:
    return needle in as_array(haystack)


def supported_context(document: dict[str, Any]) -> bool:
    return any(
        isinstance(context, str) and context in SUPPORTED_CONTEXTS
        for context in as_array(document.get("@context"))
    )
