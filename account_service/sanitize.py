"""Neutralise operator-injection keys and markup characters in request payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

OPERATOR_MARKER = "$"
PATH_SEPARATOR = "."
REPLACEMENT = "_"
_MARKUP = str.maketrans("", "", "<>")


@dataclass(slots=True)
class SanitizeReport:
    value: Any
    replaced_keys: list[str] = field(default_factory=list)


def _clean_key(key: str) -> str:
    if key.startswith(OPERATOR_MARKER):
        key = REPLACEMENT + key[len(OPERATOR_MARKER):]
    return key.replace(PATH_SEPARATOR, REPLACEMENT)


def _walk(value: Any, replaced: list[str]) -> Any:
    if isinstance(value, dict):
        cleaned: dict[Any, Any] = {}
        for key, item in value.items():
            if isinstance(key, str):
                safe_key = _clean_key(key)
                if safe_key != key:
                    replaced.append(key)
                key = safe_key
            cleaned[key] = _walk(item, replaced)
        return cleaned
    if isinstance(value, list):
        return [_walk(item, replaced) for item in value]
    if isinstance(value, str):
        return value.translate(_MARKUP)
    return value


def sanitize(payload: Any) -> SanitizeReport:
    """Return a cleaned deep copy of ``payload`` plus the keys that were rewritten.

    Keys starting with ``$`` or containing ``.`` have those characters replaced
    with ``_`` so they can never be read as query operators or field paths.
    ``<`` and ``>`` are dropped from every string value.
    """
    replaced: list[str] = []
    cleaned = _walk(payload, replaced)
    return SanitizeReport(value=cleaned, replaced_keys=replaced)
