"""Schema-driven request validation.

A ``Schema`` maps field names to ``FieldRules``, each holding a tuple of rule
descriptors. ``validate`` walks every field and collects every violation so a
client can fix all problems from a single response.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Union

from email_validator import EmailNotValidError, validate_email

from .domain.errors import Err, Ok, Result, ServiceError

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")
_SPECIAL = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")
_ALNUM = re.compile(r"^[a-zA-Z0-9]+$")
_ALNUM_SPACES = re.compile(r"^[a-zA-Z0-9\s]+$")


@dataclass(frozen=True)
class Required:
    pass


@dataclass(frozen=True)
class TypeRule:
    kind: str  # string | number | boolean | array | object


@dataclass(frozen=True)
class LengthBounds:
    min: int | None = None
    max: int | None = None


@dataclass(frozen=True)
class EmailFormat:
    pass


@dataclass(frozen=True)
class Alphanumeric:
    allow_spaces: bool = False


@dataclass(frozen=True)
class PasswordRule:
    min_length: int = 8
    require_uppercase: bool = True
    require_lowercase: bool = True
    require_digit: bool = True
    require_special: bool = False
    max_bytes: int | None = 72


@dataclass(frozen=True)
class NumberBounds:
    min: float | None = None
    max: float | None = None


@dataclass(frozen=True)
class OneOf:
    """Enum membership."""

    values: tuple[Any, ...]


@dataclass(frozen=True)
class ArrayBounds:
    min: int | None = None
    max: int | None = None


@dataclass(frozen=True)
class Custom:
    """Predicate returning ``True`` on success, or a message string on failure."""

    predicate: Callable[[Any, Mapping[str, Any]], Union[bool, str]]
    message: str = "Validation failed"


Rule = Union[
    Required,
    TypeRule,
    LengthBounds,
    EmailFormat,
    Alphanumeric,
    PasswordRule,
    NumberBounds,
    OneOf,
    ArrayBounds,
    Custom,
]


@dataclass(frozen=True)
class FieldRules:
    rules: tuple[Rule, ...] = ()

    @property
    def required(self) -> bool:
        return any(isinstance(rule, Required) for rule in self.rules)


@dataclass(frozen=True)
class Schema:
    fields: Mapping[str, FieldRules] = field(default_factory=dict)
    required: tuple[str, ...] = ()


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and value.strip() == ""


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _type_matches(kind: str, value: Any) -> bool:
    if kind == "string":
        return isinstance(value, str)
    if kind == "number":
        return _as_number(value) is not None
    if kind == "boolean":
        return isinstance(value, bool) or value in ("true", "false")
    if kind == "array":
        return isinstance(value, list)
    if kind == "object":
        return isinstance(value, dict)
    raise ValueError(f"unknown type rule: {kind}")


def is_valid_email(value: str) -> bool:
    try:
        validate_email(value.strip(), check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def password_violations(password: Any, rule: PasswordRule) -> list[str]:
    """Return one message per unmet password rule, in evaluation order."""
    if not isinstance(password, str) or not password:
        return ["Password is required"]
    messages: list[str] = []
    if len(password) < rule.min_length:
        messages.append(f"Password must be at least {rule.min_length} characters long")
    if rule.require_uppercase and not _UPPER.search(password):
        messages.append("Password must contain at least one uppercase letter")
    if rule.require_lowercase and not _LOWER.search(password):
        messages.append("Password must contain at least one lowercase letter")
    if rule.require_digit and not _DIGIT.search(password):
        messages.append("Password must contain at least one number")
    if rule.require_special and not _SPECIAL.search(password):
        messages.append("Password must contain at least one special character")
    if rule.max_bytes is not None and len(password.encode("utf-8")) > rule.max_bytes:
        messages.append(f"Password must be at most {rule.max_bytes} bytes long")
    return messages


def _apply(name: str, rule: Rule, value: Any, payload: Mapping[str, Any]) -> list[str]:
    if isinstance(rule, (Required, TypeRule)):
        return []
    if isinstance(rule, EmailFormat):
        if isinstance(value, str) and not is_valid_email(value):
            return [f"{name} must be a valid email address"]
        return []
    if isinstance(rule, Alphanumeric):
        if not isinstance(value, str):
            return []
        pattern = _ALNUM_SPACES if rule.allow_spaces else _ALNUM
        if not pattern.match(value):
            suffix = " and spaces" if rule.allow_spaces else ""
            return [f"{name} must contain only alphanumeric characters{suffix}"]
        return []
    if isinstance(rule, LengthBounds):
        if not isinstance(value, str):
            return []
        length = len(value.strip())
        if rule.min is not None and length < rule.min:
            return [f"{name}: Must be at least {rule.min} characters"]
        if rule.max is not None and length > rule.max:
            return [f"{name}: Must be no more than {rule.max} characters"]
        return []
    if isinstance(rule, PasswordRule):
        return [f"{name}: {message}" for message in password_violations(value, rule)]
    if isinstance(rule, NumberBounds):
        number = _as_number(value)
        if number is None:
            return [f"{name}: Must be a valid number"]
        if rule.min is not None and number < rule.min:
            return [f"{name}: Must be at least {rule.min:g}"]
        if rule.max is not None and number > rule.max:
            return [f"{name}: Must be no more than {rule.max:g}"]
        return []
    if isinstance(rule, OneOf):
        if value not in rule.values:
            allowed = ", ".join(str(item) for item in rule.values)
            return [f"{name} must be one of: {allowed}"]
        return []
    if isinstance(rule, ArrayBounds):
        if not isinstance(value, list):
            return [f"{name}: Must be an array"]
        if rule.min is not None and len(value) < rule.min:
            return [f"{name}: Must have at least {rule.min} items"]
        if rule.max is not None and len(value) > rule.max:
            return [f"{name}: Must have no more than {rule.max} items"]
        return []
    if isinstance(rule, Custom):
        outcome = rule.predicate(value, payload)
        if outcome is True:
            return []
        return [f"{name}: {outcome or rule.message}"]
    raise TypeError(f"unsupported rule descriptor: {rule!r}")


def validate(schema: Schema, payload: Any) -> list[str]:
    """Return every violation of ``schema`` found in ``payload``; empty means accepted."""
    if not isinstance(payload, dict):
        return ["Request body must be a JSON object"]

    errors: list[str] = []
    missing = [name for name in schema.required if _is_blank(payload.get(name))]
    if missing:
        errors.append(f"Missing required fields: {', '.join(missing)}")

    for name, field_rules in schema.fields.items():
        value = payload.get(name)
        if value is None and not field_rules.required:
            continue
        if field_rules.required and _is_blank(value):
            errors.append(f"{name} is required")
            continue

        type_rule = next((rule for rule in field_rules.rules if isinstance(rule, TypeRule)), None)
        if type_rule is not None and not _type_matches(type_rule.kind, value):
            errors.append(f"{name} must be of type {type_rule.kind}")
            continue

        for rule in field_rules.rules:
            errors.extend(_apply(name, rule, value, payload))
    return errors


def check(schema: Schema, payload: Any) -> Result[dict[str, Any]]:
    """Validate ``payload`` and hand it back unchanged, or a ``ValidationFailed`` error."""
    errors = validate(schema, payload)
    if errors:
        return Err(ServiceError.validation(errors))
    return Ok(payload)
