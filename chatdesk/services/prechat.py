"""Pre-chat gate: required-field checks keyed by field id.

Shared by the widget client (immediate feedback) and the conversation
service (enforcement). Imports nothing from the persistence layer.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from chatdesk.schemas.widget import PrechatField


@dataclass(frozen=True)
class PrechatResult:
    ok: bool
    missing_field_ids: list[str] = field(default_factory=list)


def _coerce_field(raw: PrechatField | Mapping[str, Any]) -> PrechatField:
    if isinstance(raw, PrechatField):
        return raw
    return PrechatField.model_validate(raw)


def ordered_fields(fields: Iterable[PrechatField | Mapping[str, Any]] | None) -> list[PrechatField]:
    """Field definitions sorted by ``order`` (stable for equal orders)."""
    if not fields:
        return []
    return sorted((_coerce_field(f) for f in fields), key=lambda f: f.order)


def _has_value(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, dict, set)):
        return bool(value)
    return True


def validate(
    fields: Iterable[PrechatField | Mapping[str, Any]] | None,
    submitted: Mapping[str, Any] | None,
) -> PrechatResult:
    """Check every required field has a non-empty submitted value under its id.

    Labels are display text and never used for matching; submitted keys that
    match no field are ignored.
    """
    submitted = submitted or {}
    missing = [
        f.id for f in ordered_fields(fields) if f.required and not _has_value(submitted.get(f.id))
    ]
    return PrechatResult(ok=not missing, missing_field_ids=missing)


def contact_details(
    fields: Iterable[PrechatField | Mapping[str, Any]] | None,
    submitted: Mapping[str, Any] | None,
) -> dict[str, str]:
    """Pick email/phone/name values out of a submitted form by field type.

    Name is taken from the first text field whose id is ``name`` or
    ``full_name``.
    """
    submitted = submitted or {}
    details: dict[str, str] = {}
    for f in ordered_fields(fields):
        value = submitted.get(f.id)
        if not isinstance(value, str) or not value.strip():
            continue
        value = value.strip()
        if f.type == "email":
            details.setdefault("email", value.lower())
        elif f.type == "phone":
            details.setdefault("phone", value)
        elif f.id in ("name", "full_name"):
            details.setdefault("name", value)
    return details
