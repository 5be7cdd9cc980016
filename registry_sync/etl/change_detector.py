"""Decide whether a source row has to be written, and derive its identity key."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import NamedTuple

SALIENT_FIELDS: dict[str, tuple[str, ...]] = {
    "clinician": ("name",),
    "patient": ("name",),
    "case": ("end_at",),
    "team": ("clinician_id",),
    "preop": ("meld",),
    "postop": ("extubated_in_or", "ward_days"),
    "intraop": ("heart_rate", "pam", "cvp"),
}


class ChangeDecision(NamedTuple):
    needs_update: bool
    is_new: bool


def _get(entity, field: str):
    if isinstance(entity, dict):
        return entity.get(field)
    return getattr(entity, field, None)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes that were stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _comparable(value):
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        return value.strip()
    return value


def salient_fields_differ(entity_type: str, source_row: dict, existing) -> bool:
    for field in SALIENT_FIELDS.get(entity_type, ()):
        if _comparable(source_row.get(field)) != _comparable(_get(existing, field)):
            return True
    return False


def needs_write(entity_type: str, source_row: dict, existing) -> ChangeDecision:
    if existing is None:
        return ChangeDecision(True, True)

    source_updated = source_row.get("updated_at")
    existing_updated = _get(existing, "updated_at")
    if isinstance(source_updated, datetime) and isinstance(existing_updated, datetime):
        return ChangeDecision(_as_utc(source_updated) > _as_utc(existing_updated), False)

    if entity_type not in SALIENT_FIELDS:
        return ChangeDecision(True, False)
    return ChangeDecision(salient_fields_differ(entity_type, source_row, existing), False)


def _stamp(value) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")
    return str(value)


def _join(prefix: str, *parts) -> str | None:
    stamped = [_stamp(p) for p in parts]
    if any(p is None for p in stamped):
        return None
    return ":".join([prefix, *stamped])


def build_record_key(entity_type: str, row: dict) -> str | None:
    """Deterministic identity of a row, also for entities with no natural key.

    Postop and intraop rows without an explicit case start key on ``latest``,
    matching how their parent case is resolved.
    """
    ci = row.get("patient_id")
    if entity_type == "clinician":
        return _join("clinician", row.get("id"))
    if entity_type == "patient":
        return _join("patient", row.get("id"))
    if entity_type == "case":
        return _join("case", ci, row.get("start_at"))
    if entity_type == "team":
        return _join("team", ci, row.get("case_start"), row.get("role"))
    if entity_type == "preop":
        return _join("preop", ci, row.get("evaluation_date"))
    if entity_type == "postop":
        return _join("postop", ci, row.get("case_start") or "latest", row.get("evaluation_date"))
    if entity_type == "intraop":
        return _join(
            "intraop", ci, row.get("case_start") or "latest", row.get("timestamp"), row.get("phase")
        )
    return None
