"""Cell value coercion.

Every function here is total: unparseable input yields ``None`` (or the documented
default), never an exception.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timedelta, timezone
from difflib import SequenceMatcher
from typing import Iterable, NamedTuple
from zoneinfo import ZoneInfo

from registry_sync.core.config import NAME_MATCH_THRESHOLD, SOURCE_TIMEZONE

DATE_FORMATS = (
    "%d/%m/%Y",
    "%d/%m/%y",
    "%Y-%m-%d",
)
TIME_SUFFIXES = ("", " %H:%M", " %H:%M:%S")
ISO_FORMATS = ("%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M")

TRUE_TOKENS = {"si", "sí", "yes", "1", "true"}
FALSE_TOKENS = {"no", "0", "false"}

# Excel serial dates count days from 1899-12-30
_EXCEL_EPOCH = datetime(1899, 12, 30)
_EXCEL_MAX_SERIAL = 2958465

_PERSON_REF = re.compile(r"^\s*(\d+)\s*:\s*(\S.*?)\s*$")


class PersonRef(NamedTuple):
    code: int
    name: str


def _is_blank(value) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and not value.strip():
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def empty_to_none(value):
    if _is_blank(value):
        return None
    if isinstance(value, str):
        return value.strip()
    return value


def _zone(tz) -> ZoneInfo:
    if isinstance(tz, ZoneInfo):
        return tz
    return ZoneInfo(tz or SOURCE_TIMEZONE)


def _localize(wall_clock: datetime, tz) -> datetime:
    if wall_clock.tzinfo is not None:
        return wall_clock.astimezone(timezone.utc)
    return wall_clock.replace(tzinfo=_zone(tz)).astimezone(timezone.utc)


def _patterns() -> Iterable[str]:
    for fmt in DATE_FORMATS:
        for suffix in TIME_SUFFIXES:
            yield fmt + suffix
    yield from ISO_FORMATS


def parse_date(value, tz=None) -> datetime | None:
    """Parse a cell into an aware UTC datetime.

    Strings are matched against a fixed, ordered list of day/month/year and ISO
    patterns; the first match is read as wall-clock time in the source time zone.
    Anything else is tried as ISO-8601, keeping its offset when it carries one.
    """
    if _is_blank(value) or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return _localize(value, tz)
    if isinstance(value, date):
        return _localize(datetime.combine(value, time()), tz)
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or not 0 < value <= _EXCEL_MAX_SERIAL:
            return None
        return _localize(_EXCEL_EPOCH + timedelta(days=float(value)), tz)

    text = str(value).strip()
    for fmt in _patterns():
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return _localize(parsed, tz)
    # full ISO-8601 with fractional seconds, an offset or a trailing Z
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return _localize(parsed, tz)


def parse_bool(value) -> bool | None:
    if isinstance(value, bool):
        return value
    if _is_blank(value):
        return None
    if isinstance(value, (int, float)):
        text = str(int(value)) if float(value).is_integer() else str(value)
    else:
        text = str(value).strip().lower()
    if text in TRUE_TOKENS:
        return True
    if text in FALSE_TOKENS:
        return False
    return None


def parse_person_ref(value) -> PersonRef | None:
    if _is_blank(value):
        return None
    match = _PERSON_REF.match(str(value))
    if not match:
        return None
    return PersonRef(code=int(match.group(1)), name=match.group(2))


def _to_number(value) -> float | None:
    if _is_blank(value) or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip().replace(",", ".")) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def safe_float(value) -> float | None:
    return _to_number(value)


def safe_int(value) -> int | None:
    number = _to_number(value)
    if number is None:
        return None
    return int(number)


def _normalize_name(name: str) -> str:
    return " ".join(name.lower().split())


def similarity(a: str, b: str) -> float:
    return SequenceMatcher(None, _normalize_name(a), _normalize_name(b)).ratio()


def match_name(name, candidates: Iterable[dict], threshold: float = NAME_MATCH_THRESHOLD):
    """Return the id of the candidate whose name is closest to ``name``.

    ``candidates`` are ``{"id": ..., "name": ...}`` records. The best candidate is
    returned only when its score reaches ``threshold``.
    """
    if _is_blank(name):
        return None
    best_id = None
    best_score = -1.0
    for candidate in candidates:
        candidate_name = candidate.get("name")
        if not candidate_name:
            continue
        score = similarity(str(name), str(candidate_name))
        if score > best_score:
            best_id, best_score = candidate.get("id"), score
    if best_score >= threshold:
        return best_id
    return None
