import json
import os
from datetime import date, datetime, timezone


def _json_default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, set):
        return sorted(value)
    return str(value)


def audit_path(base: str, mode: str) -> str:
    """Fresh file name for a run's audit log; existing files are never reused."""
    os.makedirs(base, exist_ok=True)
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
    name = f"sync-{mode}-{timestamp}"
    path = os.path.join(base, f"{name}.json")
    suffix = 1
    while os.path.exists(path):
        path = os.path.join(base, f"{name}-{suffix}.json")
        suffix += 1
    return path


def write_audit_log(base: str, mode: str, payload: dict) -> str:
    path = audit_path(base, mode)
    # "x" refuses to clobber a file created between the name check and the write
    with open(path, "x", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2, default=_json_default)
        handle.write("\n")
    return path
