from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable
from uuid import uuid4

from pydantic import ValidationError
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.orm import Session
from structlog.contextvars import bound_contextvars

from registry_sync.core.config import CLINICIAN_ALIAS_PATH, SYNC_LOG_DIR
from registry_sync.core.errors import (
    ClinicianUnresolvedError,
    ParentMissingError,
    RowError,
    StoreUnavailableError,
)
from registry_sync.core.logging import log
from registry_sync.etl.change_detector import build_record_key, needs_write
from registry_sync.etl.coerce import PersonRef
from registry_sync.etl.exporter import write_audit_log
from registry_sync.etl.loader import (
    WriteOutcome,
    find_case,
    find_clinician,
    find_intraop,
    find_parent_case,
    find_patient,
    find_postop,
    find_preop,
    find_team_assignment,
    load_clinician_roster,
    patient_exists,
    upsert_case,
    upsert_clinician,
    upsert_intraop,
    upsert_patient,
    upsert_postop,
    upsert_preop,
    upsert_team_assignment,
)
from registry_sync.etl.stats import SyncStats
from registry_sync.etl.transform import (
    case_to_row,
    clinician_to_row,
    intraop_to_row,
    patient_to_row,
    postop_to_row,
    preop_to_row,
    team_rows_from_case,
)
from registry_sync.etl.workbook import (
    CASE_SHEET,
    CLINICIAN_SHEET,
    INTRAOP_PHASES,
    PATIENT_SHEET,
    POSTOP_SHEET,
    PREOP_SHEET,
    ROW_INDEX,
    read_workbook,
)
from registry_sync.identity.clinicians import ClinicianResolver, load_alias_map
from registry_sync.models.tables import SyncRun

FULL = "full"
INCREMENTAL = "incremental"
MODES = (FULL, INCREMENTAL)

# failures that mean the store itself is gone; these abort the run
FATAL_STORE_ERRORS = (OperationalError, DisconnectionError)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class SyncContext:
    db: Session
    mode: str
    resolver: ClinicianResolver


@dataclass(frozen=True)
class EntityGroup:
    entity_type: str
    sheets: tuple[str, ...]
    transformer: Callable[[dict, str], list[dict]]
    finder: Callable[[Session, dict], object]
    upserter: Callable[[Session, dict], WriteOutcome]
    attach_parents: Callable[[SyncContext, dict], None] | None = None
    after_write: Callable[[SyncContext, dict], None] | None = None


@dataclass
class SyncResult:
    run_id: str
    mode: str
    status: str
    stats: SyncStats
    audit_path: str | None

    @property
    def error_count(self) -> int:
        return self.stats.error_count

    def to_dict(self) -> dict:
        totals = self.stats.totals()
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "status": self.status,
            "stats": self.stats.summary(),
            "rows_checked": totals.checked,
            "error_count": self.error_count,
            "errors_by_code": self.stats.errors_by_code(),
            "audit_path": self.audit_path,
        }


def _require_patient(ctx: SyncContext, row: dict) -> None:
    if not patient_exists(ctx.db, row["patient_id"]):
        raise ParentMissingError("patient", row["patient_id"], identifier=row["patient_id"])


def _require_case(ctx: SyncContext, row: dict) -> None:
    _require_patient(ctx, row)
    case_start = row.get("case_start")
    case = find_parent_case(ctx.db, row["patient_id"], case_start)
    if case is None:
        where = case_start.isoformat() if case_start else "latest"
        raise ParentMissingError("case", f"{row['patient_id']}@{where}", identifier=row["patient_id"])
    row["case_id"] = case.id


def _resolve_team_member(ctx: SyncContext, row: dict) -> None:
    _require_case(ctx, row)
    ref = PersonRef(row["clinician_code"], row["clinician_name"])
    clinician_id = ctx.resolver.resolve(ref)
    if clinician_id is None:
        raise ClinicianUnresolvedError(
            f"no clinician matches {ref.code}: {ref.name}", identifier=row["patient_id"]
        )
    if find_clinician(ctx.db, {"id": clinician_id}) is None:
        raise ParentMissingError("clinician", clinician_id, identifier=row["patient_id"])
    row["clinician_id"] = clinician_id


def _canonical_clinician(ctx: SyncContext, row: dict) -> None:
    row["id"] = ctx.resolver.canonical_code(row["name"], row["id"])


def _remember_clinician(ctx: SyncContext, row: dict) -> None:
    ctx.resolver.remember(row["id"], row["name"])


def _clinician_rows(raw: dict, sheet: str) -> list[dict]:
    return [clinician_to_row(raw)]


def _patient_rows(raw: dict, sheet: str) -> list[dict]:
    return [patient_to_row(raw)]


def _case_rows(raw: dict, sheet: str) -> list[dict]:
    return [case_to_row(raw)]


def _team_rows(raw: dict, sheet: str) -> list[dict]:
    return team_rows_from_case(raw)


def _preop_rows(raw: dict, sheet: str) -> list[dict]:
    return [preop_to_row(raw)]


def _postop_rows(raw: dict, sheet: str) -> list[dict]:
    return [postop_to_row(raw)]


def _intraop_rows(raw: dict, sheet: str) -> list[dict]:
    return [intraop_to_row(raw, INTRAOP_PHASES[sheet])]


# parents before children
ENTITY_GROUPS = (
    EntityGroup(
        "clinician",
        (CLINICIAN_SHEET,),
        _clinician_rows,
        find_clinician,
        upsert_clinician,
        attach_parents=_canonical_clinician,
        after_write=_remember_clinician,
    ),
    EntityGroup("patient", (PATIENT_SHEET,), _patient_rows, find_patient, upsert_patient),
    EntityGroup("case", (CASE_SHEET,), _case_rows, find_case, upsert_case, attach_parents=_require_patient),
    EntityGroup(
        "team",
        (CASE_SHEET,),
        _team_rows,
        find_team_assignment,
        upsert_team_assignment,
        attach_parents=_resolve_team_member,
    ),
    EntityGroup("preop", (PREOP_SHEET,), _preop_rows, find_preop, upsert_preop, attach_parents=_require_patient),
    EntityGroup("postop", (POSTOP_SHEET,), _postop_rows, find_postop, upsert_postop, attach_parents=_require_case),
    EntityGroup(
        "intraop",
        tuple(INTRAOP_PHASES),
        _intraop_rows,
        find_intraop,
        upsert_intraop,
        attach_parents=_require_case,
    ),
)


def _error_code(exc: Exception) -> str:
    if isinstance(exc, RowError):
        return exc.code
    if isinstance(exc, ValidationError):
        return "validation_failed"
    if isinstance(exc, IntegrityError):
        return "store_constraint"
    return "unknown"


def _record_failure(
    stats: SyncStats,
    entity_type: str,
    sheet: str,
    row_index,
    identifier,
    exc: Exception,
) -> SyncStats:
    if isinstance(exc, RowError) and exc.identifier is not None:
        identifier = exc.identifier
    code = _error_code(exc)
    message = exc.message if isinstance(exc, RowError) else str(exc)
    log.warning(
        "row_failed",
        entity_type=entity_type,
        sheet=sheet,
        row_index=row_index,
        identifier=identifier,
        code=code,
        error=message,
    )
    stats.record_error(entity_type, sheet, row_index, identifier, code, message[:1000])
    return stats


def _sync_entity_row(
    ctx: SyncContext,
    group: EntityGroup,
    sheet: str,
    row_index,
    row: dict,
    stats: SyncStats,
) -> SyncStats:
    entity_type = group.entity_type
    counters = stats.counters(entity_type)
    counters.checked += 1

    try:
        with ctx.db.begin_nested():
            if group.attach_parents:
                group.attach_parents(ctx, row)
            key = build_record_key(entity_type, row)
            duplicate = key is not None and key in stats.seen(entity_type)
            existing = group.finder(ctx.db, row)

            if ctx.mode == INCREMENTAL:
                decision = needs_write(entity_type, row, existing)
                if not decision.needs_update:
                    counters.skipped += 1
                    if key:
                        stats.seen(entity_type).add(key)
                    return stats

            outcome = group.upserter(ctx.db, row)
    except FATAL_STORE_ERRORS:
        raise
    except Exception as exc:
        return _record_failure(stats, entity_type, sheet, row_index, row.get("patient_id") or row.get("id"), exc)

    if duplicate:
        log.debug("duplicate_key_in_batch", entity_type=entity_type, key=key, row_index=row_index)
    if outcome is WriteOutcome.ALREADY_EXISTS:
        counters.skipped += 1
    elif existing is None and not duplicate:
        counters.created += 1
    else:
        counters.updated += 1
    if key:
        stats.seen(entity_type).add(key)
    if group.after_write:
        group.after_write(ctx, row)
    return stats


def _sync_source_row(ctx: SyncContext, group: EntityGroup, sheet: str, raw: dict, stats: SyncStats) -> SyncStats:
    row_index = raw.get(ROW_INDEX)
    if stats.row_failed(sheet, row_index):
        # already reported by an earlier group reading the same sheet
        log.debug("row_already_failed", entity_type=group.entity_type, sheet=sheet, row_index=row_index)
        return stats
    try:
        rows = group.transformer(raw, sheet)
    except Exception as exc:
        stats.counters(group.entity_type).checked += 1
        return _record_failure(stats, group.entity_type, sheet, row_index, raw.get("CI") or raw.get("CP"), exc)

    for row in rows:
        stats = _sync_entity_row(ctx, group, sheet, row_index, row, stats)
    return stats


def _sync_group(ctx: SyncContext, group: EntityGroup, sheets: dict[str, list[dict]], stats: SyncStats) -> SyncStats:
    present = []
    for sheet in group.sheets:
        if sheet in sheets:
            present.append(sheet)
        else:
            log.warning("sheet_missing", entity_type=group.entity_type, sheet=sheet)
    if not present:
        return stats

    for sheet in present:
        for raw in sheets[sheet]:
            stats = _sync_source_row(ctx, group, sheet, raw, stats)
    ctx.db.commit()
    stats.mark_committed()

    counters = stats.counters(group.entity_type)
    log.info(
        "group_synced",
        entity_type=group.entity_type,
        checked=counters.checked,
        created=counters.created,
        updated=counters.updated,
        skipped=counters.skipped,
        failed=counters.failed,
    )
    return stats


def _audit_payload(stats: SyncStats, status: str, workbook_path, error: str | None = None) -> dict:
    payload = {
        "run_id": stats.run_id,
        "mode": stats.mode,
        "status": status,
        "started_at": stats.started_at,
        "finished_at": _utc_now_iso(),
        "workbook": str(workbook_path),
        "stats": stats.summary(),
        "error_count": stats.error_count,
        "errors_by_code": stats.errors_by_code(),
        "errors": stats.errors,
    }
    if stats.uncommitted:
        payload["uncommitted"] = stats.uncommitted
    if error:
        payload["fatal_error"] = error
    return payload


def _record_run(db: Session, payload: dict, audit_path: str) -> None:
    db.add(
        SyncRun(
            run_id=payload["run_id"],
            mode=payload["mode"],
            started_at=payload["started_at"],
            finished_at=payload["finished_at"],
            status=payload["status"],
            error_count=payload["error_count"],
            audit_path=audit_path,
            details={"stats": payload["stats"], "errors_by_code": payload["errors_by_code"]},
        )
    )
    db.commit()


def run_sync(
    db: Session,
    workbook_path: str | Path,
    mode: str = FULL,
    alias_path: str | Path | None = CLINICIAN_ALIAS_PATH,
    log_dir: str | Path = SYNC_LOG_DIR,
) -> SyncResult:
    """Synchronize the workbook into the store.

    Row-level failures are recorded and never interrupt the run. A missing workbook
    raises ``WorkbookNotFoundError`` before anything is written; a store failure
    mid-run flushes the audit log and raises ``StoreUnavailableError``.
    """
    if mode not in MODES:
        raise ValueError(f"unknown sync mode {mode!r}; expected one of {MODES}")

    sheets = read_workbook(workbook_path)
    stats = SyncStats(run_id=uuid4().hex, mode=mode, started_at=_utc_now_iso())

    with bound_contextvars(run_id=stats.run_id, mode=mode):
        log.info("sync_started", workbook=str(workbook_path), sheets=sorted(sheets))
        try:
            resolver = ClinicianResolver(aliases=load_alias_map(alias_path), roster=load_clinician_roster(db))
            ctx = SyncContext(db=db, mode=mode, resolver=resolver)
            for group in ENTITY_GROUPS:
                stats = _sync_group(ctx, group, sheets, stats)
        except FATAL_STORE_ERRORS as exc:
            uncommitted = stats.discard_uncommitted()
            payload = _audit_payload(stats, "ABORTED", workbook_path, error=str(exc))
            path = write_audit_log(str(log_dir), mode, payload)
            log.error(
                "sync_aborted",
                error=str(exc),
                audit_path=path,
                error_count=stats.error_count,
                uncommitted=uncommitted,
            )
            raise StoreUnavailableError(f"Store failed during sync: {exc}") from exc

        payload = _audit_payload(stats, "SUCCESS", workbook_path)
        path = write_audit_log(str(log_dir), mode, payload)
        try:
            _record_run(db, payload, path)
        except FATAL_STORE_ERRORS as exc:
            raise StoreUnavailableError(f"Store failed while recording the run: {exc}") from exc

        totals = stats.totals()
        log.info(
            "sync_finished",
            checked=totals.checked,
            created=totals.created,
            updated=totals.updated,
            skipped=totals.skipped,
            error_count=stats.error_count,
            audit_path=path,
        )
    return SyncResult(run_id=stats.run_id, mode=mode, status="SUCCESS", stats=stats, audit_path=path)
