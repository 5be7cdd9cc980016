import json
from dataclasses import replace
from pathlib import Path

import pytest
from openpyxl import Workbook
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from registry_sync.core.errors import StoreUnavailableError, WorkbookNotFoundError
from registry_sync.db.session import make_engine
from registry_sync.etl import pipeline
from registry_sync.etl.loader import upsert_patient
from registry_sync.etl.pipeline import run_sync
from registry_sync.models.base import Base
from registry_sync.models.tables import (
    Clinician,
    Patient,
    PostOpOutcome,
    SyncRun,
    TeamAssignment,
    TransplantCase,
)

CLINICIANS = [
    ["CP", "Nombre", "Especialidad"],
    [101, "Juan Perez", "Anestesia"],
    [202, "Maria Gonzalez", "Cirugia"],
]
PATIENTS = [
    ["CI", "Nombre", "Sexo"],
    ["4572863-4", "Ana Silva", "F"],
    ["3282071", "Luis Rodriguez", "M"],
]
CASES = [
    ["CI", "FechaHoraInicio", "FechaHoraFin", "Anestesista 1", "Cirujano 1"],
    ["45728634", "01/03/2024 10:00", "01/03/2024 18:00", "101: Juan Perez", "202: M. Gonzales"],
]
PREOP = [["CI", "Fecha", "MELD"], ["45728634", "20/02/2024", "22"]]
POSTOP = [
    ["CI", "FechaT", "Fecha", "Extubado BQ", "DiasIntSala"],
    ["45728634", "01/03/2024 10:00", "02/03/2024", "si", 5],
]
INTRAOP = [
    ["CI", "FechaT", "Fecha", "FC", "PAm"],
    ["45728634", "01/03/2024 10:00", "01/03/2024 17:30", 80, 65],
]

FULL_WORKBOOK = {
    "Equipo": CLINICIANS,
    "DatosPaciente": PATIENTS,
    "DatosTrasplante": CASES,
    "Preoperatorio": PREOP,
    "PostOp": POSTOP,
    "IntraopCierre": INTRAOP,
}


def _make_session() -> Session:
    engine = make_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)()


def _write_workbook(path: Path, sheets: dict) -> Path:
    wb = Workbook()
    wb.remove(wb.active)
    for name, rows in sheets.items():
        ws = wb.create_sheet(name)
        for row in rows:
            ws.append(row)
    wb.save(path)
    return path


def _snapshot(db: Session) -> dict:
    snapshot = {}
    for table in Base.metadata.sorted_tables:
        if table.name == "sync_runs":
            continue
        stmt = table.select().order_by(*table.primary_key.columns)
        snapshot[table.name] = [tuple(row) for row in db.execute(stmt).all()]
    return snapshot


def _count(db: Session, model) -> int:
    return db.execute(select(func.count()).select_from(model)).scalar_one()


def _counters(result, entity):
    c = result.stats.entities[entity]
    return c.created, c.updated, c.skipped, c.failed


def test_full_run_populates_every_entity(tmp_path):
    db = _make_session()
    path = _write_workbook(tmp_path / "registro.xlsx", FULL_WORKBOOK)

    result = run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    assert result.status == "SUCCESS"
    assert result.error_count == 0
    assert _counters(result, "clinician") == (2, 0, 0, 0)
    assert _counters(result, "patient") == (2, 0, 0, 0)
    assert _counters(result, "case") == (1, 0, 0, 0)
    assert _counters(result, "team") == (2, 0, 0, 0)
    assert _counters(result, "preop") == (1, 0, 0, 0)
    assert _counters(result, "postop") == (1, 0, 0, 0)
    assert _counters(result, "intraop") == (1, 0, 0, 0)

    patient = db.get(Patient, "45728634")
    assert patient.name == "Ana Silva"
    assert patient.ci_raw == "4572863-4"
    assert not patient.ci_suspicious

    case = db.execute(select(TransplantCase)).scalar_one()
    roles = dict(db.execute(select(TeamAssignment.role, TeamAssignment.clinician_id)).all())
    assert roles == {"ANEST1": 101, "CIRUJANO1": 202}
    postop = db.execute(select(PostOpOutcome)).scalar_one()
    assert postop.case_id == case.id
    assert postop.extubated_in_or is True
    assert _count(db, SyncRun) == 1


def test_full_run_is_idempotent(tmp_path):
    db = _make_session()
    path = _write_workbook(tmp_path / "registro.xlsx", FULL_WORKBOOK)

    run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")
    before = _snapshot(db)
    second = run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    assert _snapshot(db) == before
    assert second.stats.totals().created == 0
    assert _counters(second, "patient") == (0, 2, 0, 0)
    # unchanged team assignments are reported as already present
    assert _counters(second, "team") == (0, 0, 2, 0)
    assert _count(db, SyncRun) == 2


def test_case_without_stored_patient_is_a_parent_error(tmp_path):
    db = _make_session()
    path = _write_workbook(tmp_path / "registro.xlsx", {"DatosTrasplante": CASES})

    result = run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    assert result.status == "SUCCESS"
    assert _counters(result, "case") == (0, 0, 0, 1)
    assert _count(db, TransplantCase) == 0
    # the team columns of the failed case row are not reported again
    assert result.error_count == 1
    assert "team" not in result.stats.entities
    case_errors = [e for e in result.stats.errors if e["entity_type"] == "case"]
    assert case_errors == [
        {
            "entity_type": "case",
            "sheet": "DatosTrasplante",
            "row_index": 2,
            "identifier": "45728634",
            "code": "parent_missing",
            "message": "parent does not exist: patient 45728634",
        }
    ]


def test_incremental_skips_unchanged_rows(tmp_path):
    db = _make_session()
    db.add(Patient(id="32820715", name="Luis Rodriguez"))
    db.commit()
    path = _write_workbook(tmp_path / "registro.xlsx", {"DatosPaciente": PATIENTS})

    first = run_sync(db, path, mode="incremental", alias_path=None, log_dir=tmp_path / "logs")
    assert _counters(first, "patient") == (1, 0, 1, 0)
    assert first.stats.entities["patient"].checked == 2

    second = run_sync(db, path, mode="incremental", alias_path=None, log_dir=tmp_path / "logs")
    assert _counters(second, "patient") == (0, 0, 2, 0)
    assert list(second.stats.entities) == ["patient"]


def test_incremental_writes_newer_source_rows(tmp_path):
    db = _make_session()
    rows = [["CI", "Nombre", "lastUpdated"], ["45728634", "Ana Silva", "2024-03-01T09:00:00"]]
    run_sync(
        db,
        _write_workbook(tmp_path / "v1.xlsx", {"DatosPaciente": rows}),
        mode="incremental",
        alias_path=None,
        log_dir=tmp_path / "logs",
    )

    newer = [rows[0], ["45728634", "Ana Silva Diaz", "2024-03-02T09:00:00"]]
    result = run_sync(
        db,
        _write_workbook(tmp_path / "v2.xlsx", {"DatosPaciente": newer}),
        mode="incremental",
        alias_path=None,
        log_dir=tmp_path / "logs",
    )

    assert _counters(result, "patient") == (0, 1, 0, 0)
    db.expire_all()
    assert db.get(Patient, "45728634").name == "Ana Silva Diaz"


def test_bad_rows_do_not_abort_the_batch(tmp_path):
    db = _make_session()
    rows = [PATIENTS[0], PATIENTS[1], ["482910", "Truncated"], PATIENTS[2]]
    path = _write_workbook(tmp_path / "registro.xlsx", {"DatosPaciente": rows})

    result = run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    assert _counters(result, "patient") == (2, 0, 0, 1)
    assert result.error_count == 1
    error = result.stats.errors[0]
    assert error["row_index"] == 3
    assert error["identifier"] == "482910"
    assert error["code"] == "invalid_identifier"
    assert _count(db, Patient) == 2


def test_duplicate_key_in_batch_updates_first_row(tmp_path):
    db = _make_session()
    rows = [PATIENTS[0], ["45728634", "Ana"], ["4.572.863-4", "Ana Silva"]]
    path = _write_workbook(tmp_path / "registro.xlsx", {"DatosPaciente": rows})

    result = run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    assert _counters(result, "patient") == (1, 1, 0, 0)
    assert _count(db, Patient) == 1
    db.expire_all()
    assert db.get(Patient, "45728634").name == "Ana Silva"


def test_unresolved_team_member_is_recorded(tmp_path):
    db = _make_session()
    cases = [CASES[0], ["45728634", "01/03/2024 10:00", None, "999: Nobody Known", None]]
    sheets = {"Equipo": CLINICIANS, "DatosPaciente": PATIENTS, "DatosTrasplante": cases}
    path = _write_workbook(tmp_path / "registro.xlsx", sheets)

    result = run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    assert _counters(result, "case") == (1, 0, 0, 0)
    assert _counters(result, "team") == (0, 0, 0, 1)
    assert result.stats.errors_by_code() == {"clinician_unresolved": 1}


def test_alias_map_resolves_team_member(tmp_path):
    db = _make_session()
    aliases = tmp_path / "clinicians-map.csv"
    aliases.write_text("variant,cp\nDr. Nadie,101\n", encoding="utf-8")
    cases = [CASES[0], ["45728634", "01/03/2024 10:00", None, "999: Dr. Nadie", None]]
    sheets = {"Equipo": CLINICIANS, "DatosPaciente": PATIENTS, "DatosTrasplante": cases}
    path = _write_workbook(tmp_path / "registro.xlsx", sheets)

    result = run_sync(db, path, mode="full", alias_path=aliases, log_dir=tmp_path / "logs")

    assert result.error_count == 0
    assert db.execute(select(TeamAssignment.clinician_id)).scalar_one() == 101


def test_postop_without_case_start_attaches_to_latest_case(tmp_path):
    db = _make_session()
    cases = [
        CASES[0][:3],
        ["45728634", "01/03/2024 10:00", None],
        ["45728634", "01/06/2024 10:00", None],
    ]
    postop = [["CI", "Fecha", "DiasIntSala"], ["45728634", "05/06/2024", 3]]
    sheets = {"DatosPaciente": PATIENTS, "DatosTrasplante": cases, "PostOp": postop}
    path = _write_workbook(tmp_path / "registro.xlsx", sheets)

    result = run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    assert _counters(result, "postop") == (1, 0, 0, 0)
    latest = db.execute(select(TransplantCase).order_by(TransplantCase.start_at.desc())).scalars().first()
    assert db.execute(select(PostOpOutcome.case_id)).scalar_one() == latest.id


def test_audit_log_written_per_run(tmp_path):
    db = _make_session()
    path = _write_workbook(tmp_path / "registro.xlsx", {"DatosPaciente": PATIENTS})
    log_dir = tmp_path / "logs"

    first = run_sync(db, path, mode="full", alias_path=None, log_dir=log_dir)
    second = run_sync(db, path, mode="full", alias_path=None, log_dir=log_dir)

    assert first.audit_path != second.audit_path
    assert len(list(log_dir.glob("sync-full-*.json"))) == 2
    payload = json.loads(Path(first.audit_path).read_text(encoding="utf-8"))
    assert payload["status"] == "SUCCESS"
    assert payload["stats"]["patient"]["created"] == 2
    assert payload["errors"] == []
    assert payload["error_count"] == 0


def test_missing_sheets_are_skipped(tmp_path):
    db = _make_session()
    path = _write_workbook(tmp_path / "registro.xlsx", {"Equipo": CLINICIANS})

    result = run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    assert list(result.stats.entities) == ["clinician"]
    assert result.error_count == 0


def test_missing_workbook_is_fatal(tmp_path):
    db = _make_session()
    with pytest.raises(WorkbookNotFoundError):
        run_sync(db, tmp_path / "absent.xlsx", alias_path=None, log_dir=tmp_path / "logs")
    assert not (tmp_path / "logs").exists()


def test_unknown_mode_is_rejected(tmp_path):
    with pytest.raises(ValueError):
        run_sync(_make_session(), tmp_path / "absent.xlsx", mode="partial")


def test_store_failure_flushes_audit_and_aborts(tmp_path, monkeypatch):
    db = _make_session()
    path = _write_workbook(tmp_path / "registro.xlsx", {"DatosPaciente": PATIENTS})

    def _gone(_db):
        raise OperationalError("SELECT clinicians", {}, Exception("connection refused"))

    monkeypatch.setattr(pipeline, "load_clinician_roster", _gone)

    with pytest.raises(StoreUnavailableError):
        run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    (audit,) = (tmp_path / "logs").glob("sync-full-*.json")
    payload = json.loads(audit.read_text(encoding="utf-8"))
    assert payload["status"] == "ABORTED"
    assert "connection refused" in payload["fatal_error"]


def test_failed_case_row_is_reported_once(tmp_path):
    db = _make_session()
    cases = [["CI", "FechaHoraInicio", "Anestesista 1"], ["482910", "01/03/2024 10:00", "101: Juan Perez"]]
    sheets = {"Equipo": CLINICIANS, "DatosPaciente": PATIENTS, "DatosTrasplante": cases}
    path = _write_workbook(tmp_path / "registro.xlsx", sheets)

    result = run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    assert [(e["entity_type"], e["code"]) for e in result.stats.errors] == [("case", "invalid_identifier")]
    assert result.error_count == 1
    assert "team" not in result.stats.entities


def test_case_row_without_team_columns_yields_no_team_rows(tmp_path):
    db = _make_session()
    cases = [["CI", "FechaHoraInicio"], ["45728634", "01/03/2024 10:00"]]
    path = _write_workbook(tmp_path / "registro.xlsx", {"DatosPaciente": PATIENTS, "DatosTrasplante": cases})

    result = run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")

    assert _counters(result, "case") == (1, 0, 0, 0)
    assert "team" not in result.stats.entities
    assert result.error_count == 0


def test_store_failure_mid_group_reports_only_committed_writes(tmp_path, monkeypatch):
    db = _make_session()
    path = _write_workbook(tmp_path / "registro.xlsx", {"Equipo": CLINICIANS, "DatosPaciente": PATIENTS})
    calls = []

    def _flaky_upsert(session, row):
        calls.append(row["id"])
        if len(calls) == 2:
            raise OperationalError("INSERT INTO patients", {}, Exception("server closed the connection"))
        return upsert_patient(session, row)

    groups = tuple(
        replace(group, upserter=_flaky_upsert) if group.entity_type == "patient" else group
        for group in pipeline.ENTITY_GROUPS
    )
    monkeypatch.setattr(pipeline, "ENTITY_GROUPS", groups)

    with pytest.raises(StoreUnavailableError):
        run_sync(db, path, mode="full", alias_path=None, log_dir=tmp_path / "logs")
    db.rollback()

    (audit,) = (tmp_path / "logs").glob("sync-full-*.json")
    payload = json.loads(audit.read_text(encoding="utf-8"))
    assert payload["status"] == "ABORTED"
    assert payload["stats"]["clinician"]["created"] == 2
    assert payload["stats"]["patient"]["checked"] == 2
    assert payload["stats"]["patient"]["created"] == 0
    assert payload["uncommitted"] == {"patient": 1}
    assert _count(db, Clinician) == 2
    assert _count(db, Patient) == 0
