from __future__ import annotations

from enum import Enum

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from registry_sync.models.tables import (
    Clinician,
    IntraopRecord,
    Patient,
    PostOpOutcome,
    PreopEvaluation,
    TeamAssignment,
    TransplantCase,
)


class WriteOutcome(str, Enum):
    WRITTEN = "written"
    ALREADY_EXISTS = "already_exists"


CONFLICT_KEYS = {
    Clinician: ("id",),
    Patient: ("id",),
    TransplantCase: ("patient_id", "start_at"),
    TeamAssignment: ("case_id", "role"),
    PreopEvaluation: ("patient_id", "evaluation_date"),
    PostOpOutcome: ("case_id", "evaluation_date"),
    IntraopRecord: ("case_id", "phase", "timestamp"),
}

# never overwritten by an upsert
_INSERT_ONLY = {"id", "created_at"}


def _insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model)
    if dialect == "sqlite":
        return sqlite.insert(model)
    raise NotImplementedError(f"upsert not supported for dialect {dialect}")


def _columns(model, row: dict) -> dict:
    names = {col.name for col in model.__table__.columns}
    return {key: value for key, value in row.items() if key in names}


def upsert(db: Session, model, row: dict) -> WriteOutcome:
    values = _columns(model, row)
    keys = CONFLICT_KEYS[model]
    stmt = _insert(db, model).values(values)
    stmt = stmt.on_conflict_do_update(
        index_elements=list(keys),
        set_={
            name: getattr(stmt.excluded, name)
            for name in values
            if name not in keys and name not in _INSERT_ONLY
        },
    )
    db.execute(stmt)
    return WriteOutcome.WRITTEN


def upsert_clinician(db: Session, row: dict) -> WriteOutcome:
    return upsert(db, Clinician, row)


def upsert_patient(db: Session, row: dict) -> WriteOutcome:
    return upsert(db, Patient, row)


def upsert_case(db: Session, row: dict) -> WriteOutcome:
    return upsert(db, TransplantCase, row)


def upsert_preop(db: Session, row: dict) -> WriteOutcome:
    return upsert(db, PreopEvaluation, row)


def upsert_postop(db: Session, row: dict) -> WriteOutcome:
    return upsert(db, PostOpOutcome, row)


def upsert_intraop(db: Session, row: dict) -> WriteOutcome:
    return upsert(db, IntraopRecord, row)


def upsert_team_assignment(db: Session, row: dict) -> WriteOutcome:
    """Assign a clinician to a case role.

    An identical assignment already stored is reported as ``ALREADY_EXISTS`` instead
    of being rewritten; a different clinician for the same role replaces it.
    """
    values = _columns(TeamAssignment, row)
    stmt = _insert(db, TeamAssignment).values(values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["case_id", "role"],
        set_={"clinician_id": stmt.excluded.clinician_id, "updated_at": stmt.excluded.updated_at},
        where=TeamAssignment.clinician_id != stmt.excluded.clinician_id,
    )
    result = db.execute(stmt)
    if not result.rowcount:
        return WriteOutcome.ALREADY_EXISTS
    return WriteOutcome.WRITTEN


def _first(db: Session, stmt):
    return db.execute(stmt.execution_options(populate_existing=True)).scalars().first()


def find_clinician(db: Session, row: dict) -> Clinician | None:
    return _first(db, select(Clinician).where(Clinician.id == row["id"]))


def find_patient(db: Session, row: dict) -> Patient | None:
    return _first(db, select(Patient).where(Patient.id == row["id"]))


def patient_exists(db: Session, patient_id: str) -> bool:
    return db.execute(select(Patient.id).where(Patient.id == patient_id)).first() is not None


def find_case(db: Session, row: dict) -> TransplantCase | None:
    return _first(
        db,
        select(TransplantCase).where(
            TransplantCase.patient_id == row["patient_id"],
            TransplantCase.start_at == row["start_at"],
        ),
    )


def find_parent_case(db: Session, patient_id: str, case_start=None) -> TransplantCase | None:
    """Case matching ``case_start``, or the patient's most recent case."""
    stmt = select(TransplantCase).where(TransplantCase.patient_id == patient_id)
    if case_start is not None:
        stmt = stmt.where(TransplantCase.start_at == case_start)
    return _first(db, stmt.order_by(TransplantCase.start_at.desc()))


def find_team_assignment(db: Session, row: dict) -> TeamAssignment | None:
    return _first(
        db,
        select(TeamAssignment).where(
            TeamAssignment.case_id == row["case_id"],
            TeamAssignment.role == row["role"],
        ),
    )


def find_preop(db: Session, row: dict) -> PreopEvaluation | None:
    return _first(
        db,
        select(PreopEvaluation).where(
            PreopEvaluation.patient_id == row["patient_id"],
            PreopEvaluation.evaluation_date == row["evaluation_date"],
        ),
    )


def find_postop(db: Session, row: dict) -> PostOpOutcome | None:
    return _first(
        db,
        select(PostOpOutcome).where(
            PostOpOutcome.case_id == row["case_id"],
            PostOpOutcome.evaluation_date == row["evaluation_date"],
        ),
    )


def find_intraop(db: Session, row: dict) -> IntraopRecord | None:
    return _first(
        db,
        select(IntraopRecord).where(
            IntraopRecord.case_id == row["case_id"],
            IntraopRecord.phase == row["phase"],
            IntraopRecord.timestamp == row["timestamp"],
        ),
    )


def load_clinician_roster(db: Session) -> list[dict]:
    return [{"id": cid, "name": name} for cid, name in db.execute(select(Clinician.id, Clinician.name)).all()]
