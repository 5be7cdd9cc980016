from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from registry_sync.models.base import Base


class Clinician(Base):
    __tablename__ = "clinicians"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)  # CP
    name: Mapped[str] = mapped_column(String, nullable=False)
    specialty: Mapped[str | None] = mapped_column(String, nullable=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Patient(Base):
    __tablename__ = "patients"
    id: Mapped[str] = mapped_column(String(8), primary_key=True)  # normalized CI
    # provenance of the identifier correction
    ci_raw: Mapped[str | None] = mapped_column(String, nullable=True)
    ci_suspicious: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ci_reason: Mapped[str | None] = mapped_column(String, nullable=True)

    name: Mapped[str] = mapped_column(String, nullable=False)
    fnr: Mapped[str | None] = mapped_column(String, nullable=True)
    birth_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sex: Mapped[str | None] = mapped_column(String, nullable=True)
    provider: Mapped[str | None] = mapped_column(String, nullable=True)
    height: Mapped[float | None] = mapped_column(Float, nullable=True)
    weight: Mapped[float | None] = mapped_column(Float, nullable=True)
    blood_group: Mapped[str | None] = mapped_column(String, nullable=True)
    admission_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    transplanted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    cases: Mapped[list["TransplantCase"]] = relationship(back_populates="patient")


class TransplantCase(Base):
    __tablename__ = "transplant_cases"
    __table_args__ = (UniqueConstraint("patient_id", "start_at", name="uq_case_patient_start"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(8), ForeignKey("patients.id"), index=True)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_retransplant: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_hepato_renal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    optimal_donor: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    provenance: Mapped[str | None] = mapped_column(String, nullable=True)
    cold_ischemia_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    warm_ischemia_time: Mapped[int | None] = mapped_column(Integer, nullable=True)
    icu_transfer_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    patient: Mapped[Patient] = relationship(back_populates="cases")


class TeamAssignment(Base):
    __tablename__ = "team_assignments"
    __table_args__ = (UniqueConstraint("case_id", "role", name="uq_team_case_role"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("transplant_cases.id"), index=True)
    clinician_id: Mapped[int] = mapped_column(ForeignKey("clinicians.id"), index=True)
    role: Mapped[str] = mapped_column(String, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PreopEvaluation(Base):
    __tablename__ = "preop_evaluations"
    __table_args__ = (UniqueConstraint("patient_id", "evaluation_date", name="uq_preop_patient_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    patient_id: Mapped[str] = mapped_column(String(8), ForeignKey("patients.id"), index=True)
    evaluation_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    meld: Mapped[int | None] = mapped_column(Integer, nullable=True)
    meld_na: Mapped[int | None] = mapped_column(Integer, nullable=True)
    child: Mapped[str | None] = mapped_column(String, nullable=True)
    etiology1: Mapped[str | None] = mapped_column(String, nullable=True)
    etiology2: Mapped[str | None] = mapped_column(String, nullable=True)
    is_fulminant: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    observations: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class PostOpOutcome(Base):
    __tablename__ = "postop_outcomes"
    __table_args__ = (UniqueConstraint("case_id", "evaluation_date", name="uq_postop_case_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("transplant_cases.id"), index=True)
    evaluation_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    extubated_in_or: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    mech_vent_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reintubation_24h: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    reoperation: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    primary_graft_failure: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    acute_renal_failure: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    apache_initial: Mapped[float | None] = mapped_column(Float, nullable=True)
    icu_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ward_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    discharge_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class IntraopRecord(Base):
    __tablename__ = "intraop_records"
    __table_args__ = (
        UniqueConstraint("case_id", "phase", "timestamp", name="uq_intraop_case_phase_ts"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    case_id: Mapped[int] = mapped_column(ForeignKey("transplant_cases.id"), index=True)
    phase: Mapped[str] = mapped_column(String, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    heart_rate: Mapped[float | None] = mapped_column(Float, nullable=True)
    pas: Mapped[float | None] = mapped_column(Float, nullable=True)
    pad: Mapped[float | None] = mapped_column(Float, nullable=True)
    pam: Mapped[float | None] = mapped_column(Float, nullable=True)
    cvp: Mapped[float | None] = mapped_column(Float, nullable=True)
    sat_o2: Mapped[float | None] = mapped_column(Float, nullable=True)
    temp: Mapped[float | None] = mapped_column(Float, nullable=True)
    hb: Mapped[float | None] = mapped_column(Float, nullable=True)
    lactate: Mapped[float | None] = mapped_column(Float, nullable=True)
    glucose: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class SyncRun(Base):
    __tablename__ = "sync_runs"
    id: Mapped[int] = mapped_column(primary_key=True)
    run_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    mode: Mapped[str] = mapped_column(String, index=True)
    started_at: Mapped[str] = mapped_column(String)
    finished_at: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="SUCCESS")  # SUCCESS/ABORTED
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    audit_path: Mapped[str | None] = mapped_column(String, nullable=True)
    details: Mapped[dict] = mapped_column(JSON, default=dict)
