from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class _Row(BaseModel):
    model_config = ConfigDict(extra="forbid")

    updated_at: datetime | None = None


class ClinicianRow(_Row):
    id: int = Field(gt=0)
    name: str = Field(min_length=1)
    specialty: str | None = None
    email: str | None = None
    phone: str | None = None


class PatientRow(_Row):
    id: str = Field(min_length=8, max_length=8, pattern=r"^\d{8}$")
    ci_raw: str | None = None
    ci_suspicious: bool = False
    ci_reason: str | None = None
    name: str = Field(min_length=1)
    fnr: str | None = None
    birth_date: datetime | None = None
    sex: str | None = None
    provider: str | None = None
    height: float | None = None
    weight: float | None = None
    blood_group: str | None = None
    admission_date: datetime | None = None
    transplanted: bool = False
    observations: str | None = None


class CaseRow(_Row):
    patient_id: str
    start_at: datetime
    end_at: datetime | None = None
    duration: int | None = None
    is_retransplant: bool = False
    is_hepato_renal: bool = False
    optimal_donor: bool | None = None
    provenance: str | None = None
    cold_ischemia_time: int | None = None
    warm_ischemia_time: int | None = None
    icu_transfer_date: datetime | None = None
    observations: str | None = None


class TeamRow(_Row):
    patient_id: str
    case_start: datetime
    role: str
    clinician_code: int
    clinician_name: str


class PreopRow(_Row):
    patient_id: str
    evaluation_date: datetime
    meld: int | None = None
    meld_na: int | None = None
    child: str | None = None
    etiology1: str | None = None
    etiology2: str | None = None
    is_fulminant: bool = False
    observations: str | None = None


class PostopRow(_Row):
    patient_id: str
    case_start: datetime | None = None
    evaluation_date: datetime
    extubated_in_or: bool | None = None
    mech_vent_hours: int | None = None
    reintubation_24h: bool | None = None
    reoperation: bool | None = None
    primary_graft_failure: bool | None = None
    acute_renal_failure: bool | None = None
    apache_initial: float | None = None
    icu_days: int | None = None
    ward_days: int | None = None
    discharge_date: datetime | None = None


class IntraopRow(_Row):
    patient_id: str
    case_start: datetime | None = None
    phase: str
    timestamp: datetime
    heart_rate: float | None = None
    pas: float | None = None
    pad: float | None = None
    pam: float | None = None
    cvp: float | None = None
    sat_o2: float | None = None
    temp: float | None = None
    hb: float | None = None
    lactate: float | None = None
    glucose: float | None = None


ROW_SCHEMAS = {
    "clinician": ClinicianRow,
    "patient": PatientRow,
    "case": CaseRow,
    "team": TeamRow,
    "preop": PreopRow,
    "postop": PostopRow,
    "intraop": IntraopRow,
}


def validate_row(entity_type: str, row: dict) -> dict:
    obj = ROW_SCHEMAS[entity_type].model_validate(row)
    return obj.model_dump()
