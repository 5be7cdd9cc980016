from __future__ import annotations

from registry_sync.core.errors import InvalidIdentifierError, MissingFieldError
from registry_sync.core.logging import log
from registry_sync.etl.coerce import (
    empty_to_none,
    parse_bool,
    parse_date,
    parse_person_ref,
    safe_float,
    safe_int,
)
from registry_sync.etl.schemas import validate_row
from registry_sync.identity.validators import validate_identifier

TEAM_COLUMNS = (
    ("Anestesista 1", "ANEST1"),
    ("Anestesista 2", "ANEST2"),
    ("Cirujano 1", "CIRUJANO1"),
    ("Cirujano 2", "CIRUJANO2"),
    ("Intensivista", "INTENSIVISTA"),
    ("Hepatólogo", "HEPATOLOGO"),
    ("NurseCoordinadora", "NURSE_COORD"),
)

DEFAULT_PATIENT_NAME = "Sin nombre"


def _text(value) -> str | None:
    value = empty_to_none(value)
    return None if value is None else str(value)


def _first(raw: dict, *columns):
    for column in columns:
        value = empty_to_none(raw.get(column))
        if value is not None:
            return value
    return None


def _last_modified(raw: dict):
    return parse_date(raw.get("lastUpdated"))


def row_ci(raw: dict) -> str:
    """Normalized CI of a child row; raises when it cannot be normalized."""
    result = validate_identifier(raw.get("CI"))
    if result.normalized_id is None:
        raise InvalidIdentifierError(f"invalid CI: {result.reason}", identifier=result.raw_id)
    return result.normalized_id


def _required_date(raw: dict, column: str, ci: str):
    value = parse_date(raw.get(column))
    if value is None:
        raise MissingFieldError(f"missing or unparseable {column}", identifier=ci)
    return value


def clinician_to_row(raw: dict) -> dict:
    code = safe_int(raw.get("CP"))
    name = _text(raw.get("Nombre"))
    if not code or not name:
        raise MissingFieldError("CP or Nombre empty", identifier=_text(raw.get("CP")))
    return validate_row(
        "clinician",
        {
            "id": code,
            "name": name,
            "specialty": _text(raw.get("Especialidad")),
            "email": _text(raw.get("email")),
            "phone": _text(raw.get("Telefono")),
            "updated_at": _last_modified(raw),
        },
    )


def patient_to_row(raw: dict) -> dict:
    result = validate_identifier(raw.get("CI"))
    if result.normalized_id is None:
        raise InvalidIdentifierError(f"invalid CI: {result.reason}", identifier=result.raw_id)
    if result.is_suspicious:
        log.warning("identifier_suspicious", ci_raw=result.raw_id, ci=result.normalized_id, reason=result.reason)

    return validate_row(
        "patient",
        {
            "id": result.normalized_id,
            "ci_raw": result.raw_id,
            "ci_suspicious": result.is_suspicious,
            "ci_reason": result.reason,
            "name": _text(raw.get("Nombre")) or DEFAULT_PATIENT_NAME,
            "fnr": _text(raw.get("FNR")),
            "birth_date": parse_date(raw.get("FNac")),
            "sex": _text(raw.get("Sexo")),
            "provider": _text(raw.get("Prestador")),
            "height": safe_float(raw.get("Talla")),
            "weight": safe_float(raw.get("Peso")),
            "blood_group": _text(raw.get("GrupoS")),
            "admission_date": parse_date(raw.get("FechaIngresoProg")),
            "transplanted": parse_bool(raw.get("Trasplantado")) or False,
            "observations": _text(raw.get("Observaciones")),
            "updated_at": _last_modified(raw),
        },
    )


def case_to_row(raw: dict) -> dict:
    ci = row_ci(raw)
    return validate_row(
        "case",
        {
            "patient_id": ci,
            "start_at": _required_date(raw, "FechaHoraInicio", ci),
            "end_at": parse_date(raw.get("FechaHoraFin")),
            "duration": safe_int(raw.get("Duracion")),
            "is_retransplant": parse_bool(raw.get("Retrasplante")) or False,
            "is_hepato_renal": parse_bool(raw.get("HepatoRenal")) or False,
            "optimal_donor": parse_bool(raw.get("DonanteOptimo")),
            "provenance": _text(raw.get("Procedencia")),
            "cold_ischemia_time": safe_int(raw.get("TIsqFria")),
            "warm_ischemia_time": safe_int(raw.get("TisqCaliente")),
            "icu_transfer_date": parse_date(raw.get("FechaTrasladoCTI")),
            "observations": _text(raw.get("Observaciones")),
            "updated_at": _last_modified(raw),
        },
    )


def team_rows_from_case(raw: dict) -> list[dict]:
    """One row per filled team column of a case row ("<CP>: <name>" cells)."""
    if all(empty_to_none(raw.get(column)) is None for column, _ in TEAM_COLUMNS):
        return []
    ci = row_ci(raw)
    case_start = _required_date(raw, "FechaHoraInicio", ci)
    rows = []
    for column, role in TEAM_COLUMNS:
        value = empty_to_none(raw.get(column))
        if value is None:
            continue
        ref = parse_person_ref(value)
        if ref is None:
            raise MissingFieldError(f"{column} is not in '<CP>: <name>' form: {value!r}", identifier=ci)
        rows.append(
            validate_row(
                "team",
                {
                    "patient_id": ci,
                    "case_start": case_start,
                    "role": role,
                    "clinician_code": ref.code,
                    "clinician_name": ref.name,
                    "updated_at": _last_modified(raw),
                },
            )
        )
    return rows


def preop_to_row(raw: dict) -> dict:
    ci = row_ci(raw)
    return validate_row(
        "preop",
        {
            "patient_id": ci,
            "evaluation_date": _required_date(raw, "Fecha", ci),
            "meld": safe_int(raw.get("MELD")),
            "meld_na": safe_int(raw.get("MELDe")),
            "child": _text(raw.get("Child")),
            "etiology1": _text(raw.get("Etiologia1")),
            "etiology2": _text(raw.get("Etiologia2")),
            "is_fulminant": parse_bool(raw.get("Fulminante")) or False,
            "observations": _text(raw.get("ObsComorbilidades")),
            "updated_at": _last_modified(raw),
        },
    )


def postop_to_row(raw: dict) -> dict:
    ci = row_ci(raw)
    return validate_row(
        "postop",
        {
            "patient_id": ci,
            "case_start": parse_date(raw.get("FechaT")),
            "evaluation_date": _required_date(raw, "Fecha", ci),
            "extubated_in_or": parse_bool(_first(raw, "Extubado BQ", "Extubado")),
            "mech_vent_hours": safe_int(raw.get("ARMhs")),
            "reintubation_24h": parse_bool(raw.get("FallaExtubacion24hs")),
            "reoperation": parse_bool(raw.get("Reintervencion")),
            "primary_graft_failure": parse_bool(raw.get("FallaInjerto")),
            "acute_renal_failure": parse_bool(raw.get("IRA")),
            "apache_initial": safe_float(raw.get("APACHEIni")),
            "icu_days": safe_int(raw.get("DiasCTI")),
            "ward_days": safe_int(raw.get("DiasIntSala")),
            "discharge_date": parse_date(raw.get("FechaAltaTx")),
            "updated_at": _last_modified(raw),
        },
    )


def intraop_to_row(raw: dict, phase: str) -> dict:
    ci = row_ci(raw)
    return validate_row(
        "intraop",
        {
            "patient_id": ci,
            "case_start": parse_date(raw.get("FechaT")),
            "phase": phase,
            "timestamp": _required_date(raw, "Fecha", ci),
            "heart_rate": safe_float(raw.get("FC")),
            "pas": safe_float(raw.get("PAS")),
            "pad": safe_float(raw.get("PAD")),
            "pam": safe_float(raw.get("PAm")),
            "cvp": safe_float(raw.get("PVC")),
            "sat_o2": safe_float(_first(raw, "SatO2", "SpO2")),
            "temp": safe_float(raw.get("Temp")),
            "hb": safe_float(raw.get("Hb")),
            "lactate": safe_float(raw.get("Lactato")),
            "glucose": safe_float(_first(raw, "Glicemia", "Gluc")),
            "updated_at": _last_modified(raw),
        },
    )
