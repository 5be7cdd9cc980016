from __future__ import annotations

from pathlib import Path
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from registry_sync.core.errors import WorkbookNotFoundError, WorkbookUnreadableError
from registry_sync.core.logging import log

CLINICIAN_SHEET = "Equipo"
PATIENT_SHEET = "DatosPaciente"
CASE_SHEET = "DatosTrasplante"
PREOP_SHEET = "Preoperatorio"
POSTOP_SHEET = "PostOp"

INTRAOP_PHASES = {
    "IntraopInducc": "INDUCCION",
    "IntraopDisec": "DISECCION",
    "IntraopAnhep": "ANHEPATICA",
    "IntraopPreReperf": "PRE_REPERFUSION",
    "IntraopPostRepef": "POST_REPERFUSION",
    "IntropFinVB": "VIA_BILIAR",
    "IntraopCierre": "CIERRE",
}

KNOWN_SHEETS = (CLINICIAN_SHEET, PATIENT_SHEET, CASE_SHEET, PREOP_SHEET, POSTOP_SHEET, *INTRAOP_PHASES)

# key under which each row carries its spreadsheet row number
ROW_INDEX = "__row__"


def _header(cells) -> list[str | None]:
    return [str(cell).strip() if cell is not None and str(cell).strip() else None for cell in cells]


def _is_empty(values) -> bool:
    return all(v is None or (isinstance(v, str) and not v.strip()) for v in values)


def read_workbook(path: str | Path, sheets=KNOWN_SHEETS) -> dict[str, list[dict]]:
    """Load the recognized sheets as lists of header-keyed row dicts.

    Sheets absent from the workbook are left out of the result.
    """
    path = Path(path)
    if not path.exists():
        raise WorkbookNotFoundError(path)

    try:
        workbook = load_workbook(path, read_only=True, data_only=True)
    except (InvalidFileException, BadZipFile, OSError) as exc:
        raise WorkbookUnreadableError(path, exc) from exc
    try:
        result: dict[str, list[dict]] = {}
        for name in sheets:
            if name not in workbook.sheetnames:
                continue
            rows = workbook[name].iter_rows(values_only=True)
            header = _header(next(rows, ()))
            records = []
            for index, values in enumerate(rows, start=2):
                if _is_empty(values):
                    continue
                record = {col: value for col, value in zip(header, values) if col}
                record[ROW_INDEX] = index
                records.append(record)
            result[name] = records
            log.debug("sheet_loaded", sheet=name, rows=len(records))
    finally:
        workbook.close()
    return result
