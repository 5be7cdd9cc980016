import pytest
from openpyxl import Workbook

from registry_sync.core.errors import WorkbookNotFoundError, WorkbookUnreadableError
from registry_sync.etl.workbook import PATIENT_SHEET, ROW_INDEX, read_workbook


def test_read_workbook_rows_and_indexes(tmp_path):
    wb = Workbook()
    ws = wb.active
    ws.title = PATIENT_SHEET
    ws.append(["CI", "Nombre", None])
    ws.append(["45728634", "Ana", "ignored"])
    ws.append([None, None, None])
    ws.append([3282071, "Luis", None])
    wb.create_sheet("Unrelated").append(["x"])
    path = tmp_path / "registro.xlsx"
    wb.save(path)

    sheets = read_workbook(path)
    assert list(sheets) == [PATIENT_SHEET]
    rows = sheets[PATIENT_SHEET]
    assert rows[0] == {"CI": "45728634", "Nombre": "Ana", ROW_INDEX: 2}
    assert rows[1]["CI"] == 3282071
    assert rows[1][ROW_INDEX] == 4


def test_missing_workbook_is_fatal(tmp_path):
    with pytest.raises(WorkbookNotFoundError):
        read_workbook(tmp_path / "absent.xlsx")


def test_corrupt_workbook_is_fatal(tmp_path):
    path = tmp_path / "broken.xlsx"
    path.write_bytes(b"not a spreadsheet")
    with pytest.raises(WorkbookUnreadableError):
        read_workbook(path)
