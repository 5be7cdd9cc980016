"""Error taxonomy for a sync run.

Fatal errors abort the run and propagate to the caller. Row errors are caught at the
per-row boundary of the pipeline, recorded in the run statistics, and the batch
continues with the next row.
"""

from __future__ import annotations


class FatalSyncError(Exception):
    """The run cannot start or cannot continue."""


class WorkbookError(FatalSyncError):
    """The input workbook cannot be used."""


class WorkbookNotFoundError(WorkbookError):
    def __init__(self, path):
        super().__init__(f"Workbook not found: {path}")
        self.path = path


class WorkbookUnreadableError(WorkbookError):
    def __init__(self, path, reason):
        super().__init__(f"Workbook cannot be read: {path} ({reason})")
        self.path = path


class StoreUnavailableError(FatalSyncError):
    """The relational store is unreachable."""


class RowError(Exception):
    """A single source row cannot be synchronized."""

    code = "row_error"

    def __init__(self, message: str, identifier: str | None = None):
        super().__init__(message)
        self.message = message
        self.identifier = identifier


class InvalidIdentifierError(RowError):
    code = "invalid_identifier"


class MissingFieldError(RowError):
    code = "missing_field"


class ParentMissingError(RowError):
    code = "parent_missing"

    def __init__(self, parent_type: str, parent_key, identifier: str | None = None):
        super().__init__(f"parent does not exist: {parent_type} {parent_key}", identifier)
        self.parent_type = parent_type
        self.parent_key = parent_key


class ClinicianUnresolvedError(RowError):
    code = "clinician_unresolved"
