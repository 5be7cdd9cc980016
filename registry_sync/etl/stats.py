from __future__ import annotations

from copy import deepcopy
from dataclasses import asdict, dataclass, field


@dataclass
class EntityCounters:
    checked: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0


@dataclass
class SyncStats:
    """Counters and errors of one run.

    Processing steps take the accumulator and return it; nothing is persisted until
    the run has finished.
    """

    run_id: str
    mode: str
    started_at: str
    entities: dict[str, EntityCounters] = field(default_factory=dict)
    errors: list[dict] = field(default_factory=list)
    # record keys written or seen per entity type during this run
    seen_keys: dict[str, set[str]] = field(default_factory=dict)
    # (sheet, row_index) of source rows that already produced an error
    failed_rows: set[tuple[str, int]] = field(default_factory=set)
    # counters as of the last store commit
    committed: dict[str, EntityCounters] = field(default_factory=dict)
    # writes counted but rolled back when the run aborted
    uncommitted: dict[str, int] = field(default_factory=dict)

    def counters(self, entity_type: str) -> EntityCounters:
        return self.entities.setdefault(entity_type, EntityCounters())

    def seen(self, entity_type: str) -> set[str]:
        return self.seen_keys.setdefault(entity_type, set())

    def record_error(
        self,
        entity_type: str,
        sheet: str,
        row_index,
        identifier,
        code: str,
        message: str,
    ) -> None:
        self.counters(entity_type).failed += 1
        if row_index is not None:
            self.failed_rows.add((sheet, row_index))
        self.errors.append(
            {
                "entity_type": entity_type,
                "sheet": sheet,
                "row_index": row_index,
                "identifier": None if identifier is None else str(identifier),
                "code": code,
                "message": message,
            }
        )

    def row_failed(self, sheet: str, row_index) -> bool:
        return (sheet, row_index) in self.failed_rows

    def mark_committed(self) -> None:
        self.committed = deepcopy(self.entities)

    def discard_uncommitted(self) -> dict[str, int]:
        """Move created/updated counts written after the last commit out of the totals."""
        for entity, counters in self.entities.items():
            base = self.committed.get(entity, EntityCounters())
            pending = (counters.created - base.created) + (counters.updated - base.updated)
            if pending:
                self.uncommitted[entity] = self.uncommitted.get(entity, 0) + pending
            counters.created = base.created
            counters.updated = base.updated
        return self.uncommitted

    @property
    def error_count(self) -> int:
        return len(self.errors)

    def totals(self) -> EntityCounters:
        total = EntityCounters()
        for counters in self.entities.values():
            total.checked += counters.checked
            total.created += counters.created
            total.updated += counters.updated
            total.skipped += counters.skipped
            total.failed += counters.failed
        return total

    def errors_by_code(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self.errors:
            code = record.get("code", "unknown") or "unknown"
            counts[code] = counts.get(code, 0) + 1
        return counts

    def summary(self) -> dict:
        return {entity: asdict(counters) for entity, counters in self.entities.items()}
