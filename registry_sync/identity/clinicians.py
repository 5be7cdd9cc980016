"""Clinician identity resolution.

Source sheets name clinicians inconsistently ("Dr. J. Perez", "Juan Pérez",
"123: Juan Perez"). Resolution runs in explicit stages: an exact lookup in the
optional manual alias map, then the stated CP when it exists in the roster and the
name does not match a different clinician, then a threshold-gated similarity search
over the clinicians already stored.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
from pathlib import Path

from registry_sync.core.config import NAME_MATCH_THRESHOLD
from registry_sync.core.logging import log
from registry_sync.etl.coerce import PersonRef, match_name, safe_int


def _alias_key(name: str) -> str:
    return " ".join(str(name).lower().split())


def load_alias_map(path: str | Path | None) -> dict[str, int]:
    """Read ``name_variant,canonical_code`` rows (first line is a header)."""
    if not path:
        return {}
    path = Path(path)
    if not path.exists():
        log.info("alias_map_missing", path=str(path))
        return {}

    aliases: dict[str, int] = {}
    with path.open(newline="", encoding="utf-8") as handle:
        reader = csv.reader(handle)
        next(reader, None)
        for line in reader:
            if len(line) < 2:
                continue
            variant, code = line[0].strip(), safe_int(line[1])
            if variant and code is not None:
                aliases[_alias_key(variant)] = code
    log.info("alias_map_loaded", path=str(path), aliases=len(aliases))
    return aliases


@dataclass
class ClinicianResolver:
    aliases: dict[str, int] = field(default_factory=dict)
    roster: list[dict] = field(default_factory=list)
    threshold: float = NAME_MATCH_THRESHOLD

    def canonical_code(self, name: str | None, code: int | None) -> int | None:
        """Code a roster row should be stored under."""
        if name:
            aliased = self.by_alias(name)
            if aliased is not None:
                return aliased
        return code

    def by_alias(self, name: str) -> int | None:
        return self.aliases.get(_alias_key(name))

    def by_similarity(self, name: str) -> int | None:
        return match_name(name, self.roster, threshold=self.threshold)

    def known(self, code: int) -> bool:
        return any(c["id"] == code for c in self.roster)

    def resolve(self, ref: PersonRef) -> int | None:
        """Alias map first, then the stated code, then name similarity.

        A stated code is trusted only when the name does not match a different
        clinician; a confident match elsewhere means the code is a typo.
        """
        aliased = self.by_alias(ref.name)
        if aliased is not None:
            return aliased
        similar = self.by_similarity(ref.name)
        if self.known(ref.code) and similar in (None, ref.code):
            return ref.code
        if similar is not None and self.known(ref.code):
            log.warning("clinician_code_mismatch", code=ref.code, name=ref.name, resolved=similar)
        return similar

    def remember(self, code: int, name: str) -> None:
        for candidate in self.roster:
            if candidate["id"] == code:
                candidate["name"] = name
                return
        self.roster.append({"id": code, "name": name})
