"""
Technology Registry

Accumulates TechRecords from ordered sources (base game first, then mods
in ascending load order) and resolves id collisions with an IngestPolicy.

Single writer: callers serialize ingest() calls. Every successful change
bumps ``generation`` so a graph built earlier can tell it is stale.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional, Tuple

from techraven.diagnostics import Diagnostic, DiagnosticLog
from techraven.tech.policies import DEFAULT_POLICY, IngestPolicy
from techraven.tech.records import Provenance, TechRecord

logger = logging.getLogger(__name__)


DEFAULT_AREAS: Dict[str, str] = {
    "physics": "Physics",
    "society": "Society",
    "engineering": "Engineering",
}


def humanize(identifier: str) -> str:
    """'voidcraft' -> 'Voidcraft', 'field_manipulation' -> 'Field Manipulation'."""
    return " ".join(part.capitalize() for part in identifier.split("_") if part)


@dataclass(frozen=True)
class OverrideInfo:
    """A record replaced by a later definition of the same id."""
    tech_id: str
    winner: Provenance
    replaced: Provenance
    policy: IngestPolicy = IngestPolicy.REPLACE_ALWAYS


@dataclass(frozen=True)
class RegistrySnapshot:
    """Immutable view of the registry that a graph is built from."""
    records: Tuple[TechRecord, ...]
    areas: Dict[str, str] = field(default_factory=dict)
    generation: int = 0


class TechRegistry:
    """
    Mapping id -> TechRecord with override semantics.

    Iteration follows first-insertion order of ids; an override replaces
    the record in place.

    Usage:
        registry = TechRegistry()
        for record in extract_records(text, provenance).records:
            registry.ingest(record)
    """

    def __init__(self, default_areas: Optional[Dict[str, str]] = None):
        self._default_areas: Dict[str, str] = dict(DEFAULT_AREAS if default_areas is None else default_areas)
        self._records: "OrderedDict[str, TechRecord]" = OrderedDict()
        self._areas: Dict[str, str] = dict(self._default_areas)
        self._categories: Dict[str, str] = {}
        self._by_file: Dict[str, List[str]] = {}
        self._by_source: Dict[str, List[str]] = {}
        self._overrides: List[OverrideInfo] = []
        self.diagnostics = DiagnosticLog()
        self.generation = 0

    # ----------------------------------------------------------------- writes

    def ingest(self, record: TechRecord, policy: IngestPolicy = DEFAULT_POLICY) -> bool:
        """
        Insert or override a record by id.

        Returns:
            True if the registry changed. False for a rejected record (empty
            id) or a duplicate skipped under INSERT_IF_ABSENT; both leave a
            diagnostic.
        """
        tech_id = record.id
        if not tech_id or not tech_id.strip():
            diagnostic = self.diagnostics.add(Diagnostic(
                severity="error",
                code="EMPTY_ID",
                message="Record with an empty id dropped",
                file=record.provenance.source_file,
                line=record.line,
            ))
            logger.warning("%s", diagnostic)
            return False

        existing = self._records.get(tech_id)
        if existing is not None and policy == IngestPolicy.INSERT_IF_ABSENT:
            self.diagnostics.add(Diagnostic(
                severity="info",
                code="DUPLICATE_SKIPPED",
                message=(f"Already defined by {existing.provenance.source_id} "
                         f"({existing.provenance.source_file}), keeping the first definition"),
                file=record.provenance.source_file,
                line=record.line,
                tech_id=tech_id,
            ))
            logger.debug("Skipping duplicate %s from %s", tech_id, record.provenance.source_id)
            return False

        if existing is not None:
            self._unindex(existing)
            self._overrides.append(OverrideInfo(
                tech_id=tech_id,
                winner=record.provenance,
                replaced=existing.provenance,
                policy=policy,
            ))
            logger.info(
                "Override %s: %s (load order %d) replaces %s (load order %d)",
                tech_id,
                record.provenance.source_id, record.provenance.load_order,
                existing.provenance.source_id, existing.provenance.load_order,
            )

        self._records[tech_id] = record
        self._index(tech_id, record)
        self.generation += 1
        return True

    def _index(self, tech_id: str, record: TechRecord) -> None:
        self._by_file.setdefault(record.provenance.source_file, []).append(tech_id)
        self._by_source.setdefault(record.provenance.source_id, []).append(tech_id)
        if record.area and record.area not in self._areas:
            self._areas[record.area] = humanize(record.area)
        for category in record.category:
            if category not in self._categories:
                self._categories[category] = humanize(category)

    def _unindex(self, record: TechRecord) -> None:
        for table, key in ((self._by_file, record.provenance.source_file),
                           (self._by_source, record.provenance.source_id)):
            ids = table.get(key)
            if ids and record.id in ids:
                ids.remove(record.id)
                if not ids:
                    del table[key]

    def apply_display_names(self, names: Dict[str, str]) -> int:
        """
        Attach localized display names. Records are replaced, not mutated.

        Returns:
            Number of records that changed
        """
        changed = 0
        for tech_id, display_name in names.items():
            record = self._records.get(tech_id)
            if record is not None and record.display_name != display_name:
                self._records[tech_id] = replace(record, display_name=display_name)
                changed += 1
        if changed:
            self.generation += 1
        return changed

    def clear(self) -> None:
        """Drop everything before a full reload. Name tables go back to the defaults."""
        self._records.clear()
        self._areas = dict(self._default_areas)
        self._categories.clear()
        self._by_file.clear()
        self._by_source.clear()
        self._overrides.clear()
        self.diagnostics.clear()
        self.generation += 1

    # ------------------------------------------------------------------ reads

    def get(self, tech_id: str) -> Optional[TechRecord]:
        return self._records.get(tech_id)

    def all(self) -> List[TechRecord]:
        return list(self._records.values())

    def by_area(self, area: str) -> List[TechRecord]:
        return [r for r in self._records.values() if r.area == area]

    def by_category(self, category: str) -> List[TechRecord]:
        return [r for r in self._records.values() if category in r.category]

    def by_tier(self, tier: int) -> List[TechRecord]:
        return [r for r in self._records.values() if r.tier == tier]

    def by_source(self, source_id: str) -> List[TechRecord]:
        """Current records that came from one source (mod id or "base")."""
        return [self._records[i] for i in self._by_source.get(source_id, [])]

    def by_file(self, source_file: str) -> List[TechRecord]:
        return [self._records[i] for i in self._by_file.get(source_file, [])]

    def areas(self) -> Dict[str, str]:
        """Area id -> display name, defaults first."""
        return dict(self._areas)

    def categories(self) -> Dict[str, str]:
        return dict(self._categories)

    def area_name(self, area: str) -> str:
        return self._areas.get(area, humanize(area))

    def overrides(self, tech_id: Optional[str] = None) -> List[OverrideInfo]:
        if tech_id is None:
            return list(self._overrides)
        return [o for o in self._overrides if o.tech_id == tech_id]

    def sources(self) -> List[str]:
        return list(self._by_source)

    @property
    def count(self) -> int:
        return len(self._records)

    def snapshot(self) -> RegistrySnapshot:
        return RegistrySnapshot(
            records=tuple(self._records.values()),
            areas=dict(self._areas),
            generation=self.generation,
        )

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, tech_id: str) -> bool:
        return tech_id in self._records

    def __iter__(self) -> Iterator[TechRecord]:
        return iter(list(self._records.values()))
