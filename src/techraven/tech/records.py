"""
Technology Records

Typed, immutable results of record extraction. A TechRecord is produced
per parse, handed to TechRegistry.ingest and never mutated afterwards;
changes (a mod override, a display name) replace the whole record.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union


# Prerequisite group operators, as written in script (matched case-insensitively)
GROUP_OPS = ("AND", "OR", "NOT")

BASE_SOURCE_ID = "base"
BASE_SOURCE_NAME = "Base Game"


@dataclass(frozen=True)
class Provenance:
    """Which layer produced a record: file, source (mod id or "base") and load order."""
    source_file: str = ""
    source_id: str = BASE_SOURCE_ID
    source_name: str = BASE_SOURCE_NAME
    load_order: int = 0  # base = 0, mods ascending; higher wins

    @property
    def is_base(self) -> bool:
        return self.source_id == BASE_SOURCE_ID


@dataclass(frozen=True)
class TechFlags:
    is_starting_tech: bool = False
    is_rare: bool = False
    is_dangerous: bool = False


@dataclass(frozen=True)
class PrerequisiteGroup:
    """
    One AND / OR / NOT group from a prerequisites block.

    Items are tech ids or nested groups, in source order:

        prerequisites = { OR = { "tech_a" AND = { "tech_b" "tech_c" } } }
    """
    op: str
    items: Tuple[Union[str, 'PrerequisiteGroup'], ...] = ()

    def ids(self) -> List[str]:
        """Every tech id mentioned anywhere in the group."""
        found = []
        for item in self.items:
            if isinstance(item, PrerequisiteGroup):
                found.extend(item.ids())
            else:
                found.append(item)
        return found

    def to_dict(self) -> Dict[str, Any]:
        return {
            "op": self.op,
            "items": [i.to_dict() if isinstance(i, PrerequisiteGroup) else i for i in self.items],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PrerequisiteGroup':
        items = []
        for item in data.get("items", []):
            if isinstance(item, dict):
                items.append(cls.from_dict(item))
            else:
                items.append(str(item))
        return cls(op=str(data.get("op", "AND")).upper(), items=tuple(items))


def classify_requirements(
    flat_ids: List[str],
    groups: List[PrerequisiteGroup],
) -> Tuple[List[str], List[str], List[str]]:
    """
    Split prerequisite ids into (hard, alternative, excluded).

    Flat entries and AND entries are hard requirements. Anything under an
    OR is an alternative, anything under a NOT is an exclusion. The first
    classification of an id wins; each list keeps source order without
    duplicates.
    """
    hard: List[str] = []
    alternative: List[str] = []
    excluded: List[str] = []
    seen = set()

    def add(target: List[str], tech_id: str) -> None:
        if tech_id not in seen:
            seen.add(tech_id)
            target.append(tech_id)

    def walk(group: PrerequisiteGroup, mode: str) -> None:
        if mode == "hard" and group.op == "OR":
            mode = "alternative"
        if group.op == "NOT":
            mode = "excluded"
        for item in group.items:
            if isinstance(item, PrerequisiteGroup):
                walk(item, mode)
            elif mode == "hard":
                add(hard, item)
            elif mode == "alternative":
                add(alternative, item)
            else:
                add(excluded, item)

    for tech_id in flat_ids:
        add(hard, tech_id)
    for group in groups:
        walk(group, "hard")
    return hard, alternative, excluded


@dataclass(frozen=True)
class TechRecord:
    """
    One technology definition.

    ``prerequisites`` holds the hard-required ids (flat entries and AND
    entries) exactly as written, including ids that no registry knows.
    ``prerequisite_groups`` keeps the AND/OR/NOT structure for display.
    ``extras`` keeps every other nested block as ordered ``(key, value)``
    pairs of plain data; nothing in the graph reads it.
    """
    id: str
    name: str = ""
    display_name: str = ""
    area: str = ""
    category: Tuple[str, ...] = ()
    tier: int = 0
    cost: Union[int, float] = 0
    weight: Union[int, float] = 0
    cost_multiplier: float = 1.0
    flags: TechFlags = field(default_factory=TechFlags)
    prerequisites: Tuple[str, ...] = ()
    prerequisite_groups: Tuple[PrerequisiteGroup, ...] = ()
    unlocks: Tuple[str, ...] = ()
    is_reverse_engineerable: bool = True
    gateway: str = ""
    icon: str = ""
    ai_update_type: str = ""
    extras: Tuple[Tuple[str, Any], ...] = ()
    provenance: Provenance = field(default_factory=Provenance)
    line: int = field(default=0, compare=False)

    @property
    def label(self) -> str:
        """Display name if localized, else the internal name."""
        return self.display_name or self.name or self.id

    @property
    def alternatives(self) -> List[str]:
        """Ids that satisfy an OR group (any one of them)."""
        return classify_requirements(list(self.prerequisites), list(self.prerequisite_groups))[1]

    @property
    def excluded(self) -> List[str]:
        """Ids listed under NOT groups. Never graph edges."""
        return classify_requirements(list(self.prerequisites), list(self.prerequisite_groups))[2]

    @property
    def referenced_ids(self) -> List[str]:
        """Hard requirements followed by OR alternatives: candidate graph parents."""
        hard, alternative, _ = classify_requirements(list(self.prerequisites), list(self.prerequisite_groups))
        return hard + alternative

    def effective_cost(self) -> int:
        """Cost after the multiplier, rounded half up."""
        return int(math.floor(self.cost * self.cost_multiplier + 0.5))

    def extra(self, key: str) -> Optional[Any]:
        """Last opaque value stored under ``key``."""
        found = None
        for extra_key, value in self.extras:
            if extra_key == key:
                found = value
        return found
