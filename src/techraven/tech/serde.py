"""
Record Serialization - TechRecord <-> JSON conversion.

Output shape (one record):

    { id, name, displayName, area, category, tier, cost, weight,
      flags: {isRare, isDangerous, isStartingTech},
      prerequisites: [...], childTechs: [...],
      source: {file, modId, modName, loadOrder} }

plus the optional keys costMultiplier, prerequisiteGroups, unlocks,
isReverseEngineerable, gateway, icon, aiUpdateType and extras.
Decoding accepts anything encode produced; missing keys take defaults.

Usage:
    from techraven.tech.serde import record_to_dict, record_from_dict
"""

import json
from typing import Any, Dict, Iterable, List, Optional

from techraven.tech.records import PrerequisiteGroup, Provenance, TechFlags, TechRecord


def record_to_dict(record: TechRecord, graph=None) -> Dict[str, Any]:
    """
    Convert a record to its output shape.

    Args:
        record: Record to convert
        graph: Optional TechGraph; supplies ``childTechs``

    Returns:
        JSON-ready dict
    """
    source = record.provenance
    return {
        "id": record.id,
        "name": record.name,
        "displayName": record.display_name or record.name,
        "area": record.area,
        "category": list(record.category),
        "tier": record.tier,
        "cost": record.cost,
        "costMultiplier": record.cost_multiplier,
        "weight": record.weight,
        "flags": {
            "isRare": record.flags.is_rare,
            "isDangerous": record.flags.is_dangerous,
            "isStartingTech": record.flags.is_starting_tech,
        },
        "prerequisites": list(record.prerequisites),
        "prerequisiteGroups": [g.to_dict() for g in record.prerequisite_groups],
        "childTechs": graph.children(record.id) if graph is not None else [],
        "unlocks": list(record.unlocks),
        "isReverseEngineerable": record.is_reverse_engineerable,
        "gateway": record.gateway,
        "icon": record.icon,
        "aiUpdateType": record.ai_update_type,
        "extras": [[key, value] for key, value in record.extras],
        "source": {
            "file": source.source_file,
            "modId": source.source_id,
            "modName": source.source_name,
            "loadOrder": source.load_order,
        },
    }


def record_from_dict(data: Dict[str, Any]) -> TechRecord:
    """Rebuild a record from its output shape. ``childTechs`` is derived data and ignored."""
    flags = data.get("flags") or {}
    source = data.get("source") or {}
    name = data.get("name") or data["id"]
    display_name = data.get("displayName", "")
    category = data.get("category") or []
    if isinstance(category, str):
        category = [category]
    return TechRecord(
        id=data["id"],
        name=name,
        display_name="" if display_name == name else display_name,
        area=data.get("area", ""),
        category=tuple(category),
        tier=int(data.get("tier", 0)),
        cost=data.get("cost", 0),
        weight=data.get("weight", 0),
        cost_multiplier=float(data.get("costMultiplier", 1.0)),
        flags=TechFlags(
            is_starting_tech=bool(flags.get("isStartingTech", False)),
            is_rare=bool(flags.get("isRare", False)),
            is_dangerous=bool(flags.get("isDangerous", False)),
        ),
        prerequisites=tuple(data.get("prerequisites", [])),
        prerequisite_groups=tuple(PrerequisiteGroup.from_dict(g) for g in data.get("prerequisiteGroups", [])),
        unlocks=tuple(data.get("unlocks", [])),
        is_reverse_engineerable=bool(data.get("isReverseEngineerable", True)),
        gateway=data.get("gateway", ""),
        icon=data.get("icon", ""),
        ai_update_type=data.get("aiUpdateType", ""),
        extras=tuple((pair[0], pair[1]) for pair in data.get("extras", [])),
        provenance=Provenance(
            source_file=source.get("file", ""),
            source_id=source.get("modId", "base"),
            source_name=source.get("modName", "Base Game"),
            load_order=int(source.get("loadOrder", 0)),
        ),
    )


def serialize_records(records: Iterable[TechRecord], graph=None, indent: Optional[int] = None) -> str:
    """Serialize records to a JSON array."""
    return json.dumps([record_to_dict(r, graph) for r in records], indent=indent, ensure_ascii=False)


def deserialize_records(text: str) -> List[TechRecord]:
    """Inverse of serialize_records."""
    return [record_from_dict(item) for item in json.loads(text)]
