"""
techraven.tech - Technology Records, Registry and Graph

Turns parsed technology files into typed records, merges them across
sources with override semantics and builds the prerequisite graph.
"""

from techraven.tech.records import (
    PrerequisiteGroup,
    Provenance,
    TechFlags,
    TechRecord,
    classify_requirements,
)
from techraven.tech.policies import IngestPolicy, DEFAULT_POLICY
from techraven.tech.builder import (
    ExtractionResult,
    VariableScope,
    build_record,
    extract_from_ast,
    extract_records,
)
from techraven.tech.registry import OverrideInfo, RegistrySnapshot, TechRegistry
from techraven.tech.graph import EdgeKind, TechGraph, build_graph
from techraven.tech.serde import (
    deserialize_records,
    record_from_dict,
    record_to_dict,
    serialize_records,
)
from techraven.tech.loader import FileCache, LoadReport, TechLoader, TechSource
from techraven.tech.service import TechService

__all__ = [
    # Records
    "PrerequisiteGroup",
    "Provenance",
    "TechFlags",
    "TechRecord",
    "classify_requirements",
    # Extraction
    "ExtractionResult",
    "VariableScope",
    "build_record",
    "extract_from_ast",
    "extract_records",
    # Registry
    "IngestPolicy",
    "DEFAULT_POLICY",
    "OverrideInfo",
    "RegistrySnapshot",
    "TechRegistry",
    # Graph
    "EdgeKind",
    "TechGraph",
    "build_graph",
    # Serialization
    "deserialize_records",
    "record_from_dict",
    "record_to_dict",
    "serialize_records",
    # Loading
    "FileCache",
    "LoadReport",
    "TechLoader",
    "TechSource",
    "TechService",
]
