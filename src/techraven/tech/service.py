"""
Technology Query Service

Wires configuration, registry, loader and graph together for callers
(an HTTP layer, a CLI). Every instance owns its own registry and cache.

The graph is rebuilt lazily: any query that needs it calls ensure_graph(),
which rebuilds only when the registry changed since the last build.
"""

import logging
import threading
from typing import Any, Dict, List, Optional, Sequence

from techraven.config import TechravenConfig, load_config
from techraven.diagnostics import Diagnostic
from techraven.tech.graph import TechGraph, build_graph
from techraven.tech.loader import LoadReport, TechLoader, TechSource
from techraven.tech.records import Provenance, TechRecord
from techraven.tech.registry import TechRegistry
from techraven.tech.serde import record_to_dict

logger = logging.getLogger(__name__)


class TechService:
    """Query API over one registry state."""

    def __init__(self, config: Optional[TechravenConfig] = None, global_variables: Optional[Dict[str, Any]] = None):
        self.config = config or load_config()
        self.registry = TechRegistry(self.config.default_areas)
        self.loader = TechLoader(self.config, self.registry, global_variables=global_variables)
        self._graph: Optional[TechGraph] = None

    # ---------------------------------------------------------------- loading

    def load(self, sources: Sequence[TechSource], stop_event: Optional[threading.Event] = None) -> LoadReport:
        """Full reload: clear, then load every source."""
        self.clear()
        report = self.loader.load_sources(sources, stop_event=stop_event)
        self.ensure_graph()
        return report

    def ingest_text(self, text: str, provenance: Optional[Provenance] = None) -> List[TechRecord]:
        return self.loader.ingest_text(text, provenance)

    def ingest_file(self, path: str, source_id: str = "base", load_order: int = 0) -> int:
        return self.loader.ingest_file(path, source_id, load_order)

    def clear(self) -> None:
        self.registry.clear()
        self.loader.diagnostics.clear()
        self._graph = None

    # ------------------------------------------------------------------ graph

    def ensure_graph(self) -> TechGraph:
        """Current graph, rebuilt if the registry moved on."""
        if self._graph is None or self._graph.is_stale(self.registry):
            self._graph = build_graph(self.registry)
        return self._graph

    def rebuild_graph(self) -> TechGraph:
        self._graph = build_graph(self.registry)
        return self._graph

    @property
    def graph(self) -> TechGraph:
        return self.ensure_graph()

    def diagnostics(self) -> List[Diagnostic]:
        """Load diagnostics followed by those of the current graph."""
        return list(self.loader.diagnostics) + list(self.ensure_graph().diagnostics)

    # ---------------------------------------------------------------- queries

    def get_all(self) -> List[TechRecord]:
        return self.registry.all()

    def get_by_id(self, tech_id: str) -> Optional[TechRecord]:
        return self.registry.get(tech_id)

    def get_by_area(self, area: str) -> List[TechRecord]:
        return self.registry.by_area(area)

    def get_by_category(self, category: str) -> List[TechRecord]:
        return self.registry.by_category(category)

    def get_by_tier(self, tier: int) -> List[TechRecord]:
        return self.registry.by_tier(tier)

    def get_prerequisites(self, tech_id: str) -> List[TechRecord]:
        """Present prerequisites only; dangling ids stay on the record."""
        return [self.registry.get(i) for i in self.ensure_graph().parents(tech_id)]

    def get_dependents(self, tech_id: str) -> List[TechRecord]:
        return [self.registry.get(i) for i in self.ensure_graph().children(tech_id)]

    def roots(self) -> List[str]:
        return self.ensure_graph().roots()

    def depth(self, tech_id: str) -> int:
        return self.ensure_graph().depth(tech_id)

    def path_to_root(self, tech_id: str) -> List[str]:
        return self.ensure_graph().path_to_root(tech_id)

    def search(self, query: str) -> List[TechRecord]:
        return self.ensure_graph().search(query)

    def areas(self) -> List[Dict[str, str]]:
        return [{"id": k, "name": v} for k, v in self.registry.areas().items()]

    def categories(self) -> List[Dict[str, str]]:
        return [{"id": k, "name": v} for k, v in self.registry.categories().items()]

    def stats(self) -> Dict[str, Any]:
        stats = dict(self.ensure_graph().stats())
        stats["sources"] = len(self.registry.sources())
        stats["overrides"] = len(self.registry.overrides())
        return stats

    def to_dict(self, tech_id: str) -> Optional[Dict[str, Any]]:
        """Output shape of one record, with childTechs from the current graph."""
        record = self.registry.get(tech_id)
        if record is None:
            return None
        return record_to_dict(record, self.ensure_graph())
