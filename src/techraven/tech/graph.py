"""
Technology Prerequisite Graph

Built once from a registry snapshot and never patched: records live in an
arena (tuple + id -> index map) with parent/child index tables computed
in one pass. Any further ingestion makes the graph stale until the next
build_graph().

Depth
-----
A tech with present hard prerequisites (flat entries and AND groups) sits
one below the deepest of them:

    depth = 1 + max(depth(p) for present hard p)

Only when no hard prerequisite is present do OR groups decide, each
satisfied by its cheapest present alternative:

    id  -> depth(id)
    AND -> max over present terms
    OR  -> min over present alternatives
    NOT -> ignored

depth = 1 + value when any term is present, else 0. Roots are the techs
with no present hard prerequisite; a root gated only by OR alternatives
still has a depth above 0.

Depths are assigned breadth-first from the techs with no present parent;
a node is first placed once the parents that decide its depth are placed.
It is revisited whenever a parent update would make it deeper. A depth
that would reach |V| or a node revisited |V| times can only come from a
cycle: its depth is frozen and reported. Nodes unreachable from any root
(they sit behind a cycle) are seeded in lexicographic order from their
placed parents.
"""

import logging
from collections import Counter, deque
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Set, Tuple, Union

from techraven.diagnostics import Diagnostic
from techraven.tech.records import PrerequisiteGroup, TechRecord, classify_requirements
from techraven.tech.registry import RegistrySnapshot, TechRegistry

logger = logging.getLogger(__name__)

# ("id", index) | ("and", [terms]) | ("or", [terms])
Term = Tuple[str, Any]


class EdgeKind(Enum):
    """Kind of a parent -> child edge."""
    REQUIRED = "required"        # flat entry or AND group
    ALTERNATIVE = "alternative"  # one of several OR alternatives


def _evaluate(term: Term, depth: List[int], assigned: List[bool]) -> Optional[int]:
    """Value of a requirement term over assigned nodes, None if no term is present."""
    kind, payload = term
    if kind == "id":
        return depth[payload] if assigned[payload] else None
    values = [v for v in (_evaluate(t, depth, assigned) for t in payload) if v is not None]
    if not values:
        return None
    return max(values) if kind == "and" else min(values)


def _strongly_connected(n: int, children: List[List[int]]) -> List[List[int]]:
    """Tarjan's algorithm, iterative. Returns components with more than one node."""
    index_of = [-1] * n
    lowlink = [0] * n
    on_stack = [False] * n
    stack: List[int] = []
    components: List[List[int]] = []
    counter = 0

    for start in range(n):
        if index_of[start] != -1:
            continue
        work = [(start, 0)]
        while work:
            node, edge = work[-1]
            if edge == 0:
                index_of[node] = lowlink[node] = counter
                counter += 1
                stack.append(node)
                on_stack[node] = True
            if edge < len(children[node]):
                work[-1] = (node, edge + 1)
                child = children[node][edge]
                if index_of[child] == -1:
                    work.append((child, 0))
                elif on_stack[child]:
                    lowlink[node] = min(lowlink[node], index_of[child])
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                component = []
                while True:
                    member = stack.pop()
                    on_stack[member] = False
                    component.append(member)
                    if member == node:
                        break
                if len(component) > 1:
                    components.append(component)
    return components


class TechGraph:
    """
    Immutable prerequisite graph over one registry snapshot.

    Usage:
        graph = build_graph(registry)
        graph.roots()
        graph.depth("tech_lasers_2")
        graph.path_to_root("tech_lasers_2")
    """

    def __init__(
        self,
        records: Tuple[TechRecord, ...],
        areas: Dict[str, str],
        generation: int,
        parents: List[List[int]],
        parent_kinds: List[Dict[int, EdgeKind]],
        children: List[List[int]],
        depths: List[int],
        cycles: List[List[int]],
        diagnostics: List[Diagnostic],
    ):
        self._records = records
        self._index = {r.id: i for i, r in enumerate(records)}
        self._areas = areas
        self._parents = parents
        self._parent_kinds = parent_kinds
        self._children = children
        self._depths = depths
        self._cycles = cycles
        self._widths = Counter(depths)
        self.generation = generation
        self.diagnostics = diagnostics

    def _ids(self, indices) -> List[str]:
        return [self._records[i].id for i in indices]

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, tech_id: str) -> bool:
        return tech_id in self._index

    def is_stale(self, registry: TechRegistry) -> bool:
        """True once the registry changed after this graph was built."""
        return registry.generation != self.generation

    def get(self, tech_id: str) -> Optional[TechRecord]:
        i = self._index.get(tech_id)
        return self._records[i] if i is not None else None

    # ------------------------------------------------------------- adjacency

    def parents(self, tech_id: str) -> List[str]:
        """Present prerequisites (required and alternative), in record order."""
        i = self._index.get(tech_id)
        return self._ids(self._parents[i]) if i is not None else []

    def required_parents(self, tech_id: str) -> List[str]:
        i = self._index.get(tech_id)
        if i is None:
            return []
        kinds = self._parent_kinds[i]
        return self._ids(p for p in self._parents[i] if kinds[p] == EdgeKind.REQUIRED)

    def children(self, tech_id: str) -> List[str]:
        """Techs that list this one as a prerequisite, in registry order."""
        i = self._index.get(tech_id)
        return self._ids(self._children[i]) if i is not None else []

    def edge_kind(self, parent_id: str, child_id: str) -> Optional[EdgeKind]:
        parent = self._index.get(parent_id)
        child = self._index.get(child_id)
        if parent is None or child is None:
            return None
        return self._parent_kinds[child].get(parent)

    def edge_count(self) -> int:
        return sum(len(p) for p in self._parents)

    def roots(self) -> List[str]:
        """
        Techs with no present hard prerequisite, in registry order.

        A tech gated only by OR alternatives is a root: no single parent is
        required, even though its depth still counts the cheapest one.
        """
        return [
            r.id for i, r in enumerate(self._records)
            if EdgeKind.REQUIRED not in self._parent_kinds[i].values()
        ]

    def all_prerequisites(self, tech_id: str) -> List[str]:
        """Transitive prerequisites, sorted by tier then id."""
        start = self._index.get(tech_id)
        if start is None:
            return []
        seen: Set[int] = set()
        queue: Deque[int] = deque(self._parents[start])
        while queue:
            i = queue.popleft()
            if i in seen or i == start:
                continue
            seen.add(i)
            queue.extend(self._parents[i])
        return [r.id for r in sorted((self._records[i] for i in seen), key=lambda r: (r.tier, r.id))]

    # ---------------------------------------------------------------- layers

    def depth(self, tech_id: str) -> int:
        """Resolved depth, -1 for an unknown id."""
        i = self._index.get(tech_id)
        return self._depths[i] if i is not None else -1

    def max_depth(self) -> int:
        return max(self._depths) if self._depths else 0

    def width(self, depth: int) -> int:
        """Number of techs whose final depth equals ``depth``."""
        return self._widths.get(depth, 0)

    def max_width(self) -> int:
        return max(self._widths.values()) if self._widths else 0

    def nodes_at_depth(self, depth: int) -> List[str]:
        return [r.id for i, r in enumerate(self._records) if self._depths[i] == depth]

    def cycle_members(self) -> List[str]:
        """Every tech on a prerequisite cycle, sorted."""
        return sorted(self._records[i].id for component in self._cycles for i in component)

    def cycles(self) -> List[List[str]]:
        return [sorted(self._ids(component)) for component in self._cycles]

    # ----------------------------------------------------------------- paths

    def path_to_root(self, tech_id: str) -> List[str]:
        """
        One canonical path from a root down to ``tech_id``.

        Walks upward choosing the parent with the greatest depth strictly
        below the current one, ties to the smallest id.
        """
        current = self._index.get(tech_id)
        if current is None:
            return []
        path = [current]
        while True:
            below = [p for p in self._parents[current] if self._depths[p] < self._depths[current]]
            if not below:
                break
            current = min(below, key=lambda p: (-self._depths[p], self._records[p].id))
            path.append(current)
        return self._ids(reversed(path))

    def search(self, query: str) -> List[TechRecord]:
        """
        Case-insensitive substring match on id, name, display name and area name.

        A blank or whitespace-only query matches nothing and returns [];
        use TechRegistry.all() to list everything.
        """
        needle = (query or "").strip().lower()
        if not needle:
            return []
        found = []
        for record in self._records:
            haystacks = (
                record.id,
                record.name,
                record.display_name,
                record.area,
                self._areas.get(record.area, ""),
            )
            if any(needle in h.lower() for h in haystacks if h):
                found.append(record)
        return found

    def stats(self) -> Dict[str, int]:
        return {
            "techs": len(self._records),
            "edges": self.edge_count(),
            "roots": len(self.roots()),
            "maxDepth": self.max_depth(),
            "maxWidth": self.max_width(),
            "cycles": len(self._cycles),
        }


def _compile_group(group: PrerequisiteGroup, resolve) -> Optional[Term]:
    if group.op == "NOT":
        return None
    terms = []
    for item in group.items:
        term = _compile_group(item, resolve) if isinstance(item, PrerequisiteGroup) else resolve(item)
        if term is not None:
            terms.append(term)
    if not terms:
        return None
    return ("or" if group.op == "OR" else "and", terms)


def build_graph(source: Union[TechRegistry, RegistrySnapshot]) -> TechGraph:
    """
    Build the prerequisite graph from a registry (or a snapshot of one).

    Side-effect free on the registry. Dangling references and self
    references are dropped with a diagnostic; cycles are bounded.
    """
    snapshot = source.snapshot() if isinstance(source, TechRegistry) else source
    records = snapshot.records
    n = len(records)
    index = {r.id: i for i, r in enumerate(records)}
    diagnostics: List[Diagnostic] = []

    parents: List[List[int]] = [[] for _ in range(n)]
    parent_kinds: List[Dict[int, EdgeKind]] = [{} for _ in range(n)]
    children: List[List[int]] = [[] for _ in range(n)]
    requirements: List[Term] = []

    for i, record in enumerate(records):
        reported: Set[str] = set()

        def resolve(tech_id: str, i=i, record=record, reported=reported) -> Optional[Term]:
            j = index.get(tech_id)
            if j == i:
                if tech_id not in reported:
                    reported.add(tech_id)
                    diagnostics.append(Diagnostic(
                        severity="warning",
                        code="SELF_PREREQUISITE",
                        message=f"{record.id} lists itself as a prerequisite; ignored",
                        file=record.provenance.source_file,
                        line=record.line,
                        tech_id=record.id,
                    ))
                return None
            if j is None:
                if tech_id not in reported:
                    reported.add(tech_id)
                    diagnostics.append(Diagnostic(
                        severity="warning",
                        code="DANGLING_PREREQUISITE",
                        message=f"{record.id} requires unknown technology {tech_id}; edge omitted",
                        file=record.provenance.source_file,
                        line=record.line,
                        tech_id=record.id,
                    ))
                    logger.warning("Dangling prerequisite: %s -> %s", record.id, tech_id)
                return None
            return ("id", j)

        terms = [t for t in (resolve(p) for p in record.prerequisites) if t is not None]
        for group in record.prerequisite_groups:
            term = _compile_group(group, resolve)
            if term is not None:
                terms.append(term)
        requirements.append(("and", terms))

        hard, alternative, _ = classify_requirements(list(record.prerequisites), list(record.prerequisite_groups))
        for tech_id, kind in [(h, EdgeKind.REQUIRED) for h in hard] + [(a, EdgeKind.ALTERNATIVE) for a in alternative]:
            j = index.get(tech_id)
            if j is None or j == i or j in parent_kinds[i]:
                continue
            parents[i].append(j)
            parent_kinds[i][j] = kind

    for i in range(n):
        for j in parents[i]:
            children[j].append(i)

    cycles = _strongly_connected(n, children)
    on_cycle: Set[int] = set()
    for component in cycles:
        on_cycle.update(component)
        members = sorted(records[i].id for i in component)
        first = records[index[members[0]]]
        diagnostics.append(Diagnostic(
            severity="warning",
            code="PREREQUISITE_CYCLE",
            message=f"Prerequisite cycle: {', '.join(members)}",
            file=first.provenance.source_file,
            line=first.line,
            tech_id=first.id,
        ))
        logger.warning("Prerequisite cycle detected: %s", ", ".join(members))

    depths = [0] * n
    assigned = [False] * n
    visits = [0] * n
    frozen = [False] * n
    queue: Deque[int] = deque()
    hard = [[p for p in parents[i] if parent_kinds[i][p] == EdgeKind.REQUIRED] for i in range(n)]

    def value_of(c: int) -> Optional[int]:
        if hard[c]:
            placed = [depths[p] for p in hard[c] if assigned[p]]
            return max(placed) if placed else None
        return _evaluate(requirements[c], depths, assigned)

    for i in range(n):
        if not parents[i]:
            assigned[i] = True
            queue.append(i)

    while True:
        while queue:
            i = queue.popleft()
            for c in children[i]:
                if frozen[c]:
                    continue
                # First assignment waits for the parents that decide the depth
                gate = hard[c] or parents[c]
                if not assigned[c] and not all(assigned[p] for p in gate):
                    continue
                value = value_of(c)
                candidate = 0 if value is None else value + 1
                if assigned[c] and candidate <= depths[c]:
                    continue
                # No acyclic depth reaches |V|
                if visits[c] >= n or candidate >= n:
                    frozen[c] = True
                    diagnostics.append(Diagnostic(
                        severity="warning",
                        code="PREREQUISITE_CYCLE",
                        message=(f"Depth of {records[c].id} frozen at {depths[c]} "
                                 f"after {visits[c]} visits (cycle bound {n})"),
                        file=records[c].provenance.source_file,
                        line=records[c].line,
                        tech_id=records[c].id,
                    ))
                    logger.warning("Depth of %s frozen at %d (cycle)", records[c].id, depths[c])
                    continue
                visits[c] += 1
                depths[c] = candidate
                assigned[c] = True
                queue.append(c)

        pending = [i for i in range(n) if not assigned[i]]
        if not pending:
            break
        # Unreachable from any root: seed the smallest id on a cycle
        seeds = [i for i in pending if i in on_cycle] or pending
        seed = min(seeds, key=lambda i: records[i].id)
        value = value_of(seed)
        depths[seed] = 0 if value is None else min(value + 1, n - 1)
        assigned[seed] = True
        visits[seed] += 1
        queue.append(seed)
        logger.debug("Seeding %s at depth %d (unreachable from roots)", records[seed].id, depths[seed])

    graph = TechGraph(
        records=records,
        areas=dict(snapshot.areas),
        generation=snapshot.generation,
        parents=parents,
        parent_kinds=parent_kinds,
        children=children,
        depths=depths,
        cycles=cycles,
        diagnostics=diagnostics,
    )
    logger.info(
        "Built graph: %d techs, %d edges, max depth %d, max width %d",
        len(graph), graph.edge_count(), graph.max_depth(), graph.max_width(),
    )
    return graph
