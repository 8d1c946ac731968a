"""
Tests for the prerequisite graph: roots, depth, width, paths and search.
"""

import pytest
from techraven.tech import EdgeKind, TechRegistry, build_graph, extract_records

from conftest import TWO_TECHS


def graph_of(text, registry=None):
    registry = registry if registry is not None else TechRegistry()
    for record in extract_records(text).records:
        registry.ingest(record)
    return build_graph(registry), registry


def graph_codes(graph):
    return [d.code for d in graph.diagnostics]


# e is declared before its parents to show order independence
DIAMOND = '''
tech_e = { tier = 4 prerequisites = { "tech_d" "tech_a" } }
tech_a = { tier = 0 }
tech_b = { tier = 1 prerequisites = { "tech_a" } }
tech_c = { tier = 1 prerequisites = { "tech_a" } }
tech_d = { tier = 2 prerequisites = { "tech_c" "tech_b" } }
'''


class TestBasics:
    """The two-tech example."""

    def test_two_techs(self):
        graph, _ = graph_of(TWO_TECHS)
        assert len(graph) == 2
        assert graph.roots() == ["tech_a"]
        assert graph.depth("tech_a") == 0
        assert graph.depth("tech_b") == 1
        assert graph.path_to_root("tech_b") == ["tech_a", "tech_b"]
        assert graph.diagnostics == []

    def test_adjacency(self):
        graph, _ = graph_of(TWO_TECHS)
        assert graph.parents("tech_b") == ["tech_a"]
        assert graph.children("tech_a") == ["tech_b"]
        assert graph.edge_kind("tech_a", "tech_b") == EdgeKind.REQUIRED
        assert graph.edge_count() == 1

    def test_unknown_ids(self):
        graph, _ = graph_of(TWO_TECHS)
        assert graph.depth("nope") == -1
        assert graph.path_to_root("nope") == []
        assert graph.parents("nope") == []
        assert graph.children("nope") == []
        assert graph.edge_kind("nope", "tech_b") is None

    def test_empty_registry(self):
        graph = build_graph(TechRegistry())
        assert graph.roots() == []
        assert graph.max_depth() == 0
        assert graph.max_width() == 0


class TestDepth:
    """Depth law and layering."""

    def test_depth_law(self):
        """depth = 1 + max over hard parents, regardless of declaration order."""
        graph, registry = graph_of(DIAMOND)
        for record in registry.all():
            parents = graph.required_parents(record.id)
            if parents:
                assert graph.depth(record.id) == 1 + max(graph.depth(p) for p in parents)
            else:
                assert graph.depth(record.id) == 0
        assert graph.depth("tech_e") == 3

    def test_widths(self):
        graph, _ = graph_of(DIAMOND)
        assert graph.max_depth() == 3
        assert graph.width(1) == 2
        assert graph.width(7) == 0
        assert graph.max_width() == 2
        assert graph.nodes_at_depth(1) == ["tech_b", "tech_c"]

    def test_or_group_uses_minimum(self):
        """An OR group counts its shallowest alternative."""
        text = '''
        r = { tier = 0 }
        x1 = { tier = 1 prerequisites = { "r" } }
        x2 = { tier = 2 prerequisites = { "x1" } }
        t = { tier = 1 prerequisites = { OR = { "x2" "r" } } }
        '''
        graph, _ = graph_of(text)
        assert graph.depth("t") == 1
        assert graph.parents("t") == ["x2", "r"]
        assert graph.required_parents("t") == []
        assert graph.edge_kind("x2", "t") == EdgeKind.ALTERNATIVE
        assert "t" in graph.roots()

    def test_root_with_only_alternatives(self):
        """No hard parent makes a root; its depth still follows the OR group."""
        text = '''
        a = { tier = 0 }
        b = { tier = 1 prerequisites = { "a" } }
        t = { tier = 2 prerequisites = { OR = { "b" } } }
        '''
        graph, _ = graph_of(text)
        assert graph.roots() == ["a", "t"]
        assert graph.depth("t") == 2

    def test_hard_parents_outrank_or(self):
        """With a present hard parent, a deeper OR alternative does not count."""
        text = '''
        a = { tier = 0 }
        b = { tier = 1 prerequisites = { "a" } }
        c = { tier = 2 prerequisites = { "b" } }
        t = { tier = 1 prerequisites = { AND = { "a" } OR = { "c" } } }
        '''
        graph, _ = graph_of(text)
        assert graph.required_parents("t") == ["a"]
        assert graph.edge_kind("c", "t") == EdgeKind.ALTERNATIVE
        assert graph.depth("t") == 1
        assert graph.depth("t") == 1 + max(graph.depth(p) for p in graph.required_parents("t"))
        assert "t" not in graph.roots()

    def test_not_group_ignored(self):
        """Exclusions never create edges."""
        graph, _ = graph_of('a = { tier = 0 }\nt = { tier = 1 prerequisites = { NOT = { "a" } } }')
        assert graph.roots() == ["a", "t"]
        assert graph.children("a") == []


class TestIntegrity:
    """Dangling references, self references and cycles."""

    def test_dangling_prerequisite(self):
        """Unknown ids are dropped from edges but kept on the record."""
        graph, registry = graph_of('tech_y = { prerequisites = { "tech_missing" } }')
        assert graph.parents("tech_y") == []
        assert graph.roots() == ["tech_y"]
        assert registry.get("tech_y").prerequisites == ("tech_missing",)
        assert graph_codes(graph) == ["DANGLING_PREREQUISITE"]
        assert graph.diagnostics[0].severity == "warning"

    def test_dangling_with_valid_edge(self):
        """A node stays reachable through its other edges."""
        graph, _ = graph_of('a = { tier = 0 }\nb = { prerequisites = { "a" "ghost" } }')
        assert graph.parents("b") == ["a"]
        assert graph.depth("b") == 1

    def test_self_prerequisite(self):
        graph, _ = graph_of('a = { tier = 0 prerequisites = { "a" } }')
        assert graph.roots() == ["a"]
        assert graph_codes(graph) == ["SELF_PREREQUISITE"]

    def test_unreachable_cycle(self):
        """A pure cycle terminates and is reported."""
        text = '''
        a = { tier = 1 prerequisites = { "b" } }
        b = { tier = 1 prerequisites = { "a" } }
        c = { tier = 2 prerequisites = { "a" } }
        '''
        graph, _ = graph_of(text)
        assert graph.cycle_members() == ["a", "b"]
        assert graph.cycles() == [["a", "b"]]
        assert "PREREQUISITE_CYCLE" in graph_codes(graph)
        assert graph.roots() == []
        assert all(0 <= graph.depth(t) < len(graph) for t in "abc")
        assert graph.depth("c") >= 1

    def test_reachable_cycle_bounded(self):
        """A cycle hanging off a root is bounded by the revisit limit."""
        text = '''
        r = { tier = 0 }
        a = { tier = 1 prerequisites = { "r" "b" } }
        b = { tier = 1 prerequisites = { "a" } }
        '''
        graph, _ = graph_of(text)
        assert graph.roots() == ["r"]
        assert graph.cycle_members() == ["a", "b"]
        assert graph.depth("a") == 1
        assert graph.depth("b") == 2
        assert "PREREQUISITE_CYCLE" in graph_codes(graph)

    def test_cycle_depths_never_reach_node_count(self):
        """Every depth on and behind a cycle stays below |V|; the freeze is reported on its own."""
        text = '''
        r = { tier = 0 }
        a = { tier = 1 prerequisites = { "r" "d" } }
        b = { tier = 1 prerequisites = { "a" } }
        c = { tier = 1 prerequisites = { "b" } }
        d = { tier = 1 prerequisites = { "c" } }
        '''
        graph, registry = graph_of(text)
        assert all(graph.depth(r.id) < len(graph) for r in registry.all())
        assert [graph.depth(t) for t in "rabcd"] == [0, 1, 2, 3, 4]

        messages = [d.message for d in graph.diagnostics if d.code == "PREREQUISITE_CYCLE"]
        assert "Prerequisite cycle: a, b, c, d" in messages
        frozen = [m for m in messages if "frozen at" in m]
        assert frozen == ["Depth of a frozen at 1 after 1 visits (cycle bound 5)"]


class TestPaths:
    """path_to_root and all_prerequisites."""

    def test_canonical_path_tie_break(self):
        """Equal-depth parents: the smallest id is taken."""
        graph, _ = graph_of(DIAMOND)
        assert graph.path_to_root("tech_d") == ["tech_a", "tech_b", "tech_d"]

    def test_path_prefers_deepest_parent(self):
        """tech_e skips its shallow parent tech_a."""
        graph, _ = graph_of(DIAMOND)
        assert graph.path_to_root("tech_e") == ["tech_a", "tech_b", "tech_d", "tech_e"]

    def test_root_path(self):
        graph, _ = graph_of(DIAMOND)
        assert graph.path_to_root("tech_a") == ["tech_a"]

    def test_all_prerequisites(self):
        """Transitive closure sorted by tier then id."""
        graph, _ = graph_of(DIAMOND)
        assert graph.all_prerequisites("tech_e") == ["tech_a", "tech_b", "tech_c", "tech_d"]
        assert graph.all_prerequisites("tech_a") == []


class TestSearch:
    """Substring search."""

    @pytest.fixture
    def graph(self):
        text = '''
        tech_lasers_1 = { area = physics tier = 0 }
        tech_mining_1 = { area = engineering tier = 0 }
        tech_psi = { area = society tier = 1 }
        '''
        registry = TechRegistry()
        for record in extract_records(text).records:
            registry.ingest(record)
        registry.apply_display_names({"tech_psi": "Psionic Theory"})
        return build_graph(registry)

    def test_case_insensitive_id(self, graph):
        assert [r.id for r in graph.search("LASER")] == ["tech_lasers_1"]

    def test_display_name(self, graph):
        assert [r.id for r in graph.search("psionic")] == ["tech_psi"]

    def test_area_name(self, graph):
        """'Engineering' matches by area."""
        assert [r.id for r in graph.search("engineer")] == ["tech_mining_1"]

    def test_registry_order(self, graph):
        assert [r.id for r in graph.search("tech_")] == ["tech_lasers_1", "tech_mining_1", "tech_psi"]

    def test_blank_query(self, graph):
        assert graph.search("") == []
        assert graph.search("   ") == []


class TestRebuild:
    """Graph validity relative to the registry."""

    def test_stale_after_ingest(self):
        graph, registry = graph_of(TWO_TECHS)
        assert not graph.is_stale(registry)
        for record in extract_records('tech_c = { tier = 2 prerequisites = { "tech_b" } }').records:
            registry.ingest(record)
        assert graph.is_stale(registry)
        assert "tech_c" not in graph
        rebuilt = build_graph(registry)
        assert rebuilt.depth("tech_c") == 2

    def test_build_does_not_touch_registry(self):
        _, registry = graph_of(TWO_TECHS)
        generation = registry.generation
        build_graph(registry)
        build_graph(registry.snapshot())
        assert registry.generation == generation

    def test_stats(self):
        graph, _ = graph_of(DIAMOND)
        assert graph.stats() == {
            "techs": 5, "edges": 6, "roots": 1, "maxDepth": 3, "maxWidth": 2, "cycles": 0,
        }
