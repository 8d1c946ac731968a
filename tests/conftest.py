"""
Pytest configuration and shared fixtures.
"""

import sys
from pathlib import Path

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

# Import techraven modules
from techraven.config import TechravenConfig
from techraven.parser.parser import RootNode, BlockNode, AssignmentNode
from techraven.tech import TechRegistry, TechSource


# =============================================================================
# SOURCE SNIPPETS
# =============================================================================

TWO_TECHS = '''
tech_a = { area = physics tier = 0 }
tech_b = { area = physics tier = 1 prerequisites = { "tech_a" } }
'''


# =============================================================================
# PATH FIXTURES
# =============================================================================

@pytest.fixture
def fixtures_dir():
    """Path to test fixtures directory."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def technology_dir(fixtures_dir):
    """Path to base game technology fixtures."""
    return fixtures_dir / "technology"


@pytest.fixture
def mod_dir(fixtures_dir):
    """Root folder of the overriding test mod."""
    return fixtures_dir / "mods" / "better_lasers"


# =============================================================================
# CONFIG / SOURCE FIXTURES
# =============================================================================

@pytest.fixture
def config(monkeypatch):
    """Default configuration, isolated from user config files and environment."""
    import techraven.config as config_module
    monkeypatch.setattr(config_module, "CONFIG_SEARCH_PATHS", [])
    return TechravenConfig(environ={})


@pytest.fixture
def base_source(technology_dir):
    """The base game, loaded from explicit files."""
    return TechSource(files=sorted(technology_dir.glob("*.txt")))


@pytest.fixture
def mod_source(mod_dir):
    """The better_lasers mod, discovered from its root folder."""
    return TechSource("better_lasers", "Better Lasers", load_order=1, root=mod_dir)


@pytest.fixture
def registry():
    return TechRegistry()


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def extract_block_keys(ast: RootNode, prefix: str = None) -> list:
    """Extract all top-level block names from a parse tree."""
    keys = []
    for child in ast.children:
        if isinstance(child, BlockNode):
            if prefix is None or child.name.startswith(prefix):
                keys.append(child.name)
    return keys


def get_assignment_value(block: BlockNode, key: str):
    """Get the value of an assignment within a block."""
    for child in block.children:
        if isinstance(child, AssignmentNode) and child.key == key:
            return child.value
    return None
