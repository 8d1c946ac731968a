"""
Ingest Policies for Technology Records

Defines how the registry treats a record whose id is already present.
"""

from enum import Enum, auto


class IngestPolicy(Enum):
    """The two ingest policies."""

    # Last definition wins completely (base game, then mods in load order)
    REPLACE_ALWAYS = auto()

    # First definition wins; later ones are skipped with a diagnostic
    INSERT_IF_ABSENT = auto()

    @classmethod
    def from_name(cls, name: str) -> 'IngestPolicy':
        """Look up a policy by name, accepting 'replace_always' or 'REPLACE-ALWAYS'."""
        key = name.strip().upper().replace("-", "_")
        try:
            return cls[key]
        except KeyError:
            valid = ", ".join(p.name.lower() for p in cls)
            raise ValueError(f"Unknown ingest policy {name!r} (expected one of: {valid})") from None


DEFAULT_POLICY = IngestPolicy.REPLACE_ALWAYS


def policy_description(policy: IngestPolicy) -> str:
    """Get human-readable description of a policy."""
    descriptions = {
        IngestPolicy.REPLACE_ALWAYS: "Last definition wins - a later source replaces the whole record",
        IngestPolicy.INSERT_IF_ABSENT: "First definition wins - later duplicates are skipped",
    }
    return descriptions.get(policy, "Unknown policy")
