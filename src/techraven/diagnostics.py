"""
Structured diagnostics shared by every stage of the pipeline.

Nothing in techraven raises on malformed game data. Each stage instead
returns Diagnostic objects next to its partial result, so a batch load
can report exactly which file, entry or edge was skipped and why.

Severity levels:
    error   - input was dropped (file tail, entry, record)
    warning - input was kept with a documented fallback
    info    - noteworthy but expected (an override, a cache miss)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class DiagnosticKind(Enum):
    """Error taxonomy: which layer produced the diagnostic."""
    LEX = "lex"
    PARSE = "parse"
    RESOLUTION = "resolution"
    INGEST = "ingest"
    GRAPH = "graph"
    IO = "io"


# Diagnostic code -> taxonomy bucket
CODE_KINDS: Dict[str, DiagnosticKind] = {
    "LEXER_ERROR": DiagnosticKind.LEX,
    "PARSE_ERROR": DiagnosticKind.PARSE,
    "UNCLOSED_BLOCK": DiagnosticKind.PARSE,
    "TOO_MANY_ERRORS": DiagnosticKind.PARSE,
    "TOO_DEEP": DiagnosticKind.PARSE,
    "EXTRACTION_FAILED": DiagnosticKind.PARSE,
    "UNRESOLVED_VARIABLE": DiagnosticKind.RESOLUTION,
    "INVALID_FIELD": DiagnosticKind.RESOLUTION,
    "EMPTY_ID": DiagnosticKind.INGEST,
    "DUPLICATE_SKIPPED": DiagnosticKind.INGEST,
    "DANGLING_PREREQUISITE": DiagnosticKind.GRAPH,
    "SELF_PREREQUISITE": DiagnosticKind.GRAPH,
    "PREREQUISITE_CYCLE": DiagnosticKind.GRAPH,
    "FILE_READ_ERROR": DiagnosticKind.IO,
}

SEVERITIES = ("error", "warning", "info")


@dataclass(frozen=True)
class Diagnostic:
    """A single problem report with enough location data to find the input."""
    severity: str  # "error", "warning", "info"
    code: str
    message: str
    file: str = ""
    line: int = 0
    column: int = 0
    offset: int = -1  # index of the offending token, -1 when unknown
    tech_id: str = ""

    @property
    def kind(self) -> Optional[DiagnosticKind]:
        return CODE_KINDS.get(self.code)

    @property
    def is_error(self) -> bool:
        return self.severity == "error"

    def __str__(self) -> str:
        where = self.file or "<unknown>"
        if self.line:
            where = f"{where}:{self.line}:{self.column}"
        subject = f" [{self.tech_id}]" if self.tech_id else ""
        return f"{where}: {self.severity} {self.code}{subject}: {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "code": self.code,
            "kind": self.kind.value if self.kind else None,
            "message": self.message,
            "file": self.file,
            "line": self.line,
            "column": self.column,
            "offset": self.offset,
            "techId": self.tech_id,
        }


@dataclass
class DiagnosticLog:
    """Append-only collection with a few filtering helpers."""
    items: List[Diagnostic] = field(default_factory=list)

    def add(self, diagnostic: Diagnostic) -> Diagnostic:
        self.items.append(diagnostic)
        return diagnostic

    def extend(self, diagnostics: Iterable[Diagnostic]) -> None:
        self.items.extend(diagnostics)

    def by_code(self, code: str) -> List[Diagnostic]:
        return [d for d in self.items if d.code == code]

    def by_kind(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [d for d in self.items if d.kind == kind]

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.items if d.severity == "error"]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.items if d.severity == "warning"]

    def clear(self) -> None:
        self.items.clear()

    def __len__(self) -> int:
        return len(self.items)

    def __iter__(self):
        return iter(self.items)
