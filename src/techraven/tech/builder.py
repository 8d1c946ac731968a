"""
Record Builder

Walks a parse tree, resolves @variables and @[inline math], and turns each
top-level technology block into a TechRecord.

Variable declarations are collected from the whole document before any
field is resolved, so a variable may be used above its declaration.
Resolution problems never drop a record: the field takes a fallback value
and an UNRESOLVED_VARIABLE / INVALID_FIELD diagnostic is attached.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from techraven.diagnostics import Diagnostic
from techraven.parser.lexer import NUMBER_RE
from techraven.parser.parser import (
    AssignmentNode,
    BlockNode,
    ListNode,
    RootNode,
    ValueNode,
    parse_number,
    parse_source_recovering,
)
from techraven.tech.records import (
    GROUP_OPS,
    PrerequisiteGroup,
    Provenance,
    TechFlags,
    TechRecord,
    classify_requirements,
)

logger = logging.getLogger(__name__)

Number = Union[int, float]

# A top-level block is a technology if it has at least one of these
TECH_FIELDS = frozenset({
    "area", "tier", "cost", "weight", "category", "prerequisites",
    "start_tech", "is_rare", "is_dangerous",
})

MAX_VARIABLE_CHAIN = 32


@dataclass
class ExtractionResult:
    """Records and diagnostics from one document."""
    records: List[TechRecord] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    variables: Dict[str, Any] = field(default_factory=dict)

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "error"]


class ExpressionError(ValueError):
    """Inline math could not be evaluated."""


class VariableScope:
    """
    Document-scope variable table.

    Document declarations shadow the optional globals. A variable whose
    value is another variable reference is followed (with a cycle guard).
    """

    def __init__(self, declared: Dict[str, Any], global_variables: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = {}
        for name, value in (global_variables or {}).items():
            self._values[name.lstrip("@")] = value
        self._values.update(declared)
        self._evaluating: Set[str] = set()

    @classmethod
    def from_document(cls, root: RootNode, global_variables: Optional[Dict[str, Any]] = None) -> 'VariableScope':
        declared = {}
        for name, node in root.variables().items():
            declared[name] = node.to_plain()
        return cls(declared, global_variables)

    def names(self) -> List[str]:
        return list(self._values)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def lookup(self, name: str) -> Optional[Any]:
        """Resolve a variable to a plain value, or None if it is not declared."""
        seen: Set[str] = set()
        current = name.lstrip("@")
        while len(seen) < MAX_VARIABLE_CHAIN:
            if current in seen or current not in self._values:
                return None
            seen.add(current)
            value = self._values[current]
            if isinstance(value, str) and value.startswith("@["):
                if current in self._evaluating:
                    return None
                self._evaluating.add(current)
                try:
                    return self.evaluate(value[2:-1])
                except ExpressionError:
                    return None
                finally:
                    self._evaluating.discard(current)
            if isinstance(value, str) and value.startswith("@"):
                current = value[1:]
                continue
            return value
        return None

    def lookup_number(self, name: str) -> Optional[Number]:
        value = self.lookup(name)
        if isinstance(value, bool):
            return None
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str) and NUMBER_RE.match(value):
            return parse_number(value.lstrip("+"))
        return None

    def evaluate(self, expression: str) -> Number:
        """Evaluate inline math: numbers, variable names, + - * / and parentheses."""
        return _ExpressionEvaluator(expression, self).evaluate()


_EXPR_TOKEN_RE = re.compile(r"\s*(?:(\d+(?:\.\d*)?|\.\d+)|(@?[A-Za-z_][\w.]*)|(\S))")


class _ExpressionEvaluator:
    """Recursive-descent evaluator for the body of @[ ... ]."""

    def __init__(self, text: str, scope: VariableScope):
        self.scope = scope
        self.tokens: List[Tuple[str, str]] = []
        for number, name, symbol in _EXPR_TOKEN_RE.findall(text):
            if number:
                self.tokens.append(("num", number))
            elif name:
                self.tokens.append(("name", name))
            elif symbol:
                self.tokens.append(("op", symbol))
        self.pos = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> Tuple[str, str]:
        token = self._peek()
        if token is None:
            raise ExpressionError("unexpected end of expression")
        self.pos += 1
        return token

    def evaluate(self) -> Number:
        if not self.tokens:
            raise ExpressionError("empty expression")
        try:
            value = self._sum()
        except OverflowError:
            raise ExpressionError("number too large") from None
        except RecursionError:
            raise ExpressionError("expression nested too deeply") from None
        if self._peek() is not None:
            raise ExpressionError(f"unexpected {self._peek()[1]!r}")
        if isinstance(value, float) and value.is_integer():
            return int(value)
        return value

    def _sum(self) -> Number:
        value = self._product()
        while self._peek() in (("op", "+"), ("op", "-")):
            op = self._take()[1]
            right = self._product()
            value = value + right if op == "+" else value - right
        return value

    def _product(self) -> Number:
        value = self._unary()
        while self._peek() in (("op", "*"), ("op", "/")):
            op = self._take()[1]
            right = self._unary()
            if op == "*":
                value = value * right
            else:
                if right == 0:
                    raise ExpressionError("division by zero")
                value = value / right
        return value

    def _unary(self) -> Number:
        if self._peek() == ("op", "-"):
            self._take()
            return -self._unary()
        if self._peek() == ("op", "+"):
            self._take()
            return self._unary()
        return self._atom()

    def _atom(self) -> Number:
        kind, text = self._take()
        if kind == "num":
            return parse_number(text)
        if kind == "name":
            value = self.scope.lookup_number(text)
            if value is None:
                raise ExpressionError(f"undeclared variable {text!r}")
            return value
        if text == "(":
            value = self._sum()
            if self._take() != ("op", ")"):
                raise ExpressionError("missing ')'")
            return value
        raise ExpressionError(f"unexpected {text!r}")


def fallback_digits(name: str, field_name: str) -> Number:
    """
    Recover a number from an undeclared variable name.

    ``<field>N`` inside the name wins (``@tier2cost1`` gives tier 2 and
    cost 1), then trailing digits, then 0.
    """
    match = re.search(re.escape(field_name) + r"(\d+)", name)
    if match:
        return parse_number(match.group(1))
    match = re.search(r"(\d+)$", name)
    if match:
        return parse_number(match.group(1))
    return 0


def is_finite(value: Number) -> bool:
    """False for inf, nan and integers too large to become a float."""
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def is_tech_block(node: Any) -> bool:
    """True for a top-level ``id = { ... }`` block holding any technology field."""
    if not isinstance(node, BlockNode) or node.name.startswith("@"):
        return False
    return any(key in TECH_FIELDS for key, _ in node.entries())


class RecordBuilder:
    """Builds TechRecords from technology blocks of one document."""

    def __init__(self, scope: VariableScope, provenance: Provenance):
        self.scope = scope
        self.provenance = provenance
        self.diagnostics: List[Diagnostic] = []
        self._tech_id = ""

    def _diag(self, severity: str, code: str, message: str, node: Any = None) -> None:
        diagnostic = Diagnostic(
            severity=severity,
            code=code,
            message=message,
            file=self.provenance.source_file,
            line=getattr(node, "line", 0),
            column=getattr(node, "column", 0),
            tech_id=self._tech_id,
        )
        self.diagnostics.append(diagnostic)
        logger.debug("%s", diagnostic)

    # ---------------------------------------------------------------- scalars

    def _resolve_number(self, node: Any, field_name: str, default: Number) -> Number:
        if isinstance(node, ValueNode):
            if node.value_type == "number":
                return parse_number(node.value)
            if node.value_type == "variable":
                value = self.scope.lookup_number(node.value)
                if value is not None:
                    return value
                fallback = fallback_digits(node.value, field_name)
                self._diag(
                    "warning", "UNRESOLVED_VARIABLE",
                    f"Undeclared variable @{node.value} in '{field_name}', using {fallback}",
                    node,
                )
                return fallback
            if node.value_type == "expression":
                try:
                    return self.scope.evaluate(node.value)
                except ExpressionError as e:
                    fallback = fallback_digits(node.value.strip(), field_name)
                    self._diag(
                        "warning", "UNRESOLVED_VARIABLE",
                        f"Cannot evaluate @[{node.value}] in '{field_name}' ({e}), using {fallback}",
                        node,
                    )
                    return fallback
            if NUMBER_RE.match(node.value):
                return parse_number(node.value.lstrip("+"))
        self._diag("warning", "INVALID_FIELD", f"'{field_name}' is not a number, using {default}", node)
        return default

    def _number(self, node: Any, field_name: str, default: Number = 0) -> Number:
        value = self._resolve_number(node, field_name, default)
        if not is_finite(value):
            self._diag("warning", "INVALID_FIELD", f"'{field_name}' is not a finite number, using {default}", node)
            return default
        return value

    def _integer(self, node: Any, field_name: str) -> int:
        value = self._number(node, field_name)
        if isinstance(value, float) and not value.is_integer():
            self._diag("warning", "INVALID_FIELD", f"'{field_name}' = {value} truncated to {int(value)}", node)
        return int(value)

    def _text(self, node: Any, field_name: str) -> str:
        if isinstance(node, ValueNode):
            if node.value_type == "variable":
                value = self.scope.lookup(node.value)
                if value is None or isinstance(value, (list, dict)):
                    self._diag(
                        "warning", "UNRESOLVED_VARIABLE",
                        f"Undeclared variable @{node.value} in '{field_name}'",
                        node,
                    )
                    return ""
                return str(value)
            return node.value
        self._diag("warning", "INVALID_FIELD", f"'{field_name}' expects a single value", node)
        return ""

    def _flag(self, node: Any, field_name: str, default: bool = False) -> bool:
        if isinstance(node, ValueNode):
            if node.value_type == "bool":
                return node.value == "yes"
            if node.value_type == "variable":
                value = self.scope.lookup(node.value)
                if isinstance(value, bool):
                    return value
                if value in ("yes", "no"):
                    return value == "yes"
        self._diag("warning", "INVALID_FIELD", f"'{field_name}' expects yes or no", node)
        return default

    def _id_list(self, node: Any, field_name: str) -> List[str]:
        """Ids from a single scalar, an implicit array or a block of bare values."""
        if isinstance(node, ValueNode):
            return [self._text(node, field_name)]
        if isinstance(node, ListNode):
            return [self._text(item, field_name) for item in node.items]
        ids = []
        for child in node.children:
            if isinstance(child, ValueNode):
                ids.append(self._text(child, field_name))
            else:
                self._diag("warning", "INVALID_FIELD", f"Unexpected keyed entry in '{field_name}'", child)
        return ids

    # ---------------------------------------------------------- prerequisites

    def _group(self, block: BlockNode, op: str) -> PrerequisiteGroup:
        items: List[Union[str, PrerequisiteGroup]] = []
        for child in block.children:
            if isinstance(child, ValueNode):
                items.append(self._text(child, "prerequisites"))
            elif isinstance(child, BlockNode) and child.name.upper() in GROUP_OPS:
                items.append(self._group(child, child.name.upper()))
            else:
                self._diag("warning", "INVALID_FIELD", f"Unexpected entry in {op} group", child)
        return PrerequisiteGroup(op=op, items=tuple(i for i in items if i != ""))

    def _prerequisites(self, node: Any) -> Tuple[List[str], List[PrerequisiteGroup]]:
        """Flat ids and AND/OR/NOT groups from a prerequisites value."""
        if not isinstance(node, BlockNode):
            return [i for i in self._id_list(node, "prerequisites") if i], []
        flat: List[str] = []
        groups: List[PrerequisiteGroup] = []
        for child in node.children:
            if isinstance(child, ValueNode):
                tech_id = self._text(child, "prerequisites")
                if tech_id:
                    flat.append(tech_id)
            elif isinstance(child, BlockNode) and child.name.upper() in GROUP_OPS:
                groups.append(self._group(child, child.name.upper()))
            else:
                self._diag("warning", "INVALID_FIELD", "Unexpected keyed entry in 'prerequisites'", child)
        return flat, groups

    def _unlocks(self, node: Any) -> List[str]:
        """Titles of the ``prereqfor_desc`` entries (what researching this shows as unlocked)."""
        if not isinstance(node, BlockNode):
            return []
        unlocks = []
        for key, value in node.entries():
            title = value.get("title") if isinstance(value, BlockNode) else None
            if isinstance(title, ValueNode):
                unlocks.append(title.value)
            else:
                unlocks.append(key)
        return unlocks

    # ------------------------------------------------------------------ build

    def build(self, block: BlockNode) -> TechRecord:
        """Build one record. Never raises; problems become diagnostics."""
        self._tech_id = block.name
        fields: Dict[str, Any] = {}
        flags: Dict[str, bool] = {}
        flat: List[str] = []
        groups: List[PrerequisiteGroup] = []
        unlocks: List[str] = []
        extras: List[Tuple[str, Any]] = []

        for key, value in block.entries():
            if key == "area":
                fields["area"] = self._text(value, key)
            elif key == "tier":
                fields["tier"] = self._integer(value, key)
            elif key in ("cost", "weight"):
                fields[key] = self._number(value, key)
            elif key == "cost_multiplier":
                fields[key] = float(self._number(value, key, default=1.0))
            elif key == "category":
                fields["category"] = tuple(c for c in self._id_list(value, key) if c)
            elif key == "start_tech":
                flags["is_starting_tech"] = self._flag(value, key)
            elif key in ("is_rare", "is_dangerous"):
                flags[key] = self._flag(value, key)
            elif key == "is_reverse_engineerable":
                fields[key] = self._flag(value, key, default=True)
            elif key in ("gateway", "icon", "ai_update_type"):
                fields[key] = self._text(value, key)
            elif key == "prerequisites":
                # Repeated blocks accumulate
                more_flat, more_groups = self._prerequisites(value)
                flat.extend(more_flat)
                groups.extend(more_groups)
            elif key == "prereqfor_desc":
                unlocks.extend(self._unlocks(value))
            elif key.startswith("unlock"):
                unlocks.extend(i for i in self._id_list(value, key) if i)
            else:
                extras.append((key, value.to_plain()))

        hard, _, _ = classify_requirements(flat, groups)
        self._tech_id = ""
        return TechRecord(
            id=block.name,
            name=block.name,
            flags=TechFlags(**flags),
            prerequisites=tuple(hard),
            prerequisite_groups=tuple(groups),
            unlocks=tuple(unlocks),
            extras=tuple(extras),
            provenance=self.provenance,
            line=block.line,
            **fields,
        )


def build_record(
    block: BlockNode,
    scope: VariableScope,
    provenance: Provenance,
) -> Tuple[TechRecord, List[Diagnostic]]:
    """Build a single record from a technology block."""
    builder = RecordBuilder(scope, provenance)
    record = builder.build(block)
    return record, builder.diagnostics


def extract_from_ast(
    root: RootNode,
    provenance: Provenance,
    global_variables: Optional[Dict[str, Any]] = None,
) -> ExtractionResult:
    """Extract every technology record from an already parsed document."""
    scope = VariableScope.from_document(root, global_variables)
    builder = RecordBuilder(scope, provenance)
    result = ExtractionResult(variables=scope.as_dict())

    for child in root.children:
        if is_tech_block(child):
            result.records.append(builder.build(child))
        elif isinstance(child, AssignmentNode) and child.key.startswith("@"):
            continue
        else:
            logger.debug("%s:%d: skipping non-technology entry %r",
                         provenance.source_file, child.line, getattr(child, "name", getattr(child, "key", "")))

    result.diagnostics.extend(builder.diagnostics)
    return result


def extract_records(
    text: str,
    provenance: Optional[Provenance] = None,
    global_variables: Optional[Dict[str, Any]] = None,
    max_errors: Optional[int] = None,
) -> ExtractionResult:
    """
    Parse text and extract its technology records.

    Pure function of its inputs: safe to call from worker threads.

    Args:
        text: Script source
        provenance: Source layer for the records (defaults to base game)
        global_variables: Externally declared variables; document
            declarations shadow them
        max_errors: Per-file parse error cap

    Returns:
        ExtractionResult with records in document order and all
        lexer, parser and resolution diagnostics
    """
    provenance = provenance or Provenance()
    parsed = parse_source_recovering(text, provenance.source_file or "<text>", max_errors=max_errors)
    result = extract_from_ast(parsed.ast, provenance, global_variables)
    result.diagnostics = parsed.diagnostics + result.diagnostics
    return result
