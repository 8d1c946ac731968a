"""
Technology Script Parser

Converts a token stream from the lexer into a parse tree.
Handles nested blocks, key = value statements, implicit arrays
(``key = a b c``) and bare values inside blocks (``{ "tech_a" "tech_b" }``).
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from techraven.diagnostics import Diagnostic
from techraven.parser.lexer import Lexer, LexerError, SCALAR_TYPES, Token, TokenType, read_source


class NodeType(Enum):
    """Types of parse tree nodes."""
    ROOT = auto()           # Top-level container
    BLOCK = auto()          # name = { ... }
    ASSIGNMENT = auto()     # key = value
    VALUE = auto()          # scalar
    LIST = auto()           # key = a b c (implicit array)


@dataclass
class ASTNode:
    """Base class for parse tree nodes."""
    node_type: NodeType = None  # Set by subclasses in __post_init__
    line: int = 0
    column: int = 0


@dataclass
class ValueNode(ASTNode):
    """A scalar (string, number, identifier, boolean, variable reference, inline expression)."""
    value: str = ""
    value_type: str = "identifier"  # 'string', 'number', 'identifier', 'bool', 'variable', 'expression'

    def __post_init__(self):
        self.node_type = NodeType.VALUE

    def __repr__(self):
        return f"Value({self.value!r}, {self.value_type})"

    @property
    def is_variable(self) -> bool:
        return self.value_type in ('variable', 'expression')

    def to_plain(self) -> Any:
        """Decode to a plain Python value. Variables keep their ``@`` spelling."""
        if self.value_type == 'number':
            return parse_number(self.value)
        if self.value_type == 'bool':
            return self.value == 'yes'
        if self.value_type == 'variable':
            return f"@{self.value}"
        if self.value_type == 'expression':
            return f"@[{self.value}]"
        return self.value


@dataclass
class ListNode(ASTNode):
    """An implicit array: key = item1 item2 item3"""
    items: List[ValueNode] = field(default_factory=list)

    def __post_init__(self):
        self.node_type = NodeType.LIST

    def __repr__(self):
        return f"List({self.items})"

    def to_plain(self) -> List[Any]:
        return [item.to_plain() for item in self.items]


@dataclass
class AssignmentNode(ASTNode):
    """A key = value assignment with a scalar or implicit-array value."""
    key: str = ""
    operator: str = "="  # '=', '<', '>', '<=', '>=', '!=', '=='
    value: Union[ValueNode, ListNode] = None

    def __post_init__(self):
        self.node_type = NodeType.ASSIGNMENT

    def __repr__(self):
        return f"Assignment({self.key} {self.operator} {self.value})"


@dataclass
class BlockNode(ASTNode):
    """A named block: name = { contents }"""
    name: str = ""
    children: List[Union[AssignmentNode, 'BlockNode', ValueNode]] = field(default_factory=list)
    operator: str = '='

    def __post_init__(self):
        self.node_type = NodeType.BLOCK

    def __repr__(self):
        return f"Block({self.name}, {len(self.children)} children)"

    def entries(self) -> Iterator[Tuple[str, Union[ValueNode, ListNode, 'BlockNode']]]:
        """Yield (key, value) for each keyed child, in source order."""
        for child in self.children:
            if isinstance(child, AssignmentNode):
                yield child.key, child.value
            elif isinstance(child, BlockNode):
                yield child.name, child

    def get(self, key: str) -> Optional[Union[ValueNode, ListNode, 'BlockNode']]:
        """Value of the last child with this key (later definitions win)."""
        found = None
        for child_key, value in self.entries():
            if child_key == key:
                found = value
        return found

    def has(self, key: str) -> bool:
        return any(child_key == key for child_key, _ in self.entries())

    def values(self) -> List[ValueNode]:
        """Bare (keyless) scalars inside the block."""
        return [c for c in self.children if isinstance(c, ValueNode)]

    def to_plain(self) -> List[List[Any]]:
        """
        Convert to ordered, JSON-friendly data.

        Each child becomes a ``[key, value]`` pair; bare values use ``None``
        as key. Pairs with a non-'=' operator carry it as a third element.
        """
        pairs = []
        for child in self.children:
            if isinstance(child, ValueNode):
                pairs.append([None, child.to_plain()])
            elif isinstance(child, BlockNode):
                pair = [child.name, child.to_plain()]
                if child.operator != '=':
                    pair.append(child.operator)
                pairs.append(pair)
            elif isinstance(child, AssignmentNode):
                pair = [child.key, child.value.to_plain()]
                if child.operator != '=':
                    pair.append(child.operator)
                pairs.append(pair)
        return pairs


@dataclass
class RootNode(ASTNode):
    """Root of the parse tree, contains all top-level statements."""
    children: List[Union[BlockNode, AssignmentNode]] = field(default_factory=list)
    filename: str = "<unknown>"

    def __post_init__(self):
        self.node_type = NodeType.ROOT

    def __repr__(self):
        return f"Root({self.filename}, {len(self.children)} children)"

    def get_blocks(self, name_prefix: str = None) -> List[BlockNode]:
        """Get all top-level blocks, optionally filtered by name prefix."""
        blocks = [c for c in self.children if isinstance(c, BlockNode)]
        if name_prefix:
            blocks = [b for b in blocks if b.name.startswith(name_prefix)]
        return blocks

    def get_block(self, name: str) -> Optional[BlockNode]:
        """Get a specific block by exact name."""
        for child in self.children:
            if isinstance(child, BlockNode) and child.name == name:
                return child
        return None

    def variables(self) -> Dict[str, Union[ValueNode, ListNode]]:
        """
        Collect every ``@name = value`` declaration in the document.

        Keys are variable names without ``@``. A later declaration of the
        same name replaces an earlier one.
        """
        declared = {}
        for child in self.children:
            if isinstance(child, AssignmentNode) and child.key.startswith('@'):
                declared[child.key[1:]] = child.value
        return declared


def parse_number(text: str) -> Union[int, float]:
    """
    Decode a NUMBER token: integers stay int, anything with a dot is float.

    Never raises for a token the lexer accepted. Decimals too large for a
    float come back as ``inf``, as do integers past the interpreter's
    digit limit; callers that need a finite value must check.
    """
    if '.' in text:
        return float(text)
    try:
        return int(text)
    except ValueError:
        return float(text)


class ParseError(Exception):
    """Error during parsing."""
    def __init__(self, message: str, token: Token = None, offset: int = -1, code: str = "PARSE_ERROR"):
        self.token = token
        self.line = token.line if token else 0
        self.column = token.column if token else 0
        self.offset = offset
        self.message = message
        self.code = code
        if token:
            super().__init__(f"Parse error at line {token.line}, column {token.column}: {message}")
        else:
            super().__init__(f"Parse error: {message}")


@dataclass
class ParseResult:
    """Result of parsing with error recovery."""
    ast: RootNode
    diagnostics: List[Diagnostic]
    success: bool
    token_count: int = 0

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "error"]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == "warning"]


class Parser:
    """
    Strict recursive-descent parser for technology script.

    Grammar:
        document  := statement*
        statement := key op value          (op is '=' or a comparison)
        value     := scalar | block | scalar scalar+
        block     := '{' (statement | scalar | block)* '}'

    Usage:
        parser = Parser(tokens)
        ast = parser.parse()
    """

    OPERATORS = {
        TokenType.EQUALS: '=',
        TokenType.LESS_THAN: '<',
        TokenType.GREATER_THAN: '>',
        TokenType.LESS_EQUAL: '<=',
        TokenType.GREATER_EQUAL: '>=',
        TokenType.NOT_EQUAL: '!=',
        TokenType.COMPARE_EQUAL: '==',
    }

    VALUE_TYPES = {
        TokenType.IDENTIFIER: 'identifier',
        TokenType.STRING: 'string',
        TokenType.NUMBER: 'number',
        TokenType.BOOL: 'bool',
        TokenType.VARIABLE: 'variable',
        TokenType.EXPRESSION: 'expression',
    }

    # Nesting limit; each level costs two Python stack frames
    MAX_DEPTH = 200

    def __init__(self, tokens: List[Token], filename: str = "<unknown>"):
        self.tokens = tokens
        if not tokens or tokens[-1].type != TokenType.EOF:
            last = tokens[-1] if tokens else None
            self.tokens = list(tokens) + [Token(
                TokenType.EOF, '', last.line if last else 1, last.column if last else 1,
                last.offset + len(last.raw) if last else 0, '')]
        self.filename = filename
        self.pos = 0
        self.length = len(self.tokens)
        self.depth = 0

    def _current(self) -> Token:
        """Get current token (the EOF token once exhausted)."""
        if self.pos >= self.length:
            return self.tokens[-1]
        return self.tokens[self.pos]

    def _peek(self, offset: int = 1) -> Token:
        """Peek ahead by offset tokens."""
        pos = self.pos + offset
        if pos >= self.length:
            return self.tokens[-1]
        return self.tokens[pos]

    def _advance(self) -> Token:
        """Advance one token and return the previous one."""
        token = self._current()
        if self.pos < self.length:
            self.pos += 1
        return token

    def _error(self, message: str, token: Token = None, code: str = "PARSE_ERROR") -> ParseError:
        return ParseError(message, token or self._current(), offset=self.pos, code=code)

    def _is_operator(self, token: Token) -> bool:
        return token.type in self.OPERATORS

    def _at_statement_start(self) -> bool:
        """True when the current token is a key followed by an operator."""
        return self._current().type in SCALAR_TYPES and self._is_operator(self._peek())

    def parse(self) -> RootNode:
        """Parse the token stream into a parse tree."""
        root = RootNode(filename=self.filename, line=1, column=1)

        while self._current().type != TokenType.EOF:
            root.children.append(self._parse_statement(top_level=True))

        return root

    def _parse_scalar(self) -> ValueNode:
        token = self._advance()
        return ValueNode(
            value=token.value,
            value_type=self.VALUE_TYPES[token.type],
            line=token.line,
            column=token.column,
        )

    def _parse_statement(self, top_level: bool = False) -> Union[AssignmentNode, BlockNode, ValueNode]:
        """Parse ``key op value``; inside blocks a bare scalar is also accepted."""
        key_token = self._current()

        if key_token.type == TokenType.RBRACE and top_level:
            raise self._error("Unexpected closing brace '}' at top level (unbalanced braces?)")
        if key_token.type == TokenType.LBRACE:
            if top_level:
                raise self._error("Unexpected '{' at top level")
            # Anonymous block inside a block
            return BlockNode(
                name="",
                children=self._parse_block_contents(),
                line=key_token.line,
                column=key_token.column,
            )
        if key_token.type not in SCALAR_TYPES:
            raise self._error(f"Unexpected token {key_token.type.name}")

        op_token = self._peek()
        if not self._is_operator(op_token):
            if top_level:
                raise self._error(f"Expected '=' after {key_token.value!r}", key_token)
            # Bare value inside a block: { "tech_a" "tech_b" }
            return self._parse_scalar()

        self._advance()  # key
        self._advance()  # operator
        operator = self.OPERATORS[op_token.type]
        key = key_token.value
        if key_token.type == TokenType.VARIABLE:
            key = f"@{key}"
        elif key_token.type == TokenType.EXPRESSION:
            raise self._error("Inline expression cannot be used as a key", key_token)

        value_token = self._current()

        if value_token.type == TokenType.LBRACE:
            return BlockNode(
                name=key,
                operator=operator,
                children=self._parse_block_contents(),
                line=key_token.line,
                column=key_token.column,
            )

        if value_token.type in SCALAR_TYPES:
            items = [self._parse_scalar()]
            # Implicit array: further scalars that are not themselves keys
            while self._current().type in SCALAR_TYPES and not self._is_operator(self._peek()):
                items.append(self._parse_scalar())
            if len(items) == 1:
                value = items[0]
            else:
                value = ListNode(items=items, line=items[0].line, column=items[0].column)
            return AssignmentNode(
                key=key,
                operator=operator,
                value=value,
                line=key_token.line,
                column=key_token.column,
            )

        if value_token.type == TokenType.EOF:
            raise self._error("Expected value after operator, got end of file", op_token)
        raise self._error(f"Expected value after operator, got {value_token.type.name}", value_token)

    def _parse_block_contents(self) -> List[Union[AssignmentNode, BlockNode, ValueNode]]:
        """Parse the contents of a block (inside braces)."""
        open_brace = self._current()
        if open_brace.type != TokenType.LBRACE:
            raise self._error("Expected '{'")
        if self.depth >= self.MAX_DEPTH:
            raise self._error(f"Blocks nested deeper than {self.MAX_DEPTH} levels", open_brace, code="TOO_DEEP")
        self._advance()
        self.depth += 1

        items = []
        while True:
            token = self._current()
            if token.type == TokenType.EOF:
                raise self._error(
                    f"Unexpected end of file in block opened at line {open_brace.line} (missing closing '}}')",
                    open_brace,
                    code="UNCLOSED_BLOCK",
                )
            if token.type == TokenType.RBRACE:
                self._advance()
                break
            items.append(self._parse_statement())

        self.depth -= 1
        return items


class RecoveringParser(Parser):
    """
    Parser with error recovery that collects multiple errors.

    A malformed statement never aborts the file: the error is recorded and
    the parser skips to the next top-level statement, so one broken
    technology never hides its siblings.

    Recovery strategies:
    - Error inside a block: skip to the brace closing the top-level entry
    - Unclosed block: rewind and resume at the next column-1 ``key =``
    - Error at top level: skip to the next ``key =``
    """

    MAX_ERRORS = 100  # Prevent runaway error loops

    def __init__(self, tokens: List[Token], filename: str = "<unknown>", max_errors: int = None):
        super().__init__(tokens, filename)
        self.diagnostics: List[Diagnostic] = []
        self.error_count = 0
        if max_errors is not None:
            self.MAX_ERRORS = max_errors

    def _add_error(self, error: ParseError):
        """Record an error without raising exception."""
        self.error_count += 1
        self.diagnostics.append(Diagnostic(
            severity="error",
            code=error.code,
            message=error.message,
            file=self.filename,
            line=error.line,
            column=error.column,
            offset=error.offset,
        ))

    def _at_restart_point(self, after_line: int) -> bool:
        """A column-1 ``key = `` on a later line looks like a new top-level entry."""
        token = self._current()
        return token.column == 1 and token.line > after_line and self._at_statement_start()

    def _recover(self, start_pos: int, error: ParseError) -> None:
        """Skip to what looks like the start of the next top-level statement."""
        depth = self.depth
        self.depth = 0
        start_line = self.tokens[start_pos].line

        if error.code == "UNCLOSED_BLOCK":
            # The block swallowed everything up to EOF; look for a sibling inside it
            self.pos = start_pos + 1
            while self._current().type != TokenType.EOF and not self._at_restart_point(start_line):
                self._advance()
            return

        while True:
            token = self._current()
            if token.type == TokenType.EOF:
                break
            if depth > 0 and self._at_restart_point(start_line):
                break
            if depth == 0 and self.pos > start_pos and self._at_statement_start():
                break
            if token.type == TokenType.LBRACE:
                depth += 1
            elif token.type == TokenType.RBRACE and depth > 0:
                depth -= 1
                self._advance()
                if depth == 0:
                    break
                continue
            self._advance()

        if self.pos == start_pos:
            self._advance()

    def parse(self) -> RootNode:
        """Parse with error recovery, collecting all errors."""
        root = RootNode(filename=self.filename, line=1, column=1)

        while self.error_count < self.MAX_ERRORS:
            if self._current().type == TokenType.EOF:
                break

            start_pos = self.pos
            try:
                root.children.append(self._parse_statement(top_level=True))
            except ParseError as e:
                self._add_error(e)
                self._recover(start_pos, e)

        if self.error_count >= self.MAX_ERRORS:
            self.diagnostics.append(Diagnostic(
                severity="error",
                code="TOO_MANY_ERRORS",
                message=f"Too many errors ({self.MAX_ERRORS}+), stopping",
                file=self.filename,
                line=self._current().line,
                column=self._current().column,
                offset=self.pos,
            ))

        return root


def parse_source(source: str, filename: str = "<unknown>") -> RootNode:
    """Parse source text into a parse tree. Raises on the first error."""
    lexer = Lexer(source, filename)
    tokens = lexer.tokenize_all()
    parser = Parser(tokens, filename)
    return parser.parse()


def parse_source_recovering(source: str, filename: str = "<unknown>", max_errors: int = None) -> ParseResult:
    """
    Parse source with error recovery, collecting all errors.

    A lexer error is fatal for the rest of the file only: tokens read
    before it are still parsed, so earlier entries remain valid.

    Args:
        source: Source text
        filename: For error messages
        max_errors: Per-file cap on recorded parse errors

    Returns:
        ParseResult with the (partial) tree, diagnostics and success flag
    """
    lexer = Lexer(source, filename)
    tokens = []
    diagnostics = []
    try:
        for token in lexer.tokenize():
            tokens.append(token)
    except LexerError as e:
        diagnostics.append(Diagnostic(
            severity="error",
            code="LEXER_ERROR",
            message=e.message,
            file=filename,
            line=e.line,
            column=e.column,
            offset=len(tokens),
        ))
        tokens.append(Token(TokenType.EOF, '', e.line, e.column, e.offset, ''))

    parser = RecoveringParser(tokens, filename, max_errors=max_errors)
    ast = parser.parse()
    # Parse errors first in source order, then the fatal lexer error that truncated the file
    diagnostics = parser.diagnostics + diagnostics

    return ParseResult(
        ast=ast,
        diagnostics=diagnostics,
        success=not any(d.severity == "error" for d in diagnostics),
        token_count=len(tokens),
    )


def parse_file(filepath: str) -> RootNode:
    """Parse a file into a parse tree. Handles encoding fallback."""
    return parse_source(read_source(filepath), filepath)
