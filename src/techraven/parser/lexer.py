"""
Technology Script Lexer (Tokenizer)

Converts raw technology .txt files into a stream of tokens.
Handles: identifiers, numbers, quoted strings, @variables, @[inline math],
yes/no booleans, braces, assignment and comparison operators, comments.
"""

import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator, List, Optional


class TokenType(Enum):
    """Types of tokens in technology script."""
    IDENTIFIER = auto()      # tech_lasers_1, physics, AND
    STRING = auto()          # "quoted string"
    NUMBER = auto()          # 123, -0.5, 0.25
    VARIABLE = auto()        # @tier1cost2
    EXPRESSION = auto()      # @[ tier1cost2 * 1.5 ]
    BOOL = auto()            # yes, no
    EQUALS = auto()          # =
    LBRACE = auto()          # {
    RBRACE = auto()          # }
    LESS_THAN = auto()       # <
    GREATER_THAN = auto()    # >
    LESS_EQUAL = auto()      # <=
    GREATER_EQUAL = auto()   # >=
    NOT_EQUAL = auto()       # !=
    COMPARE_EQUAL = auto()   # ==
    COMMENT = auto()         # # comment to end of line
    EOF = auto()             # End of file


# Token types that carry a value usable as a key or a scalar
SCALAR_TYPES = frozenset({
    TokenType.IDENTIFIER,
    TokenType.STRING,
    TokenType.NUMBER,
    TokenType.VARIABLE,
    TokenType.EXPRESSION,
    TokenType.BOOL,
})

NUMBER_RE = re.compile(r'^[+-]?(?:\d+(?:\.\d*)?|\.\d+)$')


@dataclass
class Token:
    """A single token from the lexer.

    ``value`` is the decoded value (string without quotes and with escapes
    applied, variable name without ``@``); ``raw`` is the exact source span.
    """
    type: TokenType
    value: str
    line: int
    column: int
    offset: int = 0
    raw: str = ""

    def __repr__(self):
        return f"Token({self.type.name}, {self.value!r}, L{self.line}:{self.column})"


class LexerError(Exception):
    """Error during lexical analysis."""
    def __init__(self, message: str, line: int, column: int, offset: int = 0, filename: str = "<unknown>"):
        self.filename = filename
        self.line = line
        self.column = column
        self.offset = offset
        self.message = message
        super().__init__(f"Lexer error in {filename} at line {line}, column {column}: {message}")


class Lexer:
    """
    Tokenizer for technology script files.

    Usage:
        lexer = Lexer(source_text)
        tokens = list(lexer.tokenize())
    """

    # Note: | and : appear in scope chains (event_target:foo, define:NTech|X)
    # Note: / appears in icon paths, % in percentage modifiers
    IDENT_SPECIAL = set("_-.:|/%")

    @staticmethod
    def _is_word_start(ch: str) -> bool:
        """Check if character can start an identifier or number."""
        return ch.isalnum() or ch in "_-."

    @staticmethod
    def _is_word_cont(ch: str) -> bool:
        """Check if character can continue an identifier or number."""
        return ch.isalnum() or ch in Lexer.IDENT_SPECIAL

    def __init__(self, source: str, filename: str = "<unknown>"):
        # Strip a UTF-8 byte order mark left over from a binary read
        if source.startswith('\ufeff'):
            source = source[1:]
        self.source = source
        self.filename = filename
        self.pos = 0
        self.line = 1
        self.column = 1
        self.length = len(source)

    def _error(self, message: str, line: int, column: int, offset: int) -> LexerError:
        return LexerError(message, line, column, offset, filename=self.filename)

    def _current(self) -> Optional[str]:
        """Get current character or None if at end."""
        if self.pos >= self.length:
            return None
        return self.source[self.pos]

    def _peek(self, offset: int = 1) -> Optional[str]:
        """Peek ahead by offset characters."""
        pos = self.pos + offset
        if pos >= self.length:
            return None
        return self.source[pos]

    def _advance(self) -> Optional[str]:
        """Advance one character and return it."""
        ch = self._current()
        if ch is not None:
            self.pos += 1
            if ch == '\n':
                self.line += 1
                self.column = 1
            else:
                self.column += 1
        return ch

    def _skip_whitespace(self) -> None:
        """Skip spaces, tabs and newlines."""
        while self._current() in (' ', '\t', '\r', '\n', '\ufeff'):
            self._advance()

    def _read_string(self) -> str:
        """Read a double-quoted string, handling escapes. Newlines may not appear unescaped."""
        start_line = self.line
        start_col = self.column
        start_pos = self.pos

        # Skip opening quote
        self._advance()

        result = []
        while True:
            ch = self._current()
            if ch is None or ch == '\n':
                raise self._error("Unterminated string", start_line, start_col, start_pos)
            if ch == '"':
                self._advance()
                break
            if ch == '\\':
                self._advance()
                esc = self._current()
                if esc == 'n':
                    result.append('\n')
                elif esc == 't':
                    result.append('\t')
                elif esc == '"':
                    result.append('"')
                elif esc == '\\':
                    result.append('\\')
                elif esc is None or esc == '\n':
                    raise self._error("Unterminated string", start_line, start_col, start_pos)
                else:
                    # Unknown escape, keep as-is
                    result.append('\\')
                    result.append(esc)
                self._advance()
            else:
                result.append(ch)
                self._advance()

        return ''.join(result)

    def _read_word(self) -> str:
        """Read an identifier or number (dotted names, signed decimals)."""
        result = []
        if self._current() == '+':
            result.append(self._advance())
        while True:
            ch = self._current()
            if ch is None or not self._is_word_cont(ch):
                break
            result.append(ch)
            self._advance()
        return ''.join(result)

    def _read_expression(self) -> str:
        """Read the inside of @[ ... ], honouring nested brackets."""
        start_line = self.line
        start_col = self.column
        start_pos = self.pos

        # Skip '@['
        self._advance()
        self._advance()

        depth = 1
        result = []
        while True:
            ch = self._current()
            if ch is None or ch in '{}':
                raise self._error("Unterminated inline expression", start_line, start_col, start_pos)
            if ch == '[':
                depth += 1
            elif ch == ']':
                depth -= 1
                if depth == 0:
                    self._advance()
                    break
            result.append(ch)
            self._advance()

        return ''.join(result).strip()

    def _read_comment(self) -> str:
        """Read a comment from # to end of line."""
        result = []
        # Skip the #
        self._advance()
        while True:
            ch = self._current()
            if ch is None or ch == '\n':
                break
            result.append(ch)
            self._advance()
        return ''.join(result)

    def _token(self, token_type: TokenType, value: str, line: int, column: int, start: int) -> Token:
        return Token(token_type, value, line, column, start, self.source[start:self.pos])

    def tokenize(self, include_comments: bool = False) -> Iterator[Token]:
        """
        Generate tokens from the source.

        Args:
            include_comments: If True, emit COMMENT tokens. Otherwise skip them.

        Raises:
            LexerError: on an unterminated string or an illegal character.
                Tokens yielded before the error are valid.
        """
        while True:
            self._skip_whitespace()

            ch = self._current()
            start_line = self.line
            start_col = self.column
            start = self.pos

            if ch is None:
                yield Token(TokenType.EOF, '', start_line, start_col, start, '')
                break

            if ch == '#':
                comment = self._read_comment()
                if include_comments:
                    yield self._token(TokenType.COMMENT, comment, start_line, start_col, start)
                continue

            if ch == '"':
                value = self._read_string()
                yield self._token(TokenType.STRING, value, start_line, start_col, start)
                continue

            if ch == '{':
                self._advance()
                yield self._token(TokenType.LBRACE, '{', start_line, start_col, start)
                continue

            if ch == '}':
                self._advance()
                yield self._token(TokenType.RBRACE, '}', start_line, start_col, start)
                continue

            # Operators (multi-char first)
            if ch == '=':
                self._advance()
                if self._current() == '=':
                    self._advance()
                    yield self._token(TokenType.COMPARE_EQUAL, '==', start_line, start_col, start)
                else:
                    yield self._token(TokenType.EQUALS, '=', start_line, start_col, start)
                continue

            if ch == '<':
                self._advance()
                if self._current() == '=':
                    self._advance()
                    yield self._token(TokenType.LESS_EQUAL, '<=', start_line, start_col, start)
                else:
                    yield self._token(TokenType.LESS_THAN, '<', start_line, start_col, start)
                continue

            if ch == '>':
                self._advance()
                if self._current() == '=':
                    self._advance()
                    yield self._token(TokenType.GREATER_EQUAL, '>=', start_line, start_col, start)
                else:
                    yield self._token(TokenType.GREATER_THAN, '>', start_line, start_col, start)
                continue

            if ch == '!':
                self._advance()
                if self._current() == '=':
                    self._advance()
                    yield self._token(TokenType.NOT_EQUAL, '!=', start_line, start_col, start)
                    continue
                raise self._error("Unexpected character '!'", start_line, start_col, start)

            # Variable reference (@name) or inline math (@[ ... ])
            if ch == '@':
                if self._peek() == '[':
                    expr = self._read_expression()
                    yield self._token(TokenType.EXPRESSION, expr, start_line, start_col, start)
                    continue
                self._advance()
                name = self._read_word()
                if not name:
                    raise self._error("Expected variable name after '@'", start_line, start_col, start)
                yield self._token(TokenType.VARIABLE, name, start_line, start_col, start)
                continue

            # Identifier, number or boolean
            if self._is_word_start(ch) or (ch == '+' and (self._peek() or '').isdigit()):
                word = self._read_word()
                if NUMBER_RE.match(word):
                    yield self._token(TokenType.NUMBER, word, start_line, start_col, start)
                elif word in ('yes', 'no'):
                    yield self._token(TokenType.BOOL, word, start_line, start_col, start)
                else:
                    yield self._token(TokenType.IDENTIFIER, word, start_line, start_col, start)
                continue

            # Unknown character
            raise self._error(f"Unexpected character {ch!r}", start_line, start_col, start)

    def tokenize_all(self, include_comments: bool = False) -> List[Token]:
        """Convenience method to get all tokens as a list."""
        return list(self.tokenize(include_comments))


def read_source(filepath: str, encodings=('utf-8-sig', 'utf-8', 'latin-1')) -> str:
    """Read a script file, trying each encoding in turn (latin-1 always succeeds)."""
    last_error = None
    for encoding in encodings:
        try:
            with open(filepath, 'r', encoding=encoding) as f:
                return f.read()
        except UnicodeDecodeError as e:
            last_error = e
            continue
    raise last_error


def tokenize_file(filepath: str, **kwargs) -> List[Token]:
    """Tokenize a file and return all tokens. Handles encoding fallback."""
    lexer = Lexer(read_source(filepath), filename=filepath)
    return lexer.tokenize_all(**kwargs)
