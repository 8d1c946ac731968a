"""
techraven.parser - Technology Script Parser

Lexer and parser for Paradox-style technology script files.
Converts .txt files into a parse tree.
"""

from techraven.parser.lexer import Lexer, Token, TokenType, LexerError, read_source, tokenize_file
from techraven.parser.parser import (
    Parser,
    RecoveringParser,
    ParseError,
    ParseResult,
    parse_file,
    parse_number,
    parse_source,
    parse_source_recovering,
    # Parse tree node types
    ASTNode,
    NodeType,
    RootNode,
    BlockNode,
    AssignmentNode,
    ValueNode,
    ListNode,
)

__all__ = [
    # Lexer
    "Lexer",
    "Token",
    "TokenType",
    "LexerError",
    "read_source",
    "tokenize_file",
    # Parser
    "Parser",
    "RecoveringParser",
    "ParseError",
    "ParseResult",
    "parse_file",
    "parse_number",
    "parse_source",
    "parse_source_recovering",
    # Parse tree nodes
    "ASTNode",
    "NodeType",
    "RootNode",
    "BlockNode",
    "AssignmentNode",
    "ValueNode",
    "ListNode",
]
