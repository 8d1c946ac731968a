"""
Tests for the techraven parser module.
"""

import pytest
from techraven.parser import (
    Lexer,
    LexerError,
    ListNode,
    ParseError,
    TokenType,
    parse_file,
    parse_source,
    parse_source_recovering,
    BlockNode,
    AssignmentNode,
    ValueNode,
)

from conftest import extract_block_keys, get_assignment_value


def token_types(source):
    return [t.type for t in Lexer(source).tokenize_all()]


class TestLexer:
    """Test tokenization."""

    def test_scalar_kinds(self):
        """Each scalar kind gets its own token type."""
        types = token_types('key "text" 42 -0.5 yes @var @[ var * 2 ]')
        assert types == [
            TokenType.IDENTIFIER,
            TokenType.STRING,
            TokenType.NUMBER,
            TokenType.NUMBER,
            TokenType.BOOL,
            TokenType.VARIABLE,
            TokenType.EXPRESSION,
            TokenType.EOF,
        ]

    def test_structural_tokens(self):
        """Braces and equals."""
        assert token_types('a = { }') == [
            TokenType.IDENTIFIER, TokenType.EQUALS, TokenType.LBRACE, TokenType.RBRACE, TokenType.EOF,
        ]

    def test_comparison_operators(self):
        """Multi-character operators are single tokens."""
        types = token_types('a < 1 b > 2 c <= 3 d >= 4 e != 5 f == 6')
        assert TokenType.LESS_THAN in types
        assert TokenType.GREATER_THAN in types
        assert TokenType.LESS_EQUAL in types
        assert TokenType.GREATER_EQUAL in types
        assert TokenType.NOT_EQUAL in types
        assert TokenType.COMPARE_EQUAL in types

    def test_decoded_values(self):
        """Variables drop the @, strings drop quotes and apply escapes."""
        tokens = Lexer('@tier1cost1 "say \\"hi\\"" @[ a + 1 ]').tokenize_all()
        assert tokens[0].value == "tier1cost1"
        assert tokens[1].value == 'say "hi"'
        assert tokens[2].value == "a + 1"

    def test_raw_span(self):
        """Raw keeps the exact source text."""
        tokens = Lexer('name = "two words"').tokenize_all()
        assert tokens[2].raw == '"two words"'
        assert tokens[2].offset == 7

    def test_dotted_identifier(self):
        """Identifiers may contain dots, dashes and colons."""
        tokens = Lexer('gfx/interface/icons/x.dds event_target:foo').tokenize_all()
        assert tokens[0].value == "gfx/interface/icons/x.dds"
        assert tokens[1].value == "event_target:foo"

    def test_comments_skipped(self):
        """Comments are filtered unless requested."""
        source = '# header\na = 1 # trailing'
        assert TokenType.COMMENT not in token_types(source)
        tokens = Lexer(source).tokenize_all(include_comments=True)
        assert [t.value for t in tokens if t.type == TokenType.COMMENT] == [" header", " trailing"]

    def test_bom_stripped(self):
        """A leading byte order mark is ignored."""
        tokens = Lexer('\ufeffa = 1').tokenize_all()
        assert tokens[0].value == "a"
        assert tokens[0].column == 1

    def test_line_and_column(self):
        """Positions are 1-based."""
        tokens = Lexer('a = 1\n  b = 2').tokenize_all()
        b = tokens[3]
        assert (b.line, b.column) == (2, 3)

    def test_unterminated_string(self):
        """Unterminated string raises with its start position."""
        with pytest.raises(LexerError) as exc:
            Lexer('a = "open').tokenize_all()
        assert exc.value.line == 1
        assert exc.value.column == 5

    def test_error_names_file(self):
        """Lexer errors carry the file being tokenized."""
        with pytest.raises(LexerError) as exc:
            Lexer('a = $', filename="00_physics.txt").tokenize_all()
        assert exc.value.filename == "00_physics.txt"
        assert "00_physics.txt" in str(exc.value)

    def test_newline_in_string(self):
        """Strings cannot span lines."""
        with pytest.raises(LexerError):
            Lexer('a = "first\nsecond"').tokenize_all()

    def test_illegal_character(self):
        """Unknown characters raise."""
        with pytest.raises(LexerError):
            Lexer('a = $').tokenize_all()
        with pytest.raises(LexerError):
            Lexer('a ! b').tokenize_all()

    def test_unterminated_expression(self):
        """@[ without ] raises."""
        with pytest.raises(LexerError):
            Lexer('cost = @[ a * 2 }').tokenize_all()


class TestBasicParsing:
    """Test basic parsing functionality."""

    def test_empty_source(self):
        """Parse empty source."""
        ast = parse_source("")
        assert len(ast.children) == 0

    def test_simple_assignment(self):
        """Parse simple key = value."""
        ast = parse_source('name = "Test"')
        assert len(ast.children) == 1
        assert isinstance(ast.children[0], AssignmentNode)
        assert ast.children[0].key == "name"
        assert ast.children[0].value.value == "Test"

    def test_simple_block(self):
        """Parse simple block."""
        ast = parse_source('my_block = { foo = bar }')
        assert len(ast.children) == 1
        assert isinstance(ast.children[0], BlockNode)
        assert ast.children[0].name == "my_block"
        assert len(ast.children[0].children) == 1

    def test_nested_blocks(self):
        """Parse nested blocks."""
        source = '''
        outer = {
            inner = {
                value = 42
            }
        }
        '''
        ast = parse_source(source)
        outer = ast.children[0]
        inner = outer.children[0]
        assert isinstance(inner, BlockNode)
        assert inner.name == "inner"
        assert get_assignment_value(inner, "value").value == "42"

    def test_number_values(self):
        """Parse number values."""
        ast = parse_source('value = 42\nfloat = 0.5\nneg = -10')
        assert [c.value.value for c in ast.children] == ["42", "0.5", "-10"]
        assert all(c.value.value_type == "number" for c in ast.children)

    def test_boolean_values(self):
        """Parse yes/no booleans."""
        ast = parse_source('enabled = yes\ndisabled = no')
        assert ast.children[0].value.value_type == "bool"
        assert ast.children[0].value.to_plain() is True
        assert ast.children[1].value.to_plain() is False

    def test_variable_declaration(self):
        """@name = value is an assignment with an @ key."""
        ast = parse_source('@tier1cost1 = 200')
        assert ast.children[0].key == "@tier1cost1"
        assert ast.variables()["tier1cost1"].value == "200"

    def test_variables_collected_from_whole_document(self):
        """Declarations anywhere at top level are collected; later ones win."""
        ast = parse_source('@a = 1\ntech = { cost = @a }\n@b = 2\n@a = 3')
        variables = ast.variables()
        assert set(variables) == {"a", "b"}
        assert variables["a"].value == "3"

    def test_comments_ignored(self):
        """Comments should be ignored."""
        source = '''
        # This is a comment
        value = 42 # inline comment
        '''
        ast = parse_source(source)
        assert len(ast.children) == 1
        assert ast.children[0].key == "value"

    def test_get_blocks_by_prefix(self):
        """Filter top-level blocks by prefix."""
        ast = parse_source('tech_a = { tier = 0 }\ntech_b = { tier = 1 }\n@x = 1\nother = { a = b }')
        assert extract_block_keys(ast, "tech_") == ["tech_a", "tech_b"]
        assert ast.get_block("other") is not None

    def test_strict_parser_raises(self):
        """parse_source stops at the first error."""
        with pytest.raises(ParseError):
            parse_source('tech = { area = = }')


class TestValues:
    """Implicit arrays, bare values and operators."""

    def test_implicit_array(self):
        """Space separated scalars after '=' form a list."""
        ast = parse_source('levels = a b c\nnext = 1')
        assert len(ast.children) == 2
        value = ast.children[0].value
        assert isinstance(value, ListNode)
        assert value.to_plain() == ["a", "b", "c"]

    def test_implicit_array_stops_at_next_key(self):
        """A scalar followed by '=' starts a new statement."""
        ast = parse_source('tech = { category = particles tier = 1 }')
        tech = ast.children[0]
        assert isinstance(tech.get("category"), ValueNode)
        assert tech.get("tier").value == "1"

    def test_bare_values_in_block(self):
        """Quoted ids without keys."""
        ast = parse_source('prerequisites = { "tech_a" "tech_b" }')
        block = ast.children[0]
        assert [v.value for v in block.values()] == ["tech_a", "tech_b"]

    def test_comparison_in_block(self):
        """Comparisons keep their operator."""
        ast = parse_source('modifier = { factor = 0.5 years_passed < 20 num_owned_planets >= 3 }')
        block = ast.children[0]
        ops = [(c.key, c.operator) for c in block.children]
        assert ops == [("factor", "="), ("years_passed", "<"), ("num_owned_planets", ">=")]

    def test_block_get_last_wins(self):
        """Repeated keys: get() returns the last one."""
        ast = parse_source('tech = { tier = 1 tier = 2 }')
        assert ast.children[0].get("tier").value == "2"

    def test_to_plain(self):
        """Blocks convert to ordered key/value pairs."""
        ast = parse_source('w = { factor = 2 modifier = { factor = 0.5 years_passed < 20 } "bare" }')
        assert ast.children[0].to_plain() == [
            ["factor", 2],
            ["modifier", [["factor", 0.5], ["years_passed", 20, "<"]]],
            [None, "bare"],
        ]


class TestRecovery:
    """Error recovery never loses sibling entries."""

    def test_malformed_entry_skipped(self):
        """A broken entry is reported and its siblings survive."""
        source = (
            'tech_a = { area = physics tier = 0 }\n'
            'tech_bad = { area = = }\n'
            'tech_c = { area = society tier = 1 }\n'
        )
        result = parse_source_recovering(source, "test.txt")
        assert not result.success
        assert extract_block_keys(result.ast) == ["tech_a", "tech_c"]
        assert len(result.errors) == 1
        error = result.errors[0]
        assert error.code == "PARSE_ERROR"
        assert error.file == "test.txt"
        assert error.line == 2
        assert error.offset >= 0

    def test_unclosed_block_keeps_next_entry(self):
        """An unclosed block does not swallow the following top-level entry."""
        source = (
            'tech_a = {\n'
            '\tarea = physics\n'
            'tech_b = { area = society tier = 1 }\n'
        )
        result = parse_source_recovering(source)
        assert extract_block_keys(result.ast) == ["tech_b"]
        assert [d.code for d in result.errors] == ["UNCLOSED_BLOCK"]

    def test_stray_closing_brace(self):
        """A stray '}' at top level is skipped."""
        result = parse_source_recovering('}\ntech_a = { tier = 0 }')
        assert extract_block_keys(result.ast) == ["tech_a"]
        assert len(result.errors) == 1

    def test_bare_word_at_top_level(self):
        """Garbage at top level is skipped up to the next statement."""
        result = parse_source_recovering('garbage\ntech_a = { tier = 0 }')
        assert extract_block_keys(result.ast) == ["tech_a"]
        assert "Expected '='" in result.errors[0].message

    def test_lexer_error_keeps_earlier_entries(self):
        """Entries before a lexer error remain valid."""
        source = (
            'tech_a = { area = physics tier = 0 }\n'
            'tech_b = { area = "unterminated\n'
            '}\n'
        )
        result = parse_source_recovering(source)
        assert extract_block_keys(result.ast) == ["tech_a"]
        codes = [d.code for d in result.errors]
        assert "LEXER_ERROR" in codes
        lexer_error = [d for d in result.errors if d.code == "LEXER_ERROR"][0]
        assert lexer_error.line == 2

    def test_error_cap(self):
        """Recovery stops after max_errors."""
        source = "x = { = }\n" * 5
        result = parse_source_recovering(source, max_errors=2)
        codes = [d.code for d in result.errors]
        assert codes.count("PARSE_ERROR") == 2
        assert codes[-1] == "TOO_MANY_ERRORS"

    def test_nesting_limit(self):
        """Pathologically deep blocks are reported, not a crash; siblings survive."""
        source = (
            'ok = { tier = 0 }\n'
            'deep = { tier = 1 x = ' + '{ a = ' * 3000 + '1' + ' }' * 3000 + ' }\n'
            'after = { tier = 2 }\n'
        )
        result = parse_source_recovering(source, "deep.txt")
        assert extract_block_keys(result.ast) == ["ok", "after"]
        assert [d.code for d in result.errors] == ["TOO_DEEP"]
        assert result.errors[0].line == 2

    def test_nesting_below_limit(self):
        source = 'a = ' + '{ b = ' * 150 + '1' + ' }' * 150
        assert parse_source_recovering(source).success

    def test_strict_parser_nesting_limit(self):
        with pytest.raises(ParseError) as exc:
            parse_source('a = ' + '{ b = ' * 500 + '1' + ' }' * 500)
        assert exc.value.code == "TOO_DEEP"

    def test_clean_source_succeeds(self):
        """No diagnostics for valid input."""
        result = parse_source_recovering('@a = 1\ntech = { cost = @a }')
        assert result.success
        assert result.diagnostics == []
        assert result.token_count > 0


class TestFiles:
    """Parse fixture files from disk."""

    def test_parse_fixture(self, technology_dir):
        """Fixture files parse cleanly."""
        ast = parse_file(str(technology_dir / "00_physics.txt"))
        assert extract_block_keys(ast, "tech_") == ["tech_lasers_1", "tech_lasers_2", "tech_lasers_3"]
        assert set(ast.variables()) == {"tier0cost1", "tier1cost1", "tier1weight1", "tier2cost1"}
