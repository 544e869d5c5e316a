"""Tests for the declaration lexer and parsers."""

import pytest

from ffidl.parsing import (
    CallbackStmt,
    CalloutStmt,
    CallStmt,
    DeclParser,
    InfoStmt,
    LibraryStmt,
    SetStmt,
    SignatureParser,
    SignatureSpec,
    SymbolRef,
    TypedefStmt,
    VariableRef,
)
from ffidl.parsing.decl_lexer import DeclLexer


class TestLexer:
    """Tests for DeclLexer."""

    def setup_method(self):
        self.lexer = DeclLexer()
        self.lexer.build()

    def types(self, text):
        return [t.type for t in self.lexer.tokenize(text)]

    def test_hyphenated_type_names(self):
        tokens = self.lexer.tokenize("pointer-utf8 pointer-obj")
        assert [(t.type, t.value) for t in tokens] == [
            ("IDENTIFIER", "pointer-utf8"),
            ("IDENTIFIER", "pointer-obj"),
        ]

    def test_numbers(self):
        tokens = self.lexer.tokenize("42 -5 0x1F -0x10 2.5 1e3")
        assert [t.value for t in tokens] == [42, -5, 31, -16, 2.5, 1000.0]
        assert self.types("2.5 7") == ["FLOAT", "INTEGER"]

    def test_bytes_and_strings(self):
        tokens = self.lexer.tokenize('x"0102 ff" "a\\tb"')
        assert tokens[0].type == "BYTES"
        assert tokens[0].value == b"\x01\x02\xff"
        assert tokens[1].value == "a\tb"

    def test_keywords_and_variables(self):
        assert self.types("typedef call $buf null") == ["TYPEDEF", "CALL", "VARIABLE", "NULL"]
        assert self.lexer.tokenize("$buf")[0].value == "buf"

    def test_comments_and_lines(self):
        tokens = self.lexer.tokenize("# comment\ncall f()\n")
        assert tokens[0].type == "CALL"
        assert tokens[0].lineno == 2

    def test_illegal_character(self):
        with pytest.raises(SyntaxError, match="Illegal character '@'"):
            self.lexer.tokenize("call @")


class TestSignatureParser:
    """Tests for SignatureParser."""

    def setup_method(self):
        self.parser = SignatureParser()

    def test_simple(self):
        assert self.parser.parse_signature("int(int)") == SignatureSpec(None, "int", ["int"])

    def test_multi_word_types(self):
        spec = self.parser.parse_signature("unsigned long(long double, pointer-utf8, signed char)")
        assert spec.return_type == "unsigned long"
        assert spec.arg_types == ["long double", "pointer-utf8", "signed char"]

    def test_protocol(self):
        spec = self.parser.parse_signature("cdecl sint32(pointer, point)")
        assert spec == SignatureSpec("cdecl", "sint32", ["pointer", "point"])

    def test_foreign_protocol_is_split(self):
        """Test that a protocol this platform lacks is still read as a protocol."""
        spec = self.parser.parse_signature("stdcall int(int)")
        assert spec == SignatureSpec("stdcall", "int", ["int"])

    def test_protocol_word_needs_a_type(self):
        """Test that a type named like a protocol is not split."""
        assert self.parser.parse_signature("long long()").protocol is None

    def test_empty_and_void_arguments(self):
        assert self.parser.parse_signature("void()").arg_types == []
        assert self.parser.parse_signature("void(void)").arg_types == []

    def test_syntax_error(self):
        with pytest.raises(SyntaxError):
            self.parser.parse_signature("int(int,)")
        with pytest.raises(SyntaxError, match="end of input"):
            self.parser.parse_signature("int")

    def test_parser_is_reusable(self):
        with pytest.raises(SyntaxError):
            self.parser.parse_signature("(")
        assert self.parser.parse_signature("int()").return_type == "int"


class TestDeclParser:
    """Tests for DeclParser statements."""

    def setup_method(self):
        self.parser = DeclParser()

    def test_typedefs(self):
        stmts = self.parser.parse("""
            typedef point { sint32, sint32 }
            typedef size_t unsigned long
        """)
        assert stmts == [
            TypedefStmt("point", ["sint32", "sint32"]),
            TypedefStmt("size_t", ["unsigned long"]),
        ]

    def test_library(self):
        stmts = self.parser.parse('library libc "libc.so.6" lazy global; library self ""')
        assert stmts == [
            LibraryStmt("libc", "libc.so.6", "lazy", "global"),
            LibraryStmt("self", ""),
        ]

    def test_callout(self):
        stmts = self.parser.parse("""
            callout abs int(int) = libc.abs
            callout add sint32(sint32, sint32) = 0x7f00
            callout fn void() = $addr
        """)
        assert stmts[0] == CalloutStmt("abs", SignatureSpec(None, "int", ["int"]), SymbolRef("libc", "abs"))
        assert stmts[1].address == 0x7F00
        assert stmts[2].address == VariableRef("addr")

    def test_callback(self):
        stmts = self.parser.parse("callback cmp int(pointer, pointer) = compare\ncallback tick void()")
        assert stmts[0] == CallbackStmt("cmp", SignatureSpec(None, "int", ["pointer", "pointer"]), "compare")
        assert stmts[1].command is None

    def test_call_values(self):
        (stmt,) = self.parser.parse('call f(-5, 2.5, "text", x"00ff", null, $v, buf)')
        assert stmt == CallStmt("f", [-5, 2.5, "text", b"\x00\xff", None, VariableRef("v"), "buf"])
        assert self.parser.parse("call g()") == [CallStmt("g", [])]

    def test_set(self):
        stmts = self.parser.parse('set buf = x"0300000004000000"; set n = call strlen("abc")')
        assert stmts[0] == SetStmt("buf", b"\x03\0\0\0\x04\0\0\0")
        assert stmts[1] == SetStmt("n", CallStmt("strlen", ["abc"]))

    def test_info(self):
        stmts = self.parser.parse("info sizeof unsigned long\ninfo callouts")
        assert stmts == [InfoStmt("sizeof", "unsigned long"), InfoStmt("callouts")]

    def test_empty_script(self):
        assert self.parser.parse("") == []
        assert self.parser.parse("# nothing here\n;;") == []

    def test_syntax_error_names_token(self):
        with pytest.raises(SyntaxError, match="Syntax error at '=' \\(line 2\\)"):
            self.parser.parse("typedef a int\ncall = 3")
