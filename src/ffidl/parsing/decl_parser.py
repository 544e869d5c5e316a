"""Parser for signatures and declaration scripts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import ply.yacc as yacc

from ffidl import abi
from ffidl.parsing.decl_lexer import DeclLexer


@dataclass
class SignatureSpec:
    """A parsed function signature such as ``stdcall int(pointer, int)``."""

    protocol: str | None
    return_type: str
    arg_types: list[str] = field(default_factory=list)


@dataclass
class VariableRef:
    """A ``$name`` reference to a session variable."""

    name: str


@dataclass
class SymbolRef:
    """A ``library.symbol`` function address."""

    library: str
    symbol: str


@dataclass
class TypedefStmt:
    name: str
    elements: list[str]


@dataclass
class LibraryStmt:
    name: str
    path: str
    binding: str | None = None
    visibility: str | None = None


@dataclass
class CalloutStmt:
    name: str
    signature: SignatureSpec
    address: int | SymbolRef | VariableRef


@dataclass
class CallbackStmt:
    name: str
    signature: SignatureSpec
    command: str | None = None


@dataclass
class CallStmt:
    name: str
    args: list[Any] = field(default_factory=list)


@dataclass
class SetStmt:
    name: str
    value: Any


@dataclass
class InfoStmt:
    topic: str
    argument: str | None = None


Statement = Any


def split_protocol(words: list[str]) -> tuple[str | None, str]:
    """Split a leading calling convention word off a return type."""
    if len(words) > 1 and words[0] in abi.PROTOCOL_WORDS:
        return words[0], " ".join(words[1:])
    return None, " ".join(words)


class _SignatureRules:
    """Grammar shared by the signature parser and the script parser."""

    tokens = DeclLexer.tokens

    def __init__(self) -> None:
        self.lexer = DeclLexer()
        self.lexer.build()
        self.parser: yacc.LRParser = None  # type: ignore

    def p_signature(self, p: yacc.YaccProduction) -> None:
        """signature : words LPAREN type_list RPAREN"""
        protocol, return_type = split_protocol(p[1])
        args = p[3]
        if args == ["void"]:
            args = []
        p[0] = SignatureSpec(protocol, return_type, args)

    def p_signature_empty(self, p: yacc.YaccProduction) -> None:
        """signature : words LPAREN RPAREN"""
        protocol, return_type = split_protocol(p[1])
        p[0] = SignatureSpec(protocol, return_type, [])

    def p_type_list_single(self, p: yacc.YaccProduction) -> None:
        """type_list : type_name"""
        p[0] = [p[1]]

    def p_type_list_multiple(self, p: yacc.YaccProduction) -> None:
        """type_list : type_list COMMA type_name"""
        p[0] = p[1] + [p[3]]

    def p_type_name(self, p: yacc.YaccProduction) -> None:
        """type_name : words"""
        p[0] = " ".join(p[1])

    def p_words_single(self, p: yacc.YaccProduction) -> None:
        """words : IDENTIFIER"""
        p[0] = [p[1]]

    def p_words_multiple(self, p: yacc.YaccProduction) -> None:
        """words : words IDENTIFIER"""
        p[0] = p[1] + [p[2]]

    def p_error(self, p: yacc.YaccProduction) -> None:
        if p:
            raise SyntaxError(f"Syntax error at '{p.value}' (line {p.lineno})")
        else:
            raise SyntaxError("Syntax error at end of input")

    def build(self, **kwargs: Any) -> None:
        """Build the parser."""
        self.parser = yacc.yacc(module=self, **kwargs)


class SignatureParser(_SignatureRules):
    """Parser for a single signature string."""

    start = "signature"

    def parse_signature(self, text: str) -> SignatureSpec:
        if self.parser is None:
            # the script-only tokens are unused here
            self.build(debug=False, write_tables=False, errorlog=yacc.NullLogger())
        self.lexer.lexer.lineno = 1
        return self.parser.parse(text, lexer=self.lexer.lexer)


class DeclParser(_SignatureRules):
    """Parser for declaration scripts."""

    start = "program"

    def p_program(self, p: yacc.YaccProduction) -> None:
        """program : statement_list"""
        p[0] = p[1]

    def p_program_empty(self, p: yacc.YaccProduction) -> None:
        """program :"""
        p[0] = []

    def p_statement_list_single(self, p: yacc.YaccProduction) -> None:
        """statement_list : statement"""
        p[0] = [p[1]] if p[1] is not None else []

    def p_statement_list_multiple(self, p: yacc.YaccProduction) -> None:
        """statement_list : statement_list statement"""
        p[0] = p[1]
        if p[2] is not None:
            p[0].append(p[2])

    def p_statement(self, p: yacc.YaccProduction) -> None:
        """statement : typedef_stmt
                     | library_stmt
                     | callout_stmt
                     | callback_stmt
                     | call_stmt
                     | set_stmt
                     | info_stmt"""
        p[0] = p[1]

    def p_statement_empty(self, p: yacc.YaccProduction) -> None:
        """statement : SEMI"""
        p[0] = None

    # ---- typedef ----

    def p_typedef_aggregate(self, p: yacc.YaccProduction) -> None:
        """typedef_stmt : TYPEDEF IDENTIFIER LBRACE type_list RBRACE"""
        p[0] = TypedefStmt(p[2], p[4])

    def p_typedef_alias(self, p: yacc.YaccProduction) -> None:
        """typedef_stmt : TYPEDEF IDENTIFIER type_name"""
        p[0] = TypedefStmt(p[2], [p[3]])

    # ---- library ----

    def p_library(self, p: yacc.YaccProduction) -> None:
        """library_stmt : LIBRARY IDENTIFIER STRING"""
        p[0] = LibraryStmt(p[2], p[3])

    def p_library_flags(self, p: yacc.YaccProduction) -> None:
        """library_stmt : LIBRARY IDENTIFIER STRING library_flags"""
        stmt = LibraryStmt(p[2], p[3])
        for flag in p[4]:
            if flag in ("now", "lazy"):
                stmt.binding = flag
            else:
                stmt.visibility = flag
        p[0] = stmt

    def p_library_flags_single(self, p: yacc.YaccProduction) -> None:
        """library_flags : library_flag"""
        p[0] = [p[1]]

    def p_library_flags_multiple(self, p: yacc.YaccProduction) -> None:
        """library_flags : library_flags library_flag"""
        p[0] = p[1] + [p[2]]

    def p_library_flag(self, p: yacc.YaccProduction) -> None:
        """library_flag : LAZY
                        | NOW
                        | GLOBAL
                        | LOCAL"""
        p[0] = p[1]

    # ---- callout / callback ----

    def p_callout(self, p: yacc.YaccProduction) -> None:
        """callout_stmt : CALLOUT IDENTIFIER signature EQUALS address"""
        p[0] = CalloutStmt(p[2], p[3], p[5])

    def p_address_integer(self, p: yacc.YaccProduction) -> None:
        """address : INTEGER"""
        p[0] = p[1]

    def p_address_symbol(self, p: yacc.YaccProduction) -> None:
        """address : IDENTIFIER DOT IDENTIFIER"""
        p[0] = SymbolRef(p[1], p[3])

    def p_address_variable(self, p: yacc.YaccProduction) -> None:
        """address : VARIABLE"""
        p[0] = VariableRef(p[1])

    def p_callback(self, p: yacc.YaccProduction) -> None:
        """callback_stmt : CALLBACK IDENTIFIER signature"""
        p[0] = CallbackStmt(p[2], p[3])

    def p_callback_command(self, p: yacc.YaccProduction) -> None:
        """callback_stmt : CALLBACK IDENTIFIER signature EQUALS IDENTIFIER"""
        p[0] = CallbackStmt(p[2], p[3], p[5])

    # ---- call / set ----

    def p_call(self, p: yacc.YaccProduction) -> None:
        """call_stmt : CALL IDENTIFIER LPAREN value_list RPAREN"""
        p[0] = CallStmt(p[2], p[4])

    def p_call_empty(self, p: yacc.YaccProduction) -> None:
        """call_stmt : CALL IDENTIFIER LPAREN RPAREN"""
        p[0] = CallStmt(p[2], [])

    def p_value_list_single(self, p: yacc.YaccProduction) -> None:
        """value_list : value"""
        p[0] = [p[1]]

    def p_value_list_multiple(self, p: yacc.YaccProduction) -> None:
        """value_list : value_list COMMA value"""
        p[0] = p[1] + [p[3]]

    def p_value_literal(self, p: yacc.YaccProduction) -> None:
        """value : INTEGER
                 | FLOAT
                 | STRING
                 | BYTES
                 | IDENTIFIER"""
        p[0] = p[1]

    def p_value_null(self, p: yacc.YaccProduction) -> None:
        """value : NULL"""
        p[0] = None

    def p_value_variable(self, p: yacc.YaccProduction) -> None:
        """value : VARIABLE"""
        p[0] = VariableRef(p[1])

    def p_set(self, p: yacc.YaccProduction) -> None:
        """set_stmt : SET IDENTIFIER EQUALS value
                    | SET IDENTIFIER EQUALS call_stmt"""
        p[0] = SetStmt(p[2], p[4])

    # ---- info ----

    def p_info(self, p: yacc.YaccProduction) -> None:
        """info_stmt : INFO IDENTIFIER"""
        p[0] = InfoStmt(p[2])

    def p_info_argument(self, p: yacc.YaccProduction) -> None:
        """info_stmt : INFO IDENTIFIER type_name"""
        p[0] = InfoStmt(p[2], p[3])

    def parse(self, data: str) -> list[Statement]:
        """Parse a script and return its statements in order."""
        if self.parser is None:
            self.build(debug=False, write_tables=False)
        self.lexer.lexer.lineno = 1
        statements = self.parser.parse(data, lexer=self.lexer.lexer)
        if statements is None:
            return []
        return statements
