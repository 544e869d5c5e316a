"""Lexer for the declaration language."""

import ply.lex as lex


class DeclLexer:
    """Lexer for tokenizing declarations, signatures and script statements."""

    # Reserved keywords
    reserved = {
        "typedef": "TYPEDEF",
        "library": "LIBRARY",
        "callout": "CALLOUT",
        "callback": "CALLBACK",
        "call": "CALL",
        "set": "SET",
        "info": "INFO",
        "null": "NULL",
        "lazy": "LAZY",
        "now": "NOW",
        "global": "GLOBAL",
        "local": "LOCAL",
    }

    # Token list
    tokens = [
        "IDENTIFIER",
        "INTEGER",
        "FLOAT",
        "STRING",
        "BYTES",
        "VARIABLE",
        "LBRACE",
        "RBRACE",
        "LPAREN",
        "RPAREN",
        "COMMA",
        "EQUALS",
        "DOT",
        "SEMI",
    ] + list(reserved.values())

    # Simple tokens
    t_LBRACE = r"\{"
    t_RBRACE = r"\}"
    t_LPAREN = r"\("
    t_RPAREN = r"\)"
    t_COMMA = r","
    t_EQUALS = r"="
    t_DOT = r"\."
    t_SEMI = r";"

    t_ignore = " \t\r"

    # Comments
    t_ignore_COMMENT = r"\#[^\n]*"

    def __init__(self) -> None:
        self.lexer: lex.LexToken = None  # type: ignore

    def t_BYTES(self, t: lex.LexToken) -> lex.LexToken:
        r'x"[0-9a-fA-F\s]*"'
        t.value = bytes.fromhex(t.value[2:-1])
        return t

    def t_VARIABLE(self, t: lex.LexToken) -> lex.LexToken:
        r"\$[a-zA-Z_][a-zA-Z0-9_]*"
        t.value = t.value[1:]
        return t

    def t_FLOAT(self, t: lex.LexToken) -> lex.LexToken:
        r"-?\d+\.\d*(?:[eE][-+]?\d+)?|-?\d+[eE][-+]?\d+"
        t.value = float(t.value)
        return t

    def t_INTEGER(self, t: lex.LexToken) -> lex.LexToken:
        r"-?0[xX][0-9a-fA-F]+|-?\d+"
        t.value = int(t.value, 16 if "x" in t.value.lower() else 10)
        return t

    def t_STRING(self, t: lex.LexToken) -> lex.LexToken:
        r'"([^"\\]|\\.)*"'
        # Remove quotes and handle escapes
        t.value = t.value[1:-1].encode().decode("unicode_escape")
        return t

    def t_IDENTIFIER(self, t: lex.LexToken) -> lex.LexToken:
        r"[a-zA-Z_][a-zA-Z0-9_]*(?:-[a-zA-Z0-9_]+)*"
        # Type names such as pointer-utf8 carry hyphens
        t.type = self.reserved.get(t.value, "IDENTIFIER")
        return t

    def t_NEWLINE(self, t: lex.LexToken) -> None:
        r"\n+"
        t.lexer.lineno += len(t.value)

    def t_error(self, t: lex.LexToken) -> None:
        raise SyntaxError(f"Illegal character '{t.value[0]}' at line {t.lineno}")

    def build(self, **kwargs) -> None:  # type: ignore
        """Build the lexer."""
        self.lexer = lex.lex(module=self, **kwargs)

    def input(self, data: str) -> None:
        """Set the input string to tokenize."""
        self.lexer.input(data)

    def token(self) -> lex.LexToken | None:
        """Return the next token."""
        return self.lexer.token()

    def tokenize(self, data: str) -> list[lex.LexToken]:
        """Tokenize the input and return all tokens."""
        self.input(data)
        tokens = []
        while True:
            tok = self.token()
            if tok is None:
                break
            tokens.append(tok)
        return tokens
