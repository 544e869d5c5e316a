"""Parsing module for signatures and declaration scripts."""

from ffidl.parsing.decl_parser import (
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

__all__ = [
    "CallbackStmt",
    "CalloutStmt",
    "CallStmt",
    "DeclParser",
    "InfoStmt",
    "LibraryStmt",
    "SetStmt",
    "SignatureParser",
    "SignatureSpec",
    "SymbolRef",
    "TypedefStmt",
    "VariableRef",
]
