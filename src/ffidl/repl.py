"""Interactive shell and script runner for the declaration language."""

from __future__ import annotations

import argparse
import logging
import readline  # noqa: F401 - enables line editing in input()
import sys
from pathlib import Path
from typing import Any

from ffidl.errors import DispatchError, FfidlError
from ffidl.parsing.decl_parser import (
    CallbackStmt,
    CalloutStmt,
    CallStmt,
    DeclParser,
    InfoStmt,
    LibraryStmt,
    SetStmt,
    Statement,
    SymbolRef,
    TypedefStmt,
    VariableRef,
)
from ffidl.session import Session, SessionConfig
from ffidl.types import LayoutEntry


def format_value(value: Any, max_items: int = 10, max_width: int = 60) -> str:
    """Format a value for display.

    Args:
        value: The value to format
        max_items: Maximum number of list items to show before eliding
        max_width: Maximum character width before truncating
    """
    if value is None:
        return "NULL"
    elif isinstance(value, bool):
        return "true" if value else "false"
    elif isinstance(value, int):
        if value > 0xFFFFFFFF:
            return f"0x{value:x}"
        return str(value)
    elif isinstance(value, float):
        return f"{value:.6g}"
    elif isinstance(value, str):
        if len(value) > max_width:
            return repr(value[:max_width - 3] + "...")
        return repr(value)
    elif isinstance(value, (bytes, bytearray)):
        text = f'x"{bytes(value).hex()}"'
        if len(text) > max_width:
            return text[:max_width - 4] + '..."'
        return text
    elif isinstance(value, LayoutEntry):
        if value.kind == "pad":
            return f"{value.offset:4d}  pad   {value.size}"
        return f"{value.offset:4d}  {value.type_name} ({value.size})"
    elif isinstance(value, list):
        formatted = []
        for i, v in enumerate(value):
            if i >= max_items:
                formatted.append(f"...+{len(value) - max_items} more")
                break
            formatted.append(format_value(v, max_items, max_width))
        result = "[" + ", ".join(formatted) + "]"
        if len(result) > max_width:
            return result[:max_width - 4] + "...]"
        return result
    else:
        s = str(value)
        if len(s) > max_width:
            return s[:max_width - 3] + "..."
        return s


class ScriptExecutor:
    """Runs parsed statements against a session."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.parser = DeclParser()

    def run(self, text: str) -> list[Any]:
        """Parse and execute a script, returning one result per statement."""
        return [self.execute(stmt) for stmt in self.parser.parse(text)]

    def execute(self, stmt: Statement) -> Any:
        if isinstance(stmt, TypedefStmt):
            self.session.typedef(stmt.name, stmt.elements)
            return None
        if isinstance(stmt, LibraryStmt):
            self.session.library(stmt.name, stmt.path, stmt.binding, stmt.visibility)
            return None
        if isinstance(stmt, CalloutStmt):
            sig = stmt.signature
            self.session.callout(stmt.name, sig.arg_types, sig.return_type, self._address(stmt.address), sig.protocol)
            return None
        if isinstance(stmt, CallbackStmt):
            sig = stmt.signature
            binding = self.session.callback(stmt.name, sig.arg_types, sig.return_type, stmt.command, sig.protocol)
            return binding.address
        if isinstance(stmt, CallStmt):
            return self.session.call(stmt.name, *[self._value(v) for v in stmt.args])
        if isinstance(stmt, SetStmt):
            value = self.execute(stmt.value) if isinstance(stmt.value, CallStmt) else self._value(stmt.value)
            self.session.set_var(stmt.name, value)
            return None
        if isinstance(stmt, InfoStmt):
            return self._info(stmt)
        raise FfidlError(f"unknown statement: {stmt!r}")

    def _value(self, value: Any) -> Any:
        if isinstance(value, VariableRef):
            return self.session.get_var(value.name)
        return value

    def _address(self, address: Any) -> int:
        if isinstance(address, SymbolRef):
            return self.session.symbol(address.library, address.symbol)
        if isinstance(address, VariableRef):
            return int(self.session.get_var(address.name))
        return address

    def _info(self, stmt: InfoStmt) -> Any:
        session = self.session
        with_argument = {
            "sizeof": session.sizeof,
            "alignof": session.alignof,
            "format": session.format,
            "layout": session.layout,
        }
        topics = {
            "typedefs": session.typedefs,
            "signatures": session.signature_keys,
            "callouts": session.callout_names,
            "callbacks": session.callback_names,
            "libraries": session.library_names,
            "variables": session.variables.names,
            "canonical-host": session.canonical_host,
            "have-long-double": session.have_long_double,
            "have-int64": session.have_int64,
            "NULL": lambda: session.NULL,
        }
        if stmt.topic in with_argument:
            if stmt.argument is None:
                raise FfidlError(f"info {stmt.topic} needs a type name")
            return with_argument[stmt.topic](stmt.argument)
        if stmt.topic in topics:
            return topics[stmt.topic]()
        names = ", ".join(sorted(list(with_argument) + list(topics)))
        raise FfidlError(f'bad info topic "{stmt.topic}": must be one of {names}')


def print_result(result: Any) -> None:
    if result is None:
        return
    if isinstance(result, list) and result and isinstance(result[0], LayoutEntry):
        for entry in result:
            print(format_value(entry))
        return
    print(format_value(result))


def print_background_error(error: DispatchError) -> None:
    """Shell error handler: callback failures are printed as they happen."""
    print(f"Error: {error}", file=sys.stderr)


def needs_continuation(text: str) -> bool:
    """True while braces or parentheses are still open."""
    depth = 0
    in_string = False
    for ch in text:
        if ch == '"':
            in_string = not in_string
        elif not in_string:
            if ch in "({":
                depth += 1
            elif ch in ")}":
                depth -= 1
    return depth > 0


def run_source(executor: ScriptExecutor, text: str, verbose: bool = False) -> int:
    """Execute every statement in `text`; stop at the first error."""
    try:
        statements = executor.parser.parse(text)
    except SyntaxError as e:
        print(f"Syntax error: {e}", file=sys.stderr)
        return 1
    for stmt in statements:
        if verbose:
            print(f"> {stmt}")
        try:
            print_result(executor.execute(stmt))
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        finally:
            # already reported by the session log or its handler
            executor.session.background_errors()
    return 0


def run_file(file_path: Path, session: Session, verbose: bool = False) -> int:
    """Execute a script file.

    Returns:
        0 on success, 1 on error
    """
    try:
        content = file_path.read_text()
    except OSError as e:
        print(f"Error reading file: {e}", file=sys.stderr)
        return 1
    return run_source(ScriptExecutor(session), content, verbose)


def run_repl(session: Session) -> int:
    """Run the interactive shell."""
    print("ffidl shell")
    print("Type 'exit' to quit.\n")
    executor = ScriptExecutor(session)
    buffer = ""
    while True:
        try:
            line = input("ffidl> " if not buffer else "   ... ")
        except EOFError:
            print()
            break
        except KeyboardInterrupt:
            print()
            buffer = ""
            continue

        if not buffer and line.strip().lower() in ("exit", "quit"):
            break
        buffer = f"{buffer}\n{line}" if buffer else line
        if needs_continuation(buffer):
            continue
        text, buffer = buffer, ""
        if text.strip():
            run_source(executor, text)
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    arg_parser = argparse.ArgumentParser(
        description="Interactive shell for declaring and calling native functions"
    )
    arg_parser.add_argument(
        "-c", "--command",
        type=str,
        help="Execute a single command and exit",
    )
    arg_parser.add_argument(
        "-f", "--file",
        type=Path,
        help="Execute statements from a file and exit",
    )
    arg_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Print each statement before executing it and enable debug logging",
    )
    arg_parser.add_argument(
        "--no-strict-layout",
        action="store_true",
        help="Warn instead of failing when a struct layout disagrees with the backend",
    )

    args = arg_parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    config = SessionConfig(
        strict_layout=not args.no_strict_layout,
        error_handler=print_background_error,
    )

    with Session(config) as session:
        if args.file:
            if not args.file.exists():
                print(f"Error: File not found: {args.file}", file=sys.stderr)
                return 1
            return run_file(args.file, session, args.verbose)

        if args.command:
            return run_source(ScriptExecutor(session), args.command, args.verbose)

        return run_repl(session)


if __name__ == "__main__":
    sys.exit(main())
