"""Tests for the ffidl shell."""

import ctypes.util
import logging
from pathlib import Path

import pytest

from ffidl import Session, SessionConfig
from ffidl.repl import (
    ScriptExecutor,
    format_value,
    main,
    needs_continuation,
    print_background_error,
    run_file,
    run_source,
)
from ffidl.types import LayoutEntry

LIBC = ctypes.util.find_library("c")
needs_libc = pytest.mark.skipif(LIBC is None, reason="C library not found")


class TestHelperFunctions:
    """Tests for shell helper functions."""

    def test_format_value(self):
        assert format_value(None) == "NULL"
        assert format_value(5) == "5"
        assert format_value(0x7F0000000000) == "0x7f0000000000"
        assert format_value(2.5) == "2.5"
        assert format_value("hi") == "'hi'"
        assert format_value(b"\x01\xff") == 'x"01ff"'
        assert format_value(["a", 1]) == "['a', 1]"

    def test_format_layout_entry(self):
        assert format_value(LayoutEntry("pad", 1, 3)) == "   1  pad   3"
        assert format_value(LayoutEntry("field", 4, 4, "sint32")) == "   4  sint32 (4)"

    def test_needs_continuation(self):
        assert needs_continuation("typedef point {")
        assert not needs_continuation("typedef point { int, int }")
        assert not needs_continuation('call f("(")')


class TestScriptExecutor:
    """Tests for statement execution."""

    def test_typedef_and_info(self):
        with Session() as session:
            executor = ScriptExecutor(session)
            results = executor.run("typedef point { sint32, sint32 }\ninfo sizeof point\ninfo format point")
            assert results == [None, 8, "=ii"]

    def test_set_and_variables(self):
        with Session() as session:
            executor = ScriptExecutor(session)
            executor.run('set buf = x"0300000004000000"; set other = $buf')
            assert session.get_var("other") == b"\x03\0\0\0\x04\0\0\0"
            assert executor.run("info variables") == [["buf", "other"]]

    def test_callback_from_script(self):
        """Test a callback bound to a registered command and called back."""
        with Session() as session:
            session.register_command("add", lambda a, b: a + b)
            executor = ScriptExecutor(session)
            (address,) = executor.run("callback add sint32(sint32, sint32)")
            session.set_var("addr", address)
            results = executor.run("callout plus sint32(sint32, sint32) = $addr; call plus(2, 40)")
            assert results == [None, 42]

    def test_bad_info_topic(self):
        with Session() as session:
            with pytest.raises(Exception, match='bad info topic "colour"'):
                ScriptExecutor(session).run("info colour")

    @needs_libc
    def test_library_script(self):
        with Session() as session:
            executor = ScriptExecutor(session)
            results = executor.run(f'library libc "{LIBC}"\ncallout abs int(int) = libc.abs\ncall abs(-5)')
            assert results[-1] == 5


class TestMain:
    """Tests for the command line entry point."""

    def test_command(self, capsys):
        assert main(["-c", "typedef point { sint32, sint8 }; info sizeof point; info layout point"]) == 0
        out = capsys.readouterr().out.splitlines()
        assert out[0] == "8"
        assert out[1:] == ["   0  sint32 (4)", "   4  sint8 (1)", "   5  pad   3"]

    def test_error_exit(self, capsys):
        assert main(["-c", "info sizeof nope"]) == 1
        assert "Error: undefined type: nope" in capsys.readouterr().err

    def test_syntax_error(self, capsys):
        assert main(["-c", "typedef {"]) == 1
        assert "Syntax error" in capsys.readouterr().err

    def test_callback_prints_address(self, capsys):
        assert main(["-c", "callback bad sint32(sint32) = missing"]) == 0
        captured = capsys.readouterr()
        assert captured.out.strip() != ""
        assert captured.err == ""

    def test_missing_file(self, tmp_path: Path, capsys):
        assert main(["-f", str(tmp_path / "nope.ffidl")]) == 1
        assert "File not found" in capsys.readouterr().err

    def test_run_file(self, tmp_path: Path, capsys):
        script = tmp_path / "demo.ffidl"
        script.write_text("""
# a struct and a query
typedef point { sint32, sint32 }
info alignof point
""")
        with Session() as session:
            assert run_file(script, session, verbose=True) == 0
        out = capsys.readouterr().out
        assert "TypedefStmt" in out
        assert out.strip().endswith("4")

    def test_callback_error_printed_once(self, capsys, caplog):
        """Test that a failing callback shows up once, through the shell handler."""
        with Session(SessionConfig(error_handler=print_background_error)) as session:
            binding = session.callback("bad", "sint32(sint32)", command=lambda x: 1 // 0)
            session.set_var("addr", binding.address)
            executor = ScriptExecutor(session)
            assert run_source(executor, "callout f sint32(sint32) = $addr; call f(1)") == 0
            assert session.background_errors() == []
        captured = capsys.readouterr()
        assert captured.out.strip() == "0"
        assert captured.err.count('error in callback "bad"') == 1
        assert [r for r in caplog.records if r.levelno >= logging.ERROR] == []
