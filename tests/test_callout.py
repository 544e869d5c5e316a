"""Tests for outbound calls.

Native targets are the session's own callback trampolines, plus functions
from the C library where one can be found.
"""

import ctypes
import ctypes.util
import struct
import threading

import pytest

from ffidl import Session, abi, callout
from ffidl.errors import (
    ArgumentCountError,
    ContextError,
    ConversionError,
    MarshalError,
    ResourceError,
    SizeMismatchError,
)

LIBC = ctypes.util.find_library("c")
needs_libc = pytest.mark.skipif(LIBC is None, reason="C library not found")


@pytest.fixture
def session():
    with Session() as session:
        yield session


def loopback(session, signature, function, name="target", callout_signature=None):
    """Bind `function` as a callback and call it through a callout.

    The callout uses `callout_signature` when the outbound types differ from
    the inbound ones (for argument-only pointer variants).
    """
    binding = session.callback(name, signature, command=function)
    return session.callout(name, callout_signature or signature, address=binding.address)


ROUND_TRIPS = [
    ("char", 65),
    ("signed char", -128),
    ("unsigned char", 255),
    ("short", -32768),
    ("unsigned short", 65535),
    ("int", -(2**31)),
    ("unsigned", 2**32 - 1),
    ("long", -123456),
    ("unsigned long", 123456),
    ("long long", -(2**63)),
    ("unsigned long long", 2**64 - 1),
    ("sint8", -1),
    ("uint8", 255),
    ("sint16", -32768),
    ("uint16", 40000),
    ("sint32", -(2**31)),
    ("uint32", 2**32 - 1),
    ("sint64", -(2**63)),
    ("uint64", 2**64 - 1),
    ("float", 1.5),
    ("double", -2.25),
    pytest.param(
        "long double", 0.125,
        marks=pytest.mark.skipif(not abi.HAVE_LONG_DOUBLE, reason="long double is double here"),
    ),
    ("pointer", 0x1000),
]


class TestArguments:
    """Tests for argument marshaling."""

    def test_integers(self, session):
        add = loopback(session, "sint32(sint32, sint32)", lambda a, b: a + b)
        assert add(2, 3) == 5
        assert add(-10, 3) == -7

    def test_argument_count(self, session):
        add = loopback(session, "sint32(sint32, sint32)", lambda a, b: a + b)
        with pytest.raises(ArgumentCountError, match='wrong # args: should be "target sint32 sint32"'):
            add(1)

    def test_values_are_truncated_to_width(self, session):
        """Test that out-of-range integers are cast as C would."""
        seen = []
        echo = loopback(session, "void(uint8, sint16)", lambda a, b: seen.append((a, b)))
        echo(0x1FF, 0x18000)
        assert seen == [(0xFF, -0x8000)]

    def test_text_and_float_integers(self, session):
        """Test that integral text and floats are accepted."""
        ident = loopback(session, "sint64(sint64)", lambda a: a)
        assert ident("42") == 42
        assert ident(7.0) == 7
        assert ident("0x10") == 16
        with pytest.raises(ConversionError):
            ident(7.5)
        with pytest.raises(ConversionError):
            ident("seven")

    def test_wide_integers(self, session):
        ident = loopback(session, "uint64(uint64)", lambda a: a)
        assert ident(2**64 - 1) == 2**64 - 1
        signed = loopback(session, "sint64(sint64)", lambda a: a, name="signed")
        assert signed(-(2**63)) == -(2**63)

    def test_floating_point(self, session):
        add = loopback(session, "double(double, float)", lambda a, b: a + b)
        assert add(1.25, 2) == 3.25
        assert add("0.5", 0.5) == 1.0

    def test_pointer(self, session):
        ident = loopback(session, "pointer(pointer)", lambda p: p)
        assert ident(0x1000) == 0x1000
        assert ident(None) == 0

    def test_text_arguments(self, session):
        """Test that utf8 and utf16 arguments arrive as the same text."""
        seen = []
        both = loopback(session, "int(pointer-utf8, pointer-utf16)", lambda a, b: seen.append((a, b)) or len(a))
        assert both("héllo", "wörld ✓") == 5
        assert seen == [("héllo", "wörld ✓")]

    def test_null_text(self, session):
        ident = loopback(
            session, "pointer(pointer-utf8)", lambda s: 0, callout_signature="pointer-utf8(pointer-utf8)"
        )
        assert ident(None) is None

    def test_object_reference(self, session):
        """Test that a boxed host object is passed and returned as itself."""
        marker = object()
        ident = loopback(session, "pointer-obj(pointer-obj)", lambda o: o)
        assert ident(marker) is marker

    def test_context_check(self, session):
        with pytest.raises(ContextError, match="type pointer-utf8 is not permitted in callback return context"):
            session.callback("bad", "pointer-utf8()", command=lambda: None)
        assert session.signature_keys() == []


class TestStructs:
    """Tests for aggregate arguments."""

    def test_point(self, session):
        """Test a struct passed by value alongside a pointer."""
        session.typedef("point", "sint32", "sint32")
        seen = []

        def handler(ptr, data):
            seen.append(ptr)
            x, y = struct.unpack("=ii", data)
            return x * 10 + y

        call = loopback(session, "sint32(pointer, point)", handler)
        assert call(0, struct.pack("=ii", 3, 4)) == 34
        assert seen == [0]

    def test_wrong_size(self, session):
        session.typedef("point", "sint32", "sint32")
        call = loopback(session, "sint32(pointer, point)", lambda p, d: 0)
        with pytest.raises(SizeMismatchError, match="parameter 1 is the wrong size, 4 bytes instead of 8."):
            call(0, b"\0\0\0\0")

    def test_not_binary(self, session):
        session.typedef("point", "sint32", "sint32")
        call = loopback(session, "sint32(pointer, point)", lambda p, d: 0)
        with pytest.raises(ConversionError, match="parameter 1 must be a binary string"):
            call(0, "12345678")

    def test_frame_reusable_after_error(self, session):
        session.typedef("point", "sint32", "sint32")
        call = loopback(session, "sint32(pointer, point)", lambda p, d: len(d))
        with pytest.raises(MarshalError):
            call(0, b"short")
        assert call(0, bytearray(8)) == 8

    def test_redefined_struct(self, session):
        """Test that a callout sees the current definition of a reused name."""
        session.typedef("pt", "sint32", "sint32")
        session.callback("old", "sint32(pt)", command=lambda d: len(d))
        session.types.undefine("pt")
        session.typedef("pt", "sint32", "sint32", "sint32")
        call = loopback(session, "sint32(pt)", lambda d: sum(struct.unpack("=3i", d)))
        assert call(struct.pack("=3i", 1, 2, 3)) == 6


class TestReturns:
    """Tests for return value unwidening."""

    @pytest.mark.parametrize("type_name,value", ROUND_TRIPS)
    def test_round_trip(self, session, type_name, value):
        """Test that every primitive comes back as it was sent."""
        ident = loopback(session, f"{type_name}({type_name})", lambda v: v)
        assert ident(value) == value

    def test_utf16_return(self, session):
        ident = loopback(
            session, "pointer(pointer)", lambda p: p, callout_signature="pointer-utf16(pointer-utf16)"
        )
        assert ident("wörld ✓") == "wörld ✓"
        assert ident(None) is None

    def test_narrow_signed(self, session):
        """Test that narrow returns are sign-extended from their declared width."""
        ident = loopback(session, "sint8(sint8)", lambda a: a)
        assert ident(-5) == -5
        assert ident(127) == 127

    def test_narrow_unsigned(self, session):
        ident = loopback(session, "uint16(uint16)", lambda a: a)
        assert ident(65535) == 65535

    def test_declared_type_decides(self, session):
        """Test that the caller's declared type governs the value seen."""
        binding = session.callback("source", "uint32()", command=lambda: 0xFFFFFFFF)
        as_signed = session.callout("as_signed", "sint32()", address=binding.address)
        as_unsigned = session.callout("as_unsigned", "uint32()", address=binding.address)
        assert as_signed() == -1
        assert as_unsigned() == 0xFFFFFFFF

    def test_void(self, session):
        nothing = loopback(session, "void()", lambda: None)
        assert nothing() is None

    @needs_libc
    def test_struct_return(self, session):
        """Test a struct returned by value (div_t)."""
        session.typedef("div_t", "int", "int")
        session.callout("div", "div_t(int, int)", address=(LIBC, "div"))
        assert struct.unpack("=ii", session.call("div", 7, 2)) == (3, 1)

    @needs_libc
    def test_text_return(self, session):
        session.callout("strchr", "pointer-utf8(pointer-utf8, int)", address=(LIBC, "strchr"))
        assert session.call("strchr", "hello", ord("l")) == "llo"
        assert session.call("strchr", "hello", ord("z")) is None


class TestBuffers:
    """Tests for buffers native code writes into."""

    @needs_libc
    def test_byte_buffer_is_shared(self, session):
        """Test that a bytearray argument is written in place."""
        session.callout("memset", "pointer(pointer-byte, int, pointer)", address=(LIBC, "memset"))
        data = bytearray(4)
        session.call("memset", data, ord("A"), 3)
        assert data == bytearray(b"AAA\0")

    @needs_libc
    def test_variable_buffer(self, session):
        """Test that pointer-var writes through to the named variable."""
        session.callout("memset", "pointer(pointer-var, int, pointer)", address=(LIBC, "memset"))
        session.set_var("buf", b"----")
        assert session.variables.get_text("buf") == "----"
        session.call("memset", "buf", ord("B"), 2)
        assert session.get_var("buf") == bytearray(b"BB--")
        assert session.variables.get_text("buf") == "BB--"

    def test_unknown_variable(self, session):
        call = loopback(session, "int(pointer)", lambda p: 0, callout_signature="int(pointer-var)")
        with pytest.raises(MarshalError, match='can\'t read "nope": no such variable'):
            call("nope")

    @needs_libc
    def test_callback_reference(self, session):
        """Test qsort with a comparison callback passed by name."""

        def compare(a, b):
            x = ctypes.c_int.from_address(a).value
            y = ctypes.c_int.from_address(b).value
            return (x > y) - (x < y)

        session.callback("compare", "int(pointer, pointer)", command=compare)
        session.callout(
            "qsort", "void(pointer-byte, pointer, pointer, pointer-proc)", address=(LIBC, "qsort")
        )
        data = bytearray(struct.pack("=5i", 5, -1, 3, 0, 2))
        session.call("qsort", data, 5, ctypes.sizeof(ctypes.c_int), "compare")
        assert struct.unpack("=5i", data) == (-1, 0, 2, 3, 5)
        assert session.background_errors() == []

    def test_unknown_callback_reference(self, session):
        call = loopback(session, "int(pointer)", lambda p: 0, callout_signature="int(pointer-proc)")
        with pytest.raises(MarshalError, match="no callback named missing is defined"):
            call("missing")


class TestReentrancy:
    """Tests for calls that re-enter the same binding."""

    def test_concurrent_calls(self, session):
        """Test two threads inside one binding at the same time."""
        barrier = threading.Barrier(2, timeout=10)

        def twice(x):
            barrier.wait()
            return x * 2

        call = loopback(session, "sint32(sint32)", twice)
        results = {}

        def worker(n):
            results[n] = call(n)

        threads = [threading.Thread(target=worker, args=(n,)) for n in (3, 4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)
        assert results == {3: 6, 4: 8}
        assert session.background_errors() == []

    def test_recursive_callout(self, session):
        """Test that a nested call does not corrupt the outer frame."""

        def factorial(n):
            if n <= 1:
                return 1
            return n * session.call("fact", n - 1)

        session.callback("fact", "sint64(sint64)", command=factorial)
        session.callout("fact", "sint64(sint64)", address=session.callbacks["fact"].address)
        assert session.call("fact", 10) == 3628800

    def test_nested_struct_arguments(self, session):
        session.typedef("point", "sint32", "sint32")

        def handler(depth, data):
            x, y = struct.unpack("=ii", data)
            if depth > 0:
                inner = session.call("walk", depth - 1, struct.pack("=ii", x + 1, y + 1))
                return inner + x
            return x + y

        loopback(session, "sint32(sint32, point)", handler, name="walk")
        assert session.call("walk", 2, struct.pack("=ii", 1, 1)) == 1 + 2 + (3 + 3)


class TestLifecycle:
    """Tests for callout deletion."""

    def test_closed_binding(self, session):
        add = loopback(session, "sint32(sint32, sint32)", lambda a, b: a + b)
        session.delete_callout("target")
        with pytest.raises(MarshalError, match="has been deleted"):
            add(1, 2)

    def test_close_is_idempotent(self, session):
        add = loopback(session, "sint32(sint32, sint32)", lambda a, b: a + b)
        cif = add.cif
        refs = cif.refs
        add.close()
        add.close()
        assert cif.refs == refs - 1

    def test_allocation_failure(self, session, monkeypatch):
        """Test that a binding that can't get its frame leaves nothing behind."""

        def exhausted(arg_types):
            raise MemoryError

        monkeypatch.setattr(callout, "CallFrame", exhausted)
        with pytest.raises(ResourceError, match="couldn't allocate callout f"):
            session.callout("f", "int(int)", address=0x1000)
        assert session.signature_keys() == []
        assert session.callout_names() == []
