"""Native call engine backend built on ctypes.

ctypes wraps libffi, so everything the engine needs from a "call engine" is
available here: C scalar types with platform sizes and alignments, struct
layout for aggregates, function prototypes per calling convention, and
closures (callback trampolines).

This module knows nothing about ffidl type descriptors; it works on ctypes
types, sizes and signedness only.
"""

from __future__ import annotations

import ctypes
import platform
import re
import sys
from typing import Any, Callable, NamedTuple

# Size of the container a narrow integer return is widened into (libffi's
# ffi_arg). It is pointer-width on every ABI ctypes supports.
REGISTER_SIZE = ctypes.sizeof(ctypes.c_void_p)
REGISTER_TYPE: Any = ctypes.c_uint64 if REGISTER_SIZE == 8 else ctypes.c_uint32

POINTER_SIZE = ctypes.sizeof(ctypes.c_void_p)

# Plain `char` is unsigned on most non-x86 Linux ABIs (Apple keeps it signed).
CHAR_IS_SIGNED = sys.platform == "darwin" or not platform.machine().lower().startswith(
    ("arm", "aarch64", "ppc", "powerpc", "s390")
)

HAVE_LONG_DOUBLE = ctypes.sizeof(ctypes.c_longdouble) > ctypes.sizeof(ctypes.c_double)
HAVE_INT64 = True


def sizeof(lib_type: Any) -> int:
    """Return the backend size of a ctypes type (0 for void)."""
    if lib_type is None:
        return 0
    return ctypes.sizeof(lib_type)


def alignment(lib_type: Any) -> int:
    """Return the backend alignment of a ctypes type (1 for void)."""
    if lib_type is None:
        return 1
    return ctypes.alignment(lib_type)


def struct_type(name: str, element_types: list[Any]) -> type[ctypes.Structure]:
    """Materialize an aggregate as a ctypes Structure with sequential fields."""
    class_name = "ffidl_" + re.sub(r"\W", "_", name)
    fields = [(f"e{i}", t) for i, t in enumerate(element_types)]
    return type(class_name, (ctypes.Structure,), {"_fields_": fields})


def integer_type(size: int, signed: bool) -> Any:
    """Return the fixed-width ctypes integer type for a size in bytes."""
    table = {
        1: (ctypes.c_uint8, ctypes.c_int8),
        2: (ctypes.c_uint16, ctypes.c_int16),
        4: (ctypes.c_uint32, ctypes.c_int32),
        8: (ctypes.c_uint64, ctypes.c_int64),
    }
    return table[size][signed]


# ---- Register widening ----


def truncate(value: int, size: int, signed: bool) -> int:
    """Cast an integer to a C integer of the given width, as C would."""
    bits = size * 8
    value &= (1 << bits) - 1
    if signed and value >> (bits - 1):
        value -= 1 << bits
    return value


def widen(value: int, size: int, signed: bool) -> int:
    """Store a narrow integer in the register-width return container.

    Signed values are sign-extended, unsigned values zero-extended; the result
    is the unsigned bit pattern of the full register.
    """
    value = truncate(value, size, signed)
    return value & ((1 << (REGISTER_SIZE * 8)) - 1)


def narrow(raw: int, size: int, signed: bool) -> int:
    """Extract a narrow integer from the register-width return container."""
    return truncate(raw, size, signed)


# ---- Calling conventions ----


class Protocol(NamedTuple):
    """A calling convention the backend can build prototypes for."""

    name: str
    factory: Callable[..., Any]


DEFAULT_PROTOCOL = Protocol("default", ctypes.CFUNCTYPE)

PROTOCOLS: dict[str, Protocol] = {
    "": DEFAULT_PROTOCOL,
    "default": DEFAULT_PROTOCOL,
    "cdecl": Protocol("cdecl", ctypes.CFUNCTYPE),
    "sysv": Protocol("cdecl", ctypes.CFUNCTYPE),
}

if hasattr(ctypes, "WINFUNCTYPE"):
    PROTOCOLS["stdcall"] = Protocol("stdcall", ctypes.WINFUNCTYPE)
    PROTOCOLS["winapi"] = Protocol("stdcall", ctypes.WINFUNCTYPE)

# Every tag a signature may start with, including ones this platform lacks.
PROTOCOL_WORDS = frozenset({"default", "cdecl", "sysv", "stdcall", "winapi"})


def protocol_names() -> list[str]:
    """Names accepted as calling convention tags."""
    return sorted(name for name in PROTOCOLS if name)


def is_default(protocol: Protocol) -> bool:
    """True when the protocol builds the same prototypes as the default."""
    return protocol.factory is DEFAULT_PROTOCOL.factory


def make_prototype(protocol: Protocol, restype: Any, argtypes: list[Any]) -> Any:
    """Prepare the call plan for one exact sequence of types.

    Raises TypeError when ctypes rejects a type in this position.
    """
    return protocol.factory(restype, *argtypes)


def address_of_function(function: Any) -> int:
    """Native entry address of a ctypes function pointer or closure."""
    return ctypes.cast(function, ctypes.c_void_p).value or 0


def canonical_host() -> str:
    """Return a host triple-like string, e.g. 'x86_64-linux'."""
    machine = platform.machine().lower() or "unknown"
    return f"{machine}-{platform.system().lower() or sys.platform}"
