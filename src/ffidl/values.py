"""Conversions between host (Python) values and native values.

Host values are duck-typed: an integer argument may arrive as an int, a float
that happens to be integral, or text. Each conversion first uses the value's
own representation when it already matches, then falls back to parsing.
"""

from __future__ import annotations

import ctypes
import sys
from typing import Any

from ffidl import abi
from ffidl.errors import ConversionError

WIDE_MIN = -(1 << 63)
WIDE_MAX = (1 << 64) - 1

_TEXT_TYPES = (str, bytes, bytearray)


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def _describe(value: Any) -> str:
    text = repr(value)
    return text if len(text) <= 40 else text[:37] + "..."


def as_integer(value: Any) -> int:
    """Convert a host value to an integer of at most 64 bits.

    The result is not truncated; callers cast to the target width.
    """
    if isinstance(value, int):
        result = int(value)
    elif isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")) or int(value) != value:
            raise ConversionError(f"expected integer but got {_describe(value)}")
        result = int(value)
    elif isinstance(value, _TEXT_TYPES):
        text = _text(value).strip()
        try:
            result = int(text, 0)
        except ValueError:
            try:
                number = float(text)
            except ValueError:
                raise ConversionError(f"expected integer but got {_describe(value)}") from None
            # round-trip check: only integral doubles convert
            if number != number or number in (float("inf"), float("-inf")) or int(number) != number:
                raise ConversionError(f"expected integer but got {_describe(value)}") from None
            result = int(number)
    elif hasattr(value, "__index__"):
        result = value.__index__()
    else:
        raise ConversionError(f"expected integer but got {_describe(value)}")

    if not WIDE_MIN <= result <= WIDE_MAX:
        raise ConversionError(f"integer value too large to represent: {_describe(value)}")
    return result


def as_wide_integer(value: Any) -> int:
    """Convert a host value to a 64-bit integer."""
    return as_integer(value)


def as_double(value: Any) -> float:
    """Convert a host value to a double."""
    if isinstance(value, float):
        return value
    if isinstance(value, int):
        try:
            return float(value)
        except OverflowError:
            raise ConversionError(f"integer value too large to represent as double: {_describe(value)}") from None
    if isinstance(value, _TEXT_TYPES):
        try:
            return float(_text(value).strip())
        except ValueError:
            raise ConversionError(f"expected floating-point number but got {_describe(value)}") from None
    if hasattr(value, "__float__"):
        return float(value)
    raise ConversionError(f"expected floating-point number but got {_describe(value)}")


def as_pointer(value: Any) -> int:
    """Convert a host value to a pointer bit pattern."""
    if value is None:
        return 0
    if isinstance(value, ctypes._Pointer):
        return ctypes.cast(value, ctypes.c_void_p).value or 0
    if isinstance(value, ctypes.c_void_p):
        return value.value or 0
    result = as_integer(value)
    return abi.truncate(result, abi.POINTER_SIZE, False)


def as_byte_buffer(value: Any, index: int) -> bytes | bytearray | memoryview:
    """Require a binary value; text is not silently encoded."""
    if isinstance(value, (bytes, bytearray)):
        return value
    if isinstance(value, memoryview):
        if not value.contiguous:
            raise ConversionError(f"parameter {index} must be a contiguous binary buffer")
        return value.cast("B") if value.format != "B" else value
    raise ConversionError(f"parameter {index} must be a binary string")


def as_text(value: Any) -> str:
    """String representation used for text pointers."""
    if isinstance(value, str):
        return value
    return _text(value)


# ---- Native buffers ----


def buffer_address(buffer: bytes | bytearray | memoryview, keepalive: list[Any]) -> int:
    """Address of a buffer's storage, without copying when it is writable.

    The ctypes object that exposes the storage is appended to `keepalive`;
    the address is valid while that object lives.
    """
    if isinstance(buffer, bytes):
        holder: Any = ctypes.c_char_p(buffer)
        keepalive.append(holder)
        return ctypes.cast(holder, ctypes.c_void_p).value or 0
    if isinstance(buffer, memoryview) and buffer.readonly:
        holder = (ctypes.c_char * len(buffer)).from_buffer_copy(buffer)
    else:
        holder = (ctypes.c_char * len(buffer)).from_buffer(buffer)
    keepalive.append(holder)
    return ctypes.addressof(holder)


def encode_utf8z(value: Any) -> bytes:
    """NUL-terminated UTF-8 (ctypes appends the terminator for bytes)."""
    if isinstance(value, bytes):
        return value
    return as_text(value).encode("utf-8")


def encode_utf16z(value: Any) -> Any:
    """A ctypes array holding NUL-terminated native-order UTF-16."""
    encoding = "utf-16-le" if sys.byteorder == "little" else "utf-16-be"
    data = as_text(value).encode(encoding, errors="surrogatepass") + b"\0\0"
    return (ctypes.c_uint16 * (len(data) // 2)).from_buffer_copy(data)


def read_utf8(address: int | None) -> str | None:
    """Decode a NUL-terminated UTF-8 string; NULL gives None."""
    if not address:
        return None
    return ctypes.string_at(address).decode("utf-8", errors="surrogateescape")


def read_utf16(address: int | None) -> str | None:
    """Decode a NUL-terminated native-order UTF-16 string; NULL gives None."""
    if not address:
        return None
    units: list[int] = []
    offset = 0
    while True:
        unit = ctypes.c_uint16.from_address(address + offset).value
        if unit == 0:
            break
        units.append(unit)
        offset += 2
    encoding = "utf-16-le" if sys.byteorder == "little" else "utf-16-be"
    data = b"".join(u.to_bytes(2, sys.byteorder) for u in units)
    return data.decode(encoding, errors="surrogatepass")


def read_bytes(address: int, size: int) -> bytes:
    """Copy `size` bytes out of native memory."""
    if size == 0:
        return b""
    return ctypes.string_at(address, size)
