"""Trampolines that return aggregates by value, built on cffi.

ctypes closures can only return scalars, so a callback whose return type is
an aggregate gets its trampoline from cffi instead. Aggregates are declared
to cffi once per descriptor, under a tag derived from the descriptor's
serial, and cffi's layout is checked against the registry's.
"""

from __future__ import annotations

import ctypes
import threading
from typing import TYPE_CHECKING, Any, Callable

from cffi import FFI

from ffidl.errors import LayoutMismatchError, ResourceError
from ffidl.types import AggregateTypeDefinition, TypeCode, TypeDefinition

if TYPE_CHECKING:
    from cffi import FFI as FFIType

    from ffidl.signatures import CallDescriptor

ffi: FFIType = FFI()

# serial -> layout complaint, or None when cffi agrees with the registry
_declared: dict[int, str | None] = {}
_lock = threading.RLock()

# Per-thread home of the struct being returned, alive until cffi copies it out.
_returning = threading.local()


def struct_tag(type_def: TypeDefinition) -> str:
    return f"struct ffidl_s{type_def.serial}"


def c_type(type_def: TypeDefinition) -> str:
    """The C spelling cffi uses for a descriptor."""
    code = type_def.code
    if type_def.is_void:
        return "void"
    if type_def.is_aggregate:
        declare(type_def)
        return struct_tag(type_def)
    if code.is_integer:
        return f"{'int' if type_def.signed else 'uint'}{type_def.size * 8}_t"
    if code.is_float:
        return code.value
    if code.is_pointer:
        return "void *"
    raise TypeError(f"type {type_def.name} has no C spelling")


def declare(type_def: TypeDefinition) -> None:
    """Declare an aggregate (and its nested aggregates) to cffi once."""
    assert isinstance(type_def, AggregateTypeDefinition)
    with _lock:
        if type_def.serial not in _declared:
            tag = struct_tag(type_def)
            fields = " ".join(f"{c_type(e)} e{i};" for i, e in enumerate(type_def.elements))
            ffi.cdef(f"{tag} {{ {fields} }};")
            size, alignment = ffi.sizeof(tag), ffi.alignof(tag)
            complaint = None
            if size != type_def.size or alignment != type_def.alignment:
                complaint = (
                    f"layout of {type_def.name} disagrees with the closure engine: "
                    f"size {type_def.size} != {size} or alignment {type_def.alignment} != {alignment}"
                )
            _declared[type_def.serial] = complaint
        complaint = _declared[type_def.serial]
    if complaint is not None:
        raise LayoutMismatchError(complaint)


def function_type(cif: CallDescriptor) -> str:
    """C declaration of a function pointer matching a call descriptor."""
    args = ", ".join(c_type(t) for t in cif.arg_types) or "void"
    convention = "__stdcall " if cif.protocol.name == "stdcall" else ""
    return f"{c_type(cif.return_type)}({convention}*)({args})"


def _address(pointer: Any) -> int | None:
    return int(ffi.cast("uintptr_t", pointer)) or None


def adapt_argument(type_def: TypeDefinition, value: Any) -> Any:
    """Reshape a cffi argument into what a ctypes closure would receive."""
    code = type_def.code
    if type_def.is_aggregate:
        data = ffi.buffer(ffi.addressof(value))[:]
        return type_def.lib_type.from_buffer_copy(data)
    if code is TypeCode.PTR_OBJ:
        address = _address(value)
        if address is None:
            return None
        return ctypes.cast(ctypes.c_void_p(address), ctypes.py_object).value
    if code.is_pointer:
        return _address(value)
    if code is TypeCode.LONGDOUBLE:
        return float(value)
    return value


def _struct_value(type_def: TypeDefinition, data: bytes) -> Any:
    box = ffi.new(f"{struct_tag(type_def)} *")
    ffi.memmove(box, data, type_def.size)
    _returning.box = box
    return box[0]


def struct_trampoline(cif: CallDescriptor, dispatch: Callable[..., bytes]) -> tuple[Any, int]:
    """Build a native entry point for `dispatch`; return it and its address.

    `dispatch` receives cffi values (see `adapt_argument`), must never raise
    and must return exactly ``sizeof(return type)`` bytes.
    """
    return_type = cif.return_type

    def invoke(*native_args: Any) -> Any:
        return _struct_value(return_type, dispatch(*native_args))

    declaration = function_type(cif)
    try:
        callback = ffi.callback(declaration, invoke)
    except MemoryError as e:
        raise ResourceError(f"couldn't allocate trampoline for {cif.key}") from e
    return callback, int(ffi.cast("uintptr_t", callback))
