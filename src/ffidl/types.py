"""Type descriptors and the type registry."""

from __future__ import annotations

import ctypes
import itertools
import logging
from dataclasses import dataclass, field
from enum import Enum, IntFlag
from typing import Any, Union

from ffidl import abi
from ffidl.errors import DefinitionError, LayoutMismatchError, UnknownTypeError

logger = logging.getLogger(__name__)

# Serials are process-wide so descriptors from different sessions never collide.
_serials = itertools.count(1)


class TypeCode(Enum):
    """Native type families understood by the marshaling engine."""

    VOID = "void"
    INT = "int"
    FLOAT = "float"
    DOUBLE = "double"
    LONGDOUBLE = "long double"
    UINT8 = "uint8"
    SINT8 = "sint8"
    UINT16 = "uint16"
    SINT16 = "sint16"
    UINT32 = "uint32"
    SINT32 = "sint32"
    UINT64 = "uint64"
    SINT64 = "sint64"
    STRUCT = "struct"
    PTR = "pointer"
    PTR_BYTE = "pointer-byte"
    PTR_UTF8 = "pointer-utf8"
    PTR_UTF16 = "pointer-utf16"
    PTR_VAR = "pointer-var"
    PTR_OBJ = "pointer-obj"
    PTR_PROC = "pointer-proc"

    @property
    def is_integer(self) -> bool:
        return self in _INTEGER_CODES

    @property
    def is_float(self) -> bool:
        return self in (TypeCode.FLOAT, TypeCode.DOUBLE, TypeCode.LONGDOUBLE)

    @property
    def is_pointer(self) -> bool:
        return self.value.startswith("pointer")

    @property
    def signed(self) -> bool:
        return self in (TypeCode.INT, TypeCode.SINT8, TypeCode.SINT16, TypeCode.SINT32, TypeCode.SINT64)


_INTEGER_CODES = frozenset({
    TypeCode.INT,
    TypeCode.UINT8,
    TypeCode.SINT8,
    TypeCode.UINT16,
    TypeCode.SINT16,
    TypeCode.UINT32,
    TypeCode.SINT32,
    TypeCode.UINT64,
    TypeCode.SINT64,
})


class Context(IntFlag):
    """Positions in which a type may be used."""

    NONE = 0
    ARG = 1  # outbound argument
    RET = 2  # outbound return
    ELT = 4  # aggregate element
    CBARG = 8  # inbound (callback) argument
    CBRET = 16  # inbound (callback) return
    ARGRET = ARG | RET
    ALL = ARG | RET | ELT | CBARG | CBRET

    def describe(self) -> str:
        """Human-readable name of a single context bit."""
        return {
            Context.ARG: "argument",
            Context.RET: "return",
            Context.ELT: "element",
            Context.CBARG: "callback argument",
            Context.CBRET: "callback return",
        }.get(self, "unknown")


class ValueClass(Enum):
    """Which host conversion a type asks for."""

    NONE = "none"
    INT = "int"
    WIDEINT = "wideint"
    DOUBLE = "double"
    POINTER = "pointer"


@dataclass(eq=False)
class TypeDefinition:
    """Base class for type descriptors.

    Descriptors are immutable once published. Aliases are additional names
    bound to the same descriptor, so `refs` counts names plus users.
    `serial` tells apart descriptors that have held the same name.
    """

    name: str
    code: TypeCode
    size: int
    alignment: int
    contexts: Context
    value_class: ValueClass = ValueClass.NONE
    lib_type: Any = None
    static: bool = False
    refs: int = 0
    serial: int = field(default_factory=lambda: next(_serials))

    @property
    def is_aggregate(self) -> bool:
        return self.code is TypeCode.STRUCT

    @property
    def is_void(self) -> bool:
        return self.code is TypeCode.VOID

    @property
    def signed(self) -> bool:
        return self.code.signed

    @property
    def widened(self) -> bool:
        """True if returns of this type travel in a register-width container."""
        return self.code.is_integer and self.size < abi.REGISTER_SIZE

    @property
    def return_lib_type(self) -> Any:
        """The ctypes type used in return position."""
        if self.widened:
            return abi.REGISTER_TYPE
        return self.lib_type

    def permits(self, context: Context) -> bool:
        return bool(self.contexts & context)


@dataclass(eq=False)
class PrimitiveTypeDefinition(TypeDefinition):
    """A built-in scalar or pointer type. Never freed."""

    static: bool = True


@dataclass(eq=False)
class AggregateTypeDefinition(TypeDefinition):
    """A struct laid out sequentially from its elements."""

    elements: list[TypeDefinition] = field(default_factory=list)
    offsets: list[int] = field(default_factory=list)


@dataclass
class LayoutEntry:
    """One span of an aggregate's byte layout."""

    kind: str  # "pad" or "field"
    offset: int
    size: int
    type_name: str | None = None
    type_def: TypeDefinition | None = field(default=None, repr=False, compare=False)


TypeRef = Union[str, TypeDefinition]


def _pointer(name: str, code: TypeCode, contexts: Context, lib_type: Any = ctypes.c_void_p,
             value_class: ValueClass = ValueClass.NONE) -> PrimitiveTypeDefinition:
    return PrimitiveTypeDefinition(
        name=name,
        code=code,
        size=abi.POINTER_SIZE,
        alignment=abi.alignment(ctypes.c_void_p),
        contexts=contexts,
        value_class=value_class,
        lib_type=lib_type,
    )


def _integer(name: str, lib_type: Any, signed: bool, code: TypeCode | None = None) -> PrimitiveTypeDefinition:
    size = ctypes.sizeof(lib_type)
    if code is None:
        code = TypeCode(f"{'s' if signed else 'u'}int{size * 8}")
    return PrimitiveTypeDefinition(
        name=name,
        code=code,
        size=size,
        alignment=ctypes.alignment(lib_type),
        contexts=Context.ALL,
        value_class=ValueClass.WIDEINT if size >= 8 else ValueClass.INT,
        lib_type=abi.integer_type(size, signed),
    )


def _floating(name: str, code: TypeCode, lib_type: Any) -> PrimitiveTypeDefinition:
    return PrimitiveTypeDefinition(
        name=name,
        code=code,
        size=ctypes.sizeof(lib_type),
        alignment=ctypes.alignment(lib_type),
        contexts=Context.ALL,
        value_class=ValueClass.DOUBLE,
        lib_type=lib_type,
    )


def builtin_types() -> list[PrimitiveTypeDefinition]:
    """Build the built-in descriptors in registration order."""
    types: list[PrimitiveTypeDefinition] = [
        PrimitiveTypeDefinition(
            name="void", code=TypeCode.VOID, size=0, alignment=1,
            contexts=Context.RET | Context.CBRET, lib_type=None,
        ),
        _integer("char", ctypes.c_char, abi.CHAR_IS_SIGNED),
        _integer("signed char", ctypes.c_byte, True),
        _integer("unsigned char", ctypes.c_ubyte, False),
        _integer("short", ctypes.c_short, True),
        _integer("unsigned short", ctypes.c_ushort, False),
        _integer("int", ctypes.c_int, True, code=TypeCode.INT),
        _integer("unsigned", ctypes.c_uint, False),
        _integer("long", ctypes.c_long, True),
        _integer("unsigned long", ctypes.c_ulong, False),
        _integer("long long", ctypes.c_longlong, True),
        _integer("unsigned long long", ctypes.c_ulonglong, False),
        _floating("float", TypeCode.FLOAT, ctypes.c_float),
        _floating("double", TypeCode.DOUBLE, ctypes.c_double),
    ]
    if abi.HAVE_LONG_DOUBLE:
        types.append(_floating("long double", TypeCode.LONGDOUBLE, ctypes.c_longdouble))
    for bits in (8, 16, 32, 64):
        size = bits // 8
        types.append(_integer(f"sint{bits}", abi.integer_type(size, True), True))
        types.append(_integer(f"uint{bits}", abi.integer_type(size, False), False))
    types.extend([
        _pointer("pointer", TypeCode.PTR, Context.ALL, value_class=ValueClass.POINTER),
        _pointer("pointer-obj", TypeCode.PTR_OBJ, Context.ARGRET | Context.CBARG | Context.CBRET,
                 lib_type=ctypes.py_object),
        _pointer("pointer-utf8", TypeCode.PTR_UTF8, Context.ARGRET | Context.CBARG),
        _pointer("pointer-utf16", TypeCode.PTR_UTF16, Context.ARGRET | Context.CBARG),
        _pointer("pointer-byte", TypeCode.PTR_BYTE, Context.ARG),
        _pointer("pointer-var", TypeCode.PTR_VAR, Context.ARG),
        _pointer("pointer-proc", TypeCode.PTR_PROC, Context.ARG),
    ])
    return types


def _align_up(value: int, alignment: int) -> int:
    if alignment <= 1:
        return value
    return (value + alignment - 1) // alignment * alignment


class TypeRegistry:
    """Registry of all types known to a session."""

    def __init__(self, strict_layout: bool = True) -> None:
        self.strict_layout = strict_layout
        self._types: dict[str, TypeDefinition] = {}
        self._register_builtins()

    def _register_builtins(self) -> None:
        """Register all built-in types."""
        for type_def in builtin_types():
            self._types[type_def.name] = type_def
            type_def.refs += 1

    # ---- Lookup ----

    def get(self, name: str) -> TypeDefinition | None:
        """Get a type by name."""
        return self._types.get(name)

    def lookup(self, name: str) -> TypeDefinition:
        """Get a type by name, raising if not found."""
        type_def = self._types.get(name)
        if type_def is None:
            raise UnknownTypeError(f"undefined type: {name}")
        return type_def

    def resolve(self, type_ref: TypeRef) -> TypeDefinition:
        """Accept either a name or a descriptor."""
        if isinstance(type_ref, TypeDefinition):
            return type_ref
        return self.lookup(type_ref)

    def list_types(self) -> list[str]:
        """List all registered type names."""
        return list(self._types.keys())

    def names_of(self, type_def: TypeDefinition) -> list[str]:
        """All names (primary and aliases) bound to a descriptor."""
        return [name for name, td in self._types.items() if td is type_def]

    def __contains__(self, name: str) -> bool:
        return name in self._types

    def __len__(self) -> int:
        return len(self._types)

    # ---- Definition ----

    def define(self, name: str, element_names: list[str] | tuple[str, ...]) -> TypeDefinition:
        """Define an alias (one element) or an aggregate (two or more)."""
        if name in self._types:
            raise DefinitionError(f"type is already defined: {name}")
        if not element_names:
            raise DefinitionError(f"type {name} needs at least one element")

        if len(element_names) == 1:
            target = self._types.get(element_names[0])
            if target is None:
                raise UnknownTypeError(f"undefined type: {element_names[0]}")
            self._types[name] = target
            self.ref(target)
            logger.debug("alias %s -> %s (refs=%d)", name, target.name, target.refs)
            return target

        elements: list[TypeDefinition] = []
        for element_name in element_names:
            element = self._types.get(element_name)
            if element is None:
                raise UnknownTypeError(f"undefined element type: {element_name}")
            if not element.permits(Context.ELT):
                raise DefinitionError(f"type {element_name} is not permitted in element context")
            elements.append(element)

        aggregate = self._build_aggregate(name, elements)
        for element in elements:
            self.ref(element)
        self._types[name] = aggregate
        aggregate.refs += 1
        logger.debug("aggregate %s: size=%d alignment=%d", name, aggregate.size, aggregate.alignment)
        return aggregate

    def _build_aggregate(self, name: str, elements: list[TypeDefinition]) -> AggregateTypeDefinition:
        """Compute the sequential layout and have the backend verify it."""
        size = 0
        alignment = 0
        offsets: list[int] = []
        for element in elements:
            size = _align_up(size, element.alignment)
            offsets.append(size)
            size += element.size
            alignment = max(alignment, element.alignment)
        size = _align_up(size, alignment)

        lib_type = abi.struct_type(name, [e.lib_type for e in elements])
        lib_size = abi.sizeof(lib_type)
        lib_alignment = abi.alignment(lib_type)
        if lib_size != size or lib_alignment != alignment:
            message = (
                f"layout of {name} disagrees with the call engine: "
                f"size {size} != {lib_size} or alignment {alignment} != {lib_alignment}"
            )
            if self.strict_layout:
                raise LayoutMismatchError(message)
            logger.warning(message)

        return AggregateTypeDefinition(
            name=name,
            code=TypeCode.STRUCT,
            size=size,
            alignment=alignment,
            contexts=Context.ALL,
            lib_type=lib_type,
            static=False,
            elements=elements,
            offsets=offsets,
        )

    # ---- Reference counting ----

    def ref(self, type_def: TypeDefinition) -> None:
        type_def.refs += 1

    def unref(self, type_def: TypeDefinition) -> None:
        """Drop one reference; free user descriptors at zero."""
        if type_def.static:
            # built-ins keep their registration reference forever
            if type_def.refs > 1:
                type_def.refs -= 1
            return
        type_def.refs -= 1
        if type_def.refs == 0:
            self._free(type_def)

    def _free(self, type_def: TypeDefinition) -> None:
        logger.debug("freeing type %s", type_def.name)
        if isinstance(type_def, AggregateTypeDefinition):
            for element in type_def.elements:
                self.unref(element)
        type_def.lib_type = None

    def undefine(self, name: str) -> None:
        """Remove a user-defined name and drop its reference."""
        type_def = self.lookup(name)
        if type_def.static and type_def.name == name:
            raise DefinitionError(f"cannot undefine built-in type: {name}")
        del self._types[name]
        self.unref(type_def)

    def clear(self) -> None:
        """Drop every user-defined name (session teardown)."""
        for name in [n for n, td in self._types.items() if not (td.static and td.name == n)]:
            self.undefine(name)

    # ---- Introspection ----

    def sizeof(self, type_ref: TypeRef) -> int:
        return self.resolve(type_ref).size

    def alignof(self, type_ref: TypeRef) -> int:
        return self.resolve(type_ref).alignment

    def layout(self, type_ref: TypeRef) -> list[LayoutEntry]:
        """Describe a type's bytes as padding and field spans in offset order."""
        entries: list[LayoutEntry] = []
        self._layout_into(self.resolve(type_ref), 0, entries)
        return entries

    def _layout_into(self, type_def: TypeDefinition, base: int, entries: list[LayoutEntry]) -> int:
        if type_def.is_void:
            return base
        if not isinstance(type_def, AggregateTypeDefinition):
            entries.append(LayoutEntry("field", base, type_def.size, type_def.name, type_def))
            return base + type_def.size
        offset = base
        for element, element_offset in zip(type_def.elements, type_def.offsets):
            start = base + element_offset
            if start > offset:
                entries.append(LayoutEntry("pad", offset, start - offset))
            offset = self._layout_into(element, start, entries)
        end = base + type_def.size
        if end > offset:
            entries.append(LayoutEntry("pad", offset, end - offset))
        return end

    def format(self, type_ref: TypeRef) -> str:
        """Return a struct-module format string describing the type's bytes.

        Uses native byte order with standard sizes and explicit padding, so
        ``struct.calcsize(fmt) == sizeof(type)``.
        """
        type_def = self.resolve(type_ref)
        if type_def.is_void:
            return ""
        codes: list[str] = []
        for entry in self.layout(type_def):
            if entry.kind == "pad":
                codes.append(f"{entry.size}x" if entry.size > 1 else "x")
            else:
                codes.append(_format_code(entry.type_def, entry.size))
        return "=" + "".join(codes)


def _format_code(type_def: TypeDefinition | None, size: int) -> str:
    """struct-module code for a scalar of the given descriptor."""
    if type_def is not None and type_def.code.is_float:
        if size == 4:
            return "f"
        if size == 8:
            return "d"
        return f"{size}s"
    signed = type_def is not None and type_def.signed
    code = {1: "b", 2: "h", 4: "i", 8: "q"}.get(size)
    if code is None:
        return f"{size}s"
    return code if signed else code.upper()
