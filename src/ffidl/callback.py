"""Inbound calls: native code calling back into host callables.

Each binding owns a closure (the trampoline) whose native entry address can
be handed to foreign code. ctypes builds the closure, except for aggregate
returns, which ctypes cannot produce and cffi builds instead. When native
code calls it, the arguments are converted to host values, the host callable
runs, and its result is converted back.

Errors raised by the host callable can not cross the native boundary. They
are reported once through ``Session.background_error`` and the native caller
receives a zero return value.
"""

from __future__ import annotations

import ctypes
import logging
from typing import TYPE_CHECKING, Any, Callable, Sequence

from ffidl import abi, closures, values
from ffidl.callout import check_contexts
from ffidl.errors import ConversionError, DispatchError, MarshalError, ResourceError, SizeMismatchError
from ffidl.signatures import CallDescriptor
from ffidl.types import Context, TypeCode, TypeDefinition, ValueClass

if TYPE_CHECKING:
    from ffidl.session import Session

logger = logging.getLogger(__name__)

Command = Any  # a callable or a registered command name


def split_command(command: Any) -> tuple[Command | None, tuple[Any, ...]]:
    """Separate a command into its target and fixed prefix arguments."""
    if command is None or callable(command) or isinstance(command, str):
        return command, ()
    if isinstance(command, Sequence) and len(command) > 0:
        return command[0], tuple(command[1:])
    raise MarshalError(f"invalid callback command: {command!r}")


def _make_trampoline(cif: CallDescriptor, dispatch: Callable[..., Any]) -> tuple[Any, int]:
    """Return a closure calling `dispatch` and its native entry address."""
    if cif.return_type.is_aggregate:
        return closures.struct_trampoline(cif, dispatch)
    try:
        trampoline = cif.prototype(dispatch)
    except MemoryError as e:
        raise ResourceError(f"couldn't allocate trampoline for {cif.key}") from e
    return trampoline, abi.address_of_function(trampoline)


class InboundBinding:
    """A host callable reachable from native code through a trampoline."""

    def __init__(self, session: Session, name: str, cif: CallDescriptor, command: Any = None) -> None:
        check_contexts(cif, Context.CBARG, Context.CBRET)
        self.session = session
        self.name = name
        self.cif = cif
        self.command, self.prefix = split_command(command)
        # cffi trampolines pass cffi values
        self._from_cffi = cif.return_type.is_aggregate
        self._trampoline, self.address = _make_trampoline(cif, self._dispatch)
        self._closed = False
        logger.debug("bound callback %s at %#x as %s", name, self.address, cif.key)

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return f"<InboundBinding {self.name} {self.cif.key} at {self.address:#x}>"

    def _target(self) -> Callable[..., Any]:
        command = self.command if self.command is not None else self.name
        if callable(command):
            return command
        target = self.session.commands.get(command)
        if target is None:
            raise LookupError(f'invalid command name "{command}"')
        return target

    def _dispatch(self, *native_args: Any) -> Any:
        if self._closed or not self.session.live:
            logger.error("callback %s invoked after it was deleted or its session closed", self.name)
            return self._zero()
        try:
            host_args = [self._to_host(t, v) for t, v in zip(self.cif.arg_types, native_args)]
            result = self._target()(*self.prefix, *host_args)
            return self._to_native(result)
        except BaseException as e:
            # nothing may unwind through the native frames above us
            self.session.background_error(DispatchError(self.name, e))
            return self._zero()

    def _to_host(self, type_def: TypeDefinition, value: Any) -> Any:
        if self._from_cffi:
            value = closures.adapt_argument(type_def, value)
        code = type_def.code
        if type_def.is_aggregate:
            return values.read_bytes(ctypes.addressof(value), type_def.size)
        if code is TypeCode.PTR:
            return value or 0
        if code is TypeCode.PTR_UTF8:
            return values.read_utf8(value)
        if code is TypeCode.PTR_UTF16:
            return values.read_utf16(value)
        return value

    def _to_native(self, result: Any) -> Any:
        type_def = self.cif.return_type
        if type_def.is_void:
            return None
        if type_def.is_aggregate:
            if not isinstance(result, (bytes, bytearray, memoryview)):
                raise ConversionError("callback result must be a binary string")
            data = bytes(result)
            if len(data) != type_def.size:
                raise SizeMismatchError(
                    f"callback result is the wrong size, {len(data)} bytes instead of {type_def.size}."
                )
            return data
        if type_def.value_class in (ValueClass.INT, ValueClass.WIDEINT):
            value = values.as_integer(result)
            if type_def.widened:
                return abi.widen(value, type_def.size, type_def.signed)
            return abi.truncate(value, type_def.size, type_def.signed)
        if type_def.value_class is ValueClass.DOUBLE:
            return values.as_double(result)
        if type_def.code is TypeCode.PTR:
            return values.as_pointer(result)
        if type_def.code is TypeCode.PTR_OBJ:
            return result
        raise MarshalError(f"type {type_def.name} cannot be returned from a callback")

    def _zero(self) -> Any:
        type_def = self.cif.return_type
        if type_def.is_void or type_def.code is TypeCode.PTR_OBJ:
            return None
        if type_def.is_aggregate:
            return bytes(type_def.size)
        if type_def.value_class is ValueClass.DOUBLE:
            return 0.0
        return 0

    def close(self) -> None:
        """Release the call descriptor and detach from the session.

        The trampoline itself stays valid while this object lives, so a
        late native call is logged and answered with zero.
        """
        if self._closed:
            return
        self._closed = True
        self.session.signatures.release(self.cif)
        logger.debug("deleted callback %s", self.name)
