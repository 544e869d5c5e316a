"""Outbound calls: host code calling native functions."""

from __future__ import annotations

import ctypes
import logging
import threading
from typing import TYPE_CHECKING, Any

from ffidl import abi, values
from ffidl.errors import ArgumentCountError, ContextError, MarshalError, ResourceError, SizeMismatchError
from ffidl.signatures import CallDescriptor
from ffidl.types import Context, TypeCode, TypeDefinition, ValueClass

if TYPE_CHECKING:
    from ffidl.session import Session

logger = logging.getLogger(__name__)


def check_contexts(cif: CallDescriptor, arg_context: Context, return_context: Context) -> None:
    """Reject a descriptor whose types may not appear in these positions."""
    if not cif.return_type.permits(return_context):
        raise ContextError(
            f"type {cif.return_type.name} is not permitted in {return_context.describe()} context"
        )
    for arg_type in cif.arg_types:
        if not arg_type.permits(arg_context):
            raise ContextError(
                f"type {arg_type.name} is not permitted in {arg_context.describe()} context"
            )


class CallFrame:
    """Argument slots for one in-flight call.

    Scalar slots are ctypes instances created once and overwritten on every
    call. `keepalive` holds whatever backs pointer arguments until the call
    returns.
    """

    def __init__(self, arg_types: tuple[TypeDefinition, ...]) -> None:
        self.slots: list[Any] = [_new_slot(t) for t in arg_types]
        self.keepalive: list[Any] = []
        self.lock = threading.Lock()

    def reset(self) -> None:
        self.keepalive.clear()


def _new_slot(type_def: TypeDefinition) -> Any:
    if type_def.is_aggregate or type_def.code is TypeCode.PTR_OBJ:
        # filled per call
        return None
    return type_def.lib_type()


class OutboundBinding:
    """A native function bound to a call descriptor."""

    def __init__(self, session: Session, name: str, cif: CallDescriptor, address: int) -> None:
        check_contexts(cif, Context.ARG, Context.RET)
        self.session = session
        self.name = name
        self.cif = cif
        self.address = address
        try:
            self._function = cif.prototype(address)
            self._frame = CallFrame(cif.arg_types)
        except MemoryError as e:
            raise ResourceError(f"couldn't allocate callout {name}") from e
        self._closed = False
        logger.debug("bound callout %s to %#x as %s", name, address, cif.key)

    @property
    def usage(self) -> str:
        return " ".join([self.name] + [t.name for t in self.cif.arg_types])

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return f"<OutboundBinding {self.name} {self.cif.key} at {self.address:#x}>"

    def __call__(self, *args: Any) -> Any:
        return self.invoke(*args)

    def invoke(self, *args: Any) -> Any:
        """Marshal the arguments, call the native function and convert its result."""
        if self._closed:
            raise MarshalError(f"callout {self.name} has been deleted")
        if len(args) != self.cif.argc:
            raise ArgumentCountError(f'wrong # args: should be "{self.usage}"')

        frame = self._frame
        if not frame.lock.acquire(blocking=False):
            # reentrant or concurrent call: the shared frame is still in use
            try:
                frame = CallFrame(self.cif.arg_types)
            except MemoryError as e:
                raise ResourceError(f"couldn't allocate call frame for {self.name}") from e
            frame.lock.acquire()
        variables: list[str] = []
        try:
            call_args = [
                self._marshal(frame, index, type_def, value, variables)
                for index, (type_def, value) in enumerate(zip(self.cif.arg_types, args))
            ]
            try:
                result = self._function(*call_args)
            except ValueError:
                # ctypes refuses a NULL object reference
                if self.cif.return_type.code is TypeCode.PTR_OBJ:
                    result = None
                else:
                    raise
            return self._unmarshal(result)
        finally:
            for name in variables:
                self.session.variables.invalidate(name)
            frame.reset()
            frame.lock.release()

    # ---- Host to native ----

    def _marshal(
        self,
        frame: CallFrame,
        index: int,
        type_def: TypeDefinition,
        value: Any,
        variables: list[str],
    ) -> Any:
        code = type_def.code
        slot = frame.slots[index]

        if type_def.is_aggregate:
            buffer = values.as_byte_buffer(value, index)
            if len(buffer) != type_def.size:
                raise SizeMismatchError(
                    f"parameter {index} is the wrong size, {len(buffer)} bytes instead of {type_def.size}."
                )
            struct = type_def.lib_type.from_buffer_copy(buffer)
            frame.keepalive.append(struct)
            return struct

        if type_def.value_class is ValueClass.INT:
            slot.value = abi.truncate(values.as_integer(value), type_def.size, type_def.signed)
        elif type_def.value_class is ValueClass.WIDEINT:
            slot.value = abi.truncate(values.as_wide_integer(value), type_def.size, type_def.signed)
        elif type_def.value_class is ValueClass.DOUBLE:
            slot.value = values.as_double(value)
        elif code is TypeCode.PTR:
            slot.value = values.as_pointer(value)
        elif code is TypeCode.PTR_BYTE:
            slot.value = values.buffer_address(values.as_byte_buffer(value, index), frame.keepalive)
        elif code is TypeCode.PTR_UTF8:
            if value is None:
                slot.value = None
            else:
                slot.value = values.buffer_address(values.encode_utf8z(value), frame.keepalive)
        elif code is TypeCode.PTR_UTF16:
            if value is None:
                slot.value = None
            else:
                text = values.encode_utf16z(value)
                frame.keepalive.append(text)
                slot.value = ctypes.addressof(text)
        elif code is TypeCode.PTR_VAR:
            name = values.as_text(value)
            buffer = self.session.variables.buffer_for_write(name)
            variables.append(name)
            slot.value = values.buffer_address(buffer, frame.keepalive)
        elif code is TypeCode.PTR_OBJ:
            return ctypes.py_object(value)
        elif code is TypeCode.PTR_PROC:
            slot.value = self._callback_address(value)
        else:
            raise MarshalError(f"type {type_def.name} cannot be passed as an argument")
        return slot

    def _callback_address(self, value: Any) -> int:
        address = getattr(value, "address", None)
        if address is not None:
            return address
        name = values.as_text(value)
        binding = self.session.callbacks.get(name)
        if binding is None:
            raise MarshalError(f"no callback named {name} is defined")
        return binding.address

    # ---- Native to host ----

    def _unmarshal(self, result: Any) -> Any:
        type_def = self.cif.return_type
        code = type_def.code
        if type_def.is_void:
            return None
        if type_def.is_aggregate:
            return values.read_bytes(ctypes.addressof(result), type_def.size)
        if type_def.widened:
            return abi.narrow(result, type_def.size, type_def.signed)
        if code.is_integer or code.is_float or code is TypeCode.PTR_OBJ:
            return result
        if code is TypeCode.PTR:
            return result or 0
        if code is TypeCode.PTR_UTF8:
            return values.read_utf8(result)
        if code is TypeCode.PTR_UTF16:
            return values.read_utf16(result)
        raise MarshalError(f"type {type_def.name} cannot be returned")

    def close(self) -> None:
        """Release the call descriptor; later calls fail."""
        if self._closed:
            return
        self._closed = True
        self._function = None
        self.session.signatures.release(self.cif)
        logger.debug("deleted callout %s", self.name)
