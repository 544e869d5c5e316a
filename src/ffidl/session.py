"""The per-session context that owns types, descriptors and bindings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from ffidl import abi, loader
from ffidl.callback import InboundBinding
from ffidl.callout import OutboundBinding
from ffidl.errors import ConversionError, DispatchError, FfidlError, MarshalError, ResolutionError
from ffidl.parsing.decl_parser import SignatureParser, SignatureSpec
from ffidl.signatures import SignatureCache
from ffidl.types import LayoutEntry, TypeDefinition, TypeRegistry

logger = logging.getLogger(__name__)


@dataclass
class SessionConfig:
    """Options for a session.

    strict_layout: refuse aggregates whose layout the backend disagrees with
        (otherwise a warning is logged).
    default_protocol: calling convention used when a signature names none.
    error_handler: called with each DispatchError raised inside a callback;
        when set, it replaces the error log entry.
    """

    strict_layout: bool = True
    default_protocol: str = ""
    error_handler: Callable[[DispatchError], None] | None = None


class VariableTable:
    """Named host values reachable from native code through pointer-var."""

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._text: dict[str, str] = {}

    def set(self, name: str, value: Any) -> None:
        self._values[name] = value
        self._text.pop(name, None)

    def get(self, name: str) -> Any:
        try:
            return self._values[name]
        except KeyError:
            raise MarshalError(f'can\'t read "{name}": no such variable') from None

    def delete(self, name: str) -> None:
        self._values.pop(name, None)
        self._text.pop(name, None)

    def get_text(self, name: str) -> str:
        """String form of a variable, cached until its bytes change."""
        text = self._text.get(name)
        if text is None:
            value = self.get(name)
            if isinstance(value, (bytes, bytearray)):
                text = bytes(value).decode("utf-8", errors="replace")
            else:
                text = str(value)
            self._text[name] = text
        return text

    def buffer_for_write(self, name: str) -> bytearray:
        """Return the variable's bytes as a private, writable buffer.

        Immutable or shared values are duplicated and the copy is stored
        back under the same name.
        """
        value = self.get(name)
        if isinstance(value, bytearray):
            return value
        if isinstance(value, (bytes, memoryview)):
            buffer = bytearray(value)
        elif isinstance(value, str):
            buffer = bytearray(value.encode("utf-8"))
        else:
            raise ConversionError(f"variable {name} does not hold a binary value")
        self._values[name] = buffer
        self._text.pop(name, None)
        return buffer

    def invalidate(self, name: str) -> None:
        self._text.pop(name, None)

    def names(self) -> list[str]:
        return list(self._values.keys())

    def __contains__(self, name: str) -> bool:
        return name in self._values


TypeNames = Sequence[str]


class Session:
    """Owns every type, call descriptor, binding and library of one user.

    Use as a context manager, or call `close()`, to release bindings,
    descriptors and user types in dependency order.
    """

    def __init__(self, config: SessionConfig | None = None) -> None:
        self.config = config or SessionConfig()
        self.types = TypeRegistry(strict_layout=self.config.strict_layout)
        self.signatures = SignatureCache(self.types)
        self.callouts: dict[str, OutboundBinding] = {}
        self.callbacks: dict[str, InboundBinding] = {}
        self.libraries: dict[str, loader.LibraryHandle] = {}
        self.variables = VariableTable()
        self.commands: dict[str, Callable[..., Any]] = {}
        self.live = True
        self._errors: list[DispatchError] = []
        # closed callbacks keep their trampolines until the session goes away
        self._retired: list[InboundBinding] = []
        self._signature_parser: SignatureParser | None = None

    def __enter__(self) -> Session:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _check_live(self) -> None:
        if not self.live:
            raise FfidlError("session is closed")

    # ---- Types ----

    def typedef(self, name: str, *elements: str | TypeNames) -> TypeDefinition:
        """Define an alias (one element) or an aggregate (several)."""
        self._check_live()
        if len(elements) == 1 and not isinstance(elements[0], str):
            element_names = list(elements[0])
        else:
            element_names = list(elements)  # type: ignore[arg-type]
        return self.types.define(name, element_names)

    # ---- Signatures ----

    def _parse_signature(
        self,
        arg_types: str | TypeNames,
        return_type: str | None,
        protocol: str | None,
    ) -> SignatureSpec:
        if isinstance(arg_types, str):
            if return_type is not None:
                raise ResolutionError("a signature string already names its return type")
            if self._signature_parser is None:
                self._signature_parser = SignatureParser()
            spec = self._signature_parser.parse_signature(arg_types)
            if protocol is not None:
                spec.protocol = protocol
        else:
            spec = SignatureSpec(protocol, return_type or "void", list(arg_types))
        if spec.protocol is None:
            spec.protocol = self.config.default_protocol
        return spec

    # ---- Callouts ----

    def callout(
        self,
        name: str,
        arg_types: str | TypeNames,
        return_type: str | None = None,
        address: int | tuple[str, str] | None = None,
        protocol: str | None = None,
    ) -> OutboundBinding:
        """Bind a native function so it can be called as `name`.

        `arg_types` is either a list of type names (with `return_type`) or a
        signature string such as ``"sint32(pointer, point)"``. `address` is
        a function address or a ``(library, symbol)`` pair.
        """
        self._check_live()
        spec = self._parse_signature(arg_types, return_type, protocol)
        if isinstance(address, tuple):
            address = self.symbol(*address)
        if not address:
            raise ResolutionError(f"callout {name} needs a function address")

        cif = self.signatures.resolve(spec.arg_types, spec.return_type, spec.protocol)
        try:
            binding = OutboundBinding(self, name, cif, address)
        except Exception:
            self.signatures.release(cif)
            raise

        old = self.callouts.pop(name, None)
        if old is not None:
            old.close()
        self.callouts[name] = binding
        return binding

    def call(self, name: str, *args: Any) -> Any:
        """Invoke a callout by name."""
        self._check_live()
        binding = self.callouts.get(name)
        if binding is None:
            raise ResolutionError(f"no callout named {name} is defined")
        return binding.invoke(*args)

    def delete_callout(self, name: str) -> None:
        binding = self.callouts.pop(name, None)
        if binding is None:
            raise ResolutionError(f"no callout named {name} is defined")
        binding.close()

    # ---- Callbacks ----

    def callback(
        self,
        name: str,
        arg_types: str | TypeNames,
        return_type: str | None = None,
        command: Any = None,
        protocol: str | None = None,
    ) -> InboundBinding:
        """Create a trampoline that runs `command` when native code calls it.

        `command` is a callable, a registered command name, or a sequence of
        one of those followed by fixed leading arguments. Without a command,
        the command registered under `name` is used.
        """
        self._check_live()
        spec = self._parse_signature(arg_types, return_type, protocol)
        cif = self.signatures.resolve(spec.arg_types, spec.return_type, spec.protocol)
        try:
            binding = InboundBinding(self, name, cif, command)
        except Exception:
            self.signatures.release(cif)
            raise

        old = self.callbacks.pop(name, None)
        if old is not None:
            self._retire(old)
        self.callbacks[name] = binding
        return binding

    def delete_callback(self, name: str) -> None:
        binding = self.callbacks.pop(name, None)
        if binding is None:
            raise ResolutionError(f"no callback named {name} is defined")
        self._retire(binding)

    def _retire(self, binding: InboundBinding) -> None:
        binding.close()
        self._retired.append(binding)

    # ---- Commands ----

    def register_command(self, name: str, function: Callable[..., Any]) -> None:
        """Make a host callable reachable by name from callbacks."""
        self.commands[name] = function

    def unregister_command(self, name: str) -> None:
        self.commands.pop(name, None)

    # ---- Libraries ----

    def library(
        self,
        name: str,
        path: str | None,
        binding: loader.LoadBinding | str | None = None,
        visibility: loader.LoadVisibility | str | None = None,
    ) -> loader.LibraryHandle:
        """Open a library and register it under `name`."""
        self._check_live()
        handle = loader.open_library(path, binding, visibility)
        self.libraries[name] = handle
        return handle

    def symbol(self, library: str, name: str) -> int:
        """Address of `name` in a registered library (or a path, opened on first use)."""
        handle = self.libraries.get(library)
        if handle is None:
            handle = self.library(library, library)
        return loader.find_symbol(handle, name)

    # ---- Variables ----

    def set_var(self, name: str, value: Any) -> None:
        self.variables.set(name, value)

    def get_var(self, name: str) -> Any:
        return self.variables.get(name)

    # ---- Introspection ----

    def typedefs(self) -> list[str]:
        return self.types.list_types()

    def signature_keys(self) -> list[str]:
        return self.signatures.keys()

    def callout_names(self) -> list[str]:
        return list(self.callouts.keys())

    def callback_names(self) -> list[str]:
        return list(self.callbacks.keys())

    def library_names(self) -> list[str]:
        return list(self.libraries.keys())

    def sizeof(self, type_name: str) -> int:
        return self.types.sizeof(type_name)

    def alignof(self, type_name: str) -> int:
        return self.types.alignof(type_name)

    def format(self, type_name: str) -> str:
        return self.types.format(type_name)

    def layout(self, type_name: str) -> list[LayoutEntry]:
        return self.types.layout(type_name)

    def canonical_host(self) -> str:
        return abi.canonical_host()

    def have_long_double(self) -> bool:
        return abi.HAVE_LONG_DOUBLE

    def have_int64(self) -> bool:
        return abi.HAVE_INT64

    @property
    def NULL(self) -> int:
        return 0

    # ---- Background errors ----

    def background_error(self, error: DispatchError) -> None:
        """Report an error that happened inside a callback.

        Never raises: the caller is a trampoline with a native frame above it.
        """
        self._errors.append(error)
        handler = self.config.error_handler
        if handler is None:
            logger.error("%s", error)
        else:
            logger.debug("%s", error)
            try:
                handler(error)
            except BaseException:
                logger.exception("background error handler failed")

    def background_errors(self) -> list[DispatchError]:
        """Return and clear the errors reported since the last call."""
        errors, self._errors = self._errors, []
        return errors

    # ---- Teardown ----

    def close(self) -> None:
        """Release callouts, callbacks, descriptors and user types, in that order."""
        if not self.live:
            return
        for binding in self.callouts.values():
            binding.close()
        self.callouts.clear()
        for binding in self.callbacks.values():
            self._retire(binding)
        self.callbacks.clear()
        self.signatures.clear()
        self.types.clear()
        self.live = False
        logger.debug("session closed")
