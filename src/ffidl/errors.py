"""Exception hierarchy for the ffidl engine."""

from __future__ import annotations


class FfidlError(Exception):
    """Base class for all engine errors."""


# ---- Definition errors (type registry) ----


class DefinitionError(FfidlError, ValueError):
    """A type definition request was rejected."""


class UnknownTypeError(DefinitionError, KeyError):
    """A type name is not defined."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class ContextError(DefinitionError):
    """A type was used in a context its descriptor does not permit."""


class LayoutMismatchError(DefinitionError):
    """The backend computed a different size or alignment for an aggregate."""


# ---- Resolution errors (signature cache) ----


class ResolutionError(FfidlError, ValueError):
    """A call signature could not be resolved or prepared."""


class ProtocolError(ResolutionError):
    """Unknown calling convention name."""


# ---- Marshaling errors (invocation) ----


class MarshalError(FfidlError, ValueError):
    """A host value could not be marshaled for a native call."""


class ArgumentCountError(MarshalError, TypeError):
    """Wrong number of arguments for a binding."""


class ConversionError(MarshalError):
    """A host value does not convert to the declared native type."""


class SizeMismatchError(MarshalError):
    """A byte buffer does not have the declared aggregate size."""


# ---- Dispatch errors (inbound calls) ----


class DispatchError(FfidlError):
    """A host callable invoked from a trampoline failed.

    Never raised across the native boundary: instances are delivered through
    the session's background error channel.
    """

    def __init__(self, callback: str, cause: BaseException) -> None:
        super().__init__(f"error in callback \"{callback}\": {cause}")
        self.callback = callback
        self.cause = cause


# ---- Resource and loader errors ----


class ResourceError(FfidlError, MemoryError):
    """Allocation of a descriptor, frame or trampoline failed."""


class LoaderError(FfidlError, OSError):
    """A shared library or symbol could not be loaded."""
