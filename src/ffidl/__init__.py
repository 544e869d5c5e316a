"""Dynamic foreign function interface: declare native signatures at runtime,
call native functions and let native code call back into Python."""

from ffidl.callback import InboundBinding
from ffidl.callout import OutboundBinding
from ffidl.errors import (
    ArgumentCountError,
    ContextError,
    ConversionError,
    DefinitionError,
    DispatchError,
    FfidlError,
    LayoutMismatchError,
    LoaderError,
    MarshalError,
    ProtocolError,
    ResolutionError,
    ResourceError,
    SizeMismatchError,
    UnknownTypeError,
)
from ffidl.loader import LibraryHandle, LoadBinding, LoadVisibility
from ffidl.session import Session, SessionConfig
from ffidl.signatures import CallDescriptor, SignatureCache
from ffidl.types import Context, TypeCode, TypeDefinition, TypeRegistry

__version__ = "0.1.0"

__all__ = [
    "ArgumentCountError",
    "CallDescriptor",
    "Context",
    "ContextError",
    "ConversionError",
    "DefinitionError",
    "DispatchError",
    "FfidlError",
    "InboundBinding",
    "LayoutMismatchError",
    "LibraryHandle",
    "LoadBinding",
    "LoadVisibility",
    "LoaderError",
    "MarshalError",
    "OutboundBinding",
    "ProtocolError",
    "ResolutionError",
    "ResourceError",
    "Session",
    "SessionConfig",
    "SignatureCache",
    "SizeMismatchError",
    "TypeCode",
    "TypeDefinition",
    "TypeRegistry",
    "UnknownTypeError",
]
