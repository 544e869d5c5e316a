"""Call descriptors and the signature cache."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Sequence

from ffidl import abi
from ffidl.errors import ContextError, ProtocolError, ResolutionError, ResourceError, UnknownTypeError
from ffidl.types import Context, TypeDefinition, TypeRegistry

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class CallDescriptor:
    """A shared, immutable description of one function signature.

    `prototype` is the backend-prepared call plan: a ctypes function type for
    this exact return/argument sequence and calling convention.
    """

    key: str
    protocol: abi.Protocol
    return_type: TypeDefinition
    arg_types: tuple[TypeDefinition, ...]
    prototype: Any = None
    refs: int = 0

    @property
    def argc(self) -> int:
        return len(self.arg_types)

    @property
    def identity(self) -> SignatureIdentity:
        return signature_identity(self.key, self.return_type, self.arg_types)

    @property
    def protocol_name(self) -> str | None:
        """Protocol as it appears in the key (None for the default)."""
        if abi.is_default(self.protocol):
            return None
        return self.protocol.name


def resolve_protocol(name: str | None) -> abi.Protocol:
    """Look up a calling convention tag; empty or None is the default."""
    protocol = abi.PROTOCOLS.get(name or "")
    if protocol is None:
        raise ProtocolError(
            f'bad protocol "{name}": must be one of {", ".join(abi.protocol_names())}'
        )
    return protocol


def canonical_key(arg_names: Sequence[str], return_name: str, protocol: abi.Protocol | None = None) -> str:
    """Build the cache key: ``[protocol ]ret(arg1,arg2,...)``."""
    prefix = ""
    if protocol is not None and not abi.is_default(protocol):
        prefix = protocol.name + " "
    return f"{prefix}{return_name}({','.join(arg_names)})"


SignatureIdentity = tuple[str, int, tuple[int, ...]]


def signature_identity(
    key: str,
    return_type: TypeDefinition,
    arg_types: Sequence[TypeDefinition],
) -> SignatureIdentity:
    """The canonical key plus the serial of every descriptor it names.

    A name that is undefined and defined again names a new descriptor, so it
    must not find the descriptor built for the old one.
    """
    return key, return_type.serial, tuple(t.serial for t in arg_types)


class SignatureCache:
    """Builds and shares call descriptors by canonical signature.

    Lookups and inserts are serialized by a re-entrant lock; descriptors are
    never mutated after they are published, apart from their refcount which
    only changes under the lock.
    """

    def __init__(self, registry: TypeRegistry) -> None:
        self.registry = registry
        self._cifs: dict[SignatureIdentity, CallDescriptor] = {}
        self._lock = threading.RLock()

    def resolve(
        self,
        arg_names: Sequence[str],
        return_name: str,
        protocol_name: str | None = None,
    ) -> CallDescriptor:
        """Find or create the descriptor for a signature and take a reference."""
        protocol = resolve_protocol(protocol_name)

        return_type = self._lookup(return_name)
        arg_types = tuple(self._lookup(name) for name in arg_names)

        # Aliases share descriptors, so keys use the primary names.
        key = canonical_key([t.name for t in arg_types], return_type.name, protocol)
        identity = signature_identity(key, return_type, arg_types)

        with self._lock:
            cif = self._cifs.get(identity)
            if cif is None:
                cif = self._build(key, protocol, return_type, arg_types)
                self._cifs[identity] = cif
                logger.debug("created call descriptor %s", key)
            cif.refs += 1
            return cif

    def _lookup(self, name: str) -> TypeDefinition:
        type_def = self.registry.get(name)
        if type_def is None:
            raise UnknownTypeError(f"no type defined for: {name}")
        return type_def

    def _build(
        self,
        key: str,
        protocol: abi.Protocol,
        return_type: TypeDefinition,
        arg_types: tuple[TypeDefinition, ...],
    ) -> CallDescriptor:
        for arg_type in arg_types:
            if arg_type.is_void:
                raise ContextError(f"type {arg_type.name} is not permitted in {Context.ARG.describe()} context")
        try:
            prototype = abi.make_prototype(
                protocol,
                return_type.return_lib_type,
                [t.lib_type for t in arg_types],
            )
        except (TypeError, ValueError) as e:
            raise ResolutionError(f"type definition error: {key}: {e}") from e
        except MemoryError as e:
            raise ResourceError(f"couldn't allocate call descriptor for {key}") from e

        cif = CallDescriptor(
            key=key,
            protocol=protocol,
            return_type=return_type,
            arg_types=arg_types,
            prototype=prototype,
        )
        self.registry.ref(return_type)
        for arg_type in arg_types:
            self.registry.ref(arg_type)
        return cif

    def release(self, cif: CallDescriptor) -> None:
        """Drop one reference; remove and free the descriptor at zero."""
        with self._lock:
            cif.refs -= 1
            if cif.refs > 0:
                return
            if self._cifs.get(cif.identity) is cif:
                del self._cifs[cif.identity]
            logger.debug("freed call descriptor %s", cif.key)
        self.registry.unref(cif.return_type)
        for arg_type in cif.arg_types:
            self.registry.unref(arg_type)
        cif.prototype = None

    def get(self, key: str) -> CallDescriptor | None:
        """The newest live descriptor printed as `key`."""
        with self._lock:
            for cif in reversed(self._cifs.values()):
                if cif.key == key:
                    return cif
            return None

    def keys(self) -> list[str]:
        with self._lock:
            return [cif.key for cif in self._cifs.values()]

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._cifs)

    def clear(self) -> list[str]:
        """Forget every descriptor (session teardown); return dangling keys."""
        with self._lock:
            cifs = list(self._cifs.values())
            dangling = [cif.key for cif in cifs]
            self._cifs.clear()
        for cif in cifs:
            logger.warning("dangling call descriptor at teardown: %s", cif.key)
            self.registry.unref(cif.return_type)
            for arg_type in cif.arg_types:
                self.registry.unref(arg_type)
            cif.refs = 0
            cif.prototype = None
        return dangling
