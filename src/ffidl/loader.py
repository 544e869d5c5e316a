"""Dynamic loading of shared libraries and symbol lookup."""

from __future__ import annotations

import _ctypes
import ctypes
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ffidl.errors import LoaderError

logger = logging.getLogger(__name__)


class LoadBinding(Enum):
    NOW = "now"
    LAZY = "lazy"


class LoadVisibility(Enum):
    GLOBAL = "global"
    LOCAL = "local"


HAVE_RTLD = hasattr(os, "RTLD_NOW")


@dataclass
class LibraryHandle:
    """An opened library; `path` is None for the running process."""

    path: str | None
    binding: LoadBinding
    visibility: LoadVisibility
    dll: Any = field(default=None, repr=False)
    closed: bool = False


def _mode(binding: LoadBinding | None, visibility: LoadVisibility | None) -> int:
    if not HAVE_RTLD:
        if binding is not None or visibility is not None:
            raise LoaderError("library binding and visibility flags are not supported on this platform")
        return ctypes.DEFAULT_MODE
    mode = 0
    if binding is LoadBinding.LAZY:
        # ctypes always adds RTLD_NOW when opening
        logger.warning("lazy binding is not available, symbols are bound immediately")
        mode |= os.RTLD_LAZY
    else:
        mode |= os.RTLD_NOW
    if visibility is LoadVisibility.LOCAL:
        mode |= os.RTLD_LOCAL
    else:
        mode |= os.RTLD_GLOBAL
    return mode


def open_library(
    path: str | None,
    binding: LoadBinding | str | None = None,
    visibility: LoadVisibility | str | None = None,
) -> LibraryHandle:
    """Open a shared library. An empty or None path opens the running process."""
    if isinstance(binding, str):
        binding = LoadBinding(binding)
    if isinstance(visibility, str):
        visibility = LoadVisibility(visibility)
    mode = _mode(binding, visibility)
    path = path or None
    try:
        dll = ctypes.CDLL(path, mode=mode)
    except OSError as e:
        raise LoaderError(f'couldn\'t load file "{path}": {e}') from e
    logger.debug("opened library %s (mode=%#x)", path or "<process>", mode)
    return LibraryHandle(
        path=path,
        binding=binding or LoadBinding.NOW,
        visibility=visibility or LoadVisibility.GLOBAL,
        dll=dll,
    )


def find_symbol(handle: LibraryHandle, name: str) -> int:
    """Return the address of a function symbol.

    Falls back to the underscore-prefixed name some object formats use.
    """
    if handle.closed:
        raise LoaderError(f"library {handle.path or '<process>'} has been closed")
    for candidate in (name, "_" + name):
        try:
            function = handle.dll[candidate]
        except AttributeError:
            continue
        return ctypes.cast(function, ctypes.c_void_p).value or 0
    raise LoaderError(f'couldn\'t find symbol "{name}" in {handle.path or "<process>"}')


def close_library(handle: LibraryHandle) -> None:
    """Unload a library. Addresses obtained from it become invalid."""
    if handle.closed:
        return
    if hasattr(_ctypes, "dlclose"):
        _ctypes.dlclose(handle.dll._handle)
    else:
        _ctypes.FreeLibrary(handle.dll._handle)
    handle.closed = True
    logger.debug("closed library %s", handle.path or "<process>")
