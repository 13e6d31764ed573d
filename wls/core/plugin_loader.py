"""
Loading of the external language-extraction capability.

A plugin is either a shared library exporting a C function

    const char* ExtractLanguage(const char* html);

or a Python module defining ``ExtractLanguage(html: str) -> Optional[str]``.
In both cases the loaded capability is called with the raw request body
and returns the detected language, or None when nothing was detected.

The capability is not assumed to be reentrant; the server only ever calls
it from a single connection at a time.
"""

import ctypes
import importlib.util
import os
import sys
from pathlib import Path
from typing import Optional, Union

import _ctypes

from .server_utils import default_logger

ENTRY_POINT = "ExtractLanguage"
PYTHON_SUFFIX = ".py"


class PluginLoadError(Exception):
    """Base class for capability loading errors"""

    pass


class PluginNotFoundError(PluginLoadError):
    """The module file is missing or could not be loaded"""

    pass


class SymbolNotFoundError(PluginLoadError):
    """The module does not export the extraction entry point"""

    pass


class ExtractionCapability:
    """A loaded extraction module plus its resolved entry point.

    Use as a context manager (or call close()) to release the module.
    """

    kind = "abstract"

    def __init__(self, path: str):
        self.path = path
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __call__(self, body: bytes) -> Optional[str]:
        """Run the extraction on a request body.

        Args:
            body: Raw request body, expected to be UTF-8 text

        Returns:
            The detected language, or None if the module returned nothing
        """
        if self._closed:
            raise PluginLoadError(f"Capability {self.path} has been released")
        return self._invoke(body)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()
        default_logger.debug("Released %s plugin %s", self.kind, self.path)

    def _invoke(self, body: bytes) -> Optional[str]:
        raise NotImplementedError

    def _release(self) -> None:
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        state = "closed" if self._closed else "open"
        return f"<{type(self).__name__} {self.path!r} {state}>"


class SharedLibraryCapability(ExtractionCapability):
    """Capability backed by a shared library loaded with ctypes."""

    kind = "shared library"

    def __init__(self, path: str):
        super().__init__(path)
        try:
            self._library = ctypes.CDLL(path)
        except OSError as e:
            raise PluginNotFoundError(f"Plugin not found at {path}: {e}") from e

        try:
            function = getattr(self._library, ENTRY_POINT)
        except AttributeError as e:
            self._release()
            raise SymbolNotFoundError(
                f"Could not find {ENTRY_POINT} function in plugin {path}"
            ) from e

        function.argtypes = [ctypes.c_char_p]
        function.restype = ctypes.c_char_p
        self._function = function

    def _invoke(self, body: bytes) -> Optional[str]:
        # The returned buffer belongs to the library and is never freed here
        result = self._function(bytes(body))
        if result is None:
            return None
        return result.decode("utf-8", errors="replace")

    def _release(self) -> None:
        handle = self._library._handle
        self._library = None
        self._function = None
        if sys.platform == "win32":
            _ctypes.FreeLibrary(handle)
        else:
            _ctypes.dlclose(handle)


class PythonModuleCapability(ExtractionCapability):
    """Capability backed by a Python source file."""

    kind = "python"

    def __init__(self, path: str):
        super().__init__(path)
        if not os.path.isfile(path):
            raise PluginNotFoundError(f"Plugin not found at {path}")

        self._module_name = f"wls_plugin_{Path(path).stem}"
        spec = importlib.util.spec_from_file_location(self._module_name, path)
        if spec is None or spec.loader is None:
            raise PluginNotFoundError(f"Plugin at {path} is not a loadable module")

        module = importlib.util.module_from_spec(spec)
        sys.modules[self._module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(self._module_name, None)
            raise PluginNotFoundError(f"Plugin at {path} failed to load: {e}") from e

        function = getattr(module, ENTRY_POINT, None)
        if not callable(function):
            sys.modules.pop(self._module_name, None)
            raise SymbolNotFoundError(
                f"Could not find {ENTRY_POINT} function in plugin {path}"
            )

        self._module = module
        self._function = function

    def _invoke(self, body: bytes) -> Optional[str]:
        result = self._function(bytes(body).decode("utf-8", errors="replace"))
        if result is None or isinstance(result, str):
            return result
        raise TypeError(
            f"{ENTRY_POINT} returned {type(result).__name__}, expected str or None"
        )

    def _release(self) -> None:
        sys.modules.pop(self._module_name, None)
        self._module = None
        self._function = None


def load_capability(path: Union[str, Path]) -> ExtractionCapability:
    """Load the extraction capability found at ``path``.

    ``.py`` files are imported as Python modules; anything else is handed
    to the platform's dynamic loader.

    Raises:
        PluginNotFoundError: If the module is missing or unloadable
        SymbolNotFoundError: If ``ExtractLanguage`` is not exported
    """
    path = os.fspath(path)
    if path.endswith(PYTHON_SUFFIX):
        capability = PythonModuleCapability(path)
    else:
        capability = SharedLibraryCapability(path)
    default_logger.info("Loaded %s plugin %s", capability.kind, path)
    return capability
