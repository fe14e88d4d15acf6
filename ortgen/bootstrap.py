"""Runtime bootstrap: locate the native ONNX Runtime library.

ensure() must succeed before any graph is loaded. Lookup order:

  1. $ONNXRUNTIME_SHARED_LIBRARY_PATH, if it points at an existing file.
  2. The native library bundled with the installed `onnxruntime` package
     (under onnxruntime/capi/).

The library is loaded once via ctypes to prove it is usable, and the
path is cached for the rest of the process.
"""

import ctypes
import logging
import os
from pathlib import Path

from .errors import RuntimeBootstrapError

logger = logging.getLogger(__name__)

ENV_VAR = "ONNXRUNTIME_SHARED_LIBRARY_PATH"

# Preferred first: the standalone runtime, then the Python extension that
# embeds it (some wheels only ship the latter).
LIBRARY_PATTERNS = (
    "libonnxruntime.so*",
    "libonnxruntime*.dylib",
    "onnxruntime.dll",
    "onnxruntime_pybind11_state*",
)

_library_path: str | None = None


def _package_capi_dir() -> Path | None:
    try:
        import onnxruntime
    except ImportError:
        return None
    return Path(onnxruntime.__file__).parent / "capi"


def find_library() -> str | None:
    """Path of the first candidate library found, without loading it."""
    override = os.environ.get(ENV_VAR)
    if override and Path(override).is_file():
        return override

    capi = _package_capi_dir()
    if capi is None or not capi.is_dir():
        return None
    for pattern in LIBRARY_PATTERNS:
        matches = sorted(p for p in capi.glob(pattern) if p.is_file())
        if matches:
            return str(matches[0])
    return None


def ensure() -> str:
    """Locate and load the ONNX Runtime native library; return its path.

    Raises:
        RuntimeBootstrapError: If no library is found or it fails to load.
    """
    global _library_path
    if _library_path is not None:
        return _library_path

    path = find_library()
    if path is None:
        raise RuntimeBootstrapError(
            f"ONNX Runtime library not found — install onnxruntime or set {ENV_VAR}"
        )
    try:
        ctypes.CDLL(path)
    except OSError as exc:
        raise RuntimeBootstrapError(f"Cannot load ONNX Runtime library '{path}': {exc}") from exc

    logger.info("onnxruntime library: %s", path)
    _library_path = path
    return path


def reset() -> None:
    """Forget the cached library path."""
    global _library_path
    _library_path = None
