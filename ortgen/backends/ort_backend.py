"""ONNX Runtime backend: GraphHandle over an InferenceSession.

Tensors are OrtValues wrapping numpy buffers (zero-copy on CPU; the
OrtValue keeps the source array alive). Runs go through
run_with_ort_values so outputs stay engine-owned until the caller reads
them.

OrtValue has no explicit destroy in the Python bindings; its buffer is
freed when the last reference drops. release() is therefore a no-op
here; TensorScope dropping its references is what actually frees memory.
"""

import logging
from pathlib import Path
from typing import Any, Mapping, Sequence

import numpy as np
import onnxruntime as ort

from .common import GraphHandle

logger = logging.getLogger(__name__)

DEFAULT_PROVIDERS = ["CPUExecutionProvider"]
ORT_LOG_WARNING = 2   # 0=verbose, 1=info, 2=warning, 3=error, 4=fatal


class OrtGraph(GraphHandle):
    """A loaded ONNX graph executed by ONNX Runtime."""

    def __init__(self, session: ort.InferenceSession,
                 paths: Sequence[str] = ()) -> None:
        self._session = session
        self._paths = [str(p) for p in paths]

    @classmethod
    def load(
        cls,
        paths: Sequence[str | Path],
        providers: Sequence[str] | None = None,
        intra_op_threads: int | None = None,
        log_severity: int = ORT_LOG_WARNING,
    ) -> "OrtGraph":
        """Open an InferenceSession on the first path.

        Args:
            paths: The .onnx graph first, then any external-data files.
                External data must sit next to the graph: ONNX Runtime
                resolves it relative to the graph's directory.
            providers: Execution providers in priority order
                (default: CPU only).
            intra_op_threads: Thread count for intra-op parallelism
                (None leaves the ORT default).
            log_severity: ORT session log level.
        """
        if not paths:
            raise ValueError("No graph artifact paths given")
        paths = [Path(p) for p in paths]
        for p in paths:
            if not p.is_file():
                raise FileNotFoundError(f"Graph artifact not found: {p}")
        for p in paths[1:]:
            if p.parent != paths[0].parent:
                raise ValueError(
                    f"External data '{p}' must be in the graph's directory "
                    f"'{paths[0].parent}'"
                )

        opts = ort.SessionOptions()
        opts.log_severity_level = log_severity
        if intra_op_threads is not None:
            opts.intra_op_num_threads = intra_op_threads

        providers = list(providers or DEFAULT_PROVIDERS)
        session = ort.InferenceSession(str(paths[0]), opts, providers=providers)
        logger.info("graph opened: path=%s providers=%s", paths[0],
                    session.get_providers())
        return cls(session, paths)

    @property
    def paths(self) -> list[str]:
        return list(self._paths)

    @property
    def session(self) -> ort.InferenceSession:
        return self._session

    def tensor(self, array: np.ndarray) -> ort.OrtValue:
        return ort.OrtValue.ortvalue_from_numpy(np.ascontiguousarray(array))

    def run(self, inputs: Mapping[str, Any],
            output_names: Sequence[str]) -> list[Any | None]:
        return self._session.run_with_ort_values(list(output_names), dict(inputs))

    def to_numpy(self, value: ort.OrtValue) -> np.ndarray:
        return value.numpy()

    def release(self, value: ort.OrtValue) -> None:
        pass

    def close(self) -> None:
        self._session = None
