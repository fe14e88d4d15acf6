"""Shared types for execution backends.

Contains the GraphHandle base class (a loaded, immutable graph an engine
can run) and TensorScope, which guarantees that every engine tensor
created inside a decoding step is released before the step returns.

Tensor lifetime contract: anything returned by GraphHandle.tensor() or
GraphHandle.run() belongs to the caller and must be passed to
GraphHandle.release() exactly once. TensorScope does the bookkeeping.
"""

from abc import ABC, abstractmethod
from typing import Any, Mapping, Sequence

import numpy as np


# ---------------------------------------------------------------------------
# GraphHandle base class
# ---------------------------------------------------------------------------

class GraphHandle(ABC):
    """Base class for loaded computation graphs.

    Subclasses wrap an execution engine's session object. A handle is
    read-only after loading: run() carries no per-call state, so one
    handle can serve many generate() calls, including concurrent ones
    when the engine allows concurrent runs.
    """

    @abstractmethod
    def tensor(self, array: np.ndarray) -> Any:
        """Wrap a contiguous numpy array as an engine tensor."""
        ...

    @abstractmethod
    def run(self, inputs: Mapping[str, Any],
            output_names: Sequence[str]) -> list[Any | None]:
        """Execute the graph. Returns one value per output name (None if absent)."""
        ...

    @abstractmethod
    def to_numpy(self, value: Any) -> np.ndarray:
        """Read an engine tensor as a numpy array (may be a view)."""
        ...

    @abstractmethod
    def release(self, value: Any) -> None:
        """Destroy an engine tensor."""
        ...

    def close(self) -> None:
        """Release the underlying engine session."""


# ---------------------------------------------------------------------------
# Scoped tensor ownership
# ---------------------------------------------------------------------------

class TensorScope:
    """Owns engine tensors for the duration of a `with` block.

    Tensors built via tensor() or handed over via adopt() are released on
    exit in reverse creation order, whether the block completes or raises.
    release() lets a tensor go early without risking a double release.

        with TensorScope(graph) as scope:
            ids = scope.tensor(input_ids)
            mask = scope.tensor(attention_mask)   # raises -> ids still released
            outputs = graph.run({...}, names)
    """

    def __init__(self, graph: GraphHandle) -> None:
        self._graph = graph
        self._live: list[Any] = []

    def __enter__(self) -> "TensorScope":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._live)

    def tensor(self, array: np.ndarray) -> Any:
        """Construct an engine tensor owned by this scope."""
        value = self._graph.tensor(array)
        self._live.append(value)
        return value

    def adopt(self, value: Any) -> Any:
        """Take ownership of a tensor created elsewhere (e.g. a run output)."""
        self._live.append(value)
        return value

    def release(self, value: Any) -> None:
        """Release one owned tensor now."""
        for i, live in enumerate(self._live):
            if live is value:
                del self._live[i]
                self._graph.release(value)
                return
        raise ValueError("Tensor is not owned by this scope")

    def close(self) -> None:
        """Release everything still owned."""
        while self._live:
            self._graph.release(self._live.pop())
