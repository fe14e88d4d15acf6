"""Tensor construction helpers and logits post-processing.

Building: turn a flat numeric buffer plus a shape into a contiguous,
correctly typed numpy array that an execution engine can wrap without
copying. Shape/size mismatches raise ValueError; the decoding loop
converts those into TensorConstructionError for the offending slot.

Post-processing: arg-max selection, softmax normalization, and sampling
from a probability distribution, all over a single 1-D logits row.
"""

from typing import Callable, Sequence

import numpy as np


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------

def _check_shape(shape: Sequence[int]) -> tuple[int, ...]:
    shape = tuple(int(d) for d in shape)
    if any(d < 0 for d in shape):
        raise ValueError(f"Negative dimension in shape {shape}")
    return shape


def _from_buffer(data, shape: Sequence[int], dtype) -> np.ndarray:
    shape = _check_shape(shape)
    flat = np.asarray(data, dtype=dtype).reshape(-1)
    expected = int(np.prod(shape, dtype=np.int64))
    if flat.size != expected:
        raise ValueError(
            f"Buffer has {flat.size} elements, shape {shape} needs {expected}"
        )
    return np.ascontiguousarray(flat.reshape(shape))


def tensor_from_ints(data, shape: Sequence[int], dtype=np.int64) -> np.ndarray:
    """Integer tensor (token ids, masks, positions) from a flat buffer."""
    if not np.issubdtype(np.dtype(dtype), np.integer):
        raise ValueError(f"Expected an integer dtype, got {np.dtype(dtype)}")
    return _from_buffer(data, shape, dtype)


def tensor_from_floats(data, shape: Sequence[int], dtype=np.float32) -> np.ndarray:
    """Floating-point tensor from a flat buffer."""
    if not np.issubdtype(np.dtype(dtype), np.floating):
        raise ValueError(f"Expected a floating dtype, got {np.dtype(dtype)}")
    return _from_buffer(data, shape, dtype)


def zeros(shape: Sequence[int], dtype=np.float32) -> np.ndarray:
    """Zero-filled tensor. Zero-sized dims are allowed (empty caches)."""
    return np.zeros(_check_shape(shape), dtype=dtype)


def positions(length: int, dtype=np.int64) -> np.ndarray:
    """Position ids 0..length-1 shaped [1, length]."""
    return tensor_from_ints(np.arange(length), (1, length), dtype=dtype)


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------

def argmax(xs: np.ndarray) -> int:
    """Index of the largest value. Ties resolve to the lowest index.

    Returns 0 for an empty row.
    """
    xs = np.asarray(xs)
    if xs.size == 0:
        return 0
    # np.argmax returns the first occurrence of the maximum
    return int(np.argmax(xs))


def softmax(xs: np.ndarray) -> np.ndarray:
    """Normalize a logits row into a probability distribution (new array)."""
    xs = np.asarray(xs, dtype=np.float32)
    if xs.size == 0:
        return xs.copy()
    e = np.exp(xs - np.max(xs))
    total = e.sum()
    if total == 0 or not np.isfinite(total):
        return e
    return e / total


def sample_from_probs(probs: np.ndarray, rnd: Callable[[], float]) -> int:
    """Draw an index proportionally to `probs` using one uniform draw.

    `rnd` returns a float in [0, 1). Picks the first index whose
    cumulative probability exceeds the draw; rounding slack at the top
    of the distribution falls through to the last index.
    """
    probs = np.asarray(probs, dtype=np.float64)
    if probs.size == 0:
        return 0
    r = float(rnd())
    cumulative = np.cumsum(probs)
    idx = int(np.searchsorted(cumulative, r, side="right"))
    return min(idx, probs.size - 1)
