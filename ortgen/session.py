"""GenerationSession: the user-facing API for autoregressive decoding.

Owns a loaded graph plus its resolved IO schema and runs the token loop:

    schema = resolve_io_schema(IOPreset.AUTO, graph_path=path)
    session = GenerationSession.load([path], schema, eos_token_id=2)
    ids = session.generate(tokenizer, [[1, 2, 3]], [[1, 1, 1]],
                           GenerationOptions(max_new_tokens=32))

    # With streaming + cooperative cancellation:
    def on_step(ev: StepEvent) -> bool:
        print(ev.delta_text, end="", flush=True)
        return time.monotonic() < deadline     # False stops after this step

    session.generate(tokenizer, ids, mask,
                     GenerationOptions(streamer=on_step, stop_sequences=["\\nUser:"]))

Each step recomputes over the full sequence so far: cache-style inputs
are zero-filled rather than threaded from the previous step's present.*
outputs. Output is identical, but per-step cost grows with length.

The session keeps no per-call state. Everything mutable lives in the
call's SequenceState, so concurrent generate() calls on one session are
safe as long as the engine supports concurrent runs on one graph.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, Sequence

import numpy as np

from . import tensors
from .backends.common import GraphHandle, TensorScope
from .errors import (
    GraphExecutionError,
    MissingLogitsOutput,
    TensorConstructionError,
    UnexpectedLogitsShape,
    UnexpectedLogitsType,
    UnsupportedBatchSize,
)
from .schema import ATTENTION_MASK, INPUT_IDS, POSITION_IDS, IOSchema, SlotInfo

logger = logging.getLogger(__name__)

DEFAULT_MAX_NEW_TOKENS = 128


# ---------------------------------------------------------------------------
# Call types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StepEvent:
    """Emitted to the streamer once per generated token."""
    token_id: int
    delta_text: str      # empty when a stop string fired on this step
    full_text: str       # accumulated text, truncated at any stop string
    step: int
    done: bool           # EOS or stop string hit on this step


Streamer = Callable[[StepEvent], "bool | None"]


@dataclass
class GenerationOptions:
    """Per-call generation parameters.

    Attributes:
        max_new_tokens: Exact upper bound on loop iterations. Non-positive
            values are replaced with DEFAULT_MAX_NEW_TOKENS.
        do_sample: Sample from softmax(logits) instead of greedy arg-max.
        stop_sequences: Strings that end generation when they appear in
            the accumulated text. Empty strings and duplicates are ignored.
        streamer: Called with a StepEvent after every step. Returning
            a falsy value other than None (False, 0, np.False_) cancels
            generation after that step; None or a truthy value continues.
        rng: Random source for sampling (default: fresh unseeded generator).
    """
    max_new_tokens: int = DEFAULT_MAX_NEW_TOKENS
    do_sample: bool = False
    stop_sequences: Sequence[str] = ()
    streamer: Streamer | None = None
    rng: np.random.Generator | None = None


class StopReason(Enum):
    EOS         = auto()
    STOP_STRING = auto()
    MAX_TOKENS  = auto()
    CANCELLED   = auto()


@dataclass
class GenerationResult:
    """Generated ids (prompt excluded) and why the loop ended."""
    token_ids: list[int]
    text: str
    stop_reason: StopReason
    steps: int


@dataclass
class SequenceState:
    """Mutable per-call decoding state. Never shared between calls."""
    token_ids: list[int]
    attention_mask: list[int]
    generated: list[int] = field(default_factory=list)
    text: str = ""

    def __post_init__(self) -> None:
        if len(self.token_ids) != len(self.attention_mask):
            raise ValueError(
                f"input_ids ({len(self.token_ids)}) and attention_mask "
                f"({len(self.attention_mask)}) differ in length"
            )

    def __len__(self) -> int:
        return len(self.token_ids)

    def append(self, token_id: int) -> None:
        self.token_ids.append(token_id)
        self.attention_mask.append(1)
        self.generated.append(token_id)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class GenerationSession:
    """A loaded graph + IO schema, ready to generate.

    Construct directly with any GraphHandle (tests use counting doubles),
    or use load() to open ONNX artifacts with ONNX Runtime.
    """

    def __init__(self, graph: GraphHandle, schema: IOSchema,
                 eos_token_id: int = -1) -> None:
        self._graph: GraphHandle | None = graph
        self._schema = schema
        self._eos_token_id = int(eos_token_id)

    @classmethod
    def load(
        cls,
        graph_paths: Sequence[str | Path],
        schema: IOSchema,
        *,
        eos_token_id: int = -1,
        providers: Sequence[str] | None = None,
        intra_op_threads: int | None = None,
    ) -> GenerationSession:
        """Bootstrap ONNX Runtime and open the graph artifacts.

        Args:
            graph_paths: The .onnx file first, then external-data files.
            schema: Resolved IO schema for this graph.
            eos_token_id: End-of-sequence id (-1 disables EOS stopping).
            providers: ONNX Runtime execution providers.
            intra_op_threads: ONNX Runtime intra-op thread count.
        """
        from . import bootstrap
        from .backends.ort_backend import OrtGraph

        bootstrap.ensure()
        graph = OrtGraph.load(graph_paths, providers=providers,
                              intra_op_threads=intra_op_threads)
        return cls(graph, schema, eos_token_id=eos_token_id)

    @property
    def schema(self) -> IOSchema:
        return self._schema

    @property
    def graph(self) -> GraphHandle | None:
        return self._graph

    @property
    def eos_token_id(self) -> int:
        return self._eos_token_id

    def close(self) -> None:
        """Release the graph handle. The session is unusable afterwards."""
        if self._graph is not None:
            self._graph.close()
            self._graph = None

    def __enter__(self) -> GenerationSession:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self._graph is None else "open"
        return (f"GenerationSession({state}, preset={self._schema.preset.name}, "
                f"inputs={len(self._schema.inputs)}, eos={self._eos_token_id})")

    # ------------------------------------------------------------------
    # Generate
    # ------------------------------------------------------------------

    def generate(self, tokenizer, input_ids, attention_mask,
                 options: GenerationOptions | None = None) -> list[list[int]]:
        """Generate continuation ids for a batch of one prompt.

        Returns:
            Batch-shaped generated ids, prompt excluded: [[id, id, ...]].

        Raises:
            UnsupportedBatchSize: If the batch holds more or fewer than one
                sequence.
            GenerationError: Any mid-step construction/execution failure.
        """
        result = self.generate_sequence(tokenizer, input_ids, attention_mask, options)
        return [result.token_ids]

    def generate_sequence(self, tokenizer, input_ids, attention_mask,
                          options: GenerationOptions | None = None) -> GenerationResult:
        """Like generate(), but returns the full GenerationResult."""
        if tokenizer is None:
            raise ValueError("generate() requires a tokenizer")
        if self._graph is None:
            raise RuntimeError("Session is closed")
        if len(input_ids) != 1:
            raise UnsupportedBatchSize(len(input_ids))
        if len(attention_mask) != 1:
            raise UnsupportedBatchSize(len(attention_mask))

        options = options or GenerationOptions()
        if options.max_new_tokens <= 0:
            options = replace(options, max_new_tokens=DEFAULT_MAX_NEW_TOKENS)

        state = SequenceState(
            token_ids=[int(t) for t in input_ids[0]],
            attention_mask=[int(m) for m in attention_mask[0]],
        )
        if not state.token_ids:
            raise ValueError("Prompt is empty")

        return self._decode(tokenizer, state, options)

    # ------------------------------------------------------------------
    # Decoding loop
    # ------------------------------------------------------------------

    def _decode(self, tokenizer, state: SequenceState,
                options: GenerationOptions) -> GenerationResult:
        stops = list(dict.fromkeys(s for s in options.stop_sequences if s))
        rng = options.rng
        if options.do_sample and rng is None:
            rng = np.random.default_rng()

        reason = StopReason.MAX_TOKENS
        steps = 0
        for step in range(options.max_new_tokens):
            row = self._step(state)
            if options.do_sample:
                token_id = tensors.sample_from_probs(tensors.softmax(row), rng.random)
            else:
                token_id = tensors.argmax(row)

            state.append(token_id)
            steps += 1

            delta = _decode_token(tokenizer, token_id)
            state.text += delta

            stop_hit = False
            for stop in stops:
                idx = state.text.find(stop)
                if idx >= 0:
                    state.text = state.text[:idx]
                    # never stream a partially-matched stop tail
                    delta = ""
                    stop_hit = True
                    break
            eos_hit = self._eos_token_id >= 0 and token_id == self._eos_token_id

            logger.debug("step %d: token=%d len=%d eos=%s stop=%s",
                         step, token_id, len(state), eos_hit, stop_hit)

            cancelled = False
            if options.streamer is not None:
                event = StepEvent(
                    token_id=token_id,
                    delta_text=delta,
                    full_text=state.text,
                    step=step,
                    done=eos_hit or stop_hit,
                )
                reply = options.streamer(event)
                cancelled = reply is not None and not reply

            if eos_hit:
                reason = StopReason.EOS
                break
            if stop_hit:
                reason = StopReason.STOP_STRING
                break
            if cancelled:
                reason = StopReason.CANCELLED
                break

        return GenerationResult(
            token_ids=list(state.generated),
            text=state.text,
            stop_reason=reason,
            steps=steps,
        )

    def _step(self, state: SequenceState) -> np.ndarray:
        """One graph run. Returns the last position's logits row (float32 copy).

        Input tensors live in one scope and are released as soon as the run
        returns (or fails); run outputs live in a second scope that releases
        unused outputs immediately and the logits once the row is copied.
        """
        seq_len = len(state)
        with TensorScope(self._graph) as scope:
            feed = self._assemble_inputs(scope, state)
            try:
                outputs = self._graph.run(feed, self._schema.outputs)
            except Exception as exc:
                raise GraphExecutionError(
                    f"Graph run failed at sequence length {seq_len}: {exc}"
                ) from exc
        return self._read_logits(outputs, seq_len)

    def _assemble_inputs(self, scope: TensorScope,
                         state: SequenceState) -> dict[str, Any]:
        feed: dict[str, Any] = {}
        for name in self._schema.inputs:
            array = self._input_array(name, state)
            try:
                feed[name] = scope.tensor(array)
            except Exception as exc:
                raise TensorConstructionError(name, str(exc)) from exc
        return feed

    def _input_array(self, name: str, state: SequenceState) -> np.ndarray:
        seq_len = len(state)
        slot = self._schema.slots.get(name)
        core = (INPUT_IDS, ATTENTION_MASK, POSITION_IDS)
        if name not in core and slot is None:
            raise TensorConstructionError(name, "no declared shape/dtype to zero-fill from")

        try:
            if name == INPUT_IDS:
                return tensors.tensor_from_ints(state.token_ids, (1, seq_len), _int_dtype(slot))
            if name == ATTENTION_MASK:
                return tensors.tensor_from_ints(state.attention_mask, (1, seq_len), _int_dtype(slot))
            if name == POSITION_IDS:
                return tensors.positions(seq_len, _int_dtype(slot))
            return tensors.zeros(slot.fill_shape(seq_len), _fill_dtype(slot))
        except (TypeError, ValueError) as exc:
            raise TensorConstructionError(name, str(exc)) from exc

    def _read_logits(self, outputs: Sequence[Any], seq_len: int) -> np.ndarray:
        names = self._schema.outputs
        logits_name = self._schema.logits_name
        with TensorScope(self._graph) as scope:
            for value in outputs:
                if value is not None:
                    scope.adopt(value)

            logits_value = None
            for name, value in zip(names, outputs):
                if value is None:
                    continue
                if name == logits_name:
                    logits_value = value
                else:
                    scope.release(value)

            if logits_value is None:
                raise MissingLogitsOutput(logits_name, list(names))

            logits = self._graph.to_numpy(logits_value)
            if not np.issubdtype(logits.dtype, np.floating):
                raise UnexpectedLogitsType(logits.dtype)
            if logits.ndim != 3:
                raise UnexpectedLogitsShape(tuple(logits.shape))
            if logits.shape[0] < 1 or logits.shape[1] < seq_len:
                raise UnexpectedLogitsShape(
                    tuple(logits.shape), f"no row for position {seq_len - 1}"
                )
            # Copy: the array may be a view into engine memory released below
            return np.array(logits[0, seq_len - 1], dtype=np.float32)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _int_dtype(slot: SlotInfo | None) -> np.dtype:
    if slot is not None and np.issubdtype(np.dtype(slot.dtype), np.integer):
        return np.dtype(slot.dtype)
    return np.dtype(np.int64)


def _fill_dtype(slot: SlotInfo) -> np.dtype:
    dtype = np.dtype(slot.dtype)
    if np.issubdtype(dtype, np.integer) or np.issubdtype(dtype, np.floating):
        return dtype
    return np.dtype(np.float32)


def _decode_token(tokenizer, token_id: int) -> str:
    """Best-effort single-token decode; failures yield empty text."""
    try:
        return tokenizer.decode([token_id])
    except Exception:
        logger.debug("decode failed for token %d", token_id, exc_info=True)
        return ""
