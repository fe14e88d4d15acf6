"""IO schema resolution: which named tensor slots a model graph expects.

Different model families export different input surfaces. A flat causal
LM takes input_ids + attention_mask and returns logits; cache-threaded
exports (e.g. LFM2-style hybrids) additionally take per-layer past state
and return matching present.* outputs. Presets encode the well-known
wirings; AUTO reads the names straight from the graph artifact so
unknown exports still work.

The preset is resolved once, at load time, into an immutable IOSchema.
The decoding loop never re-dispatches on it.

    schema = resolve_io_schema(IOPreset.AUTO, graph_path="onnx/model.onnx")
    print(describe_schema(schema))
"""

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import numpy as np
import onnx

from .errors import ConfigurationError, GraphIntrospectionError, UnsupportedLayerType

logger = logging.getLogger(__name__)


INPUT_IDS = "input_ids"
ATTENTION_MASK = "attention_mask"
POSITION_IDS = "position_ids"
CORE_INPUTS = (INPUT_IDS, ATTENTION_MASK, POSITION_IDS)
LOGITS = "logits"
PRESENT_PREFIX = "present."

# Substrings marking an input as carried-over state rather than fresh data
CACHE_MARKERS = ("past", "cache")


class IOPreset(Enum):
    """Strategy used to produce an IOSchema."""
    AUTO          = auto()   # introspect the graph artifact
    SIMPLE_CAUSAL = auto()   # [input_ids, attention_mask] -> [logits]
    KV_CACHE      = auto()   # core inputs + per-layer past_* -> logits + present.*


@dataclass(frozen=True)
class SlotInfo:
    """Declared metadata for one graph input.

    Dimensions are ints when fixed, strings for symbolic dims (ONNX
    dim_param), and None when the graph says nothing. Symbolic, unknown
    and non-positive dims are all treated as dynamic.
    """
    name: str
    shape: tuple[int | str | None, ...] = ()
    dtype: str = "float32"

    @property
    def is_cache(self) -> bool:
        return any(marker in self.name for marker in CACHE_MARKERS)

    def is_dynamic(self, axis: int) -> bool:
        d = self.shape[axis]
        return not isinstance(d, int) or d <= 0

    def fill_shape(self, seq_len: int) -> tuple[int, ...]:
        """Concrete shape for a zero-filled stand-in of this slot.

        Dynamic dims resolve as: trailing dim of a non-cache slot -> seq_len
        (this wins over the batch rule for rank-1 slots); leading (batch)
        -> 1; any other dim of a cache slot -> 0 (empty cache, nothing is
        carried across steps); anything else -> 1.
        """
        shape = []
        last = len(self.shape) - 1
        for axis, d in enumerate(self.shape):
            if not self.is_dynamic(axis):
                shape.append(d)
            elif not self.is_cache and axis == last and seq_len > 0:
                shape.append(seq_len)
            elif axis == 0:
                shape.append(1)
            elif self.is_cache:
                shape.append(0)
            else:
                shape.append(1)
        return tuple(shape)


@dataclass(frozen=True)
class IOSchema:
    """Ordered input/output slot names plus declared input metadata.

    `slots` may be empty for the static presets when no graph artifact
    was available. The core inputs don't need declarations, but any
    other input then can't be zero-filled.
    """
    inputs: tuple[str, ...]
    outputs: tuple[str, ...]
    slots: Mapping[str, SlotInfo] = field(default_factory=dict)
    preset: IOPreset = IOPreset.AUTO
    logits_name: str = LOGITS

    def __post_init__(self) -> None:
        object.__setattr__(self, "inputs", tuple(self.inputs))
        object.__setattr__(self, "outputs", tuple(self.outputs))
        object.__setattr__(self, "slots", MappingProxyType(dict(self.slots)))

    @property
    def cache_inputs(self) -> tuple[str, ...]:
        """Inputs that aren't core per-step data."""
        return tuple(n for n in self.inputs if n not in CORE_INPUTS)


# ---------------------------------------------------------------------------
# Presets
# ---------------------------------------------------------------------------

def simple_causal_io_names() -> tuple[list[str], list[str]]:
    """Standard GPT-style wiring: input_ids, attention_mask -> logits."""
    return [INPUT_IDS, ATTENTION_MASK], [LOGITS]


def kv_cache_io_names(config) -> tuple[list[str], list[str]]:
    """Names for cache-threaded exports, derived from the config's layer types.

    Follows the naming convention of the HF ONNX conversion scripts:
    full_attention layers take a key/value pair, conv layers a single
    conv-state slot. Every non-core input gets a matching present.* output
    in the same order.
    """
    if config is None:
        raise ConfigurationError("KV_CACHE preset requires a model config")

    inputs = list(CORE_INPUTS)
    for layer_idx, layer_type in enumerate(config.layer_types):
        if layer_type == "full_attention":
            inputs.append(f"past_key_values.{layer_idx}.key")
            inputs.append(f"past_key_values.{layer_idx}.value")
        elif layer_type == "conv":
            inputs.append(f"past_conv.{layer_idx}")
        else:
            raise UnsupportedLayerType(layer_idx, layer_type)

    outputs = [LOGITS]
    outputs.extend(PRESENT_PREFIX + name for name in inputs
                   if name not in CORE_INPUTS)
    return inputs, outputs


# ---------------------------------------------------------------------------
# Introspection
# ---------------------------------------------------------------------------

def _np_dtype_name(elem_type: int) -> str:
    try:
        return np.dtype(onnx.helper.tensor_dtype_to_np_dtype(elem_type)).name
    except (KeyError, TypeError, ValueError):
        return "float32"


def _slot_from_value_info(value_info: onnx.ValueInfoProto) -> SlotInfo:
    tensor_type = value_info.type.tensor_type
    dims: list[int | str | None] = []
    for d in tensor_type.shape.dim:
        if d.HasField("dim_value"):
            dims.append(int(d.dim_value))
        elif d.HasField("dim_param"):
            dims.append(d.dim_param)
        else:
            dims.append(None)
    return SlotInfo(value_info.name, tuple(dims), _np_dtype_name(tensor_type.elem_type))


def introspect_graph(path: str | Path) -> tuple[list[SlotInfo], list[str]]:
    """Read declared inputs and output names from an ONNX artifact.

    Weights stored as external data are not loaded. Initializers that
    older exporters also list as graph inputs are skipped since they aren't
    slots the caller feeds.

    Returns:
        (input slots, output names), both in declaration order.

    Raises:
        GraphIntrospectionError: If the artifact is missing or unreadable.
    """
    try:
        model = onnx.load(str(path), load_external_data=False)
    except Exception as exc:
        raise GraphIntrospectionError(str(path), str(exc)) from exc

    graph = model.graph
    initializers = {t.name for t in graph.initializer}
    inputs = [_slot_from_value_info(v) for v in graph.input
              if v.name not in initializers]
    outputs = [v.name for v in graph.output]
    return inputs, outputs


def _declared_slots(graph_path: str | Path | None) -> dict[str, SlotInfo]:
    """Best-effort slot declarations for the static presets."""
    if graph_path is None:
        return {}
    try:
        slots, _ = introspect_graph(graph_path)
    except GraphIntrospectionError as exc:
        logger.warning("no slot declarations available: %s", exc)
        return {}
    return {s.name: s for s in slots}


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def resolve_io_schema(
    preset: IOPreset,
    config=None,
    graph_path: str | Path | None = None,
) -> IOSchema:
    """Resolve a preset into a concrete, immutable IOSchema.

    Args:
        preset: Which wiring strategy to use.
        config: Model config exposing `layer_types` (KV_CACHE only).
        graph_path: The .onnx artifact. Required for AUTO; for the static
            presets it only supplies slot declarations (shape/dtype) used
            to zero-fill optional inputs.

    Raises:
        ConfigurationError: KV_CACHE without a config.
        UnsupportedLayerType: KV_CACHE with an unknown layer type.
        GraphIntrospectionError: AUTO with a missing/unreadable artifact.
    """
    if preset is IOPreset.SIMPLE_CAUSAL:
        inputs, outputs = simple_causal_io_names()
    elif preset is IOPreset.KV_CACHE:
        inputs, outputs = kv_cache_io_names(config)
    else:
        if graph_path is None:
            raise GraphIntrospectionError("<none>", "AUTO preset needs a graph path")
        slots, outputs = introspect_graph(graph_path)
        return IOSchema(
            inputs=tuple(s.name for s in slots),
            outputs=tuple(outputs),
            slots={s.name: s for s in slots},
            preset=IOPreset.AUTO,
        )

    return IOSchema(
        inputs=tuple(inputs),
        outputs=tuple(outputs),
        slots=_declared_slots(graph_path),
        preset=preset,
    )


def describe_schema(schema: IOSchema) -> str:
    """Human-readable summary of a resolved schema."""
    lines = [f"Preset: {schema.preset.name}"]

    lines.append(f"Inputs ({len(schema.inputs)}):")
    for name in schema.inputs:
        slot = schema.slots.get(name)
        if slot is None:
            lines.append(f"  {name}")
        else:
            lines.append(f"  {name}: {slot.shape} {slot.dtype}")

    lines.append(f"Outputs ({len(schema.outputs)}):")
    for name in schema.outputs:
        marker = "  <- logits" if name == schema.logits_name else ""
        lines.append(f"  {name}{marker}")

    return "\n".join(lines)
