"""Error taxonomy for the generation engine.

Every failure that aborts a generate() call is a GenerationError subclass
carrying structured attributes, so callers can branch on the type and
inspect the details without parsing messages. None of these are retried
internally; the caller decides whether to retry the whole pipeline.

Underlying engine/library exceptions are chained via ``raise ... from``.
"""


class GenerationError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(GenerationError):
    """Required model metadata is missing or unusable."""


class UnsupportedLayerType(GenerationError):
    """A layer type in the config has no known cache wiring."""

    def __init__(self, layer_index: int, layer_type: str) -> None:
        self.layer_index = layer_index
        self.layer_type = layer_type
        super().__init__(
            f"Unsupported layer type {layer_type!r} at layer {layer_index} "
            f"(expected 'full_attention' or 'conv')"
        )


class GraphIntrospectionError(GenerationError):
    """The on-disk graph artifact could not be read."""

    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        super().__init__(f"Cannot introspect graph '{path}': {reason}")


class UnsupportedBatchSize(GenerationError):
    """Only single-sequence generation is supported."""

    def __init__(self, batch_size: int) -> None:
        self.batch_size = batch_size
        super().__init__(
            f"Batch size {batch_size} not supported (only batch=1)"
        )


class GraphExecutionError(GenerationError):
    """The execution engine failed to run the graph."""


class MissingLogitsOutput(GenerationError):
    """The graph run produced no tensor for the logits slot."""

    def __init__(self, name: str, outputs: list[str]) -> None:
        self.name = name
        self.outputs = outputs
        super().__init__(
            f"Output '{name}' missing from graph outputs {outputs}"
        )


class UnexpectedLogitsType(GenerationError):
    """Logits are not a floating-point tensor."""

    def __init__(self, dtype) -> None:
        self.dtype = dtype
        super().__init__(f"Logits must be floating point, got {dtype}")


class UnexpectedLogitsShape(GenerationError):
    """Logits are not [batch, seq_len, vocab] or don't cover the last position."""

    def __init__(self, shape: tuple[int, ...], reason: str = "expected rank 3") -> None:
        self.shape = shape
        super().__init__(f"Unexpected logits shape {shape}: {reason}")


class TensorConstructionError(GenerationError):
    """An input tensor for a graph slot could not be built."""

    def __init__(self, slot: str, reason: str) -> None:
        self.slot = slot
        super().__init__(f"Cannot build tensor for input '{slot}': {reason}")


class AssetNotFoundError(GenerationError):
    """A required model file does not exist at the origin."""

    def __init__(self, repo_id: str, filename: str) -> None:
        self.repo_id = repo_id
        self.filename = filename
        super().__init__(f"File '{filename}' not found in repo '{repo_id}'")


class RuntimeBootstrapError(GenerationError):
    """The native ONNX Runtime library could not be located or loaded."""
