"""ortgen: text generation for ONNX-exported causal language models."""

from .config import ModelConfig, load_config
from .errors import (
    AssetNotFoundError,
    ConfigurationError,
    GenerationError,
    GraphExecutionError,
    GraphIntrospectionError,
    MissingLogitsOutput,
    RuntimeBootstrapError,
    TensorConstructionError,
    UnexpectedLogitsShape,
    UnexpectedLogitsType,
    UnsupportedBatchSize,
    UnsupportedLayerType,
)
from .hub import AssetResolver
from .pipeline import TextGenerationPipeline, load_model, pipeline
from .schema import IOPreset, IOSchema, SlotInfo, describe_schema, resolve_io_schema
from .session import (
    GenerationOptions,
    GenerationResult,
    GenerationSession,
    StepEvent,
    StopReason,
)
from .tokenizer import ChatMessage, Role, Tokenizer

__version__ = "0.1.0"
