"""Pipeline façade: model id in, chat-shaped text out.

    pipe = pipeline("text-generation", "onnx-community/SmolLM-135M-ONNX")
    out = pipe([{"role": "user", "content": "Hi!"}], max_new_tokens=32)
    print(out[0]["generated_text"][0]["content"])

load_model() does the heavy lifting: config, graph artifact, IO schema and
session. pipeline() adds the tokenizer and wraps everything in a
TextGenerationPipeline whose call encodes the chat, generates, decodes and
truncates at stop strings.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import psutil

from .config import ModelConfig, load_config
from .hub import AssetResolver
from .schema import IOPreset, resolve_io_schema
from .session import GenerationOptions, GenerationSession, Streamer
from .tokenizer import ChatMessage, Tokenizer

logger = logging.getLogger(__name__)

TASK_TEXT_GENERATION = "text-generation"
DEFAULT_DTYPE = "q4"
DEFAULT_PIPELINE_MAX_NEW_TOKENS = 32
DEFAULT_STOP_SEQUENCES = ("\nUser:", "\nuser:", "\nAssistant:", "\nassistant:")

_MODEL_FILES = {
    "q4": "onnx/model_q4.onnx",
    "fp16": "onnx/model_fp16.onnx",
}


def model_filename_for(dtype: str) -> str:
    """Repo-relative graph file for a weight precision."""
    return _MODEL_FILES.get(dtype, "onnx/model.onnx")


def parse_stop_sequences(value: Any) -> list[str]:
    """Normalise a `stop` argument (None, a string, or a list) to a list."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [s for s in value if isinstance(s, str) and s]
    return []


def truncate_at_stops(text: str, stops: Iterable[str]) -> str:
    """Cut `text` at each stop string in turn, then strip whitespace."""
    out = text
    for stop in stops:
        if not stop:
            continue
        idx = out.find(stop)
        if idx >= 0:
            out = out[:idx]
    return out.strip()


def _rss_mb() -> float:
    return psutil.Process().memory_info().rss / (1024 * 1024)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_model(
    model_id: str,
    config: ModelConfig,
    *,
    dtype: str = DEFAULT_DTYPE,
    io_preset: IOPreset = IOPreset.AUTO,
    resolver: AssetResolver | None = None,
    providers: Sequence[str] | None = None,
) -> GenerationSession:
    """Fetch the graph artifact for `dtype` and open a GenerationSession.

    The external-data companion (<file>_data) is fetched when the repo
    has one; single-file exports work without it.
    """
    resolver = resolver or AssetResolver()
    model_file = model_filename_for(dtype)
    graph_path = resolver.fetch(model_id, model_file)

    paths: list[Path] = [graph_path]
    extra = resolver.fetch_optional(model_id, [model_file + "_data"])
    paths.extend(extra.values())

    schema = resolve_io_schema(io_preset, config=config, graph_path=graph_path)
    session = GenerationSession.load(paths, schema,
                                     eos_token_id=config.eos_token_id,
                                     providers=providers)

    logger.info("model loaded: repo=%s files=%s rss_mb=%.1f",
                model_id, resolver.downloaded(model_id), _rss_mb())
    return session


def pipeline(
    task: str,
    model_id: str,
    *,
    dtype: str = DEFAULT_DTYPE,
    io_preset: IOPreset = IOPreset.AUTO,
    resolver: AssetResolver | None = None,
    providers: Sequence[str] | None = None,
) -> TextGenerationPipeline:
    """Build a ready-to-call pipeline for `task`.

    Raises:
        ValueError: For any task other than "text-generation".
        AssetNotFoundError: If a required file is missing from the repo.
    """
    if task != TASK_TEXT_GENERATION:
        raise ValueError(f"Unsupported task '{task}'. Supported: '{TASK_TEXT_GENERATION}'")

    resolver = resolver or AssetResolver()
    config = load_config(model_id, resolver)
    tokenizer = Tokenizer.from_pretrained(model_id, resolver)
    session = load_model(model_id, config, dtype=dtype, io_preset=io_preset,
                         resolver=resolver, providers=providers)
    return TextGenerationPipeline(config, tokenizer, session)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

class TextGenerationPipeline:
    """Chat in, assistant message out."""

    def __init__(self, config: ModelConfig, tokenizer: Tokenizer,
                 session: GenerationSession,
                 default_max_new_tokens: int = DEFAULT_PIPELINE_MAX_NEW_TOKENS) -> None:
        self.config = config
        self.tokenizer = tokenizer
        self.session = session
        self.default_max_new_tokens = default_max_new_tokens

    def resolve_stops(self, stop: Any = None) -> list[str]:
        """Explicit stops, else the config's, else the chat-turn defaults."""
        stops = parse_stop_sequences(stop)
        if not stops:
            stops = list(self.config.stop_strings)
        if not stops:
            stops = list(DEFAULT_STOP_SEQUENCES)
        return stops

    def __call__(
        self,
        messages: Sequence[ChatMessage | Mapping[str, Any]],
        *,
        max_new_tokens: int | None = None,
        do_sample: bool = False,
        streamer: Streamer | None = None,
        stop: Any = None,
        rng=None,
    ) -> list[dict[str, Any]]:
        stops = self.resolve_stops(stop)
        encoding = self.tokenizer.encode_chat(messages)
        options = GenerationOptions(
            max_new_tokens=(self.default_max_new_tokens
                            if max_new_tokens is None else max_new_tokens),
            do_sample=do_sample,
            stop_sequences=stops,
            streamer=streamer,
            rng=rng,
        )
        generated = self.session.generate(self.tokenizer, encoding.input_ids,
                                          encoding.attention_mask, options)
        texts = self.tokenizer.batch_decode(generated)
        return [
            {"generated_text": [{"role": "assistant",
                                 "content": truncate_at_stops(text, stops)}]}
            for text in texts
        ]

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> TextGenerationPipeline:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (f"TextGenerationPipeline(model_type={self.config.model_type!r}, "
                f"{self.tokenizer!r}, {self.session!r})")
