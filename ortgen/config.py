"""Model configuration: the subset of config.json the engine needs.

Loads config.json (required) and merges generation_config.json (optional)
on top: special token ids there override the model config's, and any
`stop` strings become the default stop list for generation.

Token ids default to -1 when unknown. HF configs sometimes store a list
of ids (several EOS tokens); the first one is used.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def _as_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, (list, tuple)) and value:
        return _as_int(value[0], default)
    return default


def _as_strings(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [s for s in value if isinstance(s, str) and s]
    return []


@dataclass
class ModelConfig:
    """Parsed model configuration."""
    model_type: str
    vocab_size: int = 0
    eos_token_id: int = -1
    bos_token_id: int = -1
    pad_token_id: int = -1
    num_hidden_layers: int = 0
    num_attention_heads: int = 0
    num_key_value_heads: int = 0
    hidden_size: int = 0
    conv_l_cache: int = 0
    layer_types: list[str] = field(default_factory=list)
    stop_strings: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ModelConfig":
        """Build from a parsed config.json.

        Raises:
            ConfigurationError: If model_type is missing.
        """
        model_type = raw.get("model_type")
        if not isinstance(model_type, str) or not model_type:
            raise ConfigurationError("model_type missing in config.json")

        layer_types = raw.get("layer_types") or []
        return cls(
            model_type=model_type,
            vocab_size=_as_int(raw.get("vocab_size"), 0),
            eos_token_id=_as_int(raw.get("eos_token_id"), -1),
            bos_token_id=_as_int(raw.get("bos_token_id"), -1),
            pad_token_id=_as_int(raw.get("pad_token_id"), -1),
            num_hidden_layers=_as_int(raw.get("num_hidden_layers"), 0),
            num_attention_heads=_as_int(raw.get("num_attention_heads"), 0),
            num_key_value_heads=_as_int(raw.get("num_key_value_heads"), 0),
            hidden_size=_as_int(raw.get("hidden_size"), 0),
            conv_l_cache=_as_int(raw.get("conv_l_cache"), 0),
            layer_types=[t if isinstance(t, str) else "" for t in layer_types],
            raw=dict(raw),
        )

    @classmethod
    def from_files(cls, config_path: str | Path,
                   generation_config_path: str | Path | None = None) -> "ModelConfig":
        """Load config.json and optionally merge generation_config.json."""
        try:
            raw = json.loads(Path(config_path).read_text())
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read {config_path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"{config_path} is not a JSON object")

        config = cls.from_dict(raw)
        if generation_config_path is not None:
            try:
                gen = json.loads(Path(generation_config_path).read_text())
            except (OSError, json.JSONDecodeError) as exc:
                # Optional file: warn and carry on
                logger.warning("ignoring %s: %s", generation_config_path, exc)
            else:
                if isinstance(gen, dict):
                    config.apply_generation_config(gen)
        return config

    def apply_generation_config(self, gen: dict[str, Any]) -> None:
        """Merge generation_config.json: token id overrides and stop strings."""
        self.eos_token_id = _as_int(gen.get("eos_token_id"), self.eos_token_id)
        self.bos_token_id = _as_int(gen.get("bos_token_id"), self.bos_token_id)
        self.pad_token_id = _as_int(gen.get("pad_token_id"), self.pad_token_id)
        stops = _as_strings(gen.get("stop"))
        if stops:
            self.stop_strings = stops


def load_config(model_id: str, resolver) -> ModelConfig:
    """Fetch and parse a repo's config.json (+ generation_config.json if present)."""
    config_path = resolver.fetch(model_id, "config.json")
    optional = resolver.fetch_optional(model_id, ["generation_config.json"])
    return ModelConfig.from_files(config_path, optional.get("generation_config.json"))
