"""Tokenizer wrapper and chat message types.

Wraps a Hugging Face `transformers` tokenizer behind the small surface
the engine needs: encode, decode, and chat-prompt encoding. Prompts are
rendered with the model's own chat template when it ships one; otherwise
a plain fallback format is used:

    System: <system content>
    User: <user content>
    Assistant: <assistant content>
    ...
    Assistant:

System messages come first regardless of position, and the prompt always
ends with an open "Assistant:" cue so the model answers next.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, Mapping, Sequence

from .hub import AssetResolver, model_files_list

logger = logging.getLogger(__name__)


AUXILIARY_FILES = [
    "tokenizer_config.json",
    "special_tokens_map.json",
    "vocab.json",
    "merges.txt",
    "chat_template.jinja",
]


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class ChatMessage:
    role: Role
    content: str
    name: str | None = None
    tool_call_id: str | None = None

    @classmethod
    def coerce(cls, message: "ChatMessage | Mapping[str, Any]") -> "ChatMessage":
        """Accept either a ChatMessage or an OpenAI-style dict."""
        if isinstance(message, ChatMessage):
            return message
        return cls(
            role=Role(message.get("role", "user")),
            content=message.get("content") or "",
            name=message.get("name"),
            tool_call_id=message.get("tool_call_id"),
        )

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class ChatEncoding:
    """Batch-shaped (batch=1) prompt encoding."""
    input_ids: list[list[int]]
    attention_mask: list[list[int]]
    prompt_length: int
    prompt_text: str


def render_fallback_chat(messages: Sequence[ChatMessage]) -> str:
    """Minimal chat format for models without a chat template."""
    lines = [f"System: {m.content}" for m in messages if m.role is Role.SYSTEM]
    for m in messages:
        if m.role is Role.SYSTEM:
            continue
        speaker = "Assistant" if m.role is Role.ASSISTANT else "User"
        lines.append(f"{speaker}: {m.content}")
    lines.append("Assistant:")
    return "\n".join(lines)


class Tokenizer:
    """Text <-> token ids, plus chat prompt encoding.

    `backend` is any object with the transformers tokenizer interface
    (encode/decode, and optionally chat_template/apply_chat_template).
    """

    def __init__(self, backend: Any) -> None:
        self._backend = backend

    @classmethod
    def from_pretrained(cls, model_id: str,
                        resolver: AssetResolver | None = None) -> "Tokenizer":
        """Load tokenizer.json (+ optional auxiliaries) for a repo."""
        from transformers import AutoTokenizer, PreTrainedTokenizerFast

        resolver = resolver or AssetResolver()
        tokenizer_path = resolver.fetch(model_id, "tokenizer.json")
        found = resolver.fetch_optional(model_id, model_files_list(AUXILIARY_FILES))

        if "tokenizer_config.json" in found:
            backend = AutoTokenizer.from_pretrained(str(tokenizer_path.parent))
        else:
            backend = PreTrainedTokenizerFast(tokenizer_file=str(tokenizer_path))
        return cls(backend)

    @property
    def backend(self) -> Any:
        return self._backend

    @property
    def has_chat_template(self) -> bool:
        return bool(getattr(self._backend, "chat_template", None))

    def encode(self, text: str, add_special_tokens: bool = True) -> list[int]:
        return [int(i) for i in
                self._backend.encode(text, add_special_tokens=add_special_tokens)]

    def decode(self, ids: Iterable[int]) -> str:
        return self._backend.decode([int(i) for i in ids], skip_special_tokens=True)

    def batch_decode(self, batch: Sequence[Sequence[int]]) -> list[str]:
        return [self.decode(ids) for ids in batch]

    def render_chat(self, messages: Sequence[ChatMessage | Mapping[str, Any]]) -> str:
        messages = [ChatMessage.coerce(m) for m in messages]
        if self.has_chat_template:
            return self._backend.apply_chat_template(
                [m.to_dict() for m in messages],
                tokenize=False,
                add_generation_prompt=True,
            )
        return render_fallback_chat(messages)

    def encode_chat(self, messages: Sequence[ChatMessage | Mapping[str, Any]]) -> ChatEncoding:
        """Render and encode a conversation as a batch of one."""
        text = self.render_chat(messages)
        # Templates already place BOS/special tokens in the rendered text
        ids = self.encode(text, add_special_tokens=not self.has_chat_template)
        return ChatEncoding(
            input_ids=[ids],
            attention_mask=[[1] * len(ids)],
            prompt_length=len(ids),
            prompt_text=text,
        )

    def __repr__(self) -> str:
        vocab = getattr(self._backend, "vocab_size", "?")
        return f"Tokenizer(vocab={vocab})"
