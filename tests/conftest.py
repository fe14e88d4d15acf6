"""Shared fixtures and helpers for the test suite.

pytest discovers conftest.py automatically; fixtures defined here are
available to all test files in this directory without explicit imports.
Helper classes are imported directly (`from conftest import ...`).
"""

from pathlib import Path

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper, numpy_helper

from ortgen.backends.common import GraphHandle
from ortgen.schema import IOPreset, IOSchema, SlotInfo


EOS = 0


# ---------------------------------------------------------------------------
# Engine double
# ---------------------------------------------------------------------------

class FakeTensor:
    """Stand-in engine tensor. Identity matters, not contents."""
    def __init__(self, array):
        self.array = array


class CountingGraph(GraphHandle):
    """GraphHandle that scripts logits and audits tensor lifetimes.

    `next_token(ids)` picks the token for the final position; every
    earlier position is given a different winner so reading the wrong
    row shows up as a wrong token. Every tensor constructed (inputs and
    run outputs) is tracked until released; releasing an unknown or
    already-released tensor fails the test.
    """

    def __init__(self, next_token=lambda ids: 1, vocab=128, *,
                 fail_run=False, fail_tensor_at=None,
                 logits_dtype=np.float32, logits_rank=3, logits_last_only=False,
                 drop_logits=False):
        self.next_token = next_token
        self.vocab = vocab
        self.fail_run = fail_run
        self.fail_tensor_at = fail_tensor_at
        self.logits_dtype = logits_dtype
        self.logits_rank = logits_rank
        self.logits_last_only = logits_last_only
        self.drop_logits = drop_logits

        self.constructed = 0
        self.released = 0
        self.attempts = 0
        self.runs = 0
        self.live = {}
        self.leaks_at_run = []
        self.feeds = []
        self.closed = False

    def _track(self, array):
        value = FakeTensor(array)
        self.constructed += 1
        self.live[id(value)] = value
        return value

    def tensor(self, array):
        self.attempts += 1
        if self.fail_tensor_at is not None and self.attempts == self.fail_tensor_at:
            raise RuntimeError("injected tensor failure")
        return self._track(np.array(array, copy=True))

    def run(self, inputs, output_names):
        self.runs += 1
        fed = {id(v) for v in inputs.values()}
        self.leaks_at_run.append(sum(1 for k in self.live if k not in fed))
        self.feeds.append({name: v.array.copy() for name, v in inputs.items()})
        if self.fail_run:
            raise RuntimeError("injected run failure")

        ids = inputs["input_ids"].array[0].tolist()
        seq_len = len(ids)
        token = self.next_token(ids)
        logits = np.zeros((1, seq_len, self.vocab), dtype=self.logits_dtype)
        logits[0, :, (token + 1) % self.vocab] = 1
        logits[0, -1, :] = 0
        logits[0, -1, token] = 1
        if self.logits_last_only:
            logits = logits[:, -1:, :]
        if self.logits_rank == 2:
            logits = logits[0]

        outputs = []
        for name in output_names:
            if name == "logits":
                outputs.append(None if self.drop_logits else self._track(logits))
            else:
                outputs.append(self._track(np.zeros((1,), dtype=np.float32)))
        return outputs

    def to_numpy(self, value):
        return value.array

    def release(self, value):
        assert id(value) in self.live, "release of unknown or already-released tensor"
        del self.live[id(value)]
        self.released += 1

    def close(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Tokenizer double
# ---------------------------------------------------------------------------

class CharTokenizer:
    """ASCII tokenizer: token id == code point. Id 0 is the special EOS.

    Implements the transformers-style backend surface (encode/decode with
    keyword flags), so it also works wrapped in ortgen's Tokenizer.
    """

    vocab_size = 128

    def __init__(self, fail_ids=(), chat_template=None):
        self.fail_ids = set(fail_ids)
        self.chat_template = chat_template
        self.decode_calls = 0

    def encode(self, text, add_special_tokens=True):
        return [ord(c) for c in text]

    def decode(self, ids, skip_special_tokens=True):
        self.decode_calls += 1
        out = []
        for i in ids:
            if i in self.fail_ids:
                raise ValueError(f"cannot decode {i}")
            if i == EOS and skip_special_tokens:
                continue
            out.append(chr(i))
        return "".join(out)

    def apply_chat_template(self, messages, tokenize=False, add_generation_prompt=True):
        body = "".join(f"<{m['role']}>{m['content']}" for m in messages)
        return body + ("<assistant>" if add_generation_prompt else "")


def scripted(text, prompt_len, then=EOS):
    """next_token function that spells out `text` after the prompt, then `then`."""
    codes = [ord(c) for c in text]

    def next_token(ids):
        k = len(ids) - prompt_len
        return codes[k] if k < len(codes) else then

    return next_token


def simple_schema(extra_slots=()):
    """input_ids + attention_mask -> logits, plus optional declared slots."""
    slots = list(extra_slots)
    return IOSchema(
        inputs=("input_ids", "attention_mask") + tuple(s.name for s in slots),
        outputs=("logits",),
        slots={s.name: s for s in slots},
        preset=IOPreset.SIMPLE_CAUSAL,
    )


# ---------------------------------------------------------------------------
# Tiny ONNX models
# ---------------------------------------------------------------------------

def make_counting_model(path, vocab=8, *, with_kv=False, with_conv=False,
                        external_data=False):
    """Write a tiny causal LM whose greedy next token is (last + 1) % vocab.

    logits = Embedding(input_ids) * attention_mask, where embedding row i
    is one-hot at (i + 1) % vocab. Optional cache inputs are passed
    straight through to present.* outputs. With external_data, only the
    embedding moves to the _data file; the 8-byte unsqueeze
    axes stay inline where shape inference can read them.
    """
    ids_name, mask_name = "input_ids", "attention_mask"
    emb = np.zeros((vocab, vocab), dtype=np.float32)
    for i in range(vocab):
        emb[i, (i + 1) % vocab] = 1.0

    initializers = [
        numpy_helper.from_array(emb, "embed.weight"),
        numpy_helper.from_array(np.array([-1], dtype=np.int64), "unsqueeze_axes"),
    ]
    nodes = [
        helper.make_node("Gather", ["embed.weight", ids_name], ["gathered"]),
        helper.make_node("Cast", [mask_name], ["mask_f"], to=TensorProto.FLOAT),
        helper.make_node("Unsqueeze", ["mask_f", "unsqueeze_axes"], ["mask_3d"]),
        helper.make_node("Mul", ["gathered", "mask_3d"], ["logits"]),
    ]
    inputs = [
        helper.make_tensor_value_info(ids_name, TensorProto.INT64, ["batch", "seq"]),
        helper.make_tensor_value_info(mask_name, TensorProto.INT64, ["batch", "seq"]),
    ]
    outputs = [
        helper.make_tensor_value_info("logits", TensorProto.FLOAT, ["batch", "seq", vocab]),
    ]

    if with_kv:
        for part in ("key", "value"):
            name = f"past_key_values.0.{part}"
            inputs.append(helper.make_tensor_value_info(
                name, TensorProto.FLOAT, ["batch", 2, "past_seq", 4]))
            nodes.append(helper.make_node("Identity", [name], [f"present.0.{part}"]))
            outputs.append(helper.make_tensor_value_info(
                f"present.0.{part}", TensorProto.FLOAT, ["batch", 2, "past_seq", 4]))
    if with_conv:
        inputs.append(helper.make_tensor_value_info(
            "past_conv.1", TensorProto.FLOAT, ["batch", 4, 3]))
        nodes.append(helper.make_node("Identity", ["past_conv.1"], ["present_conv.1"]))
        outputs.append(helper.make_tensor_value_info(
            "present_conv.1", TensorProto.FLOAT, ["batch", 4, 3]))

    graph = helper.make_graph(nodes, "counting_lm", inputs, outputs, initializers)
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8

    path = str(path)
    if external_data:
        onnx.save_model(model, path, save_as_external_data=True,
                        all_tensors_to_one_file=True,
                        location=Path(path).name + "_data",
                        size_threshold=64)
    else:
        onnx.save(model, path)
    return path


def make_named_io_model(path, input_names, output_names):
    """Graph with arbitrary input/output names: each output = Identity(first input)."""
    inputs = [helper.make_tensor_value_info(n, TensorProto.FLOAT, ["n"])
              for n in input_names]
    outputs = [helper.make_tensor_value_info(n, TensorProto.FLOAT, ["n"])
               for n in output_names]
    nodes = [helper.make_node("Identity", [input_names[0]], [n]) for n in output_names]
    graph = helper.make_graph(nodes, "named_io", inputs, outputs)
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    onnx.save(model, str(path))
    return str(path)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def char_tokenizer():
    return CharTokenizer()


@pytest.fixture
def counting_model(tmp_path):
    return make_counting_model(tmp_path / "model.onnx")


@pytest.fixture
def cache_slot():
    return SlotInfo("past_key_values.0.key", ("batch", 2, "past_seq", 4), "float32")
