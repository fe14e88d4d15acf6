"""Pipeline façade: stop-string policy, output shape and model loading."""

import pytest

from ortgen.config import ModelConfig
from ortgen.hub import AssetResolver
from ortgen.pipeline import (
    DEFAULT_STOP_SEQUENCES,
    TextGenerationPipeline,
    load_model,
    model_filename_for,
    parse_stop_sequences,
    pipeline,
    truncate_at_stops,
)
from ortgen.schema import IOPreset
from ortgen.session import GenerationSession
from ortgen.tokenizer import Tokenizer

from conftest import EOS, CharTokenizer, CountingGraph, make_counting_model, scripted, simple_schema


def make_pipe(text, config=None, **kwargs):
    """Pipeline whose model spells `text` after the rendered prompt, then EOS."""
    config = config or ModelConfig(model_type="llama", eos_token_id=EOS)
    tokenizer = Tokenizer(CharTokenizer())
    prompt_len = len(tokenizer.encode_chat([{"role": "user", "content": "Hi"}]).input_ids[0])
    graph = CountingGraph(scripted(text, prompt_len, then=EOS))
    session = GenerationSession(graph, simple_schema(), eos_token_id=config.eos_token_id)
    return TextGenerationPipeline(config, tokenizer, session, **kwargs), graph


MESSAGES = [{"role": "user", "content": "Hi"}]


class TestHelpers:

    @pytest.mark.parametrize("dtype,expected", [
        ("q4", "onnx/model_q4.onnx"),
        ("fp16", "onnx/model_fp16.onnx"),
        ("fp32", "onnx/model.onnx"),
        ("", "onnx/model.onnx"),
    ])
    def test_model_filename(self, dtype, expected):
        assert model_filename_for(dtype) == expected

    def test_parse_stop_sequences(self):
        assert parse_stop_sequences(None) == []
        assert parse_stop_sequences("") == []
        assert parse_stop_sequences("END") == ["END"]
        assert parse_stop_sequences(["a", "", 1, "b"]) == ["a", "b"]
        assert parse_stop_sequences(42) == []

    def test_truncate_at_stops(self):
        assert truncate_at_stops("  abc\nUser: hi", ["\nUser:"]) == "abc"
        assert truncate_at_stops("aXbYc", ["Y", "X"]) == "a"
        assert truncate_at_stops(" plain ", ["", "zz"]) == "plain"


class TestTextGenerationPipeline:

    def test_output_shape(self):
        pipe, _ = make_pipe(" Paris.")
        out = pipe(MESSAGES)
        assert out == [{"generated_text": [{"role": "assistant", "content": "Paris."}]}]

    def test_default_stops_cut_next_turn(self):
        pipe, graph = make_pipe("Sure.\nUser: more")
        out = pipe(MESSAGES)
        assert out[0]["generated_text"][0]["content"] == "Sure."
        assert graph.runs == len("Sure.\nUser:")

    def test_explicit_stop_overrides(self):
        pipe, _ = make_pipe("one|two\nUser: x")
        out = pipe(MESSAGES, stop="|")
        assert out[0]["generated_text"][0]["content"] == "one"

    def test_config_stops_before_defaults(self):
        config = ModelConfig(model_type="llama", eos_token_id=EOS, stop_strings=["<end>"])
        pipe, _ = make_pipe("a\nUser: b<end>c", config=config)
        assert pipe.resolve_stops() == ["<end>"]
        out = pipe(MESSAGES)
        assert out[0]["generated_text"][0]["content"] == "a\nUser: b"

    def test_defaults_when_nothing_configured(self):
        pipe, _ = make_pipe("x")
        assert pipe.resolve_stops() == list(DEFAULT_STOP_SEQUENCES)

    def test_default_max_new_tokens(self):
        pipe, graph = make_pipe("y" * 100)
        pipe(MESSAGES)
        assert graph.runs == 32

    def test_max_new_tokens_override(self):
        pipe, graph = make_pipe("y" * 100, default_max_new_tokens=5)
        pipe(MESSAGES, max_new_tokens=3)
        assert graph.runs == 3

    def test_streamer_receives_events(self):
        pipe, _ = make_pipe("ok")
        deltas = []
        pipe(MESSAGES, streamer=lambda ev: deltas.append(ev.delta_text))
        assert "".join(deltas) == "ok"

    def test_close(self):
        pipe, graph = make_pipe("ok")
        with pipe:
            pass
        assert graph.closed


class TestLoading:

    def test_unsupported_task(self):
        with pytest.raises(ValueError, match="Unsupported task"):
            pipeline("summarization", "org/m")

    def test_load_model_resolves_files(self, tmp_path, monkeypatch):
        """load_model fetches the dtype's graph plus any _data file and wires the schema."""
        repo = tmp_path / "org" / "m" / "onnx"
        repo.mkdir(parents=True)
        make_counting_model(repo / "model_q4.onnx")
        (repo / "model_q4.onnx_data").write_bytes(b"")

        class LocalResolver(AssetResolver):
            def fetch_optional(self, repo_id, filenames):
                return {n: self.local_path(repo_id, n) for n in filenames
                        if self.local_path(repo_id, n).is_file()}

        captured = {}

        def fake_load(cls, paths, schema, *, eos_token_id=-1, providers=None):
            captured.update(paths=paths, schema=schema, eos=eos_token_id)
            return cls(CountingGraph(), schema, eos_token_id=eos_token_id)

        monkeypatch.setattr(GenerationSession, "load", classmethod(fake_load))
        config = ModelConfig(model_type="llama", eos_token_id=2)
        session = load_model("org/m", config, resolver=LocalResolver(tmp_path))

        assert [p.name for p in captured["paths"]] == ["model_q4.onnx", "model_q4.onnx_data"]
        assert captured["eos"] == 2
        assert captured["schema"].preset is IOPreset.AUTO
        assert captured["schema"].inputs == ("input_ids", "attention_mask")
        assert isinstance(session, GenerationSession)

    def test_load_model_without_data_file(self, tmp_path, monkeypatch):
        """A single-file fp16 export loads from its own path alone."""
        repo = tmp_path / "org" / "m" / "onnx"
        repo.mkdir(parents=True)
        make_counting_model(repo / "model_fp16.onnx")

        class LocalResolver(AssetResolver):
            def fetch_optional(self, repo_id, filenames):
                return {n: self.local_path(repo_id, n) for n in filenames
                        if self.local_path(repo_id, n).is_file()}

        captured = {}

        def fake_load(cls, paths, schema, *, eos_token_id=-1, providers=None):
            captured.update(paths=paths)
            return cls(CountingGraph(), schema, eos_token_id=eos_token_id)

        monkeypatch.setattr(GenerationSession, "load", classmethod(fake_load))
        load_model("org/m", ModelConfig(model_type="llama"), dtype="fp16",
                   resolver=LocalResolver(tmp_path))
        assert [p.name for p in captured["paths"]] == ["model_fp16.onnx"]
