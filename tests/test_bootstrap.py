"""Locating and loading the native ONNX Runtime library."""

import pytest

from ortgen import bootstrap
from ortgen.errors import RuntimeBootstrapError


@pytest.fixture(autouse=True)
def _fresh_bootstrap(monkeypatch):
    bootstrap.reset()
    monkeypatch.delenv(bootstrap.ENV_VAR, raising=False)
    yield
    bootstrap.reset()


class TestFindLibrary:

    def test_env_override(self, monkeypatch, tmp_path):
        lib = tmp_path / "libonnxruntime.so.1.20"
        lib.write_bytes(b"")
        monkeypatch.setenv(bootstrap.ENV_VAR, str(lib))
        assert bootstrap.find_library() == str(lib)

    def test_env_pointing_nowhere_falls_back(self, monkeypatch, tmp_path):
        capi = tmp_path / "capi"
        capi.mkdir()
        (capi / "libonnxruntime.so.1.20").write_bytes(b"")
        monkeypatch.setenv(bootstrap.ENV_VAR, str(tmp_path / "missing.so"))
        monkeypatch.setattr(bootstrap, "_package_capi_dir", lambda: capi)
        assert bootstrap.find_library() == str(capi / "libonnxruntime.so.1.20")

    def test_prefers_standalone_library(self, monkeypatch, tmp_path):
        (tmp_path / "onnxruntime_pybind11_state.so").write_bytes(b"")
        (tmp_path / "libonnxruntime.so.1.20").write_bytes(b"")
        monkeypatch.setattr(bootstrap, "_package_capi_dir", lambda: tmp_path)
        assert bootstrap.find_library().endswith("libonnxruntime.so.1.20")

    def test_nothing_found(self, monkeypatch):
        monkeypatch.setattr(bootstrap, "_package_capi_dir", lambda: None)
        assert bootstrap.find_library() is None


class TestEnsure:

    def test_not_found(self, monkeypatch):
        monkeypatch.setattr(bootstrap, "_package_capi_dir", lambda: None)
        with pytest.raises(RuntimeBootstrapError, match=bootstrap.ENV_VAR):
            bootstrap.ensure()

    def test_unloadable_library(self, monkeypatch, tmp_path):
        bogus = tmp_path / "libonnxruntime.so"
        bogus.write_bytes(b"not a shared object")
        monkeypatch.setenv(bootstrap.ENV_VAR, str(bogus))
        with pytest.raises(RuntimeBootstrapError, match="Cannot load") as info:
            bootstrap.ensure()
        assert isinstance(info.value.__cause__, OSError)

    def test_cached_after_success(self, monkeypatch):
        pytest.importorskip("onnxruntime")
        first = bootstrap.ensure()
        monkeypatch.setattr(bootstrap, "find_library", lambda: None)
        assert bootstrap.ensure() == first
