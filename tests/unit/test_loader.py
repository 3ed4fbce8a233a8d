"""
Unit tests for model path resolution and backend loading
"""

from pathlib import Path

import pytest

from fakes import ScriptedBackend

from edge_serving.content_fetcher import ContentFetcher
from edge_serving.errors import ContentFetchError, ModelLoadError
from edge_serving.models.backend import create_backend, detect_backend_name
from edge_serving.models.loader import load_model, resolve_model_path, unload_model

CID = "QmXT2xkFnG7FP7NTfmDfDFcQLSfCJ3xfPnjCg76gFnq1Hr"


class StubFetcher(ContentFetcher):
    def __init__(self, path=None, error=None):
        self.path = path
        self.error = error
        self.fetched = []

    def fetch(self, content_hash):
        self.fetched.append(content_hash)
        if self.error is not None:
            raise self.error
        return self.path


class TestResolveModelPath:
    def test_existing_local_file(self, model_file):
        assert resolve_model_path(str(model_file)) == model_file.resolve()

    def test_missing_local_file(self, tmp_path):
        with pytest.raises(ModelLoadError, match="Model path not found"):
            resolve_model_path(str(tmp_path / "absent.gguf"))

    def test_trusted_directory_enforced(self, model_file, tmp_path):
        elsewhere = tmp_path / "trusted"
        elsewhere.mkdir()

        with pytest.raises(ModelLoadError, match="trusted"):
            resolve_model_path(str(model_file), trusted_dirs=[str(elsewhere)])

        assert resolve_model_path(str(model_file), trusted_dirs=[str(tmp_path)]) == model_file.resolve()

    def test_content_hash_fetched(self, model_file):
        fetcher = StubFetcher(path=model_file)

        assert resolve_model_path(CID, fetcher) == model_file
        assert fetcher.fetched == [CID]

    def test_content_hash_without_fetcher(self):
        with pytest.raises(ModelLoadError, match="no content fetcher"):
            resolve_model_path(CID)

    def test_fetch_failure_becomes_load_error(self):
        fetcher = StubFetcher(error=ContentFetchError(CID, "gateway returned 404"))

        with pytest.raises(ModelLoadError, match="404"):
            resolve_model_path(CID, fetcher)


class TestLoadModel:
    def test_metadata(self, model_file):
        backends = []

        def factory(name, path):
            backends.append((name, path))
            return ScriptedBackend(n_ctx=128)

        loaded = load_model(str(model_file), {"n_ctx": 64}, backend_name="llama_cpp", backend_factory=factory)

        assert backends == [("llama_cpp", str(model_file.resolve()))]
        assert loaded.backend.loaded
        assert loaded.metadata["backend"] == "llama_cpp"
        assert loaded.metadata["context_length"] == 128
        assert loaded.metadata["path"] == str(model_file.resolve())
        assert loaded.metadata["load_time_s"] >= 0

    def test_backend_failure_frees_and_wraps(self, model_file):
        backend = ScriptedBackend(fail_load=True)

        with pytest.raises(ModelLoadError, match="Backend failure"):
            load_model(str(model_file), {}, backend_name="llama_cpp", backend_factory=lambda name, path: backend)

        assert backend.freed

    def test_auto_backend_detection(self, model_file, tmp_path):
        assert detect_backend_name(str(model_file)) == "llama_cpp"
        assert detect_backend_name(str(tmp_path)) == "mlx"

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            create_backend("onnx", "model.onnx")

    def test_unload_frees(self):
        backend = ScriptedBackend()
        backend.load("x", {})

        unload_model(backend)

        assert backend.freed
        assert not backend.loaded


def test_fixture_is_local_file(model_file):
    assert isinstance(model_file, Path) and model_file.exists()
