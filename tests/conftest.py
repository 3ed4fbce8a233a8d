"""
Pytest configuration for edge serving tests

Provides fixtures for a scripted backend, a model cache and a processor
wired to it (no model weights or network access required).
"""
import sys
from pathlib import Path

import pytest

# Make tests/fakes.py importable as `fakes`
sys.path.insert(0, str(Path(__file__).parent))

from fakes import ScriptedBackend, script_for  # noqa: E402

from edge_serving.config_loader import Config  # noqa: E402
from edge_serving.model_cache import ModelCache  # noqa: E402
from edge_serving.processor import RequestProcessor  # noqa: E402


@pytest.fixture
def model_file(tmp_path):
    """Placeholder GGUF file so the loader resolves a local path"""
    path = tmp_path / "tiny.gguf"
    path.write_bytes(b"GGUF")
    return path


@pytest.fixture
def base_config(tmp_path):
    return Config({
        "model": {"models_dir": str(tmp_path / "models"), "backend": "llama_cpp"},
        "inference": {"n_predict": 5, "n_ctx": 64},
        "processor": {"workers": 2, "stream_queue_size": 4},
        "telemetry": {"window_size": 50},
    })


@pytest.fixture
def make_processor(base_config, model_file):
    """
    Factory building an initialized RequestProcessor over ScriptedBackends

    Returns (processor, backends) where backends collects every backend the
    processor created.
    """
    processors = []

    def factory(script=None, config=None, coordinator=None, initialize=True, **backend_kwargs):
        backends = []

        def backend_factory(name, path):
            backend = ScriptedBackend(script=script, **backend_kwargs)
            backends.append(backend)
            return backend

        processor = RequestProcessor(
            config or base_config,
            coordinator=coordinator,
            fetcher=None,
            backend_factory=backend_factory,
        )
        processors.append(processor)
        if initialize:
            assert processor.initialize(str(model_file))
        return processor, backends

    yield factory

    for processor in processors:
        processor.shutdown()


@pytest.fixture
def hello_script():
    """Backend emits 'Hi' then EOS as the 3rd generated token"""
    return script_for("Hi")


@pytest.fixture
def cache_factory():
    caches = []

    def factory(loader_fn, max_cached_models=3):
        cache = ModelCache(loader_fn, max_cached_models=max_cached_models)
        caches.append(cache)
        return cache

    yield factory

    for cache in caches:
        cache.clear()
