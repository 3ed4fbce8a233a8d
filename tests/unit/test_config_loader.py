"""
Unit tests for configuration loading and per-request snapshots
"""

import pytest

from edge_serving.config_loader import Config, InferenceConfig, deep_merge, load_config

RUNTIME_YAML = """
model:
  default: models/tiny.gguf
  max_cached_models: 2
inference:
  n_ctx: 2048
  n_predict: 128
processor:
  workers: 2
environments:
  production:
    processor:
      workers: 8
  test:
    inference:
      n_predict: 16
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "runtime.yaml"
    path.write_text(RUNTIME_YAML)
    return path


class TestLoadConfig:
    """Test YAML loading and environment overrides"""

    def test_base_values(self, config_file):
        config = load_config(str(config_file), environment="development")

        assert config.default_model == "models/tiny.gguf"
        assert config.max_cached_models == 2
        assert config.workers == 2
        assert config.inference_defaults().n_ctx == 2048
        assert config.inference_defaults().n_predict == 128

    def test_environment_override(self, config_file):
        config = load_config(str(config_file), environment="production")

        assert config.workers == 8
        assert config.inference_defaults().n_ctx == 2048

    def test_environment_from_env_var(self, config_file, monkeypatch):
        monkeypatch.setenv("EDGE_SERVING_ENV", "test")

        config = load_config(str(config_file))

        assert config.inference_defaults().n_predict == 16

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "absent.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("model: [unclosed")

        with pytest.raises(ValueError, match="Failed to parse YAML"):
            load_config(str(path))

    def test_invalid_values_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("processor:\n  workers: 0\n")

        with pytest.raises(ValueError, match="workers"):
            load_config(str(path))

    def test_unknown_backend_rejected(self):
        with pytest.raises(ValueError, match="backend"):
            Config({"model": {"backend": "onnx"}}).validate()

    def test_builtin_defaults(self):
        config = Config({})
        config.validate()

        assert config.coordinator_enabled is False
        assert config.max_reroutes == 1
        assert config.heartbeat_timeout_s == 30.0


class TestDeepMerge:
    def test_nested_merge(self):
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        merged = deep_merge(base, {"a": {"y": 3}, "c": 4})

        assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
        assert base["a"]["y"] == 2


class TestInferenceConfig:
    """Test immutable snapshots and overrides"""

    def test_overrides_return_new_snapshot(self):
        base = InferenceConfig(n_predict=256)

        derived = base.with_overrides({"n_predict": 5, "temperature": 0.2})

        assert derived.n_predict == 5
        assert derived.temperature == 0.2
        assert base.n_predict == 256

    def test_aliases(self):
        derived = InferenceConfig().with_overrides({"max_tokens": 7, "context_size": 512})

        assert derived.n_predict == 7
        assert derived.n_ctx == 512

    def test_unknown_override(self):
        with pytest.raises(ValueError, match="Unknown config override"):
            InferenceConfig().with_overrides({"beam_width": 4})

    def test_wrong_type(self):
        with pytest.raises(ValueError, match="integer"):
            InferenceConfig().with_overrides({"n_predict": "many"})

        with pytest.raises(ValueError, match="boolean"):
            InferenceConfig().with_overrides({"use_mmap": 1})

    def test_none_values_ignored(self):
        assert InferenceConfig().with_overrides({"seed": None}) == InferenceConfig()

    def test_frozen(self):
        config = InferenceConfig()
        with pytest.raises(AttributeError):
            config.n_predict = 1

    @pytest.mark.parametrize("field,value", [
        ("n_threads", 0),
        ("n_predict", -1),
        ("temperature", 3.0),
        ("top_p", 0.0),
        ("sampler", "beam"),
    ])
    def test_validate_rejects(self, field, value):
        with pytest.raises(ValueError):
            InferenceConfig(**{field: value}).validate()

    def test_validate_predict_limit(self):
        with pytest.raises(ValueError, match="n_predict must be <="):
            InferenceConfig(n_predict=10).validate(max_predict_tokens=5)

    def test_load_params(self):
        params = InferenceConfig(n_ctx=1024, n_gpu_layers=0).load_params()

        assert params["n_ctx"] == 1024
        assert params["n_gpu_layers"] == 0
        assert "temperature" not in params
