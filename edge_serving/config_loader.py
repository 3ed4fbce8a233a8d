"""
Python Configuration Loader

Loads runtime configuration from YAML files and produces immutable
per-request inference snapshots.
"""

import logging
import os
from dataclasses import asdict, dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "EDGE_SERVING_ENV"
SAMPLERS = ("greedy", "stochastic")

# Accepted spellings for per-request overrides
_OVERRIDE_ALIASES = {
    "max_tokens": "n_predict",
    "max_new_tokens": "n_predict",
    "threads": "n_threads",
    "context_size": "n_ctx",
    "batch_size": "n_batch",
    "repetition_penalty": "repeat_penalty",
}


@dataclass(frozen=True)
class InferenceConfig:
    """
    Immutable snapshot of generation settings

    Captured once per request so concurrent requests with different
    settings never interfere.
    """

    n_threads: int = 4
    n_ctx: int = 4096
    n_batch: int = 512
    n_gpu_layers: int = 35
    n_predict: int = 256
    temperature: float = 0.8
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.1
    use_mmap: bool = True
    use_mlock: bool = False
    sampler: str = "greedy"
    seed: Optional[int] = None

    def validate(self, max_temperature: float = 2.0, max_predict_tokens: Optional[int] = None) -> None:
        """
        Validate snapshot values

        Raises:
            ValueError: If any value is out of range
        """
        if self.n_threads < 1:
            raise ValueError(f"n_threads must be >= 1, got {self.n_threads}")
        if self.n_ctx < 1:
            raise ValueError(f"n_ctx must be >= 1, got {self.n_ctx}")
        if self.n_batch < 1:
            raise ValueError(f"n_batch must be >= 1, got {self.n_batch}")
        if self.n_predict < 0:
            raise ValueError(f"n_predict must be >= 0, got {self.n_predict}")
        if max_predict_tokens is not None and self.n_predict > max_predict_tokens:
            raise ValueError(f"n_predict must be <= {max_predict_tokens}, got {self.n_predict}")
        if self.temperature < 0 or self.temperature > max_temperature:
            raise ValueError(f"temperature must be in range [0, {max_temperature}], got {self.temperature}")
        if self.top_p <= 0 or self.top_p > 1.0:
            raise ValueError(f"top_p must be in range (0, 1], got {self.top_p}")
        if self.top_k < 0:
            raise ValueError(f"top_k must be >= 0, got {self.top_k}")
        if self.repeat_penalty <= 0:
            raise ValueError(f"repeat_penalty must be > 0, got {self.repeat_penalty}")
        if self.sampler not in SAMPLERS:
            raise ValueError(f"sampler must be one of {SAMPLERS}, got {self.sampler!r}")

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "InferenceConfig":
        """
        Return a new snapshot with per-request overrides applied

        Args:
            overrides: Mapping of field name (or accepted alias) to value

        Returns:
            New InferenceConfig; self is never modified

        Raises:
            ValueError: If an override key is unknown or a value has the wrong type
        """
        if not overrides:
            return self

        known = {f.name: f for f in fields(self)}
        changes: Dict[str, Any] = {}
        for key, value in overrides.items():
            name = _OVERRIDE_ALIASES.get(key, key)
            if name not in known:
                raise ValueError(f"Unknown config override: {key}")
            if value is None:
                continue
            changes[name] = _coerce(name, value, getattr(self, name))
        return replace(self, **changes)

    def load_params(self) -> Dict[str, Any]:
        """Subset of settings consumed by backend load()"""
        return {
            "n_threads": self.n_threads,
            "n_ctx": self.n_ctx,
            "n_batch": self.n_batch,
            "n_gpu_layers": self.n_gpu_layers,
            "use_mmap": self.use_mmap,
            "use_mlock": self.use_mlock,
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce(name: str, value: Any, current: Any) -> Any:
    """Coerce an override value to the type of the field it replaces"""
    if name == "seed":
        return int(value)
    if isinstance(current, bool):
        if not isinstance(value, bool):
            raise ValueError(f"{name} must be a boolean, got {type(value).__name__}")
        return value
    if isinstance(current, int):
        if isinstance(value, bool) or not isinstance(value, (int, float)) or int(value) != value:
            raise ValueError(f"{name} must be an integer, got {value!r}")
        return int(value)
    if isinstance(current, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"{name} must be a number, got {value!r}")
        return float(value)
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string, got {type(value).__name__}")
    return value


class Config:
    """Runtime configuration loaded from YAML"""

    def __init__(self, config_dict: Dict[str, Any]):
        # Model
        model = config_dict.get("model", {})
        self.default_model = model.get("default")
        self.models_dir = model.get("models_dir", "models")
        self.backend = model.get("backend", "auto")
        self.trusted_model_directories = model.get("trusted_model_directories")
        self.max_cached_models = model.get("max_cached_models", 3)

        # Inference defaults
        inference = config_dict.get("inference", {})
        defaults = InferenceConfig()
        self.inference = {
            f.name: inference.get(f.name, getattr(defaults, f.name)) for f in fields(InferenceConfig)
        }

        # Content store (IPFS/Filebase gateway)
        content = config_dict.get("content", {})
        self.gateway_url = content.get("gateway_url", "https://ipfs.filebase.io/ipfs/")
        self.download_timeout_s = content.get("download_timeout_s", 300.0)
        self.download_chunk_size = content.get("chunk_size", 8192)

        # Edge coordinator
        coordinator = config_dict.get("coordinator", {})
        self.coordinator_enabled = coordinator.get("enabled", False)
        self.heartbeat_timeout_s = coordinator.get("heartbeat_timeout_s", 30.0)
        self.monitor_interval_s = coordinator.get("monitor_interval_s", 10.0)
        self.max_reroutes = coordinator.get("max_reroutes", 1)
        self.active_probe = coordinator.get("active_probe", True)
        self.register_local_device = coordinator.get("register_local_device", True)
        self.devices = coordinator.get("devices", [])

        # Request processor
        processor = config_dict.get("processor", {})
        self.workers = processor.get("workers", 2)
        self.stream_queue_size = processor.get("stream_queue_size", 100)

        # Security limits
        limits = config_dict.get("limits", {})
        self.max_prompt_chars = limits.get("max_prompt_chars", 1_048_576)
        self.max_predict_tokens = limits.get("max_predict_tokens", 4096)
        self.max_temperature = limits.get("max_temperature", 2.0)

        # Telemetry
        telemetry = config_dict.get("telemetry", {})
        self.telemetry_window_size = telemetry.get("window_size", 1000)

        # Development
        dev = config_dict.get("development", {})
        self.verbose = dev.get("verbose", False)
        self.debug = dev.get("debug", False)

    def inference_defaults(self) -> InferenceConfig:
        """Build the default per-request snapshot"""
        return InferenceConfig().with_overrides(self.inference)

    def validate(self) -> None:
        """
        Validate configuration values

        Raises:
            ValueError: If any configuration value is invalid
        """
        if self.workers < 1:
            raise ValueError(f"workers must be >= 1, got {self.workers}")

        if self.stream_queue_size < 1:
            raise ValueError(f"stream_queue_size must be >= 1, got {self.stream_queue_size}")

        if self.max_cached_models < 1:
            raise ValueError(f"max_cached_models must be >= 1, got {self.max_cached_models}")

        if self.max_temperature < 0 or self.max_temperature > 10.0:
            raise ValueError(f"max_temperature must be in range [0, 10], got {self.max_temperature}")

        if self.heartbeat_timeout_s <= 0:
            raise ValueError(f"heartbeat_timeout_s must be > 0, got {self.heartbeat_timeout_s}")

        if self.monitor_interval_s <= 0:
            raise ValueError(f"monitor_interval_s must be > 0, got {self.monitor_interval_s}")

        if self.max_reroutes < 0:
            raise ValueError(f"max_reroutes must be >= 0, got {self.max_reroutes}")

        if self.telemetry_window_size < 1:
            raise ValueError(f"telemetry window_size must be >= 1, got {self.telemetry_window_size}")

        if self.backend not in ("auto", "llama_cpp", "mlx"):
            raise ValueError(f"backend must be 'auto', 'llama_cpp' or 'mlx', got {self.backend!r}")

        self.inference_defaults().validate(self.max_temperature, self.max_predict_tokens)


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries"""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def find_config_file() -> Optional[Path]:
    """Search upward from the package for config/runtime.yaml"""
    current = Path(__file__).parent
    for _ in range(5):  # Search up to 5 levels
        candidate = current / "config" / "runtime.yaml"
        if candidate.exists():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent
    return None


def load_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """
    Load configuration from YAML file

    Args:
        config_path: Path to config file (defaults to the nearest config/runtime.yaml)
        environment: Environment name (production/development/test)

    Returns:
        Validated Config instance

    Raises:
        FileNotFoundError: If an explicit config file is not found
        ValueError: If the config file is invalid
    """
    if config_path is None:
        found = find_config_file()
        if found is None:
            logger.warning("No config/runtime.yaml found, using built-in defaults")
            config = Config({})
            config.validate()
            return config
        config_path = str(found)

    try:
        with open(config_path, "r") as f:
            base_config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as exc:
        raise ValueError(f"Failed to parse YAML config file '{config_path}': {exc}") from exc

    env = environment or os.getenv(CONFIG_ENV_VAR) or "development"

    # Apply environment-specific overrides
    final_config = base_config
    if "environments" in base_config and env in base_config["environments"]:
        final_config = deep_merge(base_config, base_config["environments"][env])

    final_config.pop("environments", None)

    config = Config(final_config)
    config.validate()
    logger.debug(f"Loaded configuration from {config_path} (environment={env})")
    return config
