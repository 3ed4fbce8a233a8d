"""GGUF edge inference serving runtime."""

__version__ = "0.1.0"

from edge_serving.config_loader import Config, InferenceConfig, load_config
from edge_serving.edge_coordinator import DeviceCapabilities, DeviceDescriptor, EdgeCoordinator
from edge_serving.model_cache import ModelCache, ModelHandle
from edge_serving.processor import RequestProcessor
from edge_serving.schemas import CancelToken, ChatMessage, GenerationResult, InferenceRequest, StopReason, TokenUsage

__all__ = [
    "__version__",
    "CancelToken",
    "ChatMessage",
    "Config",
    "DeviceCapabilities",
    "DeviceDescriptor",
    "EdgeCoordinator",
    "GenerationResult",
    "InferenceConfig",
    "InferenceRequest",
    "ModelCache",
    "ModelHandle",
    "RequestProcessor",
    "StopReason",
    "TokenUsage",
    "load_config",
]
