"""
Custom exception types for the edge serving runtime

Provides typed exceptions for consistent error-envelope mapping.
All domain-specific errors should inherit from these base types.
"""

from typing import Optional


class EdgeRuntimeError(Exception):
    """Base exception for all edge serving runtime errors"""

    def __init__(self, message: str, model_id: Optional[str] = None):
        self.message = message
        self.model_id = model_id
        super().__init__(message)


class InitializationError(EdgeRuntimeError):
    """Raised when the runtime cannot start serving requests"""

    def __init__(self, reason: str, model_id: Optional[str] = None):
        super().__init__(f"Initialization failed: {reason}", model_id)
        self.reason = reason


class ModelNotLoaded(EdgeRuntimeError):
    """Raised when attempting to use a model that hasn't been loaded"""

    def __init__(self, model_id: str):
        super().__init__(f"Model not loaded: {model_id}", model_id)


class ModelLoadError(EdgeRuntimeError):
    """Raised when model loading fails"""

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Failed to load model {model_id}: {reason}", model_id)
        self.reason = reason


class TokenizationError(EdgeRuntimeError):
    """Raised when tokenization/detokenization fails"""

    def __init__(self, model_id: str, reason: str):
        super().__init__(f"Tokenizer error for {model_id}: {reason}", model_id)
        self.reason = reason


class EvaluationError(EdgeRuntimeError):
    """
    Raised when a backend evaluation call fails

    context_corrupted marks failures after which the model context can no
    longer be trusted; the handle is then evicted and reloaded on next use.
    """

    def __init__(self, model_id: str, reason: str, context_corrupted: bool = False):
        super().__init__(f"Evaluation failed for {model_id}: {reason}", model_id)
        self.reason = reason
        self.context_corrupted = context_corrupted


class ContentFetchError(EdgeRuntimeError):
    """Raised when a model file cannot be fetched from the content store"""

    def __init__(self, content_hash: str, reason: str):
        super().__init__(f"Failed to fetch {content_hash}: {reason}", content_hash)
        self.content_hash = content_hash
        self.reason = reason


class DeviceUnavailableError(EdgeRuntimeError):
    """Raised when a selected device fails or becomes unreachable"""

    def __init__(self, device_id: str, reason: str, model_id: Optional[str] = None):
        super().__init__(f"Device {device_id} unavailable: {reason}", model_id)
        self.device_id = device_id
        self.reason = reason


class NoAvailableDeviceError(EdgeRuntimeError):
    """Raised when no online device can serve a model"""

    def __init__(self, model_id: str, reason: str = "no online device"):
        super().__init__(f"No available device for {model_id}: {reason}", model_id)
        self.reason = reason


# Error code mapping for response envelopes
# Validation errors (ValueError) are reported as -32602
ERROR_CODE_MAP = {
    ModelLoadError: -32001,
    EvaluationError: -32002,
    TokenizationError: -32003,
    ContentFetchError: -32004,
    ModelNotLoaded: -32005,
    DeviceUnavailableError: -32006,
    NoAvailableDeviceError: -32007,
    InitializationError: -32008,
    EdgeRuntimeError: -32099,  # Generic runtime error
}

INVALID_PARAMS_CODE = -32602
INTERNAL_ERROR_CODE = -32099
