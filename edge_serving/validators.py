"""
Input validation for submitted inference requests

Centralized validation logic to reject invalid parameters and DoS attempts
before a model handle is acquired.
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

from edge_serving.config_loader import Config
from edge_serving.schemas import InferenceRequest

_MODEL_REF_PATTERN = re.compile(r'^[a-zA-Z0-9_\-./@:]+$')
_REQUEST_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_\-.:]+$')
CHAT_ROLES = ("system", "user", "assistant")


def validate_model_ref(model_ref: Any) -> str:
    """
    Validate a model reference (local path, content hash or hf:// reference)

    Args:
        model_ref: Model reference to validate

    Returns:
        Validated model reference string

    Raises:
        ValueError: If model_ref is invalid
    """
    if not model_ref:
        raise ValueError("model reference is required")

    if not isinstance(model_ref, str):
        raise ValueError(f"model reference must be a string, got {type(model_ref).__name__}")

    if len(model_ref) > 4096:
        raise ValueError(f"model reference too long ({len(model_ref)} chars, max 4096)")

    # Disallow '..' to prevent path traversal
    if '..' in model_ref or not _MODEL_REF_PATTERN.match(model_ref):
        raise ValueError("model reference contains invalid characters or path traversal attempts")

    return model_ref


def validate_request_id(request_id: Any) -> str:
    """
    Validate a caller-supplied request id

    Raises:
        ValueError: If request_id is missing or malformed
    """
    if not request_id:
        raise ValueError("request_id is required")
    if not isinstance(request_id, str):
        raise ValueError(f"request_id must be a string, got {type(request_id).__name__}")
    if len(request_id) > 256:
        raise ValueError(f"request_id too long ({len(request_id)} chars, max 256)")
    if not _REQUEST_ID_PATTERN.match(request_id):
        raise ValueError("request_id contains invalid characters")
    return request_id


def validate_text_input(text: Any, param_name: str = "text", max_length: int = 1_048_576) -> str:
    """
    Validate text input parameters

    Args:
        text: Text to validate
        param_name: Parameter name for error messages
        max_length: Maximum allowed length (default 1MB)

    Returns:
        Validated text string

    Raises:
        ValueError: If text is invalid
    """
    if not isinstance(text, str):
        raise ValueError(f"{param_name} must be a string, got {type(text).__name__}")

    if len(text) > max_length:
        raise ValueError(f"{param_name} too long ({len(text)} chars, max {max_length})")

    return text


def validate_config_overrides(overrides: Optional[Dict[str, Any]], config: Config) -> None:
    """
    Validate per-request generation overrides

    Type and range checks on the resulting snapshot are done by
    InferenceConfig.validate(); this rejects obviously hostile values early.

    Raises:
        ValueError: If overrides are invalid
    """
    if overrides is None:
        return
    if not isinstance(overrides, dict):
        raise ValueError(f"config overrides must be a mapping, got {type(overrides).__name__}")

    for key in ("n_predict", "max_tokens", "max_new_tokens"):
        if key in overrides:
            max_tokens = overrides[key]
            if not isinstance(max_tokens, int) or isinstance(max_tokens, bool):
                raise ValueError(f"{key} must be an integer, got {type(max_tokens).__name__}")
            if max_tokens < 0:
                raise ValueError(f"{key} must be non-negative, got {max_tokens}")
            if max_tokens > config.max_predict_tokens:
                raise ValueError(f"{key} too large ({max_tokens}, max {config.max_predict_tokens})")

    if "temperature" in overrides:
        temp = overrides["temperature"]
        if not isinstance(temp, (int, float)) or isinstance(temp, bool):
            raise ValueError(f"temperature must be numeric, got {type(temp).__name__}")
        if temp < 0:
            raise ValueError(f"temperature must be non-negative, got {temp}")
        if temp > config.max_temperature:
            raise ValueError(f"temperature too large ({temp}, max {config.max_temperature})")

    if "seed" in overrides:
        seed = overrides["seed"]
        if seed is not None:
            if not isinstance(seed, int) or isinstance(seed, bool):
                raise ValueError(f"seed must be an integer, got {type(seed).__name__}")
            if seed < 0 or seed > 2**32 - 1:
                raise ValueError(f"seed out of range (0 to {2**32 - 1})")


def validate_request(request: InferenceRequest, config: Config) -> None:
    """
    Validate a submitted request

    Raises:
        ValueError: If the request is invalid
    """
    validate_request_id(request.request_id)

    if request.prompt is not None and request.messages is not None:
        raise ValueError("prompt and messages are mutually exclusive")
    if request.prompt is None and not request.messages:
        raise ValueError("either prompt or messages is required")

    if request.prompt is not None:
        validate_text_input(request.prompt, "prompt", max_length=config.max_prompt_chars)
        if not request.prompt.strip():
            raise ValueError("prompt cannot be empty")
    else:
        if len(request.messages) > 256:
            raise ValueError(f"too many messages ({len(request.messages)}, max 256)")
        total = 0
        for idx, message in enumerate(request.messages):
            if message.role not in CHAT_ROLES:
                raise ValueError(f"messages[{idx}].role must be one of {CHAT_ROLES}, got {message.role!r}")
            validate_text_input(message.content, f"messages[{idx}].content", max_length=config.max_prompt_chars)
            total += len(message.content)
        if total > config.max_prompt_chars:
            raise ValueError(f"messages too long ({total} chars, max {config.max_prompt_chars})")

    if request.model_id is not None:
        validate_model_ref(request.model_id)

    validate_config_overrides(request.config_overrides, config)
