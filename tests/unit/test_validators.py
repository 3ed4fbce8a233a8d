"""
Unit tests for request validation
"""

import pytest

from edge_serving.config_loader import Config
from edge_serving.schemas import ChatMessage, InferenceRequest
from edge_serving.validators import (
    validate_config_overrides,
    validate_model_ref,
    validate_request,
    validate_request_id,
    validate_text_input,
)


@pytest.fixture
def config():
    return Config({"limits": {"max_prompt_chars": 100, "max_predict_tokens": 64, "max_temperature": 1.5}})


class TestModelRef:
    @pytest.mark.parametrize("ref", [
        "models/tiny.gguf",
        "/opt/models/tiny.gguf",
        "QmXT2xkFnG7FP7NTfmDfDFcQLSfCJ3xfPnjCg76gFnq1Hr",
        "hf://unsloth/gemma-3-270m-it-GGUF/gemma-3-270m-it-Q4_0.gguf",
    ])
    def test_valid(self, ref):
        assert validate_model_ref(ref) == ref

    @pytest.mark.parametrize("ref", ["", None, "../etc/passwd", "model;rm -rf", 42])
    def test_invalid(self, ref):
        with pytest.raises(ValueError):
            validate_model_ref(ref)


class TestRequestId:
    def test_valid(self):
        assert validate_request_id("local_1") == "local_1"

    @pytest.mark.parametrize("request_id", ["", None, "has space", "x" * 257, 7])
    def test_invalid(self, request_id):
        with pytest.raises(ValueError):
            validate_request_id(request_id)


class TestTextInput:
    def test_too_long(self):
        with pytest.raises(ValueError, match="too long"):
            validate_text_input("x" * 11, max_length=10)

    def test_not_a_string(self):
        with pytest.raises(ValueError, match="must be a string"):
            validate_text_input(b"bytes")


class TestConfigOverrides:
    def test_accepts_valid(self, config):
        validate_config_overrides({"n_predict": 5, "temperature": 0.7, "seed": 3}, config)

    @pytest.mark.parametrize("overrides", [
        {"n_predict": 65},
        {"max_tokens": -1},
        {"n_predict": True},
        {"temperature": 2.0},
        {"temperature": "hot"},
        {"seed": -5},
    ])
    def test_rejects(self, overrides, config):
        with pytest.raises(ValueError):
            validate_config_overrides(overrides, config)

    def test_not_a_mapping(self, config):
        with pytest.raises(ValueError, match="mapping"):
            validate_config_overrides(["n_predict"], config)


class TestRequest:
    def test_prompt_request(self, config):
        validate_request(InferenceRequest(request_id="r1", prompt="Hello"), config)

    def test_messages_request(self, config):
        request = InferenceRequest(
            request_id="r1",
            messages=[ChatMessage("system", "Be brief."), ChatMessage("user", "Hi")],
        )
        validate_request(request, config)

    def test_prompt_and_messages_exclusive(self, config):
        request = InferenceRequest(request_id="r1", prompt="Hi", messages=[ChatMessage("user", "Hi")])

        with pytest.raises(ValueError, match="mutually exclusive"):
            validate_request(request, config)

    def test_missing_input(self, config):
        with pytest.raises(ValueError, match="required"):
            validate_request(InferenceRequest(request_id="r1"), config)

    def test_blank_prompt(self, config):
        with pytest.raises(ValueError, match="empty"):
            validate_request(InferenceRequest(request_id="r1", prompt="   "), config)

    def test_prompt_over_limit(self, config):
        with pytest.raises(ValueError, match="too long"):
            validate_request(InferenceRequest(request_id="r1", prompt="x" * 101), config)

    def test_unknown_role(self, config):
        request = InferenceRequest(request_id="r1", messages=[ChatMessage("tool", "{}")])

        with pytest.raises(ValueError, match="role"):
            validate_request(request, config)

    def test_combined_messages_over_limit(self, config):
        request = InferenceRequest(
            request_id="r1",
            messages=[ChatMessage("user", "x" * 60), ChatMessage("assistant", "y" * 60)],
        )

        with pytest.raises(ValueError, match="messages too long"):
            validate_request(request, config)
