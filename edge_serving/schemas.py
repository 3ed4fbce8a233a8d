"""
Request and result types shared by the engine, coordinator and processor
"""

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from edge_serving.errors import EdgeRuntimeError


class StopReason(Enum):
    """Why a generation session ended"""

    EOS = "eos"
    MAX_TOKENS = "max_tokens"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass
class ChatMessage:
    role: str
    content: str


@dataclass
class InferenceRequest:
    """
    A single inference request

    Exactly one of prompt or messages is set. config_overrides is applied on
    top of the processor defaults to build the request's InferenceConfig.
    """

    request_id: str
    prompt: Optional[str] = None
    messages: Optional[List[ChatMessage]] = None
    config_overrides: Dict[str, Any] = field(default_factory=dict)
    model_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "InferenceRequest":
        """Build a request from a plain mapping (e.g. a decoded JSON body)"""
        messages = payload.get("messages")
        if messages is not None:
            messages = [
                m if isinstance(m, ChatMessage) else ChatMessage(role=m.get("role", ""), content=m.get("content", ""))
                for m in messages
            ]
        overrides = payload.get("config_overrides") or payload.get("config") or {}
        return cls(
            request_id=payload.get("request_id") or payload.get("id"),
            prompt=payload.get("prompt"),
            messages=messages,
            config_overrides=dict(overrides),
            model_id=payload.get("model_id") or payload.get("model"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "request_id": self.request_id,
            "config_overrides": dict(self.config_overrides),
        }
        if self.prompt is not None:
            payload["prompt"] = self.prompt
        if self.messages is not None:
            payload["messages"] = [{"role": m.role, "content": m.content} for m in self.messages]
        if self.model_id is not None:
            payload["model_id"] = self.model_id
        return payload


@dataclass
class TokenUsage:
    """Token accounting for one generation"""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    elapsed_ms: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    @property
    def tokens_per_second(self) -> float:
        if self.elapsed_ms <= 0:
            return 0.0
        return self.completion_tokens / (self.elapsed_ms / 1000.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "elapsed_ms": self.elapsed_ms,
            "tokens_per_second": self.tokens_per_second,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "TokenUsage":
        return cls(
            prompt_tokens=int(payload.get("prompt_tokens", 0)),
            completion_tokens=int(payload.get("completion_tokens", 0)),
            elapsed_ms=float(payload.get("elapsed_ms", 0.0)),
        )


@dataclass
class GenerationResult:
    """
    Outcome of one generation session

    Failures are carried in error instead of being raised, so partial output
    survives an evaluation failure.
    """

    tokens: List[int]
    stop_reason: StopReason
    usage: TokenUsage
    error: Optional[EdgeRuntimeError] = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def incomplete(self) -> bool:
        return self.stop_reason in (StopReason.CANCELLED, StopReason.ERROR)


class CancelToken:
    """Cooperative cancellation flag checked once per generation iteration"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
