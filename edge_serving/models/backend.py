"""
Model backend interface

A backend wraps one loaded model plus its evaluation context:
- load(path, params) materializes the model
- tokenize / token_to_text convert between text and vocabulary ids
- evaluate(tokens, position) feeds tokens into the context
- logits() returns the next-token scores after the last evaluate()

Backends are NOT safe to share between concurrent generations; the model
cache serializes access per handle.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

import numpy as np


class ModelBackend(ABC):
    """Interface consumed by the inference engine"""

    name = "abstract"

    @abstractmethod
    def load(self, path: str, params: Dict[str, Any]) -> None:
        """
        Load model weights and create an evaluation context

        Raises:
            Exception: Any failure; callers wrap it in ModelLoadError
        """

    @abstractmethod
    def tokenize(self, text: str, add_bos: bool = True) -> List[int]:
        """Encode text to token ids"""

    @abstractmethod
    def evaluate(self, tokens: Sequence[int], position: int) -> None:
        """
        Evaluate tokens starting at context position

        Raises:
            Exception: Backend failure; callers wrap it in EvaluationError
        """

    @abstractmethod
    def logits(self) -> np.ndarray:
        """Next-token logits, shape (vocab_size,)"""

    @abstractmethod
    def token_to_text(self, token: int) -> str:
        """Text fragment for a single token"""

    @property
    @abstractmethod
    def eos_token(self) -> int:
        """End-of-sequence token id"""

    @property
    @abstractmethod
    def vocab_size(self) -> int:
        ...

    @property
    def context_length(self) -> int:
        return 0

    def detokenize(self, tokens: Sequence[int]) -> str:
        return "".join(self.token_to_text(token) for token in tokens)

    def free(self) -> None:
        """Release model and context memory"""


BackendFactory = Callable[[], ModelBackend]


def _llama_cpp_factory() -> ModelBackend:
    from edge_serving.models.llama_cpp_backend import LlamaCppBackend

    return LlamaCppBackend()


def _mlx_factory() -> ModelBackend:
    from edge_serving.models.mlx_backend import MlxBackend

    return MlxBackend()


BACKEND_FACTORIES: Dict[str, BackendFactory] = {
    "llama_cpp": _llama_cpp_factory,
    "mlx": _mlx_factory,
}


def detect_backend_name(path: str) -> str:
    """
    Pick a backend from the model location

    GGUF files go to llama.cpp; directories (safetensors + config.json) to MLX.
    """
    candidate = Path(path)
    if candidate.is_dir():
        return "mlx"
    return "llama_cpp"


def create_backend(name: str, path: str) -> ModelBackend:
    """
    Instantiate a backend by name ("auto" detects from path)

    Raises:
        ValueError: If name is unknown
    """
    if name == "auto":
        name = detect_backend_name(path)
    try:
        factory = BACKEND_FACTORIES[name]
    except KeyError:
        raise ValueError(f"Unknown backend: {name}") from None
    return factory()
