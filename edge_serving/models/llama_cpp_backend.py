"""
GGUF model backend over llama-cpp-python

Responsibilities:
- Load GGUF weights and create a llama.cpp context
- Tokenize / detokenize with the model vocabulary
- Evaluate token batches at an explicit context position
- Expose the last-position logits as a numpy vector
"""

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from edge_serving.models.backend import ModelBackend

logger = logging.getLogger(__name__)

# llama-cpp-python is an optional extra (native build); record why it is missing
LLAMA_CPP_AVAILABLE = False
LLAMA_CPP_IMPORT_ERROR: Optional[str] = None

try:
    import llama_cpp
    from llama_cpp import Llama

    LLAMA_CPP_AVAILABLE = True
except ImportError as exc:
    LLAMA_CPP_IMPORT_ERROR = f"llama-cpp-python import failed: {exc}"


class LlamaCppBackend(ModelBackend):
    """llama.cpp backend for GGUF models"""

    name = "llama_cpp"

    def __init__(self):
        self._llm: Optional["Llama"] = None
        self._n_vocab = 0

    def load(self, path: str, params: Dict[str, Any]) -> None:
        if not LLAMA_CPP_AVAILABLE:
            raise RuntimeError(LLAMA_CPP_IMPORT_ERROR or "llama-cpp-python not installed")

        logger.info(f"Loading GGUF: {path}")
        self._llm = Llama(
            model_path=str(path),
            n_ctx=params.get("n_ctx", 4096),
            n_batch=params.get("n_batch", 512),
            n_threads=params.get("n_threads"),
            n_gpu_layers=params.get("n_gpu_layers", 0),
            use_mmap=params.get("use_mmap", True),
            use_mlock=params.get("use_mlock", False),
            verbose=False,
        )
        self._n_vocab = self._llm.n_vocab()
        logger.info(
            f"GGUF loaded: vocab={self._n_vocab}, n_ctx={self._llm.n_ctx()}, "
            f"threads={params.get('n_threads')}, gpu_layers={params.get('n_gpu_layers')}"
        )

    def _require(self) -> "Llama":
        if self._llm is None:
            raise RuntimeError("Model not loaded")
        return self._llm

    def tokenize(self, text: str, add_bos: bool = True) -> List[int]:
        return list(self._require().tokenize(text.encode("utf-8"), add_bos=add_bos, special=False))

    def evaluate(self, tokens: Sequence[int], position: int) -> None:
        llm = self._require()
        # Llama.eval() continues from n_tokens and drops any KV cells past it
        llm.n_tokens = position
        llm.eval(list(tokens))

    def logits(self) -> np.ndarray:
        llm = self._require()
        pointer = llama_cpp.llama_get_logits(llm.ctx)
        return np.ctypeslib.as_array(pointer, shape=(self._n_vocab,)).copy()

    def token_to_text(self, token: int) -> str:
        return self._require().detokenize([token]).decode("utf-8", errors="ignore")

    def detokenize(self, tokens: Sequence[int]) -> str:
        return self._require().detokenize(list(tokens)).decode("utf-8", errors="replace")

    @property
    def eos_token(self) -> int:
        return self._require().token_eos()

    @property
    def vocab_size(self) -> int:
        return self._n_vocab

    @property
    def context_length(self) -> int:
        return self._llm.n_ctx() if self._llm is not None else 0

    def free(self) -> None:
        if self._llm is None:
            return
        close = getattr(self._llm, "close", None)
        if close is not None:
            close()
        self._llm = None
