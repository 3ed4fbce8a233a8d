"""
Apple-silicon model backend over mlx-lm

Loads MLX-format model directories (safetensors + config.json) and drives
the model forward pass one batch at a time with a rewindable prompt cache.
"""

import platform
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from edge_serving.models.backend import ModelBackend


# MLX imports - guarded because Apple MLX aborts on unsupported hosts
def _is_supported_mlx_platform() -> bool:
    """Check whether this host can safely import MLX."""
    system = platform.system().lower()
    if system != "darwin":
        return False
    machine = platform.machine().lower()
    # MLX currently ships universal wheels; arm64 is the only native acceleration path.
    return machine in {"arm64", "x86_64"}


MLX_AVAILABLE = False
MLX_IMPORT_ERROR: Optional[str] = None

if _is_supported_mlx_platform():
    try:
        import mlx.core as mx
        from mlx_lm import load as load_text_model
        from mlx_lm.models.cache import can_trim_prompt_cache, make_prompt_cache, trim_prompt_cache

        MLX_AVAILABLE = True
    except Exception as exc:  # noqa: BLE001
        # Record reason for diagnostics while keeping runtime alive on failure.
        MLX_IMPORT_ERROR = f"mlx-lm import failed: {exc}"
else:
    MLX_IMPORT_ERROR = "MLX runtime unsupported on this platform"


class MlxBackend(ModelBackend):
    """mlx-lm backend for MLX model directories"""

    name = "mlx"

    def __init__(self):
        self.model: Any = None
        self.tokenizer: Any = None
        self._cache: Optional[List[Any]] = None
        self._offset = 0
        self._last_logits: Optional[np.ndarray] = None

    def load(self, path: str, params: Dict[str, Any]) -> None:
        if not MLX_AVAILABLE:
            raise RuntimeError(MLX_IMPORT_ERROR or "MLX not available - install mlx-lm")
        self.model, self.tokenizer = load_text_model(str(path), lazy=not params.get("use_mmap", True))
        self._cache = make_prompt_cache(self.model)
        self._offset = 0

    def _require(self) -> None:
        if self.model is None or self.tokenizer is None:
            raise RuntimeError("Model not loaded")

    def tokenize(self, text: str, add_bos: bool = True) -> List[int]:
        self._require()
        return list(self.tokenizer.encode(text, add_special_tokens=add_bos))

    def _rewind(self, position: int) -> None:
        if position == self._offset:
            return
        if position == 0:
            self._cache = make_prompt_cache(self.model)
        elif position < self._offset and can_trim_prompt_cache(self._cache):
            trim_prompt_cache(self._cache, self._offset - position)
        else:
            raise RuntimeError(f"cannot move context from position {self._offset} to {position}")
        self._offset = position

    def evaluate(self, tokens: Sequence[int], position: int) -> None:
        self._require()
        self._rewind(position)
        try:
            logits = self.model(mx.array(list(tokens))[None], cache=self._cache)
            last = logits[0, -1].astype(mx.float32)
            mx.eval(last)
        except Exception:
            # Cache layers may have advanced part way; start over from an empty context
            self._cache = make_prompt_cache(self.model)
            self._offset = 0
            self._last_logits = None
            raise
        self._last_logits = np.array(last)
        self._offset += len(tokens)

    def logits(self) -> np.ndarray:
        if self._last_logits is None:
            raise RuntimeError("evaluate() has not been called")
        return self._last_logits

    def token_to_text(self, token: int) -> str:
        self._require()
        return self.tokenizer.decode([token])

    def detokenize(self, tokens: Sequence[int]) -> str:
        self._require()
        return self.tokenizer.decode(list(tokens))

    @property
    def eos_token(self) -> int:
        self._require()
        return int(self.tokenizer.eos_token_id)

    @property
    def vocab_size(self) -> int:
        args = getattr(self.model, "args", None)
        return int(getattr(args, "vocab_size", 0) or 0)

    @property
    def context_length(self) -> int:
        args = getattr(self.model, "args", None)
        return int(getattr(args, "max_position_embeddings", 0) or 0)

    def free(self) -> None:
        self.model = None
        self.tokenizer = None
        self._cache = None
        self._last_logits = None
        if MLX_AVAILABLE:
            # Return cached Metal buffers to the system
            mx.clear_cache()
