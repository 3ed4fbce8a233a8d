"""
Generator module - Autoregressive token generation over a model backend

Responsibilities:
- Drive the Tokenizing -> Evaluating -> Sampling -> Emitting loop
- Serialize generations per model handle (FIFO by arrival)
- Stop on EOS, the n_predict budget, the context limit, cancellation or
  a backend failure (partial output is preserved)
- Record per-model usage stats
"""

import logging
from enum import Enum
from time import perf_counter
from typing import TYPE_CHECKING, Callable, Generator, List, Optional, Sequence, Tuple

from edge_serving.config_loader import InferenceConfig
from edge_serving.errors import EdgeRuntimeError, EvaluationError, ModelNotLoaded, TokenizationError
from edge_serving.models import tokenizer
from edge_serving.models.sampling import Sampler, make_sampler
from edge_serving.schemas import CancelToken, GenerationResult, StopReason, TokenUsage

if TYPE_CHECKING:
    from edge_serving.model_cache import ModelHandle

logger = logging.getLogger(__name__)

TokenCallback = Callable[[int, str], None]
StepGenerator = Generator[Tuple[int, str], None, GenerationResult]


class EngineState(Enum):
    IDLE = "idle"
    TOKENIZING = "tokenizing"
    EVALUATING = "evaluating"
    SAMPLING = "sampling"
    EMITTING = "emitting"


def _is_corrupting(exc: Exception) -> bool:
    """Backend failures after which the context cannot be reused"""
    return bool(getattr(exc, "context_corrupted", False)) or isinstance(exc, MemoryError)


class InferenceEngine:
    """
    Generation state machine bound to one ModelHandle

    Example:
        ```python
        engine = InferenceEngine(handle)
        tokens = engine.tokenize_prompt("Hello")
        result = engine.generate_streaming(tokens, config, on_token=print_fragment)
        print(result.stop_reason, result.usage.completion_tokens)
        ```
    """

    def __init__(self, handle: "ModelHandle", sampler: Optional[Sampler] = None):
        self.handle = handle
        self.sampler = sampler
        self.state = EngineState.IDLE

    def tokenize_prompt(self, text: str) -> List[int]:
        """
        Raises:
            TokenizationError: If the backend cannot encode text
        """
        self.state = EngineState.TOKENIZING
        try:
            return tokenizer.tokenize(self.handle, text)
        finally:
            self.state = EngineState.IDLE

    def generate(self, tokens: Sequence[int], config: InferenceConfig) -> GenerationResult:
        """Run a full generation and return every produced token"""
        return self.generate_streaming(tokens, config)

    def generate_streaming(
        self,
        tokens: Sequence[int],
        config: InferenceConfig,
        on_token: Optional[TokenCallback] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> GenerationResult:
        """
        Run a generation, invoking on_token(token_id, text) per produced token

        on_token runs synchronously on this thread before the next
        evaluation step, so it must not block on another generation.
        Waits (FIFO) while another generation holds this handle.
        """
        with self.handle.generation_lock:
            try:
                steps = self._steps(tokens, config, cancel_token)
                while True:
                    try:
                        token, text = next(steps)
                    except StopIteration as stop:
                        result = stop.value
                        break
                    if on_token is not None:
                        on_token(token, text)
            finally:
                self.state = EngineState.IDLE
        self._record(result)
        return result

    def iterate(
        self,
        tokens: Sequence[int],
        config: InferenceConfig,
        cancel_token: Optional[CancelToken] = None,
    ) -> StepGenerator:
        """
        Lazy, non-restartable variant yielding (token_id, text) pairs

        The GenerationResult is the generator's return value. The handle
        stays locked until the generator is exhausted or closed.
        """
        self.handle.generation_lock.acquire()
        try:
            result = yield from self._steps(tokens, config, cancel_token)
        finally:
            self.state = EngineState.IDLE
            self.handle.generation_lock.release()
        self._record(result)
        return result

    # ==================== Private Methods ====================

    def _steps(
        self,
        tokens: Sequence[int],
        config: InferenceConfig,
        cancel_token: Optional[CancelToken],
    ) -> StepGenerator:
        handle = self.handle
        backend = handle.backend
        prompt = list(tokens)
        generated: List[int] = []
        pieces: List[str] = []
        started_at = perf_counter()

        def finish(reason: StopReason, error: Optional[EdgeRuntimeError] = None) -> GenerationResult:
            usage = TokenUsage(
                prompt_tokens=len(prompt),
                completion_tokens=len(generated),
                elapsed_ms=(perf_counter() - started_at) * 1000.0,
            )
            return GenerationResult(
                tokens=list(generated),
                stop_reason=reason,
                usage=usage,
                error=error,
                text="".join(pieces),
            )

        if backend is None:
            return finish(StopReason.ERROR, ModelNotLoaded(handle.model_id))
        if not prompt:
            return finish(StopReason.ERROR, EvaluationError(handle.model_id, "prompt produced no tokens"))

        context_limit = backend.context_length or config.n_ctx
        if len(prompt) >= context_limit:
            return finish(
                StopReason.ERROR,
                EvaluationError(
                    handle.model_id,
                    f"prompt of {len(prompt)} tokens does not fit context of {context_limit}",
                ),
            )

        sampler = self.sampler or make_sampler(config)

        if cancel_token is not None and cancel_token.cancelled:
            return finish(StopReason.CANCELLED)

        # Whole prompt in one call; backends split by n_batch internally
        self.state = EngineState.EVALUATING
        try:
            backend.evaluate(prompt, 0)
        except Exception as exc:
            logger.warning(f"Prompt evaluation failed for {handle.model_id}: {exc}")
            return finish(
                StopReason.ERROR,
                EvaluationError(handle.model_id, str(exc), context_corrupted=_is_corrupting(exc)),
            )
        position = len(prompt)
        eos_token = backend.eos_token

        if config.n_predict == 0:
            return finish(StopReason.MAX_TOKENS)

        while True:
            self.state = EngineState.SAMPLING
            try:
                token = sampler.sample(backend.logits(), prompt + generated)
            except Exception as exc:
                logger.warning(f"Sampling failed for {handle.model_id}: {exc}")
                return finish(
                    StopReason.ERROR,
                    EvaluationError(handle.model_id, f"sampling failed: {exc}", context_corrupted=_is_corrupting(exc)),
                )

            if token == eos_token:
                return finish(StopReason.EOS)

            self.state = EngineState.EMITTING
            try:
                text = backend.token_to_text(token)
            except Exception as exc:
                return finish(StopReason.ERROR, TokenizationError(handle.model_id, f"decode failed: {exc}"))
            generated.append(token)
            pieces.append(text)
            yield token, text

            if len(generated) >= config.n_predict:
                return finish(StopReason.MAX_TOKENS)
            if position + 1 >= context_limit:
                logger.debug(f"Context limit {context_limit} reached for {handle.model_id}")
                return finish(StopReason.MAX_TOKENS)
            if cancel_token is not None and cancel_token.cancelled:
                return finish(StopReason.CANCELLED)

            self.state = EngineState.EVALUATING
            try:
                backend.evaluate([token], position)
            except Exception as exc:
                logger.warning(f"Evaluation failed for {handle.model_id} at position {position}: {exc}")
                return finish(
                    StopReason.ERROR,
                    EvaluationError(handle.model_id, str(exc), context_corrupted=_is_corrupting(exc)),
                )
            position += 1

    def _record(self, result: GenerationResult) -> None:
        self.handle.stats.record(
            result.usage.elapsed_ms,
            prompt_tokens=result.usage.prompt_tokens,
            completion_tokens=result.usage.completion_tokens,
            success=result.ok,
        )
