"""
Unit tests for InferenceEngine

Tests stop conditions (EOS, n_predict, context limit, cancellation,
backend failure), the evaluation-count bound, streaming callbacks,
per-handle FIFO serialization and per-model stats.
"""

import threading
import time

import pytest

from fakes import EOS, ScriptedBackend, char_token, script_for

from edge_serving.config_loader import InferenceConfig
from edge_serving.errors import EvaluationError, ModelNotLoaded
from edge_serving.model_cache import LoadState, ModelHandle
from edge_serving.models.generator import EngineState, InferenceEngine
from edge_serving.schemas import CancelToken, StopReason


def make_handle(backend=None, model_id="tiny"):
    return ModelHandle(model_id=model_id, backend=backend, state=LoadState.READY, ref_count=1)


def greedy(n_predict=5, **kwargs):
    return InferenceConfig(n_predict=n_predict, sampler="greedy", **kwargs)


class TestStopConditions:
    """Test every way a generation session ends"""

    def test_eos_as_third_token(self):
        """EOS sampled as the 3rd token yields two completion tokens"""
        backend = ScriptedBackend(script=script_for("Hi"))
        engine = InferenceEngine(make_handle(backend))

        tokens = engine.tokenize_prompt("Hello")
        result = engine.generate(tokens, greedy(n_predict=5))

        assert result.ok
        assert result.stop_reason == StopReason.EOS
        assert result.usage.completion_tokens == 2
        assert result.usage.prompt_tokens == 6  # BOS + 5 chars
        assert result.text == "Hi"
        assert not result.incomplete

    def test_max_tokens(self):
        """Generation stops after exactly n_predict tokens"""
        backend = ScriptedBackend(script=[])  # never produces EOS
        engine = InferenceEngine(make_handle(backend))

        result = engine.generate(engine.tokenize_prompt("x"), greedy(n_predict=4))

        assert result.stop_reason == StopReason.MAX_TOKENS
        assert len(result.tokens) == 4
        assert result.text == "aaaa"

    @pytest.mark.parametrize("n_predict", [0, 1, 2, 7])
    def test_evaluation_count_bounded(self, n_predict):
        """At most n_predict + 1 evaluate calls for any input"""
        backend = ScriptedBackend(script=[])
        engine = InferenceEngine(make_handle(backend))

        engine.generate(engine.tokenize_prompt("bounded"), greedy(n_predict=n_predict))

        assert len(backend.eval_calls) <= n_predict + 1

    def test_zero_budget_emits_nothing(self):
        backend = ScriptedBackend(script=[])
        engine = InferenceEngine(make_handle(backend))

        result = engine.generate(engine.tokenize_prompt("x"), greedy(n_predict=0))

        assert result.tokens == []
        assert result.stop_reason == StopReason.MAX_TOKENS

    def test_eos_halts_before_budget(self):
        backend = ScriptedBackend(script=[EOS])
        engine = InferenceEngine(make_handle(backend))

        result = engine.generate(engine.tokenize_prompt("x"), greedy(n_predict=100))

        assert result.stop_reason == StopReason.EOS
        assert result.tokens == []
        assert len(backend.eval_calls) == 1

    def test_context_limit_stops_with_max_tokens(self):
        """Reaching the context size mid-generation ends with MaxTokens"""
        backend = ScriptedBackend(script=[], n_ctx=8)
        engine = InferenceEngine(make_handle(backend))

        # BOS + 4 chars = 5 prompt tokens, room for 3 more positions
        result = engine.generate(engine.tokenize_prompt("abcd"), greedy(n_predict=50))

        assert result.stop_reason == StopReason.MAX_TOKENS
        assert len(result.tokens) == 3

    def test_prompt_exceeding_context_fails(self):
        backend = ScriptedBackend(script=[], n_ctx=4)
        engine = InferenceEngine(make_handle(backend))

        result = engine.generate(engine.tokenize_prompt("too long"), greedy())

        assert not result.ok
        assert isinstance(result.error, EvaluationError)
        assert not result.error.context_corrupted
        assert backend.eval_calls == []

    def test_unloaded_handle(self):
        engine = InferenceEngine(make_handle(backend=None))

        result = engine.generate([1, 2, 3], greedy())

        assert isinstance(result.error, ModelNotLoaded)
        assert result.stop_reason == StopReason.ERROR


class TestBackendFailure:
    """Test evaluation failures keep partial output"""

    def test_partial_output_preserved(self):
        # Call 0 is the prompt; call 2 is the evaluation of the 2nd token
        backend = ScriptedBackend(script=script_for("abcdef", eos=False), fail_on_eval=2)
        engine = InferenceEngine(make_handle(backend))

        result = engine.generate(engine.tokenize_prompt("x"), greedy(n_predict=10))

        assert result.stop_reason == StopReason.ERROR
        assert result.incomplete
        assert isinstance(result.error, EvaluationError)
        assert result.text == "ab"
        assert result.usage.completion_tokens == 2

    def test_corruption_flag_propagates(self):
        backend = ScriptedBackend(script=[], fail_on_eval=0, corrupt_on_failure=True)
        engine = InferenceEngine(make_handle(backend))

        result = engine.generate(engine.tokenize_prompt("x"), greedy())

        assert result.error.context_corrupted

    def test_handle_reusable_after_failure(self):
        backend = ScriptedBackend(script=script_for("ok"), fail_on_eval=0)
        handle = make_handle(backend)

        first = InferenceEngine(handle).generate([1, 5, 6], greedy())
        second = InferenceEngine(handle).generate([1, 5, 6], greedy())

        assert not first.ok
        assert second.ok
        assert second.text == "ok"


class TestStreaming:
    """Test the callback and iterator variants"""

    def test_callback_once_per_token_in_order(self):
        backend = ScriptedBackend(script=script_for("abc"))
        engine = InferenceEngine(make_handle(backend))
        seen = []

        result = engine.generate_streaming(
            engine.tokenize_prompt("p"), greedy(), on_token=lambda token, text: seen.append((token, text))
        )

        assert seen == [(char_token("a"), "a"), (char_token("b"), "b"), (char_token("c"), "c")]
        assert result.tokens == [token for token, _ in seen]

    def test_callback_runs_before_next_evaluation(self):
        backend = ScriptedBackend(script=script_for("abc"))
        engine = InferenceEngine(make_handle(backend))
        evals_at_callback = []

        engine.generate_streaming(
            engine.tokenize_prompt("p"),
            greedy(),
            on_token=lambda token, text: evals_at_callback.append(len(backend.eval_calls)),
        )

        assert evals_at_callback == [1, 2, 3]

    def test_cancellation_mid_generation(self):
        backend = ScriptedBackend(script=[])
        engine = InferenceEngine(make_handle(backend))
        cancel = CancelToken()

        def on_token(token, text):
            if text and len(seen) == 1:
                cancel.cancel()
            seen.append(text)

        seen = []
        result = engine.generate_streaming(engine.tokenize_prompt("p"), greedy(n_predict=10), on_token, cancel)

        assert result.stop_reason == StopReason.CANCELLED
        assert result.incomplete
        assert result.ok
        assert len(result.tokens) == 2
        assert len(result.tokens) <= 10

    def test_cancelled_before_start(self):
        backend = ScriptedBackend(script=[])
        engine = InferenceEngine(make_handle(backend))
        cancel = CancelToken()
        cancel.cancel()

        result = engine.generate_streaming(engine.tokenize_prompt("p"), greedy(), cancel_token=cancel)

        assert result.stop_reason == StopReason.CANCELLED
        assert result.tokens == []

    def test_iterate_returns_result(self):
        backend = ScriptedBackend(script=script_for("xy"))
        handle = make_handle(backend)
        engine = InferenceEngine(handle)

        steps = engine.iterate(engine.tokenize_prompt("p"), greedy())
        fragments = []
        while True:
            try:
                fragments.append(next(steps)[1])
            except StopIteration as stop:
                result = stop.value
                break

        assert fragments == ["x", "y"]
        assert result.stop_reason == StopReason.EOS
        assert handle.generation_lock.queued == 0
        assert engine.state == EngineState.IDLE

    def test_iterate_closed_early_releases_handle(self):
        backend = ScriptedBackend(script=[])
        handle = make_handle(backend)
        steps = InferenceEngine(handle).iterate([1, 5], greedy(n_predict=10))

        next(steps)
        steps.close()

        assert handle.generation_lock.queued == 0


class TestAccessDiscipline:
    """Test per-handle serialization"""

    def test_same_handle_never_interleaves(self):
        backend = ScriptedBackend(script=[], eval_delay=0.002)
        handle = make_handle(backend)
        errors = []

        def worker():
            try:
                InferenceEngine(handle).generate([1, 5, 6], greedy(n_predict=5))
            except Exception as exc:  # noqa: BLE001
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert not errors
        assert not backend.overlap_detected
        assert len(backend.prompts) == 4

    def test_fifo_order(self):
        """Queued generations run in arrival order"""
        backend = ScriptedBackend(script=[], eval_delay=0.01)
        handle = make_handle(backend)

        # Hold the handle so every worker queues up behind it
        handle.generation_lock.acquire()
        threads = []
        for index in range(5):
            prompt = [1, char_token(str(index))]
            thread = threading.Thread(
                target=lambda p=prompt: InferenceEngine(handle).generate(p, greedy(n_predict=1))
            )
            thread.start()
            threads.append(thread)
            # Wait until this worker holds its ticket before starting the next
            deadline = time.time() + 2.0
            while handle.generation_lock.queued < index + 2 and time.time() < deadline:
                time.sleep(0.001)
        handle.generation_lock.release()
        for thread in threads:
            thread.join()

        assert [prompt[1] for prompt in backend.prompts] == [char_token(str(i)) for i in range(5)]


class TestStats:
    """Test per-model usage stats"""

    def test_stats_updated_per_generation(self):
        backend = ScriptedBackend(script=script_for("ab"))
        handle = make_handle(backend)

        InferenceEngine(handle).generate([1, 5, 6], greedy())
        snapshot = handle.stats.snapshot()

        assert snapshot.total_requests == 1
        assert snapshot.prompt_tokens == 3
        assert snapshot.completion_tokens == 2
        assert snapshot.failed_requests == 0

    def test_failed_generation_counted(self):
        backend = ScriptedBackend(script=[], fail_on_eval=0)
        handle = make_handle(backend)

        InferenceEngine(handle).generate([1, 5], greedy())

        assert handle.stats.snapshot().failed_requests == 1
