"""
Request Processor

Top-level orchestrator: resolves the model handle through the ModelCache,
optionally routes through the EdgeCoordinator, drives the InferenceEngine,
builds response envelopes and keeps global usage stats.

A processor is an explicit context object; create one per serving process
and pass it to whatever needs it.

Example:
    ```python
    processor = RequestProcessor(load_config())
    if processor.initialize("models/model.gguf"):
        envelope = processor.submit(InferenceRequest(request_id="r1", prompt="Hello"))
    processor.shutdown()
    ```
"""

import asyncio
import concurrent.futures
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from time import perf_counter
from typing import Any, AsyncIterator, Callable, Dict, Iterator, Mapping, Optional, Tuple, Union

from edge_serving.config_loader import Config, InferenceConfig, load_config
from edge_serving.content_fetcher import ContentFetcher, create_content_fetcher
from edge_serving.edge_coordinator import (
    LOCAL_DEVICE_ID,
    DeviceCapabilities,
    DeviceDescriptor,
    EdgeCoordinator,
    HttpDeviceExecutor,
    LocalDeviceExecutor,
    compute_performance_score,
    local_device_capabilities,
)
from edge_serving.errors import (
    ERROR_CODE_MAP,
    INTERNAL_ERROR_CODE,
    INVALID_PARAMS_CODE,
    EdgeRuntimeError,
    EvaluationError,
    ModelNotLoaded,
)
from edge_serving.model_cache import LoadState, ModelCache, ModelHandle
from edge_serving.models.backend import ModelBackend, create_backend
from edge_serving.models.generator import InferenceEngine, TokenCallback
from edge_serving.models.loader import LoadedModel, load_model
from edge_serving.models.tokenizer import format_messages
from edge_serving.schemas import CancelToken, GenerationResult, InferenceRequest
from edge_serving.telemetry import UsageStats
from edge_serving.validators import validate_model_ref, validate_request

logger = logging.getLogger(__name__)

RequestLike = Union[InferenceRequest, Mapping[str, Any]]
StreamItem = Union[str, Dict[str, Any]]

# Seconds a stream producer waits for queue space before giving up on the consumer
STREAM_PUT_TIMEOUT_S = 30.0
_STREAM_END = object()


def _truncate(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


class RequestProcessor:
    """Inference request pipeline with global usage stats"""

    def __init__(
        self,
        config: Optional[Config] = None,
        cache: Optional[ModelCache] = None,
        coordinator: Optional[EdgeCoordinator] = None,
        fetcher: Optional[ContentFetcher] = None,
        backend_factory: Callable[[str, str], ModelBackend] = create_backend,
    ):
        self.config = config or load_config()
        self.fetcher = fetcher if fetcher is not None else create_content_fetcher(self.config)
        self.backend_factory = backend_factory
        self.cache = cache or ModelCache(
            self._load_model,
            max_cached_models=self.config.max_cached_models,
            stats_window_size=self.config.telemetry_window_size,
        )
        if coordinator is None and self.config.coordinator_enabled:
            coordinator = EdgeCoordinator(
                heartbeat_timeout_s=self.config.heartbeat_timeout_s,
                monitor_interval_s=self.config.monitor_interval_s,
                max_reroutes=self.config.max_reroutes,
                active_probe=self.config.active_probe,
            )
        self.coordinator = coordinator

        self.stats = UsageStats(self.config.telemetry_window_size)
        self.defaults: InferenceConfig = self.config.inference_defaults()
        self.model_id: Optional[str] = None

        self._lock = threading.Lock()
        self._pinned: Optional[ModelHandle] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self.shutdown_requested = False

    # ==================== Lifecycle ====================

    def initialize(
        self,
        model_ref: Optional[str] = None,
        config: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """
        Load the default model and bring up device coordination

        Args:
            model_ref: Local path, content hash or hf:// reference
                (defaults to model.default from the runtime config)
            config: Overrides applied to the default inference settings

        Returns:
            True if the model is loaded and requests can be served
        """
        model_ref = model_ref or self.config.default_model
        try:
            validate_model_ref(model_ref)
            defaults = self.config.inference_defaults().with_overrides(config)
            defaults.validate(self.config.max_temperature, self.config.max_predict_tokens)
        except ValueError as exc:
            logger.error(f"Invalid initialization parameters: {exc}")
            return False

        logger.info(f"Initializing with model {model_ref}")
        try:
            handle = self.cache.acquire(model_ref, defaults.load_params())
        except EdgeRuntimeError as exc:
            logger.error(f"Initialization failed: {exc.message}")
            return False

        with self._lock:
            previous = self._pinned
            self._pinned = handle
            self.model_id = model_ref
            self.defaults = defaults
        if previous is not None:
            self.cache.release(previous)

        if self.coordinator is not None:
            self._register_devices(model_ref)
            self.coordinator.start_monitoring()

        logger.info(f"Model {model_ref} ready ({handle.metadata.get('backend')}, vocab={handle.metadata.get('vocab_size')})")
        return True

    def _register_devices(self, model_ref: str) -> None:
        if self.config.register_local_device and self.coordinator.get_device(LOCAL_DEVICE_ID) is None:
            capabilities = local_device_capabilities()
            score = compute_performance_score(capabilities, self.defaults)
            if score == 0.0:
                logger.warning(
                    f"Local device scores 0.0 (n_gpu_layers={self.defaults.n_gpu_layers}, "
                    f"vram_mb={capabilities.vram_mb}); any remote device with a positive score will be preferred"
                )
            self.coordinator.register_device(DeviceDescriptor(
                device_id=LOCAL_DEVICE_ID,
                capabilities=capabilities,
                performance_score=score,
                executor=LocalDeviceExecutor(self._run_local),
            ))

        for entry in self.config.devices or []:
            device_id = entry.get("device_id")
            base_url = entry.get("base_url")
            if not device_id or not base_url:
                logger.warning(f"Skipping device entry without device_id/base_url: {entry}")
                continue
            if self.coordinator.get_device(device_id) is not None:
                continue
            capabilities = DeviceCapabilities.from_dict(entry)
            score = entry.get("performance_score")
            if score is None:
                score = compute_performance_score(capabilities, self.defaults)
            self.coordinator.register_device(DeviceDescriptor(
                device_id=device_id,
                capabilities=capabilities,
                performance_score=float(score),
                executor=HttpDeviceExecutor(device_id, base_url),
            ))

    def shutdown(self) -> None:
        """Stop workers and monitoring, then free every cached model"""
        with self._lock:
            if self.shutdown_requested:
                return
            self.shutdown_requested = True
            executor = self._executor
            self._executor = None
            pinned = self._pinned
            self._pinned = None

        if executor is not None:
            executor.shutdown(wait=True)
        if self.coordinator is not None:
            self.coordinator.shutdown()
        if pinned is not None:
            self.cache.release(pinned)
        self.cache.clear()

        logger.info(f"Processor final stats: {self.stats.get_report()}")
        logger.info(f"ModelCache final stats: {self.cache.get_stats()}")

    def __enter__(self) -> "RequestProcessor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ==================== Requests ====================

    def submit(self, request: RequestLike, cancel_token: Optional[CancelToken] = None) -> Dict[str, Any]:
        """
        Process one request to completion

        Never raises: every failure becomes an error envelope. Global stats
        are updated exactly once per call.
        """
        started = perf_counter()
        request_id = self._request_id_of(request)
        result: Optional[GenerationResult] = None
        device_id: Optional[str] = None
        model_id: Optional[str] = None
        error: Optional[Exception] = None

        try:
            req = self._coerce_request(request)
            config, model_id = self._prepare(req)
            logger.debug(f"Request {request_id}: {_truncate(self._prompt_text(req))!r}")
            device_id, result = self._execute(model_id, req, config, cancel_token)
        except Exception as exc:
            error = exc

        return self._finish(request_id, started, model_id, device_id, result, error)

    def enqueue(self, request: RequestLike, cancel_token: Optional[CancelToken] = None) -> "Future[Dict[str, Any]]":
        """
        Run submit() on the worker pool

        Raises:
            RuntimeError: If the processor has been shut down
        """
        with self._lock:
            if self.shutdown_requested:
                raise RuntimeError("Processor is shut down")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.config.workers, thread_name_prefix="edge-worker"
                )
            executor = self._executor
        return executor.submit(self.submit, request, cancel_token)

    def stream(self, request: RequestLike, cancel_token: Optional[CancelToken] = None) -> Iterator[StreamItem]:
        """
        Lazily generate text fragments, then one final summary dict

        Streaming always runs on the local engine. The summary has the same
        fields as a submit() envelope plus done=True.
        """
        started = perf_counter()
        request_id = self._request_id_of(request)
        result: Optional[GenerationResult] = None
        model_id: Optional[str] = None
        error: Optional[Exception] = None
        prompt_tokens = emitted = 0
        finished = False

        try:
            try:
                req = self._coerce_request(request)
                config, model_id = self._prepare(req)
                handle = self._acquire(model_id, config)
                try:
                    engine = InferenceEngine(handle)
                    tokens = engine.tokenize_prompt(self._prompt_text(req))
                    prompt_tokens = len(tokens)
                    steps = engine.iterate(tokens, config, cancel_token)
                    try:
                        while True:
                            try:
                                _, text = next(steps)
                            except StopIteration as stop:
                                result = stop.value
                                break
                            emitted += 1
                            yield text
                    finally:
                        steps.close()
                    self._after_generation(handle, result)
                finally:
                    self.cache.release(handle)
            except Exception as exc:
                error = exc

            summary = self._finish(request_id, started, model_id, LOCAL_DEVICE_ID, result, error)
            finished = True
            summary["done"] = True
            yield summary
        finally:
            if not finished:
                # Consumer abandoned the stream mid-generation
                elapsed_ms = (perf_counter() - started) * 1000.0
                self.stats.record(elapsed_ms, prompt_tokens, emitted, success=True)
                logger.info(
                    f"Request {request_id} stream closed by consumer after {emitted} tokens in {elapsed_ms:.1f}ms"
                )

    async def astream(self, request: RequestLike, cancel_token: Optional[CancelToken] = None) -> AsyncIterator[StreamItem]:
        """
        Async variant of stream()

        Generation runs on a worker thread and items cross into the event
        loop through a bounded asyncio.Queue. Leaving the loop early cancels
        the generation.
        """
        cancel_token = cancel_token or CancelToken()
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.stream_queue_size)

        def put(item: Any) -> bool:
            future = asyncio.run_coroutine_threadsafe(queue.put(item), loop)
            try:
                future.result(timeout=STREAM_PUT_TIMEOUT_S)
            except concurrent.futures.TimeoutError:
                future.cancel()
                return False
            return True

        def producer() -> None:
            items = self.stream(request, cancel_token)
            try:
                for item in items:
                    if not put(item):
                        logger.warning("Stream consumer stalled, cancelling generation")
                        cancel_token.cancel()
                        return
            finally:
                items.close()
                put(_STREAM_END)

        producer_task = asyncio.ensure_future(asyncio.to_thread(producer))
        try:
            while True:
                item = await queue.get()
                if item is _STREAM_END:
                    break
                yield item
        finally:
            if not producer_task.done():
                cancel_token.cancel()
                # Drain so the producer never blocks on a full queue
                while not producer_task.done():
                    try:
                        queue.get_nowait()
                    except asyncio.QueueEmpty:
                        await asyncio.sleep(0.005)
            await producer_task

    # ==================== Stats ====================

    def get_stats(self) -> Dict[str, Any]:
        report = self.stats.get_report()
        with self._lock:
            handle = self._pinned
        stats: Dict[str, Any] = {
            "model_loaded": handle is not None and handle.state == LoadState.READY,
            "model_id": self.model_id,
            "model_path": handle.metadata.get("path") if handle is not None else None,
            "total_requests": report["total_requests"],
            "failed_requests": report["failed_requests"],
            "total_tokens": report["total_tokens"],
            "prompt_tokens": report["prompt_tokens"],
            "completion_tokens": report["completion_tokens"],
            "avg_processing_time_ms": report["avg_processing_time_ms"],
            "per_device_status": [],
            "cache": self.cache.get_stats(),
        }
        if "latency_ms" in report:
            stats["latency_ms"] = report["latency_ms"]
        if handle is not None:
            stats["model_stats"] = handle.stats.get_report()
        if self.coordinator is not None:
            status = self.coordinator.get_device_status()
            stats["per_device_status"] = status["devices"]
            stats["coordinator"] = {k: v for k, v in status.items() if k != "devices"}
        return stats

    # ==================== Private Methods ====================

    def _load_model(self, model_id: str, load_params: Dict[str, Any]) -> LoadedModel:
        return load_model(
            model_id,
            load_params,
            backend_name=self.config.backend,
            fetcher=self.fetcher,
            trusted_dirs=self.config.trusted_model_directories,
            backend_factory=self.backend_factory,
        )

    @staticmethod
    def _request_id_of(request: RequestLike) -> str:
        if isinstance(request, InferenceRequest):
            request_id = request.request_id
        elif isinstance(request, Mapping):
            request_id = request.get("request_id") or request.get("id")
        else:
            return ""
        return request_id if isinstance(request_id, str) else ""

    @staticmethod
    def _coerce_request(request: RequestLike) -> InferenceRequest:
        if isinstance(request, InferenceRequest):
            return request
        if not isinstance(request, Mapping):
            raise ValueError(f"request must be a mapping, got {type(request).__name__}")
        return InferenceRequest.from_dict(dict(request))

    def _prepare(self, request: InferenceRequest) -> Tuple[InferenceConfig, str]:
        """Validate a request and capture its config snapshot"""
        if self.shutdown_requested:
            raise EdgeRuntimeError("Processor is shut down")
        validate_request(request, self.config)
        config = self.defaults.with_overrides(request.config_overrides)
        config.validate(self.config.max_temperature, self.config.max_predict_tokens)
        model_id = request.model_id or self.model_id
        if model_id is None:
            raise ModelNotLoaded("default")
        return config, model_id

    @staticmethod
    def _prompt_text(request: InferenceRequest) -> str:
        if request.prompt is not None:
            return request.prompt
        return format_messages(request.messages or [])

    def _execute(
        self,
        model_id: str,
        request: InferenceRequest,
        config: InferenceConfig,
        cancel_token: Optional[CancelToken],
    ) -> Tuple[str, GenerationResult]:
        if self.coordinator is None:
            return LOCAL_DEVICE_ID, self._run_local(model_id, request, config, cancel_token)
        dispatch = self.coordinator.distribute_inference(model_id, request, config, cancel_token=cancel_token)
        if dispatch.reroutes:
            logger.info(f"Request {request.request_id} served by {dispatch.device_id} after {dispatch.reroutes} re-route(s)")
        return dispatch.device_id, dispatch.result

    def _acquire(self, model_id: str, config: InferenceConfig) -> ModelHandle:
        handle = self.cache.acquire(model_id, config.load_params())
        if model_id == self.model_id:
            self._repin(handle)
        return handle

    def _repin(self, handle: ModelHandle) -> None:
        """Re-pin the default model after its previous handle was invalidated"""
        with self._lock:
            if self._pinned is not None or self.shutdown_requested:
                return
        extra = self.cache.acquire(handle.model_id, self.defaults.load_params())
        with self._lock:
            if self._pinned is None and not self.shutdown_requested:
                self._pinned = extra
                return
        self.cache.release(extra)

    def _run_local(
        self,
        model_id: str,
        request: InferenceRequest,
        config: InferenceConfig,
        cancel_token: Optional[CancelToken] = None,
        on_token: Optional[TokenCallback] = None,
    ) -> GenerationResult:
        """Generate on this process's engine (also the local device executor)"""
        handle = self._acquire(model_id, config)
        try:
            engine = InferenceEngine(handle)
            tokens = engine.tokenize_prompt(self._prompt_text(request))
            result = engine.generate_streaming(tokens, config, on_token=on_token, cancel_token=cancel_token)
            self._after_generation(handle, result)
            return result
        finally:
            self.cache.release(handle)

    def _after_generation(self, handle: ModelHandle, result: GenerationResult) -> None:
        error = result.error
        if not (isinstance(error, EvaluationError) and error.context_corrupted):
            return
        self.cache.invalidate(handle, reason=error.reason)
        with self._lock:
            pinned = self._pinned if self._pinned is handle else None
            if pinned is not None:
                self._pinned = None
        if pinned is not None:
            self.cache.release(pinned)

    def _finish(
        self,
        request_id: str,
        started: float,
        model_id: Optional[str],
        device_id: Optional[str],
        result: Optional[GenerationResult],
        error: Optional[Exception],
    ) -> Dict[str, Any]:
        """Build the response envelope and record global stats once"""
        processing_time_ms = (perf_counter() - started) * 1000.0
        envelope: Dict[str, Any] = {"request_id": request_id}
        prompt_tokens = completion_tokens = 0
        if error is None and result is None:
            error = EdgeRuntimeError("Request produced no result", model_id)

        if error is not None:
            envelope.update(self._error_fields(error))
        elif result is not None:
            prompt_tokens = result.usage.prompt_tokens
            completion_tokens = result.usage.completion_tokens
            envelope["model"] = model_id
            envelope["device_id"] = device_id
            envelope["stop_reason"] = result.stop_reason.value
            envelope["incomplete"] = result.incomplete
            envelope["usage"] = result.usage.to_dict()
            if result.ok:
                envelope["success"] = True
                envelope["response"] = result.text
            else:
                envelope.update(self._error_fields(result.error))
                envelope["partial_tokens"] = completion_tokens

        envelope["processing_time_ms"] = processing_time_ms
        envelope["timestamp"] = int(time.time() * 1000)

        success = envelope["success"]
        self.stats.record(processing_time_ms, prompt_tokens, completion_tokens, success=success)
        if success:
            logger.info(
                f"Request {request_id} completed in {processing_time_ms:.1f}ms "
                f"({completion_tokens} tokens, stop={envelope['stop_reason']}, device={device_id})"
            )
        else:
            logger.warning(f"Request {request_id} failed in {processing_time_ms:.1f}ms: {envelope['error']}")
        return envelope

    def _error_fields(self, exc: Exception) -> Dict[str, Any]:
        error = self._serialize_error(exc)
        return {
            "success": False,
            "error": error["message"],
            "error_code": error["code"],
            "error_type": error["type"],
        }

    def _serialize_error(self, exc: Exception) -> Dict[str, Any]:
        """Translate exceptions to envelope error objects"""
        if isinstance(exc, EdgeRuntimeError):
            code = ERROR_CODE_MAP.get(type(exc), INTERNAL_ERROR_CODE)
            return {"code": code, "message": exc.message, "type": type(exc).__name__}
        elif isinstance(exc, ValueError):
            # Validation messages are safe to expose
            logger.info(f"Validation error: {exc}")
            return {"code": INVALID_PARAMS_CODE, "message": str(exc), "type": "ValidationError"}
        else:
            # Generic error to prevent leaking sensitive information
            logger.error(f"Unexpected error in processor: {type(exc).__name__}: {exc}", exc_info=exc)
            return {
                "code": INTERNAL_ERROR_CODE,
                "message": "An unexpected internal error occurred",
                "type": "InternalError",
            }
