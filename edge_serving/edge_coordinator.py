"""
Edge Coordinator

Registry of execution devices with deterministic selection, dispatch with a
bounded re-route, and a background heartbeat monitor.

Selection:
    adjusted = performance_score / (1 + in_flight)
    highest adjusted score among online, eligible devices wins;
    ties go to the lexicographically smallest device id.

The device registry and the per-device in-flight counters are guarded by
separate locks; executors always run outside both.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set

import httpx
import orjson
import psutil

from edge_serving.config_loader import InferenceConfig
from edge_serving.errors import DeviceUnavailableError, EdgeRuntimeError, NoAvailableDeviceError
from edge_serving.schemas import CancelToken, GenerationResult, InferenceRequest, StopReason, TokenUsage

logger = logging.getLogger(__name__)

LOCAL_DEVICE_ID = "local"


@dataclass
class DeviceCapabilities:
    cpu_cores: int = 0
    gpu_cores: int = 0
    memory_mb: int = 0
    vram_mb: int = 0
    # Empty means the device can serve any model
    supported_models: List[str] = field(default_factory=list)

    def supports(self, model_id: str) -> bool:
        return not self.supported_models or model_id in self.supported_models

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cpu_cores": self.cpu_cores,
            "gpu_cores": self.gpu_cores,
            "memory_mb": self.memory_mb,
            "vram_mb": self.vram_mb,
            "supported_models": list(self.supported_models),
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DeviceCapabilities":
        return cls(
            cpu_cores=int(payload.get("cpu_cores", 0)),
            gpu_cores=int(payload.get("gpu_cores", 0)),
            memory_mb=int(payload.get("memory_mb", 0)),
            vram_mb=int(payload.get("vram_mb", 0)),
            supported_models=list(payload.get("supported_models") or []),
        )


@dataclass
class DeviceRequirements:
    min_memory_mb: int = 0
    min_vram_mb: int = 0
    min_cpu_cores: int = 0

    def satisfied_by(self, capabilities: DeviceCapabilities) -> bool:
        return (
            capabilities.memory_mb >= self.min_memory_mb
            and capabilities.vram_mb >= self.min_vram_mb
            and capabilities.cpu_cores >= self.min_cpu_cores
        )


class DeviceExecutor(Protocol):
    """Runs inference on one device"""

    def execute(
        self,
        model_id: str,
        request: InferenceRequest,
        config: InferenceConfig,
        cancel_token: Optional[CancelToken] = None,
    ) -> GenerationResult:
        """
        Raises:
            DeviceUnavailableError: If the device cannot be reached or fails
        """
        ...

    def ping(self) -> bool:
        ...


@dataclass
class DeviceDescriptor:
    device_id: str
    capabilities: DeviceCapabilities = field(default_factory=DeviceCapabilities)
    performance_score: float = 0.0
    online: bool = True
    last_heartbeat: float = 0.0
    executor: Optional[DeviceExecutor] = None


@dataclass
class DispatchResult:
    """Outcome of distribute_inference()"""

    device_id: str
    result: GenerationResult
    reroutes: int = 0


def compute_performance_score(capabilities: DeviceCapabilities, config: InferenceConfig) -> float:
    """
    Static score in [0, 1] from how well a device covers a configuration

    Memory, GPU and CPU sufficiency factors are multiplied; the GPU factor
    only applies when layers are offloaded.
    """
    score = 1.0

    # Rough estimate: 2 MB per context token
    required_memory_mb = max(1, config.n_ctx * 2)
    score *= min(1.0, capabilities.memory_mb / required_memory_mb)

    if config.n_gpu_layers > 0:
        score *= min(1.0, capabilities.vram_mb / (config.n_gpu_layers * 100))

    score *= min(1.0, capabilities.cpu_cores / max(1, config.n_threads))
    return max(0.0, min(1.0, score))


def local_device_capabilities(supported_models: Optional[Iterable[str]] = None) -> DeviceCapabilities:
    """Probe this host with psutil"""
    memory = psutil.virtual_memory()
    return DeviceCapabilities(
        cpu_cores=psutil.cpu_count(logical=True) or 1,
        gpu_cores=0,
        memory_mb=int(memory.total // (1024 * 1024)),
        vram_mb=0,
        supported_models=list(supported_models or []),
    )


class LocalDeviceExecutor:
    """Executor backed by this process's inference engine"""

    def __init__(
        self,
        run_fn: Callable[[str, InferenceRequest, InferenceConfig, Optional[CancelToken]], GenerationResult],
    ):
        self._run_fn = run_fn

    def execute(
        self,
        model_id: str,
        request: InferenceRequest,
        config: InferenceConfig,
        cancel_token: Optional[CancelToken] = None,
    ) -> GenerationResult:
        return self._run_fn(model_id, request, config, cancel_token)

    def ping(self) -> bool:
        return True


class HttpDeviceExecutor:
    """
    Executor for a remote peer running the edge serving HTTP API

    POST <base_url>/api/inference with a JSON body; GET <base_url>/api/health.
    """

    def __init__(
        self,
        device_id: str,
        base_url: str,
        timeout_s: float = 120.0,
        health_timeout_s: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self.device_id = device_id
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.health_timeout_s = health_timeout_s
        self._client = client or httpx.Client(timeout=timeout_s)

    def execute(
        self,
        model_id: str,
        request: InferenceRequest,
        config: InferenceConfig,
        cancel_token: Optional[CancelToken] = None,
    ) -> GenerationResult:
        payload = request.to_dict()
        payload["model_id"] = model_id
        payload["config"] = config.to_dict()
        try:
            response = self._client.post(
                f"{self.base_url}/api/inference",
                content=orjson.dumps(payload),
                headers={"Content-Type": "application/json"},
                timeout=self.timeout_s,
            )
            response.raise_for_status()
            body = orjson.loads(response.content)
        except httpx.TimeoutException as exc:
            raise DeviceUnavailableError(self.device_id, "request timed out", model_id) from exc
        except httpx.HTTPStatusError as exc:
            raise DeviceUnavailableError(
                self.device_id, f"HTTP {exc.response.status_code}", model_id
            ) from exc
        except httpx.HTTPError as exc:
            raise DeviceUnavailableError(self.device_id, f"unreachable: {exc}", model_id) from exc
        except orjson.JSONDecodeError as exc:
            raise DeviceUnavailableError(self.device_id, "invalid JSON response", model_id) from exc

        return self._parse_result(model_id, body)

    @staticmethod
    def _parse_result(model_id: str, body: Dict[str, Any]) -> GenerationResult:
        usage = TokenUsage.from_dict(body.get("usage") or {})
        try:
            stop_reason = StopReason(body.get("stop_reason", "eos"))
        except ValueError:
            stop_reason = StopReason.EOS
        error = None
        if not body.get("success", False):
            stop_reason = StopReason.ERROR
            error = EdgeRuntimeError(str(body.get("error", "remote inference failed")), model_id)
        return GenerationResult(
            tokens=[],
            stop_reason=stop_reason,
            usage=usage,
            error=error,
            text=body.get("response") or "",
        )

    def ping(self) -> bool:
        try:
            response = self._client.get(f"{self.base_url}/api/health", timeout=self.health_timeout_s)
        except httpx.HTTPError as exc:
            logger.debug(f"Device {self.device_id} unreachable: {exc}")
            return False
        return response.status_code == 200

    def close(self) -> None:
        self._client.close()


class EdgeCoordinator:
    """
    Device registry, selector and dispatcher

    Example:
        ```python
        coordinator = EdgeCoordinator(heartbeat_timeout_s=30)
        coordinator.register_device(DeviceDescriptor("a", performance_score=0.9, executor=executor))
        device_id = coordinator.get_optimal_device("model.gguf")
        ```
    """

    def __init__(
        self,
        heartbeat_timeout_s: float = 30.0,
        monitor_interval_s: float = 10.0,
        max_reroutes: int = 1,
        active_probe: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self.monitor_interval_s = monitor_interval_s
        self.max_reroutes = max_reroutes
        self.active_probe = active_probe
        self._clock = clock

        self._registry_lock = threading.Lock()
        self._devices: Dict[str, DeviceDescriptor] = {}

        self._load_lock = threading.Lock()
        self._in_flight: Dict[str, int] = {}

        self._stop_event = threading.Event()
        self._monitor_thread: Optional[threading.Thread] = None

        # Statistics
        self.dispatch_count = 0
        self.reroute_count = 0
        self.failure_count = 0

    # ==================== Registry ====================

    def register_device(self, descriptor: DeviceDescriptor) -> None:
        """Add or replace a device; registration counts as a heartbeat"""
        descriptor.last_heartbeat = self._clock()
        descriptor.online = True
        with self._registry_lock:
            replaced = descriptor.device_id in self._devices
            self._devices[descriptor.device_id] = descriptor
        with self._load_lock:
            self._in_flight.setdefault(descriptor.device_id, 0)
        action = "Re-registered" if replaced else "Registered"
        logger.info(
            f"{action} edge device: {descriptor.device_id} "
            f"(score={descriptor.performance_score:.3f}, cpu={descriptor.capabilities.cpu_cores}, "
            f"memory_mb={descriptor.capabilities.memory_mb})"
        )

    def heartbeat(self, device_id: str) -> bool:
        """
        Refresh last-seen time and bring the device back online

        Returns:
            False if the device is not registered
        """
        with self._registry_lock:
            device = self._devices.get(device_id)
            if device is None:
                return False
            device.last_heartbeat = self._clock()
            restored = not device.online
            device.online = True
        if restored:
            logger.info(f"Device {device_id} back online")
        return True

    def deregister_device(self, device_id: str) -> bool:
        with self._registry_lock:
            device = self._devices.pop(device_id, None)
        if device is None:
            return False
        with self._load_lock:
            self._in_flight.pop(device_id, None)
        logger.info(f"Unregistered edge device: {device_id}")
        return True

    def mark_offline(self, device_id: str, reason: str = "") -> None:
        with self._registry_lock:
            device = self._devices.get(device_id)
            if device is None or not device.online:
                return
            device.online = False
        logger.warning(f"Device {device_id} marked offline{': ' + reason if reason else ''}")

    def get_device(self, device_id: str) -> Optional[DeviceDescriptor]:
        with self._registry_lock:
            return self._devices.get(device_id)

    # ==================== Selection ====================

    def get_optimal_device(
        self,
        model_id: str,
        requirements: Optional[DeviceRequirements] = None,
        exclude: Optional[Set[str]] = None,
    ) -> str:
        """
        Pick the best online device for model_id

        Raises:
            NoAvailableDeviceError: If no online device qualifies
        """
        exclude = exclude or set()
        with self._registry_lock:
            candidates = [
                (device.device_id, device.performance_score)
                for device in self._devices.values()
                if device.online
                and device.device_id not in exclude
                and device.capabilities.supports(model_id)
                and (requirements is None or requirements.satisfied_by(device.capabilities))
            ]
        if not candidates:
            raise NoAvailableDeviceError(model_id)

        with self._load_lock:
            loads = {device_id: self._in_flight.get(device_id, 0) for device_id, _ in candidates}

        ranked = sorted(
            candidates,
            key=lambda item: (-(item[1] / (1 + loads[item[0]])), item[0]),
        )
        return ranked[0][0]

    # ==================== Dispatch ====================

    def distribute_inference(
        self,
        model_id: str,
        request: InferenceRequest,
        config: InferenceConfig,
        requirements: Optional[DeviceRequirements] = None,
        cancel_token: Optional[CancelToken] = None,
    ) -> DispatchResult:
        """
        Run a request on the best device, re-routing after a device failure

        Raises:
            NoAvailableDeviceError: If no device qualifies at all
            DeviceUnavailableError: If the chosen device(s) failed and re-route
                attempts are exhausted
        """
        tried: Set[str] = set()
        last_error: Optional[DeviceUnavailableError] = None

        for attempt in range(self.max_reroutes + 1):
            try:
                device_id = self.get_optimal_device(model_id, requirements, exclude=tried)
            except NoAvailableDeviceError:
                if last_error is None:
                    raise
                break

            device = self.get_device(device_id)
            if device is None or device.executor is None:
                last_error = DeviceUnavailableError(device_id, "no executor", model_id)
                tried.add(device_id)
                continue

            if attempt > 0:
                with self._load_lock:
                    self.reroute_count += 1
                logger.info(f"Re-routing request {request.request_id} to device {device_id}")

            tried.add(device_id)
            self._adjust_in_flight(device_id, 1)
            try:
                result = device.executor.execute(model_id, request, config, cancel_token=cancel_token)
            except DeviceUnavailableError as exc:
                last_error = exc
            except EdgeRuntimeError:
                raise
            except Exception as exc:
                logger.exception(f"Executor for device {device_id} failed")
                last_error = DeviceUnavailableError(device_id, f"executor failed: {exc}", model_id)
            else:
                with self._load_lock:
                    self.dispatch_count += 1
                logger.debug(f"Request {request.request_id} completed on device {device_id}")
                return DispatchResult(device_id=device_id, result=result, reroutes=attempt)
            finally:
                self._adjust_in_flight(device_id, -1)

            with self._load_lock:
                self.failure_count += 1
            self.mark_offline(device_id, last_error.reason)

        raise last_error

    def _adjust_in_flight(self, device_id: str, delta: int) -> None:
        with self._load_lock:
            self._in_flight[device_id] = max(0, self._in_flight.get(device_id, 0) + delta)

    def in_flight(self, device_id: str) -> int:
        with self._load_lock:
            return self._in_flight.get(device_id, 0)

    # ==================== Monitoring ====================

    def check_devices(self) -> List[str]:
        """
        Mark devices whose heartbeat is older than the timeout offline

        In-process devices are always pinged first. With active probing every
        device's executor is pinged too. A successful ping counts as a
        heartbeat.

        Returns:
            Ids of devices newly marked offline
        """
        self._probe_devices(local_only=not self.active_probe)

        now = self._clock()
        expired = []
        with self._registry_lock:
            for device in self._devices.values():
                if device.online and now - device.last_heartbeat > self.heartbeat_timeout_s:
                    device.online = False
                    expired.append(device.device_id)
        for device_id in expired:
            logger.warning(f"Device {device_id} missed heartbeat (timeout={self.heartbeat_timeout_s}s), marked offline")
        return expired

    def _probe_devices(self, local_only: bool = False) -> None:
        with self._registry_lock:
            targets = [
                (d.device_id, d.executor)
                for d in self._devices.values()
                if d.executor is not None and (not local_only or isinstance(d.executor, LocalDeviceExecutor))
            ]
        for device_id, executor in targets:
            try:
                alive = executor.ping()
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Health probe for {device_id} raised: {exc}")
                alive = False
            if alive:
                self.heartbeat(device_id)
            else:
                self.mark_offline(device_id, "health probe failed")

    def _monitor_loop(self) -> None:
        while not self._stop_event.wait(self.monitor_interval_s):
            try:
                self.check_devices()
            except Exception:  # noqa: BLE001
                logger.exception("Device health check failed")

    def start_monitoring(self) -> None:
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return
        self._stop_event.clear()
        self._monitor_thread = threading.Thread(
            target=self._monitor_loop, name="edge-device-monitor", daemon=True
        )
        self._monitor_thread.start()
        logger.info(f"Device monitor started (interval={self.monitor_interval_s}s)")

    def stop_monitoring(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread = self._monitor_thread
        if thread is not None:
            thread.join(timeout)
        self._monitor_thread = None

    # ==================== Stats ====================

    def get_device_status(self) -> Dict[str, Any]:
        now = self._clock()
        with self._registry_lock:
            devices = sorted(self._devices.values(), key=lambda d: d.device_id)
            snapshot = [
                {
                    "device_id": d.device_id,
                    "online": d.online,
                    "performance_score": d.performance_score,
                    "last_heartbeat_age_s": max(0.0, now - d.last_heartbeat),
                    "capabilities": d.capabilities.to_dict(),
                }
                for d in devices
            ]
        with self._load_lock:
            for entry in snapshot:
                entry["in_flight"] = self._in_flight.get(entry["device_id"], 0)
            totals = {
                "dispatched": self.dispatch_count,
                "reroutes": self.reroute_count,
                "failures": self.failure_count,
            }
        return {
            "total_devices": len(snapshot),
            "online_devices": sum(1 for entry in snapshot if entry["online"]),
            "devices": snapshot,
            **totals,
        }

    def shutdown(self) -> None:
        logger.info("Shutting down Edge Coordinator")
        self.stop_monitoring()
        with self._registry_lock:
            executors = [d.executor for d in self._devices.values() if d.executor is not None]
        for executor in executors:
            close = getattr(executor, "close", None)
            if close is not None:
                close()
