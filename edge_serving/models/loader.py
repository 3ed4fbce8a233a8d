"""
Model loader - Thin wrapper around the model backends

Responsibilities:
- Resolve a model reference (local path, content hash, hf:// reference)
- Fetch absent model files through a ContentFetcher
- Instantiate the backend and load the weights
- Return LoadedModel with backend and metadata
- No caching logic (ModelCache decides when to load/unload)
"""

import gc
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Optional

from edge_serving.content_fetcher import HF_SCHEME, ContentFetcher, is_content_hash
from edge_serving.errors import ContentFetchError, ModelLoadError
from edge_serving.models.backend import ModelBackend, create_backend, detect_backend_name

logger = logging.getLogger(__name__)


@dataclass
class LoadedModel:
    """Container for a loaded backend and its metadata"""

    model_id: str
    backend: ModelBackend
    metadata: Dict[str, Any]


def _check_trusted(model_id: str, local_path: Path, trusted_dirs: Optional[Iterable[str]]) -> None:
    """Enforce trusted directory boundaries if configured"""
    if not trusted_dirs:
        return
    for trusted_dir in trusted_dirs:
        trusted_path = Path(trusted_dir).expanduser().resolve()
        try:
            local_path.relative_to(trusted_path)
            return
        except ValueError:
            continue
    raise ModelLoadError(model_id, "Path is not within trusted model directories")


def resolve_model_path(
    model_ref: str,
    fetcher: Optional[ContentFetcher] = None,
    trusted_dirs: Optional[Iterable[str]] = None,
) -> Path:
    """
    Resolve a model reference to a local file or directory

    Existing local paths are used as-is. Content hashes and hf:// references
    are fetched once through the fetcher.

    Raises:
        ModelLoadError: If the reference cannot be resolved
    """
    local_path = Path(model_ref).expanduser()
    if local_path.exists():
        local_path = local_path.resolve()
        _check_trusted(model_ref, local_path, trusted_dirs)
        return local_path

    if model_ref.startswith(HF_SCHEME) or is_content_hash(model_ref):
        if fetcher is None:
            raise ModelLoadError(model_ref, "Model is not available locally and no content fetcher is configured")
        logger.info(f"Model {model_ref} not found locally, fetching")
        try:
            return fetcher.fetch(model_ref)
        except ContentFetchError as exc:
            raise ModelLoadError(model_ref, exc.message) from exc

    # Sanitize path in error to prevent information leakage
    raise ModelLoadError(model_ref, "Model path not found")


def load_model(
    model_id: str,
    load_params: Dict[str, Any],
    backend_name: str = "auto",
    fetcher: Optional[ContentFetcher] = None,
    trusted_dirs: Optional[Iterable[str]] = None,
    backend_factory: Callable[[str, str], ModelBackend] = create_backend,
) -> LoadedModel:
    """
    Load a model from a local path or the content store

    Args:
        model_id: Local path, content hash or hf://<repo>/<file> reference
        load_params: Backend load parameters (n_ctx, n_threads, ...)
        backend_name: "auto", "llama_cpp" or "mlx"
        fetcher: Used when the model file is absent locally
        trusted_dirs: Restrict local paths to these directories
        backend_factory: Creates the backend instance for (name, path)

    Returns:
        LoadedModel with backend and metadata

    Raises:
        ModelLoadError: If loading fails
    """
    path = resolve_model_path(model_id, fetcher, trusted_dirs)
    resolved_backend = detect_backend_name(str(path)) if backend_name == "auto" else backend_name

    start = time.perf_counter()
    backend: Optional[ModelBackend] = None
    try:
        backend = backend_factory(resolved_backend, str(path))
        backend.load(str(path), load_params)
    except ModelLoadError:
        raise
    except FileNotFoundError as exc:
        raise ModelLoadError(model_id, f"Model path not found: {exc}") from exc
    except (RuntimeError, ValueError) as exc:
        _free_quietly(backend)
        raise ModelLoadError(model_id, f"Backend failure: {exc}") from exc
    except Exception as exc:
        _free_quietly(backend)
        raise ModelLoadError(model_id, f"Unexpected loader error: {exc}") from exc

    load_time_s = time.perf_counter() - start
    metadata = {
        "model_id": model_id,
        "path": str(path),
        "backend": resolved_backend,
        "vocab_size": backend.vocab_size,
        "context_length": backend.context_length or load_params.get("n_ctx", 0),
        "loaded_at": time.time(),
        "load_time_s": load_time_s,
    }
    logger.info(f"Loaded model {model_id} via {resolved_backend} in {load_time_s:.2f}s")
    return LoadedModel(model_id=model_id, backend=backend, metadata=metadata)


def _free_quietly(backend: Optional[ModelBackend]) -> None:
    if backend is None:
        return
    try:
        backend.free()
    except Exception as exc:  # noqa: BLE001
        logger.warning(f"Failed to free backend after load failure: {exc}")


def unload_model(backend: ModelBackend) -> None:
    """
    Unload a model and free resources

    Args:
        backend: Loaded backend to release
    """
    try:
        backend.free()
    finally:
        # Force garbage collection
        gc.collect()
