"""
Model Content Fetcher

Downloads model files that are not present locally before they are loaded.

Features:
- IPFS/Filebase gateway downloads addressed by content hash
- Hugging Face Hub downloads addressed as hf://<repo_id>/<filename>
- Streamed writes to a .part file, renamed only on success
- Progress logging (at most every 5 seconds)

Usage:
    edge-serving fetch QmXT2xkFnG7FP7NTfmDfDFcQLSfCJ3xfPnjCg76gFnq1Hr
    edge-serving fetch hf://unsloth/gemma-3-270m-it-GGUF/gemma-3-270m-it-Q4_0.gguf
"""

import logging
import os
import re
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx
from huggingface_hub import hf_hub_download
from huggingface_hub.utils import HfHubHTTPError

from edge_serving.config_loader import Config
from edge_serving.errors import ContentFetchError

logger = logging.getLogger(__name__)

HF_SCHEME = "hf://"
PROGRESS_LOG_INTERVAL_S = 5.0
_CONTENT_HASH_PATTERN = re.compile(r'^[A-Za-z0-9]{16,128}$')


def is_content_hash(reference: str) -> bool:
    """Whether reference looks like an IPFS CID rather than a path"""
    return bool(_CONTENT_HASH_PATTERN.match(reference))


class ContentFetcher(ABC):
    """Resolves a content reference to a local file path"""

    @abstractmethod
    def fetch(self, content_hash: str) -> Path:
        """
        Make the referenced content available locally

        Raises:
            ContentFetchError: If the content cannot be fetched
        """


class GatewayContentFetcher(ContentFetcher):
    """
    Download models from an IPFS (Filebase) HTTP gateway

    Files are stored as <models_dir>/<hash>.gguf; an existing file is
    returned without contacting the gateway.
    """

    def __init__(
        self,
        gateway_url: str,
        models_dir: Path,
        timeout_s: float = 300.0,
        chunk_size: int = 8192,
        client: Optional[httpx.Client] = None,
    ):
        self.gateway_url = gateway_url if gateway_url.endswith("/") else gateway_url + "/"
        self.models_dir = Path(models_dir)
        self.timeout_s = timeout_s
        self.chunk_size = chunk_size
        self._client = client

    def local_path(self, content_hash: str) -> Path:
        return self.models_dir / f"{content_hash}.gguf"

    def fetch(self, content_hash: str) -> Path:
        if not is_content_hash(content_hash):
            raise ContentFetchError(content_hash, "not a valid content hash")

        local_path = self.local_path(content_hash)
        if local_path.exists():
            logger.info(f"Model already exists locally: {local_path}")
            return local_path

        self.models_dir.mkdir(parents=True, exist_ok=True)
        url = self.gateway_url + content_hash
        part_path = local_path.with_suffix(local_path.suffix + ".part")
        logger.info(f"Downloading model from gateway: {url}")

        client = self._client or httpx.Client(timeout=self.timeout_s, follow_redirects=True)
        try:
            with client.stream("GET", url) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length", 0))
                downloaded = self._write_stream(response, part_path, total)
            os.replace(part_path, local_path)
        except httpx.HTTPStatusError as exc:
            part_path.unlink(missing_ok=True)
            raise ContentFetchError(content_hash, f"gateway returned {exc.response.status_code}") from exc
        except (httpx.HTTPError, OSError) as exc:
            part_path.unlink(missing_ok=True)
            raise ContentFetchError(content_hash, str(exc)) from exc
        finally:
            if self._client is None:
                client.close()

        logger.info(f"Model downloaded successfully: {local_path} ({downloaded} bytes)")
        return local_path

    def _write_stream(self, response: httpx.Response, part_path: Path, total: int) -> int:
        downloaded = 0
        last_log = time.monotonic()
        with open(part_path, "wb") as out:
            for chunk in response.iter_bytes(self.chunk_size):
                out.write(chunk)
                downloaded += len(chunk)
                now = time.monotonic()
                if now - last_log > PROGRESS_LOG_INTERVAL_S:
                    if total:
                        logger.info(f"Download progress: {downloaded / total * 100:.2f}% ({downloaded} / {total} bytes)")
                    else:
                        logger.info(f"Download progress: {downloaded} bytes")
                    last_log = now
        return downloaded


class HuggingFaceContentFetcher(ContentFetcher):
    """Download single model files from the Hugging Face Hub"""

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        token: Optional[str] = None,
        revision: Optional[str] = None,
    ):
        self.cache_dir = cache_dir
        # Get token from env (HF_TOKEN) when not given explicitly
        self.token = token or os.getenv("HF_TOKEN")
        self.revision = revision

    @staticmethod
    def split_reference(reference: str):
        """hf://org/repo/path/file.gguf -> ("org/repo", "path/file.gguf")"""
        body = reference[len(HF_SCHEME):] if reference.startswith(HF_SCHEME) else reference
        parts = body.split("/")
        if len(parts) < 3 or not all(parts):
            raise ContentFetchError(reference, "expected hf://<org>/<repo>/<filename>")
        return "/".join(parts[:2]), "/".join(parts[2:])

    def fetch(self, content_hash: str) -> Path:
        repo_id, filename = self.split_reference(content_hash)
        logger.info(f"Downloading {filename} from Hugging Face repo {repo_id}")
        try:
            path = hf_hub_download(
                repo_id=repo_id,
                filename=filename,
                revision=self.revision,
                cache_dir=str(self.cache_dir) if self.cache_dir else None,
                token=self.token,
            )
        except HfHubHTTPError as exc:
            raise ContentFetchError(content_hash, f"hub request failed: {exc}") from exc
        except OSError as exc:
            raise ContentFetchError(content_hash, str(exc)) from exc
        return Path(path)


class RoutingContentFetcher(ContentFetcher):
    """Send hf:// references to the Hub and everything else to the gateway"""

    def __init__(self, gateway: ContentFetcher, hub: ContentFetcher):
        self.gateway = gateway
        self.hub = hub

    def fetch(self, content_hash: str) -> Path:
        if content_hash.startswith(HF_SCHEME):
            return self.hub.fetch(content_hash)
        return self.gateway.fetch(content_hash)


def create_content_fetcher(config: Config) -> ContentFetcher:
    """Build the default fetcher from runtime configuration"""
    gateway = GatewayContentFetcher(
        gateway_url=config.gateway_url,
        models_dir=Path(config.models_dir),
        timeout_s=config.download_timeout_s,
        chunk_size=config.download_chunk_size,
    )
    return RoutingContentFetcher(gateway=gateway, hub=HuggingFaceContentFetcher())
