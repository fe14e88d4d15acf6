"""Asset resolver: fetch model files from the Hugging Face Hub into a local cache.

Local layout is flat and predictable:

    <cache_root>/<repo_id>/<relative path in repo>

e.g. models/onnx-community/SmolLM-135M-ONNX/onnx/model_q4.onnx. Once a
file exists at its local path it is never re-fetched, so repeated calls
are no-ops and a pre-populated cache works offline.

The cache root is `cache_root` if given, else $CACHE_DIR, else ./models.
"""

import logging
import os
from pathlib import Path
from typing import Iterable

from huggingface_hub import file_exists, hf_hub_download
from huggingface_hub.errors import EntryNotFoundError, RepositoryNotFoundError

from .errors import AssetNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_ROOT = "models"


class AssetResolver:
    """Downloads repo files on first use and serves them from disk afterwards."""

    def __init__(self, cache_root: str | Path | None = None,
                 revision: str | None = None,
                 token: str | None = None) -> None:
        if cache_root is None:
            cache_root = os.environ.get("CACHE_DIR") or DEFAULT_CACHE_ROOT
        self.cache_root = Path(cache_root)
        self.revision = revision
        self.token = token

    def repo_dir(self, repo_id: str) -> Path:
        return self.cache_root / repo_id

    def local_path(self, repo_id: str, filename: str) -> Path:
        return self.repo_dir(repo_id) / filename

    def fetch(self, repo_id: str, filename: str) -> Path:
        """Local path of a required file, downloading it if not cached.

        Raises:
            AssetNotFoundError: If the repo or file doesn't exist upstream.
        """
        path = self.local_path(repo_id, filename)
        if path.is_file():
            logger.debug("cache hit: %s", path)
            return path

        self.repo_dir(repo_id).mkdir(parents=True, exist_ok=True)
        try:
            downloaded = hf_hub_download(
                repo_id=repo_id,
                filename=filename,
                revision=self.revision,
                token=self.token,
                local_dir=self.repo_dir(repo_id),
            )
        except (EntryNotFoundError, RepositoryNotFoundError) as exc:
            raise AssetNotFoundError(repo_id, filename) from exc
        logger.debug("downloaded %s/%s -> %s", repo_id, filename, downloaded)
        return Path(downloaded)

    def fetch_optional(self, repo_id: str,
                       filenames: Iterable[str]) -> dict[str, Path]:
        """Fetch whichever of `filenames` exist; absent ones are omitted.

        Cached files are returned without touching the network. Others are
        probed first so a missing file is skipped rather than treated as
        an error.
        """
        found: dict[str, Path] = {}
        for name in filenames:
            if not name:
                continue
            path = self.local_path(repo_id, name)
            if path.is_file():
                found[name] = path
                continue
            if not file_exists(repo_id, name, revision=self.revision, token=self.token):
                logger.debug("optional file absent: %s/%s", repo_id, name)
                continue
            found[name] = self.fetch(repo_id, name)
        return found

    def downloaded(self, repo_id: str) -> list[str]:
        """Relative paths of the files cached for a repo."""
        root = self.repo_dir(repo_id)
        if not root.is_dir():
            return []
        return sorted(
            str(p.relative_to(root)) for p in root.rglob("*")
            if p.is_file() and ".cache" not in p.relative_to(root).parts
        )


def model_files_list(defaults: list[str]) -> list[str]:
    """Auxiliary file list, overridable via $MODEL_FILES (comma-separated)."""
    value = os.environ.get("MODEL_FILES", "")
    files = [p.strip() for p in value.split(",") if p.strip()]
    return files or list(defaults)
