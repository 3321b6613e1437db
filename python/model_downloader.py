"""
Model cache and download coordinator

Makes the files of a catalog model present in the local cache, fetching
missing ones from the Hugging Face Hub. Concurrent requests for the same model
share one download, and every file is published with an atomic rename so the
cache never exposes a partial file under its final name.

Usage:
    python python/model_downloader.py status
    python python/model_downloader.py download yi-coder
"""

import argparse
import asyncio
import logging
import os
import sys
import tempfile
import time
from concurrent.futures import Executor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from errors import DownloadError
from model_catalog import ModelCatalog, ModelDescriptor
from model_status import ModelState, StatusTable
from single_flight import SingleFlight

try:
    from huggingface_hub import hf_hub_download
    from huggingface_hub.utils import EntryNotFoundError, HfHubHTTPError, RepositoryNotFoundError

    HF_HUB_AVAILABLE = True
except ImportError:
    HF_HUB_AVAILABLE = False

logger = logging.getLogger(__name__)

# fetcher(hub_id, filename, dest_dir, token) -> path of the fetched file inside dest_dir
Fetcher = Callable[[str, str, Path, Optional[str]], Path]


@dataclass(frozen=True)
class CachePaths:
    """Local paths of every manifest file for one cached model"""

    model_id: str
    root: Path
    files: Dict[str, List[Path]] = field(default_factory=dict)  # role -> paths

    def paths_for(self, role: str) -> List[Path]:
        return list(self.files.get(role, []))

    def first(self, role: str) -> Optional[Path]:
        paths = self.files.get(role)
        return paths[0] if paths else None

    @property
    def weights(self) -> List[Path]:
        return self.paths_for("weights")

    @property
    def all_paths(self) -> List[Path]:
        return [path for paths in self.files.values() for path in paths]


def hf_fetch(hub_id: str, filename: str, dest_dir: Path, token: Optional[str] = None) -> Path:
    """Fetch one file from the Hugging Face Hub into dest_dir"""
    if not HF_HUB_AVAILABLE:
        raise DownloadError(hub_id, "huggingface_hub not installed (pip install huggingface-hub)")

    try:
        path = hf_hub_download(
            repo_id=hub_id,
            filename=filename,
            local_dir=str(dest_dir),
            token=token,
        )
    except (EntryNotFoundError, RepositoryNotFoundError) as exc:
        raise DownloadError(hub_id, f"{filename} not found on hub") from exc
    except HfHubHTTPError as exc:
        raise DownloadError(hub_id, f"HTTP error fetching {filename}: {exc}") from exc

    return Path(path)


def _file_present(path: Path) -> bool:
    try:
        return path.is_file() and path.stat().st_size > 0
    except OSError:
        return False


class CacheCoordinator:
    """
    Ensures model files are present in the local cache.

    Downloads run on the given executor (blocking network and disk I/O) and
    are deduplicated per model id.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        status: StatusTable,
        executor: Optional[Executor] = None,
        fetcher: Optional[Fetcher] = None,
        token: Optional[str] = None,
        telemetry=None,
    ):
        self.catalog = catalog
        self.status = status
        self.executor = executor
        self.fetcher = fetcher or hf_fetch
        self.token = token
        self.telemetry = telemetry
        self._flights: SingleFlight[CachePaths] = SingleFlight("download")

        self.download_count = 0
        self.files_fetched = 0

    def cache_paths(self, model_id: str) -> CachePaths:
        descriptor = self.catalog.get(model_id)
        files: Dict[str, List[Path]] = {}
        for role, filename in descriptor.file_manifest:
            files.setdefault(role, []).append(descriptor.path_for(filename))
        return CachePaths(model_id=model_id, root=descriptor.cache_dir, files=files)

    def missing_files(self, model_id: str) -> List[str]:
        """Manifest files that are absent or empty on disk"""
        descriptor = self.catalog.get(model_id)
        return [name for name in descriptor.filenames if not _file_present(descriptor.path_for(name))]

    def is_cached(self, model_id: str) -> bool:
        return not self.missing_files(model_id)

    def refresh_status(self) -> None:
        """Mark models already present on disk as cached"""
        for descriptor in self.catalog:
            if self.is_cached(descriptor.id):
                self.status.advance_to(descriptor.id, ModelState.CACHED)

    async def ensure_available(self, model_id: str) -> CachePaths:
        """
        Make every manifest file of a model present in the cache.

        Returns immediately when all files are present. Otherwise joins or
        starts the single download for this model.

        Raises:
            UnknownModelError: If the model is not in the catalog
            DownloadError: If any file cannot be fetched
        """
        self.catalog.get(model_id)

        if self.is_cached(model_id):
            self.status.advance_to(model_id, ModelState.CACHED)
            return self.cache_paths(model_id)

        return await self._flights.do(model_id, lambda: self._download(model_id))

    async def _download(self, model_id: str) -> CachePaths:
        descriptor = self.catalog.get(model_id)

        # A previous flight may have completed between the check and this one
        missing = self.missing_files(model_id)
        if not missing:
            self.status.advance_to(model_id, ModelState.CACHED)
            return self.cache_paths(model_id)

        self.status.transition(model_id, ModelState.DOWNLOADING)
        logger.info(f"Downloading {model_id} from {descriptor.hub_id} ({len(missing)} files)")
        start_time = time.time()

        loop = asyncio.get_running_loop()
        try:
            for filename in missing:
                await loop.run_in_executor(self.executor, self._fetch_file, descriptor, filename)
        except Exception as exc:
            reason = exc.reason if isinstance(exc, DownloadError) else f"{type(exc).__name__}: {exc}"
            self.status.fail(model_id, reason)
            logger.error(f"Download failed for {model_id}: {reason}")
            if self.telemetry:
                self.telemetry.record_error("download")
            if isinstance(exc, DownloadError) and exc.model_id == model_id:
                raise
            raise DownloadError(model_id, reason) from exc

        elapsed = time.time() - start_time
        self.download_count += 1
        self.status.transition(model_id, ModelState.CACHED)
        if self.telemetry:
            self.telemetry.record_download(elapsed)
        logger.info(f"Model cached: {model_id} (files={len(missing)}, time={elapsed:.2f}s)")
        return self.cache_paths(model_id)

    def _fetch_file(self, descriptor: ModelDescriptor, filename: str) -> Path:
        """Fetch into a temporary directory next to the target, then rename into place"""
        final_path = descriptor.path_for(filename)
        final_path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory(dir=descriptor.cache_dir, prefix=".download-") as tmp:
            fetched = Path(self.fetcher(descriptor.hub_id, filename, Path(tmp), self.token))
            if not _file_present(fetched):
                raise DownloadError(descriptor.id, f"partial or empty download for {filename}")
            os.replace(fetched, final_path)

        self.files_fetched += 1
        logger.debug(f"Fetched {descriptor.id}/{filename}")
        return final_path


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point"""
    from config_loader import load_config

    parser = argparse.ArgumentParser(description="Manage the local model cache")
    parser.add_argument("--config", help="Path to runtime.yaml")
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("status", help="Show cache status of catalog models")
    download_parser = subparsers.add_parser("download", help="Download a catalog model")
    download_parser.add_argument("model_id", help="Catalog model id (e.g., yi-coder)")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    config = load_config(args.config)
    catalog = ModelCatalog.from_config(config)
    coordinator = CacheCoordinator(catalog, StatusTable(catalog.ids()), token=config.get_hf_token())

    if args.command == "status":
        for descriptor in catalog:
            missing = coordinator.missing_files(descriptor.id)
            state = "cached" if not missing else f"missing {len(missing)}/{len(descriptor.filenames)} files"
            print(f"{descriptor.id:20} {descriptor.hub_id:50} {state}")
        return 0

    try:
        paths = asyncio.run(coordinator.ensure_available(args.model_id))
    except (DownloadError, ValueError) as exc:
        print(f"ERROR: {exc}", file=sys.stderr)
        return 1
    print(f"{args.model_id} cached at {paths.root}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
