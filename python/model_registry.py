"""
Model Registry

Owns every loaded model. Loading a model first makes its files available
through the cache coordinator, then selects a device and runs the loader on
a worker thread. Concurrent requests for the same model share one load, and
a model stays resident once it is ready.
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import Executor
from typing import Any, Callable, Dict, List, Optional

from device_selector import DeviceSelector
from errors import ModelLoadError
from model_catalog import ModelCatalog
from model_downloader import CacheCoordinator
from model_status import ModelState, ModelStatus, StatusTable
from models.loader import LoadedModel, load_model
from single_flight import SingleFlight

# loader_fn(descriptor, cache_paths, device) -> LoadedModel
LoaderFn = Callable[[Any, Any, Any], LoadedModel]


class ModelRegistry:
    """
    Single-flight model loader and cache of loaded models.

    Example:
        ```python
        registry = ModelRegistry(catalog, status, coordinator, selector)

        model = await registry.get_or_load("yi-coder")

        stats = registry.get_stats()
        print(f"Cache hit rate: {stats['cache_hit_rate'] * 100}%")
        ```
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        status: StatusTable,
        coordinator: CacheCoordinator,
        device_selector: DeviceSelector,
        executor: Optional[Executor] = None,
        loader_fn: Optional[LoaderFn] = None,
        telemetry=None,
    ):
        self.catalog = catalog
        self.status_table = status
        self.coordinator = coordinator
        self.device_selector = device_selector
        self.executor = executor
        self.loader_fn = loader_fn or load_model
        self.telemetry = telemetry
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._loaded: Dict[str, LoadedModel] = {}
        self._flights: SingleFlight[LoadedModel] = SingleFlight("load")

        # Statistics
        self.cache_hits = 0
        self.cache_misses = 0
        self.total_load_time = 0.0
        self.load_count = 0

    def get_loaded(self, model_id: str) -> Optional[LoadedModel]:
        with self._lock:
            return self._loaded.get(model_id)

    async def get_or_load(self, model_id: str) -> LoadedModel:
        """
        Return the loaded model, loading it (and downloading it) if needed.

        A ready model is returned without any I/O.

        Raises:
            UnknownModelError: If the model is not in the catalog
            DownloadError: If the model files cannot be fetched
            ModelLoadError: If the model cannot be loaded
        """
        loaded = self.get_loaded(model_id)
        if loaded is not None:
            self.cache_hits += 1
            self.logger.debug(f"Cache hit: {model_id}")
            return loaded

        self.catalog.get(model_id)
        self.cache_misses += 1
        return await self._flights.do(model_id, lambda: self._load(model_id))

    async def _load(self, model_id: str) -> LoadedModel:
        loaded = self.get_loaded(model_id)
        if loaded is not None:
            return loaded

        descriptor = self.catalog.get(model_id)
        paths = await self.coordinator.ensure_available(model_id)

        self.status_table.transition(model_id, ModelState.LOADING)
        self.logger.info(f"Loading model {model_id} from {paths.root}")
        start_time = time.time()

        loop = asyncio.get_running_loop()
        try:
            device = await loop.run_in_executor(self.executor, self.device_selector.select_device)
            loaded = await loop.run_in_executor(self.executor, self.loader_fn, descriptor, paths, device)
        except Exception as exc:
            error = exc if isinstance(exc, ModelLoadError) else ModelLoadError(model_id, f"{type(exc).__name__}: {exc}")
            self.status_table.fail(model_id, error.reason)
            self.logger.error(f"Failed to load model {model_id}: {error.reason}")
            if self.telemetry:
                self.telemetry.record_error("load")
            if error is exc:
                raise
            raise error from exc

        load_time = time.time() - start_time
        with self._lock:
            self._loaded[model_id] = loaded
            self.status_table.transition(model_id, ModelState.READY)
            self.total_load_time += load_time
            self.load_count += 1

        if self.telemetry:
            self.telemetry.record_load(load_time)
        self.logger.info(
            f"Model loaded: {model_id} "
            f"(load_time={load_time:.2f}s, device={getattr(device, 'name', device)}, "
            f"loaded_models={len(self._loaded)})"
        )
        return loaded

    def is_available(self, model_id: str) -> bool:
        """True once the model is loaded; never blocks on in-flight work"""
        return self.status_table.get(model_id).is_ready

    def status(self, model_id: str) -> ModelStatus:
        return self.status_table.get(model_id)

    def list_loaded(self) -> List[str]:
        with self._lock:
            return list(self._loaded)

    def get_stats(self) -> Dict[str, Any]:
        total_requests = self.cache_hits + self.cache_misses
        return {
            "loaded_models": len(self._loaded),
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": self.cache_hits / total_requests if total_requests > 0 else 0.0,
            "load_count": self.load_count,
            "avg_load_time": self.total_load_time / self.load_count if self.load_count > 0 else 0.0,
        }
