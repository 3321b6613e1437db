"""
Server state

Builds and owns the runtime components for one process: catalog, status
table, cache coordinator, device selector, model registry, generation engine,
telemetry and the worker thread pool. Passed explicitly to whoever needs it.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from config_loader import Config, get_config
from device_selector import DeviceProbe, DeviceSelector
from model_catalog import ModelCatalog
from model_downloader import CacheCoordinator, Fetcher
from model_registry import LoaderFn, ModelRegistry
from model_status import StatusTable
from models.generator import GenerationEngine
from telemetry import RuntimeTelemetry

logger = logging.getLogger(__name__)


@dataclass
class ServerState:
    config: Config
    catalog: ModelCatalog
    status: StatusTable
    coordinator: CacheCoordinator
    device_selector: DeviceSelector
    registry: ModelRegistry
    engine: GenerationEngine
    telemetry: RuntimeTelemetry
    executor: ThreadPoolExecutor

    @classmethod
    def from_config(
        cls,
        config: Optional[Config] = None,
        *,
        fetcher: Optional[Fetcher] = None,
        loader_fn: Optional[LoaderFn] = None,
        device_probe: Optional[DeviceProbe] = None,
    ) -> "ServerState":
        """
        Wire up every component from configuration.

        `fetcher`, `loader_fn` and `device_probe` replace the Hugging Face
        download, the MLX loader and the MLX device probe respectively.
        """
        config = config or get_config()
        catalog = ModelCatalog.from_config(config)
        status = StatusTable(catalog.ids())
        telemetry = RuntimeTelemetry(
            enabled=config.telemetry_enabled, sampling_rate=config.telemetry_sampling_rate
        )
        executor = ThreadPoolExecutor(max_workers=config.worker_threads, thread_name_prefix="coder-worker")

        coordinator = CacheCoordinator(
            catalog,
            status,
            executor=executor,
            fetcher=fetcher,
            token=config.get_hf_token(),
            telemetry=telemetry,
        )
        coordinator.refresh_status()

        device_selector = DeviceSelector(preferred=config.preferred_device, probe=device_probe)
        registry = ModelRegistry(
            catalog,
            status,
            coordinator,
            device_selector,
            executor=executor,
            loader_fn=loader_fn,
            telemetry=telemetry,
        )
        engine = GenerationEngine(
            executor=executor,
            concurrency_limit=config.generation_concurrency_limit,
            telemetry=telemetry,
        )

        logger.info(f"Server state ready: models={catalog.ids()}, cache={config.models_cache_dir}")
        return cls(
            config=config,
            catalog=catalog,
            status=status,
            coordinator=coordinator,
            device_selector=device_selector,
            registry=registry,
            engine=engine,
            telemetry=telemetry,
            executor=executor,
        )

    def close(self) -> None:
        self.executor.shutdown(wait=False, cancel_futures=True)
