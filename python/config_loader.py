"""
Python Configuration Loader

Loads runtime configuration from YAML files to eliminate hardcoded values
"""

import logging
import os
import threading
import yaml
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class Config:
    """Runtime configuration loaded from YAML"""

    def __init__(self, config_dict: Dict[str, Any]):
        config_dict = config_dict or {}

        # Runtime
        runtime = config_dict.get("runtime", {})
        self.worker_threads = runtime.get("worker_threads", 4)
        self.max_buffer_size = runtime.get("max_buffer_size", 1_048_576)
        self.shutdown_timeout_ms = runtime.get("shutdown_timeout_ms", 5000)
        self.binary_streaming = runtime.get("binary_streaming", False)

        # Model cache
        cache = config_dict.get("cache", {})
        self.models_cache_dir = cache.get("models_cache_dir", "models_cache")
        self.hf_token_env = cache.get("hf_token_env", "HF_TOKEN")

        # Chat defaults (applied when a request omits a field)
        chat = config_dict.get("chat", {})
        defaults = chat.get("defaults", {})
        self.default_temperature = defaults.get("temperature", 0.7)
        self.default_top_p = defaults.get("top_p", 0.9)
        self.default_n = defaults.get("n", 1)
        self.default_max_tokens = defaults.get("max_tokens", 2048)
        self.default_stream = defaults.get("stream", False)

        # Limits
        limits = config_dict.get("limits", {})
        self.max_generation_tokens = limits.get("max_generation_tokens", 4096)
        self.max_temperature = limits.get("max_temperature", 2.0)
        self.max_choices = limits.get("max_choices", 8)
        self.max_messages = limits.get("max_messages", 256)

        # Streaming pipeline
        streaming = config_dict.get("streaming", {})
        self.stream_queue_size = streaming.get("queue_size", 64)
        self.queue_put_timeout_ms = streaming.get("put_timeout_ms", 30000)

        # Generation
        generation = config_dict.get("generation", {})
        self.generation_concurrency_limit = generation.get("concurrency_limit", 1)
        self.generation_timeout_seconds = generation.get("timeout_seconds")
        self.preferred_device = generation.get("preferred_device", "gpu")

        # Development
        dev = config_dict.get("development", {})
        self.verbose = dev.get("verbose", False)
        self.debug = dev.get("debug", False)
        self.log_level = dev.get("log_level", "DEBUG" if self.debug else "INFO")

        # Telemetry
        telemetry = config_dict.get("telemetry", {})
        self.telemetry_enabled = telemetry.get("enabled", True)
        self.telemetry_sampling_rate = telemetry.get("sampling_rate", 1.0)

        # Model catalog, parsed by model_catalog.ModelCatalog.from_config
        self.models = config_dict.get("models", {}) or {}

    def validate(self) -> None:
        """
        Validate configuration values

        Raises:
            ValueError: If any configuration value is invalid
        """
        if self.worker_threads < 1:
            raise ValueError(f"worker_threads must be >= 1, got {self.worker_threads}")

        if self.max_buffer_size < 1024:
            raise ValueError(f"max_buffer_size must be >= 1024 bytes, got {self.max_buffer_size}")

        if self.max_temperature <= 0 or self.max_temperature > 10.0:
            raise ValueError(f"max_temperature must be in range (0, 10], got {self.max_temperature}")

        if not 0 < self.default_temperature <= self.max_temperature:
            raise ValueError(
                f"chat.defaults.temperature must be in range (0, {self.max_temperature}], "
                f"got {self.default_temperature}"
            )

        if not 0 < self.default_top_p <= 1.0:
            raise ValueError(f"chat.defaults.top_p must be in range (0, 1], got {self.default_top_p}")

        if self.max_generation_tokens < 1:
            raise ValueError(f"max_generation_tokens must be >= 1, got {self.max_generation_tokens}")

        if not 1 <= self.default_max_tokens <= self.max_generation_tokens:
            raise ValueError(
                f"chat.defaults.max_tokens must be in range [1, {self.max_generation_tokens}], "
                f"got {self.default_max_tokens}"
            )

        if self.max_choices < 1 or not 1 <= self.default_n <= self.max_choices:
            raise ValueError(f"chat.defaults.n must be in range [1, {self.max_choices}], got {self.default_n}")

        if self.stream_queue_size < 1:
            raise ValueError(f"streaming.queue_size must be >= 1, got {self.stream_queue_size}")

        if self.queue_put_timeout_ms <= 0:
            raise ValueError(f"streaming.put_timeout_ms must be > 0, got {self.queue_put_timeout_ms}")

        if self.generation_concurrency_limit < 1 or self.generation_concurrency_limit > 16:
            raise ValueError(
                f"generation.concurrency_limit must be in range [1, 16], got {self.generation_concurrency_limit}"
            )

        if self.generation_timeout_seconds is not None and self.generation_timeout_seconds <= 0:
            raise ValueError(f"generation.timeout_seconds must be > 0, got {self.generation_timeout_seconds}")

        if self.preferred_device not in ("gpu", "cpu"):
            raise ValueError(f"generation.preferred_device must be 'gpu' or 'cpu', got {self.preferred_device}")

        if self.telemetry_sampling_rate < 0 or self.telemetry_sampling_rate > 1.0:
            raise ValueError(f"telemetry_sampling_rate must be in range [0, 1], got {self.telemetry_sampling_rate}")

        if not isinstance(self.models, dict):
            raise ValueError("models section must be a mapping of model id to descriptor")

    def get_queue_put_timeout_seconds(self) -> float:
        """Convert the stream put timeout from MS to seconds"""
        return self.queue_put_timeout_ms / 1000

    def get_hf_token(self) -> Optional[str]:
        return os.getenv(self.hf_token_env) if self.hf_token_env else None


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries"""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def find_config_path() -> Optional[Path]:
    """Search upward from this module for config/runtime.yaml"""
    current = Path(__file__).parent
    for _ in range(5):  # Search up to 5 levels
        candidate = current / "config" / "runtime.yaml"
        if candidate.exists():
            return candidate
        parent = current.parent
        if parent == current:
            break
        current = parent
    return None


def load_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """
    Load configuration from YAML file

    Args:
        config_path: Path to config file (defaults to project_root/config/runtime.yaml,
            or built-in defaults when no such file exists)
        environment: Environment name (production/development/test)

    Returns:
        Config instance

    Raises:
        FileNotFoundError: If an explicit config file is not found
        ValueError: If the config file is invalid
    """
    if config_path is None:
        found = find_config_path()
        if found is None:
            logger.warning("No config/runtime.yaml found, using built-in defaults")
            config = Config({})
            config.validate()
            return config
        config_path = str(found)

    try:
        with open(config_path, "r") as f:
            base_config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as exc:
        raise ValueError(f"Failed to parse YAML config file '{config_path}': {exc}") from exc

    env = environment or os.getenv("PYTHON_ENV") or "development"

    final_config = base_config
    if "environments" in base_config and env in (base_config["environments"] or {}):
        env_overrides = base_config["environments"][env] or {}
        final_config = deep_merge(base_config, env_overrides)

    if "environments" in final_config:
        final_config = {k: v for k, v in final_config.items() if k != "environments"}

    config = Config(final_config)
    config.validate()
    return config


# Global config instance
_global_config: Optional[Config] = None
_config_lock = threading.Lock()


def initialize_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """Initialize global configuration (thread-safe)"""
    global _global_config
    with _config_lock:
        _global_config = load_config(config_path, environment)
        return _global_config


def get_config() -> Config:
    """
    Get global configuration (lazy initialization)

    Double-checked locking keeps concurrent first callers from loading
    the file twice.
    """
    global _global_config

    if _global_config is not None:
        return _global_config

    with _config_lock:
        if _global_config is None:
            _global_config = load_config()
        return _global_config
