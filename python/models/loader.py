"""
Model loader - Thin wrapper around mlx-lm

Responsibilities:
- Load a cached catalog model from its local directory
- Return an immutable LoadedModel with model, tokenizer adapter and metadata
- Build per-session decoders so mutable decode state never lives on the
  shared model
- No caching logic (the model registry decides when to load)
"""

import json
import logging
import platform
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, Optional, Sequence

import numpy as np

from errors import ModelLoadError
from models.tokenizer import TokenizerAdapter


# MLX imports - guarded because Apple MLX aborts on unsupported hosts
def _is_supported_mlx_platform() -> bool:
    """Check whether this host can safely import MLX."""
    system = platform.system().lower()
    if system != "darwin":
        return False
    machine = platform.machine().lower()
    return machine in {"arm64", "x86_64"}


load_text_model: Optional[Callable[..., Any]] = None
make_prompt_cache: Optional[Callable[..., Any]] = None
MLX_AVAILABLE = False
MLX_IMPORT_ERROR: Optional[str] = None

if _is_supported_mlx_platform():
    try:
        import mlx.core as mx
        from mlx_lm import load as load_text_model
        from mlx_lm.models.cache import make_prompt_cache

        MLX_AVAILABLE = True
    except Exception as exc:  # noqa: BLE001
        # Record reason for diagnostics while keeping runtime alive on failure.
        MLX_AVAILABLE = False
        MLX_IMPORT_ERROR = f"mlx-lm import failed: {exc}"
else:
    MLX_IMPORT_ERROR = "MLX runtime unsupported on this platform"

try:
    if MLX_AVAILABLE:
        from mlx.utils import tree_flatten
        HAS_TREE_FLATTEN = True
    else:
        raise ImportError
except ImportError:
    HAS_TREE_FLATTEN = False
    tree_flatten = None

logger = logging.getLogger(__name__)

# decoder(token_ids) -> logits over the vocabulary for the next position
Decoder = Callable[[Sequence[int]], np.ndarray]

DEFAULT_CONTEXT_LENGTH = 4096


@dataclass(frozen=True)
class LoadedModel:
    """Loaded model shared read-only by every session"""

    model_id: str
    model: Any
    tokenizer: TokenizerAdapter
    device: Any
    eos_token_ids: FrozenSet[int]
    metadata: Dict[str, Any] = field(default_factory=dict)
    decoder_factory: Optional[Callable[[], Decoder]] = None

    def new_decoder(self) -> Decoder:
        """A fresh decoder with its own decode state for one session"""
        if self.decoder_factory is not None:
            return self.decoder_factory()
        return MLXDecoder(self.model)

    @property
    def context_length(self) -> int:
        return int(self.metadata.get("context_length", DEFAULT_CONTEXT_LENGTH))


class MLXDecoder:
    """
    Incremental forward pass over an mlx-lm model.

    Owns the session's KV cache; each call feeds only tokens the cache has
    not seen and returns the logits for the next position.
    """

    def __init__(self, model: Any):
        self._model = model
        self._cache = make_prompt_cache(model) if make_prompt_cache is not None else None
        self._consumed = 0

    def __call__(self, token_ids: Sequence[int]) -> np.ndarray:
        pending = list(token_ids[self._consumed:]) if self._cache is not None else list(token_ids)
        if not pending:
            raise ValueError("decoder called without new tokens")
        logits = self._model(mx.array(pending)[None], cache=self._cache)
        last = logits[0, -1, :].astype(mx.float32)
        mx.eval(last)
        self._consumed = len(token_ids)
        return np.array(last)


def _read_json(path: Optional[Path]) -> Dict[str, Any]:
    if path is None or not path.exists():
        return {}
    with open(path, "r") as f:
        data = json.load(f)
    return data if isinstance(data, dict) else {}


def _resolve_context_length(model_config: Dict[str, Any]) -> int:
    for key in (
        "max_position_embeddings",
        "n_ctx",
        "max_sequence_length",
        "context_length",
        "model_max_length",
    ):
        value = model_config.get(key)
        if value:
            return int(value)
    return DEFAULT_CONTEXT_LENGTH


def _eos_ids(generation_config: Dict[str, Any], model_config: Dict[str, Any]) -> FrozenSet[int]:
    ids = set()
    for source in (generation_config, model_config):
        value = source.get("eos_token_id")
        if isinstance(value, int):
            ids.add(value)
        elif isinstance(value, list):
            ids.update(v for v in value if isinstance(v, int))
    return frozenset(ids)


def _count_parameters(model: Any) -> int:
    if not HAS_TREE_FLATTEN:
        return 0
    try:
        return int(sum(v.size for _, v in tree_flatten(model.parameters())))
    except (AttributeError, TypeError, ValueError):
        return 0


def load_model(descriptor, paths, device) -> LoadedModel:
    """
    Load a cached catalog model onto the selected device

    Args:
        descriptor: ModelDescriptor from the catalog
        paths: CachePaths returned by the cache coordinator
        device: Device chosen by the device selector

    Returns:
        LoadedModel ready for generation

    Raises:
        ModelLoadError: If loading fails
    """
    model_id = descriptor.id
    if not MLX_AVAILABLE or load_text_model is None:
        raise ModelLoadError(model_id, MLX_IMPORT_ERROR or "MLX not available - install mlx-lm")

    start_time = time.time()
    try:
        if getattr(device, "handle", None) is not None:
            mx.set_default_device(device.handle)

        model, tokenizer = load_text_model(str(paths.root))
        if model is None or tokenizer is None:
            raise RuntimeError("Loader returned empty model/tokenizer")

        model_config = _read_json(paths.first("config"))
        generation_config = _read_json(paths.first("generation_config"))
        eos_token_ids = _eos_ids(generation_config, model_config)
        adapter = TokenizerAdapter(model_id, tokenizer, eos_token_ids)

        try:
            first_param = next(iter(tree_flatten(model.parameters())))[1] if HAS_TREE_FLATTEN else None
            dtype = str(first_param.dtype) if first_param is not None else "unknown"
        except (StopIteration, AttributeError, IndexError):
            dtype = "unknown"

        metadata = {
            "model_id": model_id,
            "hub_id": descriptor.hub_id,
            "parameter_count": _count_parameters(model),
            "dtype": dtype,
            "context_length": _resolve_context_length(model_config),
            "config_model_type": model_config.get("model_type", "unknown"),
            "generation_defaults": {
                key: generation_config[key]
                for key in ("temperature", "top_p", "max_new_tokens")
                if key in generation_config
            },
            "device": getattr(device, "name", str(device)),
            "cached_path": str(paths.root),
            "loaded_at": time.time(),
            "load_time": time.time() - start_time,
        }

        return LoadedModel(
            model_id=model_id,
            model=model,
            tokenizer=adapter,
            device=device,
            eos_token_ids=adapter.eos_token_ids,
            metadata=metadata,
        )

    except ModelLoadError:
        raise
    except FileNotFoundError as exc:
        raise ModelLoadError(model_id, f"Model file not found: {exc}") from exc
    except (json.JSONDecodeError, RuntimeError) as exc:
        raise ModelLoadError(model_id, f"Backend failure: {exc}") from exc
    except Exception as exc:
        raise ModelLoadError(model_id, f"Unexpected loader error: {exc}") from exc
