"""
Model Catalog

Static description of every model the runtime can serve: where it lives on
the hub, which files make it up, and where those files are cached locally.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Tuple

from errors import UnknownModelError
from validators import validate_model_id


@dataclass(frozen=True)
class ModelDescriptor:
    """Immutable description of one servable model"""

    id: str
    display_name: str
    description: str
    hub_id: str
    file_manifest: Tuple[Tuple[str, str], ...]  # ordered (role, filename)
    cache_dir: Path

    @property
    def filenames(self) -> List[str]:
        return [filename for _, filename in self.file_manifest]

    def files_for(self, role: str) -> List[str]:
        return [filename for r, filename in self.file_manifest if r == role]

    def path_for(self, filename: str) -> Path:
        return self.cache_dir / filename


def _parse_manifest(model_id: str, files: Mapping[str, Any]) -> Tuple[Tuple[str, str], ...]:
    """Flatten a role -> filename(s) mapping into ordered (role, filename) pairs"""
    if not isinstance(files, Mapping) or not files:
        raise ValueError(f"Model {model_id} must declare a non-empty model_files mapping")

    manifest: List[Tuple[str, str]] = []
    seen = set()
    for role, value in files.items():
        names = value if isinstance(value, (list, tuple)) else [value]
        if not names:
            raise ValueError(f"Model {model_id} declares no files for role '{role}'")
        for name in names:
            if not isinstance(name, str) or not name.strip():
                raise ValueError(f"Model {model_id} has an invalid filename for role '{role}': {name!r}")
            if name.startswith("/") or ".." in Path(name).parts:
                raise ValueError(f"Model {model_id} filename escapes the cache directory: {name}")
            if name in seen:
                raise ValueError(f"Model {model_id} lists file '{name}' more than once")
            seen.add(name)
            manifest.append((str(role), name))

    if not any(role == "weights" for role, _ in manifest):
        raise ValueError(f"Model {model_id} must declare at least one weights file")

    return tuple(manifest)


class ModelCatalog:
    """Read-only registry of model descriptors, keyed by model id"""

    def __init__(self, descriptors: Iterable[ModelDescriptor]):
        self._descriptors: Dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.id in self._descriptors:
                raise ValueError(f"Duplicate model id in catalog: {descriptor.id}")
            self._descriptors[descriptor.id] = descriptor

    @classmethod
    def from_config(cls, config) -> "ModelCatalog":
        """
        Build the catalog from the `models` section of the runtime config.

        Each entry provides `hf_hub_id` and `model_files` (role -> filename or
        list of filenames). Files are cached under
        `<models_cache_dir>/<hf_hub_id>/`.
        """
        cache_root = Path(config.models_cache_dir).expanduser()
        descriptors = []
        for model_id, entry in config.models.items():
            validate_model_id(model_id)
            entry = entry or {}
            hub_id = entry.get("hf_hub_id")
            if not hub_id:
                raise ValueError(f"Model {model_id} is missing hf_hub_id")
            descriptors.append(
                ModelDescriptor(
                    id=model_id,
                    display_name=entry.get("display_name", model_id),
                    description=entry.get("description", ""),
                    hub_id=hub_id,
                    file_manifest=_parse_manifest(model_id, entry.get("model_files")),
                    cache_dir=cache_root / hub_id,
                )
            )
        return cls(descriptors)

    def get(self, model_id: str) -> ModelDescriptor:
        """
        Look up a descriptor.

        Raises:
            UnknownModelError: If the id is not in the catalog
        """
        descriptor = self._descriptors.get(model_id)
        if descriptor is None:
            raise UnknownModelError(model_id)
        return descriptor

    def ids(self) -> List[str]:
        return list(self._descriptors)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._descriptors

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)
