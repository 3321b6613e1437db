"""
Unit tests for ModelCatalog and manifest parsing
"""

from pathlib import Path

import pytest

from errors import UnknownModelError, ValidationError
from fakes import make_config
from model_catalog import ModelCatalog


class TestCatalogFromConfig:
    def test_descriptors(self, tmp_path):
        catalog = ModelCatalog.from_config(make_config(tmp_path))

        assert catalog.ids() == ["yi-coder", "deepseek-coder"]
        assert len(catalog) == 2
        assert "yi-coder" in catalog

        yi = catalog.get("yi-coder")
        assert yi.hub_id == "01-ai/Yi-Coder-1.5B-Chat"
        assert yi.display_name == "Yi Coder 1.5B Chat"
        assert yi.cache_dir == Path(tmp_path) / "01-ai/Yi-Coder-1.5B-Chat"
        assert yi.files_for("weights") == ["model.safetensors"]
        assert yi.filenames[0] == "model.safetensors"
        assert yi.path_for("config.json") == yi.cache_dir / "config.json"

    def test_sharded_weights_keep_order(self, tmp_path):
        deepseek = ModelCatalog.from_config(make_config(tmp_path)).get("deepseek-coder")
        assert deepseek.files_for("weights") == [
            "model-00001-of-000002.safetensors",
            "model-00002-of-000002.safetensors",
        ]
        assert deepseek.description == ""

    def test_unknown_model(self, tmp_path):
        catalog = ModelCatalog.from_config(make_config(tmp_path))
        with pytest.raises(UnknownModelError) as exc_info:
            catalog.get("gpt-9")
        assert exc_info.value.model_id == "gpt-9"
        assert isinstance(exc_info.value, ValidationError)

    def test_repo_config_catalog_parses(self):
        from config_loader import load_config

        catalog = ModelCatalog.from_config(load_config(environment="test"))
        assert "yi-coder" in catalog


class TestManifestValidation:
    def _config(self, tmp_path, model_files, hub_id="org/repo"):
        return make_config(
            tmp_path, models={"m": {"hf_hub_id": hub_id, "model_files": model_files}}
        )

    def test_missing_hub_id(self, tmp_path):
        with pytest.raises(ValueError, match="hf_hub_id"):
            ModelCatalog.from_config(self._config(tmp_path, {"weights": "w.safetensors"}, hub_id=None))

    def test_requires_weights(self, tmp_path):
        with pytest.raises(ValueError, match="weights"):
            ModelCatalog.from_config(self._config(tmp_path, {"config": "config.json"}))

    def test_duplicate_filename(self, tmp_path):
        files = {"weights": "model.safetensors", "config": "model.safetensors"}
        with pytest.raises(ValueError, match="more than once"):
            ModelCatalog.from_config(self._config(tmp_path, files))

    @pytest.mark.parametrize("name", ["../escape.bin", "/etc/passwd"])
    def test_path_escape(self, tmp_path, name):
        with pytest.raises(ValueError, match="escapes"):
            ModelCatalog.from_config(self._config(tmp_path, {"weights": name}))

    def test_empty_role(self, tmp_path):
        with pytest.raises(ValueError):
            ModelCatalog.from_config(self._config(tmp_path, {"weights": []}))
