"""
Unit tests for the YAML configuration loader

Tests environment overrides, defaults, validation and the global config
accessor.
"""

import pytest
import yaml

import config_loader
from config_loader import Config, deep_merge, get_config, initialize_config, load_config


@pytest.fixture
def temp_config(tmp_path):
    """Create a temporary config file"""
    config_data = {
        "runtime": {"worker_threads": 4},
        "chat": {"defaults": {"temperature": 0.5, "max_tokens": 128}},
        "streaming": {"queue_size": 16},
        "models": {
            "tiny": {"hf_hub_id": "org/tiny", "model_files": {"weights": "model.safetensors"}},
        },
        "environments": {
            "test": {"runtime": {"worker_threads": 1}, "streaming": {"put_timeout_ms": 100}},
        },
    }
    config_file = tmp_path / "runtime.yaml"
    with open(config_file, "w") as f:
        yaml.dump(config_data, f)
    return config_file


class TestLoadConfig:
    def test_base_values(self, temp_config):
        config = load_config(str(temp_config), "production")

        assert config.worker_threads == 4
        assert config.default_temperature == 0.5
        assert config.default_max_tokens == 128
        assert config.default_top_p == 0.9
        assert config.stream_queue_size == 16
        assert "tiny" in config.models

    def test_environment_override(self, temp_config):
        config = load_config(str(temp_config), "test")

        assert config.worker_threads == 1
        assert config.get_queue_put_timeout_seconds() == pytest.approx(0.1)
        # Untouched keys keep base values
        assert config.stream_queue_size == 16

    def test_environment_from_env_var(self, temp_config, monkeypatch):
        monkeypatch.setenv("PYTHON_ENV", "test")
        assert load_config(str(temp_config)).worker_threads == 1

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "nope.yaml"))

    def test_invalid_yaml(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("runtime: [unclosed")
        with pytest.raises(ValueError, match="Failed to parse"):
            load_config(str(bad))

    def test_invalid_values_rejected(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text("chat:\n  defaults:\n    temperature: 0\n")
        with pytest.raises(ValueError, match="temperature"):
            load_config(str(bad))

    def test_repo_config(self):
        config = load_config(environment="test")
        assert config.default_temperature == 0.7
        assert config.default_top_p == 0.9
        assert config.default_n == 1
        assert config.default_max_tokens == 2048
        assert config.default_stream is False
        assert config.stream_queue_size == 4


class TestConfigValidation:
    @pytest.mark.parametrize(
        "section,values",
        [
            ("runtime", {"worker_threads": 0}),
            ("chat", {"defaults": {"top_p": 0}}),
            ("chat", {"defaults": {"n": 20}}),
            ("streaming", {"queue_size": 0}),
            ("streaming", {"put_timeout_ms": 0}),
            ("generation", {"preferred_device": "tpu"}),
            ("generation", {"timeout_seconds": -1}),
            ("telemetry", {"sampling_rate": 2}),
        ],
    )
    def test_rejects(self, section, values):
        with pytest.raises(ValueError):
            Config({section: values}).validate()

    def test_defaults_are_valid(self):
        Config({}).validate()

    def test_hf_token_from_env(self, monkeypatch):
        monkeypatch.setenv("MY_TOKEN", "hf_abc")
        assert Config({"cache": {"hf_token_env": "MY_TOKEN"}}).get_hf_token() == "hf_abc"
        assert Config({"cache": {"hf_token_env": None}}).get_hf_token() is None


class TestHelpers:
    def test_deep_merge(self):
        base = {"a": {"x": 1, "y": 2}, "b": 1}
        merged = deep_merge(base, {"a": {"y": 3}, "c": 4})

        assert merged == {"a": {"x": 1, "y": 3}, "b": 1, "c": 4}
        assert base["a"]["y"] == 2

    def test_global_config(self, temp_config):
        assert config_loader._global_config is None
        initialized = initialize_config(str(temp_config), "test")
        assert get_config() is initialized
