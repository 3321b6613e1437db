"""
Pytest configuration for coder-serving tests

Sets up the Python path to allow imports from the python/ directory and
provides a fully wired ServerState backed by the fakes in tests/fakes.py.
"""
import sys
from pathlib import Path

import pytest

# Add python directory to path for imports
python_dir = Path(__file__).parent.parent / 'python'
sys.path.insert(0, str(python_dir))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import FakeFetcher, FakeLoader, cpu_only_probe, make_config  # noqa: E402


@pytest.fixture(autouse=True)
def reset_config():
    """Reset global config before each test"""
    import config_loader

    config_loader._global_config = None
    yield
    config_loader._global_config = None


@pytest.fixture
def config(tmp_path):
    return make_config(tmp_path / "models_cache")


@pytest.fixture
def fetcher():
    return FakeFetcher(delay=0.01)


@pytest.fixture
def fake_loader():
    return FakeLoader()


@pytest.fixture
def server_state(config, fetcher, fake_loader):
    from server_state import ServerState

    state = ServerState.from_config(
        config, fetcher=fetcher, loader_fn=fake_loader, device_probe=cpu_only_probe
    )
    yield state
    state.close()
