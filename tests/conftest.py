"""Shared test fixtures for envstack."""

import pytest

from envstack.backends import SimulatedBackend
from envstack.config import EnvStackConfig, StateConfig, get_config, reset_config, set_config
from envstack.engine import Engine
from envstack.environments import default_parameter_store
from envstack.state import StateStore


@pytest.fixture(autouse=True)
def _reset_global_config(monkeypatch, tmp_path):
    """Reset global config and keep state under a temporary directory for all tests."""
    for key in (
        "ENVSTACK_POLICY_STRICT",
        "ENVSTACK_POLICY_ALLOWED_OPEN_CIDRS",
        "ENVSTACK_STATE_DIR",
        "ENVSTACK_PARAMETERS_FILE",
        "ENVSTACK_BACKEND",
        "ENVSTACK_MAX_PARALLELISM",
        "ENVSTACK_NODE_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(key, raising=False)

    reset_config()
    set_config(EnvStackConfig(state=StateConfig(state_dir=str(tmp_path / "state"))))
    yield
    reset_config()


@pytest.fixture
def config():
    """Return the active EnvStackConfig."""
    return get_config()


@pytest.fixture
def state_dir(config):
    return config.state.state_dir


@pytest.fixture
def state_store(state_dir):
    return StateStore(state_dir)


@pytest.fixture
def parameter_store():
    """Return the built-in dev/stage/prod parameters."""
    return default_parameter_store()


@pytest.fixture
def backend():
    return SimulatedBackend()


@pytest.fixture
def engine(parameter_store, backend, state_store):
    """Return an engine wired to the simulated backend and a temporary state store."""
    return Engine(parameters=parameter_store, backend=backend, state_store=state_store)
