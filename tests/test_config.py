"""Unit tests for configuration loading and validation"""

import json
import os

import pytest

from tradesim.config import (
    BacktestConfig,
    DataConfig,
    ExecutionConfig,
    MonteCarloConfig,
    OptimizationConfig,
    WalkForwardConfig,
)
from tradesim.errors import ConfigError


@pytest.fixture(autouse=True)
def clean_env():
    """Drop TRADESIM_* variables a loaded .env file left behind."""
    yield
    for name in [k for k in os.environ if k.startswith("TRADESIM_")]:
        del os.environ[name]


def test_defaults():
    """Test 1: Default config is valid"""
    config = BacktestConfig()

    assert config.initial_balance == 10000.0
    assert config.execution.slippage_bps == 1.0
    assert config.execution.fill_probability == 0.95
    assert config.data.source == "local"
    assert config.optimization.method == "grid"
    assert config.walk_forward.in_sample_ratio == 0.7
    assert ExecutionConfig().slippage_fraction == pytest.approx(0.0001)


@pytest.mark.parametrize("factory", [
    lambda: BacktestConfig(initial_balance=0),
    lambda: BacktestConfig(position_size_fraction=1.5),
    lambda: ExecutionConfig(slippage_bps=-1),
    lambda: ExecutionConfig(fill_probability=1.5),
    lambda: DataConfig(source="ftp"),
    lambda: OptimizationConfig(executor="cluster"),
    lambda: OptimizationConfig(n_jobs=0),
    lambda: MonteCarloConfig(simulations=0),
    lambda: MonteCarloConfig(ruin_threshold=0),
    lambda: WalkForwardConfig(in_sample_ratio=1.0),
    lambda: WalkForwardConfig(step_size=0),
])
def test_invalid_values_raise(factory):
    """Test 2: Out-of-range values raise ConfigError"""
    with pytest.raises(ConfigError):
        factory()


def test_from_dict_builds_nested_sections():
    """Test 3: Nested dictionaries become section dataclasses"""
    config = BacktestConfig.from_dict({
        "initial_balance": 25000,
        "execution": {"slippage_bps": 2.0},
        "optimization": {"method": "random", "max_iterations": 50},
    })

    assert config.initial_balance == 25000
    assert config.execution.slippage_bps == 2.0
    assert config.execution.commission_rate == 0.001
    assert config.optimization.method == "random"
    assert config.optimization.max_iterations == 50


def test_unknown_keys_rejected():
    """Test 4: Typos are errors, not silently ignored"""
    with pytest.raises(ConfigError):
        BacktestConfig.from_dict({"initial_balanse": 1})

    with pytest.raises(ConfigError):
        BacktestConfig.from_dict({"execution": {"slipage": 1}})


def test_json_round_trip(tmp_path):
    """Test 5: to_json then from_json reproduces the config"""
    path = tmp_path / "config.json"
    config = BacktestConfig(
        initial_balance=5000,
        execution=ExecutionConfig(seed=7),
        monte_carlo=MonteCarloConfig(simulations=200)
    )

    config.to_json(str(path))
    with open(path) as f:
        assert json.load(f)["monte_carlo"]["simulations"] == 200

    assert BacktestConfig.from_json(str(path)) == config


def test_from_env(monkeypatch, tmp_path):
    """Test 6: TRADESIM_* variables override defaults, .env fills the rest"""
    env_file = tmp_path / ".env"
    env_file.write_text("TRADESIM_SYMBOL=ETHUSDT\nTRADESIM_INITIAL_BALANCE=1234\n")

    monkeypatch.setenv("TRADESIM_INITIAL_BALANCE", "5000")
    monkeypatch.setenv("TRADESIM_PARTIAL_FILLS", "yes")
    monkeypatch.setenv("TRADESIM_N_JOBS", "2")

    config = BacktestConfig.from_env(str(env_file))

    assert config.initial_balance == 5000
    assert config.data.symbol == "ETHUSDT"
    assert config.execution.partial_fills is True
    assert config.optimization.n_jobs == 2
    assert config.execution.slippage_bps == ExecutionConfig.slippage_bps


def test_from_env_bad_value(monkeypatch, tmp_path):
    """Test 7: Unparseable numbers raise ConfigError"""
    monkeypatch.setenv("TRADESIM_N_JOBS", "many")

    with pytest.raises(ConfigError):
        BacktestConfig.from_env(str(tmp_path / "absent.env"))
