"""
Pytest configuration and fixtures for FundX tests.

Every test runs against a throwaway workspace (FUNDX_HOME points into
tmp_path), so nothing touches ~/.fundx and nothing calls the network.
"""
from typing import Dict, List, Optional

import pytest
import yaml

from core.config import FundConfig, load_fund_config
from core.models import Portfolio, Position, utc_now_iso
from infra.paths import fund_paths
from infra.state_store import FundStateStore
from tests.helpers import fund_config_dict


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset singleton instances between tests to ensure test isolation."""
    from infra.metrics import MetricsRecorder
    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    root = tmp_path / "fundx"
    root.mkdir()
    monkeypatch.setenv("FUNDX_HOME", str(root))
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    return root


@pytest.fixture
def make_fund(workspace):
    """Write funds/<name>/fund_config.yaml and return the parsed config (None for raw text)."""

    def _make(name: str = "alpha", raw: Optional[str] = None, **overrides) -> Optional[FundConfig]:
        paths = fund_paths(name)
        paths.root.mkdir(parents=True, exist_ok=True)
        if raw is not None:
            paths.config.write_text(raw, encoding="utf-8")
            return None
        with open(paths.config, "w", encoding="utf-8") as f:
            yaml.safe_dump(fund_config_dict(name, **overrides), f, sort_keys=False)
        return load_fund_config(name)

    return _make


@pytest.fixture
def write_global_config(workspace):
    def _write(data: Dict) -> None:
        with open(workspace / "config.yaml", "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f)

    return _write


@pytest.fixture
def seed_portfolio(workspace):
    def _seed(fund_name: str, cash: float, positions: List[Position]) -> Portfolio:
        portfolio = Portfolio(last_updated=utc_now_iso(), cash=cash, total_value=0.0, positions=positions)
        portfolio.recompute_total()
        FundStateStore(fund_name).write_portfolio(portfolio)
        return portfolio

    return _seed
