"""
Tests for per-fund state documents and atomic writes.
"""

import json
import os
from unittest.mock import patch

import pytest

from core.exceptions import StateValidationError
from core.models import SessionLog
from infra.paths import fund_paths, workspace_root
from infra.state_store import FundStateStore, read_json, write_json_atomic
from tests.helpers import make_position


class TestWorkspacePaths:
    def test_fundx_home_overrides_default(self, workspace):
        assert workspace_root() == workspace
        paths = fund_paths("alpha")
        assert paths.config == workspace / "funds" / "alpha" / "fund_config.yaml"
        assert paths.portfolio == workspace / "funds" / "alpha" / "state" / "portfolio.json"
        assert paths.journal.name == "trade_journal.sqlite"


class TestAtomicWrite:
    def test_write_then_read(self, tmp_path):
        target = tmp_path / "doc.json"
        write_json_atomic(target, {"a": 1})
        assert read_json(target) == {"a": 1}

    def test_missing_file_reads_as_none(self, tmp_path):
        assert read_json(tmp_path / "nope.json") is None

    def test_malformed_json_is_hard_error(self, tmp_path):
        target = tmp_path / "bad.json"
        target.write_text("{not json", encoding="utf-8")
        with pytest.raises(StateValidationError):
            read_json(target)

    def test_failed_replace_keeps_old_content_and_cleans_temp(self, tmp_path):
        target = tmp_path / "doc.json"
        write_json_atomic(target, {"version": 1})

        with patch("infra.state_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                write_json_atomic(target, {"version": 2})

        assert json.loads(target.read_text()) == {"version": 1}
        leftovers = [p for p in os.listdir(tmp_path) if p.endswith(".tmp")]
        assert leftovers == []

    def test_unserializable_data_leaves_no_partial_file(self, tmp_path):
        target = tmp_path / "doc.json"
        with pytest.raises(TypeError):
            write_json_atomic(target, {"bad": object()})
        assert not target.exists()
        assert os.listdir(tmp_path) == []


class TestFundStateStore:
    def test_init_fund_state_creates_documents(self, workspace):
        store = FundStateStore("alpha")
        store.init_fund_state(initial_capital=5000, objective_type="growth")

        portfolio = store.read_portfolio()
        assert portfolio.cash == 5000
        assert portfolio.total_value == 5000
        assert portfolio.positions == []

        tracker = store.read_tracker()
        assert tracker.initial_capital == 5000
        assert tracker.type == "growth"

        assert store.read_session_log() is None
        assert (fund_paths("alpha").reports / "weekly").is_dir()

    def test_portfolio_round_trip_preserves_unknown_keys(self, workspace):
        store = FundStateStore("alpha")
        store.init_fund_state(1000, "growth")
        path = fund_paths("alpha").portfolio
        data = json.loads(path.read_text())
        data["notes"] = "agent annotation"
        path.write_text(json.dumps(data))

        portfolio = store.read_portfolio()
        store.write_portfolio(portfolio)
        assert json.loads(path.read_text())["notes"] == "agent annotation"

    def test_schema_violation_is_hard_error(self, workspace):
        store = FundStateStore("alpha")
        path = fund_paths("alpha").portfolio
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"cash": "lots"}))

        with pytest.raises(StateValidationError) as exc:
            store.read_portfolio()
        assert "portfolio.json" in str(exc.value)

    def test_recompute_total_restores_invariant(self, workspace):
        store = FundStateStore("alpha")
        store.init_fund_state(1000, "growth")
        portfolio = store.read_portfolio()
        portfolio.positions.append(make_position("AAPL", 2, 100, 110))
        portfolio.cash = 800
        portfolio.recompute_total()
        store.write_portfolio(portfolio)

        reread = store.read_portfolio()
        assert reread.total_value == pytest.approx(800 + 220)

    def test_session_log_round_trip(self, workspace):
        store = FundStateStore("alpha")
        log = SessionLog(fund="alpha", session_type="pre_market", started_at="2026-03-02T14:00:00+00:00",
                         status="timeout", error="Query timed out", session_id="s-1")
        store.write_session_log(log)
        assert store.read_session_log() == log
