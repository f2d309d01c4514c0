"""
Tests for the analyst sub-agents: definitions, parallel bounded runs and
the merged analysis document.
"""

import threading

from ai.agent_client import AgentRequest, MockAgentBackend
from ai.invoker import BoundedAgentInvoker
from ai.subagents import (
    ANALYSTS,
    SubAgentResult,
    build_analyst_agents,
    merge_subagent_results,
    run_subagents,
    save_subagent_analysis,
)
from core.config import GlobalConfig


def _result(**overrides):
    defaults = dict(
        type="macro",
        name="Macro Analyst",
        started_at="2026-03-02T14:00:00+00:00",
        ended_at="2026-03-02T14:05:00+00:00",
        status="success",
        output="Macro analysis output",
    )
    defaults.update(overrides)
    return SubAgentResult(**defaults)


class TestAnalystDefinitions:
    def test_five_analysts_keyed_by_role(self):
        agents = build_analyst_agents("alpha")
        assert sorted(agents) == [
            "macro-analyst", "news-analyst", "risk-analyst", "sentiment-analyst", "technical-analyst",
        ]

    def test_each_analyst_is_bounded_and_read_only(self):
        for definition in build_analyst_agents("my-fund").values():
            assert "my-fund" in definition.prompt
            assert definition.model == "haiku"
            assert definition.max_turns == 15
            assert definition.tools
            assert "place_order" not in definition.tools
            assert "write_fund_file" not in definition.tools

    def test_risk_analyst_sees_the_account(self):
        agents = build_analyst_agents("alpha")
        assert "get_positions" in agents["risk-analyst"].tools
        assert "get_positions" not in agents["macro-analyst"].tools


class TestRunSubagents:
    def test_runs_every_analyst_with_its_own_limits(self, make_fund):
        make_fund("alpha")
        backend = MockAgentBackend()
        invoker = BoundedAgentInvoker(backend, GlobalConfig(max_budget_usd=50.0))

        results = run_subagents(invoker, "alpha")

        assert [r.type for r in results] == [a.type for a in ANALYSTS]
        assert all(r.status == "success" for r in results)
        assert len(backend.requests) == 5
        assert {r.max_turns for r in backend.requests} == {15}
        assert {r.max_budget_usd for r in backend.requests} == {2.0}
        assert {r.model for r in backend.requests} == {"haiku"}
        assert all("place_order" not in [t.name for t in r.tools] for r in backend.requests)

    def test_analysts_run_in_parallel(self, make_fund):
        make_fund("alpha")
        barrier = threading.Barrier(len(ANALYSTS), timeout=5)

        class BarrierBackend(MockAgentBackend):
            def stream(self, request, cancel):
                # Only passes once every analyst is in flight at the same time
                barrier.wait()
                yield from super().stream(request, cancel)

        results = run_subagents(BoundedAgentInvoker(BarrierBackend(), GlobalConfig()), "alpha", timeout_minutes=0.2)
        assert all(r.status == "success" for r in results)

    def test_one_failing_analyst_does_not_sink_the_rest(self, make_fund):
        make_fund("alpha")

        class FlakyBackend(MockAgentBackend):
            def stream(self, request, cancel):
                if "news analysis" in request.prompt:
                    raise RuntimeError("feed down")
                yield from super().stream(request, cancel)

        results = run_subagents(BoundedAgentInvoker(FlakyBackend(), GlobalConfig()), "alpha")

        by_type = {r.type: r for r in results}
        assert by_type["news"].status == "error"
        assert by_type["news"].error == "feed down"
        assert by_type["macro"].status == "success"

    def test_hung_analyst_times_out(self, make_fund):
        make_fund("alpha")
        invoker = BoundedAgentInvoker(MockAgentBackend(hang=True), GlobalConfig())
        results = run_subagents(invoker, "alpha", analysts=ANALYSTS[:1], timeout_minutes=0.002)
        assert results[0].status == "timeout"

    def test_no_analysts(self, make_fund):
        make_fund("alpha")
        assert run_subagents(BoundedAgentInvoker(MockAgentBackend(), GlobalConfig()), "alpha", analysts=[]) == []


class TestMergeResults:
    def test_summary_table_and_outputs(self):
        merged = merge_subagent_results([
            _result(output="The Fed holds."),
            _result(name="Failed Agent", status="error", output="", error="API connection failed"),
            _result(name="Slow Agent", status="timeout", output=""),
        ])
        assert "# Combined Sub-Agent Analysis" in merged
        assert "| Macro Analyst | OK | 300s |" in merged
        assert "| Failed Agent | ERR |" in merged
        assert "| Slow Agent | TIMEOUT |" in merged
        assert "The Fed holds." in merged
        assert "API connection failed" in merged

    def test_consolidated_signals(self):
        merged = merge_subagent_results([
            _result(output="text\nMACRO_SIGNAL: bullish\nmore"),
            _result(type="risk", name="Risk Manager", output="RISK_LEVEL: moderate"),
            _result(type="news", status="error", output="NEWS_SIGNAL: bearish"),
        ])
        signals = merged.split("## Consolidated Signals")[1]
        assert "- MACRO_SIGNAL: bullish" in signals
        assert "- RISK_LEVEL: moderate" in signals
        assert "NEWS_SIGNAL" not in signals

    def test_empty(self):
        merged = merge_subagent_results([])
        assert "Agents: 0" in merged

    def test_saved_under_analysis(self, workspace):
        path = save_subagent_analysis("alpha", [_result()], "pre_market", today="2026-03-02")
        assert path == workspace / "funds" / "alpha" / "analysis" / "2026-03-02_pre_market_subagents.md"
        assert "Macro Analyst" in path.read_text()


class TestRequestDefinitions:
    def test_request_carries_no_delegates_by_default(self):
        assert AgentRequest(prompt="go", model="sonnet").agents == {}

