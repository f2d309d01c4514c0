"""
Analyst sub-agents.

Five research analysts (macro, technical, sentiment, news, risk) can serve
a session two ways:
- as delegates the session agent calls through the `task` tool
  (build_analyst_agents, passed on every scheduled session)
- as independent bounded invocations run in parallel before a session,
  whose merged findings are written to analysis/ and fed into the
  session prompt (run_subagents + merge_subagent_results)

Analysts only get read-only tools; trading stays with the session agent.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from ai.agent_client import AgentDefinition
from ai.invoker import AgentOutcome, BoundedAgentInvoker, OutcomeStatus
from ai.tools import build_fund_tools
from core.models import utc_now_iso
from infra.paths import fund_paths

logger = logging.getLogger(__name__)

ANALYST_MODEL = "haiku"
ANALYST_MAX_TURNS = 15
ANALYST_BUDGET_USD = 2.0
DEFAULT_ANALYST_TIMEOUT_MINUTES = 10

MARKET_TOOLS = ["get_latest_prices", "read_fund_file"]
RISK_TOOLS = ["get_account", "get_positions", "get_latest_prices", "read_fund_file"]

SIGNAL_PATTERN = re.compile(
    r"(?:MACRO_SIGNAL|TECHNICAL_SIGNAL|SENTIMENT_SIGNAL|NEWS_SIGNAL|RISK_LEVEL):\s*\w+",
    re.IGNORECASE,
)


@dataclass
class AnalystSpec:
    type: str
    name: str
    focus: List[str]
    closing: str
    tools: List[str]


ANALYSTS = [
    AnalystSpec(
        type="macro",
        name="Macro Analyst",
        focus=[
            "Interest rates, Fed policy and the yield curve",
            "GDP, employment and inflation trends",
            "Sector rotation and market regime (risk-on vs risk-off)",
            "Geopolitical events affecting markets",
        ],
        closing="End with MACRO_SIGNAL: bullish | neutral | bearish",
        tools=MARKET_TOOLS,
    ),
    AnalystSpec(
        type="technical",
        name="Technical Analyst",
        focus=[
            "Price action and trend (moving averages, support and resistance)",
            "Volume patterns and momentum",
            "Relative strength against SPY",
            "Key price levels for entries and exits",
        ],
        closing="End with TECHNICAL_SIGNAL: bullish | neutral | bearish for each symbol",
        tools=MARKET_TOOLS,
    ),
    AnalystSpec(
        type="sentiment",
        name="Sentiment Analyst",
        focus=[
            "Market breadth and volatility",
            "Earnings surprises and guidance changes",
            "Analyst upgrades and downgrades",
            "Institutional and retail sentiment shifts",
        ],
        closing="End with SENTIMENT_SIGNAL: bullish | neutral | bearish",
        tools=MARKET_TOOLS,
    ),
    AnalystSpec(
        type="news",
        name="News Analyst",
        focus=[
            "Breaking news on holdings and watchlist companies",
            "Regulatory and policy changes",
            "Industry developments",
            "Upcoming catalysts (earnings, launches, approvals)",
        ],
        closing="End with NEWS_SIGNAL: bullish | neutral | bearish",
        tools=MARKET_TOOLS,
    ),
    AnalystSpec(
        type="risk",
        name="Risk Manager",
        focus=[
            "Exposure and concentration",
            "Stop-loss levels and position sizing",
            "Drawdown against the fund's limits",
            "Correlation and liquidity of holdings",
        ],
        closing="End with RISK_LEVEL: low | moderate | elevated | high",
        tools=RISK_TOOLS,
    ),
]


def analyst_prompt(spec: AnalystSpec, fund_name: str) -> str:
    return "\n".join([
        f"You are the {spec.type} analysis sub-agent for fund '{fund_name}'.",
        "",
        "Focus on:",
        *[f"- {item}" for item in spec.focus],
        "",
        "Read state/portfolio.json and the fund's CLAUDE.md for context, and use the price tools for current data.",
        "You do not trade. Write a concise markdown analysis with clear conclusions.",
        spec.closing,
    ])


def build_analyst_agents(fund_name: str) -> Dict[str, AgentDefinition]:
    """Delegates for the session agent's task tool, keyed e.g. 'macro-analyst'."""
    return {
        f"{spec.type}-analyst": AgentDefinition(
            description=spec.name,
            prompt=analyst_prompt(spec, fund_name),
            model=ANALYST_MODEL,
            max_turns=ANALYST_MAX_TURNS,
            tools=list(spec.tools),
        )
        for spec in ANALYSTS
    }


@dataclass
class SubAgentResult:
    type: str
    name: str
    started_at: str
    ended_at: str
    status: str  # success / timeout / error
    output: str = ""
    error: Optional[str] = None

    @property
    def duration_s(self) -> int:
        started = datetime.fromisoformat(self.started_at.replace("Z", "+00:00"))
        ended = datetime.fromisoformat(self.ended_at.replace("Z", "+00:00"))
        return int((ended - started).total_seconds())


def _result_status(outcome: AgentOutcome) -> str:
    if outcome.status is OutcomeStatus.SUCCESS:
        return "success"
    if outcome.status is OutcomeStatus.TIMEOUT:
        return "timeout"
    return "error"


def _run_one(
    invoker: BoundedAgentInvoker,
    fund_name: str,
    spec: AnalystSpec,
    model: Optional[str],
    timeout_s: float,
) -> SubAgentResult:
    started_at = utc_now_iso()
    try:
        tools = [t for t in build_fund_tools(fund_name) if t.name in spec.tools]
        outcome = invoker.invoke(
            fund_name,
            analyst_prompt(spec, fund_name),
            model=model or ANALYST_MODEL,
            max_turns=ANALYST_MAX_TURNS,
            max_budget_usd=ANALYST_BUDGET_USD,
            timeout_s=timeout_s,
            tools=tools,
        )
    except Exception as e:
        logger.error(f"{spec.name} failed for '{fund_name}': {e}")
        return SubAgentResult(spec.type, spec.name, started_at, utc_now_iso(), "error", error=str(e))

    return SubAgentResult(
        type=spec.type,
        name=spec.name,
        started_at=started_at,
        ended_at=utc_now_iso(),
        status=_result_status(outcome),
        output=outcome.output,
        error=outcome.error,
    )


def run_subagents(
    invoker: BoundedAgentInvoker,
    fund_name: str,
    analysts: Optional[List[AnalystSpec]] = None,
    timeout_minutes: float = DEFAULT_ANALYST_TIMEOUT_MINUTES,
    model: Optional[str] = None,
) -> List[SubAgentResult]:
    """
    Run every analyst as its own bounded invocation, all in parallel.

    Returns one result per analyst, in input order. A failing analyst
    yields an error result; it never prevents the others from reporting.
    """
    analysts = analysts if analysts is not None else ANALYSTS
    if not analysts:
        return []
    timeout_s = timeout_minutes * 60
    with ThreadPoolExecutor(max_workers=len(analysts), thread_name_prefix=f"analyst-{fund_name}") as pool:
        futures = [pool.submit(_run_one, invoker, fund_name, spec, model, timeout_s) for spec in analysts]
        results = [f.result() for f in futures]

    ok = sum(1 for r in results if r.status == "success")
    logger.info(f"Sub-agents for '{fund_name}': {ok}/{len(results)} succeeded")
    return results


_STATUS_LABEL = {"success": "OK", "timeout": "TIMEOUT"}


def merge_subagent_results(results: List[SubAgentResult], generated_at: Optional[str] = None) -> str:
    lines = [
        "# Combined Sub-Agent Analysis",
        "",
        f"Generated: {generated_at or utc_now_iso()}",
        f"Agents: {len(results)}",
        "",
        "## Agent Summary",
        "",
        "| Agent | Status | Duration |",
        "|-------|--------|----------|",
    ]
    for r in results:
        lines.append(f"| {r.name} | {_STATUS_LABEL.get(r.status, 'ERR')} | {r.duration_s}s |")
    lines.append("")

    for r in results:
        lines += ["---", f"## {r.name} ({r.type})", f"Status: {r.status}", ""]
        if r.status == "success":
            lines.append(r.output)
        else:
            lines.append(f"> **Error:** {r.error or 'Unknown error'}")
        lines.append("")

    lines += ["---", "## Consolidated Signals", ""]
    for r in results:
        if r.status != "success":
            continue
        lines += [f"- {signal}" for signal in SIGNAL_PATTERN.findall(r.output)]

    return "\n".join(lines)


def save_subagent_analysis(
    fund_name: str,
    results: List[SubAgentResult],
    session_type: str,
    today: Optional[str] = None,
) -> Path:
    """Write the merged analysis to analysis/<date>_<session>_subagents.md."""
    today = today or datetime.now(timezone.utc).date().isoformat()
    directory = fund_paths(fund_name).analysis
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{today}_{session_type}_subagents.md"
    path.write_text(merge_subagent_results(results), encoding="utf-8")
    return path
