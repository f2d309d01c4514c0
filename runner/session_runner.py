"""
Session Runner

Turns (fund, session type, focus) into an agent directive, runs it through
the bounded invoker and records the outcome as the fund's session log.
At most one session per fund runs at a time; an overlapping request is
skipped rather than queued.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from ai.agent_client import AgentDefinition
from ai.invoker import AgentOutcome, BoundedAgentInvoker, OutcomeStatus
from ai.subagents import (
    build_analyst_agents,
    merge_subagent_results,
    run_subagents,
    save_subagent_analysis,
)
from core.config import FundConfig, load_fund_config
from core.exceptions import FundConfigError
from core.journal import TradeJournal
from core.models import SessionLog, utc_now_iso
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.state_store import FundStateStore

logger = logging.getLogger(__name__)

DEFAULT_MAX_TURNS = 50
DEFAULT_SESSION_TIMEOUT_MINUTES = 15
SUMMARY_CHARS = 500
ANALYSIS_PROMPT_CHARS = 8000
PARALLEL_ANALYST_TIMEOUT_MINUTES = 8


def build_session_prompt(fund_name: str, session_type: str, focus: str, today: str) -> str:
    return "\n".join([
        f"You are running a {session_type} session for fund '{fund_name}'.",
        "",
        f"Focus: {focus}",
        "",
        "Start by reading your state files, then proceed with analysis",
        "and actions as appropriate. Remember to:",
        "1. Update state files after any changes",
        f"2. Write analysis to analysis/{today}_{session_type}.md",
        "3. Use the broker tools for trading and position management",
        "4. Use the market data tools for price data and market analysis",
        "5. Use the send_telegram tool for trade alerts and digests (if available)",
        "6. Update state/objective_tracker.json",
        "7. Record the reasoning for every trade you place",
    ])


def build_synthesis_prompt(fund_name: str, session_type: str, focus: str, today: str, analysis: str) -> str:
    """Session directive that carries the analysts' merged findings."""
    return "\n".join([
        f"You are running a {session_type} session for fund '{fund_name}'.",
        "",
        f"Focus: {focus}",
        "",
        "## Sub-Agent Analysis",
        "Your analysis team has completed their research. Here is their combined output:",
        "",
        analysis[:ANALYSIS_PROMPT_CHARS],
        "",
        "## Your Task",
        "Review the analysis above and make trading decisions.",
        "Start by reading your state files, then:",
        "1. Synthesize the macro, technical, sentiment, news and risk analysis",
        "2. Decide on trades that align with the signals and the fund's constraints",
        "3. Execute trades with the broker tools",
        "4. Update state files after any changes",
        f"5. Write your synthesis to analysis/{today}_{session_type}.md",
        "6. Use the send_telegram tool for alerts (if available)",
        "7. Update state/objective_tracker.json",
    ])


class SessionRunner:
    def __init__(
        self,
        invoker: BoundedAgentInvoker,
        alerts: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.invoker = invoker
        self.alerts = alerts
        self.metrics = metrics
        self._fund_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, fund_name: str) -> threading.Lock:
        with self._locks_guard:
            return self._fund_locks.setdefault(fund_name, threading.Lock())

    def is_running(self, fund_name: str) -> bool:
        return self._lock_for(fund_name).locked()

    def _resolve(
        self,
        fund_name: str,
        session_type: str,
        focus: Optional[str],
        max_duration_minutes: Optional[int],
    ) -> Tuple[FundConfig, str, int]:
        config = load_fund_config(fund_name)
        session_config = config.schedule.sessions.get(session_type)
        focus = focus or (session_config.focus if session_config else None)
        if not focus:
            raise FundConfigError(
                f"Session type '{session_type}' not found in fund '{fund_name}'",
                fund_name=fund_name,
            )
        if max_duration_minutes is None:
            max_duration_minutes = (
                session_config.max_duration_minutes if session_config and session_config.max_duration_minutes
                else DEFAULT_SESSION_TIMEOUT_MINUTES
            )
        return config, focus, max_duration_minutes

    def run(
        self,
        fund_name: str,
        session_type: str,
        focus: Optional[str] = None,
        max_duration_minutes: Optional[int] = None,
    ) -> Optional[SessionLog]:
        """
        Run one session to completion (or timeout). The agent can delegate
        research to the analyst sub-agents through its task tool.

        Returns:
            The written SessionLog, or None if a session for this fund was
            already in flight

        Raises:
            FundConfigError: If the fund config is missing/invalid or the
                session type is unknown and no focus was given
        """
        config, focus, max_duration_minutes = self._resolve(fund_name, session_type, focus, max_duration_minutes)

        lock = self._lock_for(fund_name)
        if not lock.acquire(blocking=False):
            logger.warning(f"Session {session_type} for '{fund_name}' skipped: another session is still running")
            return None
        try:
            today = datetime.now(timezone.utc).date().isoformat()
            return self._run_locked(
                config,
                session_type,
                build_session_prompt(fund_name, session_type, focus, today),
                max_duration_minutes,
                agents=build_analyst_agents(fund_name),
            )
        finally:
            lock.release()

    def run_with_subagents(
        self,
        fund_name: str,
        session_type: str,
        focus: Optional[str] = None,
        max_duration_minutes: Optional[int] = None,
    ) -> Optional[SessionLog]:
        """
        Two-phase session: every analyst runs first as its own bounded
        invocation (in parallel), the merged analysis is saved under
        analysis/, then the session agent decides with it in its prompt.

        The log is recorded as `<session_type>_parallel`. Same return and
        raise contract as run().
        """
        config, focus, max_duration_minutes = self._resolve(fund_name, session_type, focus, max_duration_minutes)

        lock = self._lock_for(fund_name)
        if not lock.acquire(blocking=False):
            logger.warning(f"Session {session_type} for '{fund_name}' skipped: another session is still running")
            return None
        try:
            today = datetime.now(timezone.utc).date().isoformat()
            results = run_subagents(
                self.invoker,
                fund_name,
                timeout_minutes=PARALLEL_ANALYST_TIMEOUT_MINUTES,
                model=config.claude.model,
            )
            analysis_path = save_subagent_analysis(fund_name, results, session_type, today=today)
            ok = sum(1 for r in results if r.status == "success")
            prompt = build_synthesis_prompt(
                fund_name, session_type, focus, today, merge_subagent_results(results),
            )
            return self._run_locked(
                config,
                f"{session_type}_parallel",
                prompt,
                max_duration_minutes,
                analysis_file=str(analysis_path),
                summary_prefix=f"Sub-agents: {ok}/{len(results)} OK. ",
            )
        finally:
            lock.release()

    def _run_locked(
        self,
        config: FundConfig,
        session_type: str,
        prompt: str,
        max_duration_minutes: int,
        agents: Optional[Dict[str, AgentDefinition]] = None,
        analysis_file: Optional[str] = None,
        summary_prefix: str = "",
    ) -> SessionLog:
        fund_name = config.fund.name
        store = FundStateStore(fund_name)
        started_at = utc_now_iso()

        store.write_session_log(SessionLog(
            fund=fund_name,
            session_type=session_type,
            started_at=started_at,
            status="running",
        ))
        logger.info(f"Starting {session_type} session for '{fund_name}' (timeout {max_duration_minutes}m)")

        outcome = self.invoker.invoke(
            fund_name,
            prompt,
            model=config.claude.model,
            max_turns=DEFAULT_MAX_TURNS,
            timeout_s=max_duration_minutes * 60,
            agents=agents,
        )

        log = SessionLog(
            fund=fund_name,
            session_type=session_type,
            started_at=started_at,
            ended_at=utc_now_iso(),
            trades_executed=self._count_trades(fund_name, started_at),
            summary=(summary_prefix + outcome.output)[:SUMMARY_CHARS],
            cost_usd=outcome.cost_usd,
            tokens_in=outcome.tokens_in,
            tokens_out=outcome.tokens_out,
            model_used=outcome.model_used,
            num_turns=outcome.num_turns,
            session_id=outcome.session_id,
            status=outcome.status.value,
            error=outcome.error,
            analysis_file=analysis_file,
        )
        store.write_session_log(log)
        self._report(config, session_type, outcome)
        return log

    @staticmethod
    def _count_trades(fund_name: str, since_iso: str) -> int:
        try:
            with TradeJournal.for_fund(fund_name) as journal:
                return journal.count_trades_since(fund_name, since_iso)
        except Exception as e:
            logger.warning(f"Could not count trades for '{fund_name}': {e}")
            return 0

    def _report(self, config: FundConfig, session_type: str, outcome: AgentOutcome) -> None:
        fund_name = config.fund.name
        if self.metrics:
            self.metrics.record_session(fund_name, outcome.status.value, outcome.cost_usd)

        if outcome.status is OutcomeStatus.SUCCESS:
            logger.info(f"Session {session_type} for '{fund_name}' completed (${outcome.cost_usd:.4f})")
            return

        logger.warning(
            f"Session {session_type} for '{fund_name}' ended with {outcome.status.value}: {outcome.error}"
        )
        if self.alerts:
            self.alerts.notify_session_failure(
                fund_name,
                session_type,
                outcome.status.value,
                outcome.error,
                quiet_hours=config.notifications.quiet_hours,
                timezone=config.schedule.timezone,
            )
