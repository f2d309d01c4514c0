"""
Bounded Agent Invoker

Runs exactly one agent conversation for a fund under turn, budget and
wall-clock limits and always returns an AgentOutcome. Exceptions from the
backend are data here: they are classified into an OutcomeStatus and never
propagate to the caller.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from ai.agent_client import (
    DEFAULT_SYSTEM_PROMPT,
    AgentBackend,
    AgentCancelledError,
    AgentDefinition,
    AgentEvent,
    AgentRequest,
    AgentTool,
    AssistantEvent,
    CancelToken,
    ResultEvent,
    SystemInitEvent,
)
from ai.tools import build_fund_tools
from core.config import GlobalConfig, load_fund_config, load_global_config
from infra.paths import FundPaths, fund_paths

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "sonnet"
DEFAULT_MAX_TURNS = 50
TIMEOUT_MESSAGE = "Query timed out"

EventObserver = Callable[[AgentEvent], None]


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    ERROR_MAX_TURNS = "error_max_turns"
    ERROR_MAX_BUDGET = "error_max_budget"
    TIMEOUT = "timeout"
    ERROR = "error"


_SUBTYPE_STATUS = {
    "success": OutcomeStatus.SUCCESS,
    "error_max_turns": OutcomeStatus.ERROR_MAX_TURNS,
    "error_max_budget_usd": OutcomeStatus.ERROR_MAX_BUDGET,
}


@dataclass
class AgentOutcome:
    output: str = ""
    cost_usd: float = 0.0
    duration_ms: int = 0
    num_turns: int = 0
    usage: Dict[str, Dict[str, int]] = field(default_factory=dict)
    session_id: str = ""
    status: OutcomeStatus = OutcomeStatus.ERROR
    error: Optional[str] = None

    @property
    def tokens_in(self) -> int:
        return sum(u.get("input_tokens", 0) for u in self.usage.values())

    @property
    def tokens_out(self) -> int:
        return sum(u.get("output_tokens", 0) for u in self.usage.values())

    @property
    def model_used(self) -> Optional[str]:
        return next(iter(self.usage), None)


def fund_system_prompt(paths: FundPaths) -> str:
    """The base role, followed by the fund's CLAUDE.md when one exists."""
    if not paths.claude_md.exists():
        return DEFAULT_SYSTEM_PROMPT
    instructions = paths.claude_md.read_text(encoding="utf-8").strip()
    if not instructions:
        return DEFAULT_SYSTEM_PROMPT
    return f"{DEFAULT_SYSTEM_PROMPT}\n\n# Fund instructions (CLAUDE.md)\n\n{instructions}"


class _StreamState:
    """What the worker thread has observed so far; read by the waiting caller."""

    def __init__(self):
        self.lock = threading.Lock()
        self.done = threading.Event()
        self.session_id = ""
        self.turns_seen = 0
        self.result: Optional[ResultEvent] = None
        self.error: Optional[BaseException] = None


class BoundedAgentInvoker:
    """
    Usage:
        invoker = BoundedAgentInvoker(create_agent_backend("anthropic", api_key=key))
        outcome = invoker.invoke("growth-fund", prompt, timeout_s=900)
        if outcome.status is OutcomeStatus.TIMEOUT:
            ...
    """

    def __init__(self, backend: AgentBackend, global_config: Optional[GlobalConfig] = None):
        self.backend = backend
        self._global_config = global_config

    @property
    def global_config(self) -> GlobalConfig:
        return self._global_config or load_global_config()

    def resolve_model(self, fund_name: str, model: Optional[str]) -> str:
        if model:
            return model
        fund_model = load_fund_config(fund_name).claude.model
        return fund_model or self.global_config.default_model or DEFAULT_MODEL

    def invoke(
        self,
        fund_name: str,
        prompt: str,
        model: Optional[str] = None,
        max_turns: int = DEFAULT_MAX_TURNS,
        max_budget_usd: Optional[float] = None,
        timeout_s: Optional[float] = None,
        on_event: Optional[EventObserver] = None,
        tools: Optional[List[AgentTool]] = None,
        agents: Optional[Dict[str, AgentDefinition]] = None,
        system_prompt: Optional[str] = None,
    ) -> AgentOutcome:
        start = time.monotonic()
        try:
            paths = fund_paths(fund_name)
            request = AgentRequest(
                prompt=prompt,
                model=self.resolve_model(fund_name, model),
                max_turns=max_turns,
                max_budget_usd=max_budget_usd if max_budget_usd is not None else self.global_config.max_budget_usd,
                cwd=str(paths.root),
                permission_mode="auto_approve",
                tools=tools if tools is not None else build_fund_tools(fund_name),
                system_prompt=system_prompt or fund_system_prompt(paths),
                agents=dict(agents or {}),
            )
        except Exception as e:
            logger.error(f"Agent setup failed for fund '{fund_name}': {e}")
            return AgentOutcome(
                duration_ms=self._elapsed_ms(start),
                status=OutcomeStatus.ERROR,
                error=str(e),
            )

        cancel = CancelToken()
        state = _StreamState()
        worker = threading.Thread(
            target=self._consume,
            args=(request, cancel, state, on_event),
            name=f"agent-{fund_name}",
            daemon=True,
        )
        worker.start()

        finished = state.done.wait(timeout_s)
        if not finished:
            # Stops waiting only; the remote side may keep billing until it notices
            cancel.cancel()
            logger.warning(f"Agent call for fund '{fund_name}' exceeded {timeout_s}s, cancelled")

        outcome = self._classify(state, timed_out=not finished)
        outcome.duration_ms = self._elapsed_ms(start)
        logger.info(
            f"Agent call for '{fund_name}' finished: status={outcome.status.value} "
            f"turns={outcome.num_turns} cost=${outcome.cost_usd:.4f} duration={outcome.duration_ms}ms"
        )
        return outcome

    def _consume(
        self,
        request: AgentRequest,
        cancel: CancelToken,
        state: _StreamState,
        on_event: Optional[EventObserver],
    ) -> None:
        try:
            for event in self.backend.stream(request, cancel):
                with state.lock:
                    if isinstance(event, SystemInitEvent):
                        state.session_id = event.session_id
                    elif isinstance(event, AssistantEvent):
                        state.turns_seen += 1
                    elif isinstance(event, ResultEvent):
                        state.result = event
                        if event.session_id:
                            state.session_id = event.session_id
                self._notify(on_event, event)
                if cancel.cancelled:
                    break
        except Exception as e:
            with state.lock:
                state.error = e
        finally:
            state.done.set()

    @staticmethod
    def _notify(on_event: Optional[EventObserver], event: AgentEvent) -> None:
        if on_event is None:
            return
        try:
            on_event(event)
        except Exception as e:
            logger.warning(f"Agent event observer raised {type(e).__name__}: {e}")

    @staticmethod
    def _classify(state: _StreamState, timed_out: bool) -> AgentOutcome:
        with state.lock:
            result = state.result
            error = state.error
            outcome = AgentOutcome(session_id=state.session_id, num_turns=state.turns_seen)

        if timed_out or isinstance(error, AgentCancelledError):
            outcome.status = OutcomeStatus.TIMEOUT
            outcome.error = TIMEOUT_MESSAGE
            return outcome

        if error is not None:
            outcome.status = OutcomeStatus.ERROR
            outcome.error = str(error) or type(error).__name__
            return outcome

        if result is None:
            outcome.status = OutcomeStatus.ERROR
            outcome.error = "Agent stream ended without a result"
            return outcome

        outcome.output = result.result or ""
        outcome.cost_usd = result.total_cost_usd
        outcome.num_turns = result.num_turns
        outcome.usage = dict(result.usage)
        outcome.status = _SUBTYPE_STATUS.get(result.subtype, OutcomeStatus.ERROR)
        if outcome.status is not OutcomeStatus.SUCCESS:
            outcome.error = "; ".join(result.errors) or result.subtype
        return outcome

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
