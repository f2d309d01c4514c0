"""
Agent backend abstraction for the external reasoning service.

A backend turns one AgentRequest into an ordered stream of typed events,
terminated by a single ResultEvent carrying cost, usage, turn count and an
outcome subtype. Backends enforce max_turns and max_budget_usd themselves
and honour a CancelToken between steps; wall-clock limits are enforced by
the caller (see ai/invoker.py).
"""

import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

log = logging.getLogger(__name__)

# Short aliases accepted in fund configs
MODEL_ALIASES = {
    "sonnet": "claude-sonnet-4-5",
    "opus": "claude-opus-4-1",
    "haiku": "claude-haiku-4-5",
}

# USD per million tokens (input, output), matched by model-id prefix
PRICING = {
    "claude-opus": (15.0, 75.0),
    "claude-sonnet": (3.0, 15.0),
    "claude-haiku": (1.0, 5.0),
}
DEFAULT_PRICE = (3.0, 15.0)

DEFAULT_SYSTEM_PROMPT = "You are the portfolio manager of an autonomous investment fund."
TASK_TOOL = "task"


def resolve_model_id(model: str) -> str:
    return MODEL_ALIASES.get(model.lower(), model)


def price_for(model_id: str) -> tuple:
    for prefix, price in PRICING.items():
        if model_id.startswith(prefix):
            return price
    return DEFAULT_PRICE


def usage_cost(model_id: str, input_tokens: int, output_tokens: int) -> float:
    price_in, price_out = price_for(model_id)
    return (input_tokens * price_in + output_tokens * price_out) / 1_000_000


class AgentCancelledError(Exception):
    """Raised by a backend when its cancel token fires mid-stream."""


class CancelToken:
    """Cooperative cancellation flag shared between the invoker and a backend."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise AgentCancelledError("Agent call cancelled")


# ─── Tools ────────────────────────────────────────────────────────────────

@dataclass
class AgentTool:
    """A capability the agent may invoke; handler receives the tool input dict."""
    name: str
    description: str
    input_schema: Dict[str, Any]
    handler: Callable[[Dict[str, Any]], Any] = field(repr=False)

    def to_api(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.input_schema}


@dataclass
class AgentDefinition:
    """An analyst the agent can delegate to through the `task` tool."""
    description: str
    prompt: str
    model: Optional[str] = None
    max_turns: int = 15
    tools: Optional[List[str]] = None  # names from the parent request; None means all


# ─── Events ───────────────────────────────────────────────────────────────

@dataclass
class SystemInitEvent:
    session_id: str
    model: str
    tools: List[str] = field(default_factory=list)


@dataclass
class AssistantEvent:
    text: str
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ToolResultEvent:
    tool_use_id: str
    name: str
    content: str
    is_error: bool = False


@dataclass
class ResultEvent:
    subtype: str  # success / error_max_turns / error_max_budget_usd / error_during_execution
    result: str = ""
    total_cost_usd: float = 0.0
    num_turns: int = 0
    usage: Dict[str, Dict[str, int]] = field(default_factory=dict)
    session_id: str = ""
    errors: List[str] = field(default_factory=list)


AgentEvent = Union[SystemInitEvent, AssistantEvent, ToolResultEvent, ResultEvent]


@dataclass
class AgentRequest:
    prompt: str
    model: str
    max_turns: int = 50
    max_budget_usd: Optional[float] = None
    cwd: Optional[str] = None
    permission_mode: str = "auto_approve"
    tools: List[AgentTool] = field(default_factory=list)
    system_prompt: Optional[str] = None
    agents: Dict[str, AgentDefinition] = field(default_factory=dict)


class AgentBackend(ABC):
    """Abstract base class for agent backends."""

    @abstractmethod
    def stream(self, request: AgentRequest, cancel: CancelToken) -> Iterator[AgentEvent]:
        """
        Run one agent conversation.

        Yields:
            SystemInitEvent first, then AssistantEvent / ToolResultEvent as
            they happen, then exactly one ResultEvent

        Raises:
            AgentCancelledError: If cancel fires before the result
            Exception: On API errors
        """


class AnthropicAgentBackend(AgentBackend):
    """Tool-use conversation loop over the Anthropic Messages API."""

    def __init__(self, api_key: str, max_tokens: int = 4096, client=None):
        self.max_tokens = max_tokens
        if client is not None:
            self.client = client
        else:
            from anthropic import Anthropic
            self.client = Anthropic(api_key=api_key)

    def _system_prompt(self, request: AgentRequest) -> str:
        parts = [request.system_prompt or DEFAULT_SYSTEM_PROMPT]
        if request.agents:
            roster = "\n".join(f"- {name}: {a.description}" for name, a in sorted(request.agents.items()))
            parts.append(f"Analysts you can delegate research to with the {TASK_TOOL} tool:\n{roster}")
        if request.cwd:
            parts.append(f"Fund workspace: {request.cwd}. File paths passed to tools are relative to it.")
        return "\n\n".join(parts)

    def _task_tool(
        self,
        request: AgentRequest,
        cancel: CancelToken,
        usage: Dict[str, Dict[str, int]],
        delegated: List[float],
        budget_left: Callable[[], Optional[float]],
    ) -> AgentTool:
        """
        Delegation to a named analyst: one nested conversation under the
        analyst's own prompt, model and turn limit, sharing the parent's
        cancel token. Its tokens and cost are folded into the parent's.
        """
        parent_tools = {t.name: t for t in request.tools}

        def run_task(args: Dict[str, Any]) -> str:
            agent_name = args.get("agent", "")
            definition = request.agents.get(agent_name)
            if definition is None:
                raise ValueError(f"Unknown analyst '{agent_name}'. Available: {', '.join(sorted(request.agents))}")
            allowed = definition.tools if definition.tools is not None else list(parent_tools)
            sub_request = AgentRequest(
                prompt=args.get("prompt", ""),
                model=definition.model or request.model,
                max_turns=definition.max_turns,
                max_budget_usd=budget_left(),
                cwd=request.cwd,
                permission_mode=request.permission_mode,
                tools=[parent_tools[name] for name in allowed if name in parent_tools],
                system_prompt=definition.prompt,
            )
            result: Optional[ResultEvent] = None
            for event in self.stream(sub_request, cancel):
                if isinstance(event, ResultEvent):
                    result = event
            if result is None:
                raise RuntimeError(f"Analyst '{agent_name}' returned no result")

            for model_id, counts in result.usage.items():
                totals = usage.setdefault(model_id, {"input_tokens": 0, "output_tokens": 0})
                totals["input_tokens"] += counts.get("input_tokens", 0)
                totals["output_tokens"] += counts.get("output_tokens", 0)
            delegated.append(result.total_cost_usd)
            log.info(f"Analyst '{agent_name}' finished: {result.subtype} in {result.num_turns} turn(s)")
            if result.subtype != "success":
                return f"{agent_name} stopped early ({result.subtype}). Partial findings:\n{result.result}"
            return result.result

        return AgentTool(
            name=TASK_TOOL,
            description="Delegate a research question to one of your analysts and get their written findings back.",
            input_schema={
                "type": "object",
                "properties": {
                    "agent": {"type": "string", "enum": sorted(request.agents)},
                    "prompt": {"type": "string"},
                },
                "required": ["agent", "prompt"],
            },
            handler=run_task,
        )

    def _run_tool(self, tool: Optional[AgentTool], call: Dict[str, Any], permission_mode: str):
        if tool is None:
            return f"Unknown tool: {call['name']}", True
        if permission_mode != "auto_approve":
            return f"Tool use not approved (permission_mode={permission_mode})", True
        try:
            output = tool.handler(call["input"] or {})
        except Exception as e:
            log.warning(f"Tool {call['name']} failed: {e}")
            return f"Error: {e}", True
        if isinstance(output, str):
            return output, False
        return json.dumps(output, default=str), False

    def stream(self, request: AgentRequest, cancel: CancelToken) -> Iterator[AgentEvent]:
        model_id = resolve_model_id(request.model)
        session_id = uuid.uuid4().hex
        usage = {model_id: {"input_tokens": 0, "output_tokens": 0}}
        cost = 0.0
        delegated: List[float] = []
        turns = 0
        last_text = ""

        def total_cost() -> float:
            return cost + sum(delegated)

        def budget_left() -> Optional[float]:
            if request.max_budget_usd is None:
                return None
            return max(request.max_budget_usd - total_cost(), 0.0)

        api_tools = list(request.tools)
        if request.agents:
            api_tools.append(self._task_tool(request, cancel, usage, delegated, budget_left))
        tools_by_name = {t.name: t for t in api_tools}
        yield SystemInitEvent(session_id=session_id, model=model_id, tools=list(tools_by_name))

        messages: List[Dict[str, Any]] = [{"role": "user", "content": request.prompt}]

        def result(subtype: str, errors: Optional[List[str]] = None) -> ResultEvent:
            return ResultEvent(
                subtype=subtype,
                result=last_text,
                total_cost_usd=total_cost(),
                num_turns=turns,
                usage=usage,
                session_id=session_id,
                errors=errors or [],
            )

        while True:
            cancel.raise_if_cancelled()
            if turns >= request.max_turns:
                yield result("error_max_turns", [f"Reached max_turns={request.max_turns}"])
                return

            start = time.perf_counter()
            kwargs: Dict[str, Any] = {
                "model": model_id,
                "max_tokens": self.max_tokens,
                "system": self._system_prompt(request),
                "messages": messages,
            }
            if tools_by_name:
                kwargs["tools"] = [t.to_api() for t in api_tools]
            response = self.client.messages.create(**kwargs)
            turns += 1
            log.debug(f"Agent turn {turns} completed in {(time.perf_counter() - start)*1000:.1f}ms")

            usage[model_id]["input_tokens"] += response.usage.input_tokens
            usage[model_id]["output_tokens"] += response.usage.output_tokens
            cost += usage_cost(model_id, response.usage.input_tokens, response.usage.output_tokens)

            text = "".join(b.text for b in response.content if b.type == "text")
            calls = [
                {"id": b.id, "name": b.name, "input": b.input}
                for b in response.content if b.type == "tool_use"
            ]
            if text:
                last_text = text
            yield AssistantEvent(text=text, tool_calls=calls)

            if request.max_budget_usd is not None and total_cost() >= request.max_budget_usd:
                yield result(
                    "error_max_budget_usd",
                    [f"Spent ${total_cost():.4f} of ${request.max_budget_usd:.2f} budget"],
                )
                return

            if response.stop_reason != "tool_use" or not calls:
                yield result("success")
                return

            messages.append({"role": "assistant", "content": response.content})
            tool_results = []
            for call in calls:
                cancel.raise_if_cancelled()
                content, is_error = self._run_tool(tools_by_name.get(call["name"]), call, request.permission_mode)
                yield ToolResultEvent(tool_use_id=call["id"], name=call["name"], content=content, is_error=is_error)
                tool_results.append({
                    "type": "tool_result",
                    "tool_use_id": call["id"],
                    "content": content,
                    "is_error": is_error,
                })
            messages.append({"role": "user", "content": tool_results})


class MockAgentBackend(AgentBackend):
    """
    Scripted backend for tests and dry runs.

    Replays `events` in order. With `error` set, raises it after the events.
    With `hang` set, blocks after the events until cancelled, then raises
    AgentCancelledError (a backend that outlives its deadline).
    """

    def __init__(
        self,
        events: Optional[List[AgentEvent]] = None,
        error: Optional[BaseException] = None,
        hang: bool = False,
        delay_s: float = 0.0,
    ):
        self.events = events if events is not None else self.success_script()
        self.error = error
        self.hang = hang
        self.delay_s = delay_s
        self.requests: List[AgentRequest] = []

    @staticmethod
    def success_script(output: str = "Mock session complete", session_id: str = "mock-session") -> List[AgentEvent]:
        return [
            SystemInitEvent(session_id=session_id, model="mock"),
            AssistantEvent(text=output),
            ResultEvent(
                subtype="success",
                result=output,
                total_cost_usd=0.0,
                num_turns=1,
                usage={"mock": {"input_tokens": 0, "output_tokens": 0}},
                session_id=session_id,
            ),
        ]

    def stream(self, request: AgentRequest, cancel: CancelToken) -> Iterator[AgentEvent]:
        self.requests.append(request)
        for event in self.events:
            if self.delay_s and cancel.wait(self.delay_s):
                raise AgentCancelledError("Agent call cancelled")
            yield event
        if self.error is not None:
            raise self.error
        if self.hang:
            cancel.wait()
            raise AgentCancelledError("Agent call cancelled")


def create_agent_backend(
    provider: str,
    api_key: Optional[str] = None,
    **kwargs
) -> AgentBackend:
    """
    Factory function to create the agent backend.

    Args:
        provider: "anthropic" or "mock"
        api_key: API key for the provider

    Raises:
        ValueError: If provider is unknown or the key is missing
    """
    provider = provider.lower()

    if provider == "anthropic":
        if not api_key:
            raise ValueError("Anthropic requires api_key (set anthropic_api_key or ANTHROPIC_API_KEY)")
        return AnthropicAgentBackend(api_key=api_key, **kwargs)

    elif provider == "mock":
        return MockAgentBackend(**kwargs)

    else:
        raise ValueError(f"Unknown provider: {provider}. Use 'anthropic' or 'mock'")
