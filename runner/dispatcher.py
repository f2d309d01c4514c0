"""
Task Dispatcher

Producer/consumer split between the scheduler tick and the work it fires.
The tick only submits; tasks run on thread pools, each inside an error
boundary that logs and swallows so no task can take the daemon down.

Work is split into lanes so slow work never queues ahead of fast work:
- stoploss: its own pool, shared by every fund
- sync/report: a maintenance pool, shared by every fund
- session: one small pool per fund, created on first use

A session holds its worker for up to its timeout, so only that fund's
session lane is occupied while it runs.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_for_futures
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

PROTECTIVE_LANE = "stoploss"
MAINTENANCE_LANE = "maintenance"


@dataclass(frozen=True)
class TaskName:
    """kind: session / report / sync / stoploss; detail: session type or period."""
    kind: str
    fund: str
    detail: str = ""

    def __str__(self) -> str:
        return f"{self.kind}:{self.fund}/{self.detail}" if self.detail else f"{self.kind}:{self.fund}"


def lane_for(name: TaskName) -> str:
    if name.kind == "stoploss":
        return PROTECTIVE_LANE
    if name.kind == "session":
        return f"session:{name.fund}"
    return MAINTENANCE_LANE


class TaskDispatcher:
    """
    Usage:
        dispatcher = TaskDispatcher(metrics=metrics)
        dispatcher.submit(TaskName("stoploss", "growth-fund"), run_stop_loss_check, "growth-fund")
        ...
        dispatcher.shutdown(wait=False, cancel_futures=True)
        dispatcher.drain(timeout_s=900)

    max_workers sizes the stop-loss and maintenance pools. Each fund's
    session lane gets session_workers_per_fund workers; with two, a second
    session for a busy fund still starts at once and is skipped by the
    session runner's per-fund lock instead of waiting in a queue.
    """

    def __init__(
        self,
        max_workers: int = 4,
        metrics: Optional[MetricsRecorder] = None,
        session_workers_per_fund: int = 2,
    ):
        self._max_workers = max_workers
        self._session_workers = session_workers_per_fund
        self._metrics = metrics
        self._lanes: Dict[str, ThreadPoolExecutor] = {}
        self._lanes_lock = threading.Lock()
        self._futures: List[Future] = []
        self._closed = False

    def _executor(self, lane: str) -> ThreadPoolExecutor:
        with self._lanes_lock:
            if self._closed:
                raise RuntimeError("TaskDispatcher is shut down")
            executor = self._lanes.get(lane)
            if executor is None:
                workers = self._session_workers if lane.startswith("session:") else self._max_workers
                executor = ThreadPoolExecutor(
                    max_workers=workers,
                    thread_name_prefix=f"fundx-{lane.replace(':', '-')}",
                )
                self._lanes[lane] = executor
            return executor

    def lanes(self) -> List[str]:
        with self._lanes_lock:
            return sorted(self._lanes)

    def submit(self, name: TaskName, fn: Callable[..., Any], *args, **kwargs) -> Future:
        executor = self._executor(lane_for(name))
        if self._metrics:
            self._metrics.record_task_dispatched(name.kind)
        future = executor.submit(self._guarded, name, fn, *args, **kwargs)
        with self._lanes_lock:
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(future)
        return future

    def _guarded(self, name: TaskName, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            label = f"{name.fund}/{name.detail}" if name.detail else name.fund
            logger.error(f"{name.kind.capitalize()} error ({label}): {e}", exc_info=True)
            if self._metrics:
                self._metrics.record_task_failure(name.kind)
            return None

    def pending(self) -> int:
        with self._lanes_lock:
            return sum(1 for f in self._futures if not f.done())

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        """Stop accepting work; with cancel_futures, queued tasks never start."""
        with self._lanes_lock:
            self._closed = True
            executors = list(self._lanes.values())
        for executor in executors:
            executor.shutdown(wait=False, cancel_futures=cancel_futures)
        if wait:
            for executor in executors:
                executor.shutdown(wait=True)

    def drain(self, timeout_s: Optional[float] = None) -> bool:
        """Wait for running tasks to finish. Returns False if some were still running at the deadline."""
        with self._lanes_lock:
            futures = list(self._futures)
        _, not_done = wait_for_futures(futures, timeout=timeout_s)
        if not_done:
            logger.warning(f"{len(not_done)} task(s) still running after {timeout_s}s drain")
        return not not_done
