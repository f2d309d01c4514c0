"""Prometheus-backed metrics hooks for the scheduler, sessions and stop-loss executor."""

from __future__ import annotations

import logging
from typing import Dict, Optional

from prometheus_client import Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

_METRIC_PREFIX = "fundx_"


class MetricsRecorder:
    """
    Expose daemon stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    In-process counters are always kept so callers (and tests) can read them
    back when the exporter is disabled.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = False, port: int = 9100):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = False, port: int = 9100) -> None:
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._counts: Dict[str, float] = {}

        if not self._enabled:
            self._tick_counter = None
            self._tasks_counter = None
            self._task_failures_counter = None
            self._session_counter = None
            self._session_cost_counter = None
            self._stoploss_counter = None
            self._last_tick_gauge = None
            return

        self._tick_counter = Counter(
            "fundx_scheduler_ticks_total",
            "Scheduler ticks evaluated",
        )
        self._tasks_counter = Counter(
            "fundx_tasks_dispatched_total",
            "Tasks dispatched by kind",
            labelnames=("kind",),
        )
        self._task_failures_counter = Counter(
            "fundx_task_failures_total",
            "Dispatched tasks that raised, by kind",
            labelnames=("kind",),
        )
        self._session_counter = Counter(
            "fundx_sessions_total",
            "Agent sessions by outcome status",
            labelnames=("status",),
        )
        self._session_cost_counter = Counter(
            "fundx_session_cost_usd_total",
            "Cumulative agent session cost in USD",
            labelnames=("fund",),
        )
        self._stoploss_counter = Counter(
            "fundx_stoploss_liquidations_total",
            "Positions liquidated by the stop-loss executor",
            labelnames=("outcome",),  # outcome: "sold", "failed"
        )
        self._last_tick_gauge = Gauge(
            "fundx_scheduler_last_tick_timestamp",
            "Unix time of the last completed scheduler tick",
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        if cls._instance is not None and cls._instance._enabled:
            from prometheus_client import REGISTRY
            for collector in list(REGISTRY._collector_to_names):
                names = REGISTRY._collector_to_names.get(collector, set())
                if any(name.startswith(_METRIC_PREFIX) for name in names):
                    REGISTRY.unregister(collector)

        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return

        # Auto-retry on port conflict
        ports_to_try = [self._port, self._port + 1, self._port + 2, self._port + 3]
        last_error = None

        for port in ports_to_try:
            try:
                start_http_server(port)
                self._started = True
                if port != self._port:
                    logger.warning(
                        "Port %s in use, successfully bound to port %s instead",
                        self._port, port
                    )
                    self._port = port
                logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)
                return
            except OSError as exc:
                last_error = exc
                if port != ports_to_try[-1]:
                    logger.debug("Port %s in use, trying next port...", port)
                continue

        self._enabled = False
        logger.error(
            "Failed to start metrics exporter after trying ports %s: %s",
            ports_to_try, last_error
        )

    def is_enabled(self) -> bool:
        return self._enabled

    def _bump(self, key: str, amount: float = 1.0) -> None:
        self._counts[key] = self._counts.get(key, 0.0) + amount

    def count(self, key: str) -> float:
        """In-process counter value, e.g. count("task_failures:session")."""
        return self._counts.get(key, 0.0)

    def record_tick(self, timestamp: float) -> None:
        self._bump("ticks")
        if self._enabled and self._tick_counter and self._last_tick_gauge:
            self._tick_counter.inc()
            self._last_tick_gauge.set(timestamp)

    def record_task_dispatched(self, kind: str) -> None:
        self._bump(f"tasks:{kind}")
        if self._enabled and self._tasks_counter:
            self._tasks_counter.labels(kind=kind).inc()

    def record_task_failure(self, kind: str) -> None:
        self._bump(f"task_failures:{kind}")
        if self._enabled and self._task_failures_counter:
            self._task_failures_counter.labels(kind=kind).inc()

    def record_session(self, fund: str, status: str, cost_usd: float) -> None:
        self._bump(f"sessions:{status}")
        if self._enabled and self._session_counter and self._session_cost_counter:
            self._session_counter.labels(status=status).inc()
            if cost_usd > 0:
                self._session_cost_counter.labels(fund=fund).inc(cost_usd)

    def record_stop_loss(self, sold: int, failed: int) -> None:
        self._bump("stoploss:sold", sold)
        self._bump("stoploss:failed", failed)
        if self._enabled and self._stoploss_counter:
            if sold:
                self._stoploss_counter.labels(outcome="sold").inc(sold)
            if failed:
                self._stoploss_counter.labels(outcome="failed").inc(failed)


__all__ = ["MetricsRecorder"]
