"""
FundX Runner: Daemon Process Control

start: acquire the single-instance lock, configure logging, start metrics
and the notification gateway, then tick until SIGTERM/SIGINT.
stop: SIGTERM the recorded PID and clear the record.
status: report whether the recorded PID is alive.
"""

import logging
import signal
import threading
from typing import Any, Dict, Optional

from ai.agent_client import AgentBackend, create_agent_backend
from ai.invoker import BoundedAgentInvoker
from core.config import GlobalConfig, load_global_config
from core.exceptions import FundConfigError
from infra.alerting import AlertService
from infra.instance_lock import OsProcessProbe, ProcessProbe, SingleInstanceLock
from infra.metrics import MetricsRecorder
from infra.paths import daemon_log_path, workspace_root
from runner.dispatcher import TaskDispatcher
from runner.scheduler import Scheduler
from runner.session_runner import SessionRunner

logger = logging.getLogger(__name__)

LOCK_NAME = "daemon"
# Longest a stopping daemon waits for in-flight sessions before giving up the lock
SHUTDOWN_DRAIN_S = 30 * 60


class DaemonAlreadyRunning(RuntimeError):
    pass


def daemon_lock(probe: Optional[ProcessProbe] = None) -> SingleInstanceLock:
    return SingleInstanceLock(LOCK_NAME, workspace_root(), probe=probe)


def configure_logging(global_config: GlobalConfig) -> None:
    log_path = daemon_log_path()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, global_config.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


def build_agent_backend(global_config: GlobalConfig) -> AgentBackend:
    api_key = global_config.resolve_anthropic_key()
    if not api_key:
        raise FundConfigError("No Anthropic API key: set anthropic_api_key in config.yaml or ANTHROPIC_API_KEY")
    return create_agent_backend("anthropic", api_key=api_key)


def build_scheduler(
    global_config: GlobalConfig,
    backend: Optional[AgentBackend] = None,
    alerts: Optional[AlertService] = None,
    metrics: Optional[MetricsRecorder] = None,
) -> Scheduler:
    backend = backend or build_agent_backend(global_config)
    # No pinned config: model and budget defaults are re-read per call
    invoker = BoundedAgentInvoker(backend)
    runner = SessionRunner(invoker, alerts=alerts, metrics=metrics)
    return Scheduler(
        TaskDispatcher(metrics=metrics),
        runner,
        alerts=alerts,
        metrics=metrics,
    )


def start_daemon(
    probe: Optional[ProcessProbe] = None,
    stop_event: Optional[threading.Event] = None,
    backend: Optional[AgentBackend] = None,
    drain_timeout_s: float = SHUTDOWN_DRAIN_S,
) -> None:
    """
    Run the scheduler in the foreground until signalled.

    On stop, queued tasks are cancelled and running ones (sessions are
    bounded by their own timeouts) get up to drain_timeout_s to finish.
    The lock is held until then, so a second daemon cannot start while
    this one is still writing fund state.
    """
    lock = daemon_lock(probe)
    if not lock.acquire():
        raise DaemonAlreadyRunning(
            f"Daemon already running (PID={lock.read_pid()}). Lock file: {lock.lock_file}"
        )

    stop_event = stop_event or threading.Event()
    scheduler: Optional[Scheduler] = None
    alerts: Optional[AlertService] = None
    try:
        global_config = load_global_config()
        configure_logging(global_config)
        logger.info(f"Starting FundX daemon (PID={lock.pid}, workspace={workspace_root()})")

        metrics = MetricsRecorder(
            enabled=global_config.monitoring.metrics_enabled,
            port=global_config.monitoring.metrics_port,
        )
        metrics.start()

        alerts = AlertService.from_config(global_config)
        alerts.start()

        scheduler = build_scheduler(global_config, backend=backend, alerts=alerts, metrics=metrics)

        def _handle_stop(signum, _frame):
            logger.warning(f"Received signal {signum}, shutting down")
            stop_event.set()

        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGTERM, _handle_stop)
            signal.signal(signal.SIGINT, _handle_stop)

        scheduler.run_forever(stop_event)
    finally:
        if scheduler is not None:
            scheduler.dispatcher.shutdown(wait=False, cancel_futures=True)
            if not scheduler.dispatcher.drain(drain_timeout_s):
                logger.error(f"Releasing daemon lock with tasks still running after {drain_timeout_s}s")
        if alerts is not None:
            alerts.stop()
        lock.release()
        logger.info("FundX daemon stopped")


def stop_daemon(probe: Optional[ProcessProbe] = None) -> Dict[str, Any]:
    probe = probe or OsProcessProbe()
    lock = daemon_lock(probe)
    pid = lock.read_pid()
    if pid is None:
        return {"stopped": False, "pid": None}

    stopped = False
    if probe.is_alive(pid):
        try:
            probe.terminate(pid)
            stopped = True
            logger.info(f"Sent SIGTERM to daemon PID={pid}")
        except OSError as e:
            logger.error(f"Failed to signal daemon PID={pid}: {e}")
        # The daemon releases its own record once its tasks have drained
    else:
        logger.warning(f"Daemon PID={pid} not running; clearing stale lock file")
        lock.clear()
    return {"stopped": stopped, "pid": pid}


def daemon_status(probe: Optional[ProcessProbe] = None) -> Dict[str, Any]:
    lock = daemon_lock(probe)
    pid = lock.read_pid()
    if pid is None:
        return {"running": False, "pid": None}
    if not lock.probe.is_alive(pid):
        lock.clear()
        return {"running": False, "pid": None}
    return {"running": True, "pid": pid}
