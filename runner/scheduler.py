"""
FundX Runner: Scheduler

One tick per minute. For every active fund:
1. Resolve the fund-local wall clock; skip non-trading days
2. Fire named sessions whose HH:MM matches
3. Fire special sessions whose trigger matches today and whose HH:MM matches
4. Fire daily / weekly / monthly reports
5. Fire the portfolio sync
6. During market hours, fire the stop-loss check every N minutes

Planning (plan_fund_tick) is a pure function of config + time. Dispatch
hands work to the TaskDispatcher and returns without waiting for it.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from core.broker import AlpacaBroker, BrokerGateway
from core.config import (
    WEEKDAYS,
    DaemonScheduleConfig,
    FundConfig,
    GlobalConfig,
    list_fund_names,
    load_fund_config,
    load_global_config,
)
from core.reports import generate_report
from core.special_sessions import check_special_sessions, special_session_type
from core.stoploss import run_stop_loss_check, stop_loss_check_due
from core.sync import sync_portfolio
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from runner.dispatcher import TaskDispatcher, TaskName
from runner.session_runner import SessionRunner

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalClock:
    time: str  # HH:MM
    weekday: str  # MON..SUN
    day: int
    hour: int
    minute: int
    date: date
    moment: datetime


def local_clock(tz: str, now: datetime) -> LocalClock:
    """Fund-local wall clock for an instant; naive datetimes are taken as UTC."""
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(tz))
    return LocalClock(
        time=f"{local.hour:02d}:{local.minute:02d}",
        weekday=WEEKDAYS[local.weekday()],
        day=local.day,
        hour=local.hour,
        minute=local.minute,
        date=local.date(),
        moment=local,
    )


def _minutes(hhmm: str) -> int:
    hour, minute = hhmm.split(":")
    return int(hour) * 60 + int(minute)


def in_market_hours(clock: LocalClock, schedule: DaemonScheduleConfig) -> bool:
    now = clock.hour * 60 + clock.minute
    return _minutes(schedule.market_open) <= now < _minutes(schedule.market_close)


@dataclass(frozen=True)
class ScheduledTask:
    kind: str  # session / report / sync / stoploss
    fund: str
    detail: str = ""
    focus: Optional[str] = None
    max_duration_minutes: Optional[int] = None

    @property
    def name(self) -> TaskName:
        return TaskName(kind=self.kind, fund=self.fund, detail=self.detail)


def plan_fund_tick(
    config: FundConfig,
    now: datetime,
    schedule: DaemonScheduleConfig,
    fund_name: Optional[str] = None,
) -> List[ScheduledTask]:
    """Everything that fires for one fund in the minute containing `now`; tasks are keyed by `fund_name`."""
    fund = fund_name or config.fund.name
    clock = local_clock(config.schedule.timezone, now)
    if clock.weekday not in config.schedule.trading_days:
        return []

    tasks: List[ScheduledTask] = []

    for session_type, session in config.schedule.sessions.items():
        if session.enabled and session.time == clock.time:
            tasks.append(ScheduledTask(
                kind="session",
                fund=fund,
                detail=session_type,
                focus=session.focus,
                max_duration_minutes=session.max_duration_minutes,
            ))

    for special in check_special_sessions(config, clock.moment):
        if special.time == clock.time:
            tasks.append(ScheduledTask(
                kind="session",
                fund=fund,
                detail=special_session_type(special.trigger),
                focus=special.focus,
                max_duration_minutes=special.max_duration_minutes,
            ))

    if clock.time == schedule.daily_report_time:
        tasks.append(ScheduledTask(kind="report", fund=fund, detail="daily"))
    if clock.weekday == schedule.weekly_report_day and clock.time == schedule.weekly_report_time:
        tasks.append(ScheduledTask(kind="report", fund=fund, detail="weekly"))
    if clock.day == 1 and clock.time == schedule.monthly_report_time:
        tasks.append(ScheduledTask(kind="report", fund=fund, detail="monthly"))

    if clock.time == schedule.portfolio_sync_time:
        tasks.append(ScheduledTask(kind="sync", fund=fund))

    if in_market_hours(clock, schedule) and stop_loss_check_due(clock.moment, schedule.stoploss_interval_minutes):
        tasks.append(ScheduledTask(kind="stoploss", fund=fund))

    return tasks


class Scheduler:
    """
    Minute-granularity driver over every fund in the workspace.

    Usage:
        scheduler = Scheduler(TaskDispatcher(), session_runner)
        scheduler.run_forever(stop_event)
    """

    def __init__(
        self,
        dispatcher: TaskDispatcher,
        session_runner: SessionRunner,
        global_config: Optional[GlobalConfig] = None,
        broker_factory: Callable[[str], BrokerGateway] = AlpacaBroker.for_fund,
        alerts: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
        fund_lister: Callable[[], List[str]] = list_fund_names,
        config_loader: Callable[[str], FundConfig] = load_fund_config,
    ):
        self.dispatcher = dispatcher
        self.session_runner = session_runner
        self._global_config = global_config
        self.broker_factory = broker_factory
        self.alerts = alerts
        self.metrics = metrics
        self.fund_lister = fund_lister
        self.config_loader = config_loader
        self._last_minute: Optional[datetime] = None

    def _daemon_schedule(self) -> DaemonScheduleConfig:
        if self._global_config is not None:
            return self._global_config.schedule
        try:
            return load_global_config().schedule
        except Exception as e:
            logger.error(f"Global config unreadable, using default cadences: {e}")
            return DaemonScheduleConfig()

    def tick(self, now: Optional[datetime] = None) -> List[ScheduledTask]:
        """Plan and dispatch one minute. Returns the tasks handed to the dispatcher."""
        now = now or datetime.now(timezone.utc)
        schedule = self._daemon_schedule()
        dispatched: List[ScheduledTask] = []

        try:
            fund_names = self.fund_lister()
        except Exception as e:
            logger.error(f"Could not list funds: {e}")
            return dispatched

        for fund_name in fund_names:
            try:
                config = self.config_loader(fund_name)
                if config.fund.status != "active":
                    continue
                for task in plan_fund_tick(config, now, schedule, fund_name):
                    self._dispatch(task)
                    dispatched.append(task)
            except Exception as e:
                logger.error(f"Tick error ({fund_name}): {e}")

        if self.metrics:
            self.metrics.record_tick(now.timestamp())
        if dispatched:
            logger.info(f"Tick {now.isoformat(timespec='minutes')}: dispatched {', '.join(str(t.name) for t in dispatched)}")
        return dispatched

    def _dispatch(self, task: ScheduledTask) -> None:
        if task.kind == "session":
            self.dispatcher.submit(
                task.name, self.session_runner.run,
                task.fund, task.detail, task.focus, task.max_duration_minutes,
            )
        elif task.kind == "report":
            self.dispatcher.submit(task.name, generate_report, task.fund, task.detail)
        elif task.kind == "sync":
            self.dispatcher.submit(task.name, sync_portfolio, task.fund, None, self.broker_factory)
        elif task.kind == "stoploss":
            self.dispatcher.submit(task.name, self._stop_loss, task.fund)
        else:
            raise ValueError(f"Unknown task kind: {task.kind}")

    def _stop_loss(self, fund_name: str) -> None:
        execution = run_stop_loss_check(fund_name, broker_factory=self.broker_factory, alerts=self.alerts)
        if execution is not None and self.metrics:
            self.metrics.record_stop_loss(len(execution.succeeded), len(execution.failed))

    def run_forever(self, stop_event: threading.Event) -> None:
        """Tick at each minute boundary until stop_event is set."""
        logger.info("Scheduler started")
        while not stop_event.is_set():
            now = datetime.now(timezone.utc)
            next_minute = now.replace(second=0, microsecond=0) + timedelta(minutes=1)
            if stop_event.wait((next_minute - now).total_seconds()):
                break
            minute = datetime.now(timezone.utc).replace(second=0, microsecond=0)
            if minute == self._last_minute:
                continue
            self._last_minute = minute
            try:
                self.tick(minute)
            except Exception as e:
                logger.error(f"Tick failed: {e}", exc_info=True)
        logger.info("Scheduler stopped")
