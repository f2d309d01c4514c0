"""
Tests for the scheduler tick: fund-local time, cadence rules, dispatch and
per-fund fault isolation.
"""

import threading
import time
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
import yaml

from core.config import DaemonScheduleConfig, FundConfig, GlobalConfig
from infra.metrics import MetricsRecorder
from runner.dispatcher import TaskDispatcher, TaskName
from runner.scheduler import Scheduler, in_market_hours, local_clock, plan_fund_tick
from tests.helpers import FakeBroker, fund_config_dict, make_position

UTC = timezone.utc
SCHEDULE = DaemonScheduleConfig()


def _config(name="alpha", **overrides):
    return FundConfig.model_validate(fund_config_dict(name, **overrides))


def _plan(config, *utc_parts):
    return [(t.kind, t.detail) for t in plan_fund_tick(config, datetime(*utc_parts, tzinfo=UTC), SCHEDULE)]


class TestLocalClock:
    def test_new_york_winter_offset(self):
        # 2026-03-02 is a Monday, before the DST switch on 2026-03-08
        clock = local_clock("America/New_York", datetime(2026, 3, 2, 14, 0, tzinfo=UTC))
        assert clock.time == "09:00"
        assert clock.weekday == "MON"

    def test_new_york_summer_offset(self):
        clock = local_clock("America/New_York", datetime(2026, 4, 1, 13, 0, tzinfo=UTC))
        assert clock.time == "09:00"

    def test_naive_datetime_is_utc(self):
        assert local_clock("UTC", datetime(2026, 3, 2, 7, 5)).time == "07:05"

    def test_local_date_can_differ_from_utc(self):
        clock = local_clock("America/New_York", datetime(2026, 3, 7, 0, 0, tzinfo=UTC))
        assert clock.weekday == "FRI"
        assert clock.day == 6

    @pytest.mark.parametrize("hhmm,expected", [("09:29", False), ("09:30", True), ("15:59", True), ("16:00", False)])
    def test_market_hours_bounds(self, hhmm, expected):
        hour, minute = map(int, hhmm.split(":"))
        clock = local_clock("UTC", datetime(2026, 3, 2, hour, minute, tzinfo=UTC))
        assert in_market_hours(clock, SCHEDULE) is expected


class TestPlanFundTick:
    def test_session_fires_in_fund_timezone(self):
        config = _config()
        assert _plan(config, 2026, 3, 2, 14, 0) == [("session", "pre_market")]
        assert _plan(config, 2026, 3, 2, 9, 0) == []

    def test_session_carries_focus_and_duration(self):
        sessions = {"pre_market": {"enabled": True, "time": "09:00", "focus": "Plan", "max_duration_minutes": 20}}
        [task] = plan_fund_tick(_config(schedule={"sessions": sessions}),
                                datetime(2026, 3, 2, 14, 0, tzinfo=UTC), SCHEDULE)
        assert task.focus == "Plan"
        assert task.max_duration_minutes == 20
        assert task.name == TaskName("session", "alpha", "pre_market")

    def test_disabled_session_never_fires(self):
        # post_market 16:30 NY is disabled in the default fixture config
        assert ("session", "post_market") not in _plan(_config(), 2026, 3, 2, 21, 30)

    def test_planning_is_idempotent(self):
        config = _config()
        moment = datetime(2026, 3, 2, 14, 30, tzinfo=UTC)
        assert plan_fund_tick(config, moment, SCHEDULE) == plan_fund_tick(config, moment, SCHEDULE)

    def test_non_trading_day_fires_nothing(self):
        # 2026-03-07 is a Saturday in New York at 09:00 and 18:30
        config = _config()
        assert _plan(config, 2026, 3, 7, 14, 0) == []
        assert _plan(config, 2026, 3, 7, 23, 30) == []

    def test_custom_trading_days(self):
        config = _config(schedule={"trading_days": ["SAT"]})
        assert _plan(config, 2026, 3, 7, 14, 0) == [("session", "pre_market")]
        assert _plan(config, 2026, 3, 2, 14, 0) == []

    def test_sync_and_first_stoploss_at_open(self):
        assert _plan(_config(), 2026, 3, 2, 14, 30) == [("sync", ""), ("stoploss", "")]

    def test_stoploss_cadence_inside_market_hours(self):
        config = _config()
        assert _plan(config, 2026, 3, 2, 15, 5) == [("stoploss", "")]
        assert _plan(config, 2026, 3, 2, 15, 7) == []
        assert _plan(config, 2026, 3, 2, 14, 25) == []
        assert _plan(config, 2026, 3, 2, 21, 0) == []

    def test_daily_report(self):
        assert _plan(_config(), 2026, 3, 2, 23, 30) == [("report", "daily")]

    def test_weekly_report_on_local_friday(self):
        # 19:00 Friday in New York is 00:00 Saturday UTC
        assert _plan(_config(), 2026, 3, 7, 0, 0) == [("report", "weekly")]
        assert _plan(_config(), 2026, 3, 3, 0, 0) == []

    def test_monthly_report_on_first_of_month(self):
        # 2026-04-01 is a Wednesday; 19:00 EDT is 23:00 UTC
        assert _plan(_config(), 2026, 4, 1, 23, 0) == [("report", "monthly")]

    def test_special_session(self):
        config = _config(schedule={"special_sessions": [
            {"trigger": "every Monday", "time": "08:00", "focus": "Week ahead", "max_duration_minutes": 10},
        ]})
        [task] = plan_fund_tick(config, datetime(2026, 3, 2, 13, 0, tzinfo=UTC), SCHEDULE)
        assert task.kind == "session"
        assert task.detail == "special_every_monday"
        assert task.focus == "Week ahead"
        assert task.max_duration_minutes == 10
        assert _plan(config, 2026, 3, 3, 13, 0) == []

    def test_custom_daemon_cadences(self):
        schedule = DaemonScheduleConfig(portfolio_sync_time="08:00", stoploss_interval_minutes=15)
        tasks = plan_fund_tick(_config(), datetime(2026, 3, 2, 13, 0, tzinfo=UTC), schedule)
        assert [t.kind for t in tasks] == ["sync"]
        tasks = plan_fund_tick(_config(), datetime(2026, 3, 2, 15, 5, tzinfo=UTC), schedule)
        assert tasks == []


@pytest.fixture
def dispatcher():
    return Mock(spec=TaskDispatcher)


@pytest.fixture
def runner():
    return Mock()


def _scheduler(dispatcher, runner, **kwargs):
    return Scheduler(dispatcher, runner, global_config=GlobalConfig(), **kwargs)


class TestSchedulerTick:
    def test_dispatches_session_to_runner(self, make_fund, dispatcher, runner):
        make_fund("alpha")
        tasks = _scheduler(dispatcher, runner).tick(datetime(2026, 3, 2, 14, 0, tzinfo=UTC))

        assert [t.name for t in tasks] == [TaskName("session", "alpha", "pre_market")]
        name, fn, *args = dispatcher.submit.call_args.args
        assert name == TaskName("session", "alpha", "pre_market")
        assert fn == runner.run
        assert args == ["alpha", "pre_market", "Plan the day", None]

    def test_malformed_fund_does_not_block_others(self, make_fund, dispatcher, runner):
        make_fund("a-broken", raw="fund: [unclosed")
        make_fund("b")
        make_fund("c")

        tasks = _scheduler(dispatcher, runner).tick(datetime(2026, 3, 2, 14, 0, tzinfo=UTC))

        assert sorted(t.fund for t in tasks) == ["b", "c"]
        assert dispatcher.submit.call_count == 2

    def test_loader_exception_is_isolated(self, dispatcher, runner):
        def loader(name):
            if name == "a":
                raise RuntimeError("disk on fire")
            return _config(name)

        scheduler = _scheduler(dispatcher, runner, fund_lister=lambda: ["a", "b", "c"], config_loader=loader)
        tasks = scheduler.tick(datetime(2026, 3, 2, 14, 0, tzinfo=UTC))
        assert [t.fund for t in tasks] == ["b", "c"]

    def test_tasks_are_keyed_by_directory_name(self, dispatcher, runner):
        scheduler = _scheduler(
            dispatcher, runner,
            fund_lister=lambda: ["alpha-dir"],
            config_loader=lambda name: _config("alpha"),
        )
        tasks = scheduler.tick(datetime(2026, 3, 2, 14, 0, tzinfo=UTC))
        assert [t.fund for t in tasks] == ["alpha-dir"]
        assert dispatcher.submit.call_args.args[2] == "alpha-dir"

    def test_mismatched_fund_name_is_skipped(self, make_fund, dispatcher, runner):
        make_fund("alpha", raw=yaml.safe_dump(fund_config_dict("bravo")))
        make_fund("charlie")
        tasks = _scheduler(dispatcher, runner).tick(datetime(2026, 3, 2, 14, 0, tzinfo=UTC))
        assert [t.fund for t in tasks] == ["charlie"]

    def test_inactive_funds_are_skipped(self, make_fund, dispatcher, runner):
        make_fund("alpha", fund={"status": "paused"})
        make_fund("bravo", fund={"status": "closed"})
        assert _scheduler(dispatcher, runner).tick(datetime(2026, 3, 2, 14, 0, tzinfo=UTC)) == []
        dispatcher.submit.assert_not_called()

    def test_tick_records_metrics(self, workspace, dispatcher, runner):
        metrics = MetricsRecorder(enabled=False)
        _scheduler(dispatcher, runner, metrics=metrics).tick(datetime(2026, 3, 2, 14, 0, tzinfo=UTC))
        assert metrics.count("ticks") == 1

    def test_no_funds_is_noop(self, workspace, dispatcher, runner):
        assert _scheduler(dispatcher, runner).tick(datetime(2026, 3, 2, 14, 0, tzinfo=UTC)) == []

    def test_stop_loss_task_records_liquidations(self, make_fund, seed_portfolio, runner):
        make_fund("alpha")
        seed_portfolio("alpha", cash=0, positions=[make_position("AAPL", 10, 100, 95, stop_loss=90)])
        metrics = MetricsRecorder(enabled=False)
        broker = FakeBroker(prices={"AAPL": 88.0})
        dispatcher = TaskDispatcher(max_workers=2, metrics=metrics)
        scheduler = _scheduler(dispatcher, runner, broker_factory=lambda _: broker, metrics=metrics)

        tasks = scheduler.tick(datetime(2026, 3, 2, 15, 5, tzinfo=UTC))
        dispatcher.shutdown(wait=True)

        assert [t.kind for t in tasks] == ["stoploss"]
        assert broker.sells() == ["AAPL"]
        assert metrics.count("stoploss:sold") == 1
        assert metrics.count("tasks:stoploss") == 1

    def test_run_forever_returns_when_stopped(self, workspace, dispatcher, runner):
        stop = threading.Event()
        stop.set()
        _scheduler(dispatcher, runner).run_forever(stop)
        dispatcher.submit.assert_not_called()


class TestDispatcher:
    def test_task_failure_is_contained(self, caplog):
        metrics = MetricsRecorder(enabled=False)
        dispatcher = TaskDispatcher(max_workers=2, metrics=metrics)

        def boom():
            raise RuntimeError("agent exploded")

        failed = dispatcher.submit(TaskName("session", "alpha", "pre_market"), boom)
        ok = dispatcher.submit(TaskName("report", "alpha", "daily"), lambda: "written")
        dispatcher.shutdown(wait=True)

        assert failed.result() is None
        assert ok.result() == "written"
        assert "Session error (alpha/pre_market): agent exploded" in caplog.text
        assert metrics.count("task_failures:session") == 1
        assert metrics.count("task_failures:report") == 0
        assert metrics.count("tasks:session") == 1

    def test_task_name_str(self):
        assert str(TaskName("session", "alpha", "pre_market")) == "session:alpha/pre_market"
        assert str(TaskName("sync", "alpha")) == "sync:alpha"

    def test_pending_counts_in_flight(self):
        release = threading.Event()
        dispatcher = TaskDispatcher(max_workers=1)
        dispatcher.submit(TaskName("sync", "alpha"), release.wait, 5)
        assert dispatcher.pending() == 1
        release.set()
        dispatcher.shutdown(wait=True)
        assert dispatcher.pending() == 0

    def test_shutdown_cancels_queued_tasks(self):
        release = threading.Event()
        started = threading.Event()
        ran = []

        def blocking():
            started.set()
            release.wait(5)
            ran.append("first")

        dispatcher = TaskDispatcher(max_workers=1)
        first = dispatcher.submit(TaskName("sync", "alpha"), blocking)
        queued = dispatcher.submit(TaskName("report", "alpha", "daily"), ran.append, "queued")
        assert started.wait(5)

        dispatcher.shutdown(wait=False, cancel_futures=True)
        release.set()
        assert dispatcher.drain(5)

        assert first.done()
        assert queued.cancelled()
        assert ran == ["first"]

    def test_submit_after_shutdown_is_refused(self):
        dispatcher = TaskDispatcher()
        dispatcher.shutdown()
        with pytest.raises(RuntimeError):
            dispatcher.submit(TaskName("sync", "alpha"), lambda: None)

    def test_drain_reports_tasks_still_running(self):
        release = threading.Event()
        dispatcher = TaskDispatcher()
        dispatcher.submit(TaskName("session", "alpha", "pre_market"), release.wait, 5)
        assert dispatcher.drain(0.05) is False
        release.set()
        assert dispatcher.drain(5) is True
        dispatcher.shutdown(wait=True)

    def test_lanes_split_by_kind_and_fund(self):
        dispatcher = TaskDispatcher()
        for name in [
            TaskName("session", "alpha", "pre_market"),
            TaskName("session", "bravo", "pre_market"),
            TaskName("stoploss", "alpha"),
            TaskName("sync", "alpha"),
            TaskName("report", "bravo", "daily"),
        ]:
            dispatcher.submit(name, lambda: None)
        dispatcher.shutdown(wait=True)
        assert dispatcher.lanes() == ["maintenance", "session:alpha", "session:bravo", "stoploss"]


class TestLaneIsolation:
    def test_stop_loss_runs_while_every_fund_is_in_a_session(self, make_fund, seed_portfolio):
        funds = [f"f{i}" for i in range(9)]
        for name in funds:
            make_fund(name, schedule={
                "timezone": "America/New_York",
                "trading_days": ["MON", "TUE", "WED", "THU", "FRI"],
                "sessions": {"morning": {"enabled": True, "time": "10:05", "focus": "Hold"}},
            })
        seed_portfolio("f8", cash=0, positions=[make_position("AAPL", 10, 100, 95, stop_loss=90)])

        release = threading.Event()
        in_session = []

        def hanging_session(fund, *args):
            in_session.append(fund)
            release.wait(10)

        runner = Mock()
        runner.run.side_effect = hanging_session
        broker = FakeBroker(prices={"AAPL": 88.0})
        dispatcher = TaskDispatcher(max_workers=2)
        scheduler = _scheduler(dispatcher, runner, broker_factory=lambda _: broker)

        try:
            tasks = scheduler.tick(datetime(2026, 3, 2, 15, 5, tzinfo=UTC))
            deadline = time.monotonic() + 5
            while time.monotonic() < deadline and (broker.sells() != ["AAPL"] or len(in_session) < 9):
                time.sleep(0.01)

            assert [t.kind for t in tasks].count("session") == 9
            assert [t.kind for t in tasks].count("stoploss") == 9
            assert sorted(in_session) == funds
            assert not release.is_set()
            assert broker.sells() == ["AAPL"]
        finally:
            release.set()
            dispatcher.shutdown(wait=True)
