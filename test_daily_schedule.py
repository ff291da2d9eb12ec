#!/usr/bin/env python3
"""
Tests for the daily restart schedule
"""
from datetime import datetime
from unittest import mock

import pytest

from monitor_pon import HealthMonitor, next_daily_restart
from pon_config import Config, DailyTime
from pon_restart import RestartError
from test_health_monitor import FakeClock, advance

SLOW = 2000
FAST = 100


@pytest.mark.parametrize("now, daily, expected", [
    (datetime(2024, 5, 1, 3, 5), DailyTime(3, 0), datetime(2024, 5, 2, 3, 0)),
    (datetime(2024, 5, 1, 2, 59), DailyTime(3, 0), datetime(2024, 5, 1, 3, 0)),
    (datetime(2024, 5, 1, 3, 0), DailyTime(3, 0), datetime(2024, 5, 2, 3, 0)),
    (datetime(2024, 5, 1, 3, 0, 10), DailyTime(3, 0, 30), datetime(2024, 5, 1, 3, 0, 30)),
    (datetime(2024, 5, 31, 23, 59, 59), DailyTime(0, 0), datetime(2024, 6, 1, 0, 0)),
    (datetime(2024, 12, 31, 12, 0), DailyTime(4, 30), datetime(2025, 1, 1, 4, 30)),
])
def test_next_daily_restart(now, daily, expected):
    assert next_daily_restart(daily, now) == expected


def test_next_daily_restart_is_strictly_future():
    daily = DailyTime(3, 0)
    now = datetime(2024, 5, 1, 3, 0, 0, 500)
    assert next_daily_restart(daily, now) > now


def build_monitor(clock, restarter, config):
    return HealthMonitor(config, restarter, timefunc=clock.time, delayfunc=clock.sleep,
                         nowfunc=clock.datetime_now)


def make_monitor(restarter, at, delay=FAST):
    clock = FakeClock(at.timestamp())
    monitor = build_monitor(clock, restarter, Config(restart_every_day_time=DailyTime(3, 0)))
    monitor.measure_delay = mock.Mock(return_value=delay)
    return monitor, clock


def test_schedule_without_daily_time_returns_none():
    monitor = build_monitor(FakeClock(), mock.Mock(), Config())
    assert monitor.schedule_next_daily_restart() is None
    assert monitor.daily_event is None


def test_schedule_arms_next_occurrence():
    monitor, clock = make_monitor(mock.Mock(), datetime(2024, 5, 1, 3, 5))
    assert monitor.schedule_next_daily_restart() == datetime(2024, 5, 2, 3, 0)
    assert monitor.next_restart_time == datetime(2024, 5, 2, 3, 0)
    # 23h55m on the monotonic queue
    assert monitor.daily_event.time == clock.now + 86100


def test_daily_restart_fires_and_rearms():
    restarter = mock.Mock()
    monitor, clock = make_monitor(restarter, datetime(2024, 5, 1, 2, 59))
    monitor.start()

    advance(monitor, clock, 60)

    restarter.restart.assert_called_once_with()
    assert monitor.restarting is True
    assert monitor.polling is True
    assert monitor.next_restart_time == datetime(2024, 5, 2, 3, 0)
    assert monitor.daily_event.time == clock.now + 86400


def test_daily_restart_rearms_when_suppressed():
    restarter = mock.Mock()
    monitor, clock = make_monitor(restarter, datetime(2024, 5, 1, 2, 59), delay=SLOW)
    monitor.start()
    monitor.restarting = True

    advance(monitor, clock, 60)

    restarter.restart.assert_not_called()
    assert monitor.polling is True
    assert monitor.next_restart_time == datetime(2024, 5, 2, 3, 0)


def test_daily_restart_rearms_after_failure():
    restarter = mock.Mock()
    restarter.restart.side_effect = RestartError("Get Frm_Logintoken failed: empty response.")
    monitor, clock = make_monitor(restarter, datetime(2024, 5, 1, 2, 59))
    monitor.start()

    advance(monitor, clock, 60)

    restarter.restart.assert_called_once_with()
    assert monitor.restarting is False
    assert monitor.polling is True
    assert monitor.next_restart_time == datetime(2024, 5, 2, 3, 0)


def test_daily_restart_resets_bad_count():
    monitor, clock = make_monitor(mock.Mock(), datetime(2024, 5, 1, 2, 59, 57), delay=SLOW)
    monitor.start()
    advance(monitor, clock, 2)
    assert monitor.bad_count == 2

    advance(monitor, clock, 1)
    assert monitor.bad_count == 0


def test_daily_restart_ignores_wall_clock_jumping_forward():
    restarter = mock.Mock()
    monitor, clock = make_monitor(restarter, datetime(2024, 5, 1, 2, 0))
    monitor.start()

    clock.wall = datetime(2024, 5, 2, 10, 0).timestamp()
    advance(monitor, clock, 1)
    restarter.restart.assert_not_called()

    # Still one hour of elapsed time away
    advance(monitor, clock, 3598)
    restarter.restart.assert_not_called()
    advance(monitor, clock, 1)
    restarter.restart.assert_called_once_with()


def test_daily_restart_rearms_for_tomorrow_when_wall_clock_lags():
    restarter = mock.Mock()
    monitor, clock = make_monitor(restarter, datetime(2024, 5, 1, 2, 59))
    monitor.start()

    clock.wall -= 5
    advance(monitor, clock, 60)

    restarter.restart.assert_called_once_with()
    assert monitor.next_restart_time == datetime(2024, 5, 2, 3, 0)
    advance(monitor, clock, 60)
    restarter.restart.assert_called_once_with()


def test_start_delay_defers_daily_arming():
    clock = FakeClock(datetime(2024, 5, 1, 2, 0).timestamp())
    config = Config(restart_every_day_time=DailyTime(3, 0), start_delay=10000)
    monitor = build_monitor(clock, mock.Mock(), config)
    monitor.measure_delay = mock.Mock(return_value=FAST)
    monitor.start()
    assert monitor.daily_event is None

    advance(monitor, clock, 10)
    assert monitor.next_restart_time == datetime(2024, 5, 1, 3, 0)
    assert monitor.daily_event.time == clock.now + 3590
