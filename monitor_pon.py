#!/usr/bin/env python3
# Monitor internet latency and restart the PON gateway when it stays degraded
# Optionally restarts the gateway once a day at a fixed time
import sys
import math
import time
import sched
import signal
import logging
import argparse
import threading
from datetime import datetime, timedelta

import requests

from log_setup import setup_logging, add_logging_arguments
from pon_config import ConfigError, DailyTime, add_config_argument, describe_config, load_config
from pon_restart import DeviceRestarter

logger = logging.getLogger(__name__)

# sched priorities: the daily restart wins a tie with a polling tick
DAILY_PRIORITY = 0
POLL_PRIORITY = 1


def next_daily_restart(daily: DailyTime, now: datetime) -> datetime:
    """
    Next occurrence of the daily restart time strictly after ``now``.

    Args:
        daily: Configured time of day
        now: Current local time

    Returns:
        Today's occurrence if it is still ahead, tomorrow's otherwise
    """
    candidate = now.replace(hour=daily.hour, minute=daily.minute,
                            second=daily.second, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class HealthMonitor:
    """
    Latency watchdog for one gateway.

    All work runs on a single sched.scheduler: polling ticks, the daily
    restart and the restart sequence itself never overlap. ``bad_count``
    accumulates ``bad_increase`` per slow sample and drains by
    ``good_reduce`` per fast one; reaching ``max_bad_count`` restarts the
    gateway. ``restarting`` stays set from the restart until the first
    fast sample afterwards and blocks any second restart meanwhile.
    ``poll_event`` is the armed polling tick, None while polling is stopped.

    The queue runs on the monotonic clock; the wall clock (``nowfunc``) is
    only read to work out how far away the next daily restart is.
    """

    def __init__(self, config, restarter, timefunc=time.monotonic, delayfunc=None,
                 nowfunc=datetime.now):
        self.config = config
        self.restarter = restarter
        self.timefunc = timefunc
        self.nowfunc = nowfunc
        self.wakeup = threading.Event()
        self.scheduler = sched.scheduler(timefunc, delayfunc or self.wakeup.wait)

        self.bad_count = 0
        self.restarting = False
        self.poll_event = None
        self.daily_event = None
        self.next_restart_time = None
        self.start_event = None
        self.restarting_checks = 0
        self.stopped = False

        self.started_at = None
        self.restart_attempts = 0
        self.restart_failures = 0
        self.recoveries = 0

    @property
    def polling(self) -> bool:
        return self.poll_event is not None

    # Probing and scoring

    def measure_delay(self) -> float:
        """
        Time one GET against the probe URL.

        Returns:
            Round-trip time in milliseconds, math.inf if the request failed
        """
        url = self.config.checking_url
        start_time = time.monotonic()
        try:
            with requests.get(url, timeout=self.config.checking_timeout / 1000, stream=True):
                pass
        except requests.exceptions.RequestException as e:
            duration = time.monotonic() - start_time
            logger.debug(f"Probe to {url} failed after {duration:.2f}s: {e}",
                        extra={'extra_data': {
                            'url': url,
                            'duration': duration,
                            'error': str(e),
                            'error_type': type(e).__name__
                        }})
            return math.inf
        return (time.monotonic() - start_time) * 1000

    def process_sample(self, delay: float):
        """Feed one latency sample (ms) through the scoring state machine."""
        expected = self.config.expected_delay

        if self.restarting:
            logger.info("Checking restarting status...")

        if delay > expected:
            if self.restarting:
                self.restarting_checks += 1
                logger.info(f"Checked still restarting (check #{self.restarting_checks}).")
                self._check_restart_timeout()
                return

            self.bad_count += self.config.bad_increase
            logger.warning(f"Bad delay: {delay:.0f}ms, expected: {expected}ms, count: {self.bad_count}.",
                          extra={'extra_data': {
                              'delay_ms': delay if math.isfinite(delay) else None,
                              'expected_delay_ms': expected,
                              'bad_count': self.bad_count,
                              'max_bad_count': self.config.max_bad_count
                          }})
            if self.bad_count >= self.config.max_bad_count:
                self.bad_count = 0
                self.trigger_restart()
        else:
            if self.restarting:
                self.restarting = False
                self.restarting_checks = 0
                self.recoveries += 1
                logger.info("Restart successfully.",
                           extra={'extra_data': {'delay_ms': delay, 'restart_recovered': True}})

            if self.bad_count > 0:
                self.bad_count = max(0, self.bad_count - self.config.good_reduce)
                logger.info(f"Good delay: {delay:.0f}ms, count: {self.bad_count}.",
                           extra={'extra_data': {'delay_ms': delay, 'bad_count': self.bad_count}})

    def _check_restart_timeout(self):
        limit = self.config.restart_timeout_checks
        if limit and self.restarting_checks >= limit:
            logger.warning(f"Gateway did not recover after {self.restarting_checks} checks, "
                          f"resuming normal scoring",
                          extra={'extra_data': {
                              'restarting_checks': self.restarting_checks,
                              'restart_timeout_checks': limit
                          }})
            self.restarting = False
            self.restarting_checks = 0

    def check_once(self):
        self.process_sample(self.measure_delay())

    # Polling timer

    def _arm_poll(self, at: float):
        self.poll_event = self.scheduler.enterabs(at, POLL_PRIORITY, self._poll_tick, (at,))

    def _poll_tick(self, scheduled_at: float):
        # Re-arm before probing so stop_polling() inside this tick cancels the next one
        interval = self.config.checking_interval / 1000
        next_at = scheduled_at + interval
        now = self.timefunc()
        if next_at <= now:
            next_at = now + interval
        self._arm_poll(next_at)

        try:
            self.check_once()
        except Exception as e:
            logger.error(f"Error in monitoring loop: {e}",
                        extra={'extra_data': {
                            'error': str(e),
                            'error_type': type(e).__name__,
                            'bad_count': self.bad_count
                        }}, exc_info=True)

    def start_polling(self):
        if self.poll_event is not None or self.stopped:
            return
        logger.info("Checking start.")
        self._arm_poll(self.timefunc() + self.config.checking_interval / 1000)

    def stop_polling(self):
        if self.poll_event is None:
            return
        self._cancel(self.poll_event)
        self.poll_event = None
        self.bad_count = 0
        logger.info("Checking stop.")

    def _cancel(self, event):
        try:
            self.scheduler.cancel(event)
        except ValueError:
            # Already fired or removed
            pass

    # Restart orchestration

    def trigger_restart(self) -> bool:
        """
        Restart the gateway unless a restart is already in flight.

        Polling is paused for the duration of the restart sequence and
        resumed afterwards whatever the outcome.

        Returns:
            True if the restart command was sent
        """
        if self.restarting:
            logger.info("Restart already in progress, skipping.")
            return False

        self.restarting = True
        self.stop_polling()
        self.restart_attempts += 1
        logger.warning("Restarting...",
                      extra={'extra_data': {
                          'action': 'restart_initiated',
                          'restart_attempt': self.restart_attempts
                      }})

        restart_start = time.monotonic()
        sent = False
        try:
            self.restarter.restart()
            sent = True
        except Exception as e:
            self.restarting = False
            self.restart_failures += 1
            logger.error(f"Restart failed: {e}",
                        extra={'extra_data': {
                            'action': 'restart_failed',
                            'error': str(e),
                            'error_type': type(e).__name__,
                            'duration': time.monotonic() - restart_start
                        }}, exc_info=True)
        else:
            logger.info("Restart command sent, waiting for the gateway to come back.",
                       extra={'extra_data': {
                           'action': 'restart_sent',
                           'duration': time.monotonic() - restart_start
                       }})

        self.start_polling()
        return sent

    # Daily restart

    def schedule_next_daily_restart(self, after: datetime = None):
        """
        Arm the one-shot daily restart event.

        Returns:
            The datetime it will fire at, None if no daily restart is configured
        """
        daily = self.config.restart_every_day_time
        if daily is None or self.stopped:
            return None

        now = self.nowfunc()
        # Never re-arm for the occurrence that just fired, even if the
        # wall clock reads slightly behind it
        base = max(now, after) if after else now
        next_time = next_daily_restart(daily, base)
        logger.info(f"Next restart time: {next_time.strftime('%Y-%m-%d %H:%M:%S')}",
                   extra={'extra_data': {'next_restart_time': next_time.isoformat()}})
        delay = (next_time - now).total_seconds()
        self.next_restart_time = next_time
        self.daily_event = self.scheduler.enter(delay, DAILY_PRIORITY, self._daily_restart)
        return next_time

    def _daily_restart(self):
        logger.info("Daily restart time reached.")
        try:
            self.stop_polling()
            self.trigger_restart()
            self.start_polling()
        finally:
            self.schedule_next_daily_restart(after=self.next_restart_time)

    # Lifecycle

    def _start(self):
        self.start_event = None
        self.start_polling()
        self.schedule_next_daily_restart()

    def start(self):
        """Arm polling and the daily restart, honoring the start delay."""
        if self.stopped:
            return
        self.started_at = self.timefunc()
        start_delay = self.config.start_delay
        if start_delay > 0:
            logger.info(f"Delaying start by {start_delay / 1000:.1f} seconds")
            self.start_event = self.scheduler.enter(start_delay / 1000, DAILY_PRIORITY, self._start)
        else:
            self._start()

    def run(self):
        """Start and run the event queue until shutdown()."""
        self.start()
        self.scheduler.run()

    def shutdown(self):
        """Cancel every pending event so run() returns."""
        self.stopped = True
        self.stop_polling()
        for event in (self.daily_event, self.start_event):
            if event is not None:
                self._cancel(event)
        self.daily_event = None
        self.start_event = None
        self.wakeup.set()

    def log_summary(self):
        uptime = self.timefunc() - self.started_at if self.started_at else 0
        logger.info(f"Monitoring stopped after {timedelta(seconds=int(uptime))} "
                   f"({self.restart_attempts} restarts, {self.restart_failures} failed, "
                   f"{self.recoveries} recovered)",
                   extra={'extra_data': {
                       'action': 'shutdown',
                       'uptime_seconds': uptime,
                       'restart_attempts': self.restart_attempts,
                       'restart_failures': self.restart_failures,
                       'recoveries': self.recoveries,
                       'restarting': self.restarting
                   }})


def get_arguments(argv=None):
    """
    Parse command line arguments.

    Returns:
        Parsed argument namespace
    """
    parser = argparse.ArgumentParser(
        description="Monitor internet latency and restart the PON gateway when it degrades"
    )
    add_config_argument(parser)
    add_logging_arguments(parser)
    return parser.parse_args(argv)


def main(argv=None):
    args = get_arguments(argv)

    setup_logging(
        log_level=args.log_level,
        log_file=args.log_file,
        log_max_size=args.log_max_size,
        log_backup_count=args.log_backup_count
    )

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    restarter = DeviceRestarter(
        config.ip,
        config.username,
        config.password,
        port=config.port,
        protocol=config.protocol,
        verify=not config.noverify
    )
    monitor = HealthMonitor(config, restarter)

    logger.info("PON gateway monitoring started",
               extra={'extra_data': describe_config(config)})
    logger.info(f"Check interval: {config.checking_interval}ms, probe: {config.checking_url}")
    logger.info(f"Expected delay: {config.expected_delay}ms, bad count: "
               f"+{config.bad_increase}/-{config.good_reduce} up to {config.max_bad_count}")
    if config.restart_every_day_time:
        logger.info(f"Daily restart at {config.restart_every_day_time}")

    signal.signal(signal.SIGTERM, lambda signum, frame: monitor.shutdown())

    try:
        monitor.run()
    except KeyboardInterrupt:
        monitor.shutdown()
    monitor.log_summary()
    return 0


if __name__ == "__main__":
    sys.exit(main())
