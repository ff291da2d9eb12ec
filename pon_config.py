"""
Configuration loading for the PON gateway watchdog.

The configuration is a JSON object whose keys mirror the fields of
``Config``. Every key is optional; absent keys take the defaults below.
"""
import os
import json
import logging
from dataclasses import dataclass, fields
from typing import Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '/etc/restart-pon.json'
CONFIG_ENV_VAR = 'RESTART_PON_CONFIG'


class ConfigError(Exception):
    """Raised when the configuration file is unreadable or invalid."""


@dataclass(frozen=True)
class DailyTime:
    """Time of day for the scheduled daily restart"""
    hour: int
    minute: int
    second: int = 0

    def __str__(self):
        return f"{self.hour:02d}:{self.minute:02d}:{self.second:02d}"


@dataclass(frozen=True)
class Config:
    """Watchdog configuration. Durations are in milliseconds."""
    ip: str = '192.168.1.1'
    port: Optional[int] = None
    protocol: str = 'http'
    username: str = 'user'
    password: str = '000000'
    noverify: bool = False
    checking_interval: int = 2000
    checking_url: str = 'https://www.baidu.com'
    checking_timeout: int = 10000
    expected_delay: int = 800
    max_bad_count: int = 10
    bad_increase: int = 2
    good_reduce: int = 1
    restart_every_day_time: Optional[DailyTime] = None
    start_delay: int = 0
    restart_timeout_checks: int = 0


# JSON key -> Config attribute
JSON_KEYS: Dict[str, str] = {
    'ip': 'ip',
    'port': 'port',
    'protocol': 'protocol',
    'username': 'username',
    'password': 'password',
    'noverify': 'noverify',
    'checkingInterval': 'checking_interval',
    'checkingUrl': 'checking_url',
    'checkingTimeout': 'checking_timeout',
    'expectedDelay': 'expected_delay',
    'maxBadCount': 'max_bad_count',
    'badIncrease': 'bad_increase',
    'goodReduce': 'good_reduce',
    'restartEveryDayTime': 'restart_every_day_time',
    'startDelay': 'start_delay',
    'restartTimeoutChecks': 'restart_timeout_checks',
}

POSITIVE_INTS = ('checking_interval', 'checking_timeout', 'max_bad_count', 'bad_increase')
NON_NEGATIVE_INTS = ('expected_delay', 'good_reduce', 'start_delay', 'restart_timeout_checks')


def parse_daily_time(value: str) -> DailyTime:
    """
    Parse an ``HH:MM`` or ``HH:MM:SS`` time of day.

    Raises:
        ConfigError: if the value is not a valid time of day
    """
    parts = str(value).strip().split(':')
    if len(parts) not in (2, 3):
        raise ConfigError(f"restartEveryDayTime must be HH:MM[:SS], got {value!r}")
    try:
        numbers = [int(p, 10) for p in parts]
    except ValueError:
        raise ConfigError(f"restartEveryDayTime must be HH:MM[:SS], got {value!r}") from None

    daily = DailyTime(*numbers)
    if not (0 <= daily.hour < 24 and 0 <= daily.minute < 60 and 0 <= daily.second < 60):
        raise ConfigError(f"restartEveryDayTime out of range: {value!r}")
    return daily


def _check_int(name: str, value, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def config_from_dict(raw: dict) -> Config:
    """
    Build a validated Config from a decoded JSON object.

    Unknown keys are logged and ignored.
    """
    if not isinstance(raw, dict):
        raise ConfigError("configuration must be a JSON object")

    values = {}
    for key, value in raw.items():
        attr = JSON_KEYS.get(key)
        if attr is None:
            logger.warning(f"Ignoring unknown configuration key: {key}")
            continue
        values[attr] = value

    for name in POSITIVE_INTS:
        if name in values:
            _check_int(name, values[name], 1)
    for name in NON_NEGATIVE_INTS:
        if name in values:
            _check_int(name, values[name], 0)

    protocol = values.get('protocol', 'http')
    if protocol not in ('http', 'https'):
        raise ConfigError(f"protocol must be 'http' or 'https', got {protocol!r}")

    if values.get('port') is not None:
        _check_int('port', values['port'], 1)

    for name in ('ip', 'username', 'password', 'checking_url'):
        if name in values and not isinstance(values[name], str):
            raise ConfigError(f"{name} must be a string, got {values[name]!r}")

    if 'noverify' in values and not isinstance(values['noverify'], bool):
        raise ConfigError(f"noverify must be true or false, got {values['noverify']!r}")

    daily = values.get('restart_every_day_time')
    if daily:
        values['restart_every_day_time'] = parse_daily_time(daily)
    else:
        values['restart_every_day_time'] = None

    return Config(**values)


def resolve_config_path(path: Optional[str] = None, env=None) -> str:
    if path:
        return path
    env = os.environ if env is None else env
    return env.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH


def load_config(path: Optional[str] = None, env=None) -> Config:
    """
    Load the configuration file.

    Args:
        path: Explicit config path (falls back to $RESTART_PON_CONFIG,
              then /etc/restart-pon.json)
        env: Environment mapping, os.environ by default

    Returns:
        Validated Config

    Raises:
        ConfigError: if the file cannot be read or is invalid
    """
    config_path = resolve_config_path(path, env)
    logger.debug(f"Loading configuration from {config_path}")
    try:
        with open(config_path, encoding='utf-8') as f:
            raw = json.load(f)
    except OSError as e:
        raise ConfigError(f"cannot read {config_path}: {e}") from e
    except ValueError as e:
        raise ConfigError(f"invalid JSON in {config_path}: {e}") from e

    config = config_from_dict(raw)
    logger.debug("Configuration loaded",
                extra={'extra_data': {
                    'config_path': config_path,
                    'config': describe_config(config)
                }})
    return config


def describe_config(config: Config) -> dict:
    """Config as a loggable dict, password masked."""
    described = {}
    for f in fields(config):
        value = getattr(config, f.name)
        if f.name == 'password':
            value = '***'
        elif isinstance(value, DailyTime):
            value = str(value)
        described[f.name] = value
    return described


def add_config_argument(parser):
    parser.add_argument(
        '--config',
        '-c',
        default=None,
        help=f'Path to the JSON config file (Default: ${CONFIG_ENV_VAR} or {DEFAULT_CONFIG_PATH})'
    )
