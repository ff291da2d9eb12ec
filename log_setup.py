"""
Logging setup shared by the watchdog and the one-shot restart script.

Console output is kept short; when a log file is given, a detailed
rotating text log and a rotating JSON-lines log are written side by side.
"""
import os
import sys
import json
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

DETAILED_FORMAT = '%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(funcName)s() | %(message)s'
SIMPLE_FORMAT = '%(asctime)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


class JsonFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
            'process_id': os.getpid()
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        # Structured context passed as extra={'extra_data': {...}}
        if hasattr(record, 'extra_data'):
            log_entry['extra'] = record.extra_data

        return json.dumps(log_entry, ensure_ascii=False, default=str)


def setup_logging(log_level='INFO', log_file=None, log_max_size=10*1024*1024, log_backup_count=5):
    """
    Setup logging with rotation, structured format, and multiple handlers.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Path to log file (if None, logs to stdout only)
        log_max_size: Maximum size of log file before rotation (bytes)
        log_backup_count: Number of backup log files to keep

    Returns:
        The configured root logger
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers.clear()

    # urllib3 logs every connection at DEBUG
    logging.getLogger('urllib3').setLevel(logging.WARNING)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(logging.Formatter(SIMPLE_FORMAT, datefmt=DATE_FORMAT))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=log_max_size,
            backupCount=log_backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(DETAILED_FORMAT, datefmt=DATE_FORMAT))
        logger.addHandler(file_handler)

        json_handler = logging.handlers.RotatingFileHandler(
            str(log_path.with_suffix('.json')),
            maxBytes=log_max_size,
            backupCount=log_backup_count,
            encoding='utf-8'
        )
        json_handler.setLevel(logging.INFO)
        json_handler.setFormatter(JsonFormatter())
        logger.addHandler(json_handler)

    return logger


def add_logging_arguments(parser):
    """Add the --log-* options, defaulting from LOG_LEVEL and LOG_FILE."""
    env_log_level = os.environ.get('LOG_LEVEL', 'INFO').upper()
    env_log_file = os.environ.get('LOG_FILE', None)

    parser.add_argument(
        '--log-level',
        default=env_log_level,
        choices=LOG_LEVELS,
        help=f'Logging level (Default: {env_log_level})'
    )
    parser.add_argument(
        '--log-file',
        default=env_log_file,
        help='Path to log file (Default: stdout only)'
    )
    parser.add_argument(
        '--log-max-size',
        type=int,
        default=10*1024*1024,
        help='Maximum log file size in bytes before rotation (Default: 10MB)'
    )
    parser.add_argument(
        '--log-backup-count',
        type=int,
        default=5,
        help='Number of backup log files to keep (Default: 5)'
    )
