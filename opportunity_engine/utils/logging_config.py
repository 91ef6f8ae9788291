"""Structured logging configuration"""
import logging
import sys
import json
from datetime import datetime, timezone
from typing import Any, Dict

EXTRA_FIELDS = ('symbol', 'component', 'rule_id', 'execution_request_id')


class StructuredFormatter(logging.Formatter):
    """
    Structured JSON formatter for logs.

    One JSON object per line; context passed through `extra=` is copied
    into the object when it is set.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__ if record.exc_info[0] else None,
                'message': str(record.exc_info[1]) if record.exc_info[1] else None,
                'traceback': self.formatException(record.exc_info)
            }

        for field in EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO", structured: bool = True) -> None:
    """
    Set up application logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Use structured JSON logging if True
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
    console_handler.setFormatter(formatter)

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    for name in ('urllib3', 'sqlalchemy', 'aiohttp', 'yfinance'):
        logging.getLogger(name).setLevel(logging.WARNING)
