"""
Structured JSON logging configuration.

Module loggers under the core, server and config packages all share the
handlers installed here.
"""

import json
import os
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler

LOGGER_NAMES = ('core', 'server', 'config', 'lab_server')


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for attr in ('request_id', 'job_id', 'error_id', 'endpoint', 'method',
                     'status_code', 'duration_ms', 'remote_addr'):
            if hasattr(record, attr):
                log_entry[attr] = getattr(record, attr)

        return json.dumps(log_entry)


def configure_logging(app=None, level=None, log_format=None, log_file=None):
    """Configure structured logging for the lab server.

    Arguments fall back to LOG_LEVEL, LOG_FORMAT and LOG_FILE.

    Args:
        app: Optional Flask app whose logger will be updated.

    Returns:
        List of configured package loggers.
    """
    log_level = (level or os.getenv('LOG_LEVEL', 'INFO')).upper()
    log_format = log_format or os.getenv('LOG_FORMAT', 'json')
    log_file = log_file if log_file is not None else os.getenv('LOG_FILE', '')

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG)

    if log_format == 'json':
        console_handler.setFormatter(JSONFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
    handlers.append(console_handler)

    # File handler (if configured)
    if log_file:
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(JSONFormatter())
        handlers.append(file_handler)

    loggers = []
    for name in LOGGER_NAMES:
        logger = logging.getLogger(name)
        logger.setLevel(getattr(logging, log_level, logging.INFO))
        logger.handlers = list(handlers)
        logger.propagate = False
        loggers.append(logger)

    # Sync Flask's logger
    if app is not None:
        app.logger.handlers = list(handlers)
        app.logger.setLevel(getattr(logging, log_level, logging.INFO))

    return loggers
