"""
Logging configuration for KVM borg backup
"""
import logging
import logging.handlers
import json
import sys
import time
from pathlib import Path
from datetime import datetime
from typing import Optional


_RESERVED_ATTRS = {
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'exc_info', 'exc_text', 'stack_info',
    'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'message', 'taskName',
}

TEXT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record):
        log_entry = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
        }

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS:
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


def setup_logging(log_level: str = "INFO",
                  log_format: str = "json",
                  log_dir: Optional[str] = "./logs",
                  log_file_max_size: int = 10485760):
    """Setup console and rotating file logging; log_dir=None skips the file"""
    level = getattr(logging, log_level.upper())
    formatter = JSONFormatter() if log_format == "json" else logging.Formatter(TEXT_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_dir:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            Path(log_dir) / "kvm-borg-backup.log",
            maxBytes=log_file_max_size,
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger('libvirt').setLevel(logging.WARNING)


class StructuredLogger:
    """Logger accepting structured fields as keyword arguments"""

    def __init__(self, logger: logging.Logger):
        self._logger = logger

    def _log_with_kwargs(self, level, msg, *args, **kwargs):
        fields = dict(kwargs.pop('extra', None) or {})
        exc_info = kwargs.pop('exc_info', None)
        fields.update(kwargs)
        # LogRecord refuses to overwrite its own attributes
        extra = {(f"{key}_" if key in _RESERVED_ATTRS else key): value
                 for key, value in fields.items()}

        self._logger.log(level, msg, *args, extra=extra or None, exc_info=exc_info)

    def debug(self, msg, *args, **kwargs):
        self._log_with_kwargs(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self._log_with_kwargs(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self._log_with_kwargs(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self._log_with_kwargs(logging.ERROR, msg, *args, **kwargs)

    def critical(self, msg, *args, **kwargs):
        self._log_with_kwargs(logging.CRITICAL, msg, *args, **kwargs)


def get_logger(name: str) -> StructuredLogger:
    return StructuredLogger(logging.getLogger(name))


class LogOperation:
    """Log start, completion or failure of one step with its wall time.

    Exceptions are logged and always propagate.
    """

    def __init__(self, logger: StructuredLogger, operation: str, **context):
        self.logger = logger
        self.operation = operation
        self.context = context
        self._started = 0.0

    def _fields(self, phase: str, **fields):
        return {'operation': self.operation, 'phase': phase, **fields, **self.context}

    def __enter__(self):
        self._started = time.monotonic()
        self.logger.info(f"Starting {self.operation}", extra=self._fields('start'))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        elapsed = round(time.monotonic() - self._started, 3)

        if exc_type is None:
            self.logger.info(f"Completed {self.operation}",
                             extra=self._fields('complete', duration_seconds=elapsed))
        else:
            self.logger.error(f"Failed {self.operation}",
                              extra=self._fields('failed', duration_seconds=elapsed,
                                                 error=str(exc_val), error_type=exc_type.__name__))
        return False
