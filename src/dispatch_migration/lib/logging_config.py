"""
Logging Configuration

Console and rotating file logging with an optional structured JSON format.
"""

import json
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON

        Args:
            record: Log record to format

        Returns:
            JSON-formatted log string
        """
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno
        }

        if hasattr(record, 'operation_id'):
            log_data['operation_id'] = record.operation_id

        if hasattr(record, 'command'):
            log_data['command'] = record.command

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        if hasattr(record, 'extra_data'):
            log_data['extra'] = record.extra_data

        return json.dumps(log_data, default=str)


class ContextFilter(logging.Filter):
    """Add contextual information (operation id, entity) to log records"""

    def __init__(self, context: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.context = context or {}

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            setattr(record, key, value)
        return True


def setup_logging(
    log_dir: Optional[Path] = Path('logs'),
    log_level: str = 'INFO',
    enable_json: bool = False,
    enable_file: bool = True,
    enable_console: bool = True,
    context: Optional[Dict[str, Any]] = None
) -> None:
    """
    Configure root logging for a migration run

    Args:
        log_dir: Directory for log files
        log_level: Logging level
        enable_json: Use JSON formatting
        enable_file: Enable file logging
        enable_console: Enable console logging
        context: Contextual information to add to all logs
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root_logger.handlers.clear()

    if enable_json:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

    # Attached to handlers; root logger filters skip propagated records
    context_filter = ContextFilter(context)

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(root_logger.level)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(context_filter)
        root_logger.addHandler(console_handler)

    if enable_file and log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now().strftime('%Y%m%d')

        file_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"dispatch_migration_{stamp}.log",
            maxBytes=10 * 1024 * 1024,  # 10 MB
            backupCount=5
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(context_filter)
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            log_dir / f"errors_{stamp}.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(formatter)
        error_handler.addFilter(context_filter)
        root_logger.addHandler(error_handler)

    logging.getLogger(__name__).debug(f"Logging configured: level={log_level}, json={enable_json}")


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that tags every record with the run's operation id"""

    def process(self, msg, kwargs):
        extra = kwargs.setdefault('extra', {})
        extra.update(self.extra)
        return msg, kwargs


def get_operation_logger(name: str, operation_id: str, **context: Any) -> LoggerAdapter:
    """
    Get a logger whose records carry the operation id

    Args:
        name: Logger name
        operation_id: Migration run identifier
        context: Extra attributes (entity name, ...)

    Returns:
        Logger adapter
    """
    return LoggerAdapter(logging.getLogger(name), {'operation_id': operation_id, **context})
