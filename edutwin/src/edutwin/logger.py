"""
Console Logging Setup

Provides readable, structured logging for the services:
- Color-coded log levels
- Per-component icons
- Indented data blocks appended by the structured logger
- Timing information
"""

import logging
import sys
from datetime import datetime
from typing import Any, Dict, Optional


class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'

    DEBUG = '\033[36m'      # Cyan
    INFO = '\033[32m'       # Green
    WARNING = '\033[33m'    # Yellow
    ERROR = '\033[31m'      # Red
    CRITICAL = '\033[35m'   # Magenta

    TIMESTAMP = '\033[90m'  # Dark Gray


class ColoredFormatter(logging.Formatter):
    """Formatter with colors and component icons."""

    ICONS = {
        'DEBUG': '🔍',
        'INFO': 'ℹ️',
        'WARNING': '⚠️',
        'ERROR': '❌',
        'CRITICAL': '🚨',
    }

    # Keyed by the last segment of the logger name
    COMPONENT_ICONS = {
        'llm_client': '🤖',
        'student_state': '💾',
        'behavior_sampler': '👀',
        'conversation': '💬',
        'personalization': '📋',
        'app': '🚀',
    }

    def __init__(self, use_colors: bool = True):
        super().__init__()
        self.use_colors = use_colors and sys.stdout.isatty()

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with colors and icons."""
        icon = self.COMPONENT_ICONS.get(record.name.split('.')[-1], self.ICONS.get(record.levelname, '•'))

        timestamp = datetime.fromtimestamp(record.created).strftime('%H:%M:%S.%f')[:-3]

        if self.use_colors:
            level_color = {
                'DEBUG': Colors.DEBUG,
                'INFO': Colors.INFO,
                'WARNING': Colors.WARNING,
                'ERROR': Colors.ERROR,
                'CRITICAL': Colors.CRITICAL,
            }.get(record.levelname, Colors.RESET)
            reset = Colors.RESET
            timestamp_color = Colors.TIMESTAMP
            bold = Colors.BOLD
        else:
            level_color = reset = timestamp_color = bold = ''

        level_name = f"{level_color}{record.levelname:8s}{reset}"

        message = record.getMessage()

        formatted = (
            f"{timestamp_color}[{timestamp}]{reset} "
            f"{icon} {level_name} "
            f"{bold}{record.name}{reset} "
            f"| {message}"
        )

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


class StructuredLogger:
    """Logger wrapper that pretty prints an optional data dict after the message."""

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(name)

    def _format_data(self, data: Any, indent: int = 2) -> str:
        """Format data structure for pretty printing."""
        if isinstance(data, dict):
            formatted_items = []
            for key, value in data.items():
                if isinstance(value, (dict, list)):
                    formatted_items.append(f"{' ' * indent}{key}: {self._format_data(value, indent + 2)}")
                else:
                    formatted_items.append(f"{' ' * indent}{key}: {value}")
            return "{\n" + "\n".join(formatted_items) + f"\n{' ' * (indent - 2)}}}"
        elif isinstance(data, list):
            newline = '\n'
            indent_str = ' ' * (indent - 2)
            if len(data) > 5:
                # Truncate long lists
                items = [self._format_data(item, indent + 2) for item in data[:3]]
                items_str = f',{newline}'.join(items)
                return f"[{newline}{items_str}{newline}{indent_str}... ({len(data)} items total){newline}{indent_str}]"
            items = [self._format_data(item, indent + 2) for item in data]
            items_str = f',{newline}'.join(items)
            return f"[{newline}{items_str}{newline}{indent_str}]"
        return str(data)

    def _with_data(self, message: str, data: Optional[Dict[str, Any]]) -> str:
        if data:
            return f"{message}\n{self._format_data(data)}"
        return message

    def debug(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.debug(self._with_data(message, data))

    def info(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(message, data))

    def warning(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.warning(self._with_data(message, data))

    def error(self, message: str, error: Optional[Exception] = None, data: Optional[Dict[str, Any]] = None):
        """Log error message with exception and optional data."""
        error_info = f"Error: {type(error).__name__}: {str(error)}" if error else ""
        self.logger.error(self._with_data(f"{message} {error_info}".rstrip(), data), exc_info=error)

    def success(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.logger.info(self._with_data(f"✅ {message}", data))


def setup_logging(level: int = logging.INFO, use_colors: bool = True) -> logging.Logger:
    """Configure the root logger with the colored console handler."""
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(ColoredFormatter(use_colors=use_colors))

    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    # Suppress noisy loggers
    logging.getLogger('asyncio').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('openai').setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name, logging.getLogger(name))
