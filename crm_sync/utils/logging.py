"""
Logging configuration module for crm_sync.

Provides centralized logging configuration with support for:
- Console and file logging
- Configurable log levels via environment variables
- Verbose mode for detailed output
- Colored output for better readability (when supported)
- A per-session matching log for secondary (name-based) record links
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

# Root logger name for the package hierarchy
ROOT_LOGGER_NAME = "crm_sync"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Simplified format for console (less verbose)
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] "
    "[%(filename)s:%(lineno)d] - %(message)s"
)

DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Environment variable names
ENV_LOG_LEVEL = "CRM_SYNC_LOG_LEVEL"
ENV_DEBUG = "CRM_SYNC_DEBUG"
ENV_LOG_FILE = "CRM_SYNC_LOG_FILE"

# Default log directory, next to the configuration
DEFAULT_LOG_DIR = Path.home() / ".crm-sync" / "logs"

# Log file name prefixes (used for retention cleanup)
SYNC_LOG_PREFIX = "crm_sync_"
MATCHING_LOG_PREFIX = "matching_"

MATCHING_LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s"
MATCHING_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to log messages.

    Colors are only applied when output is to a terminal that supports them.
    """

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        """Check if the terminal supports colors."""
        if not hasattr(sys.stderr, "isatty") or not sys.stderr.isatty():
            return False

        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False

        term = os.environ.get("TERM", "")
        return term != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional colors."""
        # Copy so other handlers see the uncolored record
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    CRM_SYNC_DEBUG takes precedence over CRM_SYNC_LOG_LEVEL.

    Returns:
        Logging level constant (e.g., logging.DEBUG, logging.INFO)
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def _daily_log_name() -> str:
    return f"{SYNC_LOG_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Get the log file path from environment or default location.

    Args:
        log_dir: Directory to place the daily log file in when no explicit
                 file is configured. Defaults to ~/.crm-sync/logs.

    Returns:
        Path to log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    return (log_dir or DEFAULT_LOG_DIR) / _daily_log_name()


# Module-level variable to store configured log directory
_configured_log_dir: Optional[Path] = None


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the crm_sync application.

    Sets up console and (optionally) file handlers on the crm_sync logger.
    The file handler always records DEBUG so sync runs can be audited after
    the fact regardless of console verbosity.

    Args:
        level: Logging level. If None, determined from environment variables.
        verbose: If True, force DEBUG and use the verbose console format.
        log_dir: Directory for the daily log file.
        log_file: Explicit log file path (overrides log_dir).
        enable_file_logging: If False, only log to the console.
        use_colors: If True, use colored console output when supported.

    Returns:
        The crm_sync root logger

    Example:
        setup_logging(verbose=True)
        setup_logging(log_dir=Path("/var/log/crm-sync"))
    """
    global _configured_log_dir

    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG if enable_file_logging else level)
    logger.handlers.clear()

    # Avoid duplicate lines through the root logger
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)

    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        file_path: Optional[Path]
        if log_file:
            file_path = log_file
        else:
            file_path = get_log_file_path(log_dir)

        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)

                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(
                    logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT)
                )
                logger.addHandler(file_handler)

                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    if log_file:
        _configured_log_dir = log_file.parent
    else:
        _configured_log_dir = log_dir

    return logger


def _resolve_log_dir(log_dir: Optional[Path]) -> Path:
    if log_dir:
        return log_dir
    if _configured_log_dir:
        return _configured_log_dir
    return DEFAULT_LOG_DIR


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Clean up old log files, keeping only the most recent ones.

    Removes old crm_sync_*.log and matching_*.log files, keeping the
    specified number of most recent files of each kind.

    Args:
        log_dir: Directory containing log files. If None, uses the configured
                 directory or the default.
        keep_count: Number of files to keep per kind. 0 disables cleanup.

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = _resolve_log_dir(log_dir)
    if not logs_dir.exists():
        return 0

    deleted_count = 0

    for prefix in (SYNC_LOG_PREFIX, MATCHING_LOG_PREFIX):
        files = sorted(
            logs_dir.glob(f"{prefix}*.log"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old_log in files[keep_count:]:
            try:
                old_log.unlink()
                deleted_count += 1
            except OSError:
                pass  # best effort

    return deleted_count


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the crm_sync hierarchy.

    Args:
        name: Name of the module (typically __name__)

    Returns:
        Logger instance for the module
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """
    Change the console logging level at runtime.

    File handlers stay at DEBUG.
    """
    logger = logging.getLogger(ROOT_LOGGER_NAME)

    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


def disable_logging() -> None:
    """Disable all crm_sync logging output."""
    logging.getLogger(ROOT_LOGGER_NAME).disabled = True


def enable_logging() -> None:
    """Re-enable logging output after it was disabled."""
    logging.getLogger(ROOT_LOGGER_NAME).disabled = False


def get_matching_log_path(log_dir: Optional[Path] = None) -> Path:
    """
    Get a timestamped path for this session's matching log.

    Args:
        log_dir: Optional directory. Falls back to the configured log
                 directory, then the default.

    Returns:
        Path to the matching log file
    """
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return _resolve_log_dir(log_dir) / f"{MATCHING_LOG_PREFIX}{timestamp}.log"


def setup_matching_logger(
    log_file: Optional[Path] = None,
    level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Set up a dedicated logger for secondary record matching.

    Every attempt to link a CRM record to an existing local row by name is
    written here with the candidates considered and the outcome, so that
    name-based links can be reviewed against real data.

    Args:
        log_file: Optional custom path for the log file.
        level: Logging level (default: DEBUG)

    Returns:
        Logger instance for matching decisions
    """
    logger = logging.getLogger(f"{ROOT_LOGGER_NAME}.matching")
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    file_path = log_file if log_file else get_matching_log_path()

    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(file_path, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter(MATCHING_LOG_FORMAT, MATCHING_DATE_FORMAT)
        )
        logger.addHandler(file_handler)

        logger.info("=" * 80)
        logger.info(f"Matching log session started at {datetime.now().isoformat()}")
        logger.info(f"Log file: {file_path}")
        logger.info("=" * 80)

    except OSError as e:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(
            logging.Formatter(MATCHING_LOG_FORMAT, MATCHING_DATE_FORMAT)
        )
        logger.addHandler(console_handler)
        logger.warning(f"Could not create matching log file {file_path}: {e}")
        logger.warning("Falling back to console output for matching logs")

    return logger


def get_matching_logger() -> logging.Logger:
    """
    Get the matching logger instance.

    Before setup_matching_logger() is called this logger simply propagates
    to the crm_sync logger.
    """
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.matching")


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "disable_logging",
    "enable_logging",
    "cleanup_old_logs",
    "ColoredFormatter",
    "get_log_level_from_env",
    "get_log_file_path",
    "setup_matching_logger",
    "get_matching_logger",
    "get_matching_log_path",
    "ROOT_LOGGER_NAME",
    "DEFAULT_LOG_DIR",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
    "MATCHING_LOG_FORMAT",
    "MATCHING_DATE_FORMAT",
]
