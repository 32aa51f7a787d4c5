"""
Logging for the PM2 client agent.

Everything logs through the ``pm2_client`` logger and its children. PM2
captures the agent's stdout into its own log files, so the console handler
writes there; an optional rotating file adds a second, more verbose sink.
"""
import os
import sys
import time
import logging
import logging.handlers
import tempfile
from typing import Optional, Dict

PACKAGE_LOGGER_NAME = 'pm2_client'
DEFAULT_CONSOLE_LEVEL_NAME = 'INFO'
DEFAULT_FILE_LEVEL_NAME = 'DEBUG'
DEFAULT_LOG_FORMAT = '[%(asctime)s] - %(name)s - %(levelname)s - %(message)s'
DEFAULT_MAX_BYTES = 10 * 1024 * 1024
DEFAULT_BACKUP_COUNT = 5

_configured: Dict[str, logging.Logger] = {}


class UTCFormatter(logging.Formatter):
    """Renders ``asctime`` as ``YYYY-MM-DD HH:MM:SS.mmm Z``."""
    converter = time.gmtime

    def formatTime(self, record, datefmt=None):
        stamp = time.strftime('%Y-%m-%d %H:%M:%S', self.converter(record.created))
        return f"{stamp}.{int(record.msecs):03d} Z"


def level_from_name(level_name: Optional[str], default_level: int = logging.INFO) -> int:
    """
    Maps a level name such as ``"debug"`` to its ``logging`` constant.

    :param level_name: Level name, case-insensitive
    :type level_name: Optional[str]
    :param default_level: Level used when the name is unknown or empty
    :type default_level: int
    :return: The logging level
    :rtype: int
    """
    if not level_name:
        return default_level
    level = logging.getLevelName(str(level_name).upper())
    if isinstance(level, int):
        return level
    sys.stderr.write(f"Unknown log level '{level_name}', using {logging.getLevelName(default_level)}.\n")
    return default_level


def _writable_dir(directory: str) -> Optional[str]:
    """Creates ``directory`` if needed; returns an error message when it cannot be written to."""
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as e:
        return f"cannot create {directory}: {e}"
    if not os.access(directory, os.W_OK):
        return f"{directory} is not writable"
    return None


def resolve_log_file(log_file_path: str, logger: logging.Logger) -> Optional[str]:
    """
    Picks the file the rotating handler writes to.

    The requested path is used when its directory is writable, otherwise the
    same file name under ``<tmp>/pm2-client/logs``. None disables file logging.
    """
    directory = os.path.dirname(os.path.abspath(log_file_path))
    file_name = os.path.basename(log_file_path) or 'pm2-client.log'

    problem = _writable_dir(directory)
    if problem is None:
        return os.path.join(directory, file_name)

    fallback_dir = os.path.join(tempfile.gettempdir(), 'pm2-client', 'logs')
    logger.warning(f"Log directory unusable ({problem}). Falling back to {fallback_dir}")
    fallback_problem = _writable_dir(fallback_dir)
    if fallback_problem is not None:
        logger.error(f"Fallback log directory unusable ({fallback_problem}). File logging disabled.")
        return None
    return os.path.join(fallback_dir, file_name)


def setup_logger(
    name: str = PACKAGE_LOGGER_NAME,
    log_format: str = DEFAULT_LOG_FORMAT,
    console_level_name: Optional[str] = DEFAULT_CONSOLE_LEVEL_NAME,
    file_level_name: Optional[str] = DEFAULT_FILE_LEVEL_NAME,
    log_file_path: Optional[str] = None,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    force: bool = False
) -> logging.Logger:
    """
    Configures the handlers of logger ``name``.

    The first call wins unless ``force`` is set: the package logger is set up
    with defaults on import and reconfigured by the CLI once the
    configuration has been loaded.

    :param name: Logger to configure
    :type name: str
    :param log_format: Record format for every handler
    :type log_format: str
    :param console_level_name: Level for the stdout handler
    :type console_level_name: Optional[str]
    :param file_level_name: Level for the rotating file handler
    :type file_level_name: Optional[str]
    :param log_file_path: Log file; None keeps logging on stdout only
    :type log_file_path: Optional[str]
    :param max_bytes: Size at which the log file is rotated
    :type max_bytes: int
    :param backup_count: Rotated files to keep
    :type backup_count: int
    :param force: Replace the handlers of an already configured logger
    :type force: bool
    :return: The configured logger
    :rtype: logging.Logger
    """
    if name in _configured and not force:
        return _configured[name]

    logger = logging.getLogger(name)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = UTCFormatter(log_format)
    console_level = level_from_name(console_level_name, logging.INFO)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(console_level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.setLevel(console_level)

    target = resolve_log_file(log_file_path, logger) if log_file_path else None
    if target:
        file_level = level_from_name(file_level_name, logging.DEBUG)
        try:
            file_handler = logging.handlers.RotatingFileHandler(
                target, maxBytes=max_bytes, backupCount=backup_count, encoding='utf-8'
            )
        except OSError as e:
            logger.error(f"Could not open log file {target}: {e}. Logging to stdout only.")
        else:
            file_handler.setLevel(file_level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            logger.setLevel(min(console_level, file_level))
            logger.info(f"File logging enabled to: {target}")

    _configured[name] = logger
    return logger


def get_logger(name: str = PACKAGE_LOGGER_NAME) -> logging.Logger:
    """
    Returns ``name`` as a logger under the package namespace.

    :param name: Usually the calling module's ``__name__``
    :type name: str
    :return: The logger
    :rtype: logging.Logger
    """
    if PACKAGE_LOGGER_NAME not in _configured:
        setup_logger(PACKAGE_LOGGER_NAME)

    if name == PACKAGE_LOGGER_NAME or name.startswith(PACKAGE_LOGGER_NAME + '.'):
        return logging.getLogger(name)
    return logging.getLogger(f"{PACKAGE_LOGGER_NAME}.{name}")
