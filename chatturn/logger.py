"""Logging setup for the chatturn CLI.

Library modules log through ``logging.getLogger(__name__)`` and never add
handlers themselves; the CLI configures the ``chatturn`` logger once per
invocation and every child logger follows it.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional, Union

__all__ = ["LOG_FILE_ENV", "setup_logger", "get_logger", "resolve_log_path"]

LOG_FILE_ENV = "CHATTURN_LOG_FILE"
DEFAULT_LOG_FILE = Path("~/.chatturn/logs/chatturn.log").expanduser()
CONSOLE_FORMAT = "[%(levelname).1s] %(name)s: %(message)s"
FILE_FORMAT = "%(asctime)s %(process)d [%(levelname)s] %(name)s: %(message)s"
MAX_LOG_BYTES = 2 * 1024 * 1024
LOG_BACKUP_COUNT = 3

# Provider SDK loggers that dump whole request bodies at DEBUG.
QUIET_LOGGERS = ("litellm", "LiteLLM", "httpx", "httpcore", "openai")

LogTarget = Union[str, Path, bool, None]


def setup_logger(
    name: str = "chatturn",
    verbose: bool = False,
    log_file: LogTarget = None,
) -> logging.Logger:
    """Attach a stderr handler and an optional rotating file to ``name``.

    ``verbose`` switches both handlers to DEBUG, which shows streaming merge
    fallbacks, withheld signatures and forced history nodes. Console output
    goes to stderr so ``compose --json`` output on stdout stays parseable.

    ``log_file`` is resolved by :func:`resolve_log_path`. Calling this again
    replaces the previous handlers.
    """
    logger = logging.getLogger(name)
    level = logging.DEBUG if verbose else logging.WARNING

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(level)
    logger.propagate = False

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(level)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console)

    log_path = resolve_log_path(log_file)
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    for noisy in QUIET_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def resolve_log_path(log_file: LogTarget) -> Optional[Path]:
    """Where file logs go, or ``None`` for console only.

    ``False`` disables the file and ``True`` picks ``~/.chatturn/logs``.
    ``None`` defers to ``$CHATTURN_LOG_FILE`` and means no file when it is
    unset. Anything else is taken as a path.
    """
    if log_file is False:
        return None
    if log_file is True:
        return DEFAULT_LOG_FILE
    if log_file is None:
        env_path = os.environ.get(LOG_FILE_ENV, "").strip()
        return Path(env_path).expanduser() if env_path else None
    return Path(log_file).expanduser()
