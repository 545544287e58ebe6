"""Shared utility functions."""

import logging
import subprocess
import sys

from rich.console import Console
from rich.logging import RichHandler

from .errors import LocalIOError

logger = logging.getLogger("regionproxy")


def setup_logging(level: int | str = logging.INFO) -> None:
    """Set up logging with Rich handler to stderr."""
    if isinstance(level, str):
        level = getattr(logging, level.upper())
    rich_handler = RichHandler(
        console=Console(stderr=True),
        log_time_format="[%X]",
        show_path=False,
        markup=True,
    )
    rich_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.addHandler(rich_handler)

    for name, lvl in [
        ("boto3", logging.INFO),
        ("botocore", logging.WARNING),
        ("urllib3", logging.WARNING),
    ]:
        lg = logging.getLogger(name)
        for h in lg.handlers[:]:
            lg.removeHandler(h)
        lg.setLevel(lvl)
        lg.propagate = True


def log(msg: str) -> None:
    """Log info message."""
    logger.info(msg)


def warn(msg: str) -> None:
    """Log warning message."""
    logger.warning(msg)


def debug(msg: str) -> None:
    logger.debug(msg)


def error(msg: str) -> None:
    """Log error message and exit."""
    logger.error(msg)
    sys.exit(1)


def run_cmd(*args, check: bool = True) -> str:
    """Execute local command and return stdout.

    :raises LocalIOError: If the executable is missing, or the command fails with check set
    """
    try:
        result = subprocess.run(args, capture_output=True, text=True)
    except OSError as e:
        raise LocalIOError(f"Could not run '{args[0]}': {e}") from e
    if check and result.returncode != 0:
        raise LocalIOError(f"Command failed: {' '.join(args)}: {result.stderr.strip()}")
    return result.stdout.strip()
