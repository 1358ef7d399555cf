"""Logging for the Cadence CLI and host applications.

Library modules only call ``logging.getLogger(__name__)``. Whoever owns the
process calls :func:`setup_logging` once to attach handlers to the
``cadence`` logger: a rich console handler on stderr and, when configured,
a size-rotated log file.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from rich.console import Console
from rich.logging import RichHandler

from cadence.config.schema import LoggingSection

LOGGER_NAME = "cadence"
FILE_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logging(
    settings: LoggingSection | None = None,
    *,
    verbose: bool = False,
    console: Console | None = None,
) -> logging.Logger:
    """Attach handlers to the ``cadence`` logger, replacing earlier ones.

    The console only shows warnings and errors unless *verbose*, which
    drops the logger and the console to DEBUG. The log file, when enabled,
    records everything the logger lets through.

    Args:
        settings: The ``[logging]`` config section. Defaults apply if None.
        verbose: Force DEBUG on the logger and the console.
        console: Rich console to log to. A stderr console by default.

    Returns:
        The ``cadence`` logger.
    """
    settings = settings or LoggingSection()
    logger = logging.getLogger(LOGGER_NAME)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG if verbose else settings.level.upper())
    logger.propagate = False

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    log_path = settings.log_path()
    if settings.log_to_file and log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=settings.max_bytes,
            backupCount=settings.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(file_handler)
        logger.debug("Logging to %s", log_path)

    return logger
