"""Logging configuration using structlog for structured logging."""

import contextlib
import logging
import logging.handlers
import sys
import uuid
from pathlib import Path
from typing import Any, Iterator, MutableMapping, Optional

import structlog

from .config import LoggingConfig

# Event keys whose values never reach a log sink
SECRET_KEYS = frozenset({"encryption_key", "private_key", "key_pem"})


def redact_secrets(
    logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """structlog processor that masks secret values."""
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key] is not None:
            event_dict[key] = "***"
    return event_dict


def setup_logging(config: LoggingConfig, log_dir: Optional[Path] = None) -> None:
    """
    Configure logging based on configuration.

    Sets up structlog on top of the standard library logging module so that
    uvicorn, aiosqlite and our own events share one set of handlers. Console
    output goes to stderr; stdout belongs to the CLI's JSON output.

    Call it once with no ``log_dir`` as early as possible, then again with
    the resolved log directory to add the rotating file handler.

    Args:
        config: LoggingConfig object with logging settings
        log_dir: Directory for log file (if file logging enabled)

    Example:
        >>> from labguard.common.config import LoggingConfig
        >>> setup_logging(LoggingConfig(level="DEBUG", format="text"))
    """
    log_level = getattr(logging, config.level.upper())

    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        handlers=[],
        force=True,
    )

    default_third_party = {
        "aiosqlite": "WARNING",
        "asyncio": "WARNING",
        "uvicorn.access": "INFO",
    }
    third_party_config = {**default_third_party, **config.third_party}

    for library, level in third_party_config.items():
        logging.getLogger(library).setLevel(getattr(logging, level.upper()))

    processors = [
        structlog.contextvars.merge_contextvars,
        redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    handlers: list[logging.Handler] = []

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(log_level)
    handlers.append(console_handler)

    if config.file and config.file.enabled and log_dir is not None:
        log_path = log_dir / "labguard.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Rotates at midnight local time, keeps 7 files
        file_handler = logging.handlers.TimedRotatingFileHandler(
            filename=str(log_path),
            when="midnight",
            backupCount=7,
            encoding="utf-8",
        )
        file_handler.suffix = "%Y-%m-%d"
        file_handler.setLevel(log_level)
        handlers.append(file_handler)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextlib.contextmanager
def run_context(kind: str, trigger: str) -> Iterator[str]:
    """
    Tag every log event inside the block with one backup or integrity run.

    Binds ``run_id``, ``run_kind`` and ``trigger`` to structlog's context
    variables. Each asyncio task has its own context, so concurrent runs do
    not see each other's values.

    Example:
        >>> with run_context("backup", "scheduled") as run_id:
        ...     logger.info("snapshot_starting")  # includes run_id and trigger
    """
    run_id = uuid.uuid4().hex[:12]
    with structlog.contextvars.bound_contextvars(run_id=run_id, run_kind=kind, trigger=trigger):
        yield run_id
