from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR_ENV = "PRESEED_ISO_LOG_DIR"

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[source]: <15}</cyan> | "
    "{message}"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
    "{level: <8} | "
    "{extra[source]: <15} | "
    "{extra[job_id]: <20} | "
    "{message}"
)


def _should_log_tool_output(record) -> bool:
    """Raw stderr from external tools is only shown in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "tool" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def resolve_log_dir() -> Path:
    override = os.environ.get(DEFAULT_LOG_DIR_ENV)
    if override:
        return Path(override)
    return Path.home() / ".local" / "state" / "preseed-iso" / "logs"


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Configure console and file sinks for a build run.

    Sinks:
    - stderr: INFO (DEBUG with debug=True, TRACE with trace=True)
    - build.log: INFO+ events, kept for 14 days
    - debug.log: DEBUG+ events when debug or trace is enabled
    - structured.jsonl: INFO+ records serialized as JSON

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging, including raw tool output
        log_dir: Directory for log files (see resolve_log_dir)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "preseed-iso"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_tool_output,
        colorize=True,
        format=CONSOLE_FORMAT,
    )

    log_dir = log_dir or resolve_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "build.log",
        level="INFO",
        rotation="5 MB",
        retention="14 days",
        backtrace=False,
        diagnose=False,
        format=FILE_FORMAT,
    )

    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="20 MB",
            retention="3 days",
            backtrace=True,
            diagnose=True,
            format=FILE_FORMAT + " | {extra[tags]}",
        )

    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="14 days",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Build identifier shared by every stage of one run
        tags: Tags for filtering (e.g., ["tool"], ["fetch"])
        source: Source component, usually the module name
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_build_id() -> str:
    return f"build-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, *, job_id: str | None = None, **details):
    """
    Track one pipeline stage with automatic timing.

    Logs the stage start, its completion with duration, or its failure with
    the error type before re-raising.

    Example:
        with operation_context("fetch", url=url) as log:
            log.debug("Cache miss")
    """
    job_id = job_id or new_build_id()

    with logger.contextualize(job_id=job_id, operation=operation):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed",
                duration_seconds=round(duration, 2),
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed: {e}",
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise
