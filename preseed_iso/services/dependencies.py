"""Pre-flight checks run before anything touches the disk or network."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Iterable

from preseed_iso.domain import REQUIRED_TOOLS, BuildContext
from preseed_iso.image.exceptions import InputError, MissingToolsError, OutputDirectoryError
from preseed_iso.logging import get_logger

log = get_logger(source=__name__)

INSTALL_HINT = "Install with: sudo apt-get install xorriso cpio gzip isolinux"


def check_tool_available(tool: str) -> bool:
    """Check if a command-line tool is available."""
    return shutil.which(tool) is not None


def find_missing_tools(tools: Iterable[str] = REQUIRED_TOOLS) -> list[str]:
    return [tool for tool in tools if not check_tool_available(tool)]


def verify_dependencies(tools: Iterable[str] = REQUIRED_TOOLS) -> None:
    """Raise MissingToolsError naming every tool that is not on PATH."""
    log.info("Checking dependencies...")
    missing = find_missing_tools(tools)
    if missing:
        log.info(INSTALL_HINT)
        raise MissingToolsError(missing)
    log.info("All dependencies found.")


def check_output_dir(output_dir: Path) -> None:
    """Raise OutputDirectoryError unless ``output_dir`` can hold the image.

    The directory itself, or its nearest existing parent when it is not
    created yet, must be a directory this process can write to.
    """
    existing = output_dir
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    if not existing.is_dir():
        raise OutputDirectoryError(output_dir, f"{existing} is not a directory")
    if not os.access(existing, os.W_OK | os.X_OK):
        raise OutputDirectoryError(output_dir, f"{existing} is not writable")


def verify_inputs(context: BuildContext) -> None:
    """Check the build inputs and the output location.

    Raises:
        InputError: the automation config file is missing
        OutputDirectoryError: the output directory cannot be created or written
    """
    if not context.config_path.is_file():
        raise InputError(context.config_path)
    if not context.artifacts_source_dir.is_dir():
        log.debug(f"No add-on package directory at {context.artifacts_source_dir}")
    check_output_dir(context.output_dir)
