"""Scratch directory lifecycle and the advisory build lock.

Usage:
    from preseed_iso.image.workspace import acquire_lock, cleanup_scratch, release_lock

    acquire_lock(context.lock_path)
    try:
        ...  # stages, then cleanup_scratch(context.scratch_dirs)
    finally:
        release_lock(context.lock_path)

Concurrent builds against one project directory are unsupported; the lock
turns an accidental second run into a BuildLockedError instead of two runs
clobbering the same scratch tree.
"""

from __future__ import annotations

import errno
import os
import shutil
from pathlib import Path
from typing import Iterable, Optional

from preseed_iso.logging import get_logger

from .exceptions import BuildLockedError
from .iso import make_tree_writable

log = get_logger(source=__name__)


def _read_owner(lock_path: Path) -> Optional[int]:
    try:
        return int(lock_path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def acquire_lock(lock_path: Path) -> None:
    """Create ``lock_path`` holding our pid, taking over stale locks.

    Raises:
        BuildLockedError: a live process holds the lock
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    for _ in range(2):
        try:
            fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except OSError as error:
            if error.errno != errno.EEXIST:
                raise
            owner = _read_owner(lock_path)
            if owner is not None and _pid_alive(owner):
                raise BuildLockedError(lock_path, owner) from error
            log.warning(f"Removing stale build lock {lock_path} (pid {owner})")
            lock_path.unlink(missing_ok=True)
            continue
        with os.fdopen(fd, "w") as handle:
            handle.write(f"{os.getpid()}\n")
        return
    raise BuildLockedError(lock_path, _read_owner(lock_path))


def release_lock(lock_path: Path) -> None:
    if _read_owner(lock_path) == os.getpid():
        lock_path.unlink(missing_ok=True)


def cleanup_scratch(scratch_dirs: Iterable[Path]) -> list[Path]:
    """Remove scratch directories, logging rather than raising on failure.

    Returns the directories that could not be removed.
    """
    log.info("Cleaning up build directory...")
    failed = []
    for directory in scratch_dirs:
        if not directory.exists():
            continue
        try:
            make_tree_writable(directory)
            shutil.rmtree(directory)
        except OSError as error:
            log.error(f"Failed to remove {directory}: {error}")
            failed.append(directory)
    if not failed:
        log.info("Cleanup complete.")
    return failed
