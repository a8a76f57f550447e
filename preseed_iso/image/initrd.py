"""Boot archive (initrd) handling: locate, unpack, inject, repack."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Iterator, Optional

from preseed_iso.domain import BootArchive, LocatedPath, PayloadManifest
from preseed_iso.logging import get_logger

from .exceptions import ArchivePackError, ArchiveUnpackError, InputError
from .iso import reset_directory
from .layout import BOOT_ARCHIVE_CANDIDATES, require_first
from .tools import ToolInvoker

log = get_logger(source=__name__)


def locate_boot_archive(tree: Path) -> LocatedPath:
    """Find the boot archive by candidate precedence.

    Raises:
        LayoutMismatchError: no candidate path exists
    """
    located = require_first(tree, BOOT_ARCHIVE_CANDIDATES, "initrd.gz in ISO")
    log.info(f"Found initrd at: {located.path} ({located.layout} layout)")
    return located


def unpack_boot_archive(
    located: LocatedPath,
    staging_dir: Path,
    invoker: Optional[ToolInvoker] = None,
) -> BootArchive:
    """Unpack the located archive into a clean ``staging_dir``.

    cpio complaints (typically device nodes that cannot be created without
    root) are logged and ignored as long as something was staged.

    Raises:
        ArchiveUnpackError: decompression failed or nothing was unpacked
    """
    invoker = invoker or ToolInvoker()
    reset_directory(staging_dir)
    result = invoker.unpack_archive(located.path, staging_dir)
    if not result.ok:
        raise ArchiveUnpackError(
            f"Could not decompress {located.relative_path}", result.diagnostics
        )
    if not any(staging_dir.iterdir()):
        raise ArchiveUnpackError(
            f"{located.relative_path} unpacked to nothing", result.diagnostics
        )
    if result.returncode != 0:
        log.warning(
            f"Ignoring cpio warnings while unpacking {located.relative_path} "
            f"(exit {result.returncode})"
        )
        log.debug(result.diagnostics)
    return BootArchive(located=located, staging_dir=staging_dir)


def list_artifacts(artifacts_dir: Path) -> list[Path]:
    """Non-hidden regular files directly inside ``artifacts_dir``."""
    if not artifacts_dir.is_dir():
        return []
    return sorted(
        path
        for path in artifacts_dir.iterdir()
        if path.is_file() and not path.name.startswith(".")
    )


def inject_payload(
    staging_dir: Path,
    config_path: Path,
    artifacts_dir: Path,
    *,
    config_filename: str = "preseed.cfg",
    artifacts_dirname: str = "custom-packages",
) -> PayloadManifest:
    """Copy the automation config and add-on artifacts into the staging tree.

    The config lands at the archive root as ``config_filename``. Artifacts are
    copied verbatim into ``artifacts_dirname``; when there are none the
    subdirectory is not created and an advisory is logged.

    Raises:
        InputError: config_path does not exist
    """
    if not config_path.is_file():
        raise InputError(config_path)
    log.info("Injecting preseed configuration and packages...")
    target_config = staging_dir / config_filename
    shutil.copyfile(config_path, target_config)

    artifacts = list_artifacts(artifacts_dir)
    if not artifacts:
        log.warning(f"No add-on packages found in {artifacts_dir}")
        return PayloadManifest(config_path=target_config)

    target_dir = staging_dir / artifacts_dirname
    target_dir.mkdir(parents=True, exist_ok=True)
    for artifact in artifacts:
        shutil.copyfile(artifact, target_dir / artifact.name)
    names = tuple(artifact.name for artifact in artifacts)
    log.info(f"Embedded packages in initrd: {' '.join(names)}")
    return PayloadManifest(config_path=target_config, artifacts=names)


def iter_archive_entries(staging_dir: Path) -> Iterator[str]:
    """Yield cpio entry names for ``staging_dir``.

    Directories precede their contents, siblings are sorted, and the root
    itself is not listed. Symlinks to directories are listed, not followed.
    """
    for dirpath, dirnames, filenames in os.walk(staging_dir):
        dirnames.sort()
        relative_dir = Path(dirpath).relative_to(staging_dir)
        for name in sorted(dirnames + filenames):
            yield (relative_dir / name).as_posix()


def repack_boot_archive(
    archive: BootArchive,
    invoker: Optional[ToolInvoker] = None,
) -> Path:
    """Repack the staging tree over the archive's original path.

    The new archive is written beside the original and swapped in only once
    packing succeeded.

    Raises:
        ArchivePackError: cpio or gzip failed
    """
    invoker = invoker or ToolInvoker()
    destination = archive.path
    partial = destination.with_name(destination.name + ".new")
    entries = list(iter_archive_entries(archive.staging_dir))
    result = invoker.pack_archive(archive.staging_dir, entries, partial)
    if not result.ok:
        partial.unlink(missing_ok=True)
        raise ArchivePackError(
            f"Could not repack {archive.located.relative_path}", result.diagnostics
        )
    os.replace(partial, destination)
    log.info(f"Repacked {len(entries)} entries into {archive.located.relative_path}")
    return destination
