"""Known installer layouts and the shared first-match locator.

Each table is ordered: when a tree exposes the same artifact at more than one
path, the earlier entry wins. New layouts are added here, not in stage code.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

from preseed_iso.domain import LocatedPath, PathCandidate

from .exceptions import LayoutMismatchError


BOOT_ARCHIVE_CANDIDATES: tuple[PathCandidate, ...] = (
    PathCandidate("netboot-mini", "initrd.gz"),
    PathCandidate("netinst", "install.amd/initrd.gz"),
    PathCandidate("d-i", "d-i/initrd.gz"),
)

KERNEL_CANDIDATES: tuple[PathCandidate, ...] = (
    PathCandidate("netboot-mini", "linux"),
    PathCandidate("netboot-mini", "vmlinuz"),
    PathCandidate("netinst", "install.amd/vmlinuz"),
    PathCandidate("d-i", "d-i/vmlinuz"),
)

LEGACY_MENU_CANDIDATES: tuple[PathCandidate, ...] = (
    PathCandidate("isolinux", "isolinux/isolinux.cfg"),
    PathCandidate("isolinux-root", "isolinux.cfg"),
    PathCandidate("syslinux", "syslinux/syslinux.cfg"),
    PathCandidate("syslinux-root", "syslinux.cfg"),
)

UEFI_MENU_CANDIDATES: tuple[PathCandidate, ...] = (
    PathCandidate("grub", "boot/grub/grub.cfg"),
    PathCandidate("grub-efi", "EFI/boot/grub.cfg"),
)

LEGACY_LOADER_CANDIDATES: tuple[PathCandidate, ...] = (
    PathCandidate("isolinux", "isolinux/isolinux.bin"),
    PathCandidate("isolinux-root", "isolinux.bin"),
    PathCandidate("syslinux", "syslinux/isolinux.bin"),
)

UEFI_IMAGE_CANDIDATES: tuple[PathCandidate, ...] = (
    PathCandidate("grub", "boot/grub/efi.img"),
    PathCandidate("grub-root", "efi.img"),
)


def locate_first(
    root: Path, candidates: Iterable[PathCandidate]
) -> Optional[LocatedPath]:
    """Return the first candidate that exists as a regular file under ``root``."""
    for candidate in candidates:
        path = root / candidate.relative_path
        if path.is_file():
            return LocatedPath(candidate=candidate, path=path)
    return None


def require_first(
    root: Path, candidates: Iterable[PathCandidate], what: str
) -> LocatedPath:
    """Like locate_first, but a miss is a LayoutMismatchError."""
    candidates = tuple(candidates)
    located = locate_first(root, candidates)
    if located is None:
        raise LayoutMismatchError(what, probed_paths(candidates))
    return located


def probed_paths(candidates: Iterable[PathCandidate]) -> list[str]:
    return [candidate.relative_path for candidate in candidates]
