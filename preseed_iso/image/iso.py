"""ISO 9660 extraction and composition.

This module turns the vendor image into a writable tree and writes the final
hybrid (BIOS + optional UEFI) image back out with xorriso.
"""

from __future__ import annotations

import os
import shutil
import stat
from pathlib import Path
from typing import Optional

from preseed_iso.domain import BuildContext, ComposedImage, LocatedPath
from preseed_iso.logging import get_logger

from .exceptions import (
    ImageComposeError,
    ImageExtractError,
    InputError,
    LayoutMismatchError,
    OutputDirectoryError,
)
from .layout import (
    LEGACY_LOADER_CANDIDATES,
    UEFI_IMAGE_CANDIDATES,
    locate_first,
    probed_paths,
)
from .tools import ToolInvoker

log = get_logger(source=__name__)


def human_size(size_bytes: Optional[int]) -> str:
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def reset_directory(path: Path) -> None:
    """Remove ``path`` and everything below it, then recreate it empty."""
    if path.exists() or path.is_symlink():
        make_tree_writable(path)
        shutil.rmtree(path)
    path.mkdir(parents=True)


def make_tree_writable(root: Path) -> None:
    """Recursively add owner write permission, like ``chmod -R u+w``."""
    if not root.exists():
        return
    _add_owner_write(root)
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            _add_owner_write(Path(dirpath) / name)


def _add_owner_write(path: Path) -> None:
    if path.is_symlink():
        return
    mode = path.stat().st_mode
    if not mode & stat.S_IWUSR:
        os.chmod(path, mode | stat.S_IWUSR)


def extract_image(
    image_path: Path,
    target_dir: Path,
    invoker: Optional[ToolInvoker] = None,
) -> Path:
    """Extract the ISO 9660 tree of ``image_path`` into a clean ``target_dir``.

    Any content left in ``target_dir`` by an earlier (possibly killed) run is
    removed first. The extracted tree is made owner-writable because files on
    an ISO are read-only.

    Raises:
        InputError: image_path does not exist
        ImageExtractError: xorriso could not read the image
    """
    invoker = invoker or ToolInvoker()
    if not image_path.is_file():
        raise InputError(image_path)

    reset_directory(target_dir)
    result = invoker.extract_filesystem(image_path, target_dir)
    if not result.ok:
        raise ImageExtractError(
            f"Could not extract {image_path.name} as ISO 9660", result.diagnostics
        )
    make_tree_writable(target_dir)
    log.info(f"ISO extracted to {target_dir}")
    return target_dir


def build_compose_arguments(
    tree: Path,
    output_path: Path,
    *,
    volume_label: str,
    isohybrid_mbr: Path,
    legacy_loader: Optional[LocatedPath],
    uefi_image: Optional[LocatedPath],
) -> list[str]:
    """Assemble ``xorriso -as mkisofs`` arguments for the discovered boot material."""
    arguments = [
        "-r",
        "-V",
        volume_label,
        "-o",
        str(output_path),
        "-J",
        "-joliet-long",
    ]
    if legacy_loader is not None:
        loader_dir = Path(legacy_loader.relative_path).parent
        boot_catalog = (loader_dir / "boot.cat").as_posix()
        arguments += [
            "-isohybrid-mbr",
            str(isohybrid_mbr),
            "-partition_offset",
            "16",
            "-c",
            boot_catalog,
            "-b",
            legacy_loader.relative_path,
            "-no-emul-boot",
            "-boot-load-size",
            "4",
            "-boot-info-table",
        ]
    if uefi_image is not None:
        if legacy_loader is not None:
            arguments.append("-eltorito-alt-boot")
        arguments += ["-e", uefi_image.relative_path, "-no-emul-boot"]
        if legacy_loader is not None:
            arguments.append("-isohybrid-gpt-basdat")
    arguments.append(str(tree))
    return arguments


def compose_image(
    context: BuildContext,
    tree: Path,
    invoker: Optional[ToolInvoker] = None,
) -> ComposedImage:
    """Write the mutated ``tree`` as the final hybrid ISO.

    An existing file at the output path is replaced without warning.

    Raises:
        LayoutMismatchError: neither a BIOS loader nor a UEFI image is present
        OutputDirectoryError: the output directory cannot be created
        InputError: the isohybrid MBR template is missing
        ImageComposeError: xorriso failed
    """
    invoker = invoker or ToolInvoker()
    if not tree.is_dir():
        raise InputError(tree, "is not a readable directory")

    legacy_loader = locate_first(tree, LEGACY_LOADER_CANDIDATES)
    uefi_image = locate_first(tree, UEFI_IMAGE_CANDIDATES)
    if legacy_loader is None and uefi_image is None:
        raise LayoutMismatchError(
            "a BIOS or UEFI boot image",
            probed_paths(LEGACY_LOADER_CANDIDATES + UEFI_IMAGE_CANDIDATES),
        )
    if legacy_loader is None:
        log.warning("No BIOS boot loader found, composing a UEFI-only image")
    if uefi_image is None:
        log.info("No UEFI boot image found, composing a BIOS-only image")
    if legacy_loader is not None and not context.isohybrid_mbr.is_file():
        raise InputError(context.isohybrid_mbr, "(isohybrid MBR template) not found")

    output_path = context.output_image_path
    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise OutputDirectoryError(output_path.parent, str(error)) from error
    if output_path.exists():
        log.debug(f"Replacing existing image {output_path}")
        output_path.unlink()

    arguments = build_compose_arguments(
        tree,
        output_path,
        volume_label=context.volume_label,
        isohybrid_mbr=context.isohybrid_mbr,
        legacy_loader=legacy_loader,
        uefi_image=uefi_image,
    )
    result = invoker.compose_filesystem(arguments)
    if not result.ok:
        raise ImageComposeError(f"Could not write {output_path.name}", result.diagnostics)

    size_bytes = output_path.stat().st_size if output_path.exists() else 0
    log.info(f"ISO built: {output_path}")
    log.info(f"ISO size: {human_size(size_bytes)}")
    return ComposedImage(
        path=output_path,
        hybrid=legacy_loader is not None,
        uefi=uefi_image is not None,
        size_bytes=size_bytes,
    )
