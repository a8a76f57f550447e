"""Domain model for the image build pipeline.

Every stage receives an immutable BuildContext and returns one of the value
objects below instead of reading or writing shared module state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Optional


# ==============================================================================
# Build Context
# ==============================================================================

REQUIRED_TOOLS = ("xorriso", "cpio", "gzip")

UNATTENDED_BOOT_PARAMS_TEMPLATE = (
    "auto=true",
    "priority=critical",
    "preseed/file=/{config_filename}",
)


@dataclass(frozen=True)
class BuildContext:
    """All paths and knobs for one build, resolved once at startup."""

    project_dir: Path
    build_dir: Path
    output_dir: Path
    codename: str
    arch: str
    iso_url: str
    base_image_path: Path
    output_image_path: Path
    config_path: Path
    artifacts_source_dir: Path
    config_filename: str = "preseed.cfg"
    artifacts_dirname: str = "custom-packages"
    volume_label: str = "Debian 13 NAS"
    legacy_timeout_tenths: int = 10
    uefi_timeout_seconds: int = 1
    isohybrid_mbr: Path = Path("/usr/lib/ISOLINUX/isohdpfx.bin")
    syslinux_dirs: tuple[Path, ...] = ()
    fetch_timeout_seconds: int = 600
    required_tools: tuple[str, ...] = REQUIRED_TOOLS

    @property
    def iso_extract_dir(self) -> Path:
        """Scratch copy of the base image tree."""
        return self.build_dir / "iso_extract"

    @property
    def initrd_dir(self) -> Path:
        """Scratch copy of the unpacked boot archive."""
        return self.build_dir / "initrd"

    @property
    def scratch_dirs(self) -> tuple[Path, ...]:
        return (self.iso_extract_dir, self.initrd_dir)

    @property
    def lock_path(self) -> Path:
        return self.build_dir / ".build.lock"

    @property
    def boot_params(self) -> tuple[str, ...]:
        """Kernel parameters that make the installer run unattended."""
        return tuple(
            param.format(config_filename=self.config_filename)
            for param in UNATTENDED_BOOT_PARAMS_TEMPLATE
        )

    @classmethod
    def from_settings(
        cls,
        project_dir: Path,
        values: Mapping[str, Any],
        *,
        codename: Optional[str] = None,
        arch: Optional[str] = None,
    ) -> BuildContext:
        """Build a context from merged settings and CLI overrides.

        Args:
            project_dir: Root holding preseed/, packages/, build/ and output/
            values: Settings dict (see config.settings.DEFAULT_SETTINGS)
            codename: Overrides the configured release codename
            arch: Overrides the configured architecture
        """
        project_dir = Path(project_dir).resolve()
        codename = codename or values["codename"]
        arch = arch or values["arch"]
        build_dir = project_dir / "build"
        output_dir = project_dir / "output"
        config_filename = values.get("config_filename", "preseed.cfg")
        return cls(
            project_dir=project_dir,
            build_dir=build_dir,
            output_dir=output_dir,
            codename=codename,
            arch=arch,
            iso_url=values["iso_url"].format(codename=codename, arch=arch),
            base_image_path=build_dir / values["base_image_name"],
            output_image_path=output_dir
            / values["output_image_name"].format(codename=codename, arch=arch),
            config_path=project_dir / "preseed" / config_filename,
            artifacts_source_dir=project_dir / "packages",
            config_filename=config_filename,
            artifacts_dirname=values.get("artifacts_dirname", "custom-packages"),
            volume_label=values["volume_label"],
            legacy_timeout_tenths=int(values["legacy_timeout_tenths"]),
            uefi_timeout_seconds=int(values["uefi_timeout_seconds"]),
            isohybrid_mbr=Path(values["isohybrid_mbr"]),
            syslinux_dirs=tuple(Path(p) for p in values.get("syslinux_dirs", ())),
            fetch_timeout_seconds=int(values.get("fetch_timeout_seconds", 600)),
        )


# ==============================================================================
# Path Location
# ==============================================================================


@dataclass(frozen=True)
class PathCandidate:
    """A known location of some artifact for one installer layout."""

    layout: str  # e.g., "netinst"
    relative_path: str  # e.g., "install.amd/initrd.gz"


@dataclass(frozen=True)
class LocatedPath:
    """The winning candidate and where it lives in the tree."""

    candidate: PathCandidate
    path: Path

    @property
    def layout(self) -> str:
        return self.candidate.layout

    @property
    def relative_path(self) -> str:
        return self.candidate.relative_path

    @property
    def iso_path(self) -> str:
        """Absolute path as seen by the boot loader (e.g. /linux)."""
        return "/" + self.candidate.relative_path


# ==============================================================================
# Pipeline Artifacts
# ==============================================================================


@dataclass(frozen=True)
class BaseImage:
    url: str
    path: Path
    codename: str
    arch: str
    downloaded: bool = False  # False when served from cache


@dataclass(frozen=True)
class BootArchive:
    located: LocatedPath
    staging_dir: Path

    @property
    def path(self) -> Path:
        return self.located.path


@dataclass(frozen=True)
class PayloadManifest:
    config_path: Path
    artifacts: tuple[str, ...] = ()


class BootMenuStrategy(Enum):
    PATCH_EXISTING = "patch-existing"
    AUTHOR_NEW = "author-new"


@dataclass(frozen=True)
class BootMaterial:
    """Boot related files discovered in an extracted tree.

    Any field may be None: not every installer layout ships every piece.
    """

    legacy_menu: Optional[LocatedPath] = None
    uefi_menu: Optional[LocatedPath] = None
    kernel: Optional[LocatedPath] = None
    initrd: Optional[LocatedPath] = None
    legacy_loader: Optional[LocatedPath] = None
    uefi_image: Optional[LocatedPath] = None
    probed: tuple[str, ...] = ()

    @property
    def has_vendor_menu(self) -> bool:
        return self.legacy_menu is not None or self.uefi_menu is not None


@dataclass(frozen=True)
class BootMenuResult:
    strategy: BootMenuStrategy
    written: tuple[Path, ...] = ()


@dataclass(frozen=True)
class ChecksumManifest:
    path: Path
    entries: tuple[tuple[str, str], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ComposedImage:
    path: Path
    hybrid: bool
    uefi: bool
    size_bytes: int = 0


@dataclass(frozen=True)
class ToolResult:
    """Outcome of one external tool invocation."""

    ok: bool
    command: tuple[str, ...]
    returncode: int
    diagnostics: str = ""
