"""Custom exceptions for image build operations.

Every fatal pipeline condition is a BuildError. The pipeline records which
stage raised it in ``BuildError.stage`` so the CLI can report it.

Exception Hierarchy:
    BuildError (base)
        ├── EnvironmentCheckError
        │   ├── MissingToolsError
        │   ├── InputError
        │   ├── OutputDirectoryError
        │   └── BuildLockedError
        ├── FetchError
        ├── ImageFormatError
        │   ├── ImageExtractError
        │   ├── ArchiveUnpackError
        │   ├── ArchivePackError
        │   └── ImageComposeError
        ├── LayoutMismatchError
        └── BootMenuError

Usage:
    from preseed_iso.image.exceptions import MissingToolsError

    if missing:
        raise MissingToolsError(missing)
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional


class BuildError(Exception):
    """Base exception for all build operations."""

    stage: Optional[str] = None


class EnvironmentCheckError(BuildError):
    """Base exception for pre-flight environment failures."""


class MissingToolsError(EnvironmentCheckError):
    """One or more required external tools are not on PATH."""

    def __init__(self, missing: Iterable[str]):
        self.missing = list(missing)
        super().__init__(f"Missing dependencies: {' '.join(self.missing)}")


class InputError(EnvironmentCheckError):
    """A required build input is absent."""

    def __init__(self, path: Path, reason: str = "not found"):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Build input {path} {reason}")


class OutputDirectoryError(EnvironmentCheckError):
    """The output directory cannot be created."""

    def __init__(self, path: Path, reason: str = ""):
        self.path = Path(path)
        self.reason = reason
        msg = f"Cannot create output directory {path}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class BuildLockedError(EnvironmentCheckError):
    """Another build holds the project lock."""

    def __init__(self, lock_path: Path, owner_pid: Optional[int] = None):
        self.lock_path = Path(lock_path)
        self.owner_pid = owner_pid
        msg = f"Build directory is locked by {lock_path}"
        if owner_pid is not None:
            msg += f" (pid {owner_pid})"
        super().__init__(msg)


class FetchError(BuildError):
    """Base image download failed."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"Failed to fetch {url}: {reason}")


class ImageFormatError(BuildError):
    """Base exception for image or archive parse failures."""

    def __init__(self, message: str, diagnostics: str = ""):
        self.diagnostics = diagnostics
        if diagnostics:
            message = f"{message}: {diagnostics}"
        super().__init__(message)


class ImageExtractError(ImageFormatError):
    """The base image could not be extracted as ISO 9660."""


class ArchiveUnpackError(ImageFormatError):
    """The boot archive could not be decompressed or unpacked."""


class ArchivePackError(ImageFormatError):
    """The boot archive could not be repacked."""


class ImageComposeError(ImageFormatError):
    """The output image could not be written."""


class LayoutMismatchError(BuildError):
    """None of the known candidate paths matched the extracted tree."""

    def __init__(self, what: str, probed: Iterable[str]):
        self.what = what
        self.probed = list(probed)
        super().__init__(
            f"Could not find {what}; probed: {', '.join(self.probed) or '(nothing)'}"
        )


class BootMenuError(BuildError):
    """A boot menu was found but could not be made unattended."""

    def __init__(self, config_path: Path, reason: str):
        self.config_path = Path(config_path)
        self.reason = reason
        super().__init__(f"Cannot patch {config_path}: {reason}")
