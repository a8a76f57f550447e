"""Domain models for the image build pipeline."""

from __future__ import annotations

from .models import (
    REQUIRED_TOOLS,
    BaseImage,
    BootArchive,
    BootMaterial,
    BootMenuResult,
    BootMenuStrategy,
    BuildContext,
    ChecksumManifest,
    ComposedImage,
    LocatedPath,
    PathCandidate,
    PayloadManifest,
    ToolResult,
)


__all__ = [
    "REQUIRED_TOOLS",
    "BaseImage",
    "BootArchive",
    "BootMaterial",
    "BootMenuResult",
    "BootMenuStrategy",
    "BuildContext",
    "ChecksumManifest",
    "ComposedImage",
    "LocatedPath",
    "PathCandidate",
    "PayloadManifest",
    "ToolResult",
]
