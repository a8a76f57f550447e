"""md5sum.txt regeneration for the extracted tree."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Iterator

from preseed_iso.domain import ChecksumManifest
from preseed_iso.logging import get_logger

log = get_logger(source=__name__)

MANIFEST_NAME = "md5sum.txt"
CHUNK_SIZE = 4 * 1024 * 1024


def compute_md5(path: Path) -> str:
    digest = hashlib.md5()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def iter_tree_files(tree: Path, manifest_name: str = MANIFEST_NAME) -> Iterator[str]:
    """Yield ``./``-prefixed paths of regular files in walk order.

    Symlinks are skipped, as is the manifest at the tree root.
    """
    manifest = tree / manifest_name
    for dirpath, _dirnames, filenames in os.walk(tree):
        for name in filenames:
            path = Path(dirpath) / name
            if path == manifest or path.is_symlink() or not path.is_file():
                continue
            yield "./" + path.relative_to(tree).as_posix()


def regenerate_manifest(tree: Path, manifest_name: str = MANIFEST_NAME) -> ChecksumManifest:
    """Rewrite the manifest from scratch in md5sum(1) format."""
    log.info(f"Regenerating {manifest_name}")
    entries = tuple(
        (relative, compute_md5(tree / relative)) for relative in iter_tree_files(tree, manifest_name)
    )
    manifest_path = tree / manifest_name
    manifest_path.write_text(
        "".join(f"{digest}  {relative}\n" for relative, digest in entries),
        encoding="utf-8",
    )
    log.debug(f"{manifest_name}: {len(entries)} entries")
    return ChecksumManifest(path=manifest_path, entries=entries)


def read_manifest(manifest_path: Path) -> dict[str, str]:
    entries: dict[str, str] = {}
    for line in manifest_path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        digest, _, relative = line.partition("  ")
        entries[relative] = digest
    return entries


def verify_manifest(tree: Path, manifest_name: str = MANIFEST_NAME) -> list[str]:
    """Return paths that are stale, missing from, or extra in the manifest."""
    manifest_path = tree / manifest_name
    recorded = read_manifest(manifest_path) if manifest_path.is_file() else {}
    problems = []
    actual = set()
    for relative in iter_tree_files(tree, manifest_name):
        actual.add(relative)
        if recorded.get(relative) != compute_md5(tree / relative):
            problems.append(relative)
    problems.extend(sorted(set(recorded) - actual))
    return problems
