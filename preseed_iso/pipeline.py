"""Build pipeline: runs every stage in order against one BuildContext.

Stages:
    preflight -> fetch -> extract -> unpack -> inject -> boot-menu ->
    checksums -> compose -> cleanup

Each stage either completes or raises a BuildError tagged with its name.
Cleanup runs after any failure past pre-flight, and never raises.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

from preseed_iso.domain import (
    BaseImage,
    BootMenuResult,
    BuildContext,
    ChecksumManifest,
    ComposedImage,
    PayloadManifest,
)
from preseed_iso.image.boot_menu import configure_boot_menus
from preseed_iso.image.checksums import regenerate_manifest, verify_manifest
from preseed_iso.image.exceptions import BuildError, InputError
from preseed_iso.image.initrd import (
    inject_payload,
    locate_boot_archive,
    repack_boot_archive,
    unpack_boot_archive,
)
from preseed_iso.image.iso import compose_image, extract_image
from preseed_iso.image.tools import ToolInvoker
from preseed_iso.image.workspace import acquire_lock, cleanup_scratch, release_lock
from preseed_iso.logging import get_logger, new_build_id, operation_context
from preseed_iso.services.dependencies import verify_dependencies, verify_inputs
from preseed_iso.services.fetch import fetch_base_image

log = get_logger(source=__name__)


@dataclass(frozen=True)
class BuildResult:
    base_image: BaseImage
    payload: PayloadManifest
    boot_menu: BootMenuResult
    manifest: ChecksumManifest
    image: ComposedImage


def _tag(error: BuildError, stage: str) -> BuildError:
    if error.stage is None:
        error.stage = stage
    return error


@contextmanager
def stage(name: str, build_id: str, **details):
    """Run one stage inside a timed operation context.

    BuildErrors are tagged with the stage name; OS level failures are
    wrapped into a BuildError so the CLI can report where they happened.
    """
    try:
        with operation_context(name, job_id=build_id, **details) as stage_log:
            yield stage_log
    except BuildError as error:
        raise _tag(error, name)
    except OSError as error:
        raise _tag(BuildError(str(error)), name) from error


def _fetch(context: BuildContext, build_id: str) -> BaseImage:
    with stage("fetch", build_id, url=context.iso_url):
        downloaded = fetch_base_image(
            context.iso_url,
            context.base_image_path,
            timeout_seconds=context.fetch_timeout_seconds,
        )
    return BaseImage(
        url=context.iso_url,
        path=context.base_image_path,
        codename=context.codename,
        arch=context.arch,
        downloaded=downloaded,
    )


def _run_stages(context: BuildContext, invoker: ToolInvoker, build_id: str) -> BuildResult:
    base_image = _fetch(context, build_id)

    with stage("extract", build_id):
        tree = extract_image(base_image.path, context.iso_extract_dir, invoker)

    with stage("unpack", build_id):
        located = locate_boot_archive(tree)
        archive = unpack_boot_archive(located, context.initrd_dir, invoker)

    with stage("inject", build_id):
        payload = inject_payload(
            archive.staging_dir,
            context.config_path,
            context.artifacts_source_dir,
            config_filename=context.config_filename,
            artifacts_dirname=context.artifacts_dirname,
        )
        repack_boot_archive(archive, invoker)

    with stage("boot-menu", build_id):
        boot_menu = configure_boot_menus(context, tree)

    with stage("checksums", build_id):
        manifest = regenerate_manifest(tree)

    with stage("compose", build_id, output=str(context.output_image_path)):
        image = compose_image(context, tree, invoker)

    return BuildResult(
        base_image=base_image,
        payload=payload,
        boot_menu=boot_menu,
        manifest=manifest,
        image=image,
    )


def run_build(
    context: BuildContext,
    invoker: Optional[ToolInvoker] = None,
    *,
    keep_scratch: bool = False,
) -> BuildResult:
    """Compose the unattended image described by ``context``.

    Raises:
        BuildError: any fatal condition; ``error.stage`` names the stage
    """
    invoker = invoker or ToolInvoker()
    build_id = new_build_id()
    log.info(f"Starting Debian {context.codename} ISO build ({context.arch})...")
    log.info(f"Project directory: {context.project_dir}")

    with stage("preflight", build_id):
        verify_dependencies(context.required_tools)
        verify_inputs(context)

    try:
        acquire_lock(context.lock_path)
    except BuildError as error:
        raise _tag(error, "lock")
    try:
        try:
            result = _run_stages(context, invoker, build_id)
        finally:
            if keep_scratch:
                log.info(f"Keeping scratch directories under {context.build_dir}")
            else:
                cleanup_scratch(context.scratch_dirs)
    finally:
        release_lock(context.lock_path)

    log.success("Build complete!")
    log.info(f"Output: {result.image.path}")
    return result


def run_fetch(context: BuildContext) -> BaseImage:
    """Populate the base image cache without building."""
    build_id = new_build_id()
    try:
        acquire_lock(context.lock_path)
    except BuildError as error:
        raise _tag(error, "lock")
    try:
        return _fetch(context, build_id)
    finally:
        release_lock(context.lock_path)


def run_clean(context: BuildContext, *, purge_cache: bool = False) -> list:
    """Remove scratch directories, and the cached base image if asked.

    Returns the paths that could not be removed.
    """
    try:
        acquire_lock(context.lock_path)
    except BuildError as error:
        raise _tag(error, "lock")
    try:
        failed = cleanup_scratch(context.scratch_dirs)
        if purge_cache and context.base_image_path.exists():
            log.info(f"Removing cached base image {context.base_image_path}")
            context.base_image_path.unlink()
        return failed
    finally:
        release_lock(context.lock_path)


def run_verify(context: BuildContext) -> list[str]:
    """Check md5sum.txt of a kept scratch tree against its content."""
    tree = context.iso_extract_dir
    if not tree.is_dir():
        raise _tag(InputError(tree, "not found (build with --keep-scratch)"), "verify")
    problems = verify_manifest(tree)
    for relative in problems:
        log.warning(f"Checksum mismatch: {relative}")
    if not problems:
        log.success("md5sum.txt matches the tree")
    return problems
