"""End-to-end pipeline tests with a fake ToolInvoker."""

from __future__ import annotations

import os

import pytest

from preseed_iso import pipeline
from preseed_iso.domain import BootMenuStrategy, ToolResult
from preseed_iso.image.exceptions import (
    BuildError,
    BuildLockedError,
    ImageComposeError,
    InputError,
    LayoutMismatchError,
    MissingToolsError,
    OutputDirectoryError,
)

from .conftest import write_files


@pytest.fixture
def tools_present(mocker):
    return mocker.patch(
        "preseed_iso.services.dependencies.shutil.which",
        side_effect=lambda tool: f"/usr/bin/{tool}",
    )


@pytest.fixture
def cached_image(build_context):
    build_context.base_image_path.parent.mkdir(parents=True, exist_ok=True)
    build_context.base_image_path.write_bytes(b"cached mini.iso")
    return build_context.base_image_path


@pytest.fixture
def no_network(mocker):
    return mocker.patch(
        "preseed_iso.pipeline.fetch_base_image",
        side_effect=AssertionError("network must not be used"),
    )


class TestRunBuild:
    """Test the full stage sequence."""

    @pytest.mark.usefixtures("tools_present", "cached_image")
    def test_netinst_build(self, build_context, netinst_tree, fake_invoker_factory):
        (build_context.artifacts_source_dir / "nas-setup_1.0_all.deb").write_bytes(b"deb")
        invoker = fake_invoker_factory(netinst_tree)

        result = pipeline.run_build(build_context, invoker)

        assert result.image.path.read_bytes() == b"iso" * 10
        assert result.image.hybrid and result.image.uefi
        assert result.boot_menu.strategy is BootMenuStrategy.PATCH_EXISTING
        assert result.payload.artifacts == ("nas-setup_1.0_all.deb",)
        assert result.base_image.downloaded is False
        assert "preseed.cfg" in invoker.packed_entries
        assert "custom-packages/nas-setup_1.0_all.deb" in invoker.packed_entries
        assert dict(result.manifest.entries)["./install.amd/initrd.gz"]
        assert not build_context.iso_extract_dir.exists()
        assert not build_context.initrd_dir.exists()
        assert not build_context.lock_path.exists()
        assert build_context.base_image_path.exists()

    @pytest.mark.usefixtures("tools_present", "cached_image")
    def test_mini_build_authors_menus(self, build_context, mini_tree, fake_invoker_factory):
        result = pipeline.run_build(
            build_context, fake_invoker_factory(mini_tree), keep_scratch=True
        )

        assert result.boot_menu.strategy is BootMenuStrategy.AUTHOR_NEW
        assert result.payload.artifacts == ()
        tree = build_context.iso_extract_dir
        assert "preseed/file=/preseed.cfg" in (tree / "isolinux" / "isolinux.cfg").read_text()
        assert "preseed/file=/preseed.cfg" in (tree / "boot" / "grub" / "grub.cfg").read_text()
        assert (tree / "initrd.gz").read_bytes() == b"packed"
        assert pipeline.run_verify(build_context) == []

    @pytest.mark.usefixtures("tools_present", "cached_image")
    def test_mini_build_patches_root_level_menus(
        self, build_context, mini_menu_tree, fake_invoker_factory
    ):
        invoker = fake_invoker_factory(mini_menu_tree)

        result = pipeline.run_build(build_context, invoker, keep_scratch=True)

        assert result.boot_menu.strategy is BootMenuStrategy.PATCH_EXISTING
        tree = build_context.iso_extract_dir
        txt_cfg = (tree / "txt.cfg").read_text()
        assert "\tappend vga=788 initrd=initrd.gz auto=true" in txt_cfg
        assert "timeout 10" in (tree / "isolinux.cfg").read_text().splitlines()
        assert "preseed/file=/preseed.cfg" in (tree / "boot" / "grub" / "grub.cfg").read_text()
        assert not (tree / "isolinux").exists()
        assert (tree / "initrd.gz").read_bytes() == b"packed"

        args = invoker.compose_filesystem.call_args.args[0]
        assert args[args.index("-c") + 1] == "boot.cat"
        assert args[args.index("-b") + 1] == "isolinux.bin"
        assert args[args.index("-e") + 1] == "boot/grub/efi.img"
        assert pipeline.run_verify(build_context) == []

    @pytest.mark.usefixtures("tools_present")
    def test_cache_miss_fetches_once(self, build_context, netinst_tree, fake_invoker_factory, mocker):
        def download(url, destination, *, timeout_seconds):
            destination.write_bytes(b"downloaded")
            return True

        fetch = mocker.patch("preseed_iso.pipeline.fetch_base_image", side_effect=download)

        result = pipeline.run_build(build_context, fake_invoker_factory(netinst_tree))

        fetch.assert_called_once()
        assert fetch.call_args.args == (build_context.iso_url, build_context.base_image_path)
        assert result.base_image.downloaded is True

    def test_missing_tools_fail_before_any_mutation(
        self, build_context, netinst_tree, fake_invoker_factory, mocker, no_network
    ):
        mocker.patch("preseed_iso.services.dependencies.shutil.which", return_value=None)
        invoker = fake_invoker_factory(netinst_tree)

        with pytest.raises(MissingToolsError) as exc_info:
            pipeline.run_build(build_context, invoker)

        assert exc_info.value.stage == "preflight"
        assert not build_context.build_dir.exists()
        assert not build_context.output_dir.exists()
        no_network.assert_not_called()
        invoker.extract_filesystem.assert_not_called()

    @pytest.mark.usefixtures("tools_present", "no_network")
    def test_missing_config_fails_preflight(self, build_context, fake_invoker_factory, netinst_tree):
        build_context.config_path.unlink()

        with pytest.raises(InputError) as exc_info:
            pipeline.run_build(build_context, fake_invoker_factory(netinst_tree))

        assert exc_info.value.stage == "preflight"
        assert not build_context.build_dir.exists()

    @pytest.mark.usefixtures("tools_present", "cached_image")
    def test_unusable_output_dir_fails_preflight(
        self, build_context, netinst_tree, fake_invoker_factory
    ):
        build_context.output_dir.write_text("a file where the output directory goes")
        invoker = fake_invoker_factory(netinst_tree)

        with pytest.raises(OutputDirectoryError) as exc_info:
            pipeline.run_build(build_context, invoker)

        assert exc_info.value.stage == "preflight"
        assert not build_context.lock_path.exists()
        assert not build_context.iso_extract_dir.exists()
        invoker.extract_filesystem.assert_not_called()

    @pytest.mark.usefixtures("tools_present", "cached_image")
    def test_layout_mismatch_is_tagged_and_cleaned(
        self, build_context, tmp_path, fake_invoker_factory
    ):
        tree = write_files(tmp_path / "odd", {"boot/vmlinuz": b"k"})

        with pytest.raises(LayoutMismatchError) as exc_info:
            pipeline.run_build(build_context, fake_invoker_factory(tree))

        assert exc_info.value.stage == "unpack"
        assert not build_context.iso_extract_dir.exists()
        assert not build_context.lock_path.exists()

    @pytest.mark.usefixtures("tools_present", "cached_image")
    def test_compose_failure(self, build_context, netinst_tree, fake_invoker_factory):
        invoker = fake_invoker_factory(netinst_tree)
        invoker.compose_filesystem.side_effect = None
        invoker.compose_filesystem.return_value = ToolResult(
            ok=False, command=("xorriso",), returncode=32, diagnostics="No space left"
        )

        with pytest.raises(ImageComposeError) as exc_info:
            pipeline.run_build(build_context, invoker)

        assert exc_info.value.stage == "compose"
        assert not build_context.output_image_path.exists()
        assert not build_context.iso_extract_dir.exists()

    @pytest.mark.usefixtures("tools_present", "cached_image")
    def test_os_errors_are_wrapped(self, build_context, netinst_tree, fake_invoker_factory):
        invoker = fake_invoker_factory(netinst_tree)
        invoker.extract_filesystem.side_effect = PermissionError("denied")

        with pytest.raises(BuildError) as exc_info:
            pipeline.run_build(build_context, invoker)

        assert exc_info.value.stage == "extract"
        assert isinstance(exc_info.value.__cause__, PermissionError)

    @pytest.mark.usefixtures("tools_present", "cached_image")
    def test_concurrent_build_is_refused(self, build_context, netinst_tree, fake_invoker_factory):
        build_context.lock_path.write_text(f"{os.getppid()}\n")
        invoker = fake_invoker_factory(netinst_tree)

        with pytest.raises(BuildLockedError) as exc_info:
            pipeline.run_build(build_context, invoker)

        assert exc_info.value.stage == "lock"
        invoker.extract_filesystem.assert_not_called()
        assert build_context.lock_path.exists()


class TestMaintenanceCommands:
    """Test fetch, clean and verify entry points."""

    def test_run_fetch(self, build_context, mocker):
        fetch = mocker.patch("preseed_iso.pipeline.fetch_base_image", return_value=False)

        image = pipeline.run_fetch(build_context)

        fetch.assert_called_once()
        assert image.path == build_context.base_image_path
        assert not build_context.lock_path.exists()

    @pytest.mark.usefixtures("cached_image")
    def test_run_clean_keeps_cache(self, build_context):
        write_files(build_context.iso_extract_dir, {"a": "x"})
        write_files(build_context.initrd_dir, {"b": "x"})

        assert pipeline.run_clean(build_context) == []

        assert not build_context.iso_extract_dir.exists()
        assert not build_context.initrd_dir.exists()
        assert build_context.base_image_path.exists()

    @pytest.mark.usefixtures("cached_image")
    def test_run_clean_purges_cache(self, build_context):
        pipeline.run_clean(build_context, purge_cache=True)

        assert not build_context.base_image_path.exists()

    def test_run_verify_without_tree(self, build_context):
        with pytest.raises(InputError) as exc_info:
            pipeline.run_verify(build_context)

        assert exc_info.value.stage == "verify"

    def test_run_verify_reports_stale_entries(self, build_context):
        write_files(build_context.iso_extract_dir, {"a": "x"})
        (build_context.iso_extract_dir / "md5sum.txt").write_text(f"{'0' * 32}  ./a\n")

        assert pipeline.run_verify(build_context) == ["./a"]
