"""
Pytest configuration and shared fixtures for preseed-iso tests.

This module provides installer tree builders, a build context rooted in a
temporary project directory, and a fake ToolInvoker so pipeline stages can
run without xorriso, cpio or gzip installed.
"""

import shutil
from pathlib import Path
from typing import Callable
from unittest.mock import Mock

import pytest

from preseed_iso.config import settings
from preseed_iso.domain import BuildContext, ToolResult
from preseed_iso.image.tools import ToolInvoker


# ==============================================================================
# Installer Tree Fixtures
# ==============================================================================

NETINST_ISOLINUX_CFG = """\
# D-I config version 2.0
path
include menu.cfg
default vesamenu.c32
prompt 0
timeout 0
"""

NETINST_MENU_CFG = """\
menu hshift 4
menu width 70

menu title Debian GNU/Linux installer menu (BIOS mode)
include stdmenu.cfg
include gtk.cfg
include txt.cfg
menu begin advanced
    menu label ^Advanced options
    menu title Advanced options
    include stdmenu.cfg
    label mainmenu
        menu label ^Back..
        menu exit
    include adtxt.cfg
menu end
"""

NETINST_GTK_CFG = """\
default installgui
label installgui
\tmenu label ^Graphical install
\tmenu default
\tkernel /install.amd/vmlinuz
\tappend vga=788 initrd=/install.amd/gtk/initrd.gz --- quiet 
"""

NETINST_TXT_CFG = """\
label install
\tmenu label ^Install
\tkernel /install.amd/vmlinuz
\tappend vga=788 initrd=/install.amd/initrd.gz --- quiet 
"""

NETINST_ADTXT_CFG = """\
label expert
\tmenu label E^xpert install
\tkernel /install.amd/vmlinuz
\tappend priority=low vga=788 initrd=/install.amd/initrd.gz --- 
"""

NETINST_GRUB_CFG = """\
if loadfont $prefix/font.pf2 ; then
  set gfxmode=800x600
  insmod gfxterm
fi

menuentry --hotkey=g 'Graphical install' {
    set background_color=black
    linux    /install.amd/vmlinuz vga=788 --- quiet
    initrd   /install.amd/gtk/initrd.gz
}
menuentry --hotkey=i 'Install' {
    set background_color=black
    linux    /install.amd/vmlinuz vga=788 --- quiet
    initrd   /install.amd/initrd.gz
}
menuentry --hotkey=r 'Rescue mode' {
    linux    /install.amd/vmlinuz vga=788 rescue/enable=true --- quiet
    initrd   /install.amd/initrd.gz
}
submenu --hotkey=a 'Advanced options ...' {
    menuentry --hotkey=x 'Graphical expert install' {
        linux    /install.amd/vmlinuz priority=low vga=788 --- quiet
        initrd   /install.amd/gtk/initrd.gz
    }
    menuentry --hotkey=e 'Expert install' {
        linux    /install.amd/vmlinuz priority=low vga=788 --- quiet
        initrd   /install.amd/initrd.gz
    }
}
"""


def write_files(root: Path, files: dict) -> Path:
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
    return root


@pytest.fixture
def netinst_tree(tmp_path) -> Path:
    """
    Fixture providing an extracted netinst-style tree.

    ISOLINUX menus are split across isolinux.cfg -> menu.cfg -> gtk.cfg and
    txt.cfg. As on the real image the graphical entries are the defaults and
    load /install.amd/gtk/initrd.gz, while the text entries load the
    /install.amd/initrd.gz archive that receives the preseed.
    """
    return write_files(
        tmp_path / "netinst",
        {
            "install.amd/vmlinuz": b"kernel",
            "install.amd/initrd.gz": b"initrd",
            "install.amd/gtk/initrd.gz": b"gtk initrd",
            "isolinux/isolinux.bin": b"isolinux",
            "isolinux/isolinux.cfg": NETINST_ISOLINUX_CFG,
            "isolinux/menu.cfg": NETINST_MENU_CFG,
            "isolinux/gtk.cfg": NETINST_GTK_CFG,
            "isolinux/txt.cfg": NETINST_TXT_CFG,
            "isolinux/adtxt.cfg": NETINST_ADTXT_CFG,
            "boot/grub/grub.cfg": NETINST_GRUB_CFG,
            "boot/grub/efi.img": b"efi",
            "md5sum.txt": "stale\n",
        },
    )


@pytest.fixture
def mini_tree(tmp_path) -> Path:
    """Fixture providing a mini.iso-style tree with no boot menus."""
    tree = write_files(
        tmp_path / "mini",
        {
            "linux": b"kernel",
            "initrd.gz": b"initrd",
            "isolinux.bin": b"isolinux",
        },
    )
    (tree / "boot" / "grub").mkdir(parents=True)
    return tree


MINI_ISOLINUX_CFG = """\
include txt.cfg
default vesamenu.c32
prompt 0
timeout 0
"""

MINI_TXT_CFG = """\
default install
label install
\tmenu label ^Install
\tkernel linux
\tappend vga=788 initrd=initrd.gz --- quiet
"""

MINI_GRUB_CFG = """\
menuentry 'Install' {
    linux    /linux vga=788 --- quiet
    initrd   /initrd.gz
}
"""


@pytest.fixture
def mini_menu_tree(tmp_path) -> Path:
    """
    Fixture providing a mini.iso-style tree that ships its own menus.

    Everything sits at the image root, including isolinux.cfg and the
    txt.cfg it includes, and the entries use relative kernel and initrd paths.
    """
    return write_files(
        tmp_path / "mini-menus",
        {
            "linux": b"kernel",
            "initrd.gz": b"initrd",
            "isolinux.bin": b"isolinux",
            "isolinux.cfg": MINI_ISOLINUX_CFG,
            "txt.cfg": MINI_TXT_CFG,
            "boot/grub/grub.cfg": MINI_GRUB_CFG,
            "boot/grub/efi.img": b"efi",
        },
    )


# ==============================================================================
# Build Context Fixtures
# ==============================================================================


@pytest.fixture
def project_dir(tmp_path) -> Path:
    """Fixture providing a project with a preseed file and packages dir."""
    project = tmp_path / "project"
    write_files(
        project,
        {"preseed/preseed.cfg": "d-i debian-installer/locale string en_US\n"},
    )
    (project / "packages").mkdir()
    return project


@pytest.fixture
def syslinux_dir(tmp_path) -> Path:
    """Fixture providing a fake system syslinux directory."""
    return write_files(
        tmp_path / "syslinux",
        {"isolinux.bin": b"system isolinux", "ldlinux.c32": b"system ldlinux"},
    )


@pytest.fixture
def build_context(project_dir, syslinux_dir, tmp_path) -> BuildContext:
    """Fixture providing a BuildContext with a fake isohybrid MBR template."""
    mbr = tmp_path / "isohdpfx.bin"
    mbr.write_bytes(b"\0" * 432)
    values = dict(settings.DEFAULT_SETTINGS)
    values["isohybrid_mbr"] = str(mbr)
    values["syslinux_dirs"] = [str(syslinux_dir)]
    return BuildContext.from_settings(project_dir, values)


# ==============================================================================
# Tool Invoker Fixtures
# ==============================================================================


def ok_result(*command: str) -> ToolResult:
    return ToolResult(ok=True, command=tuple(command), returncode=0)


@pytest.fixture
def fake_invoker_factory() -> Callable[[Path], Mock]:
    """
    Fixture providing a factory for fake ToolInvokers.

    The fake extracts ``source_tree`` as if it were the ISO, unpacks every
    archive to a small root filesystem, and writes placeholder bytes for
    packed archives and composed images.
    """

    def factory(source_tree: Path) -> Mock:
        invoker = Mock(spec=ToolInvoker)

        def extract(image_path, target_dir):
            shutil.copytree(source_tree, target_dir, dirs_exist_ok=True)
            return ok_result("xorriso", "-extract")

        def unpack(archive_path, target_dir):
            write_files(target_dir, {"init": "#!/bin/sh\n", "bin/sh": b"sh"})
            return ok_result("gzip", "|", "cpio")

        def pack(source_dir, entries, destination):
            invoker.packed_entries = list(entries)
            Path(destination).write_bytes(b"packed")
            return ok_result("cpio", "|", "gzip")

        def compose(arguments):
            output = Path(arguments[arguments.index("-o") + 1])
            output.write_bytes(b"iso" * 10)
            return ok_result("xorriso", "-as", "mkisofs", *arguments)

        invoker.extract_filesystem.side_effect = extract
        invoker.unpack_archive.side_effect = unpack
        invoker.pack_archive.side_effect = pack
        invoker.compose_filesystem.side_effect = compose
        return invoker

    return factory
