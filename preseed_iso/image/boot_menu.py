"""Boot menu patching for ISOLINUX (BIOS) and GRUB (UEFI).

Two strategies, chosen from what the extracted tree contains:

- PATCH_EXISTING: the vendor image ships menu configs. Only entries that
  load the boot archive carrying the preseed are patched; an entry booting
  another initrd (the graphical installer's) would never see it. ISOLINUX
  gets one such entry patched and made the default. GRUB gets every such
  entry patched, and the first becomes the default. Menu timeouts are
  shortened. ISOLINUX configs that ``include`` per-entry files (Debian's
  isolinux.cfg -> menu.cfg -> gtk.cfg, txt.cfg) are followed so the entry
  is patched wherever it is defined.
- AUTHOR_NEW: the image only ships a kernel and initrd. Minimal ISOLINUX and
  GRUB menus with a single unattended entry are written from scratch.

Patching is not idempotent: running it twice appends the parameters twice.
The pipeline always patches a freshly extracted tree.
"""

from __future__ import annotations

import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Sequence

from preseed_iso.domain import (
    BootMaterial,
    BootMenuResult,
    BootMenuStrategy,
    BuildContext,
    LocatedPath,
)
from preseed_iso.logging import get_logger

from .exceptions import BootMenuError, LayoutMismatchError
from .layout import (
    BOOT_ARCHIVE_CANDIDATES,
    KERNEL_CANDIDATES,
    LEGACY_LOADER_CANDIDATES,
    LEGACY_MENU_CANDIDATES,
    UEFI_IMAGE_CANDIDATES,
    UEFI_MENU_CANDIDATES,
    locate_first,
    probed_paths,
)

log = get_logger(source=__name__)

INCLUDE_RE = re.compile(r"^\s*(?:menu\s+)?include\s+(\S+)", re.IGNORECASE)
DEFAULT_RE = re.compile(r"^(\s*)default\s+(\S+)", re.IGNORECASE)
UI_RE = re.compile(r"^\s*(?:default|ui)\s+\S+", re.IGNORECASE)
LABEL_RE = re.compile(r"^\s*label\s+(\S+)", re.IGNORECASE)
MENU_DEFAULT_RE = re.compile(r"^\s*menu\s+default\b", re.IGNORECASE)
BLOCK_END_RE = re.compile(r"^\s*menu\s+(?:begin|end)\b", re.IGNORECASE)
APPEND_RE = re.compile(r"^(\s*)append\b[ \t]*(.*)$", re.IGNORECASE)
KERNEL_RE = re.compile(r"^(\s*)(?:kernel|linux)\b", re.IGNORECASE)
INITRD_ARG_RE = re.compile(r"(?:^|\s)initrd=(\S+)", re.IGNORECASE)
INITRD_DIRECTIVE_RE = re.compile(r"^\s*initrd(?:efi|16)?\s+(.+?)\s*$", re.IGNORECASE)
TIMEOUT_RE = re.compile(r"^(\s*)timeout\s+\S+", re.IGNORECASE)
PROMPT_RE = re.compile(r"^(\s*)prompt\s+\S+", re.IGNORECASE)
GRUB_TIMEOUT_RE = re.compile(r"^(\s*)set\s+timeout\s*=\s*\S*", re.IGNORECASE)
GRUB_DEFAULT_RE = re.compile(r"^(\s*)set\s+default\s*=\s*\S*", re.IGNORECASE)
GRUB_LINUX_RE = re.compile(r"^(\s*)(linux(?:efi|16)?)\s+(\S+)(?:\s+(.*?))?\s*$")
GRUB_OPEN_RE = re.compile(r"^\s*(menuentry|submenu)\b.*\{\s*$")
GRUB_CLOSE_RE = re.compile(r"^\s*\}\s*$")

ISOLINUX_TEMPLATE = """default auto
timeout {timeout}
prompt 0

label auto
    kernel {kernel}
    append initrd={initrd} {params} --- quiet
"""

GRUB_TEMPLATE = """set timeout={timeout}
set default=0

menuentry "Automated Install" {{
    linux {kernel} {params} --- quiet
    initrd {initrd}
}}
"""


def insert_boot_params(arguments: str, params: Sequence[str]) -> str:
    """Insert ``params`` before the ``---`` separator, or at the end."""
    tokens = arguments.split()
    if "---" in tokens:
        index = tokens.index("---")
        tokens[index:index] = params
    else:
        tokens.extend(params)
    return " ".join(tokens)


# ==============================================================================
# Discovery
# ==============================================================================


def discover_boot_material(tree: Path) -> BootMaterial:
    """Locate every boot related file the pipeline knows about."""
    tables = (
        LEGACY_MENU_CANDIDATES,
        UEFI_MENU_CANDIDATES,
        KERNEL_CANDIDATES,
        BOOT_ARCHIVE_CANDIDATES,
        LEGACY_LOADER_CANDIDATES,
        UEFI_IMAGE_CANDIDATES,
    )
    probed = tuple(path for table in tables for path in probed_paths(table))
    return BootMaterial(
        legacy_menu=locate_first(tree, LEGACY_MENU_CANDIDATES),
        uefi_menu=locate_first(tree, UEFI_MENU_CANDIDATES),
        kernel=locate_first(tree, KERNEL_CANDIDATES),
        initrd=locate_first(tree, BOOT_ARCHIVE_CANDIDATES),
        legacy_loader=locate_first(tree, LEGACY_LOADER_CANDIDATES),
        uefi_image=locate_first(tree, UEFI_IMAGE_CANDIDATES),
        probed=probed,
    )


def select_strategy(material: BootMaterial) -> BootMenuStrategy:
    """Pick patch-existing or author-new from what was discovered.

    Raises:
        LayoutMismatchError: no vendor menu and no kernel/initrd pair
    """
    if material.has_vendor_menu:
        return BootMenuStrategy.PATCH_EXISTING
    if material.kernel is not None and material.initrd is not None:
        return BootMenuStrategy.AUTHOR_NEW
    raise LayoutMismatchError("a boot menu or a kernel/initrd pair", material.probed)


# ==============================================================================
# ISOLINUX
# ==============================================================================


@dataclass
class MenuFile:
    path: Path
    lines: list[str]
    original: list[str] = field(default_factory=list)

    @classmethod
    def read(cls, path: Path) -> MenuFile:
        lines = path.read_text(encoding="utf-8", errors="replace").splitlines()
        return cls(path=path, lines=lines, original=list(lines))

    @property
    def modified(self) -> bool:
        return self.lines != self.original

    def write(self) -> None:
        self.path.write_text("\n".join(self.lines) + "\n", encoding="utf-8")


@dataclass
class LabelBlock:
    menu: MenuFile
    name: str
    start: int  # index of the "label" line
    end: int  # index one past the last line of the block
    marked_default: bool = False


def _names_archive(paths: Iterable[str], archive: str) -> bool:
    """True if any boot loader path in ``paths`` is the tree path ``archive``."""
    return any(path.strip("\"'").lstrip("/") == archive for path in paths)


def _resolve_include(tree: Path, including: Path, target: str) -> Optional[Path]:
    if target.startswith("/"):
        candidates = [tree / target.lstrip("/")]
    else:
        candidates = [including.parent / target, tree / target]
    for candidate in candidates:
        if candidate.is_file():
            return candidate
    return None


def collect_legacy_configs(tree: Path, primary: Path) -> list[MenuFile]:
    """Read ``primary`` and every config it includes, depth first."""
    seen: set[Path] = set()
    menus: list[MenuFile] = []

    def visit(path: Path) -> None:
        resolved = path.resolve()
        if resolved in seen:
            return
        seen.add(resolved)
        menu = MenuFile.read(path)
        menus.append(menu)
        for line in menu.lines:
            match = INCLUDE_RE.match(line)
            if not match:
                continue
            included = _resolve_include(tree, path, match.group(1))
            if included is None:
                log.debug(f"{path.name}: included file {match.group(1)} not in tree")
                continue
            visit(included)

    visit(primary)
    return menus


def _label_blocks(menu: MenuFile) -> list[LabelBlock]:
    blocks: list[LabelBlock] = []
    current: Optional[LabelBlock] = None
    for index, line in enumerate(menu.lines):
        label = LABEL_RE.match(line)
        if label or BLOCK_END_RE.match(line):
            if current is not None:
                current.end = index
                blocks.append(current)
                current = None
            if label:
                current = LabelBlock(menu=menu, name=label.group(1), start=index, end=index + 1)
            continue
        if current is not None and MENU_DEFAULT_RE.match(line):
            current.marked_default = True
    if current is not None:
        current.end = len(menu.lines)
        blocks.append(current)
    return blocks


def find_default_entry(menus: Sequence[MenuFile]) -> Optional[LabelBlock]:
    """Resolve the entry ISOLINUX boots when the timeout expires.

    Order: the first ``default X`` naming a defined label, then a label marked
    ``menu default``, then the first label.
    """
    blocks = [block for menu in menus for block in _label_blocks(menu)]
    if not blocks:
        return None
    by_name = {}
    for block in blocks:
        by_name.setdefault(block.name.lower(), block)
    for menu in menus:
        for line in menu.lines:
            match = DEFAULT_RE.match(line)
            if match and match.group(2).lower() in by_name:
                return by_name[match.group(2).lower()]
    for block in blocks:
        if block.marked_default:
            return block
    return blocks[0]


def loads_archive(block: LabelBlock, archive: str) -> bool:
    """True if the entry's ``initrd=`` argument or directive names ``archive``."""
    for line in block.menu.lines[block.start + 1 : block.end]:
        append = APPEND_RE.match(line)
        if append:
            for match in INITRD_ARG_RE.finditer(append.group(2)):
                if _names_archive(match.group(1).split(","), archive):
                    return True
            continue
        directive = INITRD_DIRECTIVE_RE.match(line)
        if directive and _names_archive(directive.group(1).split(","), archive):
            return True
    return False


def find_archive_entry(menus: Sequence[MenuFile], archive: str) -> Optional[LabelBlock]:
    """Pick the entry to automate.

    The resolved default wins if it loads ``archive``, otherwise the first
    entry that does. Entries booting another initrd (the graphical
    installer's, for instance) never see the injected payload.
    """
    entry = find_default_entry(menus)
    if entry is not None and loads_archive(entry, archive):
        return entry
    for menu in menus:
        for block in _label_blocks(menu):
            if loads_archive(block, archive):
                return block
    return None


def _patch_entry(block: LabelBlock, params: Sequence[str]) -> None:
    lines = block.menu.lines
    kernel_index = None
    for index in range(block.start + 1, block.end):
        match = APPEND_RE.match(lines[index])
        if match:
            indent, arguments = match.groups()
            lines[index] = f"{indent}append {insert_boot_params(arguments, params)}"
            return
        if kernel_index is None and KERNEL_RE.match(lines[index]):
            kernel_index = index
    anchor = kernel_index if kernel_index is not None else block.start
    indent = KERNEL_RE.match(lines[anchor]).group(1) if kernel_index is not None else "    "
    lines.insert(anchor + 1, f"{indent}append {' '.join(params)}")


def _mark_default(menus: Sequence[MenuFile], entry: LabelBlock) -> None:
    """Move the ``menu default`` marker and every ``default`` line to ``entry``."""
    ordinal = [block.start for block in _label_blocks(entry.menu)].index(entry.start)
    labels = {block.name.lower() for menu in menus for block in _label_blocks(menu)}

    has_default = False
    for menu in menus:
        menu.lines[:] = [line for line in menu.lines if not MENU_DEFAULT_RE.match(line)]
        for index, line in enumerate(menu.lines):
            has_default = has_default or bool(UI_RE.match(line))
            match = DEFAULT_RE.match(line)
            if match and match.group(2).lower() in labels:
                menu.lines[index] = f"{match.group(1)}default {entry.name}"

    block = _label_blocks(entry.menu)[ordinal]
    following = entry.menu.lines[block.start + 1] if block.end > block.start + 1 else ""
    indent = re.match(r"\s*", following).group(0) or "    "
    entry.menu.lines.insert(block.start + 1, f"{indent}menu default")
    if not has_default:
        menus[0].lines.insert(0, f"default {entry.name}")


def _set_directive(menu: MenuFile, pattern: re.Pattern, text: str, insert: bool) -> bool:
    found = False
    for index, line in enumerate(menu.lines):
        match = pattern.match(line)
        if match:
            menu.lines[index] = f"{match.group(1)}{text}"
            found = True
    if not found and insert:
        menu.lines.insert(0, text)
    return found


def patch_legacy_menu(
    tree: Path,
    primary: LocatedPath,
    archive: LocatedPath,
    params: Sequence[str],
    *,
    timeout_tenths: int,
) -> list[Path]:
    """Make the ISOLINUX entry that loads ``archive`` the unattended default.

    Returns the config files that were rewritten.

    Raises:
        BootMenuError: no entry is defined, or none loads ``archive``
    """
    menus = collect_legacy_configs(tree, primary.path)
    if not any(_label_blocks(menu) for menu in menus):
        raise BootMenuError(primary.path, "no label entries found")
    entry = find_archive_entry(menus, archive.relative_path)
    if entry is None:
        raise BootMenuError(primary.path, f"no menu entry loads {archive.iso_path}")

    # entry line indices are only valid until the first insertion
    _patch_entry(entry, params)
    _mark_default(menus, entry)
    _set_directive(menus[0], TIMEOUT_RE, f"timeout {timeout_tenths}", insert=True)
    _set_directive(menus[0], PROMPT_RE, "prompt 0", insert=False)
    for menu in menus[1:]:
        _set_directive(menu, TIMEOUT_RE, f"timeout {timeout_tenths}", insert=False)

    changed = [menu for menu in menus if menu.modified]
    for menu in changed:
        menu.write()
    log.info(
        f"Patched ISOLINUX entry '{entry.name}' in "
        f"{entry.menu.path.relative_to(tree).as_posix()}"
    )
    return [menu.path for menu in changed]


# ==============================================================================
# GRUB
# ==============================================================================


@dataclass
class GrubEntry:
    path: str  # value for "set default", e.g. "2>0" inside a submenu
    start: int
    end: int


def grub_entries(menu: MenuFile) -> list[GrubEntry]:
    """List menuentry blocks, nested submenus included, in file order."""
    entries: list[GrubEntry] = []
    counters = [0]
    position: list[str] = []
    # one item per open brace: the entry, "submenu", or None for other blocks
    open_blocks: list = []
    for index, line in enumerate(menu.lines):
        opened = GRUB_OPEN_RE.match(line)
        if opened:
            position.append(str(counters[-1]))
            counters[-1] += 1
            if opened.group(1) == "submenu":
                counters.append(0)
                open_blocks.append("submenu")
            else:
                entry = GrubEntry(path=">".join(position), start=index, end=index + 1)
                entries.append(entry)
                open_blocks.append(entry)
            continue
        if line.rstrip().endswith("{"):
            open_blocks.append(None)
            continue
        if GRUB_CLOSE_RE.match(line) and open_blocks:
            block = open_blocks.pop()
            if block is None:
                continue
            position.pop()
            if block == "submenu":
                counters.pop()
            else:
                block.end = index
    return entries


def patch_uefi_menu(
    menu_path: LocatedPath,
    archive: LocatedPath,
    params: Sequence[str],
    *,
    timeout_seconds: int,
) -> Path:
    """Make every GRUB entry loading ``archive`` unattended and the first
    one the default.

    Raises:
        BootMenuError: no entry's initrd line names ``archive``
    """
    menu = MenuFile.read(menu_path.path)
    patched: list[GrubEntry] = []
    for entry in grub_entries(menu):
        body = menu.lines[entry.start + 1 : entry.end]
        initrds = [INITRD_DIRECTIVE_RE.match(line) for line in body]
        if not any(
            match and _names_archive(match.group(1).split(), archive.relative_path)
            for match in initrds
        ):
            continue
        for index in range(entry.start + 1, entry.end):
            match = GRUB_LINUX_RE.match(menu.lines[index])
            if not match:
                continue
            indent, command, kernel_path, arguments = match.groups()
            new_arguments = insert_boot_params(arguments or "", params)
            menu.lines[index] = f"{indent}{command} {kernel_path} {new_arguments}"
            if not patched or patched[-1] is not entry:
                patched.append(entry)
    if not patched:
        raise BootMenuError(menu_path.path, f"no menu entry loads {archive.iso_path}")
    _set_directive(menu, GRUB_DEFAULT_RE, f'set default="{patched[0].path}"', insert=True)
    _set_directive(menu, GRUB_TIMEOUT_RE, f"set timeout={timeout_seconds}", insert=True)
    menu.write()
    log.info(
        f"Patched {len(patched)} GRUB entr{'y' if len(patched) == 1 else 'ies'} "
        f"in {menu_path.relative_path}, default entry {patched[0].path}"
    )
    return menu_path.path


# ==============================================================================
# Authoring
# ==============================================================================


def _copy_from_system(name: str, search_dirs: Iterable[Path], destination: Path) -> bool:
    for directory in search_dirs:
        source = directory / name
        if source.is_file():
            shutil.copyfile(source, destination)
            log.debug(f"Copied {source} to {destination}")
            return True
    return False


def author_menus(
    tree: Path,
    material: BootMaterial,
    params: Sequence[str],
    *,
    legacy_timeout_tenths: int,
    uefi_timeout_seconds: int,
    syslinux_dirs: Sequence[Path] = (),
) -> list[Path]:
    """Write minimal ISOLINUX and GRUB menus for a layout that ships none."""
    if material.kernel is None or material.initrd is None:
        raise LayoutMismatchError("a kernel/initrd pair", material.probed)
    kernel = material.kernel.iso_path
    initrd = material.initrd.iso_path
    log.info(f"Kernel: {kernel}, Initrd: {initrd}")
    written: list[Path] = []

    isolinux_dir = tree / "isolinux"
    isolinux_dir.mkdir(parents=True, exist_ok=True)
    if not (isolinux_dir / "isolinux.bin").is_file():
        if _copy_from_system("isolinux.bin", syslinux_dirs, isolinux_dir / "isolinux.bin"):
            # ldlinux.c32 must match the loader binary it is paired with
            if not _copy_from_system("ldlinux.c32", syslinux_dirs, isolinux_dir / "ldlinux.c32"):
                log.warning("ldlinux.c32 not found in system syslinux directories")
        else:
            log.warning("isolinux.bin not found in tree or system syslinux directories")

    isolinux_cfg = isolinux_dir / "isolinux.cfg"
    isolinux_cfg.write_text(
        ISOLINUX_TEMPLATE.format(
            timeout=legacy_timeout_tenths,
            kernel=kernel,
            initrd=initrd,
            params=" ".join(params),
        ),
        encoding="utf-8",
    )
    written.append(isolinux_cfg)

    grub_dir = tree / "boot" / "grub"
    if grub_dir.is_dir():
        grub_cfg = grub_dir / "grub.cfg"
        grub_cfg.write_text(
            GRUB_TEMPLATE.format(
                timeout=uefi_timeout_seconds,
                kernel=kernel,
                initrd=initrd,
                params=" ".join(params),
            ),
            encoding="utf-8",
        )
        written.append(grub_cfg)
    return written


def configure_boot_menus(context: BuildContext, tree: Path) -> BootMenuResult:
    """Discover boot material and apply the matching strategy."""
    log.info("Modifying boot menu for automated installation...")
    material = discover_boot_material(tree)
    strategy = select_strategy(material)
    log.debug(f"Boot menu strategy: {strategy.value}")
    params = context.boot_params

    if strategy is BootMenuStrategy.AUTHOR_NEW:
        written = author_menus(
            tree,
            material,
            params,
            legacy_timeout_tenths=context.legacy_timeout_tenths,
            uefi_timeout_seconds=context.uefi_timeout_seconds,
            syslinux_dirs=context.syslinux_dirs,
        )
        return BootMenuResult(strategy=strategy, written=tuple(written))

    if material.initrd is None:
        raise LayoutMismatchError("initrd.gz in ISO", probed_paths(BOOT_ARCHIVE_CANDIDATES))
    written = []
    if material.legacy_menu is not None:
        written += patch_legacy_menu(
            tree,
            material.legacy_menu,
            material.initrd,
            params,
            timeout_tenths=context.legacy_timeout_tenths,
        )
    else:
        log.info("No ISOLINUX menu found, BIOS menu left unpatched")
    if material.uefi_menu is not None:
        written.append(
            patch_uefi_menu(
                material.uefi_menu,
                material.initrd,
                params,
                timeout_seconds=context.uefi_timeout_seconds,
            )
        )
    else:
        log.info("No GRUB menu found, UEFI menu left unpatched")
    return BootMenuResult(strategy=strategy, written=tuple(written))
