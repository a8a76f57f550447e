"""External tool invocation.

Every call into xorriso, cpio or gzip goes through ToolInvoker, which reports
a ToolResult instead of raising. Stages decide what a failure means.
"""

from __future__ import annotations

import subprocess
import tempfile
from pathlib import Path
from typing import IO, Iterable, Optional, Sequence

from preseed_iso.domain import ToolResult
from preseed_iso.logging import get_logger

log = get_logger(source=__name__)
tool_log = get_logger(source=__name__, tags=["tool"])


def _decode(output: Optional[bytes | str]) -> str:
    if not output:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


def _log_tool_output(name: str, output: str) -> None:
    for line in output.splitlines():
        if line.strip():
            tool_log.trace(f"{name}: {line.rstrip()}")


def run_tool_command(
    command: Sequence[str],
    *,
    cwd: Optional[Path] = None,
) -> ToolResult:
    """Run a command to completion and capture its diagnostics."""
    command = tuple(str(part) for part in command)
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except OSError as error:
        return ToolResult(ok=False, command=command, returncode=127, diagnostics=str(error))
    stderr = _decode(result.stderr)
    _log_tool_output(command[0], stderr)
    diagnostics = stderr.strip() or _decode(result.stdout).strip()
    if result.returncode != 0:
        log.debug(f"Command failed with code {result.returncode}: {' '.join(command)}")
    return ToolResult(
        ok=result.returncode == 0,
        command=command,
        returncode=result.returncode,
        diagnostics=diagnostics,
    )


def run_piped_commands(
    producer: Sequence[str],
    consumer: Sequence[str],
    *,
    cwd: Optional[Path] = None,
    stdin_source: Optional[IO[bytes]] = None,
    stdout_target: Optional[IO[bytes]] = None,
) -> tuple[ToolResult, ToolResult]:
    """Run ``producer | consumer`` and report each side separately.

    Binary data flows through the pipe untouched; only stderr is decoded.
    The producer's stderr is spooled to a temporary file while the consumer
    runs, so a producer that writes more than a pipe buffer of warnings
    cannot block.
    """
    producer = tuple(str(part) for part in producer)
    consumer = tuple(str(part) for part in consumer)
    log.debug(f"Running command: {' '.join(producer)} | {' '.join(consumer)}")
    with tempfile.TemporaryFile() as producer_errors:
        return _run_pipeline(
            producer, consumer, cwd, stdin_source, stdout_target, producer_errors
        )


def _run_pipeline(
    producer: tuple[str, ...],
    consumer: tuple[str, ...],
    cwd: Optional[Path],
    stdin_source: Optional[IO[bytes]],
    stdout_target: Optional[IO[bytes]],
    producer_errors: IO[bytes],
) -> tuple[ToolResult, ToolResult]:
    try:
        producer_proc = subprocess.Popen(
            producer,
            cwd=cwd,
            stdin=stdin_source,
            stdout=subprocess.PIPE,
            stderr=producer_errors,
        )
    except OSError as error:
        failed = ToolResult(ok=False, command=producer, returncode=127, diagnostics=str(error))
        skipped = ToolResult(ok=False, command=consumer, returncode=-1, diagnostics="not started")
        return failed, skipped
    try:
        consumer_proc = subprocess.Popen(
            consumer,
            cwd=cwd,
            stdin=producer_proc.stdout,
            stdout=stdout_target if stdout_target is not None else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
    except OSError as error:
        producer_proc.kill()
        producer_proc.wait()
        failed = ToolResult(ok=False, command=consumer, returncode=127, diagnostics=str(error))
        killed = ToolResult(ok=False, command=producer, returncode=-1, diagnostics="aborted")
        return killed, failed
    if producer_proc.stdout:
        producer_proc.stdout.close()
    _, consumer_err = consumer_proc.communicate()
    producer_proc.wait()
    producer_errors.seek(0)
    producer_err = producer_errors.read()

    results = []
    for command, returncode, stderr in (
        (producer, producer_proc.returncode, _decode(producer_err)),
        (consumer, consumer_proc.returncode, _decode(consumer_err)),
    ):
        _log_tool_output(command[0], stderr)
        results.append(
            ToolResult(
                ok=returncode == 0,
                command=command,
                returncode=returncode,
                diagnostics=stderr.strip(),
            )
        )
    return results[0], results[1]


class ToolInvoker:
    """Narrow interface over the external image and archive tools."""

    def __init__(
        self,
        *,
        xorriso: str = "xorriso",
        cpio: str = "cpio",
        gzip: str = "gzip",
    ):
        self.xorriso = xorriso
        self.cpio = cpio
        self.gzip = gzip

    def extract_filesystem(self, image_path: Path, target_dir: Path) -> ToolResult:
        """Copy the whole ISO 9660 tree of ``image_path`` into ``target_dir``."""
        return run_tool_command(
            [
                self.xorriso,
                "-osirrox",
                "on",
                "-indev",
                str(image_path),
                "-extract",
                "/",
                str(target_dir),
            ]
        )

    def compose_filesystem(self, arguments: Sequence[str]) -> ToolResult:
        """Write an image using xorriso's mkisofs emulation."""
        return run_tool_command([self.xorriso, "-as", "mkisofs", *arguments])

    def unpack_archive(self, archive_path: Path, target_dir: Path) -> ToolResult:
        """Decompress a gzip'd cpio archive into ``target_dir``.

        A decompression failure is reported as a failed result. cpio errors
        are reported as warnings on an otherwise successful result; callers
        judge them by what was staged.
        """
        decompress, unpack = run_piped_commands(
            [self.gzip, "-dc", str(archive_path)],
            [self.cpio, "-id", "--no-absolute-filenames", "--quiet"],
            cwd=target_dir,
        )
        if not decompress.ok:
            return decompress
        if not unpack.ok and unpack.returncode == 127:
            return unpack
        return ToolResult(
            ok=True,
            command=decompress.command + ("|",) + unpack.command,
            returncode=unpack.returncode,
            diagnostics=unpack.diagnostics,
        )

    def pack_archive(
        self,
        source_dir: Path,
        entries: Iterable[str],
        destination: Path,
    ) -> ToolResult:
        """Pack ``entries`` (relative to ``source_dir``) as gzip'd cpio newc."""
        with tempfile.TemporaryFile() as entry_list, open(destination, "wb") as output:
            for entry in entries:
                entry_list.write(entry.encode("utf-8") + b"\0")
            entry_list.seek(0)
            pack, compress = run_piped_commands(
                [self.cpio, "-o", "-H", "newc", "-0", "-R", "0:0", "--quiet"],
                [self.gzip, "-9", "-n"],
                cwd=source_dir,
                stdin_source=entry_list,
                stdout_target=output,
            )
        for result in (pack, compress):
            if not result.ok:
                return result
        return ToolResult(
            ok=True,
            command=pack.command + ("|",) + compress.command,
            returncode=0,
            diagnostics=pack.diagnostics,
        )
