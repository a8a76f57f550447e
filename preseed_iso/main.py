import argparse
import sys
from pathlib import Path

from preseed_iso.__version__ import __version__
from preseed_iso.config import settings
from preseed_iso.domain import BuildContext
from preseed_iso.image.exceptions import BuildError, InputError
from preseed_iso.logging import get_logger, resolve_log_dir, setup_logging
from preseed_iso import pipeline

COMMANDS = ("build", "fetch", "clean", "verify")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="preseed-iso",
        description="Build an unattended Debian installer ISO",
    )
    parser.add_argument("command", nargs="?", default="build", choices=COMMANDS)
    parser.add_argument(
        "-C",
        "--project-dir",
        type=Path,
        default=Path.cwd(),
        help="Directory holding preseed/, packages/, build/ and output/",
    )
    parser.add_argument("--settings", type=Path, help="Settings JSON file")
    parser.add_argument("--codename", help="Debian release codename (e.g. trixie)")
    parser.add_argument("--arch", help="Debian architecture (e.g. amd64)")
    parser.add_argument(
        "--keep-scratch",
        action="store_true",
        help="Leave build/iso_extract and build/initrd in place",
    )
    parser.add_argument(
        "--purge-cache",
        action="store_true",
        help="With 'clean', also remove the cached base image",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Also log raw tool output")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def load_context(args) -> BuildContext:
    """Merge the settings file and CLI flags into a BuildContext.

    Raises:
        InputError: a setting is missing or has an unusable value
    """
    project_dir = args.project_dir.resolve()
    settings_path = settings.resolve_settings_path(project_dir, args.settings)
    values = settings.load_settings(settings_path)
    try:
        return BuildContext.from_settings(
            project_dir,
            values,
            codename=args.codename,
            arch=args.arch,
        )
    except (KeyError, ValueError, TypeError, IndexError, AttributeError) as error:
        failure = InputError(settings_path, f"has an invalid value: {error!r}")
        failure.stage = "settings"
        raise failure from error


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(
        debug=args.debug,
        trace=args.trace,
        log_dir=resolve_log_dir(),
    )
    log = get_logger(source="main")

    try:
        context = load_context(args)
        if args.command == "fetch":
            pipeline.run_fetch(context)
        elif args.command == "clean":
            failed = pipeline.run_clean(context, purge_cache=args.purge_cache)
            return 1 if failed else 0
        elif args.command == "verify":
            return 1 if pipeline.run_verify(context) else 0
        else:
            pipeline.run_build(context, keep_scratch=args.keep_scratch)
    except BuildError as error:
        log.error(f"Build failed during {error.stage or args.command}: {error}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
