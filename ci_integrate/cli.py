"""
CLI — ``ci-integrate build`` and ``ci-integrate run``.

Builds Settings, LibraryConfig and BuildOptions once and hands them to the
runner.  Exit code 0 on success, 1 with a diagnostic on any failure.
"""
import argparse
import logging
import sys
from typing import List, Optional

from ci_integrate import __version__
from ci_integrate.config import BuildOptions, LibraryConfig, Settings
from ci_integrate.errors import IntegrationError
from ci_integrate.pipeline.progress import human_duration, status_line
from ci_integrate.runner import RunStatus, run_binary, run_build

logger = logging.getLogger(__name__)

LOG_LEVELS = {
    "trace": logging.DEBUG,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def _log_level(args: argparse.Namespace) -> int:
    if args.log is not None:
        return LOG_LEVELS[args.log]
    if args.verbose >= 2:
        return logging.DEBUG
    if args.verbose == 1:
        return logging.INFO
    return logging.WARNING


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-r", "--release", action="store_true",
                        help="Build artifacts in release mode")
    parser.add_argument("-t", "--target", metavar="TRIPLE", default=None,
                        help="Build for the target triple")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Use verbose output (-vv very verbose output)")
    parser.add_argument("--log", choices=sorted(LOG_LEVELS), default=None,
                        help="Log level (overrides -v)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ci-integrate",
        description="Build a cargo package with Compiler Interrupts integrated",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Compile and integrate the Compiler Interrupts to a package")
    _add_common(build)
    build.add_argument("-e", "--example", metavar="BINARY", default=None,
                       help="Build an example artifact")
    build.add_argument("-s", "--skip", metavar="CRATE", nargs="+", default=[],
                       help="Crates to skip the integration")
    build.add_argument("-d", "--debug", action="store_true",
                       help="Enable debugging mode for the library when integrating")
    build.add_argument("cargo_args", nargs=argparse.REMAINDER,
                       help="Extra arguments for `cargo build` (after --)")

    run = sub.add_parser("run", help="Run a Compiler Interrupts-integrated binary")
    _add_common(run)
    run.add_argument("-b", "--bin", metavar="BINARY", default=None,
                     help="Name of the binary")
    run.add_argument("args", nargs=argparse.REMAINDER,
                     help="Arguments for the binary (after --)")
    return parser


def _strip_separator(args: List[str]) -> List[str]:
    return args[1:] if args and args[0] == "--" else args


def _build(args: argparse.Namespace, settings: Settings, level: int) -> None:
    library = LibraryConfig.load(settings.CONFIG_DIR)
    if settings.LIBRARY_PATH is not None:
        library = library.model_copy(update={"library_path": settings.LIBRARY_PATH})

    options = BuildOptions(
        target=args.target,
        release=args.release,
        example=args.example,
        skip_units=list(args.skip),
        debug=args.debug,
        cargo_args=_strip_separator(args.cargo_args),
        verbose=level <= logging.INFO,
    )
    if options.debug:
        print(status_line("Note", "Debugging mode is enabled"))

    report = run_build(settings, library, options)
    if report.status == RunStatus.FRESH:
        print(status_line("Finished", "nothing to integrate, all fresh"))
    else:
        print(status_line(
            "Finished",
            f"integrated {len(report.binaries)} target(s) in "
            f"{human_duration(report.duration_ms / 1000)}",
        ))


def _run(args: argparse.Namespace, settings: Settings) -> None:
    options = BuildOptions(target=args.target, release=args.release)
    run_binary(settings, options, name=args.bin, args=_strip_separator(args.args))


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for ci-integrate."""
    args = build_parser().parse_args(argv)
    level = _log_level(args)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    settings = Settings()
    try:
        if args.command == "build":
            _build(args, settings, level)
        else:
            _run(args, settings)
    except IntegrationError as e:
        logger.debug("integration failed", exc_info=True)
        print(status_line("error", str(e)), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
