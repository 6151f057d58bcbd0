"""Command line interface for fossilize."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from collections.abc import Mapping
from pathlib import Path

from fossilize import __version__
from fossilize.build import DEFAULT_NODE_VERSION, BuildOptions, build
from fossilize.errors import CommandError, FossilizeError
from fossilize.observability import BuildReport
from fossilize.signing import SigningCredentials


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("fossilize")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(_LevelPrefixFormatter())

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


class _LevelPrefixFormatter(logging.Formatter):
    """Plain progress lines; warnings and errors carry their level."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if record.levelno >= logging.WARNING:
            return f"{record.levelname}: {message}"
        return message


def default_cache_dir(environ: Mapping[str, str]) -> Path:
    base = environ.get("XDG_CACHE_HOME")
    root = Path(base) if base else Path.home() / ".cache"
    return root / "fossilize"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="fossilize",
        description="Package a Node.js application into self-contained executables.",
    )
    parser.add_argument("entrypoint", type=Path, help="Entry file, or a directory with package.json.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-n",
        "--node-version",
        default=DEFAULT_NODE_VERSION,
        help=f"Node.js runtime version to embed into (default: {DEFAULT_NODE_VERSION}).",
    )
    parser.add_argument(
        "-p",
        "--platform",
        dest="platforms",
        action="append",
        default=[],
        help="Target platform as os-arch (e.g. linux-x64). Repeatable; defaults to the host.",
    )
    parser.add_argument(
        "-a",
        "--asset",
        dest="assets",
        action="append",
        default=[],
        help="Extra asset as name=path or a plain path. Repeatable.",
    )
    parser.add_argument(
        "-m",
        "--asset-manifest",
        type=Path,
        default=None,
        help="Build-tool manifest whose files are embedded as assets.",
    )
    parser.add_argument("-o", "--out-dir", type=Path, default=Path("dist"))
    parser.add_argument("--cache-dir", type=Path, default=None)
    parser.add_argument(
        "--no-cache",
        action="store_true",
        help="Re-download the runtime even when a cached copy exists.",
    )
    parser.add_argument(
        "--no-bundle",
        action="store_true",
        help="Embed the entrypoint as-is instead of bundling it.",
    )
    parser.add_argument(
        "--sign",
        action="store_true",
        help="Sign (and notarize, where supported) the produced executables.",
    )
    parser.add_argument("--node", default="node", help="Host node used to generate the payload.")
    parser.add_argument("--report", type=Path, default=None, help="Write a JSON lines build report.")
    parser.add_argument("-v", "--verbose", action="count", default=0)
    parser.add_argument("-q", "--quiet", action="count", default=0)
    return parser


def options_from_args(ns: argparse.Namespace, environ: Mapping[str, str]) -> BuildOptions:
    return BuildOptions(
        node_version=ns.node_version,
        platforms=tuple(ns.platforms),
        assets=tuple(ns.assets),
        asset_manifest=ns.asset_manifest,
        out_dir=ns.out_dir,
        cache_dir=ns.cache_dir or default_cache_dir(environ),
        skip_cache=ns.no_cache,
        skip_bundling=ns.no_bundle,
        sign=ns.sign,
        node_executable=ns.node,
        node_env=environ.get("NODE_ENV") or "development",
    )


def main(argv: list[str] | None = None, environ: Mapping[str, str] | None = None) -> int:
    environ = os.environ if environ is None else environ
    ns = build_parser().parse_args(argv)
    logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
    report = BuildReport()

    try:
        result = build(
            ns.entrypoint,
            options_from_args(ns, environ),
            credentials=SigningCredentials.from_env(environ),
            report=report,
        )
    except CommandError as exc:
        logger.error("%s", exc)
        return exc.exit_code
    except FossilizeError as exc:
        logger.error("%s", exc)
        return 1
    finally:
        if ns.report is not None:
            report.to_json_lines(ns.report)

    for item in result.results:
        if item.ok:
            logger.info("%s: %s", item.platform, item.path)
        else:
            logger.error("%s: failed: %s", item.platform, item.error)
    return result.exit_code


__all__ = ["build_parser", "default_cache_dir", "main", "options_from_args"]
