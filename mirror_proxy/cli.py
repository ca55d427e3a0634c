"""Command-line entry point for the mirror proxy."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import Iterable, Sequence

import aiohttp
from aiohttp import web

from .config import (
    DEFAULT_RESOURCE_ORIGIN,
    MaterializeConfig,
    Origins,
    ProxyConfig,
    split_paths,
)
from .crawler import run_capture
from .gateway import create_app
from .materialize import materialize

logger = logging.getLogger("mirror_proxy.cli")


def _ensure_command_prefix(argv: Sequence[str], commands: Iterable[str]) -> Sequence[str]:
    if not argv:
        return ("serve",)
    first = argv[0]
    if first in commands or first in ("-h", "--help"):
        return argv
    return ("serve", *argv)


def _add_origin_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--source-origin",
        default=None,
        help="Origin to fetch pages from (default: $PROXY_ORIGIN)",
    )
    parser.add_argument(
        "--rewrite-origin",
        default=None,
        help="Origin to strip from rewritten URLs (default: $REWRITE_ORIGIN or the source origin)",
    )
    parser.add_argument(
        "--rewrite-paths",
        default=None,
        help="Comma-separated paths to capture in batch mode (default: $REWRITE_PATHS)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Upstream request timeout in seconds",
    )
    parser.add_argument(
        "--resource-types",
        action="store_true",
        help="Emit resources as {url, type} objects instead of plain paths",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def _add_serve_arguments(parser: argparse.ArgumentParser) -> None:
    _add_origin_arguments(parser)
    parser.add_argument("--host", default=None, help="Interface to bind (default: $HOST or 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind (default: $PORT or 3000)")


def _add_capture_arguments(parser: argparse.ArgumentParser) -> None:
    _add_origin_arguments(parser)
    parser.add_argument(
        "--output",
        default="-",
        help="File to write the capture document to ('-' for stdout)",
    )


def _add_materialize_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("capture", type=Path, help="Capture document produced by /html-json/ or /proxy-capture")
    parser.add_argument(
        "--output",
        default="public",
        type=Path,
        help="Directory where pages and resources should be written",
    )
    parser.add_argument(
        "--resource-origin",
        default=DEFAULT_RESOURCE_ORIGIN,
        help="Origin to download resources from",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Per-resource request timeout in seconds",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Proxy a live site with origin-stripping HTML rewriting and mirror it to static files.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the rewriting proxy server")
    _add_serve_arguments(serve_parser)

    capture_parser = subparsers.add_parser(
        "capture", help="Capture a list of paths to a JSON document without running the server"
    )
    _add_capture_arguments(capture_parser)

    materialize_parser = subparsers.add_parser(
        "materialize", help="Write a capture document out as a static site"
    )
    _add_materialize_arguments(materialize_parser)

    argv = list(sys.argv[1:] if argv is None else argv)
    argv = list(_ensure_command_prefix(argv, subparsers.choices.keys()))
    return parser.parse_args(argv)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        force=True,
    )


def _proxy_config(args: argparse.Namespace) -> ProxyConfig:
    config = ProxyConfig.from_env()
    overrides = ProxyConfig(
        source_origin=args.source_origin,
        rewrite_origin=args.rewrite_origin,
        rewrite_paths=split_paths(args.rewrite_paths),
    )
    config.source_origin = overrides.source_origin or config.source_origin
    config.rewrite_origin = overrides.rewrite_origin or config.rewrite_origin
    config.rewrite_paths = overrides.rewrite_paths or config.rewrite_paths
    config.request_timeout = args.timeout
    config.typed_resources = args.resource_types
    if getattr(args, "host", None):
        config.host = args.host
    if getattr(args, "port", None):
        config.port = args.port
    return config


def _run_serve(args: argparse.Namespace) -> int:
    config = _proxy_config(args)
    if not config.source_origin:
        logger.warning("No source origin configured; requests must pass ?proxy-origin=")
    else:
        logger.info(
            "Proxying %s (rewriting %s)",
            config.source_origin,
            config.rewrite_origin or config.source_origin,
        )
    web.run_app(create_app(config), host=config.host, port=config.port, print=None)
    return 0


async def _capture(paths: Sequence[str], origins: Origins, config: ProxyConfig) -> str:
    timeout = aiohttp.ClientTimeout(total=config.request_timeout)
    async with aiohttp.ClientSession(timeout=timeout) as session:
        return await run_capture(paths, origins, session, config.typed_resources)


def _run_capture(args: argparse.Namespace) -> int:
    config = _proxy_config(args)
    if not config.source_origin:
        logger.error("A source origin is required (--source-origin or $PROXY_ORIGIN)")
        return 2
    origins = Origins(
        source=config.source_origin,
        rewrite=config.rewrite_origin or config.source_origin,
    )
    paths = config.rewrite_paths or ["/"]

    start = time.perf_counter()
    document = asyncio.run(_capture(paths, origins, config))
    if args.output == "-":
        sys.stdout.write(document)
        sys.stdout.flush()
    else:
        Path(args.output).write_text(document, encoding="utf-8")
        logger.info("Saved capture to %s", args.output)
    logger.info("Captured %d path(s) in %.2fs", len(paths), time.perf_counter() - start)
    return 0


def _run_materialize(args: argparse.Namespace) -> int:
    config = MaterializeConfig(
        capture_path=args.capture,
        output_root=Path(args.output),
        resource_origin=args.resource_origin,
        timeout=args.timeout,
    )

    start = time.perf_counter()
    try:
        result = materialize(config)
    except (OSError, ValueError) as exc:
        logger.error("Cannot read capture %s: %s", config.capture_path, exc)
        return 2
    logger.info(
        "Finished in %.2fs (%d written, %d skipped, %d failed)",
        time.perf_counter() - start,
        len(result.written),
        len(result.skipped),
        len(result.failed),
    )
    for item, reason in result.failed:
        logger.error("Failed: %s (%s)", item, reason)
    return 0 if result.ok else 1


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    _configure_logging(args.verbose)
    if args.command == "serve":
        return _run_serve(args)
    if args.command == "capture":
        return _run_capture(args)
    return _run_materialize(args)


if __name__ == "__main__":
    sys.exit(main())
