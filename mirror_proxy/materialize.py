"""Replay a capture document into a static file tree."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple

import requests

from .config import MaterializeConfig
from .models import CaptureDocument
from .utils import is_ok, split_query

logger = logging.getLogger("mirror_proxy.materialize")


@dataclass
class MaterializeResult:
    """What a materializer run wrote, skipped, and failed to write."""

    written: List[Path] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


def load_capture(path: Path) -> CaptureDocument:
    """Read and parse a capture document (or a proxy-capture snapshot)."""
    with path.open("r", encoding="utf-8") as handle:
        return CaptureDocument.from_dict(json.load(handle))


def page_target(path: str) -> str:
    """Map a crawled path to the file that serves it statically."""
    if path.endswith("/"):
        return path + "index.html"
    if not PurePosixPath(path).suffix:
        return path + ".html"
    return path


def resource_target(path: str) -> str:
    path = split_query(path)
    if path.endswith("/"):
        return path + "index.html"
    return path


def resolve_target(output_root: Path, relative: str) -> Path:
    """Place ``relative`` under ``output_root``; raises ``ValueError`` if it escapes."""
    root = output_root.resolve()
    target = (root / relative.lstrip("/")).resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"{relative!r} resolves outside {root}")
    return target


def _write(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


def write_pages(document: CaptureDocument, output_root: Path, result: MaterializeResult) -> None:
    for entry in document.html:
        try:
            target = resolve_target(output_root, page_target(entry.path))
            _write(target, (entry.html or "").encode("utf-8"))
        except (OSError, ValueError) as exc:
            logger.error("Failed to write page %s: %s", entry.path, exc)
            result.failed.append((entry.path, str(exc)))
            continue
        logger.info("Wrote %s", target)
        result.written.append(target)


def download_resources(
    resources: List[str],
    config: MaterializeConfig,
    result: MaterializeResult,
    session: Optional[requests.Session] = None,
) -> None:
    """Fetch resources one at a time, in order, and persist the raw bytes."""
    session = session or requests.Session()
    for resource in resources:
        url = config.resource_origin + (resource if resource.startswith("/") else "/" + resource)
        logger.info("Fetching %s", url)
        try:
            resp = session.get(url, timeout=config.timeout)
        except requests.RequestException as exc:
            logger.error("Failed to fetch %s: %s", url, exc)
            result.skipped.append(resource)
            continue
        if not is_ok(resp.status_code):
            logger.error("Failed to fetch %s: %s", url, resp.status_code)
            result.skipped.append(resource)
            continue

        try:
            target = resolve_target(config.output_root, resource_target(resource))
            _write(target, resp.content)
        except (OSError, ValueError) as exc:
            logger.error("Failed to write resource %s: %s", resource, exc)
            result.failed.append((resource, str(exc)))
            continue
        logger.info("Wrote %s", target)
        result.written.append(target)


def materialize(
    config: MaterializeConfig,
    session: Optional[requests.Session] = None,
) -> MaterializeResult:
    """Write every page, then every resource, of the configured capture."""
    document = load_capture(config.capture_path)
    result = MaterializeResult()
    write_pages(document, config.output_root, result)
    download_resources(document.resources, config, result, session)
    return result
