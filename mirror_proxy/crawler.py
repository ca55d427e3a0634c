"""Batch capture: rewrite an ordered list of paths into one capture document."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import AsyncIterator, List, Sequence

import aiohttp
from aiohttp import web

from .collector import CaptureCollector
from .config import Origins
from .handlers import capturing_rewriter
from .models import HtmlEntry
from .utils import is_html, is_ok, pick_encoding

logger = logging.getLogger("mirror_proxy.crawler")

CHUNK_SIZE = 64 * 1024
CHANNEL_SIZE = 8

_DONE = object()


def _dumps(value) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


async def capture_path(
    session: aiohttp.ClientSession,
    path: str,
    origins: Origins,
    collector: CaptureCollector,
) -> HtmlEntry:
    """Fetch one path and rewrite it; failures degrade to a path-only entry."""
    url = origins.source + (path if path.startswith("/") else "/" + path)
    entry = HtmlEntry(path=path)
    try:
        async with session.get(url) as response:
            content_type = response.headers.get("Content-Type", "")
            if not (is_ok(response.status) and is_html(content_type)):
                logger.warning(
                    "rewrite failed: GET %s %s %s", url, response.status, content_type
                )
                return entry
            logger.info("rewriting %s", path)
            rewriter = capturing_rewriter(origins.rewrite, collector)
            entry.html = await rewriter.transform_to_text(
                response.content.iter_chunked(CHUNK_SIZE),
                pick_encoding(response.charset),
            )
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.error("Error fetching %s: %s", url, exc)
    except Exception:  # pylint: disable=broad-except
        logger.exception("Error rewriting %s", path)
    return entry


async def iter_capture_document(
    session: aiohttp.ClientSession,
    paths: Sequence[str],
    origins: Origins,
    typed_resources: bool = False,
) -> AsyncIterator[str]:
    """Yield the capture document as JSON text, one page entry at a time.

    Paths are fetched strictly in order. An unexpected error stops the
    remaining paths but the document is still closed with whatever
    resources and pages were collected so far.
    """
    collector = CaptureCollector(origins.rewrite)
    yield '{"html":[\n'
    current = None
    try:
        for index, path in enumerate(paths):
            current = path
            entry = await capture_path(session, path, origins, collector)
            yield (",\n" if index else "") + _dumps(entry.to_dict())
    except Exception:  # pylint: disable=broad-except
        logger.exception("Error rewriting %s; closing capture early", current)
    yield "\n]"
    yield ',\n"resources":\n' + _dumps(collector.resource_items(typed_resources))
    yield ',\n"pages":\n' + _dumps(collector.pages)
    yield "\n}\n"


async def stream_capture(response: web.StreamResponse, chunks: AsyncIterator[str]) -> None:
    """Pump ``chunks`` through a bounded channel into a prepared response.

    The producer runs as its own task so a slow client only applies
    backpressure. If the client disconnects the producer is cancelled and
    the document is left truncated.
    """
    channel: asyncio.Queue = asyncio.Queue(maxsize=CHANNEL_SIZE)

    async def produce() -> None:
        try:
            async for chunk in chunks:
                await channel.put(chunk)
        except Exception:  # pylint: disable=broad-except
            logger.exception("Capture producer failed")
        await channel.put(_DONE)

    producer = asyncio.create_task(produce())
    try:
        while True:
            chunk = await channel.get()
            if chunk is _DONE:
                break
            await response.write(chunk.encode("utf-8"))
        await response.write_eof()
    except ConnectionResetError:
        logger.warning("Client disconnected; capture stopped")
    finally:
        if not producer.done():
            producer.cancel()
        await asyncio.gather(producer, return_exceptions=True)


async def run_capture(
    paths: Sequence[str],
    origins: Origins,
    session: aiohttp.ClientSession,
    typed_resources: bool = False,
) -> str:
    """Run a whole batch capture in memory and return the JSON document."""
    parts: List[str] = []
    async for chunk in iter_capture_document(session, paths, origins, typed_resources):
        parts.append(chunk)
    return "".join(parts)
