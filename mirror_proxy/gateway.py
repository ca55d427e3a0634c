"""aiohttp application: rewriting proxy, batch capture, and tracker endpoints."""

from __future__ import annotations

import asyncio
import json
import logging
from functools import partial
from typing import AsyncIterator, Optional
from urllib.parse import urlencode

import aiohttp
from aiohttp import web
from multidict import CIMultiDict, CIMultiDictProxy

from .config import (
    CONTROL_PARAMS,
    RESOURCE_TYPES_PARAM,
    REWRITE_PATHS_PARAM,
    Origins,
    ProxyConfig,
    is_truthy,
    resolve_origins,
    split_paths,
)
from .crawler import CHUNK_SIZE, iter_capture_document, stream_capture
from .handlers import capturing_rewriter
from .tracker import ProxyCaptureTracker
from .utils import is_html, is_ok, pick_encoding

logger = logging.getLogger("mirror_proxy.gateway")

CONFIG_KEY = web.AppKey("config", ProxyConfig)
TRACKER_KEY = web.AppKey("tracker", ProxyCaptureTracker)
SESSION_KEY = web.AppKey("session", aiohttp.ClientSession)

CAPTURE_PREFIXES = ("/html-json", "/rewrite-page")

HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)
# The client session negotiates and undoes compression itself.
REQUEST_HEADER_DENYLIST = HOP_BY_HOP_HEADERS | {"host", "content-length", "accept-encoding"}
RESPONSE_HEADER_DENYLIST = HOP_BY_HOP_HEADERS | {"content-length", "content-encoding"}

_json_dumps = partial(json.dumps, indent=2)


def _filter_headers(headers: CIMultiDictProxy, denylist: frozenset) -> CIMultiDict:
    return CIMultiDict((name, value) for name, value in headers.items() if name.lower() not in denylist)


def forwarded_path(request: web.Request) -> str:
    """Path+query to request upstream, minus the proxy's own control parameters."""
    path = request.rel_url.raw_path
    query = request.rel_url.query
    if any(name in CONTROL_PARAMS for name in query):
        query_string = urlencode(
            [(name, value) for name, value in query.items() if name not in CONTROL_PARAMS]
        )
    else:
        query_string = request.rel_url.raw_query_string
    return f"{path}?{query_string}" if query_string else path


def _request_origins(request: web.Request) -> Origins:
    try:
        origins = resolve_origins(request.app[CONFIG_KEY], request.query)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid origin: {exc}\n") from exc
    if origins is None:
        raise web.HTTPBadRequest(text="Proxy origin is required\n")
    return origins


async def _relay_body(
    request: web.Request,
    response: web.StreamResponse,
    chunks: AsyncIterator[bytes],
    url: str,
) -> web.StreamResponse:
    await response.prepare(request)
    try:
        async for chunk in chunks:
            await response.write(chunk)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        # Headers are already sent; all we can do is end the body early.
        logger.error("Error streaming %s: %s", url, exc)
        return response
    except Exception:  # pylint: disable=broad-except
        logger.exception("Error rewriting %s", url)
    await response.write_eof()
    return response


async def _pass_through(
    request: web.Request, upstream: aiohttp.ClientResponse, url: str
) -> web.StreamResponse:
    headers = _filter_headers(upstream.headers, RESPONSE_HEADER_DENYLIST)
    status = upstream.status
    if request.method == "HEAD" or status in (204, 304) or status < 200:
        return web.Response(status=status, reason=upstream.reason, headers=headers)
    response = web.StreamResponse(status=status, reason=upstream.reason, headers=headers)
    if "Content-Encoding" not in upstream.headers and upstream.content_length is not None:
        response.content_length = upstream.content_length
    return await _relay_body(request, response, upstream.content.iter_chunked(CHUNK_SIZE), url)


async def _rewrite(
    request: web.Request,
    upstream: aiohttp.ClientResponse,
    origins: Origins,
    url: str,
) -> web.StreamResponse:
    content_type = upstream.headers["Content-Type"]
    logger.debug("rewriting %s", url)
    encoding = pick_encoding(upstream.charset)
    rewriter = capturing_rewriter(origins.rewrite)
    response = web.StreamResponse(status=upstream.status, headers={"Content-Type": content_type})
    body = rewriter.transform(upstream.content.iter_chunked(CHUNK_SIZE), encoding)
    return await _relay_body(request, response, body, url)


async def proxy(request: web.Request) -> web.StreamResponse:
    """Forward a request to the source origin, rewriting HTML responses."""
    origins = _request_origins(request)
    path = forwarded_path(request)
    url = origins.source + path
    session = request.app[SESSION_KEY]
    data = await request.read() if request.body_exists else None
    try:
        async with session.request(
            request.method,
            url,
            headers=_filter_headers(request.headers, REQUEST_HEADER_DENYLIST),
            data=data,
        ) as upstream:
            content_type = upstream.headers.get("Content-Type", "")
            if is_ok(upstream.status) and is_html(content_type):
                return await _rewrite(request, upstream, origins, url)
            logger.info("PROXY: %s %s %s %s", request.method, url, upstream.status, content_type)
            if is_ok(upstream.status) or upstream.status == 304:
                request.app[TRACKER_KEY].add(path)
            return await _pass_through(request, upstream, url)
    except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
        logger.error("Error fetching %s: %s", url, exc)
        return web.Response(status=500, text=str(exc) or type(exc).__name__)


async def capture_pages(request: web.Request) -> web.StreamResponse:
    """Stream a capture document for the requested path list."""
    origins = _request_origins(request)
    config = request.app[CONFIG_KEY]
    raw_path = request.rel_url.raw_path
    prefix = next(p for p in CAPTURE_PREFIXES if raw_path.startswith(p + "/"))
    default_path = raw_path[len(prefix):]
    paths = split_paths(request.query.get(REWRITE_PATHS_PARAM)) or config.rewrite_paths or [default_path]
    typed = is_truthy(request.query.get(RESOURCE_TYPES_PARAM)) or config.typed_resources

    logger.info("Capturing %d path(s) from %s", len(paths), origins.source)
    response = web.StreamResponse(headers={"Content-Type": "application/json"})
    await response.prepare(request)
    chunks = iter_capture_document(request.app[SESSION_KEY], paths, origins, typed)
    await stream_capture(response, chunks)
    return response


async def reset_proxy_capture(request: web.Request) -> web.Response:
    request.app[TRACKER_KEY].reset()
    logger.info("Proxy capture reset")
    return web.Response(text="Proxy capture mode reset\n")


async def proxy_capture(request: web.Request) -> web.Response:
    resources = request.app[TRACKER_KEY].read()
    return web.json_response({"resources": resources}, dumps=_json_dumps)


async def _client_session(app: web.Application) -> AsyncIterator[None]:
    timeout = aiohttp.ClientTimeout(total=app[CONFIG_KEY].request_timeout)
    # Upstream cookies belong to whichever client sent them, never the proxy.
    async with aiohttp.ClientSession(timeout=timeout, cookie_jar=aiohttp.DummyCookieJar()) as session:
        app[SESSION_KEY] = session
        yield


def create_app(config: ProxyConfig, tracker: Optional[ProxyCaptureTracker] = None) -> web.Application:
    """Wire the proxy routes around one config and one process-local tracker."""
    app = web.Application()
    app[CONFIG_KEY] = config
    app[TRACKER_KEY] = tracker if tracker is not None else ProxyCaptureTracker()
    app.cleanup_ctx.append(_client_session)

    app.router.add_get("/reset-proxy-capture", reset_proxy_capture)
    app.router.add_get("/proxy-capture", proxy_capture)
    for prefix in CAPTURE_PREFIXES:
        app.router.add_get(prefix + "/{tail:.*}", capture_pages)
    app.router.add_route("*", "/{tail:.*}", proxy)
    return app
