import pytest
from aiohttp import web

from mirror_proxy.config import ProxyConfig
from mirror_proxy.gateway import create_app
from mirror_proxy.tracker import ProxyCaptureTracker

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


def _origin(request: web.Request) -> str:
    return str(request.url.origin())


async def home(request: web.Request) -> web.Response:
    origin = _origin(request)
    escaped = origin.replace("/", "\\/")
    body = (
        "<!DOCTYPE html><html><head>"
        '<meta name="generator" content="WordPress 6.5">'
        f'<link rel="canonical" href="{origin}/">'
        f'<link rel="stylesheet" href="{origin}/style.css?ver=1">'
        "</head><body>"
        f'<a href="{origin}/b">B</a>'
        f'<img src="{origin}/img.png" srcset="{origin}/img.png 1x, {origin}/img@2x.png 2x">'
        '<script>var cfg = {"url":"' + escaped + '\\/api"};</script>'
        "</body></html>"
    )
    return web.Response(text=body, content_type="text/html")


async def page_a(request: web.Request) -> web.Response:
    origin = _origin(request)
    body = (
        f'<html><body><a href="{origin}/b">B</a><a href="https://elsewhere.org/">x</a>'
        f'<img src="{origin}/img.png"><script src="/js/app.js?ver=1"></script></body></html>'
    )
    return web.Response(text=body, content_type="text/html")


BROKEN_MARKUP = '<p>a</p><![ 1 foo <img src="/x.png"><p>tail</p><img src="/img.png">'


async def broken_markup(request: web.Request) -> web.Response:
    return web.Response(text=BROKEN_MARKUP, content_type="text/html")


async def boom(request: web.Request) -> web.Response:
    origin = _origin(request)
    body = f'<p>before</p><p class="boom">x</p><img src="{origin}/boom.png">'
    return web.Response(text=body, content_type="text/html")


async def image(request: web.Request) -> web.Response:
    return web.Response(body=PNG_BYTES, content_type="image/png")


async def missing(request: web.Request) -> web.Response:
    return web.Response(status=404, body=b"nope", content_type="image/png")


async def not_modified(request: web.Request) -> web.Response:
    return web.Response(status=304)


async def missing_page(request: web.Request) -> web.Response:
    return web.Response(status=404, text="<h1>Not found</h1>", content_type="text/html")


async def echo(request: web.Request) -> web.Response:
    return web.Response(text=f"{request.method} {request.query_string}", content_type="text/plain")


async def echo_body(request: web.Request) -> web.Response:
    return web.Response(body=await request.read(), content_type="application/octet-stream")


def make_upstream_app() -> web.Application:
    app = web.Application()
    app.router.add_get("/", home)
    app.router.add_get("/a", page_a)
    app.router.add_get("/b", missing_page)
    app.router.add_get("/broken", broken_markup)
    app.router.add_get("/boom", boom)
    app.router.add_get("/img.png", image)
    app.router.add_get("/missing.png", missing)
    app.router.add_get("/style.css", not_modified)
    app.router.add_get("/echo", echo)
    app.router.add_post("/echo", echo_body)
    return app


@pytest.fixture
async def upstream(aiohttp_server):
    return await aiohttp_server(make_upstream_app())


@pytest.fixture
def upstream_origin(upstream) -> str:
    return str(upstream.make_url("/"))


@pytest.fixture
def tracker() -> ProxyCaptureTracker:
    return ProxyCaptureTracker()


@pytest.fixture
async def client(aiohttp_client, upstream_origin, tracker):
    return await aiohttp_client(create_app(ProxyConfig(source_origin=upstream_origin), tracker))
