import pytest

from mirror_proxy.collector import CaptureCollector
from mirror_proxy.handlers import AttributeRewriter, RemoveElement, capturing_rewriter
from mirror_proxy.rewriter import Element, ElementHandler, HandlerOverlapError, HtmlRewriter

ORIGIN = "https://example.com"


async def _chunks(*parts):
    for part in parts:
        yield part


def rewrite(markup, collector=None):
    return capturing_rewriter(ORIGIN, collector).transform_text(markup)


def test_untouched_markup_is_relayed_verbatim():
    markup = (
        "<!DOCTYPE html>\n<html lang='en'><head><meta charset=\"utf-8\"><!-- note --></head>"
        '<body class="home page"><p>Fish &amp; chips &copy; &#169; 2024</p><br/>'
        "<a href='https://elsewhere.org/x'>out</a></body></html>\n"
    )
    assert HtmlRewriter().transform_text(markup) == markup
    assert rewrite(markup) == markup


def test_image_attributes_are_rewritten_and_captured():
    collector = CaptureCollector(ORIGIN)
    out = rewrite(
        '<img src="https://example.com/a.png" '
        'srcset="https://example.com/a.png 1x, https://example.com/b.png 2x" alt="logo">',
        collector,
    )
    assert out == '<img src="/a.png" srcset="/a.png 1x, /b.png 2x" alt="logo">'
    assert collector.resources == ["/a.png", "/b.png"]


def test_lazy_loaded_and_media_sources_are_captured():
    collector = CaptureCollector(ORIGIN)
    out = rewrite(
        '<picture><source data-srcset="https://example.com/s.webp 1x"></picture>'
        '<img data-src="/lazy.jpg">'
        '<video poster="https://example.com/p.jpg" src="https://example.com/v.mp4"></video>',
        collector,
    )
    assert "https://example.com" not in out
    assert collector.resources == ["/s.webp", "/lazy.jpg", "/v.mp4", "/p.jpg"]


def test_escaped_json_attributes_are_rewritten_without_capture():
    collector = CaptureCollector(ORIGIN)
    out = rewrite(
        '<div data-settings="{&quot;url&quot;:&quot;https:\\/\\/example.com\\/x.png&quot;}"></div>',
        collector,
    )
    assert out == '<div data-settings="{&quot;url&quot;:&quot;\\/x.png&quot;}"></div>'
    assert collector.resources == []


def test_inline_scripts_lose_both_origin_forms():
    out = rewrite(
        '<script>var c = {"ajaxurl":"https:\\/\\/example.com\\/wp-admin\\/admin-ajax.php",'
        '"home":"https://example.com/"};</script>'
    )
    assert out == '<script>var c = {"ajaxurl":"\\/wp-admin\\/admin-ajax.php","home":"/"};</script>'


def test_script_src_and_stylesheets_are_captured():
    collector = CaptureCollector(ORIGIN)
    out = rewrite(
        '<link rel="stylesheet" href="https://example.com/s.css?ver=2">'
        '<link rel="icon" href="/favicon.ico">'
        '<meta name="msapplication-TileImage" content="https://example.com/tile.png">'
        '<script src="https://example.com/app.js?ver=5e58" id="app-js"></script>'
        '<form action="https://example.com/search"></form>',
        collector,
    )
    assert out == (
        '<link rel="stylesheet" href="/s.css?ver=2">'
        '<link rel="icon" href="/favicon.ico">'
        '<meta name="msapplication-TileImage" content="/tile.png">'
        '<script src="/app.js?ver=5e58" id="app-js"></script>'
        '<form action="/search"></form>'
    )
    assert collector.resources == ["/s.css?ver=2", "/favicon.ico", "/tile.png", "/app.js?ver=5e58"]


def test_identity_metadata_is_removed():
    out = rewrite(
        '<head><meta name="generator" content="WordPress 6.5">'
        '<link rel="canonical" href="https://example.com/">'
        '<link rel="alternate" type="application/rss+xml" href="https://example.com/feed/">'
        '<link rel="shortlink" href="https://example.com/?p=1">'
        '<link rel="https://api.w.org/" href="https://example.com/wp-json/">'
        '<title>Home</title></head>'
    )
    assert out == "<head><title>Home</title></head>"


def test_same_origin_anchors_become_pages():
    collector = CaptureCollector(ORIGIN)
    out = rewrite(
        '<a href="https://example.com/about#team">About</a>'
        '<a href="https://elsewhere.org/x">X</a>'
        '<a href="/contact?x=1">C</a>'
        '<img src="https://example.com/a.png">',
        collector,
    )
    assert out == (
        '<a href="/about#team">About</a>'
        '<a href="https://elsewhere.org/x">X</a>'
        '<a href="/contact?x=1">C</a>'
        '<img src="/a.png">'
    )
    assert collector.pages == ["/about", "/contact?x=1"]
    assert collector.resources == ["/a.png"]


def test_rewriting_is_idempotent():
    markup = (
        '<a href="https://example.com/a">a</a><img src="https://example.com/i.png" alt="x &amp; y">'
        '<script>var u = "https:\\/\\/example.com\\/x";</script>'
    )
    once = rewrite(markup)
    assert "example.com" not in once
    assert rewrite(once) == once


def test_removing_a_container_drops_its_subtree():
    rewriter = HtmlRewriter().on("div.ad", RemoveElement())
    out = rewriter.transform_text('<div class="ad"><div>nested</div><img src="x"></div><p>keep</p>')
    assert out == "<p>keep</p>"


def test_removed_elements_see_no_further_handlers():
    seen = []

    class Recorder(ElementHandler):
        def element(self, el: Element) -> None:
            seen.append(el.tag)

    rewriter = HtmlRewriter().on("link[rel=canonical]", RemoveElement()).on("link", Recorder())
    assert rewriter.transform_text('<link rel="canonical" href="/"><link rel="icon" href="/i">') == (
        '<link rel="icon" href="/i">'
    )
    assert seen == ["link"]


def test_overlapping_handlers_on_one_attribute_are_rejected():
    rewriter = (
        HtmlRewriter()
        .on("img", AttributeRewriter(ORIGIN, [("src", None)]))
        .on("img[src]", AttributeRewriter(ORIGIN, [("src", None)]))
    )
    with pytest.raises(HandlerOverlapError):
        rewriter.transform_text('<img src="https://example.com/a.png">')


@pytest.mark.parametrize("selector", ["*", "div > *", "a, *[href]"])
def test_universal_selectors_are_rejected(selector):
    with pytest.raises(ValueError):
        HtmlRewriter().on(selector, RemoveElement())


async def test_stream_split_across_chunks():
    collector = CaptureCollector(ORIGIN)
    rewriter = capturing_rewriter(ORIGIN, collector)
    chunks = _chunks(
        b'<p>caf\xc3',
        b'\xa9</p><img src="https://exam',
        b'ple.com/a.png"><scr',
        b'ipt>var u="https://exa',
        b'mple.com/x";</script>',
    )
    output = b"".join([chunk async for chunk in rewriter.transform(chunks)])
    assert output.decode("utf-8") == '<p>café</p><img src="/a.png"><script>var u="/x";</script>'
    assert collector.resources == ["/a.png"]


async def test_stream_reencodes_with_source_charset():
    rewriter = capturing_rewriter(ORIGIN)
    chunks = _chunks('<p>café</p><a href="https://example.com/x">x</a>'.encode("latin-1"))
    output = await rewriter.transform_to_text(chunks, "latin-1")
    assert output == '<p>café</p><a href="/x">x</a>'
    raw = b"".join(
        [chunk async for chunk in capturing_rewriter(ORIGIN).transform(_chunks(b"<p>caf\xe9</p>"), "latin-1")]
    )
    assert raw == b"<p>caf\xe9</p>"


@pytest.mark.parametrize(
    "markup",
    [
        '<p>a</p><![ 1 foo <img src="/x.png"><p>tail</p>',
        "<![foo bar]><p>b</p>",
        "<![if !IE]><p>c</p><![endif]>",
        "<![CDATA[x < y]]>",
    ],
)
def test_marked_sections_are_relayed(markup):
    assert rewrite(markup) == markup


def test_bogus_marked_section_hides_the_markup_it_swallows():
    collector = CaptureCollector(ORIGIN)
    markup = '<![ 1 foo <img src="https://example.com/x.png"><img src="https://example.com/y.png">'
    out = rewrite(markup, collector)
    assert out == '<![ 1 foo <img src="https://example.com/x.png"><img src="/y.png">'
    assert collector.resources == ["/y.png"]


async def test_bogus_marked_section_split_across_chunks():
    rewriter = capturing_rewriter(ORIGIN)
    output = await rewriter.transform_to_text(_chunks(b"<p>a</p><![ 1 fo", b"o <b>x</b>"))
    assert output == "<p>a</p><![ 1 foo <b>x</b>"


def test_end_tags_and_bogus_comments_keep_their_source_text():
    markup = "<DIV><P>x</P ></DIV><!x><? pi ?></ ><SCRIPT>1</SCRIPT><!-- c -->"
    assert rewrite(markup) == markup


def test_textarea_and_title_content_is_text():
    collector = CaptureCollector(ORIGIN)
    markup = (
        '<title>A <b>bold</b> title &amp; more</title>'
        '<textarea><a href="https://example.com/x">x</a><img src="https://example.com/i.png"></textarea>'
        '<a href="https://example.com/y">y</a>'
    )
    out = rewrite(markup, collector)
    assert out == markup.replace('<a href="https://example.com/y">', '<a href="/y">')
    assert collector.pages == ["/y"]
    assert collector.resources == []


def test_attribute_edits_are_credited_to_the_bound_handler():
    first, second = ElementHandler(), ElementHandler()
    el = Element("img", [("src", "a.png")], '<img src="a.png">')
    el.bind(first)
    el.set_attribute("src", "b.png")
    el.set_attribute("src", "c.png")
    el.bind(second)
    with pytest.raises(HandlerOverlapError):
        el.set_attribute("src", "d.png")
    assert el.get_attribute("src") == "c.png"
