"""Rewrite handlers that strip the tracked origin and feed the collector."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence, Tuple

from .collector import CaptureCollector
from .rewriter import Element, ElementHandler, HtmlRewriter
from .utils import resolve_path, strip_origin

logger = logging.getLogger("mirror_proxy.handlers")

# Metadata that identifies the source system; dropped rather than rewritten.
REMOVED_ELEMENTS = (
    'meta[name="generator"]',
    'link[rel="alternate"]',
    'link[rel="canonical"]',
    'link[rel="shortlink"]',
    'link[rel="EditURI"]',
    'link[rel="profile"]',
    'link[rel="https://api.w.org/"]',
)

SRCSET_ATTRS = frozenset({"srcset", "data-srcset"})


class OriginStripper(ElementHandler):
    """Shared origin and collector plumbing for the concrete handlers."""

    def __init__(self, origin: str, collector: Optional[CaptureCollector] = None) -> None:
        self.origin = origin
        self.collector = collector

    def rewrite(self, value: str) -> str:
        return strip_origin(value, self.origin)

    def capture(self, value: str, attr: str, kind: Optional[str]) -> None:
        if self.collector is None:
            return
        if attr in SRCSET_ATTRS:
            self.collector.add_srcset(value)
        else:
            self.collector.add(value, kind)


class AttributeRewriter(OriginStripper):
    """Strip the origin from a fixed set of attributes, optionally capturing them.

    ``attrs`` is a sequence of ``(attribute, kind)`` pairs; a ``kind`` of
    ``None`` means the attribute is rewritten but never captured.
    """

    def __init__(
        self,
        origin: str,
        attrs: Sequence[Tuple[str, Optional[str]]],
        collector: Optional[CaptureCollector] = None,
    ) -> None:
        super().__init__(origin, collector)
        self.attrs = list(attrs)

    def element(self, el: Element) -> None:
        for attr, kind in self.attrs:
            value = el.get_attribute(attr)
            if not value:
                continue
            if kind is not None:
                self.capture(value, attr, kind)
            el.set_attribute(attr, self.rewrite(value))

    def __repr__(self) -> str:
        names = ",".join(attr for attr, _ in self.attrs)
        return f"AttributeRewriter({names})"


class AnchorRewriter(OriginStripper):
    """Record same-origin anchor targets as pages and strip their origin.

    Cross-origin and malformed hrefs are left untouched.
    """

    def element(self, el: Element) -> None:
        href = el.get_attribute("href")
        if not href:
            return
        try:
            resolved = resolve_path(href, self.origin)
        except ValueError:
            logger.warning("Invalid URL: %s", href)
            return
        if resolved is None or resolved[0] != self.origin:
            return
        if self.collector is not None:
            self.collector.add_page(href)
        el.set_attribute("href", self.rewrite(href))


class ScriptTextRewriter(OriginStripper):
    """Strip the origin from inline script bodies, including ``\\/``-escaped forms."""

    handles_text = True

    def text(self, content: str) -> str:
        return self.rewrite(content)


class RemoveElement(ElementHandler):
    def element(self, el: Element) -> None:
        logger.debug("Removing %s", el.raw)
        el.remove()


def capturing_rewriter(
    origin: str,
    collector: Optional[CaptureCollector] = None,
    removed: Iterable[str] = REMOVED_ELEMENTS,
) -> HtmlRewriter:
    """Build the rewriter that strips ``origin`` and records what a mirror needs.

    Selectors are kept specific so that at most one handler touches any
    given attribute; removal runs first so dropped elements see no other
    handler.
    """
    return (
        HtmlRewriter()
        .on(", ".join(removed), RemoveElement())
        .on("a[href]", AnchorRewriter(origin, collector))
        .on(
            "img, source",
            AttributeRewriter(
                origin,
                [("src", "image"), ("data-src", "image"), ("srcset", "srcset"), ("data-srcset", "srcset")],
                collector,
            ),
        )
        .on("video, audio", AttributeRewriter(origin, [("src", "media"), ("poster", "image")], collector))
        .on("script[src]", AttributeRewriter(origin, [("src", "script")], collector))
        .on("script:not([src])", ScriptTextRewriter(origin, collector))
        .on("form[action]", AttributeRewriter(origin, [("action", None)], collector))
        .on("div[data-settings]", AttributeRewriter(origin, [("data-settings", None)], collector))
        .on('link[rel~="stylesheet"][href]', AttributeRewriter(origin, [("href", "style")], collector))
        .on(
            'link[rel*="icon"][href]:not([rel~="stylesheet"])',
            AttributeRewriter(origin, [("href", "icon")], collector),
        )
        .on(
            'meta[name="msapplication-TileImage"][content]',
            AttributeRewriter(origin, [("content", "image")], collector),
        )
    )
