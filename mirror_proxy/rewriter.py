"""Single-pass streaming HTML rewriting with selector-keyed element handlers.

Tokens come from ``html.parser.HTMLParser`` (the backend behind
BeautifulSoup's ``"html.parser"`` builder) and selectors are matched with
soupsieve, the engine behind ``BeautifulSoup.select``. Only the current
start tag is materialized as a ``bs4`` tag, so memory stays flat no matter
how large the document is. Untouched markup is relayed verbatim.
"""

from __future__ import annotations

import codecs
import html
import logging
import re
from html.parser import HTMLParser
from typing import AsyncIterable, AsyncIterator, Dict, List, Optional, Tuple

import soupsieve
from bs4 import BeautifulSoup, Tag

logger = logging.getLogger("mirror_proxy.rewriter")

VOID_ELEMENTS = frozenset(
    {
        "area", "base", "br", "col", "embed", "hr", "img", "input",
        "link", "meta", "param", "source", "track", "wbr",
    }
)

RCDATA_ELEMENTS = ("textarea", "title")

_UNIVERSAL_SELECTOR = re.compile(r"(?:^|[\s,>+~(])\*")
_TAG_FACTORY = BeautifulSoup("", "html.parser")


class HandlerOverlapError(RuntimeError):
    """Raised when two handlers mutate the same attribute of one element."""


class Element:
    """Mutable view of a start tag handed to element handlers."""

    def __init__(
        self,
        tag: str,
        attrs: List[Tuple[str, Optional[str]]],
        raw: str,
        self_closing: bool = False,
    ) -> None:
        self.tag = tag
        self.raw = raw
        self.self_closing = self_closing
        self.removed = False
        self.modified = False
        self._attrs: Dict[str, Optional[str]] = {}
        for name, value in attrs:
            # First occurrence wins, as in browsers.
            self._attrs.setdefault(name, value)
        self._owners: Dict[str, object] = {}
        self._handler: object = None

    def bind(self, handler: object) -> None:
        """Credit subsequent attribute edits to ``handler`` (``None`` to unbind)."""
        self._handler = handler

    def get_attribute(self, name: str) -> Optional[str]:
        return self._attrs.get(name.lower())

    def set_attribute(self, name: str, value: str) -> None:
        name = name.lower()
        owner = self._owners.setdefault(name, self._handler)
        if owner is not self._handler:
            raise HandlerOverlapError(
                f"<{self.tag} {name}> is already rewritten by {owner!r}"
            )
        self._attrs[name] = value
        self.modified = True

    def remove(self) -> None:
        self.removed = True

    @property
    def is_void(self) -> bool:
        return self.self_closing or self.tag in VOID_ELEMENTS

    def as_tag(self) -> Tag:
        attrs = {name: "" if value is None else value for name, value in self._attrs.items()}
        return _TAG_FACTORY.new_tag(self.tag, attrs=attrs)

    def serialize(self) -> str:
        if not self.modified:
            return self.raw
        parts = [self.tag]
        for name, value in self._attrs.items():
            if value is None:
                parts.append(name)
            else:
                parts.append(f'{name}="{html.escape(value, quote=True)}"')
        closing = " />" if self.self_closing else ">"
        return "<" + " ".join(parts) + closing


class ElementHandler:
    """Base class for rewrite handlers.

    Subclasses override :meth:`element` to inspect or mutate start tags
    and/or :meth:`text` to transform the text inside matched elements.
    """

    handles_text = False

    def element(self, el: Element) -> None:
        pass

    def text(self, content: str) -> str:
        return content

    def __repr__(self) -> str:
        return type(self).__name__


class _Registration:
    def __init__(self, selector: str, handler: ElementHandler) -> None:
        self.selector = selector
        self.handler = handler
        self.compiled = soupsieve.compile(selector)


class HtmlRewriter:
    """Registry of (selector, handler) pairs applied in registration order."""

    def __init__(self) -> None:
        self._registrations: List[_Registration] = []

    def on(self, selector: str, handler: ElementHandler) -> "HtmlRewriter":
        selector = " ".join(selector.split())
        if _UNIVERSAL_SELECTOR.search(selector):
            raise ValueError(f"Universal selectors are not allowed: {selector!r}")
        self._registrations.append(_Registration(selector, handler))
        return self

    def match(self, el: Element) -> List[ElementHandler]:
        tag = el.as_tag()
        return [reg.handler for reg in self._registrations if reg.compiled.match(tag)]

    def session(self) -> "RewriteSession":
        return RewriteSession(self)

    def transform_text(self, markup: str) -> str:
        """Rewrite a complete document held in memory."""
        session = self.session()
        return session.feed(markup) + session.close()

    async def transform_iter(
        self,
        chunks: AsyncIterable[bytes],
        encoding: str = "utf-8",
    ) -> AsyncIterator[str]:
        """Rewrite a byte stream, yielding text as soon as it is ready."""
        decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        session = self.session()
        async for chunk in chunks:
            output = session.feed(decoder.decode(chunk))
            if output:
                yield output
        output = session.feed(decoder.decode(b"", final=True)) + session.close()
        if output:
            yield output

    async def transform(
        self,
        chunks: AsyncIterable[bytes],
        encoding: str = "utf-8",
    ) -> AsyncIterator[bytes]:
        """Rewrite a byte stream chunk by chunk, re-encoding with ``encoding``."""
        async for output in self.transform_iter(chunks, encoding):
            yield output.encode(encoding, errors="xmlcharrefreplace")

    async def transform_to_text(
        self,
        chunks: AsyncIterable[bytes],
        encoding: str = "utf-8",
    ) -> str:
        """Rewrite a byte stream and return the complete document."""
        return "".join([output async for output in self.transform_iter(chunks, encoding)])


class _TextCapture:
    def __init__(self, tag: str, handlers: List[ElementHandler]) -> None:
        self.tag = tag
        self.handlers = handlers
        self.depth = 1
        self.parts: List[str] = []

    def drain(self) -> str:
        content = "".join(self.parts)
        self.parts = []
        if not content:
            return content
        for handler in self.handlers:
            content = handler.text(content)
        return content


class RewriteSession(HTMLParser):
    """One pass over one document; ``feed`` returns the output ready so far."""

    # Raw text elements: their content is never tokenized as markup.
    CDATA_CONTENT_ELEMENTS = tuple(HTMLParser.CDATA_CONTENT_ELEMENTS) + RCDATA_ELEMENTS

    def __init__(self, rewriter: HtmlRewriter) -> None:
        super().__init__(convert_charrefs=False)
        self._rewriter = rewriter
        self._out: List[str] = []
        self._skip_tag: Optional[str] = None
        self._skip_depth = 0
        self._capture: Optional[_TextCapture] = None
        self._endtag_pos: Optional[int] = None

    def feed(self, data: str) -> str:  # type: ignore[override]
        super().feed(data)
        return self._take()

    def close(self) -> str:  # type: ignore[override]
        super().close()
        if self._capture is not None:
            self._out.append(self._capture.drain())
            self._capture = None
        return self._take()

    def _take(self) -> str:
        output = "".join(self._out)
        self._out = []
        return output

    def _emit(self, text: str) -> None:
        if self._skip_tag is not None:
            return
        if self._capture is not None:
            self._out.append(self._capture.drain())
        self._out.append(text)

    def _emit_text(self, text: str) -> None:
        if self._skip_tag is not None:
            return
        if self._capture is not None:
            self._capture.parts.append(text)
        else:
            self._out.append(text)

    def _start(self, tag: str, attrs, self_closing: bool) -> None:
        if self._skip_tag is not None:
            if tag == self._skip_tag and not self_closing:
                self._skip_depth += 1
            return
        if self._capture is not None and tag == self._capture.tag and not self_closing:
            self._capture.depth += 1

        el = Element(tag, attrs, self.get_starttag_text() or "", self_closing)
        text_handlers = []
        for handler in self._rewriter.match(el):
            if el.removed:
                break
            el.bind(handler)
            handler.element(el)
            if handler.handles_text:
                text_handlers.append(handler)
        el.bind(None)

        if el.removed:
            if not el.is_void:
                self._skip_tag = tag
                self._skip_depth = 1
            return
        self._emit(el.serialize())
        if text_handlers and not el.is_void and self._capture is None:
            self._capture = _TextCapture(tag, text_handlers)

    # The stock parser hands end tags and bogus comments over normalized;
    # these overrides keep their source text so it can be relayed as is.

    def parse_endtag(self, i):
        self._endtag_pos = i
        try:
            return super().parse_endtag(i)
        finally:
            self._endtag_pos = None

    def _endtag_text(self, tag: str) -> str:
        start = self._endtag_pos
        if start is not None and self.rawdata.startswith("</", start):
            end = self.rawdata.find(">", start + 2)
            if end != -1:
                return self.rawdata[start:end + 1]
        return f"</{tag}>"

    def parse_bogus_comment(self, i, report=1):
        rawdata = self.rawdata
        end = rawdata.find(">", i + 2)
        if end == -1:
            return -1
        if report:
            self._emit(rawdata[i:end + 1])
        return end + 1

    def parse_marked_section(self, i, report=1):
        # Anything but a well-formed <![CDATA[ or <![if ...]> section is a
        # bogus comment running to the next ">".
        try:
            return super().parse_marked_section(i, report)
        except AssertionError:
            return self.parse_bogus_comment(i, report)

    def handle_starttag(self, tag, attrs):
        self._start(tag, attrs, self_closing=False)

    def handle_startendtag(self, tag, attrs):
        self._start(tag, attrs, self_closing=True)

    def handle_endtag(self, tag):
        if self._skip_tag is not None:
            if tag == self._skip_tag:
                self._skip_depth -= 1
                if self._skip_depth == 0:
                    self._skip_tag = None
            return
        self._emit(self._endtag_text(tag))
        capture = self._capture
        if capture is not None and tag == capture.tag:
            capture.depth -= 1
            if capture.depth == 0:
                self._capture = None

    def handle_data(self, data):
        self._emit_text(data)

    def handle_entityref(self, name):
        self._emit_text(f"&{name};")

    def handle_charref(self, name):
        self._emit_text(f"&#{name};")

    def handle_comment(self, data):
        self._emit(f"<!--{data}-->")

    def handle_decl(self, decl):
        self._emit(f"<!{decl}>")

    def handle_pi(self, data):
        self._emit(f"<?{data}>")

    def unknown_decl(self, data):
        self._emit(f"<![{data}]>")
