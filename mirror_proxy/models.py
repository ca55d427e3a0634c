"""Data models shared by the capture endpoint and the materializer."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

ResourceItem = Union[str, Dict[str, str]]


@dataclass
class HtmlEntry:
    """One crawled path; ``html`` is ``None`` when the path was not capturable."""

    path: str
    html: Optional[str] = None

    def to_dict(self) -> Dict[str, str]:
        data = {"path": self.path}
        if self.html is not None:
            data["html"] = self.html
        return data


@dataclass
class ResourceRef:
    """Normalized same-origin resource path with an optional inferred kind."""

    path: str
    kind: Optional[str] = None

    def to_item(self, typed: bool = False) -> ResourceItem:
        if typed:
            return {"url": self.path, "type": self.kind or "resource"}
        return self.path


@dataclass
class CaptureDocument:
    """Pages, resources, and linked pages recorded by one batch capture."""

    html: List[HtmlEntry] = field(default_factory=list)
    resources: List[str] = field(default_factory=list)
    pages: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CaptureDocument":
        """Build a document from parsed JSON.

        Accepts both flat resource strings and ``{"url", "type"}`` objects,
        and tolerates missing sections (a ``/proxy-capture`` snapshot only
        carries ``resources``).
        """
        entries = []
        for item in data.get("html") or []:
            if not isinstance(item, Mapping) or not isinstance(item.get("path"), str):
                raise ValueError(f"Invalid html entry: {item!r}")
            entries.append(HtmlEntry(path=item["path"], html=item.get("html")))

        resources = []
        for item in data.get("resources") or []:
            if isinstance(item, Mapping):
                item = item.get("url")
            if not isinstance(item, str):
                raise ValueError(f"Invalid resource entry: {item!r}")
            resources.append(item)

        return cls(
            html=entries,
            resources=resources,
            pages=[page for page in data.get("pages") or [] if isinstance(page, str)],
        )
