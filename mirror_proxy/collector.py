"""Accumulates same-origin resources and pages seen during a rewrite pass."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .models import ResourceItem, ResourceRef
from .utils import resolve_path

logger = logging.getLogger("mirror_proxy.collector")


class CaptureCollector:
    """Deduplicated resource and page paths for one tracked origin.

    Keys are the normalized path+query, so ``/a.png``, ``a.png`` and
    ``https://origin/a.png#top`` all land on the same entry. Insertion
    order is preserved; the first kind recorded for a path wins.
    """

    def __init__(self, origin: str) -> None:
        self.origin = origin
        self._resources: Dict[str, ResourceRef] = {}
        self._pages: Dict[str, None] = {}

    def _normalize(self, url: str) -> Optional[str]:
        try:
            resolved = resolve_path(url, self.origin)
        except ValueError:
            logger.warning("Invalid URL: %s", url)
            return None
        if resolved is None:
            return None
        origin, path = resolved
        if origin != self.origin:
            return None
        return path

    def add(self, url: str, kind: Optional[str] = None) -> Optional[str]:
        """Record a resource URL; returns the stored key or ``None`` if ignored."""
        path = self._normalize(url)
        if path is not None and path not in self._resources:
            self._resources[path] = ResourceRef(path, kind)
        return path

    def add_srcset(self, value: str, kind: Optional[str] = "srcset") -> None:
        """Record every candidate URL of a ``srcset`` value, dropping descriptors."""
        for candidate in value.split(","):
            tokens = candidate.split()
            if tokens:
                self.add(tokens[0], kind)

    def add_page(self, url: str) -> Optional[str]:
        """Record a linked page; returns the stored key or ``None`` if ignored."""
        path = self._normalize(url)
        if path is not None:
            self._pages.setdefault(path, None)
        return path

    @property
    def resources(self) -> List[str]:
        return list(self._resources)

    @property
    def pages(self) -> List[str]:
        return list(self._pages)

    def resource_items(self, typed: bool = False) -> List[ResourceItem]:
        return [ref.to_item(typed) for ref in self._resources.values()]
