"""Process-local record of resources fetched through the pass-through proxy."""

from __future__ import annotations

import threading
from typing import Dict, List


class ProxyCaptureTracker:
    """Ordered, deduplicated set of path+query strings seen by the gateway.

    State lives only in this process. Deployments that run several
    server processes get one independent tracker per process.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._paths: Dict[str, None] = {}

    def add(self, path: str) -> None:
        with self._lock:
            self._paths.setdefault(path, None)

    def reset(self) -> None:
        with self._lock:
            self._paths = {}

    def read(self) -> List[str]:
        with self._lock:
            return list(self._paths)

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)
