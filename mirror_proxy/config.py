"""Configuration objects and constants for the mirror proxy."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional

from .utils import normalize_origin

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000
DEFAULT_RESOURCE_ORIGIN = "http://localhost:3001"

# Query parameters that steer the proxy and are never forwarded upstream.
PROXY_ORIGIN_PARAM = "proxy-origin"
REWRITE_ORIGIN_PARAM = "rewrite-origin"
REWRITE_PATHS_PARAM = "rewrite-paths"
RESOURCE_TYPES_PARAM = "resource-types"
CONTROL_PARAMS = frozenset(
    {PROXY_ORIGIN_PARAM, REWRITE_ORIGIN_PARAM, REWRITE_PATHS_PARAM, RESOURCE_TYPES_PARAM}
)

_TRUTHY = {"1", "true", "yes", "on"}


def split_paths(value: Optional[str]) -> List[str]:
    """Split a comma-separated path list, dropping blanks."""
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def is_truthy(value: Optional[str]) -> bool:
    return bool(value) and value.strip().lower() in _TRUTHY


@dataclass
class ProxyConfig:
    """Settings that control the proxy gateway and batch capture."""

    source_origin: Optional[str] = None
    rewrite_origin: Optional[str] = None
    rewrite_paths: List[str] = field(default_factory=list)
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    request_timeout: float = 30.0
    typed_resources: bool = False

    def __post_init__(self) -> None:
        if self.source_origin:
            self.source_origin = normalize_origin(self.source_origin)
        if self.rewrite_origin:
            self.rewrite_origin = normalize_origin(self.rewrite_origin)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProxyConfig":
        env = os.environ if environ is None else environ
        port = env.get("PORT")
        return cls(
            source_origin=env.get("PROXY_ORIGIN") or None,
            rewrite_origin=env.get("REWRITE_ORIGIN") or None,
            rewrite_paths=split_paths(env.get("REWRITE_PATHS")),
            host=env.get("HOST") or DEFAULT_HOST,
            port=int(port) if port else DEFAULT_PORT,
        )


@dataclass
class Origins:
    """Source and rewrite origins resolved for a single request."""

    source: str
    rewrite: str


def resolve_origins(config: ProxyConfig, query: Mapping[str, str]) -> Optional[Origins]:
    """Pick the origins for one request; query overrides win over configuration.

    Returns ``None`` when no source origin is available. An unparseable
    override raises ``ValueError``.
    """
    source = query.get(PROXY_ORIGIN_PARAM) or config.source_origin
    if not source:
        return None
    source = normalize_origin(source)
    rewrite = query.get(REWRITE_ORIGIN_PARAM) or config.rewrite_origin or source
    return Origins(source=source, rewrite=normalize_origin(rewrite))


@dataclass
class MaterializeConfig:
    """Settings for turning a capture document into a static file tree."""

    capture_path: Path
    output_root: Path = Path("public")
    resource_origin: str = DEFAULT_RESOURCE_ORIGIN
    timeout: float = 30.0

    def __post_init__(self) -> None:
        self.resource_origin = normalize_origin(self.resource_origin)
