"""Rewriting reverse proxy that captures a live site and replays it as static files."""

__version__ = "0.1.0"
