"""Peer-facing HTTP endpoints for log sync and repositories."""

from .app import create_app

__all__ = ["create_app"]
