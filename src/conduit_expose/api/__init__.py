"""HTTP API module - FastAPI application exposing the snapshot."""

from __future__ import annotations

from conduit_expose.api.app import create_app, is_authorized

__all__ = ["create_app", "is_authorized"]
