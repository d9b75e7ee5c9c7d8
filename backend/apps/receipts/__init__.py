"""HTTP adapter for NFC-e numbering, submission and session-cache operations."""

from .api import router

__all__ = ["router"]
