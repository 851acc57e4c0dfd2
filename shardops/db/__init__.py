"""MySQL instance model."""

from .base import DB

__all__ = ["DB"]
