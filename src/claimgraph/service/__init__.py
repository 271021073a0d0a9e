"""HTTP surface over the statement store."""

from .app import create_app

__all__ = ["create_app"]
