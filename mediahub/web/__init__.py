"""Web interface for MediaHub."""

from .server import create_app

__all__ = ["create_app"]
