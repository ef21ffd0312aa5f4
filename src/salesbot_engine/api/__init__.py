"""HTTP API for the sales-bot flow engine"""

from .app import create_app, create_default_app

__all__ = ["create_app", "create_default_app"]
