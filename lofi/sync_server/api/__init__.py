"""
HTTP surface of the Lofi sync server (FastAPI).
"""

from .app import create_app, status_for
from .routes import router

__all__ = ["create_app", "router", "status_for"]
