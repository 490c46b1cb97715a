"""HTTP API exposing a peer's reconciliation state.

Built with FastAPI; requires the ``api`` extra.
"""

from .app import create_app

__all__ = ["create_app"]
