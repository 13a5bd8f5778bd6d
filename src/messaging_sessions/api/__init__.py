"""HTTP surface for the session manager."""

from messaging_sessions.api.app import create_app

__all__ = ["create_app"]
