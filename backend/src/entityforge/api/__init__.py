"""HTTP API."""

from entityforge.api.app import create_app, get_user

__all__ = ["create_app", "get_user"]
