"""Route modules exposed by the API package."""

from . import callbacks, metrics, ping, tickets

__all__ = ["callbacks", "metrics", "ping", "tickets"]
