"""Remote blob store for Scribble.

Serves one JSON blob per sync id over HTTP and merges every write
against the stored copy using the same merge engine as the clients.
"""

from .app import create_app

__all__ = ["create_app"]
