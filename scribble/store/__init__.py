"""Local persistence for Scribble.

Provides the durable key/value store that holds the consolidated task
list record and the sync bookkeeping scalars.
"""

from .kv_store import KeyValueStore

__all__ = ["KeyValueStore"]
