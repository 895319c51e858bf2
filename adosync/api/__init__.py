"""API routes"""

from adosync.api import connections, mappings, sync

__all__ = ["connections", "mappings", "sync"]
