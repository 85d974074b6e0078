# src/chatcore/persistence/__init__.py
"""
Persistence bridges for ChatCore.

The bridge is the asynchronous, authoritative store behind the in-process
caches. Two implementations ship with the package: an in-memory bridge and a
JSON-file bridge built on aiofiles.
"""

from .base import BasePersistenceBridge
from .json_bridge import JsonPersistenceBridge
from .memory import InMemoryPersistenceBridge

__all__ = ["BasePersistenceBridge", "InMemoryPersistenceBridge", "JsonPersistenceBridge"]
