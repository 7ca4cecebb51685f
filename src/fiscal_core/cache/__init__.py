"""Key/value caches with lazy freshness checks."""

from .store import CacheLookup, CacheStore, FileCacheStore, MemoryCacheStore

__all__ = ["CacheLookup", "CacheStore", "FileCacheStore", "MemoryCacheStore"]
