"""Environment cache."""

from checkgate.cache.store import CacheEntry, CacheStore, cache_key

__all__ = ["CacheEntry", "CacheStore", "cache_key"]
