"""Persistence layer."""

from ossstats.storage.cache import CacheStore, StalenessPolicy

__all__ = ["CacheStore", "StalenessPolicy"]
