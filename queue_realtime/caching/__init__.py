"""Cached queue listings and their invalidation."""

from .query_invalidation import INVALIDATION_MAP, InMemoryQueryCache, QueryInvalidationBridge, QueryKey

__all__ = ["INVALIDATION_MAP", "InMemoryQueryCache", "QueryInvalidationBridge", "QueryKey"]
