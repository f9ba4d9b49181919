"""Unified content feed: synchronization, normalization and editorial operations."""
