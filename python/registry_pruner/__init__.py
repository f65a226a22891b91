"""Image registry pruner.

Computes which images, layers and config blobs are no longer reachable under a
retention policy and removes them from a shared, content-addressed blob store.
"""

__version__ = "0.1.0"
