"""
MongoDB utility helpers for the metadata collaborator.
"""

from typing import Optional

from pymongo import MongoClient

from registry_pruner.config_manager import ConfigManager, config_manager


def get_mongo_client(config: Optional[ConfigManager] = None) -> MongoClient:
    """Return a MongoClient using the centralized connection string.

    Every call is bounded by the configured metadata timeout so that an
    unreachable server fails the run instead of blocking it.
    """
    config = config or config_manager
    timeout_ms = config.get_metadata_timeout() * 1000
    return MongoClient(
        config.get_mongo_connection_string(),
        tz_aware=True,
        serverSelectionTimeoutMS=timeout_ms,
        connectTimeoutMS=timeout_ms,
        socketTimeoutMS=timeout_ms,
    )


def get_db(client: MongoClient, config: Optional[ConfigManager] = None):
    """Return the configured database handle."""
    config = config or config_manager
    return client[config.get_mongo_db()]
