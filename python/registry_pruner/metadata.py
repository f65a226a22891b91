"""
Metadata collaborator backed by MongoDB.

Collections (names configurable):

- image_repositories: {namespace, name, tags: [{name, items: [{image}]}]}
- images: {_id: digest, schema_version, created, size,
           layers: [{digest, size}], config: {digest, size}, externally_imported}
"""

from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional

from pymongo.errors import OperationFailure

from registry_pruner.config_manager import ConfigManager, config_manager
from registry_pruner.error_utils import create_authorization_error
from registry_pruner.logging_utils import get_logger
from registry_pruner.mongo_utils import get_db, get_mongo_client
from registry_pruner.retry_utils import UNAUTHORIZED_CODES

logger = get_logger(__name__)

# Keeps $in queries well below the 16MB BSON document limit
IN_QUERY_CHUNK_SIZE = 500


@contextmanager
def _translate_auth_errors(operation: str):
    try:
        yield
    except OperationFailure as e:
        if e.code in UNAUTHORIZED_CODES:
            raise create_authorization_error(operation, e) from e
        raise


class MetadataClient:
    """Read and delete image metadata records."""

    def __init__(self, db=None, config: Optional[ConfigManager] = None):
        self.config = config or config_manager
        self._client = None
        if db is None:
            self._client = get_mongo_client(self.config)
            db = get_db(self._client, self.config)
        self.db = db
        self.images = db[self.config.get_images_collection()]
        self.repositories = db[self.config.get_repositories_collection()]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def list_repositories(self) -> List[Dict]:
        with _translate_auth_errors("list image repositories"):
            return list(self.repositories.find({}, {"namespace": 1, "name": 1, "tags": 1}))

    def list_image_digests(self) -> List[str]:
        with _translate_auth_errors("list images"):
            return [doc["_id"] for doc in self.images.find({}, {"_id": 1})]

    def get_images(self, digests: Iterable[str]) -> List[Dict]:
        digests = sorted(set(digests))
        docs = []
        with _translate_auth_errors("read images"):
            for start in range(0, len(digests), IN_QUERY_CHUNK_SIZE):
                chunk = digests[start : start + IN_QUERY_CHUNK_SIZE]
                docs.extend(self.images.find({"_id": {"$in": chunk}}))
        return docs

    def delete_image(self, digest: str) -> bool:
        """Delete an image record and drop it from every tag history.

        Returns:
            True if the record was deleted, False if it was already absent
        """
        with _translate_auth_errors("delete images"):
            result = self.images.delete_one({"_id": digest})
            self.repositories.update_many(
                {"tags.items.image": digest},
                {"$pull": {"tags.$[].items": {"image": digest}}},
            )
        if result.deleted_count:
            logger.debug(f"Deleted image record {digest}")
            return True
        logger.debug(f"Image record {digest} already absent")
        return False
