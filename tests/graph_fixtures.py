"""Builders shared by the pruner tests: digests, images, snapshot graphs and an in-memory metadata store."""

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

from registry_pruner.models import Image, ImageGraph, Repository

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def digest(name: str) -> str:
    """Deterministic sha256 digest for a readable test name."""
    return "sha256:" + hashlib.sha256(name.encode()).hexdigest()


def ago(**kwargs) -> datetime:
    return NOW - timedelta(**kwargs)


def nothing_in_use(_digest: str) -> bool:
    return False


class GraphFactory:
    """Builds an ImageGraph from readable names.

    Images and blobs are referred to by name; the graph holds their digests.
    """

    def __init__(self):
        self.graph = ImageGraph()

    def image(
        self,
        name: str,
        created: datetime,
        layers: Iterable[str] = (),
        config: Optional[str] = None,
        schema_version: int = 2,
        externally_imported: bool = False,
        blob_size: int = 100,
    ) -> str:
        layer_digests = tuple(digest(layer) for layer in layers)
        config_digest = digest(config) if config and schema_version == 2 else None
        sizes = {layer: blob_size for layer in layer_digests}
        if config_digest:
            sizes[config_digest] = blob_size
        image = Image(
            digest=digest(name),
            schema_version=schema_version,
            created=created,
            size=sum(sizes.values()),
            layers=layer_digests,
            config=config_digest,
            externally_imported=externally_imported,
        )
        self.graph.add_image(image, sizes)
        return image.digest

    def repository(self, key: str, tags: Dict[str, List[str]], in_scope: bool = True) -> str:
        namespace, name = key.split("/", 1)
        repository = Repository(
            namespace=namespace,
            name=name,
            tags={tag: [digest(image) for image in images] for tag, images in tags.items()},
            in_scope=in_scope,
        )
        self.graph.add_repository(repository)
        return repository.key


class FakeMetadataClient:
    """In-memory stand-in for MetadataClient with the same record shapes."""

    def __init__(self, repositories: Optional[List[Dict]] = None, images: Optional[List[Dict]] = None):
        self.repository_docs = repositories or []
        self.image_docs = {doc["_id"]: doc for doc in images or []}
        self.deleted: List[str] = []
        self.fail_deletes: Dict[str, Exception] = {}

    def list_repositories(self) -> List[Dict]:
        return list(self.repository_docs)

    def list_image_digests(self) -> List[str]:
        return list(self.image_docs)

    def get_images(self, digests) -> List[Dict]:
        return [self.image_docs[d] for d in sorted(set(digests)) if d in self.image_docs]

    def delete_image(self, image_digest: str) -> bool:
        if image_digest in self.fail_deletes:
            raise self.fail_deletes[image_digest]
        if image_digest not in self.image_docs:
            return False
        del self.image_docs[image_digest]
        self.deleted.append(image_digest)
        for repository in self.repository_docs:
            for tag in repository.get("tags", []):
                tag["items"] = [item for item in tag.get("items", []) if item["image"] != image_digest]
        return True

    def close(self) -> None:
        pass


def image_doc(
    name: str,
    created: datetime,
    layers: Iterable[str] = (),
    config: Optional[str] = None,
    schema_version: int = 2,
    externally_imported: bool = False,
    blob_size: int = 100,
) -> Dict:
    doc = {
        "_id": digest(name),
        "schema_version": schema_version,
        "created": created,
        "layers": [{"digest": digest(layer), "size": blob_size} for layer in layers],
        "externally_imported": externally_imported,
    }
    if config:
        doc["config"] = {"digest": digest(config), "size": blob_size}
    return doc


def repository_doc(key: str, tags: Dict[str, List[str]]) -> Dict:
    namespace, name = key.split("/", 1)
    return {
        "_id": key,
        "namespace": namespace,
        "name": name,
        "tags": [
            {"name": tag, "items": [{"image": digest(image)} for image in images]}
            for tag, images in tags.items()
        ],
    }
