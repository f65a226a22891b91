"""
Snapshot data model for one pruning run.

The graph is a set of flat maps keyed by digest or repository key rather
than nested objects with back-pointers:

- repositories: "namespace/name" -> Repository (tag -> ordered image digests)
- images: image digest -> Image
- blobs: blob digest -> Blob
- image_repositories: image digest -> repository keys whose tags reference it
- blob_images: blob digest -> image digests referencing it (layer or config)
- stored_blobs / stored_links: what the blob store actually holds, so that
  blobs and links left behind by an interrupted run are still collected
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

# Gzipped empty tar, used by schema 1 manifests for metadata-only layers
DIGEST_SHA256_GZIPPED_EMPTY_TAR = "sha256:a3ed95caeb02ffe68cdd9fd84406680ae93d633cb16422d00e8a7c22955b46d4"
# sha256 of zero bytes
DIGEST_SHA256_EMPTY = "sha256:e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

EMPTY_DIGESTS = frozenset({DIGEST_SHA256_GZIPPED_EMPTY_TAR, DIGEST_SHA256_EMPTY})


def is_empty_digest(digest: str) -> bool:
    return digest in EMPTY_DIGESTS


@dataclass(frozen=True)
class Blob:
    digest: str
    size: int = 0


@dataclass(frozen=True)
class Image:
    """An image manifest and the blobs it references.

    Schema 1 manifests embed their configuration, so `config` is only set for
    schema 2 images.
    """

    digest: str
    schema_version: int
    created: datetime
    size: int = 0
    layers: tuple = ()
    config: Optional[str] = None
    externally_imported: bool = False


@dataclass(frozen=True)
class StoredObject:
    """A blob data file or repository link found in the blob store."""

    modified: datetime
    size: int = 0


@dataclass
class Repository:
    namespace: str
    name: str
    tags: Dict[str, List[str]] = field(default_factory=dict)
    in_scope: bool = True

    @property
    def key(self) -> str:
        return repository_key(self.namespace, self.name)

    def image_digests(self) -> Set[str]:
        return {digest for history in self.tags.values() for digest in history}


def repository_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


@dataclass
class ImageGraph:
    repositories: Dict[str, Repository] = field(default_factory=dict)
    images: Dict[str, Image] = field(default_factory=dict)
    blobs: Dict[str, Blob] = field(default_factory=dict)
    image_repositories: Dict[str, Set[str]] = field(default_factory=dict)
    blob_images: Dict[str, Set[str]] = field(default_factory=dict)
    # Blobs named by image records that could not be parsed; never deleted
    pinned_blobs: Set[str] = field(default_factory=set)
    # Namespace the run is restricted to, None for the whole registry
    namespace: Optional[str] = None
    stored_blobs: Dict[str, StoredObject] = field(default_factory=dict)
    # repository key -> blob digest -> link
    stored_links: Dict[str, Dict[str, StoredObject]] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def add_image(self, image: Image, blob_sizes: Optional[Dict[str, int]] = None) -> None:
        """Register an image and index its non-empty blobs."""
        blob_sizes = blob_sizes or {}
        self.images[image.digest] = image
        self.image_repositories.setdefault(image.digest, set())
        for digest in self.image_blob_digests(image.digest):
            if digest not in self.blobs:
                self.blobs[digest] = Blob(digest, blob_sizes.get(digest, 0))
            self.blob_images.setdefault(digest, set()).add(image.digest)

    def add_repository(self, repository: Repository) -> None:
        """Register a repository; only revisions of known images are kept."""
        for tag, history in repository.tags.items():
            known = []
            for digest in history:
                if digest in self.images:
                    known.append(digest)
                else:
                    self.warnings.append(
                        f"{repository.key}:{tag} references unknown image {digest}, revision skipped"
                    )
            repository.tags[tag] = known
            for digest in known:
                self.image_repositories.setdefault(digest, set()).add(repository.key)
        self.repositories[repository.key] = repository

    def image_blob_digests(self, image_digest: str) -> List[str]:
        """Layers then config of an image, deduplicated, without empty digests."""
        image = self.images[image_digest]
        refs = list(image.layers)
        if image.config:
            refs.append(image.config)
        seen = set()
        result = []
        for digest in refs:
            if is_empty_digest(digest) or digest in seen:
                continue
            seen.add(digest)
            result.append(digest)
        return result

    def ordered_history(self, repo_key: str, tag: str) -> List[str]:
        """Tag revisions, most recent first; equal timestamps ordered by digest."""
        history = self.repositories[repo_key].tags.get(tag, [])
        unique = list(dict.fromkeys(history))
        return sorted(unique, key=lambda digest: (-self.images[digest].created.timestamp(), digest))

    def untagged_images(self) -> Set[str]:
        return {digest for digest, repos in self.image_repositories.items() if not repos}

    def repository_in_scope(self, repo_key: str) -> bool:
        """Scope of a repository, including ones only the blob store knows about."""
        if repo_key in self.repositories:
            return self.repositories[repo_key].in_scope
        return self.namespace is None or repo_key.split("/", 1)[0] == self.namespace
