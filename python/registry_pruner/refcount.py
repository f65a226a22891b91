"""
Blob Reference Counter.

Two independent reachability predicates per blob digest:

- globally referenced: some KEEP image anywhere references the blob
- repository-referenced for R: some KEEP image in repository R references it

A blob may be unlinked from one repository while staying in the shared store
for another, so the two tiers are computed separately.

Blobs and links found in the blob store that no image record references at
all (left behind by an interrupted or failed confirm run, or by images
deleted elsewhere) are orphans. They are candidates too, once they are older
than `settled_before`.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, FrozenSet, Optional, Set, Tuple

from registry_pruner.models import ImageGraph, StoredObject, is_empty_digest
from registry_pruner.retention import Classification


@dataclass(frozen=True)
class BlobReferences:
    keep_images: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    keep_repositories: Dict[str, FrozenSet[str]] = field(default_factory=dict)
    pinned: FrozenSet[str] = frozenset()
    deletion_candidates: FrozenSet[str] = frozenset()
    # (blob digest, repository key)
    unlink_candidates: FrozenSet[Tuple[str, str]] = frozenset()
    orphan_blobs: FrozenSet[str] = frozenset()
    # (blob digest, repository key)
    orphan_links: FrozenSet[Tuple[str, str]] = frozenset()

    def is_globally_referenced(self, blob: str) -> bool:
        if is_empty_digest(blob) or blob in self.pinned:
            return True
        return bool(self.keep_images.get(blob))

    def is_repository_referenced(self, blob: str, repository: str) -> bool:
        return repository in self.keep_repositories.get(blob, frozenset())

    def is_deletion_candidate(self, blob: str) -> bool:
        return blob in self.deletion_candidates

    def is_unlink_candidate(self, blob: str, repository: str) -> bool:
        return (blob, repository) in self.unlink_candidates


def count_references(
    graph: ImageGraph,
    classification: Classification,
    settled_before: Optional[datetime] = None,
) -> BlobReferences:
    """Count KEEP references for every blob of the graph.

    Args:
        graph: Snapshot, with the blob store contents when they were scanned
        classification: KEEP/PRUNE decision for every image
        settled_before: Orphans modified at or after this time are left alone,
            they may belong to a push still in progress (None: no age limit)
    """
    keep_images: Dict[str, Set[str]] = {}
    keep_repositories: Dict[str, Set[str]] = {}
    linked: Dict[str, Set[str]] = {}

    for blob, owners in graph.blob_images.items():
        if is_empty_digest(blob):
            continue
        keep_images[blob] = set()
        keep_repositories[blob] = set()
        linked[blob] = set()
        for image in owners:
            repositories = graph.image_repositories.get(image, set())
            linked[blob].update(repositories)
            if classification.is_kept(image):
                keep_images[blob].add(image)
                keep_repositories[blob].update(repositories)

    deletion_candidates = {
        blob for blob, images in keep_images.items() if not images and blob not in graph.pinned_blobs
    }
    unlink_candidates = {
        (blob, repository)
        for blob, repositories in linked.items()
        for repository in repositories
        if repository not in keep_repositories[blob] and blob not in graph.pinned_blobs
    }

    def settled(stored: StoredObject) -> bool:
        return settled_before is None or stored.modified < settled_before

    def collectable(blob: str) -> bool:
        return not is_empty_digest(blob) and blob not in graph.pinned_blobs

    # Orphan blobs are global: only a run over the whole registry may delete them
    orphan_blobs = set()
    if graph.namespace is None:
        orphan_blobs = {
            blob
            for blob, stored in graph.stored_blobs.items()
            if blob not in graph.blob_images and collectable(blob) and settled(stored)
        }

    # A kept untagged image has no repository, so its links are never provably unused
    untagged_keep_blobs = {
        blob
        for image in graph.untagged_images()
        if classification.is_kept(image)
        for blob in graph.image_blob_digests(image)
    }
    orphan_links = {
        (blob, repository)
        for repository, links in graph.stored_links.items()
        if graph.repository_in_scope(repository)
        for blob, stored in links.items()
        if repository not in linked.get(blob, ())
        and blob not in untagged_keep_blobs
        and collectable(blob)
        and settled(stored)
    }

    return BlobReferences(
        keep_images={blob: frozenset(images) for blob, images in keep_images.items()},
        keep_repositories={blob: frozenset(repos) for blob, repos in keep_repositories.items()},
        pinned=frozenset(graph.pinned_blobs),
        deletion_candidates=frozenset(deletion_candidates),
        unlink_candidates=frozenset(unlink_candidates),
        orphan_blobs=frozenset(orphan_blobs),
        orphan_links=frozenset(orphan_links),
    )
