"""
Deletion plan: the value shared by the report and confirm phases.

A plan is built once from a snapshot and consumed by the executor; it is
never re-evaluated in between, so the confirm phase deletes exactly what the
report phase showed.

Blobs and links are attributed to the PRUNE image whose removal frees them;
orphans found in the blob store belong to no image and are listed apart.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Tuple

from registry_pruner.logging_utils import get_logger
from registry_pruner.models import ImageGraph
from registry_pruner.refcount import BlobReferences, count_references
from registry_pruner.retention import Classification, RetentionPolicy, classify

logger = get_logger(__name__)

BLOB_KIND_LAYER = "layer"
BLOB_KIND_CONFIG = "config"
BLOB_KIND_ORPHAN = "orphan"


@dataclass(frozen=True)
class BlobPlan:
    digest: str
    kind: str
    size: int


@dataclass(frozen=True)
class ImagePlan:
    """A PRUNE image and what its removal frees."""

    digest: str
    schema_version: int
    created: datetime
    size: int
    externally_imported: bool
    repositories: Tuple[str, ...]
    blobs: Tuple[BlobPlan, ...]
    # (repository key, blob digest)
    unlinks: Tuple[Tuple[str, str], ...]


@dataclass(frozen=True)
class PrunePlan:
    policy: RetentionPolicy
    now: datetime
    images: Tuple[ImagePlan, ...]
    kept_count: int
    warnings: Tuple[str, ...] = ()
    orphan_blobs: Tuple[BlobPlan, ...] = ()
    # (repository key, blob digest)
    orphan_links: Tuple[Tuple[str, str], ...] = ()

    @property
    def image_digests(self) -> List[str]:
        return [image.digest for image in self.images]

    @property
    def blob_deletions(self) -> List[BlobPlan]:
        """Unique global deletion candidates, orphans included, sorted by digest."""
        unique: Dict[str, BlobPlan] = {}
        for image in self.images:
            for blob in image.blobs:
                unique.setdefault(blob.digest, blob)
        for blob in self.orphan_blobs:
            unique.setdefault(blob.digest, blob)
        return [unique[digest] for digest in sorted(unique)]

    @property
    def link_removals(self) -> Dict[str, List[str]]:
        """Repository key -> blob digests to unlink, both sorted."""
        removals: Dict[str, set] = {}
        for image in self.images:
            for repository, blob in image.unlinks:
                removals.setdefault(repository, set()).add(blob)
        for repository, blob in self.orphan_links:
            removals.setdefault(repository, set()).add(blob)
        return {repository: sorted(removals[repository]) for repository in sorted(removals)}

    @property
    def reclaimable_bytes(self) -> int:
        return sum(blob.size for blob in self.blob_deletions)

    def is_empty(self) -> bool:
        return not (self.images or self.orphan_blobs or self.orphan_links)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.now.isoformat(),
            "policy": {
                "keep_tag_revisions": self.policy.keep_tag_revisions,
                "keep_younger_than_seconds": self.policy.keep_younger_than.total_seconds(),
                "prune_externally_imported": self.policy.prune_externally_imported,
                "untagged_images": self.policy.untagged.value,
            },
            "summary": {
                "images_kept": self.kept_count,
                "images_pruned": len(self.images),
                "blobs_deleted": len(self.blob_deletions),
                "links_removed": sum(len(blobs) for blobs in self.link_removals.values()),
                "reclaimable_bytes": self.reclaimable_bytes,
            },
            "images": [
                {
                    "digest": image.digest,
                    "schema_version": image.schema_version,
                    "created": image.created.isoformat(),
                    "size": image.size,
                    "externally_imported": image.externally_imported,
                    "repositories": list(image.repositories),
                    "blobs": [
                        {"digest": blob.digest, "kind": blob.kind, "size": blob.size}
                        for blob in image.blobs
                    ],
                    "unlinks": [
                        {"repository": repository, "blob": blob}
                        for repository, blob in image.unlinks
                    ],
                }
                for image in self.images
            ],
            "orphans": {
                "blobs": [{"digest": blob.digest, "size": blob.size} for blob in self.orphan_blobs],
                "links": [{"repository": repository, "blob": blob} for repository, blob in self.orphan_links],
            },
            "warnings": list(self.warnings),
        }


def _image_plan(graph: ImageGraph, digest: str, references: BlobReferences) -> ImagePlan:
    image = graph.images[digest]
    blob_digests = graph.image_blob_digests(digest)
    repositories = tuple(sorted(graph.image_repositories.get(digest, ())))

    blobs = tuple(
        BlobPlan(
            digest=blob,
            kind=BLOB_KIND_CONFIG if blob == image.config else BLOB_KIND_LAYER,
            size=graph.blobs[blob].size,
        )
        for blob in sorted(blob_digests)
        if references.is_deletion_candidate(blob)
    )
    unlinks = tuple(
        (repository, blob)
        for repository in repositories
        for blob in sorted(blob_digests)
        if references.is_unlink_candidate(blob, repository)
    )
    return ImagePlan(
        digest=digest,
        schema_version=image.schema_version,
        created=image.created,
        size=image.size,
        externally_imported=image.externally_imported,
        repositories=repositories,
        blobs=blobs,
        unlinks=unlinks,
    )


def plan_from_classification(
    graph: ImageGraph,
    policy: RetentionPolicy,
    classification: Classification,
    now: datetime,
) -> PrunePlan:
    # Orphans younger than the age window may still gain an image record
    references = count_references(graph, classification, settled_before=now - policy.keep_younger_than)
    images = tuple(_image_plan(graph, digest, references) for digest in sorted(classification.prune))
    orphan_blobs = tuple(
        BlobPlan(digest=blob, kind=BLOB_KIND_ORPHAN, size=graph.stored_blobs[blob].size)
        for blob in sorted(references.orphan_blobs)
    )
    orphan_links = tuple(sorted((repository, blob) for blob, repository in references.orphan_links))
    plan = PrunePlan(
        policy=policy,
        now=now,
        images=images,
        kept_count=len(classification.keep),
        warnings=tuple(graph.warnings),
        orphan_blobs=orphan_blobs,
        orphan_links=orphan_links,
    )
    logger.info(
        f"Plan: {len(plan.images)} images to prune, {plan.kept_count} kept, "
        f"{len(plan.blob_deletions)} blobs to delete ({len(orphan_blobs)} orphaned), "
        f"{len(orphan_links)} orphaned links"
    )
    return plan


def build_plan(
    graph: ImageGraph,
    policy: RetentionPolicy,
    in_use: Callable[[str], bool],
    now: datetime,
) -> PrunePlan:
    """Validate the policy, classify every image and attribute freed blobs.

    Raises:
        PolicyError: if the policy parameters are invalid
    """
    policy.validate()
    classification = classify(graph, policy, in_use, now)
    return plan_from_classification(graph, policy, classification, now)
