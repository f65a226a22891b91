"""
Reference Graph Builder.

Reads every repository and image record visible to the run and materializes
the snapshot graph in memory. Image reads are fanned out across repositories
with a bounded thread pool; everything else is sequential.
"""

import concurrent.futures
import re
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional, Tuple

from registry_pruner.config_manager import ConfigManager, config_manager
from registry_pruner.error_utils import (
    ActionableError,
    create_malformed_record_error,
    create_metadata_connection_error,
    create_storage_scan_error,
)
from registry_pruner.logging_utils import get_logger
from registry_pruner.models import Image, ImageGraph, Repository, StoredObject
from registry_pruner.retry_utils import retry_from_config

logger = get_logger(__name__)

# algorithm:hex, e.g. sha256:<64 hex>; tags such as nginx:latest never match
DIGEST_PATTERN = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-f0-9]{32,}$")


def is_valid_digest(value: Any) -> bool:
    return isinstance(value, str) and bool(DIGEST_PATTERN.match(value))


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"invalid creation timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_size(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValueError(f"invalid {what} size: {value!r}")
    return value


def _parse_descriptor(value: Any, what: str) -> Tuple[str, int]:
    """Accept either a bare digest or a {digest, size} mapping."""
    if isinstance(value, str):
        digest, size = value, 0
    elif isinstance(value, dict):
        digest = value.get("digest")
        size = _parse_size(value.get("size", 0), what)
    else:
        raise ValueError(f"invalid {what} reference: {value!r}")
    if not is_valid_digest(digest):
        raise ValueError(f"invalid {what} digest: {digest!r}")
    return digest, size


def parse_image_record(doc: Dict) -> Tuple[Image, Dict[str, int]]:
    """Turn an image record into an Image plus the sizes of its blobs.

    Raises:
        ValueError: if the record is malformed
    """
    digest = doc.get("_id", doc.get("digest"))
    if not is_valid_digest(digest):
        raise ValueError(f"invalid image digest: {digest!r}")

    schema_version = doc.get("schema_version")
    if schema_version not in (1, 2):
        raise ValueError(f"unsupported manifest schema version: {schema_version!r}")

    created = _parse_timestamp(doc.get("created"))

    raw_layers = doc.get("layers") or []
    if not isinstance(raw_layers, list):
        raise ValueError("layers must be a list")

    blob_sizes: Dict[str, int] = {}
    layers = []
    for raw in raw_layers:
        layer_digest, layer_size = _parse_descriptor(raw, "layer")
        layers.append(layer_digest)
        blob_sizes[layer_digest] = layer_size

    config_digest = None
    raw_config = doc.get("config")
    # Schema 1 embeds the configuration in the manifest itself
    if schema_version == 2 and raw_config:
        config_digest, config_size = _parse_descriptor(raw_config, "config")
        blob_sizes[config_digest] = config_size

    size = doc.get("size")
    if size is None:
        size = sum(blob_sizes.values())
    size = _parse_size(size, "image")

    externally_imported = doc.get("externally_imported", False)
    if not isinstance(externally_imported, bool):
        raise ValueError(f"externally_imported must be a boolean, got {externally_imported!r}")

    image = Image(
        digest=digest,
        schema_version=schema_version,
        created=created,
        size=size,
        layers=tuple(layers),
        config=config_digest,
        externally_imported=externally_imported,
    )
    return image, blob_sizes


def salvage_blob_digests(doc: Dict) -> List[str]:
    """Best-effort list of blob digests named by a record that failed to parse.

    These blobs are pinned for the run: the image that owns them survives
    pruning, so its blobs must too.
    """
    refs = []
    layers = doc.get("layers")
    if isinstance(layers, list):
        refs.extend(layers)
    refs.append(doc.get("config"))

    digests = []
    for ref in refs:
        digest = ref.get("digest") if isinstance(ref, dict) else ref
        if is_valid_digest(digest):
            digests.append(digest)
    return digests


def parse_repository_record(doc: Dict) -> Repository:
    """Turn a repository record into a Repository.

    Raises:
        ValueError: if the record is malformed
    """
    namespace = doc.get("namespace")
    name = doc.get("name")
    if not isinstance(namespace, str) or not namespace or not isinstance(name, str) or not name:
        raise ValueError("repository requires a namespace and a name")

    raw_tags = doc.get("tags") or []
    if not isinstance(raw_tags, list):
        raise ValueError("tags must be a list")

    tags: Dict[str, List[str]] = {}
    for raw_tag in raw_tags:
        if not isinstance(raw_tag, dict) or not isinstance(raw_tag.get("name"), str):
            raise ValueError(f"invalid tag entry: {raw_tag!r}")
        history = tags.setdefault(raw_tag["name"], [])
        for item in raw_tag.get("items") or []:
            image = item.get("image") if isinstance(item, dict) else None
            if not is_valid_digest(image):
                raise ValueError(f"invalid revision in tag {raw_tag['name']}: {item!r}")
            history.append(image)

    return Repository(namespace=namespace, name=name, tags=tags)


class GraphBuilder:
    """Builds an ImageGraph from the metadata collaborator."""

    def __init__(
        self,
        metadata_client,
        namespace: Optional[str] = None,
        max_workers: Optional[int] = None,
        config: Optional[ConfigManager] = None,
        blob_store=None,
    ):
        """
        Args:
            metadata_client: MetadataClient (or compatible) to read from
            namespace: Restrict pruning to one namespace; other repositories
                are still read so that their references are counted
            max_workers: Fan-out for image reads (default: analysis.max_workers)
            config: ConfigManager for retry and worker settings
            blob_store: FilesystemBlobStore (or compatible) whose blobs and links are
                recorded in the snapshot; None reads image records only
        """
        self.metadata = metadata_client
        self.namespace = namespace
        self.config = config or config_manager
        self.max_workers = max_workers or self.config.get_max_workers()
        self.blob_store = blob_store
        self.logger = get_logger(__name__)

    def _fetch(self, operation_name: str, operation: Callable):
        try:
            return retry_from_config(self.config, operation, operation_name)
        except ActionableError:
            raise
        except Exception as e:
            raise create_metadata_connection_error(
                self.config.get_mongo_host(), self.config.get_mongo_port(), e
            ) from e

    def _scan_store(self) -> Tuple[Dict[str, StoredObject], Dict[str, Dict[str, StoredObject]]]:
        try:
            blobs = self.blob_store.list_blobs()
            links = {key: self.blob_store.linked_blobs(key) for key in self.blob_store.repository_keys()}
        except OSError as e:
            raise create_storage_scan_error(str(self.blob_store.root), e) from e
        self.logger.info(
            f"Blob store holds {len(blobs)} blobs and {sum(len(linked) for linked in links.values())} links "
            f"in {len(links)} repositories"
        )
        return blobs, links

    def build(self) -> ImageGraph:
        """Fetch a fresh snapshot.

        Raises:
            FetchError: collaborator unreachable, a repository record is malformed,
                or the blob store cannot be scanned
            AuthorizationError: the caller may not read image metadata or storage
        """
        graph = ImageGraph(namespace=self.namespace)
        # Scan storage before reading records: a blob uploaded after this point
        # is unknown to the snapshot rather than mistaken for an orphan
        if self.blob_store is not None:
            graph.stored_blobs, graph.stored_links = self._scan_store()

        repo_docs = self._fetch("list repositories", self.metadata.list_repositories)
        repositories = []
        for doc in repo_docs:
            try:
                repository = parse_repository_record(doc)
            except ValueError as e:
                raise create_malformed_record_error("repositories", doc.get("_id"), str(e)) from e
            repository.in_scope = self.namespace is None or repository.namespace == self.namespace
            repositories.append(repository)

        self.logger.info(
            f"Found {len(repositories)} repositories "
            f"({sum(1 for r in repositories if r.in_scope)} in scope); "
            f"reading images with {self.max_workers} workers..."
        )

        image_docs: Dict[str, Dict] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_repo = {
                executor.submit(
                    self._fetch,
                    f"read images of {repository.key}",
                    partial(self.metadata.get_images, repository.image_digests()),
                ): repository.key
                for repository in repositories
                if repository.image_digests()
            }
            for future in concurrent.futures.as_completed(future_to_repo):
                for doc in future.result():
                    image_docs[doc.get("_id", doc.get("digest"))] = doc

        tagged = {digest for repository in repositories for digest in repository.image_digests()}
        all_digests = self._fetch("list images", self.metadata.list_image_digests)
        untagged = set(all_digests) - tagged
        if untagged:
            self.logger.info(f"Reading {len(untagged)} untagged images...")
            for doc in self._fetch("read untagged images", partial(self.metadata.get_images, untagged)):
                image_docs[doc.get("_id", doc.get("digest"))] = doc

        for key in sorted(image_docs, key=str):
            try:
                image, blob_sizes = parse_image_record(image_docs[key])
            except ValueError as e:
                warning = f"Skipping malformed image record {key}: {e}"
                self.logger.warning(warning)
                graph.warnings.append(warning)
                graph.pinned_blobs.update(salvage_blob_digests(image_docs[key]))
                continue
            graph.add_image(image, blob_sizes)

        first_repository_warning = len(graph.warnings)
        for repository in sorted(repositories, key=lambda r: r.key):
            graph.add_repository(repository)
        for warning in graph.warnings[first_repository_warning:]:
            self.logger.warning(warning)

        self.logger.info(
            f"✓ Snapshot built: {len(graph.repositories)} repositories, "
            f"{len(graph.images)} images, {len(graph.blobs)} blobs"
        )
        return graph
