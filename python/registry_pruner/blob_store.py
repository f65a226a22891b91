"""
Blob store collaborator over the Docker distribution filesystem layout.

    <root>/docker/registry/v2/blobs/sha256/<hex[:2]>/<hex>/data
    <root>/docker/registry/v2/repositories/<namespace>/<name>/_layers/sha256/<hex>/link


A blob exists globally once its data file is present; a repository link is the
per-repository record that the blob is used there. Mirrored blobs have data
but no link. The scan methods report what is actually on disk, including
blobs and links no image record mentions anymore.
"""

import fcntl
import os
import shutil
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from registry_pruner.config_manager import ConfigManager, config_manager
from registry_pruner.error_utils import create_authorization_error
from registry_pruner.graph import is_valid_digest
from registry_pruner.logging_utils import get_logger
from registry_pruner.models import StoredObject

logger = get_logger(__name__)

V2_PREFIX = Path("docker") / "registry" / "v2"
LOCKS_DIR = "_prune_locks"


def _split_digest(digest: str):
    algorithm, sep, hex_digest = digest.partition(":")
    if not sep or not algorithm or not hex_digest or "/" in digest or ".." in digest:
        raise ValueError(f"invalid digest: {digest!r}")
    return algorithm, hex_digest


class FilesystemBlobStore:
    """Blob existence, deletion and repository links on a registry storage root."""

    def __init__(self, root: Optional[str] = None, config: Optional[ConfigManager] = None):
        config = config or config_manager
        self.root = Path(root or config.get_storage_root())
        self.v2 = self.root / V2_PREFIX
        self._thread_locks: Dict[str, threading.Lock] = {}
        self._thread_locks_guard = threading.Lock()

    # Paths

    def blob_dir(self, digest: str) -> Path:
        algorithm, hex_digest = _split_digest(digest)
        return self.v2 / "blobs" / algorithm / hex_digest[:2] / hex_digest

    def blob_path(self, digest: str) -> Path:
        return self.blob_dir(digest) / "data"

    def repository_dir(self, repository: str) -> Path:
        if ".." in repository.split("/"):
            raise ValueError(f"invalid repository: {repository!r}")
        return self.v2 / "repositories" / repository

    def link_dir(self, repository: str, digest: str) -> Path:
        algorithm, hex_digest = _split_digest(digest)
        return self.repository_dir(repository) / "_layers" / algorithm / hex_digest

    def link_path(self, repository: str, digest: str) -> Path:
        return self.link_dir(repository, digest) / "link"

    # Global blobs

    def blob_exists(self, digest: str) -> bool:
        return self.blob_path(digest).is_file()

    def blob_size(self, digest: str) -> Optional[int]:
        try:
            return self.blob_path(digest).stat().st_size
        except FileNotFoundError:
            return None

    def put_blob(self, digest: str, data: bytes) -> None:
        """Store blob content; used to stage mirrored blobs."""
        path = self.blob_path(digest)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def delete_blob(self, digest: str) -> bool:
        """Remove a blob from the shared store.

        Returns:
            True if the blob was removed, False if it was already absent
        """
        blob_dir = self.blob_dir(digest)
        if not blob_dir.exists():
            return False
        try:
            shutil.rmtree(blob_dir)
        except FileNotFoundError:
            return False
        logger.debug(f"Deleted blob {digest}")
        return True

    # Repository links

    def is_linked(self, repository: str, digest: str) -> bool:
        return self.link_path(repository, digest).is_file()

    def link(self, repository: str, digest: str) -> None:
        path = self.link_path(repository, digest)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(digest)

    def unlink(self, repository: str, digest: str) -> bool:
        """Remove the link of a blob from a repository.

        Returns:
            True if a link was removed, False if the blob was not linked there
        """
        link_dir = self.link_dir(repository, digest)
        if not link_dir.exists():
            return False
        try:
            shutil.rmtree(link_dir)
        except FileNotFoundError:
            return False
        logger.debug(f"Unlinked blob {digest} from {repository}")
        return True

    def linked_digests(self, repository: str) -> List[str]:
        return sorted(self.linked_blobs(repository))

    # Scanning

    def _stored(self, path: Path) -> Optional[StoredObject]:
        try:
            stat = path.stat()
        except FileNotFoundError:
            return None
        return StoredObject(modified=datetime.fromtimestamp(stat.st_mtime, timezone.utc), size=stat.st_size)

    def list_blobs(self) -> Dict[str, StoredObject]:
        """Blob digest -> data file, for every blob present in the shared store."""
        found: Dict[str, StoredObject] = {}
        blobs_root = self.v2 / "blobs"
        if not blobs_root.is_dir():
            return found
        for algorithm_dir in sorted(blobs_root.iterdir()):
            prefix_dirs = sorted(algorithm_dir.iterdir()) if algorithm_dir.is_dir() else []
            for prefix_dir in prefix_dirs:
                blob_dirs = sorted(prefix_dir.iterdir()) if prefix_dir.is_dir() else []
                for blob_dir in blob_dirs:
                    digest = f"{algorithm_dir.name}:{blob_dir.name}"
                    if not is_valid_digest(digest) or not blob_dir.name.startswith(prefix_dir.name):
                        continue
                    stored = self._stored(blob_dir / "data")
                    if stored is not None:
                        found[digest] = stored
        return found

    def repository_keys(self) -> List[str]:
        """Repositories that have a layer link directory."""
        base = self.v2 / "repositories"
        if not base.is_dir():
            return []
        keys = []
        for dirpath, dirnames, _ in os.walk(base):
            if "_layers" in dirnames:
                keys.append(Path(dirpath).relative_to(base).as_posix())
            # _layers, _manifests and _uploads hold registry data, not repositories
            dirnames[:] = [name for name in dirnames if not name.startswith("_")]
        return sorted(keys)

    def linked_blobs(self, repository: str) -> Dict[str, StoredObject]:
        """Blob digest -> link file, for every blob linked into a repository."""
        found: Dict[str, StoredObject] = {}
        layers = self.repository_dir(repository) / "_layers"
        if not layers.is_dir():
            return found
        for algorithm_dir in sorted(layers.iterdir()):
            entries = sorted(algorithm_dir.iterdir()) if algorithm_dir.is_dir() else []
            for entry in entries:
                digest = f"{algorithm_dir.name}:{entry.name}"
                if not is_valid_digest(digest):
                    continue
                stored = self._stored(entry / "link")
                if stored is not None:
                    found[digest] = stored
        return found

    # Access and locking

    def check_writable(self) -> None:
        """Fail before any mutation when the storage root cannot be modified.

        Raises:
            AuthorizationError: if the storage root is missing or read-only
        """
        target = self.v2 if self.v2.exists() else self.root
        if not target.is_dir():
            raise create_authorization_error(
                f"write to registry storage at {self.root}",
                FileNotFoundError(f"{target} does not exist"),
            )
        if not os.access(target, os.W_OK | os.X_OK):
            raise create_authorization_error(
                f"write to registry storage at {self.root}",
                PermissionError(f"{target} is not writable"),
            )

    def _thread_lock(self, repository: str) -> threading.Lock:
        with self._thread_locks_guard:
            return self._thread_locks.setdefault(repository, threading.Lock())

    @contextmanager
    def repository_lock(self, repository: str) -> Iterator[None]:
        """Hold an exclusive lock on the link directory of a repository.

        Other pruner processes block on the same lock file, so two confirm
        runs never interleave link mutations of one repository.
        """
        lock_path = self.v2 / LOCKS_DIR / f"{repository.replace('/', '__')}.lock"
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with self._thread_lock(repository):
            with open(lock_path, "a") as lock_file:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
