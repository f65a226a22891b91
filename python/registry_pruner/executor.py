"""
Pruner Executor: the report and confirm phases over a PrunePlan.

Confirm order:
1. image metadata records (parallel)
2. global deletion candidates in the blob store (parallel)
3. repository links, serialized per repository under the repository lock,
   repositories in parallel

Each item is bounded by the executor timeout. A failing or timed-out item is
recorded as a DeleteError and the batch continues; AuthorizationError aborts
the run. Already-absent items are no-ops, so a partial confirm can be resumed
by running it again.
"""

import itertools
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from functools import partial
from queue import Empty, Queue
from typing import Any, Callable, ContextManager, Dict, Hashable, List, Optional, Tuple

from registry_pruner.error_utils import AuthorizationError, DeleteError, create_delete_error
from registry_pruner.logging_utils import get_logger
from registry_pruner.plan import PrunePlan, build_plan
from registry_pruner.report_utils import format_table, sizeof_fmt

logger = get_logger(__name__)

POLL_INTERVAL = 0.05

_worker_ids = itertools.count(1)

KIND_IMAGE = "image"
KIND_BLOB = "blob"
KIND_LINK = "link"


class ItemStatus(Enum):
    SUCCEEDED = "succeeded"
    NOOP = "noop"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ItemResult:
    kind: str
    identifier: str
    repository: Optional[str]
    status: ItemStatus
    error: Optional[DeleteError] = None
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "kind": self.kind,
            "identifier": self.identifier,
            "repository": self.repository,
            "status": self.status.value,
        }
        if self.error is not None:
            data["error"] = self.error.details.get("error_message", self.error.message)
        return data


@dataclass
class PruneResult:
    items: List[ItemResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def _with_status(self, status: ItemStatus) -> List[ItemResult]:
        return [item for item in self.items if item.status is status]

    @property
    def succeeded(self) -> List[ItemResult]:
        return self._with_status(ItemStatus.SUCCEEDED)

    @property
    def noops(self) -> List[ItemResult]:
        return self._with_status(ItemStatus.NOOP)

    @property
    def skipped(self) -> List[ItemResult]:
        return self._with_status(ItemStatus.SKIPPED)

    @property
    def failed(self) -> List[ItemResult]:
        return self._with_status(ItemStatus.FAILED)

    @property
    def freed_bytes(self) -> int:
        return sum(item.size for item in self.succeeded if item.kind == KIND_BLOB)

    def count(self, kind: str, status: ItemStatus) -> int:
        return sum(1 for item in self.items if item.kind == kind and item.status is status)

    def summary(self) -> str:
        parts = []
        for kind, label in ((KIND_IMAGE, "images"), (KIND_BLOB, "blobs"), (KIND_LINK, "links")):
            parts.append(
                f"{label}: {self.count(kind, ItemStatus.SUCCEEDED)} deleted, "
                f"{self.count(kind, ItemStatus.NOOP)} already absent, "
                f"{self.count(kind, ItemStatus.SKIPPED)} skipped, "
                f"{self.count(kind, ItemStatus.FAILED)} failed"
            )
        return "; ".join(parts) + f". Freed {sizeof_fmt(self.freed_bytes)}"

    def format_table(self) -> str:
        deleted_rows = [
            [item.kind, item.identifier, item.repository or "", item.status.value]
            for item in self.items
            if item.status in (ItemStatus.SUCCEEDED, ItemStatus.NOOP)
        ]
        problem_rows = [
            [
                item.kind,
                item.identifier,
                item.repository or "",
                item.status.value,
                item.error.details.get("error_message", item.error.message) if item.error else "",
            ]
            for item in self.items
            if item.status in (ItemStatus.FAILED, ItemStatus.SKIPPED)
        ]
        sections = [
            "Removed",
            format_table(deleted_rows, ["Kind", "Digest", "Repository", "Status"]),
            "",
            "Failed or skipped (re-run --confirm to retry)",
            format_table(problem_rows, ["Kind", "Digest", "Repository", "Status", "Error"]),
            "",
            self.summary(),
        ]
        return "\n".join(sections)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "summary": {
                "succeeded": len(self.succeeded),
                "noops": len(self.noops),
                "skipped": len(self.skipped),
                "failed": len(self.failed),
                "freed_bytes": self.freed_bytes,
            },
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class _Lane:
    """Items run one after another by a single worker, optionally under a lock."""

    items: List[Tuple[Hashable, Callable[[], bool]]]
    context: Optional[Callable[[], ContextManager]] = None
    abandoned: threading.Event = field(default_factory=threading.Event)
    finished: threading.Event = field(default_factory=threading.Event)
    # (item key, monotonic start) of the item in progress
    current: Optional[Tuple[Hashable, float]] = None


class PruneExecutor:
    """Executes the report and confirm phases of a PrunePlan."""

    def __init__(self, metadata_client, blob_store, max_workers: int = 4, timeout: float = 300):
        """
        Args:
            metadata_client: MetadataClient (or compatible) used to delete image records
            blob_store: FilesystemBlobStore (or compatible) used to delete blobs and links
            max_workers: Concurrent deletes
            timeout: Seconds allowed for a single delete
        """
        self.metadata = metadata_client
        self.blob_store = blob_store
        self.max_workers = max(1, max_workers)
        self.timeout = timeout
        self.logger = get_logger(__name__)

    # Report phase

    def report(self, plan: PrunePlan) -> str:
        """Render the plan as text. Touches nothing."""
        image_rows = [
            [
                image.digest,
                image.schema_version,
                image.created.strftime("%Y-%m-%d %H:%M:%S"),
                sizeof_fmt(image.size),
                ", ".join(image.repositories) or "(untagged)",
                "yes" if image.externally_imported else "",
            ]
            for image in plan.images
        ]
        owners: Dict[str, int] = {}
        for image in plan.images:
            for blob in image.blobs:
                owners[blob.digest] = owners.get(blob.digest, 0) + 1
        blob_rows = [
            [blob.digest, blob.kind, sizeof_fmt(blob.size), owners.get(blob.digest, 0)]
            for blob in plan.blob_deletions
        ]
        link_rows = [
            [repository, blob]
            for repository, blobs in plan.link_removals.items()
            for blob in blobs
        ]

        sections = [
            f"Images to prune ({len(image_rows)})",
            format_table(image_rows, ["Image", "Schema", "Created", "Size", "Repositories", "External"]),
            "",
            f"Blobs to delete ({len(blob_rows)})",
            format_table(blob_rows, ["Blob", "Kind", "Size", "Pruned images"]),
            "",
            f"Repository links to remove ({len(link_rows)})",
            format_table(link_rows, ["Repository", "Blob"]),
        ]
        if plan.warnings:
            sections += ["", "Warnings"] + [f"  - {warning}" for warning in plan.warnings]
        sections += [
            "",
            f"Summary: {len(image_rows)} images to prune, {plan.kept_count} kept, "
            f"{len(blob_rows)} blobs to delete ({sizeof_fmt(plan.reclaimable_bytes)} reclaimable), "
            f"{len(link_rows)} repository links to remove",
        ]
        return "\n".join(sections)

    # Confirm phase

    def _run_lanes(self, lanes: List[_Lane]) -> Dict[Hashable, Any]:
        """Run lanes on daemon worker threads; return item key -> result or exception.

        A lane whose current item exceeds the timeout is abandoned: its items
        are recorded as timed out and a fresh worker takes over the queue. The
        stuck call keeps its daemon thread, which never delays process exit.

        Raises:
            AuthorizationError: as soon as any item reports one
        """
        outcomes: Dict[Hashable, Any] = {}
        guard = threading.Lock()
        queue: Queue = Queue()
        for lane in lanes:
            queue.put(lane)

        def record(key, outcome):
            with guard:
                outcomes.setdefault(key, outcome)

        def run_lane(lane: _Lane) -> None:
            if lane.items:
                lane.current = (lane.items[0][0], time.monotonic())
            try:
                with lane.context() if lane.context else nullcontext():
                    for key, operation in lane.items:
                        if lane.abandoned.is_set():
                            return
                        lane.current = (key, time.monotonic())
                        try:
                            record(key, operation())
                        except AuthorizationError as e:
                            record(key, e)
                            return
                        except Exception as e:
                            record(key, e)
            except Exception as e:
                # Lock or setup failure: nothing in the lane ran
                for key, _ in lane.items:
                    record(key, e)
            finally:
                lane.current = None
                lane.finished.set()

        def work() -> None:
            while True:
                try:
                    lane = queue.get_nowait()
                except Empty:
                    return
                if lane.abandoned.is_set():
                    lane.finished.set()
                    continue
                run_lane(lane)

        def start_worker() -> None:
            threading.Thread(target=work, name=f"prune-worker-{next(_worker_ids)}", daemon=True).start()

        for _ in range(min(self.max_workers, len(lanes))):
            start_worker()

        pending = list(lanes)
        try:
            while pending:
                pending[0].finished.wait(POLL_INTERVAL)
                pending = [lane for lane in pending if not lane.finished.is_set()]
                with guard:
                    denied = next((o for o in outcomes.values() if isinstance(o, AuthorizationError)), None)
                if denied is not None:
                    raise denied

                now = time.monotonic()
                for lane in list(pending):
                    current = lane.current
                    if current is None or now - current[1] <= self.timeout:
                        continue
                    lane.abandoned.set()
                    pending.remove(lane)
                    for key, _ in lane.items:
                        record(key, TimeoutError(f"timed out after {self.timeout}s"))
                    start_worker()
        finally:
            for lane in lanes:
                lane.abandoned.set()
        return outcomes

    def _item(self, kind: str, identifier: str, repository: Optional[str], outcome: Any, size: int = 0) -> ItemResult:
        if isinstance(outcome, Exception):
            error = create_delete_error(kind, identifier, outcome, repository)
            self.logger.warning(f"{error.message}: {outcome}")
            return ItemResult(kind, identifier, repository, ItemStatus.FAILED, error=error)
        status = ItemStatus.SUCCEEDED if outcome else ItemStatus.NOOP
        return ItemResult(kind, identifier, repository, status, size=size if outcome else 0)

    def confirm(self, plan: PrunePlan) -> PruneResult:
        """Delete everything the plan lists.

        Raises:
            AuthorizationError: the metadata store or blob store refused a mutation
        """
        result = PruneResult(started_at=datetime.now(timezone.utc))
        if plan.is_empty():
            self.logger.info("Nothing to prune")
            result.finished_at = datetime.now(timezone.utc)
            return result

        self.blob_store.check_writable()

        # 1. Image metadata
        self.logger.info(f"Deleting {len(plan.images)} image records...")
        outcomes = self._run_lanes(
            [_Lane([((KIND_IMAGE, image.digest), partial(self.metadata.delete_image, image.digest))]) for image in plan.images]
        )
        failed_images = []
        for image in plan.images:
            item = self._item(KIND_IMAGE, image.digest, None, outcomes[(KIND_IMAGE, image.digest)])
            result.items.append(item)
            if item.status is ItemStatus.FAILED:
                failed_images.append(image)

        # Layers of an image that survived stay in place
        held_blobs = {blob.digest for image in failed_images for blob in image.blobs}
        held_links = {unlink for image in failed_images for unlink in image.unlinks}

        # 2. Global blob deletions
        blobs = [blob for blob in plan.blob_deletions if blob.digest not in held_blobs]
        self.logger.info(f"Deleting {len(blobs)} blobs...")
        outcomes = self._run_lanes(
            [_Lane([((KIND_BLOB, blob.digest), partial(self.blob_store.delete_blob, blob.digest))]) for blob in blobs]
        )
        for blob in plan.blob_deletions:
            if blob.digest in held_blobs:
                result.items.append(ItemResult(KIND_BLOB, blob.digest, None, ItemStatus.SKIPPED))
                continue
            result.items.append(self._item(KIND_BLOB, blob.digest, None, outcomes[(KIND_BLOB, blob.digest)], blob.size))

        # 3. Repository links
        lanes = []
        for repository, link_blobs in plan.link_removals.items():
            items = [
                ((KIND_LINK, repository, blob), partial(self.blob_store.unlink, repository, blob))
                for blob in link_blobs
                if (repository, blob) not in held_links
            ]
            if items:
                lanes.append(_Lane(items, context=partial(self.blob_store.repository_lock, repository)))
        self.logger.info(f"Removing repository links in {len(lanes)} repositories...")
        outcomes = self._run_lanes(lanes)
        for repository, link_blobs in plan.link_removals.items():
            for blob in link_blobs:
                if (repository, blob) in held_links:
                    result.items.append(ItemResult(KIND_LINK, blob, repository, ItemStatus.SKIPPED))
                    continue
                result.items.append(self._item(KIND_LINK, blob, repository, outcomes[(KIND_LINK, repository, blob)]))

        result.finished_at = datetime.now(timezone.utc)
        if result.failed:
            self.logger.warning(f"⚠️  {len(result.failed)} deletions failed: {result.summary()}")
        else:
            self.logger.info(f"✓ Confirm phase complete: {result.summary()}")
        return result


class RunState(Enum):
    BUILT = "built"
    CLASSIFIED = "classified"
    REPORT_EMITTED = "report_emitted"
    CONFIRMED = "confirmed"


class PruneRun:
    """One pruning run over one snapshot.

    BUILT -> CLASSIFIED -> REPORT_EMITTED (repeatable) -> CONFIRMED.
    Only confirm mutates external state, and only once per snapshot.
    """

    def __init__(self, graph, executor: PruneExecutor):
        self.graph = graph
        self.executor = executor
        self.state = RunState.BUILT
        self.plan: Optional[PrunePlan] = None
        self.result: Optional[PruneResult] = None

    def _require(self, action: str, *states: RunState) -> None:
        if self.state not in states:
            raise RuntimeError(f"Cannot {action} a run in state {self.state.value}")

    def classify(self, policy, in_use: Callable[[str], bool], now: datetime) -> PrunePlan:
        self._require("classify", RunState.BUILT)
        self.plan = build_plan(self.graph, policy, in_use, now)
        self.state = RunState.CLASSIFIED
        return self.plan

    def report(self) -> str:
        self._require("report", RunState.CLASSIFIED, RunState.REPORT_EMITTED)
        text = self.executor.report(self.plan)
        self.state = RunState.REPORT_EMITTED
        return text

    def confirm(self) -> PruneResult:
        self._require("confirm", RunState.CLASSIFIED, RunState.REPORT_EMITTED)
        self.result = self.executor.confirm(self.plan)
        self.state = RunState.CONFIRMED
        return self.result
