"""
Workload-reference collaborator backed by the Kubernetes API.

Collects the image references of active workloads: running and pending pods
(container specs and the image IDs the runtime resolved) and the pod templates
of Deployments, StatefulSets, DaemonSets, Jobs and CronJobs. Digest references
are used as-is; tag references to this registry resolve to the newest revision
of the tag in the snapshot. The result is injected into the retention
evaluator as the `is_in_use` predicate.
"""

import os
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Iterable, List, Optional, Set, Tuple

from kubernetes import client, config

from registry_pruner.config_manager import ConfigManager, config_manager
from registry_pruner.error_utils import ActionableError, create_kubernetes_error
from registry_pruner.graph import is_valid_digest
from registry_pruner.logging_utils import get_logger
from registry_pruner.models import ImageGraph, repository_key
from registry_pruner.retry_utils import retry_from_config

logger = get_logger(__name__)

ACTIVE_POD_PHASES = ("Running", "Pending")
LIST_PAGE_SIZE = 500


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None


def _normalize_registry(url: str) -> str:
    for scheme in ("https://", "http://"):
        if url.startswith(scheme):
            url = url[len(scheme):]
    return url.rstrip("/")


def parse_image_reference(image: str) -> Optional[ImageReference]:
    """Split `registry/namespace/name[:tag][@digest]` into its parts.

    Returns None for references without a registry host, which can never
    point at this registry.
    """
    if not image:
        return None
    # Runtime image IDs look like docker-pullable://host/ns/name@sha256:...
    if "://" in image:
        image = image.split("://", 1)[1]

    digest = None
    if "@" in image:
        image, digest = image.rsplit("@", 1)
        if not is_valid_digest(digest):
            return None

    registry, sep, remainder = image.partition("/")
    # The first component is a host only if it looks like one
    if not sep or not ("." in registry or ":" in registry or registry == "localhost"):
        return None

    tag = None
    last_slash = remainder.rfind("/")
    if ":" in remainder[last_slash + 1 :]:
        remainder, tag = remainder.rsplit(":", 1)
    if digest is None and tag is None:
        tag = "latest"
    return ImageReference(registry=registry, repository=remainder, tag=tag, digest=digest)


@dataclass(frozen=True)
class InUseDigests:
    """Image digests referenced by active workloads."""

    digests: FrozenSet[str] = frozenset()

    def is_in_use(self, digest: str) -> bool:
        return digest in self.digests


NOTHING_IN_USE = InUseDigests()


@dataclass
class WorkloadReferences:
    """Raw references collected from the cluster, before resolution against a snapshot."""

    registry: str = ""
    digests: Set[str] = field(default_factory=set)
    # (repository key, tag)
    tags: Set[Tuple[str, str]] = field(default_factory=set)

    def add_image(self, image: Optional[str]) -> None:
        if not image:
            return
        if is_valid_digest(image):
            # Bare runtime image IDs
            self.digests.add(image)
            return
        reference = parse_image_reference(image)
        if reference is None:
            return
        if reference.digest:
            self.digests.add(reference.digest)
        elif reference.registry == self.registry and "/" in reference.repository:
            namespace, name = reference.repository.split("/", 1)
            self.tags.add((repository_key(namespace, name), reference.tag))

    def resolve(self, graph: ImageGraph) -> InUseDigests:
        digests = set(self.digests)
        for repo_key, tag in sorted(self.tags):
            if repo_key not in graph.repositories:
                continue
            history = graph.ordered_history(repo_key, tag)
            if history:
                digests.add(history[0])
            else:
                logger.debug(f"Workload references unknown tag {repo_key}:{tag}")
        return InUseDigests(frozenset(digests))


def load_kubernetes_config() -> None:
    """Load in-cluster config when running in a pod, kubeconfig otherwise."""
    in_cluster = bool(
        os.environ.get("KUBERNETES_SERVICE_HOST")
        or os.path.exists("/var/run/secrets/kubernetes.io/serviceaccount/token")
    )
    try:
        if in_cluster:
            config.load_incluster_config()
            logger.info("Kubernetes client initialized with in-cluster config")
        else:
            config.load_kube_config()
            logger.info("Kubernetes client initialized from local kubeconfig")
    except Exception as e:
        try:
            config.load_incluster_config()
            logger.info("Kubernetes client fallback to in-cluster config succeeded")
        except Exception as e2:
            logger.error(f"Failed to initialize Kubernetes client: {e}; fallback error: {e2}")
            raise create_kubernetes_error("load cluster configuration", e) from e2


def _pod_spec_images(pod_spec) -> List[str]:
    if pod_spec is None:
        return []
    images = []
    for attribute in ("containers", "init_containers", "ephemeral_containers"):
        containers = getattr(pod_spec, attribute, None)
        for container in containers or []:
            images.append(container.image)
    return images


def _pod_status_images(status) -> List[str]:
    if status is None:
        return []
    images = []
    for attribute in ("container_statuses", "init_container_statuses"):
        for container_status in getattr(status, attribute, None) or []:
            images.append(container_status.image_id)
            images.append(container_status.image)
    return images


class WorkloadCollector:
    """Collect image references of active workloads."""

    def __init__(
        self,
        registry_url: Optional[str] = None,
        namespaces: Optional[Iterable[str]] = None,
        core_v1=None,
        apps_v1=None,
        batch_v1=None,
        config: Optional[ConfigManager] = None,
    ):
        self.config = config or config_manager
        self.registry = _normalize_registry(registry_url or self.config.get_registry_url())
        self.namespaces = list(namespaces if namespaces is not None else self.config.get_workload_namespaces())
        if core_v1 is None or apps_v1 is None or batch_v1 is None:
            load_kubernetes_config()
        self.core_v1 = core_v1 or client.CoreV1Api()
        self.apps_v1 = apps_v1 or client.AppsV1Api()
        self.batch_v1 = batch_v1 or client.BatchV1Api()

    def _list(self, operation_name: str, list_all: Callable, list_namespaced: Callable) -> List:
        """List a resource kind across the configured namespaces, following pagination."""
        calls = []
        if self.namespaces:
            for namespace in self.namespaces:
                calls.append((f"{operation_name} in {namespace}", list_namespaced, {"namespace": namespace}))
        else:
            calls.append((operation_name, list_all, {}))

        items = []
        for name, list_fn, kwargs in calls:
            continue_token = None
            while True:
                page_kwargs = dict(kwargs, limit=LIST_PAGE_SIZE)
                if continue_token:
                    page_kwargs["_continue"] = continue_token
                try:
                    response = retry_from_config(
                        self.config, lambda: list_fn(**page_kwargs), name
                    )
                except ActionableError:
                    raise
                except Exception as e:
                    raise create_kubernetes_error(name, e) from e
                items.extend(response.items or [])
                continue_token = getattr(response.metadata, "_continue", None) if response.metadata else None
                if not continue_token:
                    break
        return items

    def collect(self) -> WorkloadReferences:
        """
        Raises:
            FetchError: the cluster API is unreachable
            AuthorizationError: the caller may not list workloads
        """
        references = WorkloadReferences(registry=self.registry)

        pods = self._list("list pods", self.core_v1.list_pod_for_all_namespaces, self.core_v1.list_namespaced_pod)
        active = 0
        for pod in pods:
            if pod.status is None or pod.status.phase not in ACTIVE_POD_PHASES:
                continue
            active += 1
            for image in _pod_spec_images(pod.spec) + _pod_status_images(pod.status):
                references.add_image(image)

        templates = []
        for kind, list_all, list_namespaced in (
            ("deployments", self.apps_v1.list_deployment_for_all_namespaces, self.apps_v1.list_namespaced_deployment),
            ("statefulsets", self.apps_v1.list_stateful_set_for_all_namespaces, self.apps_v1.list_namespaced_stateful_set),
            ("daemonsets", self.apps_v1.list_daemon_set_for_all_namespaces, self.apps_v1.list_namespaced_daemon_set),
            ("jobs", self.batch_v1.list_job_for_all_namespaces, self.batch_v1.list_namespaced_job),
        ):
            for item in self._list(f"list {kind}", list_all, list_namespaced):
                templates.append(item.spec.template if item.spec else None)

        cron_jobs = self._list(
            "list cronjobs", self.batch_v1.list_cron_job_for_all_namespaces, self.batch_v1.list_namespaced_cron_job
        )
        for cron_job in cron_jobs:
            job_template = cron_job.spec.job_template if cron_job.spec else None
            if job_template is not None and job_template.spec is not None:
                templates.append(job_template.spec.template)

        for template in templates:
            if template is not None:
                for image in _pod_spec_images(template.spec):
                    references.add_image(image)

        logger.info(
            f"Collected workload references from {active} active pods and {len(templates)} pod templates: "
            f"{len(references.digests)} digests, {len(references.tags)} tags"
        )
        return references
