"""
Retention Policy Evaluator.

`classify` is a pure function of (graph, policy, in-use predicate, now): the
report run and the confirm run against the same snapshot classify every image
identically.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Dict, Set, Union

from registry_pruner.error_utils import create_policy_error
from registry_pruner.models import ImageGraph


class UntaggedPolicy(Enum):
    """What to do with images no tag references anymore."""

    AGE = "age"  # prune once older than keep_younger_than
    PRUNE = "prune"  # prune regardless of age
    KEEP = "keep"  # never prune


class Decision(Enum):
    KEEP = "keep"
    PRUNE = "prune"


# Reasons recorded for each decision
REASON_REVISION = "revision"
REASON_YOUNGER = "younger"
REASON_OUT_OF_SCOPE = "out-of-scope"
REASON_IN_USE = "in-use"
REASON_EXTERNAL = "external"
REASON_UNTAGGED_KEPT = "untagged"
REASON_PRUNE = "unreferenced"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}


def parse_duration(value: Union[str, int, float, timedelta]) -> timedelta:
    """Parse a --keep-younger-than value such as "0", "90s", "60m", "1h30m" or "7d".

    A number without a unit is only accepted when it is zero.

    Raises:
        PolicyError: if the value cannot be parsed or is negative
    """
    if isinstance(value, timedelta):
        duration = value
    elif isinstance(value, bool):
        raise create_policy_error("keep_younger_than", value, "must be a duration")
    elif isinstance(value, (int, float)):
        if value != 0:
            raise create_policy_error("keep_younger_than", value, "needs a unit (s, m, h or d) unless it is 0")
        duration = timedelta(0)
    elif isinstance(value, str):
        text = value.strip().lower()
        if re.fullmatch(r"\d+(?:\.\d+)?", text):
            if float(text) != 0:
                raise create_policy_error("keep_younger_than", value, "needs a unit (s, m, h or d) unless it is 0")
            duration = timedelta(0)
        elif text and _DURATION_PART.sub("", text) == "":
            duration = timedelta()
            for amount, unit in _DURATION_PART.findall(text):
                duration += float(amount) * _DURATION_UNITS[unit]
        else:
            raise create_policy_error("keep_younger_than", value, "is not a valid duration")
    else:
        raise create_policy_error("keep_younger_than", value, "must be a duration")

    if duration < timedelta(0):
        raise create_policy_error("keep_younger_than", value, "must not be negative")
    return duration


@dataclass(frozen=True)
class RetentionPolicy:
    keep_tag_revisions: int = 3
    keep_younger_than: timedelta = timedelta(minutes=60)
    prune_externally_imported: bool = True
    untagged: UntaggedPolicy = UntaggedPolicy.AGE

    def validate(self) -> None:
        """Raises PolicyError for parameters the evaluator cannot honor."""
        if isinstance(self.keep_tag_revisions, bool) or not isinstance(self.keep_tag_revisions, int):
            raise create_policy_error("keep_tag_revisions", self.keep_tag_revisions, "must be an integer")
        if self.keep_tag_revisions < 0:
            raise create_policy_error("keep_tag_revisions", self.keep_tag_revisions, "must not be negative")
        if not isinstance(self.keep_younger_than, timedelta):
            raise create_policy_error("keep_younger_than", self.keep_younger_than, "must be a duration")
        if self.keep_younger_than < timedelta(0):
            raise create_policy_error("keep_younger_than", self.keep_younger_than, "must not be negative")
        if not isinstance(self.prune_externally_imported, bool):
            raise create_policy_error(
                "prune_externally_imported", self.prune_externally_imported, "must be a boolean"
            )
        if not isinstance(self.untagged, UntaggedPolicy):
            raise create_policy_error("untagged_images", self.untagged, "is not a known policy")

    @classmethod
    def from_values(
        cls,
        keep_tag_revisions,
        keep_younger_than,
        prune_externally_imported: bool = True,
        untagged: Union[str, UntaggedPolicy] = UntaggedPolicy.AGE,
    ) -> "RetentionPolicy":
        """Build and validate a policy from CLI/config values."""
        if isinstance(untagged, str):
            try:
                untagged = UntaggedPolicy(untagged.lower())
            except ValueError:
                raise create_policy_error("untagged_images", untagged, "is not a known policy")
        policy = cls(
            keep_tag_revisions=keep_tag_revisions,
            keep_younger_than=parse_duration(keep_younger_than),
            prune_externally_imported=prune_externally_imported,
            untagged=untagged,
        )
        policy.validate()
        return policy


@dataclass(frozen=True)
class Classification:
    decisions: Dict[str, Decision] = field(default_factory=dict)
    reasons: Dict[str, str] = field(default_factory=dict)

    @property
    def keep(self) -> Set[str]:
        return {digest for digest, decision in self.decisions.items() if decision is Decision.KEEP}

    @property
    def prune(self) -> Set[str]:
        return {digest for digest, decision in self.decisions.items() if decision is Decision.PRUNE}

    def decision(self, digest: str) -> Decision:
        return self.decisions[digest]

    def reason(self, digest: str) -> str:
        return self.reasons[digest]

    def is_kept(self, digest: str) -> bool:
        return self.decisions.get(digest) is Decision.KEEP


def _is_young(graph: ImageGraph, digest: str, policy: RetentionPolicy, now: datetime) -> bool:
    if policy.keep_younger_than <= timedelta(0):
        return False
    return now - graph.images[digest].created < policy.keep_younger_than


def classify(
    graph: ImageGraph,
    policy: RetentionPolicy,
    in_use: Callable[[str], bool],
    now: datetime,
) -> Classification:
    """Classify every image of the graph as KEEP or PRUNE.

    Args:
        graph: Snapshot built for this run
        policy: Validated retention policy
        in_use: Predicate telling whether a digest is used by an active workload
        now: Reference time for age computations (timezone-aware)
    """
    reasons: Dict[str, str] = {}

    for repo_key in sorted(graph.repositories):
        repository = graph.repositories[repo_key]
        for tag in sorted(repository.tags):
            for rank, digest in enumerate(graph.ordered_history(repo_key, tag)):
                if digest in reasons:
                    continue
                if not repository.in_scope:
                    reasons[digest] = REASON_OUT_OF_SCOPE
                elif rank < policy.keep_tag_revisions:
                    reasons[digest] = REASON_REVISION
                elif _is_young(graph, digest, policy, now):
                    reasons[digest] = REASON_YOUNGER

    scoped = all(repository.in_scope for repository in graph.repositories.values())
    for digest in graph.untagged_images():
        if not scoped:
            reasons[digest] = REASON_OUT_OF_SCOPE
        elif policy.untagged is UntaggedPolicy.KEEP:
            reasons[digest] = REASON_UNTAGGED_KEPT
        elif policy.untagged is UntaggedPolicy.AGE and _is_young(graph, digest, policy, now):
            reasons[digest] = REASON_YOUNGER

    decisions: Dict[str, Decision] = {}
    for digest in sorted(graph.images):
        if digest in reasons:
            decisions[digest] = Decision.KEEP
        elif in_use(digest):
            decisions[digest] = Decision.KEEP
            reasons[digest] = REASON_IN_USE
        elif graph.images[digest].externally_imported and not policy.prune_externally_imported:
            decisions[digest] = Decision.KEEP
            reasons[digest] = REASON_EXTERNAL
        else:
            decisions[digest] = Decision.PRUNE
            reasons[digest] = REASON_PRUNE

    return Classification(decisions=decisions, reasons=reasons)
