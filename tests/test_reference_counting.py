"""Tests for blob reference counting and plan attribution"""

from datetime import timedelta

from graph_fixtures import NOW, GraphFactory, ago, digest, nothing_in_use
from registry_pruner.models import DIGEST_SHA256_EMPTY, DIGEST_SHA256_GZIPPED_EMPTY_TAR, Image, StoredObject
from registry_pruner.plan import BLOB_KIND_CONFIG, BLOB_KIND_LAYER, BLOB_KIND_ORPHAN, build_plan
from registry_pruner.refcount import count_references
from registry_pruner.retention import RetentionPolicy, UntaggedPolicy, classify

KEEP_ONE = RetentionPolicy(keep_tag_revisions=1, keep_younger_than=timedelta(0))


def shared_layer_graph():
    """team/app:latest has two revisions; old uses L0+L1, new uses L0+L2."""
    factory = GraphFactory()
    factory.image("old", ago(days=10), layers=["L0", "L1"], config="C-old")
    factory.image("new", ago(days=1), layers=["L0", "L2"], config="C-new")
    factory.repository("team/app", {"latest": ["old", "new"]})
    return factory.graph


class TestGlobalCandidacy:
    """Tests for global deletion candidates"""

    def test_only_unreferenced_blobs_are_candidates(self):
        graph = shared_layer_graph()
        references = count_references(graph, classify(graph, KEEP_ONE, nothing_in_use, NOW))

        assert references.deletion_candidates == {digest("L1"), digest("C-old")}
        assert references.is_globally_referenced(digest("L0"))
        assert not references.is_globally_referenced(digest("L1"))

    def test_soundness_no_candidate_is_referenced_by_keep_image(self):
        graph = shared_layer_graph()
        classification = classify(graph, KEEP_ONE, nothing_in_use, NOW)
        references = count_references(graph, classification)

        for blob in references.deletion_candidates:
            assert not any(classification.is_kept(image) for image in graph.blob_images[blob])

    def test_completeness_every_unreferenced_blob_is_candidate(self):
        graph = shared_layer_graph()
        classification = classify(graph, KEEP_ONE, nothing_in_use, NOW)
        references = count_references(graph, classification)

        for blob, images in graph.blob_images.items():
            if not any(classification.is_kept(image) for image in images):
                assert blob in references.deletion_candidates

    def test_blob_kept_by_image_in_other_repository(self):
        factory = GraphFactory()
        factory.image("x-old", ago(days=10), layers=["shared", "x-only"])
        factory.image("x-new", ago(days=1), layers=["x-new-layer"])
        factory.image("y-current", ago(days=1), layers=["shared"])
        factory.repository("ns/x", {"latest": ["x-old", "x-new"]})
        factory.repository("ns/y", {"latest": ["y-current"]})
        graph = factory.graph

        references = count_references(graph, classify(graph, KEEP_ONE, nothing_in_use, NOW))

        assert not references.is_deletion_candidate(digest("shared"))
        assert references.is_unlink_candidate(digest("shared"), "ns/x")
        assert not references.is_unlink_candidate(digest("shared"), "ns/y")
        assert references.is_repository_referenced(digest("shared"), "ns/y")
        assert not references.is_repository_referenced(digest("shared"), "ns/x")

    def test_untagged_keep_image_protects_its_blobs(self):
        factory = GraphFactory()
        factory.image("old", ago(days=10), layers=["L1"])
        factory.image("new", ago(days=1), layers=["L2"])
        factory.image("orphan", ago(minutes=1), layers=["L1"])
        factory.repository("team/app", {"latest": ["old", "new"]})
        graph = factory.graph
        policy = RetentionPolicy(keep_tag_revisions=1, keep_younger_than=timedelta(hours=1))

        references = count_references(graph, classify(graph, policy, nothing_in_use, NOW))

        assert not references.is_deletion_candidate(digest("L1"))
        # Untagged images belong to no repository, so the link in team/app can go
        assert references.is_unlink_candidate(digest("L1"), "team/app")

    def test_pinned_blobs_never_candidates(self):
        graph = shared_layer_graph()
        graph.pinned_blobs.add(digest("L1"))

        references = count_references(graph, classify(graph, KEEP_ONE, nothing_in_use, NOW))

        assert not references.is_deletion_candidate(digest("L1"))
        assert not references.is_unlink_candidate(digest("L1"), "team/app")
        assert references.is_globally_referenced(digest("L1"))


class TestEmptyAndSchemaDigests:
    """Tests for empty digests and manifest schema differences"""

    def test_empty_digests_excluded_from_graph_and_plan(self):
        factory = GraphFactory()
        graph = factory.graph
        for name, days in (("old", 10), ("new", 1)):
            graph.add_image(
                Image(
                    digest=digest(name),
                    schema_version=1,
                    created=ago(days=days),
                    layers=(DIGEST_SHA256_GZIPPED_EMPTY_TAR, digest(f"layer-{name}"), DIGEST_SHA256_EMPTY),
                ),
                {},
            )
        factory.repository("team/app", {"latest": ["old", "new"]})

        plan = build_plan(graph, KEEP_ONE, nothing_in_use, NOW)

        assert DIGEST_SHA256_EMPTY not in graph.blobs
        assert DIGEST_SHA256_GZIPPED_EMPTY_TAR not in graph.blob_images
        assert [blob.digest for blob in plan.blob_deletions] == [digest("layer-old")]

    def test_schema1_has_no_config_blob(self):
        factory = GraphFactory()
        factory.image("old", ago(days=10), layers=["L1"], config="ignored", schema_version=1)
        factory.image("new", ago(days=1), layers=["L2"])
        factory.repository("team/app", {"latest": ["old", "new"]})

        plan = build_plan(factory.graph, KEEP_ONE, nothing_in_use, NOW)

        assert [(b.digest, b.kind) for b in plan.blob_deletions] == [(digest("L1"), BLOB_KIND_LAYER)]

    def test_schema2_config_blob_reported_as_config(self):
        plan = build_plan(shared_layer_graph(), KEEP_ONE, nothing_in_use, NOW)

        kinds = {blob.digest: blob.kind for blob in plan.blob_deletions}
        assert kinds[digest("C-old")] == BLOB_KIND_CONFIG
        assert kinds[digest("L1")] == BLOB_KIND_LAYER


class TestPlan:
    """Tests for the plan value shared by report and confirm"""

    def test_plan_attributes_blobs_to_pruned_image(self):
        plan = build_plan(shared_layer_graph(), KEEP_ONE, nothing_in_use, NOW)

        assert plan.image_digests == [digest("old")]
        (image,) = plan.images
        assert image.repositories == ("team/app",)
        assert {blob.digest for blob in image.blobs} == {digest("L1"), digest("C-old")}
        assert set(image.unlinks) == {("team/app", digest("L1")), ("team/app", digest("C-old"))}
        assert plan.reclaimable_bytes == 200

    def test_plan_is_deterministic(self):
        graph = shared_layer_graph()
        assert build_plan(graph, KEEP_ONE, nothing_in_use, NOW) == build_plan(graph, KEEP_ONE, nothing_in_use, NOW)

    def test_shared_candidate_listed_once(self):
        factory = GraphFactory()
        factory.image("a", ago(days=10), layers=["common"])
        factory.image("b", ago(days=9), layers=["common"])
        factory.image("c", ago(days=1), layers=["fresh"])
        factory.repository("team/app", {"latest": ["a", "b", "c"]})

        plan = build_plan(factory.graph, KEEP_ONE, nothing_in_use, NOW)

        assert [blob.digest for blob in plan.blob_deletions] == [digest("common")]
        assert plan.link_removals == {"team/app": [digest("common")]}

    def test_to_dict_summary(self):
        plan = build_plan(shared_layer_graph(), KEEP_ONE, nothing_in_use, NOW)

        data = plan.to_dict()

        assert data["summary"]["images_pruned"] == 1
        assert data["summary"]["images_kept"] == 1
        assert data["summary"]["blobs_deleted"] == 2
        assert data["policy"]["keep_tag_revisions"] == 1


def stored(days_old, size=100):
    return StoredObject(modified=ago(days=days_old), size=size)


def with_storage(graph, blobs, links):
    """Record blob store contents on a graph the way the builder's scan does."""
    graph.stored_blobs.update({digest(name): stored(days) for name, days in blobs.items()})
    for repository, names in links.items():
        graph.stored_links[repository] = {digest(name): stored(days) for name, days in names.items()}
    return graph


class TestOrphanedStorage:
    """Tests for blobs and links that no image record references"""

    def test_unreferenced_stored_blob_and_links_are_collected(self):
        graph = with_storage(
            shared_layer_graph(),
            blobs={"L0": 30, "L1": 30, "L2": 30, "C-old": 30, "C-new": 30, "leftover": 30},
            links={"team/app": {"L0": 30, "L1": 30, "leftover": 30}, "team/gone": {"L2": 30}},
        )

        plan = build_plan(graph, KEEP_ONE, nothing_in_use, NOW)

        kinds = {blob.digest: blob.kind for blob in plan.blob_deletions}
        assert kinds[digest("leftover")] == BLOB_KIND_ORPHAN
        assert set(kinds) == {digest("L1"), digest("C-old"), digest("leftover")}
        assert digest("leftover") in plan.link_removals["team/app"]
        assert digest("L0") not in plan.link_removals["team/app"]
        assert plan.link_removals["team/gone"] == [digest("L2")]
        assert plan.to_dict()["orphans"]["blobs"] == [{"digest": digest("leftover"), "size": 100}]

    def test_orphans_alone_make_a_plan(self):
        factory = GraphFactory()
        factory.image("current", ago(days=1), layers=["L1"])
        factory.repository("team/app", {"latest": ["current"]})
        graph = with_storage(factory.graph, blobs={"L1": 30, "leftover": 30}, links={"team/app": {"L1": 30}})

        plan = build_plan(graph, KEEP_ONE, nothing_in_use, NOW)

        assert plan.images == ()
        assert not plan.is_empty()
        assert [blob.digest for blob in plan.blob_deletions] == [digest("leftover")]
        assert plan.link_removals == {}

    def test_recent_orphans_are_left_alone(self):
        graph = with_storage(
            shared_layer_graph(),
            blobs={"leftover": 5},
            links={"team/app": {"leftover": 5}},
        )
        policy = RetentionPolicy(keep_tag_revisions=1, keep_younger_than=timedelta(days=7))

        references = count_references(graph, classify(graph, policy, nothing_in_use, NOW), settled_before=ago(days=7))

        assert references.orphan_blobs == frozenset()
        assert references.orphan_links == frozenset()

    def test_pinned_and_empty_blobs_never_collected(self):
        graph = with_storage(shared_layer_graph(), blobs={"pinned": 30}, links={"team/app": {"pinned": 30}})
        graph.pinned_blobs.add(digest("pinned"))
        graph.stored_blobs[DIGEST_SHA256_EMPTY] = stored(30)
        graph.stored_links["team/app"][DIGEST_SHA256_GZIPPED_EMPTY_TAR] = stored(30)

        references = count_references(graph, classify(graph, KEEP_ONE, nothing_in_use, NOW), settled_before=NOW)

        assert references.orphan_blobs == frozenset()
        assert references.orphan_links == frozenset()

    def test_namespace_run_keeps_orphan_blobs_and_other_namespaces(self):
        graph = with_storage(
            shared_layer_graph(),
            blobs={"leftover": 30},
            links={"team/app": {"leftover": 30}, "other/repo": {"leftover": 30}},
        )
        graph.namespace = "team"

        references = count_references(graph, classify(graph, KEEP_ONE, nothing_in_use, NOW), settled_before=NOW)

        assert references.orphan_blobs == frozenset()
        assert references.orphan_links == frozenset({(digest("leftover"), "team/app")})

    def test_kept_untagged_image_keeps_its_links(self):
        factory = GraphFactory()
        factory.image("current", ago(days=1), layers=["L1"])
        factory.image("loose", ago(days=10), layers=["L9"])
        factory.repository("team/app", {"latest": ["current"]})
        graph = with_storage(factory.graph, blobs={"L1": 30, "L9": 30}, links={"team/app": {"L1": 30, "L9": 30}})

        kept = RetentionPolicy(keep_tag_revisions=1, keep_younger_than=timedelta(0), untagged=UntaggedPolicy.KEEP)
        pruned = RetentionPolicy(keep_tag_revisions=1, keep_younger_than=timedelta(0), untagged=UntaggedPolicy.PRUNE)

        assert build_plan(graph, kept, nothing_in_use, NOW).link_removals == {}
        assert build_plan(graph, pruned, nothing_in_use, NOW).link_removals == {"team/app": [digest("L9")]}
