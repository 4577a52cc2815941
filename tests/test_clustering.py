"""Tests for screen-space clustering and cluster identity carry-over."""

from __future__ import annotations

import itertools
import math
from unittest.mock import MagicMock

import pytest

from conftest import FAST_CONFIG, features_at, wait_ms
from mapsync.engine.clustering import Cluster, ClusteringEngine, cluster_points
from mapsync.geo.feature import Feature, ProjectedPoint
from mapsync.geo.projector import WebMercatorProjector


def _points(*xy):
    return [ProjectedPoint(f"p{i}", p) for i, p in enumerate(xy)]


def _ids():
    counter = itertools.count(1)
    return lambda: f"cluster-{next(counter)}"


def _run(points, previous=(), threshold=60.0):
    return cluster_points(points, threshold, list(previous), lambda p: p, _ids())


def _partition(result):
    groups = [set(c.member_ids) for c in result.clusters]
    return groups, set(result.singletons)


# --------------------------------------------------------------------------
# Pure clustering pass
# --------------------------------------------------------------------------

class TestClusterPoints:
    def test_partition(self):
        result = _run(_points((0, 0), (10, 0), (100, 0), (105, 0), (300, 300)))
        groups, singles = _partition(result)
        assert groups == [{"p0", "p1"}, {"p2", "p3"}]
        assert singles == {"p4"}
        members = [m for g in groups for m in g] + list(singles)
        assert sorted(members) == ["p0", "p1", "p2", "p3", "p4"]

    def test_distance_measured_from_seed(self):
        # p2 is within T of p1 but not of the seed p0, so it does not chain
        result = _run(_points((0, 0), (50, 0), (100, 0)))
        groups, singles = _partition(result)
        assert groups == [{"p0", "p1"}]
        assert singles == {"p2"}

    def test_threshold_is_strict(self):
        result = _run(_points((0, 0), (60, 0)))
        assert result.clusters == []
        assert result.singletons == ["p0", "p1"]

    def test_centroid_is_mean(self):
        result = _run(_points((0, 0), (10, 0), (20, 30)))
        (cluster,) = result.clusters
        assert cluster.screen_centroid == pytest.approx((10.0, 10.0))
        assert cluster.geo_centroid == pytest.approx((10.0, 10.0))
        assert cluster.count == 3

    def test_identical_coordinates_cluster_deterministically(self):
        pts = _points((40, 40), (40, 40), (40, 40))
        a = _run(pts)
        b = _run(pts)
        assert [c.member_ids for c in a.clusters] == [c.member_ids for c in b.clusters]
        assert a.clusters[0].member_ids == frozenset({"p0", "p1", "p2"})

    def test_invalid_points_excluded(self):
        result = _run(_points((0, 0), (math.nan, 5), (5, 0), (math.inf, 0)))
        assert result.excluded == ["p1", "p3"]
        groups, singles = _partition(result)
        assert groups == [{"p0", "p2"}]
        assert singles == set()

    def test_zero_points_retires_previous(self):
        old = Cluster("cluster-9", frozenset({"a", "b"}), (0, 0), (0, 0))
        result = _run([], previous=[old])
        assert result.clusters == [] and result.singletons == []
        assert result.retired == [old]

    def test_unproject_failure_is_contained(self):
        def broken(_):
            raise RuntimeError("no map")

        result = cluster_points(_points((0, 0), (5, 0)), 60.0, [], broken, _ids())
        assert all(math.isnan(v) for v in result.clusters[0].geo_centroid)

    def test_cluster_needs_two_members(self):
        with pytest.raises(ValueError):
            Cluster("cluster-1", frozenset({"a"}), (0, 0), (0, 0))


class TestIdentity:
    def test_matched_cluster_keeps_id(self):
        old = Cluster("cluster-7", frozenset({"p0", "p1"}), (5, 0), (5, 0))
        result = _run(_points((1, 0), (11, 0)), previous=[old])
        assert [c.cluster_id for c in result.clusters] == ["cluster-7"]
        assert result.updated == ["cluster-7"]
        assert result.retired == []

    def test_far_cluster_gets_new_id_and_old_retires(self):
        old = Cluster("cluster-7", frozenset({"p0", "p1"}), (500, 500), (0, 0))
        result = _run(_points((0, 0), (10, 0)), previous=[old])
        assert result.created == ["cluster-1"]
        assert result.retired == [old]

    def test_nearest_previous_wins(self):
        far = Cluster("cluster-far", frozenset({"x", "y"}), (50, 0), (0, 0))
        near = Cluster("cluster-near", frozenset({"x", "z"}), (8, 0), (0, 0))
        result = _run(_points((0, 0), (10, 0)), previous=[far, near])
        assert result.clusters[0].cluster_id == "cluster-near"
        assert result.retired == [far]

    def test_first_claim_wins(self):
        shared = Cluster("cluster-3", frozenset({"a", "b"}), (50, 0), (0, 0))
        result = _run(_points((0, 0), (10, 0), (80, 0), (90, 0)), previous=[shared])
        ids = [c.cluster_id for c in result.clusters]
        assert ids[0] == "cluster-3"
        assert ids[1] != "cluster-3"

    def test_idempotent_on_unchanged_input(self):
        pts = _points((0, 0), (10, 0), (200, 0), (210, 0), (400, 0))
        first = _run(pts)
        second = cluster_points(pts, 60.0, first.clusters, lambda p: p, _ids())
        assert [(c.cluster_id, c.member_ids) for c in second.clusters] == \
            [(c.cluster_id, c.member_ids) for c in first.clusters]
        assert second.singletons == first.singletons
        assert second.created == [] and second.retired == []


# --------------------------------------------------------------------------
# ClusteringEngine on a live projector
# --------------------------------------------------------------------------

PLUS = [(0, 0), (10, 0), (0, 10), (-10, 0), (0, -10)]


@pytest.fixture
def proj():
    return WebMercatorProjector(center=(35.22, 31.85), zoom=10.0, viewport=(1280, 800))


@pytest.fixture
def clustering(proj):
    return ClusteringEngine(proj, FAST_CONFIG)


class TestClusteringEngine:
    def test_five_close_points_then_zoom_in(self, proj, clustering):
        features = features_at(proj, PLUS)
        result = clustering.recompute(features)
        assert len(result.clusters) == 1
        assert result.clusters[0].count == 5
        assert result.singletons == []

        retired = MagicMock()
        clustering.cluster_retired.connect(retired)
        proj.jump_to(proj.current_center(), 14.0)
        result = clustering.recompute(features)
        assert result.clusters == []
        assert sorted(result.singletons) == ["p0", "p1", "p2", "p3", "p4"]
        assert clustering.retiring == ("cluster-1",)
        retired.assert_not_called()

        wait_ms(FAST_CONFIG.fade_out_ms + 60)
        retired.assert_called_once_with("cluster-1")
        assert clustering.retiring == ()

    def test_identity_survives_small_pan(self, proj, clustering):
        features = features_at(proj, PLUS)
        first = clustering.recompute(features)
        cluster = first.clusters[0]
        lon, lat = proj.unproject((640 + 15, 400))
        proj.jump_to((lon, lat), 10.0)
        second = clustering.recompute(features)
        assert second.clusters[0].cluster_id == cluster.cluster_id
        assert second.clusters[0] is cluster
        assert cluster.screen_centroid[0] == pytest.approx(640 - 15, abs=1e-3)

    def test_recompute_is_idempotent(self, proj, clustering):
        features = features_at(proj, PLUS + [(300, 0), (305, 5), (-300, 0)])
        a = clustering.recompute(features)
        snapshot = [(c.cluster_id, c.member_ids) for c in a.clusters]
        b = clustering.recompute(features)
        assert [(c.cluster_id, c.member_ids) for c in b.clusters] == snapshot
        assert b.singletons == a.singletons
        assert b.created == [] and b.retired == []

    def test_cluster_lookup(self, proj, clustering):
        clustering.recompute(features_at(proj, PLUS))
        assert clustering.cluster("cluster-1").count == 5
        assert clustering.cluster_of("p3").cluster_id == "cluster-1"
        assert clustering.cluster_of("nope") is None

    def test_eligibility_cutover(self, proj, clustering):
        visibility = []
        clustering.visibility_changed.connect(visibility.append)
        features = features_at(proj, PLUS)
        clustering.recompute(features)
        assert visibility == [True]

        proj.jump_to(proj.current_center(), 8.9)
        result = clustering.recompute(features)
        assert result.hidden
        assert clustering.markers_hidden
        assert clustering.clusters == () and clustering.singletons == ()
        assert visibility == [True, False]

        proj.jump_to(proj.current_center(), 9.0)
        result = clustering.recompute(features)
        assert not result.hidden
        assert result.created == ["cluster-2"]

    def test_narrow_viewport_lowers_gate(self, proj, clustering):
        proj.set_viewport_size(400, 700)
        proj.jump_to(proj.current_center(), 8.0)
        assert clustering.markers_eligible()
        proj.set_viewport_size(1280, 800)
        assert not clustering.markers_eligible()

    def test_invalid_feature_excluded(self, proj, clustering):
        features = features_at(proj, [(0, 0), (400, 0)])
        features.append(Feature("broken", (math.nan, 31.0), "Broken"))
        result = clustering.recompute(features)
        assert result.excluded == ["broken"]
        assert sorted(result.singletons) == ["p0", "p1"]

    def test_projector_exception_excludes_feature(self, proj, clustering):
        features = features_at(proj, [(0, 0), (5, 0), (400, 0)])
        real = proj.project

        def flaky(coord):
            if coord == features[2].coordinate:
                raise RuntimeError("tile not loaded")
            return real(coord)

        proj.project = flaky
        result = clustering.recompute(features)
        assert result.excluded == ["p2"]
        assert len(result.clusters) == 1

    def test_clear_cancels_pending_fade(self, proj, clustering):
        retired = MagicMock()
        clustering.cluster_retired.connect(retired)
        features = features_at(proj, PLUS)
        clustering.recompute(features)
        proj.jump_to(proj.current_center(), 14.0)
        clustering.recompute(features)
        assert clustering.retiring == ("cluster-1",)

        clustering.clear()
        retired.assert_called_once_with("cluster-1")
        wait_ms(FAST_CONFIG.fade_out_ms + 60)
        retired.assert_called_once_with("cluster-1")

    def test_clear_releases_members(self, proj, clustering):
        updates = []
        clustering.clusters_updated.connect(lambda c, s: updates.append((c, s)))
        clustering.recompute(features_at(proj, PLUS + [(400, 0)]))
        clustering.clear()
        clusters, singles = updates[-1]
        assert clusters == []
        assert sorted(singles) == ["p0", "p1", "p2", "p3", "p4", "p5"]
        assert clustering.clusters == ()

    def test_reset_restarts_ids(self, proj, clustering):
        clustering.recompute(features_at(proj, PLUS))
        clustering.reset()
        result = clustering.recompute(features_at(proj, PLUS, prefix="q"))
        assert result.created == ["cluster-1"]
