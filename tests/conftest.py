"""Shared fixtures for mapsync tests."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

import pytest
from PyQt5 import QtCore

from mapsync.config import EngineConfig
from mapsync.engine.controller import MapEngine
from mapsync.engine.filters import PredicateFilterSource
from mapsync.geo.feature import Feature, FeatureKind
from mapsync.geo.feature_store import FeatureStore
from mapsync.geo.projector import WebMercatorProjector

# Short windows so timer-driven behaviour resolves in tens of milliseconds.
# Interaction windows stay well above the animation durations.
FAST_CONFIG = EngineConfig().with_overrides(
    fade_out_ms=20,
    initial_reframe_ms=20,
    reframe_ms=30,
    settle_delay_ms=5,
    marker_fly_ms=30,
    cluster_fly_ms=30,
    repeat_click_ms=200,
    viewport_debounce_ms=5,
    filter_debounce_ms=20,
    refresh_debounce_ms=5,
    user_gesture_ms=80,
    marker_navigation_ms=150,
    filter_reframe_ms=150,
    programmatic_reframe_ms=150,
    retry_interval_ms=20,
    retry_attempts=3,
    filter_poll_ms=30,
    filter_poll_floor_ms=10,
)

HOME = (35.22, 31.85)


def wait_ms(ms: int) -> None:
    """Spin the Qt event loop for *ms* milliseconds."""
    loop = QtCore.QEventLoop()
    QtCore.QTimer.singleShot(ms, loop.quit)
    loop.exec_()


def features_at(projector, offsets, prefix="p", group_key=None):
    """Point features placed at pixel *offsets* from the viewport center."""
    w, h = projector.viewport_size()
    return [
        Feature(
            feature_id=f"{prefix}{i}",
            coordinate=tuple(projector.unproject((w / 2.0 + dx, h / 2.0 + dy))),
            name=f"Point {prefix}{i}",
            group_key=group_key,
        )
        for i, (dx, dy) in enumerate(offsets)
    ]


def spread_features(n: int, group_keys=("Hebron", "Bethlehem")):
    """*n* point features on a coarse grid around the home view."""
    features = []
    for i in range(n):
        lon = 34.6 + (i % 10) * 0.12
        lat = 31.2 + (i // 10) * 0.25
        features.append(Feature(
            feature_id=f"f{i}",
            coordinate=(lon, lat),
            name=f"Locality {i}",
            group_key=group_keys[i % len(group_keys)],
        ))
    return features


def group_label(key: str, coord=(35.1, 31.5)) -> Feature:
    return Feature(feature_id=f"group-{key}", coordinate=coord, name=key,
                   group_key=key, kind=FeatureKind.GROUP)


@pytest.fixture(scope="session", autouse=True)
def qapp():
    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])
    yield app


@pytest.fixture
def fast_config() -> EngineConfig:
    return FAST_CONFIG


@pytest.fixture
def projector():
    proj = WebMercatorProjector(center=HOME, zoom=8.33, viewport=(1280, 800))
    yield proj
    proj.jump_to(proj.current_center(), proj.current_zoom())


@pytest.fixture
def store() -> FeatureStore:
    return FeatureStore()


@pytest.fixture
def filter_source(store) -> PredicateFilterSource:
    return PredicateFilterSource(store)


@pytest.fixture
def sink() -> MagicMock:
    return MagicMock(name="selection_sink")


@pytest.fixture
def engine(projector, filter_source, sink, store, fast_config):
    eng = MapEngine(projector, filter_source, sink, config=fast_config, store=store)
    projector.fit_to = MagicMock(wraps=projector.fit_to)
    projector.fly_to = MagicMock(wraps=projector.fly_to)
    yield eng
    eng.shutdown()
    eng.slots.cancel_all()
