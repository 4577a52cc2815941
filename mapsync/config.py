"""
Engine configuration.

Every tunable of the clustering / view-sync engine lives on one dataclass
so the host page (or a test) can build a single object and hand it to
``MapEngine``.  Values are in screen pixels, zoom levels, milliseconds and
fractions of the viewport.

A JSON file of overrides can be layered on top of the defaults:

    {
      "merge_threshold_px": 48,
      "max_fit_zoom": 12,
      "default_center": [35.22, 31.85]
    }

Usage
-----
    from mapsync.config import EngineConfig, load_config
    cfg = load_config(Path("engine.json"))
    min_zoom = cfg.min_marker_zoom(viewport_width=390)
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional, Tuple

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineConfig:
    """Tunables for clustering, reframing, debouncing and interaction windows."""

    # Clustering
    merge_threshold_px: float = 60.0
    fade_out_ms: int = 300

    # Eligibility gate (markers hidden below these zooms)
    min_zoom_wide: float = 9.0
    min_zoom_narrow: float = 7.5
    group_label_min_zoom: float = 6.0   # group labels shown when zoom > this
    narrow_breakpoint_px: int = 478

    # Default camera
    default_center: Tuple[float, float] = (35.22, 31.85)   # (lon, lat)
    default_zoom_wide: float = 8.33
    default_zoom_narrow: float = 7.5

    # Reframe
    padding_fraction: float = 0.15
    max_fit_zoom: float = 13.0
    initial_reframe_ms: int = 600
    reframe_ms: int = 1000
    settle_delay_ms: int = 50
    zoom_jump_clear: float = 1.0         # clear clusters if fit zooms in by more

    # Marker / cluster activation
    marker_zoom: float = 13.5
    marker_fly_ms: int = 1000
    cluster_zoom_step: float = 2.5
    cluster_fly_ms: int = 800
    repeat_click_ms: int = 1000

    # Debounce slots
    viewport_debounce_ms: int = 10
    filter_debounce_ms: int = 300
    refresh_debounce_ms: int = 50

    # Interaction reason windows
    user_gesture_ms: int = 500
    marker_navigation_ms: int = 1000
    filter_reframe_ms: int = 1000
    programmatic_reframe_ms: int = 1000

    # Projector-not-ready retry
    retry_interval_ms: int = 500
    retry_attempts: int = 3

    # Filter polling fallback
    filter_poll_ms: int = 1000
    filter_poll_floor_ms: int = 250

    def is_narrow(self, viewport_width: float) -> bool:
        return viewport_width <= self.narrow_breakpoint_px

    def min_marker_zoom(self, viewport_width: float) -> float:
        """Zoom below which no point marker is eligible for display."""
        if self.is_narrow(viewport_width):
            return self.min_zoom_narrow
        return self.min_zoom_wide

    def default_zoom(self, viewport_width: float) -> float:
        if self.is_narrow(viewport_width):
            return self.default_zoom_narrow
        return self.default_zoom_wide

    def with_overrides(self, **overrides) -> "EngineConfig":
        """Return a copy with *overrides* applied (unknown keys raise)."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise KeyError(f"Unknown engine config key(s): {', '.join(sorted(unknown))}")
        if "default_center" in overrides:
            lon, lat = overrides["default_center"]
            overrides["default_center"] = (float(lon), float(lat))
        return replace(self, **overrides)


def load_config(path: Optional[Path] = None) -> EngineConfig:
    """Load an ``EngineConfig`` from a JSON override file.

    With no path the built-in defaults are returned.
    """
    cfg = EngineConfig()
    if path is None:
        return cfg
    with Path(path).open("r", encoding="utf-8") as f:
        overrides = json.load(f)
    if not isinstance(overrides, dict):
        raise ValueError(f"Engine config {path} must contain a JSON object")
    log.info("Loaded %d engine config override(s) from %s", len(overrides), path)
    return cfg.with_overrides(**overrides)
