"""
Geometry projector — coordinate ↔ screen mapping plus camera control.

The engine treats the projector as an external collaborator: it only
reads the current view and issues fit / fly commands.  ``GeometryProjector``
is that contract; ``WebMercatorProjector`` is a headless reference
implementation (Web Mercator, 512 px world tiles like Mapbox GL) that the
CLI and the test-suite drive.

Camera moves are animated on the Qt event loop with a QTimer, easing the
center and zoom from the current view to the target.  Starting a new move
while one is in flight cancels the old one outright: its ``on_settled``
callback never fires.

Coordinate system
─────────────────
  lon/lat (EPSG:4326) → Web Mercator metres (EPSG:3857) → world pixels at
  the current zoom → viewport pixels, origin top-left, +y down.

Usage
-----
    proj = WebMercatorProjector(center=(35.22, 31.85), zoom=8.33,
                                viewport=(1280, 800))
    proj.view_settled.connect(on_settled)
    x, y = proj.project((35.2, 31.9))
    proj.fly_to((35.0, 32.0), 11.0, duration_ms=800)
"""
from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import pyproj
from PyQt5 import QtCore

from .bounds import Bounds
from .feature import Coordinate, ScreenPoint

log = logging.getLogger(__name__)

WGS84 = pyproj.CRS("EPSG:4326")
WEB_MERCATOR = pyproj.CRS("EPSG:3857")

_to_merc = pyproj.Transformer.from_crs(WGS84, WEB_MERCATOR, always_xy=True)
_to_lonlat = pyproj.Transformer.from_crs(WEB_MERCATOR, WGS84, always_xy=True)

HALF_WORLD_M = 20037508.342789244
TILE_SIZE_PX = 512.0
MAX_LAT = 85.0511287798
MIN_ZOOM = 0.0
MAX_ZOOM = 22.0

SettledCallback = Callable[["ViewState"], None]


@dataclass(frozen=True)
class ViewState:
    """Camera state owned by the projector."""
    center: Coordinate
    zoom: float
    is_animating: bool = False


def _clamp_zoom(zoom: float) -> float:
    return max(MIN_ZOOM, min(MAX_ZOOM, zoom))


def _world_px(zoom: float) -> float:
    return TILE_SIZE_PX * (2.0 ** zoom)


class GeometryProjector(QtCore.QObject):
    """Contract consumed by the engine.

    Signals
    -------
    view_settled(ViewState)
        Emitted once a camera movement (animated or immediate) has fully
        applied the new view.
    """

    view_settled = QtCore.pyqtSignal(object)

    def is_ready(self) -> bool:
        raise NotImplementedError

    def project(self, coord: Coordinate) -> ScreenPoint:
        raise NotImplementedError

    def unproject(self, point: ScreenPoint) -> Coordinate:
        raise NotImplementedError

    def current_zoom(self) -> float:
        raise NotImplementedError

    def view_state(self) -> ViewState:
        raise NotImplementedError

    def viewport_size(self) -> Tuple[float, float]:
        raise NotImplementedError

    def camera_for_bounds(
        self, bounds: Bounds, padding_fraction: float, max_zoom: float,
    ) -> Tuple[Coordinate, float]:
        raise NotImplementedError

    def fit_to(
        self,
        bounds: Bounds,
        padding_fraction: float,
        max_zoom: float,
        duration_ms: int,
        on_settled: Optional[SettledCallback] = None,
    ) -> None:
        raise NotImplementedError

    def fly_to(
        self,
        center: Coordinate,
        zoom: float,
        duration_ms: int,
        on_settled: Optional[SettledCallback] = None,
    ) -> None:
        raise NotImplementedError


class WebMercatorProjector(GeometryProjector):
    """Headless Web Mercator camera with eased QTimer animation."""

    _FRAME_MS = 16

    def __init__(
        self,
        center: Coordinate = (0.0, 0.0),
        zoom: float = 2.0,
        viewport: Tuple[float, float] = (1280.0, 800.0),
        ready: bool = True,
        parent: Optional[QtCore.QObject] = None,
    ):
        super().__init__(parent)
        self._center_m = self._lonlat_to_merc(center)
        self._zoom = _clamp_zoom(zoom)
        self._viewport = (float(viewport[0]), float(viewport[1]))
        self._ready = ready

        self._anim_timer = QtCore.QTimer(self)
        self._anim_timer.setInterval(self._FRAME_MS)
        self._anim_timer.timeout.connect(self._animate_step)

        self._anim_start_time = 0.0
        self._anim_duration = 0.0
        self._anim_from: Optional[Tuple[float, float, float]] = None
        self._anim_to: Optional[Tuple[float, float, float]] = None
        self._on_settled: Optional[SettledCallback] = None

    # ── Readiness / viewport ─────────────────────────────────────────

    def is_ready(self) -> bool:
        w, h = self._viewport
        return self._ready and w > 0 and h > 0

    def set_ready(self, ready: bool) -> None:
        self._ready = ready

    def viewport_size(self) -> Tuple[float, float]:
        return self._viewport

    def set_viewport_size(self, width: float, height: float) -> None:
        self._viewport = (float(width), float(height))

    # ── Projection ───────────────────────────────────────────────────

    @staticmethod
    def _lonlat_to_merc(coord: Coordinate) -> Tuple[float, float]:
        lon, lat = coord
        lat = max(-MAX_LAT, min(MAX_LAT, lat))
        return _to_merc.transform(lon, lat)

    def _merc_to_world_px(self, mx: float, my: float, zoom: float) -> Tuple[float, float]:
        world = _world_px(zoom)
        px = (mx + HALF_WORLD_M) / (2.0 * HALF_WORLD_M) * world
        py = (HALF_WORLD_M - my) / (2.0 * HALF_WORLD_M) * world
        return px, py

    def project(self, coord: Coordinate) -> ScreenPoint:
        """Screen position of *coord* for the current frame.

        Returns (nan, nan) for coordinates that have no position on the
        Mercator plane (NaN input, poles).
        """
        lon, lat = coord
        if not (math.isfinite(lon) and math.isfinite(lat)) or abs(lat) > MAX_LAT:
            return (math.nan, math.nan)
        mx, my = _to_merc.transform(lon, lat)
        px, py = self._merc_to_world_px(mx, my, self._zoom)
        cx, cy = self._merc_to_world_px(*self._center_m, self._zoom)
        w, h = self._viewport
        return (px - cx + w / 2.0, py - cy + h / 2.0)

    def unproject(self, point: ScreenPoint) -> Coordinate:
        x, y = point
        w, h = self._viewport
        world = _world_px(self._zoom)
        cx, cy = self._merc_to_world_px(*self._center_m, self._zoom)
        px = cx + (x - w / 2.0)
        py = cy + (y - h / 2.0)
        mx = px / world * (2.0 * HALF_WORLD_M) - HALF_WORLD_M
        my = HALF_WORLD_M - py / world * (2.0 * HALF_WORLD_M)
        return _to_lonlat.transform(mx, my)

    def current_zoom(self) -> float:
        return self._zoom

    def current_center(self) -> Coordinate:
        return _to_lonlat.transform(*self._center_m)

    def view_state(self) -> ViewState:
        return ViewState(
            center=self.current_center(),
            zoom=self._zoom,
            is_animating=self._anim_timer.isActive(),
        )

    def is_animating(self) -> bool:
        return self._anim_timer.isActive()

    # ── Camera fit ───────────────────────────────────────────────────

    def camera_for_bounds(
        self, bounds: Bounds, padding_fraction: float, max_zoom: float,
    ) -> Tuple[Coordinate, float]:
        """Center and zoom that fit *bounds* inside the padded viewport.

        Padding is ``padding_fraction`` of the viewport width on the left
        and right and of the viewport height on the top and bottom.
        """
        x0, y0 = self._lonlat_to_merc((bounds.west, bounds.south))
        x1, y1 = self._lonlat_to_merc((bounds.east, bounds.north))
        w, h = self._viewport
        avail_w = max(w * (1.0 - 2.0 * padding_fraction), 1.0)
        avail_h = max(h * (1.0 - 2.0 * padding_fraction), 1.0)

        scales = []
        dx, dy = abs(x1 - x0), abs(y1 - y0)
        if dx > 0:
            scales.append(avail_w * 2.0 * HALF_WORLD_M / (TILE_SIZE_PX * dx))
        if dy > 0:
            scales.append(avail_h * 2.0 * HALF_WORLD_M / (TILE_SIZE_PX * dy))
        zoom = math.log2(min(scales)) if scales else max_zoom
        zoom = _clamp_zoom(min(zoom, max_zoom))

        center = _to_lonlat.transform((x0 + x1) / 2.0, (y0 + y1) / 2.0)
        return center, zoom

    # ── Camera moves ─────────────────────────────────────────────────

    def fit_to(
        self,
        bounds: Bounds,
        padding_fraction: float,
        max_zoom: float,
        duration_ms: int,
        on_settled: Optional[SettledCallback] = None,
    ) -> None:
        center, zoom = self.camera_for_bounds(bounds, padding_fraction, max_zoom)
        log.debug("fit_to %s → center=(%.5f, %.5f) zoom=%.2f",
                  bounds.as_tuple, center[0], center[1], zoom)
        self._animate_to(center, zoom, duration_ms, on_settled)

    def fly_to(
        self,
        center: Coordinate,
        zoom: float,
        duration_ms: int,
        on_settled: Optional[SettledCallback] = None,
    ) -> None:
        self._animate_to(center, zoom, duration_ms, on_settled)

    def jump_to(self, center: Coordinate, zoom: float) -> None:
        """Apply a view immediately (user pan/zoom) and emit the settle."""
        self._cancel_animation()
        self._center_m = self._lonlat_to_merc(center)
        self._zoom = _clamp_zoom(zoom)
        self._settle(None)

    def _cancel_animation(self) -> None:
        if self._anim_timer.isActive():
            log.debug("Camera animation superseded")
        self._anim_timer.stop()
        self._anim_from = None
        self._anim_to = None
        self._on_settled = None

    def _animate_to(
        self,
        center: Coordinate,
        zoom: float,
        duration_ms: int,
        on_settled: Optional[SettledCallback],
    ) -> None:
        self._cancel_animation()
        tx, ty = self._lonlat_to_merc(center)
        self._anim_from = (self._center_m[0], self._center_m[1], self._zoom)
        self._anim_to = (tx, ty, _clamp_zoom(zoom))
        self._anim_start_time = time.monotonic()
        self._anim_duration = max(duration_ms, 0) / 1000.0
        self._on_settled = on_settled
        self._anim_timer.start()

    def _animate_step(self) -> None:
        """One frame of the camera animation."""
        if not self._anim_from or not self._anim_to:
            self._anim_timer.stop()
            return

        if self._anim_duration <= 0:
            t = 1.0
        else:
            elapsed = time.monotonic() - self._anim_start_time
            t = min(elapsed / self._anim_duration, 1.0)

        # Ease in-out cubic
        if t < 0.5:
            ease = 4 * t * t * t
        else:
            ease = 1 - pow(-2 * t + 2, 3) / 2

        f = self._anim_from
        to = self._anim_to
        self._center_m = (
            f[0] + (to[0] - f[0]) * ease,
            f[1] + (to[1] - f[1]) * ease,
        )
        self._zoom = f[2] + (to[2] - f[2]) * ease

        if t >= 1.0:
            self._anim_timer.stop()
            self._center_m = (to[0], to[1])
            self._zoom = to[2]
            callback = self._on_settled
            self._anim_from = None
            self._anim_to = None
            self._on_settled = None
            self._settle(callback)

    def _settle(self, callback: Optional[SettledCallback]) -> None:
        state = self.view_state()
        self.view_settled.emit(state)
        if callback is None:
            return
        try:
            callback(state)
        except Exception:
            log.exception("view-settled callback failed")
