from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List

from PyQt5 import QtCore

from .config import EngineConfig, load_config
from .engine.controller import MapEngine
from .engine.filters import PredicateFilterSource, group_predicate, name_predicate
from .geo.feature import Feature, features_from_geojson
from .geo.feature_store import FeatureStore
from .geo.projector import WebMercatorProjector
from .logger import default_logfile, setup_logging, write_view_snapshot

log = logging.getLogger(__name__)

IDLE_CHECK_MS = 50


def load_features(path: Path) -> List[Feature]:
    with Path(path).open("r", encoding="utf-8") as f:
        collection = json.load(f)
    if not isinstance(collection, dict) or collection.get("type") != "FeatureCollection":
        raise ValueError(f"{path} is not a GeoJSON FeatureCollection")
    return features_from_geojson(collection)


def snapshot(engine: MapEngine, projector: WebMercatorProjector) -> Dict:
    """Engine output as a JSON-friendly dict."""
    lon, lat = projector.current_center()
    return {
        "center": [round(lon, 6), round(lat, 6)],
        "zoom": round(projector.current_zoom(), 3),
        "markers_hidden": engine.clustering.markers_hidden,
        "clusters": [
            {
                "id": c.cluster_id,
                "count": c.count,
                "members": sorted(c.member_ids),
                "center": [round(c.geo_centroid[0], 6), round(c.geo_centroid[1], 6)],
            }
            for c in engine.clustering.clusters
        ],
        "singletons": list(engine.clustering.singletons),
        "group_labels": [f.name for f in engine.visible_group_labels()],
    }


def run_until_idle(engine: MapEngine, projector: WebMercatorProjector, timeout_ms: int) -> bool:
    """Spin an event loop until no engine work is pending.  False on timeout."""
    loop = QtCore.QEventLoop()
    state = {"idle": False}

    def check() -> None:
        busy = [n for n in engine.slots.pending() if not n.startswith("retire:")]
        if busy or projector.is_animating() or not engine.gate.is_idle():
            return
        state["idle"] = True
        loop.quit()

    poll = QtCore.QTimer()
    poll.setInterval(IDLE_CHECK_MS)
    poll.timeout.connect(check)
    deadline = QtCore.QTimer()
    deadline.setSingleShot(True)
    deadline.timeout.connect(loop.quit)

    poll.start()
    deadline.start(timeout_ms)
    loop.exec_()
    poll.stop()
    deadline.stop()
    return state["idle"]


def main() -> None:
    parser = argparse.ArgumentParser(
        description=(
            "Headless marker clustering / view-sync run.\n"
            "Loads a GeoJSON point collection, applies an optional filter,\n"
            "reframes the camera and prints the resulting clusters as JSON."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--features",
        type=Path,
        required=True,
        help="GeoJSON FeatureCollection of Point features.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON file of engine config overrides.",
    )
    parser.add_argument(
        "--center",
        type=float,
        nargs=2,
        metavar=("LON", "LAT"),
        default=None,
        help="Initial camera center (default: configured home view).",
    )
    parser.add_argument(
        "--zoom",
        type=float,
        default=None,
        help="Initial camera zoom (default: configured home zoom for the viewport).",
    )
    parser.add_argument("--width", type=float, default=1280.0, help="Viewport width in px.")
    parser.add_argument("--height", type=float, default=800.0, help="Viewport height in px.")
    parser.add_argument(
        "--filter",
        nargs="+",
        default=None,
        metavar="NAME",
        help="Only show features with these names (case-insensitive).",
    )
    parser.add_argument(
        "--group",
        nargs="+",
        default=None,
        metavar="KEY",
        help="Only show features in these groups.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="Give up waiting for the engine after this many seconds.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    parser.add_argument(
        "--log-file",
        action="store_true",
        help="Also write the log to logs/mapsync.log.",
    )
    parser.add_argument(
        "--save",
        action="store_true",
        help="Write the resulting view snapshot as JSON under logs/.",
    )
    args = parser.parse_args()

    setup_logging(
        logging.DEBUG if args.verbose else logging.INFO,
        default_logfile() if args.log_file else None,
    )

    cfg: EngineConfig = load_config(args.config)
    features = load_features(args.features)

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv)

    center = tuple(args.center) if args.center else cfg.default_center
    zoom = args.zoom if args.zoom is not None else cfg.default_zoom(args.width)
    projector = WebMercatorProjector(center=center, zoom=zoom, viewport=(args.width, args.height))

    store = FeatureStore()
    source = PredicateFilterSource(store)
    engine = MapEngine(projector, source, config=cfg, store=store)
    engine.load_features(features)

    if args.filter:
        source.set_predicate(name_predicate(args.filter))
    elif args.group:
        source.set_predicate(group_predicate(args.group))

    engine.start()
    if not run_until_idle(engine, projector, int(args.timeout * 1000)):
        log.warning("Engine still busy after %.1f s, printing current state", args.timeout)
    engine.shutdown()

    result = snapshot(engine, projector)
    if args.save:
        log.info("Snapshot written to %s", write_view_snapshot(result))
    print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
