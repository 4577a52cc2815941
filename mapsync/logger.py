from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

LOG_DIR = Path("logs")

_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: int = logging.INFO, logfile: Optional[Path] = None) -> None:
    handlers = [logging.StreamHandler()]
    if logfile is not None:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(logfile))
    logging.basicConfig(level=level, format=_FORMAT, handlers=handlers)


def default_logfile() -> Path:
    return LOG_DIR / "mapsync.log"


def write_view_snapshot(snapshot: Dict[str, Any], log_dir: Path = LOG_DIR) -> Path:
    """Dump one engine output snapshot as timestamped JSON."""
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    ts = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S_%f")
    path = log_dir / f"view_{ts}.json"
    with path.open("w", encoding="utf-8") as f:
        json.dump(snapshot, f, indent=2)
    return path
