"""End-to-end runs of the command-line entry point."""

from __future__ import annotations

import json
import sys

import pytest

from conftest import spread_features
from mapsync import main as cli
from mapsync.geo.feature import features_to_geojson
from mapsync.logger import write_view_snapshot


@pytest.fixture
def geojson_file(tmp_path):
    path = tmp_path / "points.geojson"
    path.write_text(json.dumps(features_to_geojson(spread_features(30))))
    return path


@pytest.fixture
def fast_config_file(tmp_path):
    path = tmp_path / "engine.json"
    path.write_text(json.dumps({
        "initial_reframe_ms": 20, "reframe_ms": 20, "settle_delay_ms": 5,
        "filter_debounce_ms": 10, "viewport_debounce_ms": 5,
    }))
    return path


def _run(monkeypatch, capsys, *argv):
    monkeypatch.setattr(sys, "argv", ["mapsync", *argv])
    cli.main()
    return json.loads(capsys.readouterr().out)


class TestCli:
    def test_default_view_hides_markers(self, monkeypatch, capsys, geojson_file, fast_config_file):
        out = _run(monkeypatch, capsys, "--features", str(geojson_file),
                   "--config", str(fast_config_file))
        assert out["markers_hidden"] is True
        assert out["zoom"] == pytest.approx(8.33)
        assert out["clusters"] == [] and out["singletons"] == []

    def test_name_filter_reframes(self, monkeypatch, capsys, geojson_file, fast_config_file):
        out = _run(monkeypatch, capsys, "--features", str(geojson_file),
                   "--config", str(fast_config_file),
                   "--filter", "Locality 3", "Locality 4")
        assert out["markers_hidden"] is False
        assert out["zoom"] > 9.0
        members = set(out["singletons"])
        for c in out["clusters"]:
            members |= set(c["members"])
        assert members == {"f3", "f4"}

    def test_zoomed_in_start_clusters(self, monkeypatch, capsys, geojson_file, fast_config_file):
        out = _run(monkeypatch, capsys, "--features", str(geojson_file),
                   "--config", str(fast_config_file),
                   "--center", "35.0", "31.5", "--zoom", "9.2")
        members = set(out["singletons"])
        for c in out["clusters"]:
            assert c["count"] == len(c["members"]) >= 2
            members |= set(c["members"])
        assert members == {f"f{i}" for i in range(30)}

    def test_rejects_non_collection(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("[]")
        with pytest.raises(ValueError):
            cli.load_features(path)


class TestSnapshotFile:
    def test_write_view_snapshot(self, tmp_path):
        path = write_view_snapshot({"zoom": 9.5, "clusters": []}, log_dir=tmp_path / "logs")
        assert path.parent == tmp_path / "logs"
        assert path.name.startswith("view_")
        assert json.loads(path.read_text()) == {"zoom": 9.5, "clusters": []}
