"""Tests for api/main.py"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from db import StoredAnalysis
from game_tree import GameTree
from models import TACTICAL_ENGINE, TacticalRecord
from persistence import snapshot_fingerprint


def mock_connection():
    conn = MagicMock()
    conn.__enter__ = MagicMock(return_value=conn)
    conn.__exit__ = MagicMock(return_value=False)
    return conn


def analyzed_snapshot() -> dict:
    tree = GameTree()
    tree.analysis.put(tree.root, TACTICAL_ENGINE, TacticalRecord(depth=18, scores={"e2e4": 30, "a2a3": -300}))
    a3 = tree.play(tree.root, "a3")
    tree.play(a3, "e5")
    return tree.to_dict()


@pytest.fixture
def client():
    from api.main import app
    return TestClient(app)


def test_save_validates_and_stores_snapshot(client):
    snapshot = analyzed_snapshot()
    with patch("api.main.get_connection", return_value=mock_connection()), \
         patch("api.main.ensure_schema"), \
         patch("api.main.upsert_analysis", return_value=True) as upsert:
        resp = client.put("/analysis/g1", json=snapshot)

    assert resp.status_code == 200
    data = resp.json()
    assert data["nodes"] == 3
    assert data["fingerprint"] == snapshot_fingerprint(snapshot)
    args = upsert.call_args.args
    assert args[1] == "g1"
    assert args[2] == snapshot
    assert args[4] == 3


def test_save_rejects_illegal_moves(client):
    snapshot = analyzed_snapshot()
    snapshot["root"]["children"][0]["move"] = "a2a5"
    with patch("api.main.get_connection") as get_connection:
        resp = client.put("/analysis/g1", json=snapshot)
    assert resp.status_code == 400
    get_connection.assert_not_called()


def test_save_rejects_missing_root(client):
    resp = client.put("/analysis/g1", json={"headers": {}})
    assert resp.status_code == 422


def test_load_returns_stored_snapshot(client):
    snapshot = analyzed_snapshot()
    stored = StoredAnalysis(
        game_id="g1",
        snapshot=snapshot,
        fingerprint="abc",
        node_count=3,
        updated_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    with patch("api.main.get_connection", return_value=mock_connection()), \
         patch("api.main.get_analysis", return_value=stored):
        resp = client.get("/analysis/g1")
    assert resp.status_code == 200
    assert resp.json()["snapshot"] == snapshot
    assert resp.json()["nodes"] == 3


def test_load_missing_game_is_404(client):
    with patch("api.main.get_connection", return_value=mock_connection()), \
         patch("api.main.get_analysis", return_value=None):
        resp = client.get("/analysis/nope")
    assert resp.status_code == 404


def test_delete(client):
    with patch("api.main.get_connection", return_value=mock_connection()), \
         patch("api.main.delete_analysis", return_value=True):
        assert client.delete("/analysis/g1").status_code == 200
    with patch("api.main.get_connection", return_value=mock_connection()), \
         patch("api.main.delete_analysis", return_value=False):
        assert client.delete("/analysis/g1").status_code == 404


def test_mistakes_endpoint_reads_stored_analysis(client):
    stored = StoredAnalysis(game_id="g1", snapshot=analyzed_snapshot(), fingerprint="abc", node_count=3)
    with patch("api.main.get_connection", return_value=mock_connection()), \
         patch("api.main.get_analysis", return_value=stored):
        resp = client.get("/analysis/g1/mistakes", params={"color": "white"})
    assert resp.status_code == 200
    (mistake,) = resp.json()
    assert mistake["move"] == "a3"
    assert mistake["best_move"] == "e4"
    assert mistake["type"] == "blunder"
    assert mistake["cp_loss"] == 330


def test_mistakes_endpoint_validates_color(client):
    resp = client.get("/analysis/g1/mistakes", params={"color": "green"})
    assert resp.status_code == 422


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
