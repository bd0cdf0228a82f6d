"""
FastAPI store for game review analysis

Endpoints:
  PUT /analysis/{game_id}  - Save a tree snapshot with its analysis
  GET /analysis/{game_id}  - Load a saved snapshot
  DELETE /analysis/{game_id}  - Remove a saved snapshot
  GET /analysis/{game_id}/mistakes?color=white  - Mistakes found in a saved game
  GET /analysis  - Recently saved game ids
"""

import sys
from pathlib import Path
from typing import Any, Literal

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from db import delete_analysis, ensure_schema, get_analysis, get_connection, list_game_ids, upsert_analysis
from errors import InvalidMove
from game_tree import GameTree
from mistake_detector import MistakeThresholds, detect_mistakes
from persistence import snapshot_fingerprint

app = FastAPI(title="Game Review Analysis Store", version="1.0.0")


class SnapshotBody(BaseModel):
    headers: dict[str, str] = Field(default_factory=dict)
    root: dict[str, Any]


def _rebuild(snapshot: dict) -> GameTree:
    """Replay a snapshot through the tree so illegal moves are rejected."""
    try:
        return GameTree.from_dict(snapshot)
    except (InvalidMove, KeyError, ValueError, TypeError) as exc:
        raise HTTPException(status_code=400, detail=f"Invalid snapshot: {exc}") from exc


_schema_ready = False


def _ensure_schema_once(conn) -> None:
    global _schema_ready
    if not _schema_ready:
        ensure_schema(conn)
        _schema_ready = True


@app.put("/analysis/{game_id}")
def save_analysis(game_id: str, body: SnapshotBody):
    snapshot = body.model_dump()
    tree = _rebuild(snapshot)
    fingerprint = snapshot_fingerprint(snapshot)
    with get_connection() as conn:
        _ensure_schema_once(conn)
        written = upsert_analysis(conn, game_id, snapshot, fingerprint, len(tree))
    return {"game_id": game_id, "nodes": len(tree), "fingerprint": fingerprint, "written": written}


@app.get("/analysis")
def recent_analyses(limit: int = Query(50, le=500)):
    with get_connection() as conn:
        return {"game_ids": list_game_ids(conn, limit)}


@app.get("/analysis/{game_id}")
def load_analysis(game_id: str):
    with get_connection() as conn:
        stored = get_analysis(conn, game_id)
    if stored is None:
        raise HTTPException(status_code=404, detail=f"No analysis for {game_id}")
    return {
        "game_id": stored.game_id,
        "snapshot": stored.snapshot,
        "fingerprint": stored.fingerprint,
        "nodes": stored.node_count,
        "updated_at": stored.updated_at.isoformat() if stored.updated_at else None,
    }


@app.delete("/analysis/{game_id}")
def remove_analysis(game_id: str):
    with get_connection() as conn:
        deleted = delete_analysis(conn, game_id)
    if not deleted:
        raise HTTPException(status_code=404, detail=f"No analysis for {game_id}")
    return {"game_id": game_id, "deleted": True}


@app.get("/analysis/{game_id}/mistakes")
def game_mistakes(
    game_id: str,
    color: Literal["white", "black"] = Query(...),
    inaccuracy_cp: int = Query(50, ge=0),
    blunder_cp: int = Query(200, ge=0),
    min_depth: int = Query(12, ge=0),
):
    """Mistakes by one color, judged from the stored analysis only."""
    with get_connection() as conn:
        stored = get_analysis(conn, game_id)
    if stored is None:
        raise HTTPException(status_code=404, detail=f"No analysis for {game_id}")
    tree = _rebuild(stored.snapshot)
    thresholds = MistakeThresholds(inaccuracy_cp=inaccuracy_cp, blunder_cp=blunder_cp, min_depth=min_depth)
    mistakes = detect_mistakes(tree, color, thresholds)
    return [
        {
            "move_index": m.move_index,
            "move": m.san,
            "type": m.type,
            "best_move": m.best_move_san,
            "cp_loss": m.cp_loss,
            "fen": m.fen,
        }
        for m in mistakes
    ]


@app.get("/health")
def health():
    return {"status": "ok"}
