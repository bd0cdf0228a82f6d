"""Database layer for the game review analysis store."""

import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime

import psycopg
from psycopg.types.json import Jsonb

SCHEMA = """
CREATE TABLE IF NOT EXISTS game_analyses (
    game_id TEXT PRIMARY KEY,
    snapshot JSONB NOT NULL,
    fingerprint TEXT NOT NULL,
    node_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
)
"""


@dataclass
class StoredAnalysis:
    game_id: str
    snapshot: dict
    fingerprint: str
    node_count: int
    updated_at: datetime | None = None


def get_connection_string() -> str:
    """Get database connection string from environment."""
    return os.environ.get(
        "DATABASE_URL",
        "postgresql://localhost:5432/chess_review?user=postgres&password=postgres",
    )


@contextmanager
def get_connection():
    """Context manager for database connections."""
    conn = psycopg.connect(get_connection_string())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def ensure_schema(conn: psycopg.Connection) -> None:
    with conn.cursor() as cur:
        cur.execute(SCHEMA)


def upsert_analysis(
    conn: psycopg.Connection,
    game_id: str,
    snapshot: dict,
    fingerprint: str,
    node_count: int,
) -> bool:
    """
    Insert or replace the stored analysis for a game.
    Returns False when the stored fingerprint already matches (nothing written).
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO game_analyses (game_id, snapshot, fingerprint, node_count)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (game_id) DO UPDATE SET
                snapshot = EXCLUDED.snapshot,
                fingerprint = EXCLUDED.fingerprint,
                node_count = EXCLUDED.node_count,
                updated_at = NOW()
            WHERE game_analyses.fingerprint IS DISTINCT FROM EXCLUDED.fingerprint
            RETURNING game_id
            """,
            (game_id, Jsonb(snapshot), fingerprint, node_count),
        )
        return cur.fetchone() is not None


def get_analysis(conn: psycopg.Connection, game_id: str) -> StoredAnalysis | None:
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT game_id, snapshot, fingerprint, node_count, updated_at
            FROM game_analyses WHERE game_id = %s
            """,
            (game_id,),
        )
        row = cur.fetchone()
    if not row:
        return None
    return StoredAnalysis(
        game_id=row[0], snapshot=row[1], fingerprint=row[2], node_count=row[3] or 0, updated_at=row[4],
    )


def delete_analysis(conn: psycopg.Connection, game_id: str) -> bool:
    """Delete a game's analysis. Returns False if there was none."""
    with conn.cursor() as cur:
        cur.execute("DELETE FROM game_analyses WHERE game_id = %s", (game_id,))
        return cur.rowcount > 0


def list_game_ids(conn: psycopg.Connection, limit: int | None = None) -> list[str]:
    """Stored game ids, most recently updated first."""
    sql = "SELECT game_id FROM game_analyses ORDER BY updated_at DESC"
    params: list = []
    if limit:
        sql += " LIMIT %s"
        params.append(limit)
    with conn.cursor() as cur:
        cur.execute(sql, params)
        return [r[0] for r in cur.fetchall()]
