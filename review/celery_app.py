"""Celery application for offline whole-game analysis."""

import os
from celery import Celery

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

app = Celery("review", broker=REDIS_URL, backend=REDIS_URL)
app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)


async def analyze_pgn(pgn: str, stockfish_path: str, depth: int):
    """Deep analyze a PGN's main line with a private engine. Returns (tree, progress)."""
    from deep_analysis import DeepAnalysisDriver, DriverState
    from engine_gateway import EngineGateway
    from errors import EngineNotReady
    from evaluators import UciTacticalEvaluator
    from game_tree import GameTree

    tree = GameTree.from_pgn(pgn)
    gateway = EngineGateway(UciTacticalEvaluator(stockfish_path))
    try:
        if not await gateway.wait_until_ready():
            raise EngineNotReady(f"Stockfish unavailable: {gateway.init_error}")
        driver = DeepAnalysisDriver(tree, [gateway])
        state = await driver.run(depth)
        if state is DriverState.FAILED:
            raise EngineNotReady("Deep analysis failed: no engine available")
        return tree, driver.progress
    finally:
        await gateway.close()


@app.task(bind=True, max_retries=3)
def analyze_game_task(self, game_id: str, pgn: str, stockfish_path: str, depth: int):
    """Celery task: deep analyze a game and store its tree with analysis."""
    import asyncio
    from db import ensure_schema, get_connection, upsert_analysis
    from persistence import snapshot_fingerprint

    try:
        tree, progress = asyncio.run(analyze_pgn(pgn, stockfish_path, depth))
        snapshot = tree.to_dict()
        with get_connection() as conn:
            ensure_schema(conn)
            upsert_analysis(conn, game_id, snapshot, snapshot_fingerprint(snapshot), len(tree))
        return {
            "game_id": game_id,
            "positions": progress.total_moves,
            "failed_node_ids": progress.failed_node_ids,
        }
    except ValueError:
        # Bad PGN or illegal move; not retried.
        raise
    except Exception as exc:
        raise self.retry(exc=exc, countdown=5)
