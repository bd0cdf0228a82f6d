"""Streams engine output for the position the user is looking at."""

import asyncio
import logging
import sys
from pathlib import Path

import chess

sys.path.insert(0, str(Path(__file__).resolve().parent))
from engine_gateway import EngineGateway, EvaluationHandle, required_depth
from errors import EngineEvaluationFailed
from game_tree import GameTree
from models import PositionNode
from settings import INTERACTIVE_DEPTH

log = logging.getLogger(__name__)


class PositionAnalyzer:
    def __init__(self, tree: GameTree, gateways: list[EngineGateway], depth: int = INTERACTIVE_DEPTH):
        self.tree = tree
        self.gateways = gateways
        self.depth = depth
        self._tasks: set[asyncio.Task] = set()

    def analyze(self, node: PositionNode, depth: int | None = None) -> list[EvaluationHandle]:
        """Request every engine that has nothing deep enough cached for ``node``."""
        depth = depth or self.depth
        handles = []
        legal_move_count = chess.Board(node.fen).legal_moves.count()
        for gateway in self.gateways:
            if self.tree.analysis.has(node, gateway.engine_id, required_depth(gateway.engine_id, depth)):
                continue
            if not gateway.is_ready():
                log.debug("Skipping %s for node %d: engine not ready", gateway.engine_id, node.node_id)
                continue
            handle = gateway.evaluate(node.fen, legal_move_count, depth)
            task = asyncio.create_task(self._collect(node, gateway.engine_id, handle))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            handles.append(handle)
        return handles

    async def _collect(self, node: PositionNode, engine_id: str, handle: EvaluationHandle) -> None:
        async for record in handle:
            if handle.is_current:
                self.tree.analysis.put(node, engine_id, record)
        try:
            await handle.final()
        except EngineEvaluationFailed as exc:
            log.warning("%s failed on node %d: %s", engine_id, node.node_id, exc)

    def stop(self) -> None:
        for gateway in self.gateways:
            gateway.stop()

    async def wait(self) -> None:
        tasks = list(self._tasks)
        if tasks:
            await asyncio.wait(tasks)
