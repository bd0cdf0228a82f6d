"""
Deep analysis: evaluate every main line position at a target depth.

Positions are visited one at a time in ply order. A failing position is
recorded and skipped; the run only fails outright when no engine is
available. Cancelling discards whatever the in-flight request produced.
"""

import asyncio
import logging
import sys
from collections.abc import Callable
from dataclasses import replace
from enum import Enum
from pathlib import Path

import chess

sys.path.insert(0, str(Path(__file__).resolve().parent))
from engine_gateway import EngineGateway, required_depth
from errors import AnalysisStateError, EngineEvaluationFailed, EngineNotReady
from game_tree import GameTree, TreeCursor
from models import AnalysisRecord, DeepAnalysisProgress, PositionNode
from settings import DEEP_ANALYSIS_DEPTH

log = logging.getLogger(__name__)


class DriverState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    FAILED = "failed"


class DeepAnalysisDriver:
    def __init__(
        self,
        tree: GameTree,
        gateways: list[EngineGateway],
        cursor: TreeCursor | None = None,
    ):
        self.tree = tree
        self.gateways = gateways
        self.cursor = cursor
        self.state = DriverState.IDLE
        self.progress = DeepAnalysisProgress()
        self._task: asyncio.Task | None = None
        self._handle = None
        self._cancel_requested = False
        self._progress_listeners: list[Callable[[DeepAnalysisProgress], None]] = []
        self._completion_listeners: list[Callable[[DriverState], None]] = []

    def on_progress(self, listener: Callable[[DeepAnalysisProgress], None]) -> None:
        self._progress_listeners.append(listener)

    def on_complete(self, listener: Callable[[DriverState], None]) -> None:
        self._completion_listeners.append(listener)

    @property
    def is_running(self) -> bool:
        return self.state in (DriverState.RUNNING, DriverState.CANCELLING)

    def is_complete(self, target_depth: int) -> bool:
        """True when every main line position holds deep enough records."""
        return all(
            self.tree.analysis.has(node, gw.engine_id, required_depth(gw.engine_id, target_depth))
            for node in self.tree.main_line()
            for gw in self.gateways
        )

    def start(self, target_depth: int = DEEP_ANALYSIS_DEPTH) -> asyncio.Task:
        if self.state not in (DriverState.IDLE, DriverState.COMPLETED, DriverState.FAILED):
            raise AnalysisStateError(f"Cannot start deep analysis while {self.state.value}")
        self.state = DriverState.RUNNING
        self._cancel_requested = False
        self.progress = DeepAnalysisProgress(is_analyzing=True, target_depth=target_depth)
        self._task = asyncio.create_task(self._run(target_depth))
        return self._task

    async def run(self, target_depth: int = DEEP_ANALYSIS_DEPTH) -> DriverState:
        await self.start(target_depth)
        return self.state

    async def wait(self) -> DriverState:
        if self._task is not None:
            await asyncio.wait({self._task})
        return self.state

    async def cancel(self) -> None:
        if self.state is not DriverState.RUNNING:
            raise AnalysisStateError(f"Cannot cancel deep analysis while {self.state.value}")
        self.state = DriverState.CANCELLING
        self._cancel_requested = True
        if self._handle is not None:
            self._handle.cancel()
        await asyncio.wait({self._task})
        self.state = DriverState.IDLE
        self.progress.is_analyzing = False
        log.info("Deep analysis cancelled at move %d/%d", self.progress.current_move_index, self.progress.total_moves)

    async def _run(self, target_depth: int) -> None:
        nodes = list(self.tree.main_line())
        self.progress.total_moves = len(nodes)
        log.info("Deep analysis of %d positions at depth %d", len(nodes), target_depth)
        try:
            for index, node in enumerate(nodes):
                if self._cancel_requested:
                    return
                if not any(gw.is_ready() for gw in self.gateways):
                    log.error("No engine available, deep analysis failed")
                    self._finish(DriverState.FAILED)
                    return

                self.progress.current_move = node.display() or "Starting position"
                self._notify_progress()
                if self.cursor is not None:
                    self.cursor.to_node(node)

                if not await self._analyze_node(node, target_depth):
                    return
                self.progress.current_move_index = index + 1
                self._notify_progress()
        except asyncio.CancelledError:
            self.state = DriverState.IDLE
            self.progress.is_analyzing = False
            raise
        except Exception:
            log.exception("Deep analysis stopped by an unexpected error")
            if not self._cancel_requested:
                self._finish(DriverState.FAILED)
            return
        if not self._cancel_requested:
            self._finish(DriverState.COMPLETED)

    async def _analyze_node(self, node: PositionNode, target_depth: int) -> bool:
        """Analyze one position with every engine. False means cancelled.

        Records are only cached once every engine is done with the position.
        """
        legal_move_count = chess.Board(node.fen).legal_moves.count()
        records: dict[str, AnalysisRecord] = {}
        for gateway in self.gateways:
            if self.tree.analysis.has(node, gateway.engine_id, required_depth(gateway.engine_id, target_depth)):
                continue
            try:
                record = await self._evaluate(gateway, node, legal_move_count, target_depth)
            except (EngineNotReady, EngineEvaluationFailed) as exc:
                log.warning("%s failed on %s: %s", gateway.engine_id, node.display() or "root", exc)
                self._mark_failed(node)
                continue
            if self._cancel_requested:
                return False
            if record is None:
                log.warning("%s request for node %d was superseded", gateway.engine_id, node.node_id)
                self._mark_failed(node)
                continue
            records[gateway.engine_id] = record
        if self._cancel_requested:
            return False
        for engine_id, record in records.items():
            self.tree.analysis.put(node, engine_id, record)
        return True

    async def _evaluate(
        self, gateway: EngineGateway, node: PositionNode, legal_move_count: int, depth: int
    ) -> AnalysisRecord | None:
        self._handle = gateway.evaluate(node.fen, legal_move_count, depth)
        try:
            return await self._handle.final()
        finally:
            self._handle = None

    def _mark_failed(self, node: PositionNode) -> None:
        if node.node_id not in self.progress.failed_node_ids:
            self.progress.failed_node_ids.append(node.node_id)

    def _notify_progress(self) -> None:
        snapshot = replace(self.progress, failed_node_ids=list(self.progress.failed_node_ids))
        for listener in list(self._progress_listeners):
            listener(snapshot)

    def _finish(self, state: DriverState) -> None:
        self.state = state
        self.progress.is_analyzing = False
        log.info(
            "Deep analysis %s: %d/%d positions, %d failed",
            state.value,
            self.progress.current_move_index,
            self.progress.total_moves,
            len(self.progress.failed_node_ids),
        )
        for listener in list(self._completion_listeners):
            listener(state)
