"""
Game review controller.

Ties one game tree to its cursor, the engines, deep analysis, the
learn-from-mistakes session and auto-save. Moving the cursor analyzes the
new position unless a deep analysis run owns the engines.
"""

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Literal

sys.path.insert(0, str(Path(__file__).resolve().parent))
from auto_save import AutoSaveCoordinator
from deep_analysis import DeepAnalysisDriver, DriverState
from engine_gateway import EngineGateway, get_or_create_gateway
from evaluators import HttpPolicyEvaluator, UciTacticalEvaluator
from game_tree import GameTree, TreeCursor
from learn_from_mistakes import LearnFromMistakesSession
from live_analysis import PositionAnalyzer
from mistake_detector import (
    BlunderMeter,
    MistakeThresholds,
    calculate_blunder_meter,
    classify_move,
    detect_mistakes,
)
from models import (
    TACTICAL_ENGINE,
    MistakeRecord,
    MoveClassification,
    PolicyRecord,
    PositionNode,
    TacticalRecord,
    policy_engine_id,
)
from persistence import AnalysisStore
from settings import INTERACTIVE_DEPTH, ReviewSettings

log = logging.getLogger(__name__)


def shared_gateways(settings: ReviewSettings) -> list[EngineGateway]:
    """Process-wide gateways for the configured engines, initialization started."""
    gateways = [
        get_or_create_gateway(TACTICAL_ENGINE, lambda: UciTacticalEvaluator(settings.stockfish_path)),
    ]
    if settings.policy_engine_url:
        gateways.append(
            get_or_create_gateway(
                policy_engine_id(settings.policy_model),
                lambda: HttpPolicyEvaluator(settings.policy_engine_url, settings.policy_model),
            )
        )
    for gateway in gateways:
        gateway.ensure_started()
    return gateways


class GameReview:
    def __init__(
        self,
        tree: GameTree,
        gateways: list[EngineGateway],
        settings: ReviewSettings = ReviewSettings(),
        store: AnalysisStore | None = None,
        game_id: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.tree = tree
        self.gateways = gateways
        self.settings = settings
        self.thresholds = MistakeThresholds(
            inaccuracy_cp=settings.inaccuracy_threshold_cp,
            blunder_cp=settings.blunder_threshold_cp,
            min_depth=settings.mistake_min_depth,
        )
        self.policy_engine = next((gw.engine_id for gw in gateways if gw.engine_id != TACTICAL_ENGINE), None)

        self.cursor = TreeCursor(tree)
        self.analyzer = PositionAnalyzer(tree, gateways, INTERACTIVE_DEPTH)
        self.driver = DeepAnalysisDriver(tree, gateways, self.cursor)
        self.session = LearnFromMistakesSession(
            tree,
            self.driver,
            self.cursor,
            self.thresholds,
            self.policy_engine,
            settings.deep_analysis_depth,
        )
        self.auto_save: AutoSaveCoordinator | None = None
        if store is not None and game_id is not None:
            self.auto_save = AutoSaveCoordinator(
                tree, store, game_id, quiet_interval=settings.auto_save_interval, sleep=sleep
            )

    @property
    def current(self) -> PositionNode:
        return self.cursor.current

    # -- navigation ----------------------------------------------------

    def _arrived(self, node: PositionNode | None) -> PositionNode | None:
        if node is None:
            return None
        if self.driver.is_running:
            log.debug("Deep analysis running, not analyzing node %d", node.node_id)
        else:
            self.analyzer.analyze(node)
        return node

    def go_to(self, node: PositionNode | int) -> PositionNode:
        return self._arrived(self.cursor.to_node(node))

    def next(self) -> PositionNode | None:
        return self._arrived(self.cursor.next())

    def previous(self) -> PositionNode | None:
        return self._arrived(self.cursor.previous())

    def play(self, move: str) -> PositionNode:
        """Play ``move`` (UCI or SAN) from the current position and go there."""
        node = self.tree.play(self.cursor.current, move)
        return self.go_to(node)

    # -- evaluation ----------------------------------------------------

    def move_evaluation(self, node: PositionNode | int | None = None) -> MoveClassification | None:
        """Classification of the move that led to ``node`` (default: current)."""
        node = self.cursor.current if node is None else self.tree._resolve(node)
        parent = self.tree.parent(node)
        if parent is None:
            return None
        return classify_move(self.tree, parent, node.move, self.thresholds)

    def blunder_meter(self, node: PositionNode | int | None = None) -> BlunderMeter:
        node = self.cursor.current if node is None else self.tree._resolve(node)
        policy = self.tree.analysis.get(node, self.policy_engine) if self.policy_engine else None
        tactical = self.tree.analysis.get(node, TACTICAL_ENGINE)
        return calculate_blunder_meter(
            policy if isinstance(policy, PolicyRecord) else None,
            tactical if isinstance(tactical, TacticalRecord) else None,
            self.thresholds,
        )

    def mistakes(self, color: Literal["white", "black"]) -> list[MistakeRecord]:
        return detect_mistakes(self.tree, color, self.thresholds, self.policy_engine)

    # -- deep analysis -------------------------------------------------

    def start_deep_analysis(self, depth: int | None = None) -> asyncio.Task:
        self.analyzer.stop()
        return self.driver.start(depth or self.settings.deep_analysis_depth)

    async def cancel_deep_analysis(self) -> None:
        await self.driver.cancel()

    async def close(self) -> None:
        self.session.stop()
        if self.driver.state is DriverState.RUNNING:
            await self.driver.cancel()
        self.analyzer.stop()
        await self.analyzer.wait()
        if self.auto_save is not None:
            await self.auto_save.close(flush=True)
