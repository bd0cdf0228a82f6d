"""
Learn-from-mistakes: replay a player's mistakes one at a time.

The player picks a color, the session makes sure the game has been deep
analyzed, then presents each mistake position and judges attempted moves
against the engine's best move.
"""

import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Literal

import chess

sys.path.insert(0, str(Path(__file__).resolve().parent))
from deep_analysis import DeepAnalysisDriver, DriverState
from errors import InvalidMove, SessionInvalidState
from game_tree import GameTree, TreeCursor
from mistake_detector import MistakeThresholds, detect_mistakes, move_loss
from models import MistakeRecord, PositionNode
from settings import DEEP_ANALYSIS_DEPTH

log = logging.getLogger(__name__)


class SessionState(Enum):
    INACTIVE = "inactive"
    SELECTING_PLAYER = "selecting_player"
    PRESENTING = "presenting"
    SOLUTION_SHOWN = "solution_shown"
    FINISHED = "finished"


@dataclass
class LearnFromMistakesConfiguration:
    is_active: bool = False
    show_player_selection: bool = False
    player_color: Literal["white", "black"] | None = None
    mistakes: list[MistakeRecord] = field(default_factory=list)
    current_index: int = 0
    show_solution: bool = False
    last_result: Literal["correct", "incorrect"] | None = None


@dataclass(frozen=True)
class MistakeInfo:
    mistake: MistakeRecord
    progress: str
    is_last_mistake: bool


class LearnFromMistakesSession:
    def __init__(
        self,
        tree: GameTree,
        driver: DeepAnalysisDriver,
        cursor: TreeCursor | None = None,
        thresholds: MistakeThresholds = MistakeThresholds(),
        policy_engine: str | None = None,
        target_depth: int = DEEP_ANALYSIS_DEPTH,
    ):
        self.tree = tree
        self.driver = driver
        self.cursor = cursor or TreeCursor(tree)
        self.thresholds = thresholds
        self.policy_engine = policy_engine
        self.target_depth = target_depth
        self.state = SessionState.INACTIVE
        self.config = LearnFromMistakesConfiguration()

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            raise SessionInvalidState(
                f"Not allowed while {self.state.value}",
                context={"state": self.state.value, "allowed": [s.value for s in states]},
            )

    def start(self) -> None:
        self._require(SessionState.INACTIVE, SessionState.FINISHED)
        self.state = SessionState.SELECTING_PLAYER
        self.config = LearnFromMistakesConfiguration(is_active=True, show_player_selection=True)

    async def select_player(self, color: Literal["white", "black"]) -> list[MistakeRecord]:
        """Pick the color to review, running deep analysis first if needed."""
        self._require(SessionState.SELECTING_PLAYER)
        if color not in ("white", "black"):
            raise ValueError(f"Unknown color {color!r}")

        if not self.driver.is_complete(self.thresholds.min_depth):
            if not self.driver.is_running:
                self.driver.start(self.target_depth)
            outcome = await self.driver.wait()
            if outcome is DriverState.FAILED:
                log.warning("Deep analysis failed; reviewing with partial analysis")
            if self.state is not SessionState.SELECTING_PLAYER:
                # stopped while waiting for analysis
                return []

        mistakes = detect_mistakes(self.tree, color, self.thresholds, self.policy_engine)
        self.config.player_color = color
        self.config.show_player_selection = False
        self.config.mistakes = mistakes
        self.config.current_index = 0
        if not mistakes:
            self.state = SessionState.FINISHED
            return mistakes
        self._present()
        return mistakes

    @property
    def current_mistake(self) -> MistakeRecord | None:
        if self.state not in (SessionState.PRESENTING, SessionState.SOLUTION_SHOWN):
            return None
        return self.config.mistakes[self.config.current_index]

    def current_info(self) -> MistakeInfo | None:
        mistake = self.current_mistake
        if mistake is None:
            return None
        total = len(self.config.mistakes)
        index = self.config.current_index
        return MistakeInfo(mistake=mistake, progress=f"{index + 1} of {total}", is_last_mistake=index == total - 1)

    def _present(self) -> None:
        self.state = SessionState.PRESENTING
        self.config.show_solution = False
        self.config.last_result = None
        self.cursor.to_node(self.config.mistakes[self.config.current_index].node_id)

    def show_solution(self) -> tuple[str, str]:
        """Reveal the best move as (uci, san). Does not advance."""
        self._require(SessionState.PRESENTING)
        self.state = SessionState.SOLUTION_SHOWN
        self.config.show_solution = True
        mistake = self.current_mistake
        return mistake.best_move, mistake.best_move_san

    def submit_attempt(self, move: str) -> Literal["correct", "incorrect"]:
        """Judge a move (UCI or SAN) played from the mistake position.

        The attempt is kept as a variation in the tree. Moves that lose
        nothing against the best move count as correct.
        """
        self._require(SessionState.PRESENTING, SessionState.SOLUTION_SHOWN)
        mistake = self.current_mistake
        board = chess.Board(mistake.fen)
        try:
            parsed = chess.Move.from_uci(move)
        except chess.InvalidMoveError:
            try:
                parsed = board.parse_san(move)
            except ValueError as exc:
                raise InvalidMove(f"Cannot parse move {move!r}") from exc
        attempt = self.tree.add_variation(mistake.node_id, None, parsed.uci())

        mistake_node = self.tree.node(mistake.node_id)
        correct = attempt.move == mistake.best_move or move_loss(self.tree, mistake_node, attempt.move) == 0
        self.config.last_result = "correct" if correct else "incorrect"
        if correct:
            self.cursor.to_node(attempt)
        else:
            self.cursor.to_node(mistake_node)
        return self.config.last_result

    def next(self) -> MistakeRecord | None:
        self._require(SessionState.PRESENTING, SessionState.SOLUTION_SHOWN)
        self.config.current_index += 1
        if self.config.current_index >= len(self.config.mistakes):
            self.state = SessionState.FINISHED
            self.config.show_solution = False
            return None
        self._present()
        return self.current_mistake

    def stop(self) -> None:
        self.state = SessionState.INACTIVE
        self.config = LearnFromMistakesConfiguration()

    # -- presentation ---------------------------------------------------

    def prompt_text(self) -> str | None:
        mistake = self.current_mistake
        if mistake is None:
            return None
        node: PositionNode = self.tree.node(mistake.played_node_id)
        mark = "??" if mistake.type == "blunder" else "?!"
        return f"{node.display()}{mark} was played. Find a better move for {mistake.player_color.capitalize()}."

    def feedback_text(self) -> str | None:
        mistake = self.current_mistake
        if mistake is None:
            return None
        if self.config.show_solution:
            if self.config.last_result == "correct":
                return f"Correct! {mistake.best_move_san} was the best move."
            return f"The best move was {mistake.best_move_san}."
        if self.config.last_result == "correct":
            return f"Correct! {mistake.best_move_san} was the best move."
        if self.config.last_result == "incorrect":
            return f"You can do better. Try another move for {mistake.player_color.capitalize()}."
        return None
