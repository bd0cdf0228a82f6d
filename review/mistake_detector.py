"""
Mistake detection from cached engine analysis.

A move is judged by its centipawn loss against the tactical engine's best
move in the position it was played from. Losses above the inaccuracy
threshold are inaccuracies, above the blunder threshold blunders. The same
thresholds drive single-move classification and the blunder meter.
"""

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

import chess

sys.path.insert(0, str(Path(__file__).resolve().parent))
from game_tree import GameTree
from models import (
    MATE_SCORE_CP,
    TACTICAL_ENGINE,
    MistakeRecord,
    MoveClassification,
    PolicyRecord,
    PositionNode,
    TacticalRecord,
)
from settings import BLUNDER_THRESHOLD_CP, INACCURACY_THRESHOLD_CP, MISTAKE_MIN_DEPTH


@dataclass(frozen=True)
class MistakeThresholds:
    inaccuracy_cp: int = INACCURACY_THRESHOLD_CP
    blunder_cp: int = BLUNDER_THRESHOLD_CP
    min_depth: int = MISTAKE_MIN_DEPTH


def classify_loss(cp_loss: int | None, thresholds: MistakeThresholds) -> Literal["blunder", "inaccuracy"] | None:
    if cp_loss is None:
        return None
    if cp_loss > thresholds.blunder_cp:
        return "blunder"
    if cp_loss > thresholds.inaccuracy_cp:
        return "inaccuracy"
    return None


def move_loss(tree: GameTree, node: PositionNode, move: str) -> int | None:
    """Centipawns lost by ``move`` from ``node``, never negative.

    Falls back to the evaluation of the resulting position when the move was
    not among the scored candidates.
    """
    record = tree.analysis.get(node, TACTICAL_ENGINE)
    if not isinstance(record, TacticalRecord) or record.best_cp is None:
        return None
    loss = record.cp_loss(move)
    if loss is None:
        child = tree.child_for_move(node, move)
        child_record = tree.analysis.get(child, TACTICAL_ENGINE) if child else None
        if not isinstance(child_record, TacticalRecord):
            return None
        if child_record.terminal:
            reply_cp = -MATE_SCORE_CP if child_record.outcome == "checkmate" else 0
        elif child_record.best_cp is None:
            return None
        else:
            reply_cp = child_record.best_cp
        loss = record.best_cp + reply_cp
    return max(loss, 0)


def _san(fen: str, move: str) -> str:
    return chess.Board(fen).san(chess.Move.from_uci(move))


def detect_mistakes(
    tree: GameTree,
    color: Literal["white", "black"],
    thresholds: MistakeThresholds = MistakeThresholds(),
    policy_engine: str | None = None,
) -> list[MistakeRecord]:
    """Mistakes by ``color`` along the main line, in the order they were played.

    A position is judged only when its tactical record is at least
    ``thresholds.min_depth`` deep and, if ``policy_engine`` is given, the
    policy model has analyzed it too.
    """
    turn = "w" if color == "white" else "b"
    mistakes = []
    for node in tree.main_line():
        if node.turn != turn or not node.children:
            continue
        record = tree.analysis.get(node, TACTICAL_ENGINE)
        if not isinstance(record, TacticalRecord) or record.terminal or record.depth < thresholds.min_depth:
            continue
        if policy_engine is not None and tree.analysis.get(node, policy_engine) is None:
            continue

        played = tree.node(node.children[0])
        best = record.best_move
        if best is None or best == played.move:
            continue
        loss = move_loss(tree, node, played.move)
        kind = classify_loss(loss, thresholds)
        if kind is None:
            continue
        mistakes.append(
            MistakeRecord(
                node_id=node.node_id,
                played_node_id=played.node_id,
                move_index=played.ply,
                fen=node.fen,
                played_move=played.move,
                san=played.san,
                type=kind,
                best_move=best,
                best_move_san=_san(node.fen, best),
                player_color=color,
                cp_loss=loss,
            )
        )
    return mistakes


def classify_move(
    tree: GameTree,
    node: PositionNode,
    move: str,
    thresholds: MistakeThresholds = MistakeThresholds(),
) -> MoveClassification:
    loss = move_loss(tree, node, move)
    kind = classify_loss(loss, thresholds)
    return MoveClassification(blunder=kind == "blunder", inaccuracy=kind == "inaccuracy", cp_loss=loss)


@dataclass
class MoveBucket:
    probability: float = 0.0
    moves: list[tuple[str, float]] = field(default_factory=list)


@dataclass
class BlunderMeter:
    good_moves: MoveBucket = field(default_factory=MoveBucket)
    ok_moves: MoveBucket = field(default_factory=MoveBucket)
    blunder_moves: MoveBucket = field(default_factory=MoveBucket)


def calculate_blunder_meter(
    policy: PolicyRecord | None,
    tactical: TacticalRecord | None,
    thresholds: MistakeThresholds = MistakeThresholds(),
) -> BlunderMeter:
    """Split the policy's probability mass by how much each move loses."""
    meter = BlunderMeter()
    if policy is None or tactical is None:
        return meter
    for move, probability in policy.policy.items():
        loss = tactical.cp_loss(move)
        if loss is None:
            continue
        kind = classify_loss(loss, thresholds)
        bucket = {"blunder": meter.blunder_moves, "inaccuracy": meter.ok_moves}.get(kind, meter.good_moves)
        bucket.probability += probability
        bucket.moves.append((move, probability))
    return meter
