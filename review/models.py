"""Data models for the game review core."""

import math
from dataclasses import dataclass, field
from typing import Literal

TACTICAL_ENGINE = "stockfish"
MATE_SCORE_CP = 10000


def policy_engine_id(model: str) -> str:
    """Cache key of a policy model, e.g. ``maia:maia_rapid``."""
    return f"maia:{model}"


def cp_to_winrate(cp: float) -> float:
    """Win probability for the side to move given a centipawn score."""
    return 1 / (1 + math.exp(-0.00368208 * cp))


@dataclass
class PositionNode:
    """One board state in a game tree. Links are arena indices."""

    node_id: int
    fen: str
    ply: int = 0
    move: str | None = None
    san: str | None = None
    parent_id: int | None = None
    children: list[int] = field(default_factory=list)
    turn: Literal["w", "b"] = "w"
    check: bool = False

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def move_number(self) -> int:
        return (self.ply + 1) // 2

    @property
    def mover(self) -> Literal["white", "black"] | None:
        """Color that played the move leading here."""
        if self.is_root:
            return None
        return "black" if self.turn == "w" else "white"

    def display(self) -> str:
        """Move as shown in a move list: ``12. Nf3`` or ``12... Nf6``."""
        if self.is_root:
            return ""
        dots = "." if self.mover == "white" else "..."
        return f"{self.move_number}{dots} {self.san}"


@dataclass(frozen=True)
class PolicyRecord:
    """Move distribution from the human-move policy model."""

    policy: dict[str, float]
    value: float | None = None
    terminal: bool = False
    kind = "policy"

    @property
    def depth(self) -> int:
        return 0

    @property
    def top_move(self) -> str | None:
        return next(iter(self.policy), None)

    def to_dict(self) -> dict:
        return {"kind": self.kind, "policy": dict(self.policy), "value": self.value, "terminal": self.terminal}


@dataclass(frozen=True)
class TacticalRecord:
    """Search result at one depth.

    ``scores`` maps UCI moves to centipawns from the side to move's point of
    view, best move first. Mates are scored +/-MATE_SCORE_CP and their signed
    distance is kept in ``mate``.
    """

    depth: int
    scores: dict[str, int]
    mate: dict[str, int] = field(default_factory=dict)
    terminal: bool = False
    outcome: str | None = None
    kind = "tactical"

    @property
    def best_move(self) -> str | None:
        return next(iter(self.scores), None)

    @property
    def best_cp(self) -> int | None:
        best = self.best_move
        return None if best is None else self.scores[best]

    def cp_loss(self, move: str) -> int | None:
        """Centipawns lost by ``move`` versus the best move, None if unscored."""
        if move not in self.scores or self.best_cp is None:
            return None
        return self.best_cp - self.scores[move]

    @property
    def winrates(self) -> dict[str, float]:
        return {m: cp_to_winrate(cp) for m, cp in self.scores.items()}

    @property
    def winrate_losses(self) -> dict[str, float]:
        rates = self.winrates
        if not rates:
            return {}
        best = max(rates.values())
        return {m: wr - best for m, wr in rates.items()}

    def to_dict(self) -> dict:
        out = {"kind": self.kind, "depth": self.depth, "scores": dict(self.scores)}
        if self.mate:
            out["mate"] = dict(self.mate)
        if self.terminal:
            out["terminal"] = True
            out["outcome"] = self.outcome
        return out

    @classmethod
    def terminal_marker(cls, outcome: str | None, depth: int = 0) -> "TacticalRecord":
        return cls(depth=depth, scores={}, terminal=True, outcome=outcome)


AnalysisRecord = PolicyRecord | TacticalRecord


def record_from_dict(data: dict) -> AnalysisRecord:
    """Inverse of ``to_dict`` for either record kind."""
    kind = data.get("kind")
    if kind == "policy":
        policy = {k: float(v) for k, v in data.get("policy", {}).items()}
        return PolicyRecord(
            policy=dict(sorted(policy.items(), key=lambda kv: -kv[1])),
            value=data.get("value"),
            terminal=bool(data.get("terminal", False)),
        )
    if kind == "tactical":
        scores = {k: int(v) for k, v in data.get("scores", {}).items()}
        mate = {k: int(v) for k, v in data.get("mate", {}).items()}
        # JSON stores (JSONB in particular) do not keep key order; restore best first.
        ordered = sorted(scores.items(), key=lambda kv: (-kv[1], mate.get(kv[0], 0)))
        return TacticalRecord(
            depth=int(data["depth"]),
            scores=dict(ordered),
            mate=mate,
            terminal=bool(data.get("terminal", False)),
            outcome=data.get("outcome"),
        )
    raise ValueError(f"Unknown analysis record kind: {kind!r}")


@dataclass
class DeepAnalysisProgress:
    total_moves: int = 0
    current_move_index: int = 0
    current_move: str = ""
    is_analyzing: bool = False
    target_depth: int = 0
    failed_node_ids: list[int] = field(default_factory=list)


@dataclass(frozen=True)
class MistakeRecord:
    """A played move that lost too much against the engine's best move.

    ``node_id`` is the position the move was played from; ``played_node_id``
    is the position it produced.
    """

    node_id: int
    played_node_id: int
    move_index: int
    fen: str
    played_move: str
    san: str
    type: Literal["inaccuracy", "blunder"]
    best_move: str
    best_move_san: str
    player_color: Literal["white", "black"]
    cp_loss: int


@dataclass(frozen=True)
class MoveClassification:
    blunder: bool = False
    inaccuracy: bool = False
    cp_loss: int | None = None
