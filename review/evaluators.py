"""
External engine evaluators.

Each evaluator turns a FEN into a stream of analysis records. The tactical
evaluator drives a UCI engine (Stockfish) through python-chess; the policy
evaluator asks a human-move prediction service over HTTP.
"""

import abc
import logging
import sys
from collections.abc import AsyncIterator
from pathlib import Path

import chess
import chess.engine
import httpx

sys.path.insert(0, str(Path(__file__).resolve().parent))
from errors import EngineEvaluationFailed, EngineNotReady
from models import (
    MATE_SCORE_CP,
    TACTICAL_ENGINE,
    AnalysisRecord,
    PolicyRecord,
    TacticalRecord,
    policy_engine_id,
)

log = logging.getLogger(__name__)


def score_to_cp(score: chess.engine.PovScore, turn: chess.Color) -> tuple[int, int | None]:
    """Centipawns for the side to move, mate capped at +/-MATE_SCORE_CP.

    Returns (cp, signed mate distance or None).
    """
    pov = score.pov(turn)
    if pov.is_mate():
        m = pov.mate()
        return (MATE_SCORE_CP if m > 0 else -MATE_SCORE_CP), m
    return pov.score(), None


def terminal_outcome(board: chess.Board) -> str | None:
    outcome = board.outcome()
    return outcome.termination.name.lower() if outcome else None


class Evaluator(abc.ABC):
    engine_id: str

    async def start(self) -> None:
        """One-time initialization. Raise to signal a terminal failure."""

    @abc.abstractmethod
    def stream(self, fen: str, legal_move_count: int, depth: int) -> AsyncIterator[AnalysisRecord]:
        """Yield progressively deeper records for ``fen``."""

    async def close(self) -> None:
        pass


class UciTacticalEvaluator(Evaluator):
    """Stockfish (or any UCI engine) with one principal variation per legal move."""

    engine_id = TACTICAL_ENGINE

    def __init__(self, path: str = "stockfish", options: dict | None = None):
        self.path = path
        self.options = options or {}
        self._transport = None
        self._engine: chess.engine.UciProtocol | None = None

    async def start(self) -> None:
        try:
            self._transport, self._engine = await chess.engine.popen_uci(self.path)
        except FileNotFoundError as exc:
            raise EngineNotReady(
                f"Stockfish not found at {self.path}",
                user_message="Stockfish not found. Install it or set STOCKFISH_PATH.",
            ) from exc
        except chess.engine.EngineError as exc:
            raise EngineNotReady(f"Stockfish failed to start: {exc}") from exc
        if self.options:
            await self._engine.configure(self.options)
        log.info("Started UCI engine %s", self._engine.id.get("name", self.path))

    async def stream(self, fen: str, legal_move_count: int, depth: int) -> AsyncIterator[TacticalRecord]:
        if self._engine is None:
            raise EngineNotReady("UCI engine is not started")
        board = chess.Board(fen)
        legal = {m.uci() for m in board.legal_moves}
        if not legal:
            yield TacticalRecord.terminal_marker(terminal_outcome(board), depth)
            return

        multipv = min(legal_move_count or len(legal), len(legal))
        lines_by_depth: dict[int, dict[str, tuple[int, int | None]]] = {}
        emitted: set[int] = set()
        try:
            with await self._engine.analysis(board, chess.engine.Limit(depth=depth), multipv=multipv) as analysis:
                async for info in analysis:
                    info_depth = info.get("depth")
                    score = info.get("score")
                    pv = info.get("pv")
                    if info_depth is None or score is None or not pv:
                        continue
                    move = pv[0].uci()
                    if move not in legal:
                        continue
                    lines = lines_by_depth.setdefault(info_depth, {})
                    lines[move] = score_to_cp(score, board.turn)
                    if info_depth not in emitted and info.get("multipv", 1) == multipv:
                        emitted.add(info_depth)
                        yield self._record(info_depth, lines)
        except chess.engine.EngineError as exc:
            raise EngineEvaluationFailed(f"Stockfish failed on {fen}: {exc}", context={"fen": fen}) from exc

        if lines_by_depth:
            deepest = max(lines_by_depth)
            if deepest not in emitted:
                yield self._record(deepest, lines_by_depth[deepest])

    @staticmethod
    def _record(depth: int, lines: dict[str, tuple[int, int | None]]) -> TacticalRecord:
        ordered = sorted(lines.items(), key=lambda kv: -kv[1][0])
        return TacticalRecord(
            depth=depth,
            scores={move: cp for move, (cp, _) in ordered},
            mate={move: mate for move, (_, mate) in ordered if mate is not None},
        )

    async def close(self) -> None:
        if self._engine is not None:
            try:
                await self._engine.quit()
            except chess.engine.EngineTerminatedError:
                pass
            self._engine = None


class HttpPolicyEvaluator(Evaluator):
    """Human-move policy model served over HTTP.

    POST {url}/evaluate {"fen", "model", "elo_self", "elo_oppo"}
      -> {"policy": {uci: probability}, "value": win probability}
    """

    def __init__(
        self,
        url: str,
        model: str,
        elo_self: int = 1500,
        elo_oppo: int = 1500,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.url = url.rstrip("/")
        self.model = model
        self.engine_id = policy_engine_id(model)
        self.elo_self = elo_self
        self.elo_oppo = elo_oppo
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        try:
            resp = await self._client.get(f"{self.url}/health")
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise EngineNotReady(f"Policy engine unavailable at {self.url}: {exc}") from exc

    async def stream(self, fen: str, legal_move_count: int, depth: int) -> AsyncIterator[PolicyRecord]:
        if self._client is None:
            raise EngineNotReady("Policy engine client is not started")
        board = chess.Board(fen)
        legal = {m.uci() for m in board.legal_moves}
        if not legal:
            yield PolicyRecord(policy={}, terminal=True)
            return

        body = {"fen": fen, "model": self.model, "elo_self": self.elo_self, "elo_oppo": self.elo_oppo}
        try:
            resp = await self._client.post(f"{self.url}/evaluate", json=body)
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise EngineEvaluationFailed(f"Policy engine failed on {fen}: {exc}", context={"fen": fen}) from exc

        policy = {m: float(p) for m, p in data.get("policy", {}).items() if m in legal and float(p) >= 0}
        yield PolicyRecord(
            policy=dict(sorted(policy.items(), key=lambda kv: -kv[1])),
            value=data.get("value"),
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None
