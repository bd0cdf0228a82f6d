"""
Game tree of chess positions.

Nodes live in one arena per tree and refer to each other by integer id.
The first child of a node is its main line continuation, later children are
variations. Board state is recomputed from the parent for every new node, so
the tree is the only source of board state for a node id.
"""

import io
import logging
import sys
from collections.abc import Callable, Iterator
from pathlib import Path

import chess
import chess.pgn

sys.path.insert(0, str(Path(__file__).resolve().parent))
from analysis_cache import AnalysisCache
from errors import InvalidMove
from models import PositionNode, record_from_dict

log = logging.getLogger(__name__)


def same_position(fen_a: str, fen_b: str) -> bool:
    """Compare placement, side to move and castling rights."""
    return fen_a.split()[:3] == fen_b.split()[:3]


def _turn(board: chess.Board) -> str:
    return "w" if board.turn == chess.WHITE else "b"


def _start_ply(board: chess.Board) -> int:
    return (board.fullmove_number - 1) * 2 + (0 if board.turn == chess.WHITE else 1)


class MainLine:
    """Restartable view of the first-child chain from a node to a leaf."""

    def __init__(self, tree: "GameTree", start: PositionNode):
        self._tree = tree
        self._start = start

    def __iter__(self) -> Iterator[PositionNode]:
        node = self._start
        while True:
            yield node
            if not node.children:
                return
            node = self._tree.node(node.children[0])

    def __len__(self) -> int:
        return sum(1 for _ in self)


class GameTree:
    def __init__(self, root_fen: str = chess.STARTING_FEN, headers: dict[str, str] | None = None):
        board = chess.Board(root_fen)
        root = PositionNode(
            node_id=0,
            fen=board.fen(),
            ply=_start_ply(board),
            turn=_turn(board),
            check=board.is_check(),
        )
        self._nodes: list[PositionNode] = [root]
        self.headers: dict[str, str] = dict(headers or {})
        self.revision = 0
        self._listeners: list[Callable[[int], None]] = []
        self.analysis = AnalysisCache(on_change=self._touch)

    # -- structure -----------------------------------------------------

    @property
    def root(self) -> PositionNode:
        return self._nodes[0]

    def node(self, node_id: int) -> PositionNode:
        if node_id < 0 or node_id >= len(self._nodes):
            raise KeyError(f"No node {node_id} in tree")
        return self._nodes[node_id]

    def _resolve(self, node: PositionNode | int) -> PositionNode:
        resolved = self.node(node if isinstance(node, int) else node.node_id)
        if not isinstance(node, int) and resolved is not node:
            raise KeyError(f"Node {node.node_id} belongs to another tree")
        return resolved

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[PositionNode]:
        return iter(self._nodes)

    def __contains__(self, node: PositionNode) -> bool:
        return 0 <= node.node_id < len(self._nodes) and self._nodes[node.node_id] is node

    def parent(self, node: PositionNode | int) -> PositionNode | None:
        node = self._resolve(node)
        return None if node.parent_id is None else self._nodes[node.parent_id]

    def children(self, node: PositionNode | int) -> list[PositionNode]:
        return [self._nodes[c] for c in self._resolve(node).children]

    def child_for_move(self, node: PositionNode | int, move: str) -> PositionNode | None:
        for child in self.children(node):
            if child.move == move:
                return child
        return None

    def is_main_line(self, node: PositionNode | int) -> bool:
        node = self._resolve(node)
        while node.parent_id is not None:
            parent = self._nodes[node.parent_id]
            if parent.children[0] != node.node_id:
                return False
            node = parent
        return True

    def path_to(self, node: PositionNode | int) -> list[PositionNode]:
        """Nodes from the root down to ``node``, inclusive."""
        node = self._resolve(node)
        path = [node]
        while node.parent_id is not None:
            node = self._nodes[node.parent_id]
            path.append(node)
        path.reverse()
        return path

    def main_line(self, from_node: PositionNode | int | None = None) -> MainLine:
        start = self.root if from_node is None else self._resolve(from_node)
        return MainLine(self, start)

    # -- mutation ------------------------------------------------------

    def subscribe(self, listener: Callable[[int], None]) -> None:
        """Call ``listener(revision)`` after every tree or analysis change."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: Callable[[int], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _touch(self) -> None:
        self.revision += 1
        for listener in list(self._listeners):
            listener(self.revision)

    def add_variation(
        self,
        parent: PositionNode | int,
        fen: str | None,
        move: str,
        san: str | None = None,
    ) -> PositionNode:
        """
        Add the position reached by ``move`` (UCI) from ``parent``.

        ``fen`` and ``san`` are what the caller believes the result to be; they
        are checked against the independently recomputed position. Adding a
        move that already exists returns the existing child.
        """
        parent = self._resolve(parent)
        board = chess.Board(parent.fen)
        try:
            parsed = chess.Move.from_uci(move)
        except chess.InvalidMoveError as exc:
            raise InvalidMove(f"Malformed move {move!r}", context={"parent": parent.node_id}) from exc
        if parsed not in board.legal_moves:
            raise InvalidMove(
                f"Illegal move {move} in {parent.fen}",
                user_message=f"{move} is not a legal move here",
                context={"parent": parent.node_id, "move": move},
            )

        uci = parsed.uci()
        existing = self.child_for_move(parent, uci)
        if existing is not None:
            return existing

        real_san = board.san(parsed)
        board.push(parsed)
        if fen is not None and not same_position(fen, board.fen()):
            raise InvalidMove(
                f"Move {uci} does not lead to {fen}",
                context={"parent": parent.node_id, "move": uci, "expected": board.fen()},
            )
        if san is not None and san != real_san:
            raise InvalidMove(
                f"SAN {san!r} does not match {uci} ({real_san})",
                context={"parent": parent.node_id, "move": uci},
            )

        node = PositionNode(
            node_id=len(self._nodes),
            fen=board.fen(),
            ply=parent.ply + 1,
            move=uci,
            san=real_san,
            parent_id=parent.node_id,
            turn=_turn(board),
            check=board.is_check(),
        )
        self._nodes.append(node)
        parent.children.append(node.node_id)
        log.debug("Added node %d (%s) under %d", node.node_id, real_san, parent.node_id)
        self._touch()
        return node

    def play(self, parent: PositionNode | int, move: str) -> PositionNode:
        """Add a move given in UCI or SAN."""
        parent = self._resolve(parent)
        board = chess.Board(parent.fen)
        try:
            parsed = chess.Move.from_uci(move)
        except chess.InvalidMoveError:
            try:
                parsed = board.parse_san(move)
            except ValueError as exc:
                raise InvalidMove(f"Cannot parse move {move!r}", context={"parent": parent.node_id}) from exc
        return self.add_variation(parent, None, parsed.uci())

    # -- import / export -----------------------------------------------

    @classmethod
    def from_fen(cls, fen: str) -> "GameTree":
        return cls(root_fen=fen, headers={"FEN": fen, "SetUp": "1"})

    @classmethod
    def from_pgn(cls, pgn: str) -> "GameTree":
        """Build a tree from PGN text, keeping variations in order."""
        game = chess.pgn.read_game(io.StringIO(pgn))
        if game is None:
            raise ValueError("No game found in PGN")
        if game.errors:
            raise InvalidMove(f"Illegal move in PGN: {game.errors[0]}")

        tree = cls(root_fen=game.board().fen(), headers=dict(game.headers))
        stack = [(game, tree.root)]
        while stack:
            pgn_node, tree_node = stack.pop()
            for variation in pgn_node.variations:
                child = tree.add_variation(tree_node, None, variation.move.uci())
                stack.append((variation, child))
        return tree

    def to_pgn(self) -> str:
        game = chess.pgn.Game()
        board = chess.Board(self.root.fen)
        if self.root.fen != chess.STARTING_FEN:
            game.setup(board)
        for key, value in self.headers.items():
            if key not in ("FEN", "SetUp"):
                game.headers[key] = value

        stack = [(self.root, game)]
        while stack:
            tree_node, pgn_node = stack.pop()
            for child in self.children(tree_node):
                pgn_child = pgn_node.add_variation(chess.Move.from_uci(child.move))
                stack.append((child, pgn_child))
        return str(game)

    def to_dict(self) -> dict:
        """Nested snapshot: each node is {boardState, move, sanText, children, analysis}."""
        built: dict[int, dict] = {}
        for node in reversed(self._nodes):
            built[node.node_id] = {
                "boardState": node.fen,
                "move": node.move,
                "sanText": node.san,
                "children": [built[c] for c in node.children],
                "analysis": {
                    engine: record.to_dict()
                    for engine, record in sorted(self.analysis.records_for(node).items())
                },
            }
        return {"headers": dict(self.headers), "root": built[0]}

    @classmethod
    def from_dict(cls, data: dict) -> "GameTree":
        """Rebuild a tree from ``to_dict`` output, re-validating every move."""
        root_data = data["root"]
        tree = cls(root_fen=root_data["boardState"], headers=data.get("headers"))
        stack = [(root_data, tree.root)]
        while stack:
            node_data, node = stack.pop()
            for engine, record in node_data.get("analysis", {}).items():
                tree.analysis.put(node, engine, record_from_dict(record))
            for child_data in node_data.get("children", []):
                child = tree.add_variation(node, child_data["boardState"], child_data["move"], child_data.get("sanText"))
                stack.append((child_data, child))
        return tree


class TreeCursor:
    """Current position in a tree. Moving it never touches analysis."""

    def __init__(self, tree: GameTree, node: PositionNode | int | None = None):
        self.tree = tree
        self.current = tree.root if node is None else tree._resolve(node)

    def next(self) -> PositionNode | None:
        if not self.current.children:
            return None
        self.current = self.tree.node(self.current.children[0])
        return self.current

    def previous(self) -> PositionNode | None:
        parent = self.tree.parent(self.current)
        if parent is None:
            return None
        self.current = parent
        return self.current

    def to_root(self) -> PositionNode:
        self.current = self.tree.root
        return self.current

    def to_node(self, node: PositionNode | int) -> PositionNode:
        self.current = self.tree._resolve(node)
        return self.current
