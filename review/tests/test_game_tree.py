"""Tests for game_tree.py"""

import sys
from pathlib import Path

import chess
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from errors import InvalidMove
from game_tree import GameTree, TreeCursor, same_position
from mistake_detector import detect_mistakes
from models import TACTICAL_ENGINE, PolicyRecord, TacticalRecord

AFTER_E4 = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"

PGN_WITH_VARIATION = """[Event "Casual"]
[White "A"]
[Black "B"]
[Result "*"]

1. e4 e5 (1... c5 2. Nf3) 2. Nf3 Nc6 *
"""


def play_line(tree: GameTree, *moves: str):
    node = tree.root
    for move in moves:
        node = tree.play(node, move)
    return node


def test_root_of_standard_game():
    tree = GameTree()
    assert tree.root.fen == chess.STARTING_FEN
    assert tree.root.ply == 0
    assert tree.root.turn == "w"
    assert tree.root.is_root
    assert tree.root.display() == ""


def test_add_variation_recomputes_board_state():
    tree = GameTree()
    node = tree.add_variation(tree.root, AFTER_E4, "e2e4", "e4")
    assert node.fen == AFTER_E4
    assert node.ply == 1
    assert node.turn == "b"
    assert node.san == "e4"
    assert node.parent_id == tree.root.node_id
    assert tree.root.children == [node.node_id]


def test_add_variation_ignores_move_counters_in_claimed_fen():
    tree = GameTree()
    claimed = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 7 12"
    node = tree.add_variation(tree.root, claimed, "e2e4")
    assert node.fen == AFTER_E4


def test_add_variation_is_idempotent():
    tree = GameTree()
    first = tree.add_variation(tree.root, AFTER_E4, "e2e4", "e4")
    revision = tree.revision
    again = tree.add_variation(tree.root, AFTER_E4, "e2e4", "e4")
    assert again is first
    assert len(tree) == 2
    assert tree.revision == revision


def test_illegal_move_is_rejected():
    tree = GameTree()
    with pytest.raises(InvalidMove):
        tree.add_variation(tree.root, None, "e2e5")
    assert len(tree) == 1
    assert tree.revision == 0


def test_malformed_move_is_rejected():
    tree = GameTree()
    with pytest.raises(InvalidMove):
        tree.add_variation(tree.root, None, "zz")


def test_desynchronized_board_state_is_rejected():
    tree = GameTree()
    with pytest.raises(InvalidMove):
        tree.add_variation(tree.root, chess.STARTING_FEN, "e2e4")


def test_wrong_san_is_rejected():
    tree = GameTree()
    with pytest.raises(InvalidMove):
        tree.add_variation(tree.root, None, "e2e4", "d4")


def test_play_accepts_san_and_uci():
    tree = GameTree()
    e4 = tree.play(tree.root, "e4")
    e5 = tree.play(e4, "e7e5")
    assert e4.move == "e2e4"
    assert e5.san == "e5"
    with pytest.raises(InvalidMove):
        tree.play(e5, "Qxf7")


def test_invalid_move_is_a_value_error():
    tree = GameTree()
    with pytest.raises(ValueError):
        tree.play(tree.root, "Ke2")


def test_display_uses_move_numbers():
    tree = GameTree()
    e4 = tree.play(tree.root, "e4")
    e5 = tree.play(e4, "e5")
    nf3 = tree.play(e5, "Nf3")
    assert e4.display() == "1. e4"
    assert e5.display() == "1... e5"
    assert nf3.display() == "2. Nf3"
    assert nf3.mover == "white"
    assert e5.mover == "black"


def test_ply_follows_fen_move_number():
    fen = "r1bqkbnr/pppp1ppp/2n5/4p3/4P3/5N2/PPPP1PPP/RNBQKB1R w KQkq - 2 3"
    tree = GameTree.from_fen(fen)
    assert tree.root.ply == 4
    bc4 = tree.play(tree.root, "Bc4")
    assert bc4.display() == "3. Bc4"
    assert tree.headers["FEN"] == fen


def test_main_line_is_first_children_in_ply_order():
    tree = GameTree()
    play_line(tree, "e4", "e5", "Nf3")
    e4 = tree.root.children[0]
    tree.play(e4, "c5")
    plies = [n.ply for n in tree.main_line()]
    sans = [n.san for n in tree.main_line()]
    assert plies == [0, 1, 2, 3]
    assert sans == [None, "e4", "e5", "Nf3"]
    assert len(tree.main_line()) == 4


def test_variation_is_not_main_line():
    tree = GameTree()
    e4 = tree.play(tree.root, "e4")
    e5 = tree.play(e4, "e5")
    c5 = tree.play(e4, "c5")
    assert tree.is_main_line(e5)
    assert not tree.is_main_line(c5)
    assert [n.san for n in tree.children(e4)] == ["e5", "c5"]
    assert tree.path_to(c5) == [tree.root, e4, c5]
    assert tree.child_for_move(e4, "c7c5") is c5


def test_mutations_notify_listeners_with_revision():
    tree = GameTree()
    seen = []
    tree.subscribe(seen.append)
    node = tree.play(tree.root, "e4")
    tree.analysis.put(node, TACTICAL_ENGINE, TacticalRecord(depth=10, scores={"e7e5": -20}))
    tree.unsubscribe(seen.append)
    tree.play(node, "e5")
    assert seen == [1, 2]


def test_from_pgn_keeps_variations_in_order():
    tree = GameTree.from_pgn(PGN_WITH_VARIATION)
    assert [n.san for n in tree.main_line()][1:] == ["e4", "e5", "Nf3", "Nc6"]
    e4 = tree.node(tree.root.children[0])
    assert [c.san for c in tree.children(e4)] == ["e5", "c5"]
    assert tree.headers["White"] == "A"


def test_pgn_round_trip_preserves_structure():
    tree = GameTree.from_pgn(PGN_WITH_VARIATION)
    again = GameTree.from_pgn(tree.to_pgn())
    assert len(again) == len(tree)
    assert [n.fen for n in again.main_line()] == [n.fen for n in tree.main_line()]
    e4 = again.node(again.root.children[0])
    assert [c.san for c in again.children(e4)] == ["e5", "c5"]


def test_from_pgn_rejects_illegal_moves():
    with pytest.raises(InvalidMove):
        GameTree.from_pgn("1. e4 e5 2. Ke3 *")


def test_from_pgn_rejects_empty_input():
    with pytest.raises(ValueError):
        GameTree.from_pgn("")


def test_dict_round_trip_keeps_analysis_and_child_order():
    tree = GameTree.from_pgn(PGN_WITH_VARIATION)
    e4 = tree.node(tree.root.children[0])
    tree.analysis.put(tree.root, TACTICAL_ENGINE, TacticalRecord(depth=18, scores={"e2e4": 30, "d2d4": 25}))
    tree.analysis.put(e4, "maia:maia_rapid", PolicyRecord(policy={"e7e5": 0.5, "c7c5": 0.3}, value=0.48))

    data = tree.to_dict()
    rebuilt = GameTree.from_dict(data)

    assert rebuilt.to_dict() == data
    assert data["root"]["analysis"]["stockfish"]["depth"] == 18
    assert [c["sanText"] for c in data["root"]["children"][0]["children"]] == ["e5", "c5"]
    assert rebuilt.analysis.get(rebuilt.root, TACTICAL_ENGINE).best_move == "e2e4"


def test_from_dict_restores_best_first_order_of_reordered_keys():
    tree = GameTree.from_pgn("1. a3 *")
    tree.analysis.put(tree.root, TACTICAL_ENGINE, TacticalRecord(depth=20, scores={"g1f3": 40, "e2e4": 35, "a2a3": -300}))
    a3 = tree.node(tree.root.children[0])
    tree.analysis.put(a3, "maia:maia_rapid", PolicyRecord(policy={"e7e5": 0.6, "d7d5": 0.3, "c7c5": 0.1}))

    data = tree.to_dict()
    # Postgres JSONB returns object keys sorted by length, then bytes.
    root = data["root"]
    root["analysis"]["stockfish"]["scores"] = dict(sorted(root["analysis"]["stockfish"]["scores"].items()))
    maia = root["children"][0]["analysis"]["maia:maia_rapid"]
    maia["policy"] = dict(sorted(maia["policy"].items()))
    rebuilt = GameTree.from_dict(data)

    record = rebuilt.analysis.get(rebuilt.root, TACTICAL_ENGINE)
    assert record.best_move == "g1f3"
    assert list(record.scores) == ["g1f3", "e2e4", "a2a3"]
    assert rebuilt.analysis.get(rebuilt.root.children[0], "maia:maia_rapid").top_move == "e7e5"
    mistakes = detect_mistakes(rebuilt, "white")
    assert [(m.san, m.type, m.cp_loss) for m in mistakes] == [("a3", "blunder", 340)]


def test_mate_scores_sort_shortest_mate_first():
    tree = GameTree()
    tree.analysis.put(
        tree.root, TACTICAL_ENGINE,
        TacticalRecord(depth=20, scores={"e2e4": 10000, "d2d4": 10000}, mate={"e2e4": 3, "d2d4": 1}),
    )
    data = tree.to_dict()
    rebuilt = GameTree.from_dict(data)
    assert rebuilt.analysis.get(rebuilt.root, TACTICAL_ENGINE).best_move == "d2d4"


def test_from_dict_rejects_tampered_moves():
    tree = GameTree()
    play_line(tree, "e4", "e5")
    data = tree.to_dict()
    data["root"]["children"][0]["children"][0]["move"] = "e7e4"
    with pytest.raises(InvalidMove):
        GameTree.from_dict(data)


def test_long_game_serializes_without_recursion():
    tree = GameTree()
    node = tree.root
    shuffle = ["g1f3", "g8f6", "f3g1", "f6g8"]
    for i in range(400):
        node = tree.play(node, shuffle[i % 4])
    data = tree.to_dict()
    rebuilt = GameTree.from_dict(data)
    assert len(rebuilt) == 401
    assert list(rebuilt.main_line())[-1].ply == 400


def test_same_position_compares_first_three_fields():
    assert same_position(AFTER_E4, AFTER_E4.replace("0 1", "3 9"))
    assert not same_position(AFTER_E4, chess.STARTING_FEN)


def test_cursor_navigation_stops_at_ends():
    tree = GameTree()
    e4 = tree.play(tree.root, "e4")
    cursor = TreeCursor(tree)
    assert cursor.previous() is None
    assert cursor.next() is e4
    assert cursor.next() is None
    assert cursor.current is e4
    assert cursor.to_root() is tree.root
    assert cursor.to_node(e4.node_id) is e4
    assert tree.revision == 1


def test_node_lookup_errors():
    tree = GameTree()
    with pytest.raises(KeyError):
        tree.node(5)
    other = GameTree()
    other_e4 = other.play(other.root, "e4")
    with pytest.raises(KeyError):
        tree.parent(other_e4)
