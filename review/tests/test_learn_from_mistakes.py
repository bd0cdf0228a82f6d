"""Tests for learn_from_mistakes.py"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from deep_analysis import DeepAnalysisDriver
from errors import InvalidMove, SessionInvalidState
from fakes import FakeEvaluator, ready_gateway
from game_tree import GameTree, TreeCursor
from learn_from_mistakes import LearnFromMistakesSession, SessionState
from models import TACTICAL_ENGINE, TacticalRecord


def analyzed_tree() -> GameTree:
    """1. a3?? e5 2. g4?! with every main line position analyzed at depth 18."""
    tree = GameTree()
    records = [
        ("a2a3", {"e2e4": 30, "a2a3": -300}),
        ("e7e5", {"e7e5": -10}),
        ("g2g4", {"d2d4": 40, "g2g4": -40}),
    ]
    node = tree.root
    for move, scores in records:
        tree.analysis.put(node, TACTICAL_ENGINE, TacticalRecord(depth=18, scores=scores))
        node = tree.play(node, move)
    tree.analysis.put(node, TACTICAL_ENGINE, TacticalRecord(depth=18, scores={"d7d5": 50}))
    return tree


async def make_session(tree: GameTree, evaluator: FakeEvaluator | None = None):
    evaluator = evaluator or FakeEvaluator()
    cursor = TreeCursor(tree)
    driver = DeepAnalysisDriver(tree, [await ready_gateway(evaluator)], cursor)
    return LearnFromMistakesSession(tree, driver, cursor), evaluator


@pytest.mark.asyncio
async def test_full_walkthrough():
    tree = analyzed_tree()
    session, evaluator = await make_session(tree)

    session.start()
    assert session.state is SessionState.SELECTING_PLAYER
    assert session.config.show_player_selection

    mistakes = await session.select_player("white")
    assert [m.type for m in mistakes] == ["blunder", "inaccuracy"]
    assert evaluator.requests == []
    assert session.state is SessionState.PRESENTING
    assert session.cursor.current is tree.root
    info = session.current_info()
    assert info.progress == "1 of 2"
    assert not info.is_last_mistake
    assert session.prompt_text() == "1. a3?? was played. Find a better move for White."

    assert session.next().san == "g4"
    assert session.current_info().progress == "2 of 2"
    assert session.current_info().is_last_mistake
    assert session.next() is None
    assert session.state is SessionState.FINISHED
    assert session.current_mistake is None


@pytest.mark.asyncio
async def test_wrong_attempt_returns_to_mistake_position():
    tree = analyzed_tree()
    session, _ = await make_session(tree)
    session.start()
    await session.select_player("white")

    assert session.submit_attempt("h3") == "incorrect"
    assert session.cursor.current is tree.root
    assert session.feedback_text() == "You can do better. Try another move for White."
    assert tree.child_for_move(tree.root, "h2h3") is not None
    assert session.state is SessionState.PRESENTING


@pytest.mark.asyncio
async def test_best_move_attempt_is_correct():
    tree = analyzed_tree()
    session, _ = await make_session(tree)
    session.start()
    await session.select_player("white")

    assert session.submit_attempt("e2e4") == "correct"
    assert session.cursor.current.san == "e4"
    assert not tree.is_main_line(session.cursor.current)
    assert session.feedback_text() == "Correct! e4 was the best move."


@pytest.mark.asyncio
async def test_unparseable_attempt_raises_invalid_move():
    tree = analyzed_tree()
    session, _ = await make_session(tree)
    session.start()
    await session.select_player("white")
    with pytest.raises(InvalidMove):
        session.submit_attempt("Ke2")


@pytest.mark.asyncio
async def test_show_solution_reveals_best_move_once():
    tree = analyzed_tree()
    session, _ = await make_session(tree)
    session.start()
    await session.select_player("white")

    assert session.show_solution() == ("e2e4", "e4")
    assert session.state is SessionState.SOLUTION_SHOWN
    assert session.feedback_text() == "The best move was e4."
    with pytest.raises(SessionInvalidState):
        session.show_solution()
    assert session.submit_attempt("e4") == "correct"


@pytest.mark.asyncio
async def test_no_mistakes_finishes_immediately():
    tree = analyzed_tree()
    session, _ = await make_session(tree)
    session.start()
    assert await session.select_player("black") == []
    assert session.state is SessionState.FINISHED


@pytest.mark.asyncio
async def test_invalid_transitions_raise():
    tree = analyzed_tree()
    session, _ = await make_session(tree)
    with pytest.raises(SessionInvalidState):
        await session.select_player("white")
    with pytest.raises(SessionInvalidState):
        session.submit_attempt("e4")
    with pytest.raises(SessionInvalidState):
        session.next()
    session.start()
    with pytest.raises(SessionInvalidState):
        session.start()
    with pytest.raises(SessionInvalidState):
        session.show_solution()


@pytest.mark.asyncio
async def test_stop_resets_from_any_state():
    tree = analyzed_tree()
    session, _ = await make_session(tree)
    session.start()
    await session.select_player("white")
    session.stop()
    assert session.state is SessionState.INACTIVE
    assert session.config.mistakes == []
    session.start()
    assert session.state is SessionState.SELECTING_PLAYER


@pytest.mark.asyncio
async def test_select_player_runs_deep_analysis_when_missing():
    tree = GameTree()
    node = tree.play(tree.root, "a3")
    tree.play(node, "e5")
    evaluator = FakeEvaluator(
        results={tree.root.fen: [TacticalRecord(depth=18, scores={"e2e4": 30, "a2a3": -300})]}
    )
    session, _ = await make_session(tree, evaluator)
    session.start()

    mistakes = await session.select_player("white")

    assert len(evaluator.requests) == 3
    assert session.driver.is_complete(12)
    assert [m.san for m in mistakes] == ["a3"]
    assert session.state is SessionState.PRESENTING
