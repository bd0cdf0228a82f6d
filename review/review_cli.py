#!/usr/bin/env python3
"""
Game review from the command line

Deep analyzes the main line of a PGN with Stockfish (and the policy engine
when POLICY_ENGINE_URL is set), then lists each side's inaccuracies and
blunders.

Usage:
  python review_cli.py game.pgn --depth 18
  python review_cli.py game.pgn --color white --json
  python review_cli.py game.pgn --save --game-id my-game   # store in REVIEW_STORE_URL
  python review_cli.py game.pgn --parallel --game-id my-game  # enqueue on Celery
"""

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
from deep_analysis import DriverState
from engine_gateway import shutdown_gateways
from errors import InvalidMove
from game_tree import GameTree
from models import TACTICAL_ENGINE, DeepAnalysisProgress
from persistence import HttpAnalysisStore
from review_controller import GameReview, shared_gateways
from settings import from_env


def print_progress(progress: DeepAnalysisProgress) -> None:
    print(
        f"[{progress.current_move_index}/{progress.total_moves}] {progress.current_move}",
        file=sys.stderr,
    )


def format_mistake(mistake) -> str:
    mark = "??" if mistake.type == "blunder" else "?!"
    dots = "." if mistake.player_color == "white" else "..."
    number = (mistake.move_index + 1) // 2
    return (
        f"{number}{dots} {mistake.san}{mark}  best {mistake.best_move_san}"
        f"  (-{mistake.cp_loss} cp, {mistake.type})"
    )


async def review_game(args, pgn: str, settings) -> int:
    try:
        tree = GameTree.from_pgn(pgn)
    except (InvalidMove, ValueError) as e:
        print(f"Cannot read {args.pgn}: {e}", file=sys.stderr)
        return 1

    gateways = shared_gateways(settings)
    tactical = next(gw for gw in gateways if gw.engine_id == TACTICAL_ENGINE)
    if not await tactical.wait_until_ready():
        print(tactical.init_error, file=sys.stderr)
        await shutdown_gateways()
        return 1

    store = HttpAnalysisStore(settings.store_url) if args.save else None
    review = GameReview(tree, gateways, settings, store=store, game_id=args.game_id)
    review.driver.on_progress(print_progress)
    try:
        state = await review.driver.run(args.depth or settings.deep_analysis_depth)
        if state is DriverState.FAILED:
            print("Deep analysis failed: no engine available.", file=sys.stderr)
            return 1
        if review.driver.progress.failed_node_ids:
            print(
                f"{len(review.driver.progress.failed_node_ids)} positions could not be analyzed.",
                file=sys.stderr,
            )

        colors = [args.color] if args.color else ["white", "black"]
        report = {color: review.mistakes(color) for color in colors}
        if args.json:
            print(json.dumps({c: [asdict(m) for m in ms] for c, ms in report.items()}, indent=2))
        else:
            for color, mistakes in report.items():
                print(f"{color.capitalize()}: {len(mistakes)} mistakes")
                for mistake in mistakes:
                    print(f"  {format_mistake(mistake)}")

        if review.auto_save is not None and not await review.auto_save.save():
            print(f"Saving failed: {review.auto_save.last_error}", file=sys.stderr)
            return 1
        return 0
    finally:
        await review.close()
        if store is not None:
            await store.aclose()
        await shutdown_gateways()


def main():
    parser = argparse.ArgumentParser(description="Find mistakes in a chess game")
    parser.add_argument("pgn", help="PGN file; the first game is reviewed")
    parser.add_argument("--depth", type=int, default=None, help="Deep analysis depth (default: DEEP_ANALYSIS_DEPTH)")
    parser.add_argument("--color", choices=["white", "black"], default=None)
    parser.add_argument("--game-id", default=None)
    parser.add_argument("--save", action="store_true", help="Store the analyzed tree in REVIEW_STORE_URL")
    parser.add_argument("--json", action="store_true")
    parser.add_argument(
        "--parallel",
        action="store_true",
        help="Enqueue a Celery task instead of running locally (requires Redis)",
    )
    args = parser.parse_args()
    settings = from_env()

    if (args.save or args.parallel) and not args.game_id:
        parser.error("--save and --parallel need --game-id")

    try:
        pgn = Path(args.pgn).read_text()
    except OSError as e:
        print(f"Cannot read {args.pgn}: {e}", file=sys.stderr)
        sys.exit(1)

    if args.parallel:
        from celery_app import analyze_game_task

        analyze_game_task.delay(args.game_id, pgn, settings.stockfish_path, args.depth or settings.deep_analysis_depth)
        print(f"Enqueued analysis of {args.game_id}.")
        return

    sys.exit(asyncio.run(review_game(args, pgn, settings)))


if __name__ == "__main__":
    main()
