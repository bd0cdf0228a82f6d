"""Environment configuration for the review pipeline."""

import logging
import os
from dataclasses import dataclass

log = logging.getLogger(__name__)

INACCURACY_THRESHOLD_CP = 50
BLUNDER_THRESHOLD_CP = 200
MISTAKE_MIN_DEPTH = 12
DEEP_ANALYSIS_DEPTH = 18
INTERACTIVE_DEPTH = 18
AUTO_SAVE_INTERVAL = 2.0


def _env_number(name: str, default, cast=int):
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        log.warning("Ignoring malformed %s=%r, using %r", name, raw, default)
        return default


@dataclass(frozen=True)
class ReviewSettings:
    stockfish_path: str = "stockfish"
    policy_engine_url: str | None = None
    policy_model: str = "maia_rapid"
    store_url: str = "http://localhost:8000"
    database_url: str = "postgresql://localhost:5432/chess_review?user=postgres&password=postgres"
    redis_url: str = "redis://localhost:6379/0"
    auto_save_interval: float = AUTO_SAVE_INTERVAL
    deep_analysis_depth: int = DEEP_ANALYSIS_DEPTH
    inaccuracy_threshold_cp: int = INACCURACY_THRESHOLD_CP
    blunder_threshold_cp: int = BLUNDER_THRESHOLD_CP
    mistake_min_depth: int = MISTAKE_MIN_DEPTH


def from_env() -> ReviewSettings:
    """Build settings from environment variables, falling back to defaults."""
    defaults = ReviewSettings()
    return ReviewSettings(
        stockfish_path=os.environ.get("STOCKFISH_PATH", defaults.stockfish_path),
        policy_engine_url=os.environ.get("POLICY_ENGINE_URL") or None,
        policy_model=os.environ.get("POLICY_MODEL", defaults.policy_model),
        store_url=os.environ.get("REVIEW_STORE_URL", defaults.store_url),
        database_url=os.environ.get("DATABASE_URL", defaults.database_url),
        redis_url=os.environ.get("REDIS_URL", defaults.redis_url),
        auto_save_interval=_env_number("AUTO_SAVE_INTERVAL", defaults.auto_save_interval, float),
        deep_analysis_depth=_env_number("DEEP_ANALYSIS_DEPTH", defaults.deep_analysis_depth),
        inaccuracy_threshold_cp=_env_number("INACCURACY_THRESHOLD_CP", defaults.inaccuracy_threshold_cp),
        blunder_threshold_cp=_env_number("BLUNDER_THRESHOLD_CP", defaults.blunder_threshold_cp),
        mistake_min_depth=_env_number("MISTAKE_MIN_DEPTH", defaults.mistake_min_depth),
    )
