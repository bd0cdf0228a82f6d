"""Pytest configuration."""

import os
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: mark test as requiring a live engine or database (skipped in CI by default)"
    )


os.environ.setdefault("DATABASE_URL", "postgresql://localhost:5432/chess_review?user=postgres&password=postgres")


@pytest.fixture(autouse=True)
def clear_shared_gateways():
    """Gateways are process-wide; start every test without any."""
    from engine_gateway import _shared_gateways

    _shared_gateways.clear()
    yield
    _shared_gateways.clear()
