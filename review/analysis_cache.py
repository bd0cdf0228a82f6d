"""Per-node storage of engine output, keyed by (node id, engine id)."""

import logging
import sys
from collections.abc import Callable
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
from models import AnalysisRecord, PositionNode

log = logging.getLogger(__name__)


def _node_key(node: PositionNode | int) -> int:
    return node if isinstance(node, int) else node.node_id


class AnalysisCache:
    """At most one record per (node, engine).

    Absence means "not analyzed yet"; terminal positions get an explicit
    terminal record instead. A record never replaces a deeper one.
    """

    def __init__(self, on_change: Callable[[], None] | None = None):
        self._by_node: dict[int, dict[str, AnalysisRecord]] = {}
        self._on_change = on_change

    def get(self, node: PositionNode | int, engine_id: str) -> AnalysisRecord | None:
        return self._by_node.get(_node_key(node), {}).get(engine_id)

    def put(self, node: PositionNode | int, engine_id: str, record: AnalysisRecord) -> bool:
        """Store ``record`` unless a deeper one is cached. Returns True if stored."""
        node_id = _node_key(node)
        key = (node_id, engine_id)
        records = self._by_node.setdefault(node_id, {})
        existing = records.get(engine_id)
        if existing is not None:
            if record.depth < existing.depth:
                log.debug("Kept depth %d for %s over depth %d", existing.depth, key, record.depth)
                return False
            if record == existing:
                return False
        records[engine_id] = record
        if self._on_change is not None:
            self._on_change()
        return True

    def has(self, node: PositionNode | int, engine_id: str, min_depth: int = 0) -> bool:
        record = self.get(node, engine_id)
        return record is not None and (record.terminal or record.depth >= min_depth)

    def records_for(self, node: PositionNode | int) -> dict[str, AnalysisRecord]:
        return dict(self._by_node.get(_node_key(node), {}))

    def snapshot(self) -> dict[tuple[int, str], AnalysisRecord]:
        return {
            (node_id, engine): record
            for node_id, records in self._by_node.items()
            for engine, record in records.items()
        }

    def __len__(self) -> int:
        return sum(len(records) for records in self._by_node.values())

    def __contains__(self, key: tuple[int, str]) -> bool:
        node_id, engine_id = key
        return engine_id in self._by_node.get(node_id, {})
