"""
Debounced auto-save of a game tree and its analysis.

Every tree or analysis change restarts a quiet-interval timer; when it fires
the current snapshot is persisted. At most one save is in flight; requests
arriving meanwhile collapse into a single follow-up save. A failed save
leaves the status ``unsaved`` until the next save attempt.
"""

import asyncio
import logging
import sys
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
from errors import PersistFailed
from game_tree import GameTree
from persistence import AnalysisStore, snapshot_fingerprint
from settings import AUTO_SAVE_INTERVAL

log = logging.getLogger(__name__)


class SaveStatus(Enum):
    SAVED = "saved"
    UNSAVED = "unsaved"
    SAVING = "saving"


class AutoSaveCoordinator:
    def __init__(
        self,
        tree: GameTree,
        store: AnalysisStore,
        game_id: str,
        quiet_interval: float = AUTO_SAVE_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        enabled: bool = True,
        already_saved: bool = True,
    ):
        self.tree = tree
        self.store = store
        self.game_id = game_id
        self.quiet_interval = quiet_interval
        self.enabled = enabled
        self._sleep = sleep

        snapshot = tree.to_dict()
        self.last_fingerprint: str | None = snapshot_fingerprint(snapshot) if already_saved else None
        self.status = SaveStatus.SAVED if already_saved else SaveStatus.UNSAVED
        self.pending_changes = not already_saved
        self.last_error: PersistFailed | None = None
        self.saved_revision = tree.revision if already_saved else -1

        self._timer: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._follow_up = False
        tree.subscribe(self._on_mutation)

    def _on_mutation(self, revision: int) -> None:
        self.pending_changes = True
        if self.status is not SaveStatus.SAVING:
            self.status = SaveStatus.UNSAVED
        if self.enabled:
            self._schedule()

    def _schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.debug("No running loop; %s stays unsaved until saved explicitly", self.game_id)
            return
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = loop.create_task(self._debounce())

    async def _debounce(self) -> None:
        await self._sleep(self.quiet_interval)
        self._timer = None
        await self.save()

    async def save(self) -> bool:
        """Persist the current snapshot now. Returns True once it is stored."""
        if self._inflight is not None and not self._inflight.done():
            self._follow_up = True
            await asyncio.wait({self._inflight})
            return self.status is SaveStatus.SAVED
        task = self._inflight = asyncio.create_task(self._save_loop())
        await asyncio.wait({task})
        return task.result()

    async def _save_loop(self) -> bool:
        while True:
            self._follow_up = False
            ok = await self._persist_once()
            if not self._follow_up:
                return ok

    async def _persist_once(self) -> bool:
        snapshot = self.tree.to_dict()
        revision = self.tree.revision
        fingerprint = snapshot_fingerprint(snapshot)
        if fingerprint == self.last_fingerprint:
            self._mark_saved(revision)
            return True

        self.status = SaveStatus.SAVING
        try:
            await self.store.save(self.game_id, snapshot)
        except PersistFailed as exc:
            log.warning("Saving %s failed: %s", self.game_id, exc)
            self._mark_failed(exc)
            return False
        except Exception as exc:
            log.exception("Saving %s failed unexpectedly", self.game_id)
            self._mark_failed(PersistFailed(f"Saving {self.game_id} failed: {exc}", context={"game_id": self.game_id}))
            return False

        self.last_fingerprint = fingerprint
        self.last_error = None
        self._mark_saved(revision)
        return True

    def _mark_failed(self, exc: PersistFailed) -> None:
        self.last_error = exc
        self.status = SaveStatus.UNSAVED
        self.pending_changes = True

    def _mark_saved(self, revision: int) -> None:
        self.saved_revision = revision
        if self.tree.revision == revision:
            self.status = SaveStatus.SAVED
            self.pending_changes = False
        else:
            self.status = SaveStatus.UNSAVED

    async def delete(self) -> None:
        """Remove the stored analysis for this game."""
        await self.store.delete(self.game_id)
        self.last_fingerprint = None
        self.status = SaveStatus.UNSAVED
        self.pending_changes = True

    async def close(self, flush: bool = True) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
        self.tree.unsubscribe(self._on_mutation)
        if flush and self.status is not SaveStatus.SAVED:
            await self.save()
