"""
Engine gateway: one outstanding evaluation per engine.

Every request bumps the gateway's generation counter and cancels the
previous handle, so results of superseded requests are never delivered.
Gateways are process-wide singletons keyed by engine id; a gateway is only
re-created after its initialization failed for good.
"""

import asyncio
import logging
import sys
from collections.abc import AsyncIterator, Callable
from enum import Enum
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))
from errors import EngineEvaluationFailed, EngineNotReady
from evaluators import Evaluator
from models import TACTICAL_ENGINE, AnalysisRecord

log = logging.getLogger(__name__)

_DONE = object()


def required_depth(engine_id: str, depth: int) -> int:
    """Depth a cached record must reach; policy records carry no depth."""
    return depth if engine_id == TACTICAL_ENGINE else 0


class GatewayStatus(Enum):
    LOADING = "loading"
    READY = "ready"
    ERROR = "error"


class HandleStatus(Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class EvaluationHandle:
    """A cancellable, in-flight evaluation.

    Iterate it to receive progressively deeper records, or await ``final()``
    for the deepest one. Nothing is delivered once the handle is cancelled or
    superseded.
    """

    def __init__(self, gateway: "EngineGateway", token: int, fen: str, records: AsyncIterator[AnalysisRecord]):
        self.gateway = gateway
        self.token = token
        self.fen = fen
        self.status = HandleStatus.RUNNING
        self.latest: AnalysisRecord | None = None
        self.error: EngineEvaluationFailed | None = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task = asyncio.create_task(self._pump(records))

    @property
    def is_current(self) -> bool:
        return self.gateway.generation == self.token

    @property
    def cancelled(self) -> bool:
        return self.status is HandleStatus.CANCELLED

    @property
    def done(self) -> bool:
        return self.status is not HandleStatus.RUNNING

    async def _pump(self, records: AsyncIterator[AnalysisRecord]) -> None:
        try:
            async for record in records:
                if self.status is not HandleStatus.RUNNING or not self.is_current:
                    break
                self.latest = record
                self._queue.put_nowait(record)
        except asyncio.CancelledError:
            self.status = HandleStatus.CANCELLED
        except EngineEvaluationFailed as exc:
            self._fail(exc)
        except Exception as exc:
            log.exception("Evaluation of %s crashed", self.fen)
            self._fail(EngineEvaluationFailed(f"{self.gateway.engine_id} crashed: {exc}", context={"fen": self.fen}))
        else:
            if self.status is HandleStatus.RUNNING:
                self.status = HandleStatus.COMPLETED if self.is_current else HandleStatus.CANCELLED
        finally:
            aclose = getattr(records, "aclose", None)
            if aclose is not None:
                await aclose()
            self._queue.put_nowait(_DONE)

    def _fail(self, exc: EngineEvaluationFailed) -> None:
        if self.status is HandleStatus.RUNNING:
            self.status = HandleStatus.FAILED
            self.error = exc

    def cancel(self) -> None:
        if self.done:
            return
        self.status = HandleStatus.CANCELLED
        self._queue.put_nowait(_DONE)
        self._task.cancel()

    async def __aiter__(self):
        while True:
            item = await self._queue.get()
            if item is _DONE or self.cancelled:
                return
            yield item

    async def final(self) -> AnalysisRecord | None:
        """Deepest record, or None if the handle was cancelled."""
        await asyncio.wait({self._task})
        if self.error is not None:
            raise self.error
        if self.status is not HandleStatus.COMPLETED:
            return None
        return self.latest


class EngineGateway:
    def __init__(self, evaluator: Evaluator):
        self.evaluator = evaluator
        self.engine_id = evaluator.engine_id
        self.generation = 0
        self.init_error: str | None = None
        self._ready = False
        self._init_task: asyncio.Task | None = None
        self._current: EvaluationHandle | None = None

    @property
    def initializing(self) -> bool:
        return self._init_task is not None and not self._init_task.done()

    @property
    def status(self) -> GatewayStatus:
        if self.init_error:
            return GatewayStatus.ERROR
        return GatewayStatus.READY if self._ready else GatewayStatus.LOADING

    def is_ready(self) -> bool:
        return self._ready

    def ensure_started(self) -> asyncio.Task:
        """Schedule initialization once; returns its task."""
        if self._init_task is None:
            self._init_task = asyncio.create_task(self._initialize())
        return self._init_task

    async def _initialize(self) -> None:
        try:
            await self.evaluator.start()
        except Exception as exc:
            self.init_error = getattr(exc, "user_message", None) or str(exc)
            log.error("Failed to initialize %s: %s", self.engine_id, self.init_error)
            return
        self._ready = True
        self.init_error = None
        log.info("%s is ready", self.engine_id)

    async def wait_until_ready(self, timeout: float | None = None) -> bool:
        await asyncio.wait({self.ensure_started()}, timeout=timeout)
        return self._ready

    def evaluate(self, fen: str, legal_move_count: int, depth_hint: int) -> EvaluationHandle:
        """Start evaluating ``fen``, superseding any outstanding request."""
        if not self._ready:
            raise EngineNotReady(
                f"{self.engine_id} is not ready",
                context={"engine": self.engine_id, "init_error": self.init_error},
            )
        if self._current is not None and not self._current.done:
            log.debug("Superseding %s evaluation of %s", self.engine_id, self._current.fen)
            self._current.cancel()
        self.generation += 1
        handle = EvaluationHandle(
            self, self.generation, fen, self.evaluator.stream(fen, legal_move_count, depth_hint)
        )
        self._current = handle
        return handle

    def stop(self) -> None:
        if self._current is not None:
            self._current.cancel()

    async def close(self) -> None:
        self.stop()
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
        self._ready = False
        await self.evaluator.close()


_shared_gateways: dict[str, EngineGateway] = {}


def get_or_create_gateway(engine_id: str, factory: Callable[[], Evaluator]) -> EngineGateway:
    """Process-wide gateway for ``engine_id``, created lazily.

    A gateway whose initialization failed (and is not retrying) is replaced.
    """
    gateway = _shared_gateways.get(engine_id)
    if gateway is None or (gateway.init_error and not gateway.is_ready() and not gateway.initializing):
        if gateway is not None:
            log.info("Re-creating %s after failed initialization", engine_id)
        gateway = EngineGateway(factory())
        _shared_gateways[engine_id] = gateway
    return gateway


async def shutdown_gateways() -> None:
    gateways = list(_shared_gateways.values())
    _shared_gateways.clear()
    for gateway in gateways:
        await gateway.close()
