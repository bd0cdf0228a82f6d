"""Remote analysis store: save, load and delete tree snapshots by game id."""

import abc
import hashlib
import json
import logging
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parent))
from errors import PersistFailed

log = logging.getLogger(__name__)


def snapshot_fingerprint(snapshot: dict) -> str:
    """Stable digest of a snapshot, independent of key order."""
    encoded = json.dumps(snapshot, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


class AnalysisStore(abc.ABC):
    @abc.abstractmethod
    async def save(self, game_id: str, snapshot: dict) -> None:
        """Persist ``snapshot``. Raise PersistFailed on any failure."""

    @abc.abstractmethod
    async def delete(self, game_id: str) -> None:
        """Remove the stored analysis. Raise PersistFailed on any failure."""


class HttpAnalysisStore(AnalysisStore):
    """Client for the analysis store service (see api/main.py)."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        token: str | None = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None
        self._headers = {"Authorization": f"Bearer {token}"} if token else {}

    async def _request(self, method: str, game_id: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}/analysis/{game_id}"
        try:
            resp = await self._client.request(method, url, headers=self._headers or None, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise PersistFailed(
                f"{method} {url} returned {exc.response.status_code}",
                status_code=exc.response.status_code,
                context={"game_id": game_id},
            ) from exc
        except httpx.HTTPError as exc:
            raise PersistFailed(f"{method} {url} failed: {exc}", context={"game_id": game_id}) from exc
        return resp

    async def save(self, game_id: str, snapshot: dict) -> None:
        await self._request("PUT", game_id, json=snapshot)
        log.debug("Saved analysis for %s", game_id)

    async def load(self, game_id: str) -> dict | None:
        try:
            resp = await self._request("GET", game_id)
        except PersistFailed as exc:
            if exc.status_code == 404:
                return None
            raise
        return resp.json()["snapshot"]

    async def delete(self, game_id: str) -> None:
        await self._request("DELETE", game_id)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
