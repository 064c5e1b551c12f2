"""Typed async client for the service's model-management endpoints."""

from __future__ import annotations

import asyncio
from typing import Optional

import httpx

from foundry_local.errors import LoadRejected

LOADING = "loading"
READY = "ready"
FAILED = "failed"


class ServiceClient:
    """Talks to ``/load``, ``/unload`` and ``/status`` of a running service.

    The caller owns *client*; this class never closes it.
    """

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient,
        api_key: Optional[str] = None,
        poll_interval: float = 0.25,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._poll_interval = poll_interval

    async def _post(self, path: str, body: dict) -> httpx.Response:
        return await self._client.post(f"{self.base_url}{path}", json=body, headers=self._headers)

    async def status(self) -> dict:
        """Raw ``GET /status`` document."""
        resp = await self._client.get(f"{self.base_url}/status", headers=self._headers)
        resp.raise_for_status()
        return resp.json()

    async def loaded_status(self, variant_id: str) -> Optional[str]:
        document = await self.status()
        loaded = document.get("loaded", []) if isinstance(document, dict) else None
        if not isinstance(loaded, list):
            raise LoadRejected(variant_id, "status", 200, f"unexpected /status body: {document!r}")
        for entry in loaded:
            if isinstance(entry, dict) and entry.get("variantId") == variant_id:
                return entry.get("status")
        return None

    async def load(self, variant_id: str, path: Optional[str] = None) -> None:
        """Ask the service to load a variant and wait until it is ready.

        Raises LoadRejected on a non-2xx answer or a ``failed`` status.
        """
        body: dict = {"variantId": variant_id}
        if path is not None:
            body["path"] = path
        try:
            resp = await self._post("/load", body)
        except httpx.HTTPError as e:
            raise LoadRejected(variant_id, "load", None, str(e) or type(e).__name__) from e
        if not resp.is_success:
            raise LoadRejected(variant_id, "load", resp.status_code, resp.text)
        try:
            document = resp.json()
        except ValueError:
            document = None
        if not isinstance(document, dict):
            raise LoadRejected(variant_id, "load", resp.status_code, resp.text)
        status = document.get("status", READY)
        while status == LOADING:
            await asyncio.sleep(self._poll_interval)
            try:
                status = await self.loaded_status(variant_id)
            except (httpx.HTTPError, ValueError) as e:
                raise LoadRejected(variant_id, "load", None, str(e) or type(e).__name__) from e
        if status != READY:
            raise LoadRejected(variant_id, "load", resp.status_code, f"service reported status {status!r}")

    async def unload(self, variant_id: str) -> None:
        """Ask the service to drop a variant. A 404 counts as already unloaded."""
        try:
            resp = await self._post("/unload", {"variantId": variant_id})
        except httpx.HTTPError as e:
            raise LoadRejected(variant_id, "unload", None, str(e) or type(e).__name__) from e
        if resp.status_code == 404:
            return
        if not resp.is_success:
            raise LoadRejected(variant_id, "unload", resp.status_code, resp.text)

    async def probe(self, timeout: float = 2.0) -> bool:
        """True when ``GET /status`` answers 2xx within *timeout* seconds."""
        try:
            resp = await self._client.get(
                f"{self.base_url}/status", headers=self._headers, timeout=timeout
            )
        except httpx.HTTPError:
            return False
        return resp.is_success
