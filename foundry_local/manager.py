"""Model lifecycle manager: one service, one loaded variant, serialized transitions."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Union

import httpx

from foundry_local.cache import CacheEntry, CacheStore, DownloadProgress
from foundry_local.catalog import Catalog, ModelVariant
from foundry_local.config import ManagerConfig
from foundry_local.errors import LoadRejected, ManagerClosed, NotCached, OperationTimeout
from foundry_local.gate import SerializationGate
from foundry_local.hardware import Hardware, HardwareProfile, detect_hardware
from foundry_local.selector import VariantSelector
from foundry_local.service import ServiceEndpoint, ServiceLocator

logger = logging.getLogger(__name__)


class LoadStatus(str, Enum):
    LOADING = "loading"
    READY = "ready"
    UNLOADING = "unloading"
    FAILED = "failed"
    REMOVED = "removed"


_ALLOWED: dict[LoadStatus, frozenset[LoadStatus]] = {
    LoadStatus.LOADING: frozenset({LoadStatus.READY, LoadStatus.FAILED, LoadStatus.REMOVED}),
    LoadStatus.READY: frozenset({LoadStatus.UNLOADING, LoadStatus.REMOVED}),
    LoadStatus.UNLOADING: frozenset({LoadStatus.REMOVED}),
    LoadStatus.FAILED: frozenset({LoadStatus.REMOVED}),
    LoadStatus.REMOVED: frozenset(),
}


@dataclass
class LoadedModelHandle:
    variant_id: str
    loaded_at: float
    status: LoadStatus = LoadStatus.LOADING
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "variantId": self.variant_id,
            "loadedAt": self.loaded_at,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass(frozen=True)
class Transition:
    variant_id: str
    previous: Optional[LoadStatus]
    current: LoadStatus


TransitionCallback = Callable[[Transition], None]
HardwareArg = Union[HardwareProfile, Hardware, str, None]


def _as_profile(hardware: HardwareArg) -> Optional[HardwareProfile]:
    if hardware is None or isinstance(hardware, HardwareProfile):
        return hardware
    return HardwareProfile.from_devices(str(getattr(hardware, "value", hardware)).split(","))


class LifecycleManager:
    """Resolves, downloads, loads and unloads model variants.

    Every mutating operation runs through one SerializationGate, so at most
    one download/load/unload/service-start is in flight per manager. The
    service holds a single model: loading another variant first unloads the
    current one, and both steps are reported as transitions.

    Usage::

        async with LifecycleManager(config) as manager:
            handle = await manager.init("phi-4-mini")
            print(manager.base_url, manager.api_key)
    """

    def __init__(
        self,
        config: Optional[ManagerConfig] = None,
        *,
        hardware: HardwareArg = None,
        catalog: Optional[Catalog] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        on_transition: Optional[TransitionCallback] = None,
    ) -> None:
        self.config = config or ManagerConfig()
        self._http = httpx.AsyncClient(
            transport=transport,
            timeout=self.config.http_timeout_s,
            follow_redirects=True,
        )
        self.catalog = catalog or Catalog(
            self.config.catalog_url,
            client=self._http,
            snapshot_path=str(self.config.catalog_snapshot_path),
            timeout=self.config.http_timeout_s,
        )
        self.hardware: HardwareProfile = (
            _as_profile(hardware)
            or _as_profile(self.config.hardware)
            or detect_hardware()
        )
        self.selector = VariantSelector(self.catalog)
        self.cache = CacheStore(self.config.cache_dir, self._http, chunk_size=self.config.chunk_size)
        self.locator = ServiceLocator(self.config, self._http)
        self._gate = SerializationGate()
        self._loaded: dict[str, LoadedModelHandle] = {}
        self._on_transition = on_transition

    # -- context manager --

    async def __aenter__(self) -> LifecycleManager:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.shutdown()

    # -- read accessors (no gate) --

    @property
    def closed(self) -> bool:
        return self._gate.closed

    @property
    def endpoint(self) -> Optional[ServiceEndpoint]:
        return self.locator.endpoint

    @property
    def api_key(self) -> Optional[str]:
        endpoint = self.locator.endpoint
        return endpoint.api_key if endpoint is not None else None

    @property
    def base_url(self) -> Optional[str]:
        """OpenAI-compatible root (``http://host:port/v1``) of the running service."""
        endpoint = self.locator.endpoint
        return endpoint.openai_base_url if endpoint is not None else None

    def list_loaded(self) -> list[LoadedModelHandle]:
        """Point-in-time copies; not updated afterwards."""
        return [dataclasses.replace(h) for h in self._loaded.values()]

    def is_cached(self, variant_id: str) -> bool:
        """Pre-flight hint only: checks presence, not content."""
        return self.cache.is_cached(variant_id)

    def _check_open(self) -> None:
        if self._gate.closed:
            raise ManagerClosed()

    # -- resolution (no gate: read-only) --

    async def refresh_catalog(self) -> frozenset[ModelVariant]:
        return await self.catalog.refresh()

    async def resolve(
        self,
        alias: str,
        hardware: HardwareArg = None,
        variant_id: Optional[str] = None,
    ) -> ModelVariant:
        self._check_open()
        await self.catalog.ensure_loaded()
        profile = _as_profile(hardware) or self.hardware
        return self.selector.select(alias, profile, variant_id)

    # -- transitions --

    def _transition(self, handle: LoadedModelHandle, status: LoadStatus) -> None:
        previous = handle.status
        if status not in _ALLOWED[previous]:
            raise RuntimeError(
                f"Illegal transition for {handle.variant_id}: {previous.value} -> {status.value}"
            )
        handle.status = status
        if status is LoadStatus.REMOVED:
            self._loaded.pop(handle.variant_id, None)
        self._emit(Transition(handle.variant_id, previous, status))

    def _emit(self, transition: Transition) -> None:
        logger.info(
            "%s: %s -> %s",
            transition.variant_id,
            transition.previous.value if transition.previous else "-",
            transition.current.value,
        )
        if self._on_transition is not None:
            self._on_transition(transition)

    # -- timeouts --

    async def _with_timeout(self, coro, operation: str, timeout: Optional[float], variant_id=None):
        if timeout is None:
            return await coro
        try:
            return await asyncio.wait_for(coro, timeout)
        except asyncio.TimeoutError:
            raise OperationTimeout(operation, timeout, variant_id) from None

    # -- gated operations --

    async def ensure_service(self, timeout: Optional[float] = None) -> ServiceEndpoint:
        """Discover or start the service."""
        return await self._gate.run(self.locator.ensure_running, timeout)

    async def init(
        self,
        alias: str,
        hardware: HardwareArg = None,
        variant_id: Optional[str] = None,
        progress: Optional[DownloadProgress] = None,
        timeout: Optional[float] = None,
    ) -> LoadedModelHandle:
        """Resolve, start the service, download if needed, load. Returns a ready handle."""
        variant = await self.resolve(alias, hardware, variant_id)

        async def _init() -> LoadedModelHandle:
            await self.locator.ensure_running()
            await self._download_locked(variant, progress, self.config.download_timeout_s)
            return await self._load_locked(variant, timeout)

        return await self._gate.run(_init)

    async def download(
        self,
        alias: str,
        variant_id: Optional[str] = None,
        progress: Optional[DownloadProgress] = None,
        timeout: Optional[float] = None,
    ) -> CacheEntry:
        variant = await self.resolve(alias, variant_id=variant_id)
        return await self._gate.run(
            self._download_locked, variant, progress, timeout or self.config.download_timeout_s
        )

    async def _download_locked(
        self,
        variant: ModelVariant,
        progress: Optional[DownloadProgress],
        timeout: Optional[float],
    ) -> CacheEntry:
        return await self._with_timeout(
            self.cache.ensure_downloaded(variant, progress),
            "download",
            timeout,
            variant.variant_id,
        )

    async def load(self, variant_id: str, timeout: Optional[float] = None) -> LoadedModelHandle:
        """Load a cached variant, unloading whatever else is loaded first."""
        self._check_open()
        await self.catalog.ensure_loaded()
        variant = self.catalog.get_variant(variant_id)
        return await self._gate.run(self._load_locked, variant, timeout)

    async def _load_locked(
        self,
        variant: ModelVariant,
        timeout: Optional[float] = None,
    ) -> LoadedModelHandle:
        entry = await self.cache.verify(variant)
        if entry is None:
            raise NotCached(variant.variant_id)

        current = self._loaded.get(variant.variant_id)
        if current is not None and current.status is LoadStatus.READY:
            return dataclasses.replace(current)

        for other in list(self._loaded.values()):
            logger.info("Unloading %s to make room for %s", other.variant_id, variant.variant_id)
            await self._unload_locked(other.variant_id)

        endpoint = await self.locator.ensure_running()
        client = self.locator.service_client(endpoint)
        handle = LoadedModelHandle(variant.variant_id, loaded_at=time.time())
        self._loaded[variant.variant_id] = handle
        self._emit(Transition(variant.variant_id, None, LoadStatus.LOADING))

        timeout = timeout if timeout is not None else self.config.load_timeout_s
        try:
            await self._with_timeout(
                client.load(variant.variant_id, str(entry.path)),
                "load",
                timeout,
                variant.variant_id,
            )
        except BaseException as e:
            handle.error = str(e) or type(e).__name__
            self._transition(handle, LoadStatus.FAILED)
            self._transition(handle, LoadStatus.REMOVED)
            if isinstance(e, (OperationTimeout, asyncio.CancelledError)):
                await self._rollback_load(client, variant.variant_id)
            raise
        handle.loaded_at = time.time()
        self._transition(handle, LoadStatus.READY)
        return dataclasses.replace(handle)

    async def _rollback_load(self, client, variant_id: str) -> None:
        """Ask the service to drop a load we gave up on."""
        try:
            await asyncio.shield(client.unload(variant_id))
        except LoadRejected as e:
            logger.warning("Rollback unload of %s failed: %s", variant_id, e)

    async def unload(self, variant_id: str) -> None:
        """Unload a variant. Unloading something not loaded is a no-op."""
        await self._gate.run(self._unload_locked, variant_id)

    async def _unload_locked(self, variant_id: str) -> None:
        handle = self._loaded.get(variant_id)
        if handle is None:
            return
        if handle.status is LoadStatus.READY:
            self._transition(handle, LoadStatus.UNLOADING)
        endpoint = self.locator.endpoint
        if endpoint is not None:
            # Left in UNLOADING on failure so a later unload retries.
            await self.locator.service_client(endpoint).unload(variant_id)
        self._transition(handle, LoadStatus.REMOVED)

    async def evict(self, variant_id: str) -> None:
        """Delete a variant from the cache, unloading it first if needed."""

        async def _evict() -> None:
            await self._unload_locked(variant_id)
            await self.cache.evict(variant_id)

        await self._gate.run(_evict)

    async def shutdown(self, keep_service: bool = False) -> None:
        """Unload everything, stop an owned service, and close the manager.

        With *keep_service* the loaded model and the service are left as they
        are and only this manager's resources are released. Safe to call twice.
        """
        if self._gate.closed:
            return
        await self._gate.run(self._shutdown_locked, keep_service)

    async def _shutdown_locked(self, keep_service: bool) -> None:
        errors: list[BaseException] = []
        try:
            for handle in list(self._loaded.values()):
                if keep_service:
                    self._transition(handle, LoadStatus.REMOVED)
                    continue
                try:
                    await self._unload_locked(handle.variant_id)
                except LoadRejected as e:
                    logger.warning("Unload of %s during shutdown failed: %s", handle.variant_id, e)
                    errors.append(e)
                    self._transition(handle, LoadStatus.REMOVED)
            if not keep_service:
                await self.locator.stop()
        finally:
            self._gate.close()
            await self._http.aclose()
        if errors:
            raise errors[0]
