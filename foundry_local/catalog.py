"""Model catalog: aliases and their hardware-specific variants."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Optional
from urllib.parse import quote, urlparse

import httpx

from foundry_local.errors import CatalogUnavailable, VariantNotFound
from foundry_local.hardware import EXECUTION_PROVIDERS, Hardware

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelFile:
    path: str
    sha256: str
    size: int
    url: Optional[str] = None


@dataclass(frozen=True)
class ModelVariant:
    variant_id: str
    alias: str
    hardware: Hardware
    files: tuple[ModelFile, ...]
    execution_provider: str = ""
    base_url: str = ""

    @property
    def total_size(self) -> int:
        return sum(f.size for f in self.files)

    def file_url(self, model_file: ModelFile) -> str:
        if model_file.url:
            return model_file.url
        if not self.base_url:
            raise ValueError(f"Variant {self.variant_id} has no baseUrl for {model_file.path}")
        return f"{self.base_url.rstrip('/')}/{quote(model_file.path)}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.variant_id,
            "alias": self.alias,
            "hardware": self.hardware.value,
            "executionProvider": self.execution_provider,
            "baseUrl": self.base_url,
            "files": [
                {"path": f.path, "sha256": f.sha256, "size": f.size, **({"url": f.url} if f.url else {})}
                for f in self.files
            ],
        }


def _check_relative(path: str) -> str:
    p = PurePosixPath(path)
    if not path or p.is_absolute() or ".." in p.parts or "\\" in path:
        raise ValueError(f"file path must be relative without '..': {path!r}")
    return path


def _require_str(data: dict, key: str, where: str) -> str:
    value = data[key]
    if not isinstance(value, str) or not value:
        raise ValueError(f"{where}: {key!r} must be a non-empty string, got {value!r}")
    return value


def _optional_str(data: dict, key: str, where: str) -> Optional[str]:
    value = data.get(key)
    if value is not None and not isinstance(value, str):
        raise ValueError(f"{where}: {key!r} must be a string, got {value!r}")
    return value or None


def _parse_variant(data: dict) -> ModelVariant:
    if not isinstance(data, dict):
        raise ValueError(f"variant entry must be an object, got {data!r}")
    variant_id = _require_str(data, "id", "variant")
    where = f"variant {variant_id!r}"
    alias = _require_str(data, "alias", where)
    hardware = Hardware.parse(_require_str(data, "hardware", where))
    base_url = _optional_str(data, "baseUrl", where) or ""
    if not isinstance(data["files"], list):
        raise ValueError(f"{where}: 'files' must be a list")
    files = []
    for f in data["files"]:
        if not isinstance(f, dict):
            raise ValueError(f"{where}: file entry must be an object, got {f!r}")
        path = _check_relative(_require_str(f, "path", where))
        sha = _require_str(f, "sha256", where).lower()
        if len(sha) != 64:
            raise ValueError(f"bad sha256 for {path!r}")
        url = _optional_str(f, "url", where)
        if url is None and not base_url:
            raise ValueError(f"{where}: {path!r} has no url and the variant has no baseUrl")
        size = f["size"]
        if isinstance(size, bool) or not isinstance(size, int) or size < 0:
            raise ValueError(f"{where}: bad size for {path!r}: {size!r}")
        files.append(ModelFile(path=path, sha256=sha, size=size, url=url))
    if not files:
        raise ValueError(f"{where} lists no files")
    return ModelVariant(
        variant_id=variant_id,
        alias=alias,
        hardware=hardware,
        files=tuple(files),
        execution_provider=_optional_str(data, "executionProvider", where)
        or EXECUTION_PROVIDERS[hardware],
        base_url=base_url,
    )


def parse_manifest(document: Any) -> list[ModelVariant]:
    """Validate a manifest document. Raises ValueError on any schema problem."""
    if not isinstance(document, dict) or not isinstance(document.get("variants"), list):
        raise ValueError("manifest must be an object with a 'variants' list")
    variants: list[ModelVariant] = []
    seen: set[str] = set()
    for entry in document["variants"]:
        try:
            variant = _parse_variant(entry)
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"malformed variant entry: {e!r}") from e
        if variant.variant_id in seen:
            raise ValueError(f"duplicate variant id {variant.variant_id!r}")
        seen.add(variant.variant_id)
        variants.append(variant)
    return variants


class Catalog:
    """Listing of variants from a remote or bundled manifest.

    The last good manifest is kept in memory and, when *snapshot_path* is
    set, on disk; refresh failures fall back to it and mark the catalog stale.
    """

    def __init__(
        self,
        source: str,
        client: Optional[httpx.AsyncClient] = None,
        snapshot_path: Optional[str] = None,
        timeout: float = 30.0,
    ) -> None:
        self.source = source
        self._client = client
        self._snapshot = Path(os.path.expanduser(snapshot_path)) if snapshot_path else None
        self._timeout = timeout
        self._variants: list[ModelVariant] = []
        self._by_id: dict[str, ModelVariant] = {}
        self._loaded = False
        self._lock = asyncio.Lock()
        self.stale = False

    # -- fetching --

    async def _read_source(self) -> Any:
        parsed = urlparse(self.source)
        if parsed.scheme in ("http", "https"):
            if self._client is not None:
                resp = await self._client.get(self.source, timeout=self._timeout)
            else:
                async with httpx.AsyncClient() as client:
                    resp = await client.get(self.source, timeout=self._timeout)
            resp.raise_for_status()
            return resp.json()
        path = parsed.path if parsed.scheme == "file" else self.source
        text = await asyncio.to_thread(Path(os.path.expanduser(path)).read_text)
        return json.loads(text)

    def _install(self, variants: list[ModelVariant]) -> None:
        self._variants = variants
        self._by_id = {v.variant_id: v for v in variants}
        self._loaded = True

    def _write_snapshot(self, variants: list[ModelVariant]) -> None:
        if self._snapshot is None:
            return
        self._snapshot.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._snapshot.with_suffix(".json.tmp")
        tmp.write_text(json.dumps({"variants": [v.to_dict() for v in variants]}, indent=2))
        tmp.replace(self._snapshot)

    def _read_snapshot(self) -> Optional[list[ModelVariant]]:
        if self._snapshot is None or not self._snapshot.exists():
            return None
        try:
            return parse_manifest(json.loads(self._snapshot.read_text()))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable catalog snapshot %s: %s", self._snapshot, e)
            return None

    async def refresh(self) -> frozenset[ModelVariant]:
        async with self._lock:
            try:
                variants = parse_manifest(await self._read_source())
            except (httpx.HTTPError, OSError, ValueError) as e:
                reason = str(e) or type(e).__name__
                fallback = self._variants if self._loaded else self._read_snapshot()
                if fallback is None:
                    raise CatalogUnavailable(self.source, reason) from e
                logger.warning("Catalog refresh from %s failed (%s); using last good manifest", self.source, reason)
                self._install(fallback)
                self.stale = True
                return frozenset(fallback)
            self._install(variants)
            self.stale = False
            try:
                self._write_snapshot(variants)
            except OSError as e:
                logger.warning("Could not write catalog snapshot %s: %s", self._snapshot, e)
            logger.info("Catalog refreshed: %d variants", len(variants))
            return frozenset(variants)

    async def ensure_loaded(self) -> None:
        if not self._loaded:
            await self.refresh()

    # -- queries --

    @property
    def variants(self) -> list[ModelVariant]:
        return list(self._variants)

    def aliases(self) -> list[str]:
        seen: dict[str, None] = {}
        for v in self._variants:
            seen.setdefault(v.alias, None)
        return list(seen)

    def find_variants(self, alias: str) -> list[ModelVariant]:
        """Variants of *alias* in publication order."""
        return [v for v in self._variants if v.alias == alias]

    def get_variant(self, variant_id: str) -> ModelVariant:
        try:
            return self._by_id[variant_id]
        except KeyError:
            raise VariantNotFound(None, variant_id) from None
