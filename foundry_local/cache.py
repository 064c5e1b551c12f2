"""On-disk cache of downloaded variants.

Layout::

    <root>/<variant>/<relative file paths>
    <root>/.staging-<variant>/        (in-flight download)

A variant directory only ever appears through an atomic rename of a fully
verified staging directory. Handled failures and cancellation delete the
staging directory; one left behind by a killed process is resumed.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Optional

import httpx

from foundry_local.catalog import ModelFile, ModelVariant
from foundry_local.errors import DownloadFailed, IntegrityError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1 << 20
HASH_CHUNK_SIZE = 1 << 20
MARKER_FILE = ".foundry-variant.json"
STAGING_PREFIX = ".staging-"

_CONTENT_RANGE = re.compile(r"bytes\s+(\d+)-(\d+)/(\d+|\*)")


@dataclass
class CacheEntry:
    variant_id: str
    path: Path
    verified: bool = True


class DownloadProgress:
    """Async iterator of ``(bytes_done, bytes_total)`` for one download.

    Intermediate values may be coalesced when the consumer is slower than
    the download. A successful download always ends with ``(total, total)``;
    a failed one just ends. Iterable once.
    """

    def __init__(self) -> None:
        self._value: Optional[tuple[int, int]] = None
        self._changed = asyncio.Event()
        self._finished = False
        self._consumed = False

    def report(self, done: int, total: int) -> None:
        self._value = (done, total)
        self._changed.set()

    def finish(self) -> None:
        self._finished = True
        self._changed.set()

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def latest(self) -> Optional[tuple[int, int]]:
        return self._value

    def __aiter__(self) -> AsyncIterator[tuple[int, int]]:
        if self._consumed:
            raise RuntimeError("download progress can only be iterated once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[tuple[int, int]]:
        last = None
        while True:
            await self._changed.wait()
            self._changed.clear()
            finished = self._finished
            value = self._value
            if value is not None and value != last:
                last = value
                yield value
            if finished:
                return


def variant_dirname(variant_id: str) -> str:
    return re.sub(r"[/\\:]", "--", variant_id)


def _hash_file(path: Path, hasher=None) -> "hashlib._Hash":
    hasher = hasher or hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            block = f.read(HASH_CHUNK_SIZE)
            if not block:
                break
            hasher.update(block)
    return hasher


def _content_range_start(header: Optional[str]) -> Optional[int]:
    if not header:
        return None
    m = _CONTENT_RANGE.match(header.strip())
    return int(m.group(1)) if m else None


class CacheStore:
    def __init__(
        self,
        root: str | Path,
        client: httpx.AsyncClient,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        self.root = Path(os.path.expanduser(str(root)))
        self._client = client
        self._chunk_size = chunk_size

    # -- paths --

    def entry_path(self, variant_id: str) -> Path:
        return self.root / variant_dirname(variant_id)

    def staging_path(self, variant_id: str) -> Path:
        return self.root / f"{STAGING_PREFIX}{variant_dirname(variant_id)}"

    # -- read-only queries (no gate needed) --

    def is_cached(self, variant_id: str) -> bool:
        """Cheap existence hint; does not verify content."""
        return (self.entry_path(variant_id) / MARKER_FILE).exists()

    def cached_variant_ids(self) -> list[str]:
        if not self.root.exists():
            return []
        ids = []
        for child in sorted(self.root.iterdir()):
            marker = child / MARKER_FILE
            if child.name.startswith(".") or not marker.exists():
                continue
            try:
                ids.append(json.loads(marker.read_text())["id"])
            except (OSError, ValueError, KeyError):
                logger.warning("Unreadable cache marker in %s", child)
        return ids

    # -- verification --

    async def _file_matches(self, path: Path, model_file: ModelFile) -> bool:
        if not path.is_file() or path.stat().st_size != model_file.size:
            return False
        hasher = await asyncio.to_thread(_hash_file, path)
        return hasher.hexdigest() == model_file.sha256

    async def verify(self, variant: ModelVariant) -> Optional[CacheEntry]:
        """Re-hash every file of a cached variant. None if absent or corrupt."""
        path = self.entry_path(variant.variant_id)
        if not path.is_dir():
            return None
        for model_file in variant.files:
            if not await self._file_matches(path / model_file.path, model_file):
                logger.warning(
                    "Cached %s failed verification at %s", variant.variant_id, model_file.path
                )
                return None
        return CacheEntry(variant.variant_id, path, verified=True)

    # -- download --

    async def ensure_downloaded(
        self,
        variant: ModelVariant,
        progress: Optional[DownloadProgress] = None,
    ) -> CacheEntry:
        total = variant.total_size
        try:
            entry = await self.verify(variant)
            if entry is not None:
                if progress is not None:
                    progress.report(total, total)
                return entry

            staging = self.staging_path(variant.variant_id)
            try:
                await self._download_all(variant, staging, progress)
                self._publish(variant, staging)
            except OSError as e:
                shutil.rmtree(staging, ignore_errors=True)
                raise DownloadFailed(variant.variant_id, f"disk error: {e}") from e
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise
        finally:
            if progress is not None:
                progress.finish()
        logger.info("Cached %s at %s", variant.variant_id, self.entry_path(variant.variant_id))
        return CacheEntry(variant.variant_id, self.entry_path(variant.variant_id), verified=True)

    def _check_space(self, variant: ModelVariant, staging: Path) -> None:
        staged = sum(p.stat().st_size for p in staging.rglob("*") if p.is_file())
        needed = variant.total_size - staged
        free = shutil.disk_usage(self.root).free
        if needed > free:
            raise DownloadFailed(
                variant.variant_id,
                f"insufficient disk space: need {needed} bytes, {free} available",
            )

    async def _download_all(
        self,
        variant: ModelVariant,
        staging: Path,
        progress: Optional[DownloadProgress],
    ) -> None:
        if staging.exists():
            logger.info("Resuming interrupted download of %s", variant.variant_id)
        staging.mkdir(parents=True, exist_ok=True)
        self._check_space(variant, staging)
        total = variant.total_size
        done = 0
        if progress is not None:
            progress.report(0, total)
        for model_file in variant.files:
            target = staging / model_file.path
            target.parent.mkdir(parents=True, exist_ok=True)
            await self._fetch_file(variant, model_file, target, done, progress)
            done += model_file.size
            if progress is not None:
                progress.report(done, total)

    async def _fetch_file(
        self,
        variant: ModelVariant,
        model_file: ModelFile,
        target: Path,
        base: int,
        progress: Optional[DownloadProgress],
    ) -> None:
        """Download one file into staging, hashing as bytes arrive."""
        total = variant.total_size
        existing = target.stat().st_size if target.exists() else 0
        if existing > model_file.size:
            target.unlink()
            existing = 0
        hasher = hashlib.sha256()
        if existing:
            hasher = await asyncio.to_thread(_hash_file, target, hasher)
            if existing == model_file.size:
                if hasher.hexdigest() == model_file.sha256:
                    logger.debug("Reusing staged %s", model_file.path)
                    return
                target.unlink()
                existing = 0
                hasher = hashlib.sha256()

        url = variant.file_url(model_file)
        headers = {"Range": f"bytes={existing}-"} if existing else {}
        received = existing
        try:
            async with self._client.stream("GET", url, headers=headers) as resp:
                if existing and resp.status_code == 206:
                    start = _content_range_start(resp.headers.get("Content-Range"))
                    if start != existing:
                        raise DownloadFailed(
                            variant.variant_id,
                            f"resume of {model_file.path} expected offset {existing}, "
                            f"server sent {resp.headers.get('Content-Range')!r}",
                            url,
                            resp.status_code,
                        )
                    mode = "ab"
                elif resp.status_code == 200:
                    if existing:
                        logger.debug("Server ignored Range for %s; restarting", model_file.path)
                        hasher = hashlib.sha256()
                        received = 0
                    mode = "wb"
                else:
                    await resp.aread()
                    raise DownloadFailed(
                        variant.variant_id,
                        f"HTTP {resp.status_code} for {model_file.path}: {resp.text[:200]}",
                        url,
                        resp.status_code,
                    )
                with open(target, mode) as fh:
                    async for chunk in resp.aiter_bytes(self._chunk_size):
                        fh.write(chunk)
                        hasher.update(chunk)
                        received += len(chunk)
                        if received > model_file.size:
                            break
                        if progress is not None:
                            progress.report(base + received, total)
        except httpx.HTTPError as e:
            raise DownloadFailed(variant.variant_id, str(e) or type(e).__name__, url) from e

        actual = hasher.hexdigest()
        if received != model_file.size or actual != model_file.sha256:
            raise IntegrityError(
                variant.variant_id,
                model_file.path,
                model_file.sha256,
                actual,
                received,
                model_file.size,
            )

    def _publish(self, variant: ModelVariant, staging: Path) -> None:
        """Rename verified staging into place, replacing any corrupt entry."""
        (staging / MARKER_FILE).write_text(json.dumps(variant.to_dict(), indent=2))
        final = self.entry_path(variant.variant_id)
        backup: Optional[Path] = None
        if final.exists():
            backup = final.with_name(f".evicted-{final.name}-{os.getpid()}-{time.time_ns()}")
            os.rename(final, backup)
        try:
            os.rename(staging, final)
        except OSError:
            if backup is not None and not final.exists():
                os.rename(backup, final)
            raise
        if backup is not None:
            shutil.rmtree(backup, ignore_errors=True)

    # -- eviction --

    async def evict(self, variant_id: str) -> None:
        """Remove a cached variant. Absent entries are not an error."""
        for path in (self.entry_path(variant_id), self.staging_path(variant_id)):
            if path.exists():
                await asyncio.to_thread(shutil.rmtree, path)
                logger.info("Evicted %s", path)
