"""FastAPI stand-in for the inference service's model-management API.

Holds one model at a time, like the real service. Useful for offline
development and for exercising the client stack in-process.
"""

from __future__ import annotations

import asyncio
import os
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Iterable, Optional

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from foundry_local.service import write_discovery_file


class LoadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    variant_id: str = Field(alias="variantId")
    path: Optional[str] = None


class UnloadRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    variant_id: str = Field(alias="variantId")


_start_time: float = 0.0


def create_app(
    api_key: Optional[str] = None,
    load_delay: float = 0.0,
    reject: Iterable[str] = (),
    discovery_file: Optional[str] = None,
    host: str = "127.0.0.1",
    port: Optional[int] = None,
) -> FastAPI:
    """Create the stub app.

    *load_delay* > 0 makes ``/load`` answer ``loading`` and flip to ``ready``
    in the background. Variant ids in *reject* fail to load with HTTP 422.
    With *discovery_file* and *port*, the endpoint is published on startup
    and withdrawn on shutdown.
    """
    rejected = set(reject)
    loaded: dict[str, str] = {}
    requests: list[tuple[str, str]] = []
    pending: set[asyncio.Task] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        global _start_time
        _start_time = time.time()
        if discovery_file and port:
            write_discovery_file(Path(discovery_file), host, port, api_key, os.getpid())
        yield
        for task in pending:
            task.cancel()
        if discovery_file and port:
            Path(discovery_file).unlink(missing_ok=True)

    app = FastAPI(title="foundry-local-stub", lifespan=lifespan)
    app.state.loaded = loaded
    app.state.requests = requests

    def _authorize(authorization: Optional[str]) -> None:
        if api_key and authorization != f"Bearer {api_key}":
            raise HTTPException(status_code=401, detail="Invalid API key")

    async def _finish_loading(variant_id: str) -> None:
        await asyncio.sleep(load_delay)
        if loaded.get(variant_id) == "loading":
            loaded[variant_id] = "ready"

    @app.get("/status")
    async def status(authorization: Optional[str] = Header(default=None)) -> dict:
        _authorize(authorization)
        return {
            "loaded": [{"variantId": k, "status": v} for k, v in loaded.items()],
            "uptime_s": round(time.time() - _start_time, 1),
        }

    @app.post("/load")
    async def load(body: LoadRequest, authorization: Optional[str] = Header(default=None)) -> dict:
        _authorize(authorization)
        requests.append(("load", body.variant_id))
        if body.variant_id in rejected:
            raise HTTPException(status_code=422, detail=f"Cannot load {body.variant_id}")
        if body.path is not None and not Path(body.path).exists():
            raise HTTPException(status_code=404, detail=f"Model files not found at {body.path}")
        # Single slot: a new load replaces whatever was there.
        loaded.clear()
        if load_delay > 0:
            loaded[body.variant_id] = "loading"
            task = asyncio.create_task(_finish_loading(body.variant_id))
            pending.add(task)
            task.add_done_callback(pending.discard)
        else:
            loaded[body.variant_id] = "ready"
        return {"variantId": body.variant_id, "status": loaded[body.variant_id]}

    @app.post("/unload")
    async def unload(body: UnloadRequest, authorization: Optional[str] = Header(default=None)) -> dict:
        _authorize(authorization)
        requests.append(("unload", body.variant_id))
        if loaded.pop(body.variant_id, None) is None:
            raise HTTPException(status_code=404, detail="Model not loaded")
        return {"variantId": body.variant_id, "status": "unloaded"}

    @app.get("/v1/models")
    async def models(authorization: Optional[str] = Header(default=None)) -> dict:
        _authorize(authorization)
        return {
            "object": "list",
            "data": [
                {"id": k, "object": "model", "owned_by": "foundry-local"}
                for k, v in loaded.items()
                if v == "ready"
            ],
        }

    return app
