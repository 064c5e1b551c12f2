"""
Shared pytest fixtures for foundry_local tests.

Everything runs in-process: model files are served by an httpx
MockTransport, the inference service is the FastAPI stub behind an
ASGITransport, and both sit behind one routing transport handed to the
manager.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
from pathlib import Path

import httpx
import pytest

from foundry_local.config import ManagerConfig
from foundry_local.manager import LifecycleManager
from foundry_local.service import write_discovery_file
from foundry_local.stub.app import create_app

MODELS_HOST = "models.test"
SERVICE_HOST = "127.0.0.1"
SERVICE_PORT = 5273

_RANGE = re.compile(r"bytes=(\d+)-")


def blob(name: str, size: int) -> bytes:
    """Deterministic pseudo-random bytes."""
    out = bytearray()
    counter = 0
    while len(out) < size:
        out += hashlib.sha256(f"{name}:{counter}".encode()).digest()
        counter += 1
    return bytes(out[:size])


def sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# (variant id, alias, hardware, {path: size})
DEFAULT_VARIANTS = [
    ("phi-4-mini-cpu", "phi-4-mini", "cpu",
     {"model.onnx": 3000, "genai_config.json": 120, "tokenizer.json": 700}),
    ("phi-4-mini-cuda", "phi-4-mini", "cuda",
     {"model.onnx": 3500, "genai_config.json": 130, "tokenizer.json": 700}),
    ("qwen-0.5b-npu", "qwen-0.5b", "npu", {"model.onnx": 900}),
    ("qwen-0.5b-cpu", "qwen-0.5b", "cpu", {"model.onnx": 800}),
    ("qwen-0.5b-gpu", "qwen-0.5b", "gpu", {"model.onnx": 850}),
    ("npu-only-npu", "npu-only", "npu", {"weights/model.onnx": 400}),
]


class FileServer:
    """Serves manifest files with optional Range support and fault injection."""

    def __init__(self, variants=DEFAULT_VARIANTS) -> None:
        self.blobs: dict[str, bytes] = {}
        self.manifest: dict = {"variants": []}
        self.requests: list[str] = []
        self.range_requests: list[tuple[str, str]] = []
        self.corrupt: set[str] = set()
        self.fail_status: dict[str, int] = {}
        self.support_range = True
        for variant_id, alias, hardware, files in variants:
            entries = []
            for path, size in files.items():
                data = blob(f"{variant_id}/{path}", size)
                self.blobs[f"{variant_id}/{path}"] = data
                entries.append({"path": path, "sha256": sha256(data), "size": size})
            self.manifest["variants"].append({
                "id": variant_id,
                "alias": alias,
                "hardware": hardware,
                "baseUrl": f"https://{MODELS_HOST}/{variant_id}",
                "files": entries,
            })

    def handler(self, request: httpx.Request) -> httpx.Response:
        key = request.url.path.lstrip("/")
        self.requests.append(key)
        if key in self.fail_status:
            return httpx.Response(self.fail_status[key], text="injected failure")
        if key not in self.blobs:
            return httpx.Response(404, text="not found")
        data = self.blobs[key]
        if key in self.corrupt:
            data = bytes([data[0] ^ 0xFF]) + data[1:]
        rng = request.headers.get("Range")
        if rng:
            self.range_requests.append((key, rng))
        if rng and self.support_range:
            start = int(_RANGE.match(rng).group(1))
            return httpx.Response(
                206,
                content=data[start:],
                headers={"Content-Range": f"bytes {start}-{len(data) - 1}/{len(data)}"},
            )
        return httpx.Response(200, content=data)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def file_requests(self) -> list[str]:
        return [r for r in self.requests if r in self.blobs]


class RoutingTransport(httpx.AsyncBaseTransport):
    """Dispatch by host; optionally record /load and /unload round trips."""

    def __init__(self, routes: dict[str, httpx.AsyncBaseTransport]) -> None:
        self.routes = routes
        self.events: list[tuple[str, str, str]] = []
        self.service_delay = 0.0

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        route = self.routes.get(request.url.host)
        if route is None:
            raise httpx.ConnectError(f"no route to {request.url.host}", request=request)
        path = request.url.path
        if path in ("/load", "/unload"):
            variant_id = json.loads(request.content)["variantId"]
            self.events.append(("start", path, variant_id))
            await asyncio.sleep(self.service_delay)
            response = await route.handle_async_request(request)
            self.events.append(("end", path, variant_id))
            return response
        return await route.handle_async_request(request)


class Stack:
    """Catalog file, file server, stub service and a config pointing at them."""

    def __init__(self, tmp_path: Path, **stub_kwargs) -> None:
        self.tmp_path = tmp_path
        self.files = FileServer()
        self.app = create_app(**stub_kwargs)
        self.manifest_path = tmp_path / "catalog.json"
        self.manifest_path.write_text(json.dumps(self.files.manifest))
        self.config = ManagerConfig(
            catalog_url=str(self.manifest_path),
            cache_dir=str(tmp_path / "models"),
            state_dir=str(tmp_path / "state"),
            service_command=[],
            hardware=None,
            poll_interval_s=0.01,
            probe_timeout_s=1.0,
            stop_grace_s=1.0,
        )
        write_discovery_file(
            self.config.discovery_path, SERVICE_HOST, SERVICE_PORT,
            api_key=stub_kwargs.get("api_key"),
        )
        self.routing = RoutingTransport({
            MODELS_HOST: self.files.transport(),
            SERVICE_HOST: httpx.ASGITransport(app=self.app),
        })

    def manager(self, hardware="cuda", **kwargs) -> LifecycleManager:
        return LifecycleManager(self.config, hardware=hardware, transport=self.routing, **kwargs)

    def load_requests(self) -> list[str]:
        return [v for kind, path, v in self.routing.events if kind == "start" and path == "/load"]


@pytest.fixture
def file_server():
    return FileServer()


@pytest.fixture
def stack(tmp_path):
    return Stack(tmp_path)


@pytest.fixture
def make_stack(tmp_path):
    """Factory for a Stack with custom stub options."""

    def _make(**stub_kwargs):
        return Stack(tmp_path, **stub_kwargs)

    return _make
