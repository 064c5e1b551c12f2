"""Discover or launch the local inference service and learn its endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import httpx

from foundry_local.client import ServiceClient
from foundry_local.config import ManagerConfig
from foundry_local.errors import ServiceLaunchFailed, ServiceStartTimeout

logger = logging.getLogger(__name__)

DISCOVERY_ENV = "FOUNDRY_LOCAL_DISCOVERY_FILE"


@dataclass
class ServiceEndpoint:
    host: str
    port: int
    api_key: Optional[str] = None
    pid: Optional[int] = None
    owned: bool = False
    process: Optional[asyncio.subprocess.Process] = field(default=None, repr=False, compare=False)

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def openai_base_url(self) -> str:
        return f"{self.base_url}/v1"

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "port": self.port,
            "apiKey": self.api_key,
            "pid": self.pid,
            "owned": self.owned,
            "baseUrl": self.base_url,
        }


def read_discovery_file(path: Path) -> Optional[dict]:
    """Parsed discovery document, or None if missing or malformed."""
    try:
        data = json.loads(path.read_text())
        int(data["port"])
        str(data["host"])
    except FileNotFoundError:
        return None
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.debug("Ignoring discovery file %s: %s", path, e)
        return None
    return data


def write_discovery_file(
    path: Path,
    host: str,
    port: int,
    api_key: Optional[str] = None,
    pid: Optional[int] = None,
) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps({"host": host, "port": port, "apiKey": api_key, "pid": pid}))
    tmp.replace(path)


def _log_tail(path: Path, limit: int = 2000) -> str:
    try:
        data = path.read_bytes()
    except OSError:
        return ""
    return data[-limit:].decode("utf-8", errors="replace").strip()


class ServiceLocator:
    """Owns the single ServiceEndpoint of a manager.

    Only a service launched here is ever stopped here; a discovered one may
    be shared with other processes.
    """

    def __init__(self, config: ManagerConfig, client: httpx.AsyncClient) -> None:
        self._config = config
        self._client = client
        self._endpoint: Optional[ServiceEndpoint] = None

    @property
    def endpoint(self) -> Optional[ServiceEndpoint]:
        return self._endpoint

    def service_client(self, endpoint: ServiceEndpoint) -> ServiceClient:
        return ServiceClient(
            endpoint.base_url,
            self._client,
            api_key=endpoint.api_key,
            poll_interval=self._config.poll_interval_s,
        )

    async def _healthy(self, endpoint: ServiceEndpoint) -> bool:
        return await self.service_client(endpoint).probe(self._config.probe_timeout_s)

    def _from_discovery(self, data: dict, **extra) -> ServiceEndpoint:
        return ServiceEndpoint(
            host=str(data["host"]),
            port=int(data["port"]),
            api_key=data.get("apiKey") or self._config.api_key,
            pid=data.get("pid"),
            **extra,
        )

    async def _discover(self) -> Optional[ServiceEndpoint]:
        data = read_discovery_file(self._config.discovery_path)
        if data is not None:
            endpoint = self._from_discovery(data)
            if await self._healthy(endpoint):
                logger.info("Discovered running service at %s", endpoint.base_url)
                return endpoint
            logger.debug("Discovery file points at unresponsive %s", endpoint.base_url)
        for port in self._config.probe_ports:
            endpoint = ServiceEndpoint(self._config.host, port, api_key=self._config.api_key)
            if await self._healthy(endpoint):
                logger.info("Found service by probing %s", endpoint.base_url)
                return endpoint
        return None

    async def ensure_running(self, timeout: Optional[float] = None) -> ServiceEndpoint:
        """Return the endpoint of a healthy service, launching one if needed."""
        current = self._endpoint
        if current is not None:
            if current.process is not None and current.process.returncode is not None:
                logger.warning(
                    "Service started by this manager exited with code %s",
                    current.process.returncode,
                )
                self._endpoint = None
            elif current.process is not None or await self._healthy(current):
                # A live child process is trusted; anything else is probed.
                return current
            else:
                logger.warning("Service at %s stopped answering; rediscovering", current.base_url)
                self._endpoint = None

        endpoint = await self._discover()
        if endpoint is None:
            endpoint = await self._launch(timeout or self._config.service_start_timeout_s)
        self._endpoint = endpoint
        return endpoint

    async def _launch(self, timeout: float) -> ServiceEndpoint:
        discovery = self._config.discovery_path
        cmd = [arg.replace("{discovery_file}", str(discovery)) for arg in self._config.service_command]
        if not cmd:
            raise ServiceLaunchFailed(None, "no service_command configured")

        state = self._config.state_path
        state.mkdir(parents=True, exist_ok=True)
        log_path = state / "service.log"
        env = {**os.environ, DISCOVERY_ENV: str(discovery)}
        with open(log_path, "ab") as log:
            try:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    env=env,
                )
            except OSError as e:
                raise ServiceLaunchFailed(None, f"{cmd[0]}: {e}") from e
        logger.info("Launched service (pid %d): %s", proc.pid, " ".join(cmd))

        try:
            return await asyncio.wait_for(self._await_endpoint(proc, log_path), timeout)
        except asyncio.TimeoutError:
            await self._terminate(proc)
            raise ServiceStartTimeout(timeout) from None
        except BaseException:
            await self._terminate(proc)
            raise

    async def _await_endpoint(
        self,
        proc: asyncio.subprocess.Process,
        log_path: Path,
    ) -> ServiceEndpoint:
        """Poll the discovery file until it names an endpoint that answers.

        A launcher that exits 0 after detaching the real service is fine; any
        other exit is a launch failure.
        """
        detached = False
        while True:
            if proc.returncode is not None and not detached:
                if proc.returncode != 0:
                    raise ServiceLaunchFailed(proc.returncode, _log_tail(log_path))
                detached = True
            data = read_discovery_file(self._config.discovery_path)
            if data is not None:
                if detached:
                    endpoint = self._from_discovery(data, owned=True)
                else:
                    endpoint = self._from_discovery(data, owned=True, process=proc)
                    endpoint.pid = endpoint.pid or proc.pid
                if await self._healthy(endpoint):
                    logger.info("Service ready at %s", endpoint.base_url)
                    return endpoint
            await asyncio.sleep(self._config.poll_interval_s)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), self._config.stop_grace_s)
        except asyncio.TimeoutError:
            logger.warning("Service pid %d ignored terminate; killing", proc.pid)
            proc.kill()
            await proc.wait()

    async def stop(self) -> None:
        """Stop the service if this locator launched it; otherwise just forget it."""
        endpoint, self._endpoint = self._endpoint, None
        if endpoint is None:
            return
        if not endpoint.owned:
            logger.info("Leaving shared service at %s running", endpoint.base_url)
            return
        if endpoint.process is not None:
            await self._terminate(endpoint.process)
        elif endpoint.pid:
            try:
                os.kill(endpoint.pid, signal.SIGTERM)
            except ProcessLookupError:
                logger.info("Service pid %d at %s already gone", endpoint.pid, endpoint.base_url)
                return
        else:
            logger.warning(
                "Service at %s was started detached without a pid; leaving it running",
                endpoint.base_url,
            )
            return
        logger.info("Stopped service at %s", endpoint.base_url)
