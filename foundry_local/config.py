"""Manager configuration."""

from __future__ import annotations

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

DEFAULT_CONFIG_PATH = "~/.config/foundry_local/config.yaml"


def _default_state_dir() -> str:
    return os.environ.get("FOUNDRY_LOCAL_STATE_DIR", "~/.foundry_local")


def _default_cache_dir() -> str:
    return os.environ.get("FOUNDRY_LOCAL_CACHE_DIR", "~/.foundry_local/models")


def _default_catalog_url() -> str:
    return os.environ.get("FOUNDRY_LOCAL_CATALOG_URL", "~/.foundry_local/catalog.json")


def _default_hardware() -> Optional[str]:
    return os.environ.get("FOUNDRY_LOCAL_HARDWARE") or None


@dataclass
class ManagerConfig:
    """Settings for a LifecycleManager.

    Can be configured via:
    - Constructor arguments
    - A YAML file (see :func:`load_config`)
    - Environment variables: FOUNDRY_LOCAL_CATALOG_URL, FOUNDRY_LOCAL_CACHE_DIR,
      FOUNDRY_LOCAL_STATE_DIR, FOUNDRY_LOCAL_HARDWARE
    """

    catalog_url: str = field(default_factory=_default_catalog_url)
    cache_dir: str = field(default_factory=_default_cache_dir)
    state_dir: str = field(default_factory=_default_state_dir)
    discovery_file: Optional[str] = None
    service_command: list[str] = field(default_factory=lambda: ["foundry", "service", "start"])
    host: str = "127.0.0.1"
    probe_ports: list[int] = field(default_factory=list)
    api_key: Optional[str] = None
    hardware: Optional[str] = field(default_factory=_default_hardware)
    service_start_timeout_s: float = 60.0
    load_timeout_s: Optional[float] = 600.0
    download_timeout_s: Optional[float] = None
    http_timeout_s: float = 30.0
    probe_timeout_s: float = 2.0
    stop_grace_s: float = 5.0
    poll_interval_s: float = 0.25
    chunk_size: int = 1 << 20
    log_level: str = "info"

    @property
    def state_path(self) -> Path:
        return Path(os.path.expanduser(self.state_dir))

    @property
    def cache_path(self) -> Path:
        return Path(os.path.expanduser(self.cache_dir))

    @property
    def discovery_path(self) -> Path:
        if self.discovery_file:
            return Path(os.path.expanduser(self.discovery_file))
        return self.state_path / "service.json"

    @property
    def catalog_snapshot_path(self) -> Path:
        return self.state_path / "catalog-snapshot.json"


def load_config(path: str = DEFAULT_CONFIG_PATH) -> ManagerConfig:
    """Load a YAML config file into a ManagerConfig.

    If the file does not exist, creates it with the default config.
    """
    expanded = Path(os.path.expanduser(path))
    if not expanded.exists():
        config = ManagerConfig()
        expanded.parent.mkdir(parents=True, exist_ok=True)
        expanded.write_text(yaml.dump(dataclasses.asdict(config), default_flow_style=False))
        return config

    with open(expanded) as f:
        data: Any = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Invalid config at {expanded}: must be a mapping")

    known = {f.name for f in dataclasses.fields(ManagerConfig)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Invalid config at {expanded}: unknown keys {unknown}")

    return ManagerConfig(**data)
