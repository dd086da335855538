"""
Configuration for kodo.

Home directory resolution (first match wins):
- explicit path (``--home``)
- ``KODO_HOME`` environment variable
- nearest ``.kodo/`` directory from the working directory upwards
- ``~/.kodo``

``<home>/config.json`` is merged over the defaults below, then environment
overrides are applied.
"""

import json
import logging
import os
import socket
import uuid
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

HOME_DIRNAME = ".kodo"
CONFIG_FILENAME = "config.json"
WORKSTATION_FILENAME = "workstation_id"

VALID_TRANSPORTS = ("directory", "git", "http")


def find_project_home(start: Optional[Path] = None) -> Optional[Path]:
    """Walk up from `start` looking for a `.kodo/` directory."""
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        home = candidate / HOME_DIRNAME
        if home.is_dir():
            return home
    return None


def get_kodo_home(explicit: Optional[Path] = None) -> Path:
    """Resolve the store directory."""
    if explicit:
        return Path(explicit).expanduser()
    if env_home := os.environ.get("KODO_HOME"):
        return Path(env_home).expanduser()
    project_home = find_project_home()
    if project_home:
        return project_home
    return Path.home() / HOME_DIRNAME


def resolve_workstation_id(home: Path) -> str:
    """Return the stable workstation id, generating it on first use."""
    if env_id := os.environ.get("KODO_WORKSTATION_ID"):
        return env_id.strip()

    path = home / WORKSTATION_FILENAME
    if path.exists():
        value = path.read_text(encoding="utf-8").strip()
        if value:
            return value

    host = "".join(c if c.isalnum() else "-" for c in socket.gethostname().lower())[:24]
    workstation_id = f"{host or 'ws'}-{uuid.uuid4().hex[:8]}"
    home.mkdir(parents=True, exist_ok=True)
    path.write_text(workstation_id + "\n", encoding="utf-8")
    logger.debug("Generated workstation id %s", workstation_id)
    return workstation_id


@dataclass
class TransportConfig:
    """Where sync exchanges operation logs."""

    type: str = "directory"
    path: Optional[str] = None  # directory transport / git work tree
    remote: str = "origin"  # git
    branch: str = "main"  # git
    url: Optional[str] = None  # http
    token: Optional[str] = None  # http


@dataclass
class KodoConfig:
    """Tunables for the store, query engine, extraction and sync."""

    # Query / index
    fuzzy_threshold: float = 0.5
    recency_window_days: float = 90.0
    page_size: int = 20
    # Extraction
    dedup_threshold: float = 0.85
    dedup_candidates: int = 5
    # Store
    lock_timeout: float = 5.0
    compact_after_ops: int = 1000
    tombstone_retention_days: float = 30.0
    # Sync
    sync_timeout: float = 60.0
    sync_attempts: int = 3
    sync_backoff: float = 0.5
    sync_max_backoff: float = 8.0
    sync_batch_size: int = 100
    max_clock_skew_hours: float = 24.0
    transport: TransportConfig = field(default_factory=TransportConfig)

    def __post_init__(self) -> None:
        if isinstance(self.transport, dict):
            self.transport = TransportConfig(**self.transport)
        self.validate()

    def validate(self) -> None:
        for name in ("fuzzy_threshold", "dedup_threshold"):
            value = getattr(self, name)
            if not 0.0 < value <= 1.0:
                raise ValueError(f"{name} must be in (0, 1], got {value!r}")
        for name in (
            "recency_window_days",
            "page_size",
            "dedup_candidates",
            "sync_attempts",
            "sync_batch_size",
            "compact_after_ops",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")
        for name in ("lock_timeout", "sync_timeout", "sync_backoff", "max_clock_skew_hours"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must not be negative, got {getattr(self, name)!r}")
        if self.transport.type not in VALID_TRANSPORTS:
            raise ValueError(
                f"transport.type must be one of {', '.join(VALID_TRANSPORTS)}, "
                f"got {self.transport.type!r}"
            )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KodoConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))
        values = {k: v for k, v in data.items() if k in known}
        if "transport" in values:
            transport = dict(values["transport"] or {})
            transport_known = {f.name for f in fields(TransportConfig)}
            values["transport"] = TransportConfig(
                **{k: v for k, v in transport.items() if k in transport_known}
            )
        return cls(**values)


def load_config(home: Path) -> KodoConfig:
    """Load `<home>/config.json` merged over defaults, then apply env overrides."""
    config_path = home / CONFIG_FILENAME
    data: Dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"{config_path} must contain a JSON object")

    config = KodoConfig.from_dict(data)

    if sync_url := os.environ.get("KODO_SYNC_URL"):
        config.transport.type = "http"
        config.transport.url = sync_url
    if token := os.environ.get("KODO_AUTH_TOKEN"):
        config.transport.token = token
    if sync_dir := os.environ.get("KODO_SYNC_DIR"):
        config.transport.path = sync_dir

    config.validate()
    return config


def save_config(home: Path, config: KodoConfig) -> Path:
    """Write the config file, returning its path."""
    home.mkdir(parents=True, exist_ok=True)
    config_path = home / CONFIG_FILENAME
    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)
        f.write("\n")
    return config_path
