"""Sync transports: where workstations exchange their operation logs.

Each workstation appends its own operations to its own log on the
transport and reads everyone else's. Offsets count records, not bytes.
"""

import json
import logging
import os
import re
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from kodo.config import TransportConfig
from kodo.errors import CorruptionError, NetworkFailureError
from kodo.storage.codec import (
    RecordError,
    decode_operation,
    encode_operation,
    operation_from_record,
    operation_to_record,
)
from kodo.types import Operation

logger = logging.getLogger(__name__)

_WORKSTATION_RE = re.compile(r"^[A-Za-z0-9._-]+$")
LOG_SUFFIX = ".ndjson"


def check_workstation_id(workstation_id: str) -> str:
    if not _WORKSTATION_RE.match(workstation_id or ""):
        raise ValueError(f"Invalid workstation id for transport: {workstation_id!r}")
    return workstation_id


class Transport(ABC):
    """Exchange of per-workstation operation logs."""

    def prepare(self) -> None:
        """Bring the local view of the transport up to date before reading."""

    def publish(self) -> None:
        """Make appended operations visible to other workstations."""

    @abstractmethod
    def workstations(self) -> List[str]:
        ...

    @abstractmethod
    def read(self, workstation_id: str, offset: int, limit: int) -> List[Operation]:
        """Up to `limit` records of a workstation's log, starting at record `offset`."""

    @abstractmethod
    def append(self, workstation_id: str, operations: Sequence[Operation]) -> None:
        ...

    def close(self) -> None:
        pass


class DirectoryTransport(Transport):
    """One NDJSON file per workstation in a shared directory."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _log_path(self, workstation_id: str) -> Path:
        return self.path / f"{check_workstation_id(workstation_id)}{LOG_SUFFIX}"

    def workstations(self) -> List[str]:
        try:
            return sorted(p.name[: -len(LOG_SUFFIX)] for p in self.path.glob(f"*{LOG_SUFFIX}"))
        except OSError as e:
            raise NetworkFailureError(f"Cannot list {self.path}: {e}") from e

    def read(self, workstation_id: str, offset: int, limit: int) -> List[Operation]:
        path = self._log_path(workstation_id)
        try:
            with open(path, "rb") as f:
                data = f.read()
        except FileNotFoundError:
            return []
        except OSError as e:
            raise NetworkFailureError(f"Cannot read {path}: {e}") from e

        operations: List[Operation] = []
        index = 0
        for line_no, raw in enumerate(data.splitlines(keepends=True), start=1):
            if not raw.endswith(b"\n"):
                break  # still being written
            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            index += 1
            if index <= offset:
                continue
            try:
                operations.append(decode_operation(text))
            except RecordError as e:
                raise CorruptionError(path, str(e), line=line_no) from e
            if len(operations) >= limit:
                break
        return operations

    def append(self, workstation_id: str, operations: Sequence[Operation]) -> None:
        if not operations:
            return
        path = self._log_path(workstation_id)
        payload = "".join(encode_operation(op) + "\n" for op in operations).encode("utf-8")
        try:
            self.path.mkdir(parents=True, exist_ok=True)
            with open(path, "ab") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise NetworkFailureError(f"Cannot append to {path}: {e}") from e


class GitTransport(DirectoryTransport):
    """Directory transport inside a git work tree.

    `prepare()` pulls with rebase; `publish()` commits the appended log and
    pushes. Without a configured remote both only touch the local repository.
    """

    OPS_DIRNAME = "ops"

    def __init__(self, work_tree: Path, remote: str = "origin", branch: str = "main", timeout: float = 60.0):
        self.work_tree = Path(work_tree)
        super().__init__(self.work_tree / self.OPS_DIRNAME)
        self.remote = remote
        self.branch = branch
        self.timeout = timeout
        self._dirty: List[Path] = []

    def _git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        cmd = ["git", "-C", str(self.work_tree), *args]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise NetworkFailureError("git executable not found", retryable=False) from e
        except subprocess.TimeoutExpired as e:
            raise NetworkFailureError(f"{' '.join(cmd)} timed out after {self.timeout:g}s") from e
        if check and proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()
            raise NetworkFailureError(f"{' '.join(cmd)} failed (exit {proc.returncode}): {detail}")
        return proc

    def _has_remote(self) -> bool:
        return self.remote in self._git("remote").stdout.split()

    def _remote_has_branch(self) -> bool:
        # Exit code 2 means the remote is reachable but has no such branch yet.
        proc = self._git("ls-remote", "--exit-code", "--heads", self.remote, self.branch, check=False)
        if proc.returncode == 2:
            return False
        if proc.returncode != 0:
            detail = (proc.stderr or proc.stdout or "").strip()
            raise NetworkFailureError(f"git ls-remote {self.remote} failed (exit {proc.returncode}): {detail}")
        return True

    def prepare(self) -> None:
        if not (self.work_tree / ".git").exists():
            raise NetworkFailureError(f"{self.work_tree} is not a git work tree", retryable=False)
        if self._has_remote() and self._remote_has_branch():
            self._git("pull", "--rebase", "--quiet", self.remote, self.branch)

    def append(self, workstation_id: str, operations: Sequence[Operation]) -> None:
        super().append(workstation_id, operations)
        if operations:
            self._dirty.append(self._log_path(workstation_id))

    def publish(self) -> None:
        if not self._dirty:
            return
        self._git("add", "--", *sorted({str(p) for p in self._dirty}))
        if self._git("diff", "--cached", "--quiet", check=False).returncode != 0:
            self._git("commit", "--quiet", "-m", "kodo: sync operations")
        self._dirty = []
        if self._has_remote():
            self._git("push", "--quiet", self.remote, f"HEAD:{self.branch}")


class HttpTransport(Transport):
    """Blob-store style HTTP API.

    GET  /workstations               -> {"workstations": [...]}
    GET  /ops/{ws}?offset=N&limit=M  -> {"ops": [record, ...]}
    POST /ops/{ws}                   <- {"ops": [record, ...]}
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self.url = url.rstrip("/")
        self.client = httpx.Client(base_url=self.url, headers=headers, timeout=timeout, transport=transport)

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise NetworkFailureError(f"{method} {path} timed out: {e}") from e
        except httpx.TransportError as e:
            raise NetworkFailureError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code == 429
            raise NetworkFailureError(
                f"{method} {path} returned HTTP {response.status_code}: {response.text[:200]}",
                retryable=retryable,
            )
        if not response.content:
            return {}
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise NetworkFailureError(f"{method} {path} returned invalid JSON", retryable=False) from e
        if not isinstance(data, dict):
            raise NetworkFailureError(f"{method} {path} returned a non-object body", retryable=False)
        return data

    def workstations(self) -> List[str]:
        data = self._request("GET", "/workstations")
        return sorted(str(ws) for ws in data.get("workstations", []))

    def read(self, workstation_id: str, offset: int, limit: int) -> List[Operation]:
        ws = check_workstation_id(workstation_id)
        data = self._request("GET", f"/ops/{ws}", params={"offset": offset, "limit": limit})
        operations = []
        for i, record in enumerate(data.get("ops", [])):
            try:
                operations.append(operation_from_record(record))
            except RecordError as e:
                raise NetworkFailureError(
                    f"Record {offset + i} of {ws} from {self.url} is invalid: {e}", retryable=False
                ) from e
        return operations

    def append(self, workstation_id: str, operations: Sequence[Operation]) -> None:
        if not operations:
            return
        ws = check_workstation_id(workstation_id)
        self._request("POST", f"/ops/{ws}", json={"ops": [operation_to_record(op) for op in operations]})

    def close(self) -> None:
        self.client.close()


def build_transport(config: TransportConfig, timeout: float = 60.0) -> Transport:
    """Instantiate the transport described by the config."""
    if config.type == "directory":
        if not config.path:
            raise ValueError("transport.path is required for the directory transport (or set KODO_SYNC_DIR)")
        return DirectoryTransport(Path(config.path).expanduser())
    if config.type == "git":
        if not config.path:
            raise ValueError("transport.path is required for the git transport")
        return GitTransport(Path(config.path).expanduser(), config.remote, config.branch, timeout=timeout)
    if config.type == "http":
        if not config.url:
            raise ValueError("transport.url is required for the http transport (or set KODO_SYNC_URL)")
        return HttpTransport(config.url, token=config.token, timeout=timeout)
    raise ValueError(f"Unknown transport type: {config.type!r}")
