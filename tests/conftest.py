"""
Pytest fixtures and test configuration for Kodo tests.
"""

from datetime import timedelta
from pathlib import Path
from typing import Optional

import pytest

from kodo.config import KodoConfig
from kodo.core import Kodo
from kodo.storage.store import EntryStore
from kodo.sync.transport import DirectoryTransport
from kodo.types import Category, Confidence, Entry, LogicalClock, Operation, OpKind, utc_now


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep the developer's environment out of every test."""
    for name in ("KODO_HOME", "KODO_WORKSTATION_ID", "KODO_SYNC_URL", "KODO_AUTH_TOKEN", "KODO_SYNC_DIR"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "user-home"))


@pytest.fixture
def config():
    return KodoConfig(lock_timeout=0.2)


@pytest.fixture
def store_factory(tmp_path, config):
    """Open independent stores under tmp_path, one directory per workstation."""
    opened = []

    def _open(workstation_id: str = "alpha", home: Optional[Path] = None, **kwargs) -> EntryStore:
        store = EntryStore.open(
            home or tmp_path / workstation_id,
            workstation_id=workstation_id,
            config=kwargs.pop("config", config),
            **kwargs,
        )
        opened.append(store)
        return store

    yield _open
    for store in opened:
        store.close()


@pytest.fixture
def store(store_factory):
    return store_factory("alpha")


@pytest.fixture
def shared_dir(tmp_path):
    path = tmp_path / "shared"
    path.mkdir()
    return path


@pytest.fixture
def transport(shared_dir):
    return DirectoryTransport(shared_dir)


@pytest.fixture
def kodo_factory(tmp_path, config, shared_dir):
    """Kodo handles that sync through one shared directory."""
    opened = []

    def _open(workstation_id: str = "alpha") -> Kodo:
        k = Kodo.open(
            tmp_path / workstation_id,
            workstation_id=workstation_id,
            config=config,
            transport=DirectoryTransport(shared_dir),
        )
        opened.append(k)
        return k

    yield _open
    for k in opened:
        k.close()


def make_entry(entry_id: str = "", title: str = "Use JWT for auth", **fields) -> Entry:
    fields.setdefault("category", Category.ARCHITECTURE)
    return Entry(id=entry_id, title=title, **fields)


def make_operation(
    entry_id: str = "e1",
    workstation_id: str = "alpha",
    counter: int = 1,
    title: str = "Use JWT for auth",
    kind: OpKind = OpKind.INSERT,
    context: Optional[dict] = None,
    timestamp=None,
    **fields,
) -> Operation:
    now = timestamp or utc_now()
    fields.setdefault("category", Category.API)
    fields.setdefault("confidence", Confidence.MEDIUM)
    clock = LogicalClock(workstation_id, counter)
    context = context or {workstation_id: counter}
    entry = Entry(
        id=entry_id,
        title=title,
        created_at=now - timedelta(minutes=1),
        updated_at=now,
        clock=clock,
        causal_context=dict(context),
        **fields,
    )
    return Operation(
        kind=kind,
        entry_id=entry_id,
        clock=clock,
        timestamp=now,
        payload=entry,
        context=dict(context),
    )


@pytest.fixture(name="make_entry")
def make_entry_fixture():
    return make_entry


@pytest.fixture(name="make_op")
def make_op_fixture():
    return make_operation
