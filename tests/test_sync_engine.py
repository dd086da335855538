"""Tests for the sync engine.

Tests:
- Propagating entries between workstations through a shared transport
- Concurrent edits merged by exactly one merge operation
- Convergence no matter which workstation syncs first
- theirs / ours / interactive strategies
- Conflict planning without writes
- Deletion racing an edit
- Clock skew rejection
- Re-fetching after lost sync state
- Retry, cancellation and batching against the transport
- Pushing operations compaction moved into the outbox
"""

from datetime import timedelta

import pytest

from kodo.config import KodoConfig
from kodo.errors import ClockSkewError, ConflictUnresolvedError, NetworkFailureError, SyncCancelledError
from kodo.storage.sync_state import SYNC_STATE_FILENAME, SyncState
from kodo.sync.engine import SyncEngine
from kodo.sync.transport import DirectoryTransport
from kodo.tasks import CancelToken
from kodo.types import Category, Entry, LogicalClock, utc_now


class FlakyTransport(DirectoryTransport):
    """Fails the first `failures` listings."""

    def __init__(self, path, failures=1, retryable=True):
        super().__init__(path)
        self.failures = failures
        self.retryable = retryable
        self.calls = 0

    def workstations(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise NetworkFailureError("connection reset", retryable=self.retryable)
        return super().workstations()


class RecordingTransport(DirectoryTransport):
    def __init__(self, path):
        super().__init__(path)
        self.appended = []
        self.published = 0

    def append(self, workstation_id, operations):
        self.appended.append(len(operations))
        super().append(workstation_id, operations)

    def publish(self):
        self.published += 1


@pytest.fixture
def alpha(store_factory):
    return store_factory("alpha")


@pytest.fixture
def beta(store_factory):
    return store_factory("beta")


def seed(alpha, beta, transport, **fields):
    """Create e1 on alpha and make sure beta has it."""
    fields.setdefault("body", "100 requests per minute")
    fields.setdefault("tags", {"api"})
    alpha.put(Entry(id="e1", category=Category.API, title="Rate limits", **fields))
    SyncEngine(alpha, transport).sync()
    SyncEngine(beta, transport).sync()
    assert beta.get("e1") is not None


def edit(store, entry_id="e1", **fields):
    entry = store.get(entry_id)
    for name, value in fields.items():
        setattr(entry, name, value)
    store.put(entry)


def diverge(alpha, beta, transport, alpha_fields, beta_fields):
    seed(alpha, beta, transport)
    edit(alpha, **alpha_fields)
    edit(beta, **beta_fields)


def merge_statuses(store, entry_id="e1"):
    return [item.status for item in store.history(entry_id) if item.status == "merge"]


class TestPropagation:
    def test_entry_reaches_other_workstation(self, alpha, beta, transport, make_entry):
        entry_id = alpha.put(make_entry(tags={"auth"}))
        pushed = SyncEngine(alpha, transport).sync()
        assert pushed.pushed == 1

        pulled = SyncEngine(beta, transport).sync()
        assert pulled.pulled == 1
        assert pulled.pushed == 0
        assert beta.get(entry_id).user_fields() == alpha.get(entry_id).user_fields()
        assert beta.seen == {"alpha": 1}

    def test_sync_is_idempotent(self, alpha, beta, transport, make_entry):
        alpha.put(make_entry())
        SyncEngine(alpha, transport).sync()
        first = SyncEngine(beta, transport).sync()
        second = SyncEngine(beta, transport).sync()
        assert first.pulled == 1
        assert (second.pulled, second.skipped, second.pushed) == (0, 0, 0)
        assert beta.log_size == 1

    def test_push_tracks_high_water_mark(self, alpha, transport, make_entry):
        alpha.put(make_entry(title="A"))
        alpha.put(make_entry(title="B"))
        engine = SyncEngine(alpha, transport)
        engine.push()
        status = engine.status()
        assert status["pushed_through"] == 2
        assert status["unpushed"] == 0
        assert engine.push().pushed == 0


class TestConcurrentEdits:
    def test_tag_edits_merge_once(self, alpha, beta, transport):
        diverge(alpha, beta, transport, {"tags": {"api", "security"}}, {"tags": {"api", "jwt"}})

        SyncEngine(alpha, transport).sync()
        beta_result = SyncEngine(beta, transport).sync()
        alpha_result = SyncEngine(alpha, transport).sync()

        assert beta_result.conflict_count == 1
        assert beta_result.merge_ops == 1
        assert alpha_result.conflict_count == 0
        assert alpha_result.merge_ops == 0

        for store in (alpha, beta):
            entry = store.get("e1")
            assert entry.tags == {"api", "security", "jwt"}
            assert not entry.needs_review
            assert merge_statuses(store) == ["merge"]
        assert alpha.get("e1").content_fingerprint() == beta.get("e1").content_fingerprint()
        assert alpha.get("e1").causal_context == {"alpha": 2, "beta": 3}

    def test_conflict_carries_both_versions(self, alpha, beta, transport):
        diverge(alpha, beta, transport, {"body": "120 per minute"}, {"body": "80 per minute"})
        SyncEngine(alpha, transport).sync()
        result = SyncEngine(beta, transport).sync()

        (conflict,) = result.conflicts
        assert conflict.entry_id == "e1"
        assert conflict.local_clock == LogicalClock("beta", 2)
        assert conflict.remote_clock == LogicalClock("alpha", 2)
        assert conflict.local_version.body == "80 per minute"
        assert conflict.remote_version.body == "120 per minute"
        assert conflict.fields == ["body"]
        assert conflict.resolution == "merge"
        assert conflict.merge_clock == LogicalClock("beta", 3)
        assert result.needs_review == ["e1"]

        merged = beta.get("e1")
        assert merged.needs_review
        assert "80 per minute" in merged.body and "120 per minute" in merged.body

    def test_converges_regardless_of_order(self, tmp_path, store_factory):
        fingerprints = {}
        for run in ("alpha", "beta"):
            root = tmp_path / f"{run}-first"
            transport = DirectoryTransport(root / "shared")
            stores = {ws: store_factory(ws, home=root / ws) for ws in ("alpha", "beta")}
            diverge(
                stores["alpha"],
                stores["beta"],
                transport,
                {"body": "120 per minute", "tags": {"api", "security"}},
                {"body": "80 per minute", "tags": {"api", "jwt"}},
            )
            second = "beta" if run == "alpha" else "alpha"
            for ws in (run, second, run):
                SyncEngine(stores[ws], transport).sync()
            a, b = stores["alpha"].get("e1"), stores["beta"].get("e1")
            assert a.content_fingerprint() == b.content_fingerprint()
            fingerprints[run] = a.content_fingerprint()
        assert fingerprints["alpha"] == fingerprints["beta"]


class TestStrategies:
    def test_theirs(self, alpha, beta, transport):
        diverge(alpha, beta, transport, {"title": "Rate limits (alpha)"}, {"title": "Rate limits (beta)"})
        SyncEngine(alpha, transport).sync()
        result = SyncEngine(beta, transport).sync(strategy="theirs")
        SyncEngine(alpha, transport).sync()

        assert result.conflicts[0].resolution == "theirs"
        for store in (alpha, beta):
            assert store.get("e1").title == "Rate limits (alpha)"
            statuses = {str(item.operation.clock): item.status for item in store.history("e1")}
            assert statuses["beta:2"] == "superseded"
            assert statuses["alpha:2"] == "applied"
            assert statuses["beta:3"] == "merge"

    def test_interactive_without_resolution_writes_nothing(self, alpha, beta, transport):
        diverge(alpha, beta, transport, {"title": "Rate limits (alpha)"}, {"title": "Rate limits (beta)"})
        SyncEngine(alpha, transport).sync()
        log_size = beta.log_size
        offsets = SyncState.load(beta.home).remote_offsets

        with pytest.raises(ConflictUnresolvedError) as exc_info:
            SyncEngine(beta, transport).sync(strategy="interactive")
        assert exc_info.value.exit_code == 2
        assert [c.entry_id for c in exc_info.value.conflicts] == ["e1"]
        assert "e1" in str(exc_info.value)
        assert beta.log_size == log_size
        assert SyncState.load(beta.home).remote_offsets == offsets
        assert beta.get("e1").title == "Rate limits (beta)"

    def test_interactive_with_ours(self, alpha, beta, transport):
        diverge(alpha, beta, transport, {"title": "Rate limits (alpha)"}, {"title": "Rate limits (beta)"})
        SyncEngine(alpha, transport).sync()
        result = SyncEngine(beta, transport).sync(strategy="interactive", resolutions={"e1": "ours"})
        assert result.conflicts[0].resolution == "ours"
        assert beta.get("e1").title == "Rate limits (beta)"
        assert [i.status for i in beta.history("e1") if str(i.operation.clock) == "alpha:2"] == ["superseded"]

    def test_interactive_with_manual_entry(self, alpha, beta, transport):
        diverge(alpha, beta, transport, {"title": "Rate limits (alpha)"}, {"title": "Rate limits (beta)"})
        SyncEngine(alpha, transport).sync()
        manual = beta.get("e1")
        manual.title = "Rate limits"
        SyncEngine(beta, transport).sync(strategy="interactive", resolutions={"e1": manual})
        assert beta.get("e1").title == "Rate limits"

    def test_plan_lists_conflicts_without_writing(self, alpha, beta, transport):
        diverge(alpha, beta, transport, {"body": "120 per minute"}, {"body": "80 per minute"})
        SyncEngine(alpha, transport).sync()
        log_size = beta.log_size

        conflicts = SyncEngine(beta, transport).plan()
        assert [c.entry_id for c in conflicts] == ["e1"]
        assert conflicts[0].resolution is None
        assert beta.log_size == log_size
        assert beta.get("e1").body == "80 per minute"


class TestDeletion:
    def test_edit_survives_concurrent_delete(self, alpha, beta, transport):
        seed(alpha, beta, transport)
        alpha.delete("e1")
        edit(beta, body="Raised to 200 per minute")

        SyncEngine(alpha, transport).sync()
        result = SyncEngine(beta, transport).sync()
        SyncEngine(alpha, transport).sync()

        assert result.needs_review == ["e1"]
        for store in (alpha, beta):
            entry = store.get("e1")
            assert entry is not None
            assert entry.needs_review
            assert entry.body == "Raised to 200 per minute"

    def test_delete_propagates(self, alpha, beta, transport):
        seed(alpha, beta, transport)
        alpha.delete("e1")
        SyncEngine(alpha, transport).sync()
        SyncEngine(beta, transport).sync()
        assert beta.get("e1") is None
        assert beta.get("e1", include_tombstoned=True).tombstoned


class TestSafety:
    def test_clock_skew_rejected(self, alpha, transport, make_op):
        transport.append("gamma", [make_op("e9", workstation_id="gamma", timestamp=utc_now() + timedelta(hours=48))])
        with pytest.raises(ClockSkewError) as exc_info:
            SyncEngine(alpha, transport).pull()
        assert exc_info.value.entry_id == "e9"
        assert exc_info.value.clock == LogicalClock("gamma", 1)
        assert alpha.log_size == 0

    def test_lost_sync_state_refetches_and_skips(self, alpha, beta, transport, make_entry):
        alpha.put(make_entry(title="A"))
        alpha.put(make_entry(title="B"))
        SyncEngine(alpha, transport).sync()
        SyncEngine(beta, transport).sync()
        (beta.home / SYNC_STATE_FILENAME).unlink()

        result = SyncEngine(beta, transport).pull()
        assert result.pulled == 0
        assert result.skipped == 2
        assert beta.log_size == 2
        assert SyncState.load(beta.home).remote_offsets == {"alpha": 2}

    def test_foreign_clock_in_log_is_ignored(self, alpha, transport, make_op, caplog):
        transport.append("gamma", [make_op("e9", workstation_id="delta")])
        result = SyncEngine(alpha, transport).pull()
        assert result.pulled == 0
        assert "foreign clock" in caplog.text


class TestTransportFailures:
    def test_retryable_failure_is_retried(self, alpha, beta, shared_dir, make_entry):
        alpha.put(make_entry())
        SyncEngine(alpha, DirectoryTransport(shared_dir)).sync()

        delays = []
        flaky = FlakyTransport(shared_dir, failures=1)
        result = SyncEngine(beta, flaky, sleep_fn=delays.append).pull()
        assert result.pulled == 1
        assert delays == [0.5]
        assert flaky.calls == 2

    def test_gives_up_after_attempts(self, beta, shared_dir):
        delays = []
        flaky = FlakyTransport(shared_dir, failures=10)
        with pytest.raises(NetworkFailureError):
            SyncEngine(beta, flaky, sleep_fn=delays.append).pull()
        assert delays == [0.5, 1.0]
        assert flaky.calls == 3

    def test_non_retryable_failure_surfaces_immediately(self, beta, shared_dir):
        delays = []
        flaky = FlakyTransport(shared_dir, failures=1, retryable=False)
        with pytest.raises(NetworkFailureError):
            SyncEngine(beta, flaky, sleep_fn=delays.append).pull()
        assert delays == []
        assert flaky.calls == 1

    def test_cancelled_before_start(self, alpha, transport):
        token = CancelToken()
        token.cancel()
        with pytest.raises(SyncCancelledError):
            SyncEngine(alpha, transport).sync(cancel=token)


class TestBatching:
    @pytest.fixture
    def small_batches(self):
        return KodoConfig(lock_timeout=0.2, sync_batch_size=2)

    def test_push_in_chunks(self, store_factory, shared_dir, small_batches, make_entry):
        alpha = store_factory("alpha", config=small_batches)
        for i in range(5):
            alpha.put(make_entry(title=f"Entry {i}"))
        transport = RecordingTransport(shared_dir)
        result = SyncEngine(alpha, transport).push()
        assert result.pushed == 5
        assert transport.appended == [2, 2, 1]
        assert transport.published == 1
        assert SyncState.load(alpha.home).pushed_through == 5

    def test_pull_in_chunks(self, store_factory, shared_dir, small_batches, make_entry):
        alpha = store_factory("alpha", config=small_batches)
        beta = store_factory("beta", config=small_batches)
        ids = {alpha.put(make_entry(title=f"Entry {i}")) for i in range(5)}
        transport = DirectoryTransport(shared_dir)
        SyncEngine(alpha, transport).push()

        result = SyncEngine(beta, transport).pull()
        assert result.pulled == 5
        assert {e.id for e in beta.list()} == ids
        assert SyncState.load(beta.home).remote_offsets == {"alpha": 5}

    def test_cancel_between_batches_resumes_without_skips(
        self, store_factory, shared_dir, small_batches, make_entry, monkeypatch
    ):
        alpha = store_factory("alpha", config=small_batches)
        beta = store_factory("beta", config=small_batches)
        ids = {alpha.put(make_entry(title=f"Entry {i}")) for i in range(5)}
        transport = DirectoryTransport(shared_dir)
        SyncEngine(alpha, transport).push()

        token = CancelToken()
        commit = beta.commit

        def commit_then_cancel(operations):
            outcomes = commit(operations)
            token.cancel()
            return outcomes

        monkeypatch.setattr(beta, "commit", commit_then_cancel)
        with pytest.raises(SyncCancelledError):
            SyncEngine(beta, transport).pull(cancel=token)
        assert SyncState.load(beta.home).remote_offsets == {"alpha": 2}
        assert len(beta.list()) == 2

        monkeypatch.setattr(beta, "commit", commit)
        result = SyncEngine(beta, transport).pull()
        assert result.pulled == 3
        assert result.skipped == 0
        assert {e.id for e in beta.list()} == ids
        assert SyncState.load(beta.home).remote_offsets == {"alpha": 5}


class TestOutbox:
    def test_push_after_compaction_sends_outbox(self, alpha, beta, transport, make_entry):
        ids = {alpha.put(make_entry(title=f"Entry {i}")) for i in range(3)}
        alpha.compact()
        assert alpha.log_size == 0
        assert alpha.outbox_size == 3

        result = SyncEngine(alpha, transport).push()
        assert result.pushed == 3
        SyncEngine(beta, transport).pull()
        assert {e.id for e in beta.list()} == ids

        stats = alpha.compact()
        assert (stats.dropped_ops, stats.retained_ops) == (3, 0)
        assert alpha.outbox_size == 0
        assert SyncEngine(alpha, transport).push().pushed == 0

    def test_outbox_and_new_writes_push_in_order(self, alpha, transport, make_entry):
        alpha.put(make_entry(title="Before"))
        alpha.compact()
        alpha.put(make_entry(title="After"))
        assert [op.clock.counter for op in alpha.local_operations()] == [1, 2]
        assert SyncEngine(alpha, transport).push().pushed == 2
        assert SyncState.load(alpha.home).pushed_through == 2
