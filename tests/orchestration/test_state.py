"""Tests for the versioned execution state store."""

import threading

import pytest

from spindle.core.cache import InMemoryCache
from spindle.core.errors import StateNotFoundError, StateStoreError
from spindle.core.values import Value, ValueKind
from spindle.orchestration import ExecutionStateStore, InMemoryStateRepository

EID = "exec-1"


@pytest.fixture
def repository():
    return InMemoryStateRepository()


@pytest.fixture
def store(repository):
    store = ExecutionStateStore(repository)
    store.initialize_state(EID, {"status": "running"}, {"region": "eu"})
    return store


class BrokenRepository(InMemoryStateRepository):
    def save(self, state):
        raise OSError("disk full")


class GatedRepository(InMemoryStateRepository):
    """Blocks the next save until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.gate_next = False
        self.entered = threading.Event()
        self.release = threading.Event()

    def save(self, state):
        if self.gate_next:
            self.gate_next = False
            self.entered.set()
            self.release.wait(timeout=5)
        super().save(state)


class TestInitialization:
    def test_initialize(self, store):
        state = store.get_current_state(EID)
        assert state.version == 1
        assert state.data == {"status": Value.of("running")}
        assert state.variables == {"region": Value.of("eu")}
        assert state.completed_nodes == ()

    def test_unknown_execution(self, store):
        assert store.get_current_state("nope") is None
        with pytest.raises(StateNotFoundError):
            store.update_state("nope", {"a": 1})

    def test_reinitialize_bumps_version(self, store):
        state = store.initialize_state(EID, {"status": "restarted"})
        assert state.version == 2
        assert state.variables == {}


class TestUpdates:
    def test_update_merges(self, store):
        store.update_state(EID, {"progress": 50})
        state = store.update_state(EID, {"status": "paused"})
        assert state.data == {"status": Value.of("paused"), "progress": Value.of(50)}
        assert state.version == 3

    def test_versions_strictly_increase(self, store):
        versions = [store.update_state(EID, {"n": i}).version for i in range(5)]
        assert versions == [2, 3, 4, 5, 6]

    def test_states_are_immutable_snapshots(self, store):
        before = store.get_current_state(EID)
        store.update_state(EID, {"status": "done"})
        assert before.data["status"] == Value.of("running")

    def test_clear_state_keeps_history(self, store):
        state = store.clear_state(EID)
        assert state.data == {}
        assert state.variables == {}
        assert len(store.get_state_history(EID)) == 2

    def test_concurrent_writers_are_serialized(self, store):
        def worker(prefix):
            for i in range(20):
                store.set_variable(EID, f"{prefix}{i}", i)

        threads = [threading.Thread(target=worker, args=(p,)) for p in "abcd"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        state = store.get_current_state(EID)
        assert len(state.variables) == 81
        assert state.version == 81


class TestVariables:
    def test_set_get_remove(self, store):
        store.set_variable(EID, "rows", 42)
        assert store.get_variable(EID, "rows") == Value(ValueKind.INT, 42)
        assert store.get_variable(EID, "rows", ValueKind.STRING) == "42"
        store.remove_variable(EID, "rows")
        assert store.get_variable(EID, "rows", default="gone") == "gone"

    def test_unconvertible_yields_default(self, store):
        store.set_variable(EID, "name", "abc")
        assert store.get_variable(EID, "name", ValueKind.INT, default=-1) == -1

    def test_remove_missing_is_noop(self, store):
        before = store.get_current_state(EID)
        assert store.remove_variable(EID, "missing").version == before.version


class TestNodeBookkeeping:
    def test_pending_then_completed(self, store):
        store.update_current_node(EID, "load")
        store.add_pending_node(EID, "load")
        state = store.mark_node_completed(EID, "load")
        assert state.current_node == "load"
        assert state.completed_nodes == ("load",)
        assert state.pending_nodes == ()

    def test_mark_completed_is_idempotent(self, store):
        first = store.mark_node_completed(EID, "load")
        second = store.mark_node_completed(EID, "load")
        assert second.version == first.version
        assert second.completed_nodes == ("load",)

    def test_remove_pending(self, store):
        store.add_pending_node(EID, "a")
        store.add_pending_node(EID, "a")
        assert store.get_current_state(EID).pending_nodes == ("a",)
        assert store.remove_pending_node(EID, "a").pending_nodes == ()

    def test_can_proceed(self, store):
        store.mark_node_completed(EID, "a")
        assert store.can_proceed_to_node(EID, "c", [])
        assert store.can_proceed_to_node(EID, "c", ["a"])
        assert not store.can_proceed_to_node(EID, "c", ["a", "b"])
        assert not store.can_proceed_to_node("nope", "c", ["a"])


class TestHistoryAndSnapshots:
    def test_history_most_recent_first(self, store):
        store.update_state(EID, {"n": 1})
        store.update_state(EID, {"n": 2})
        history = store.get_state_history(EID)
        assert [s.version for s in history] == [3, 2, 1]
        assert [s.version for s in store.get_state_history(EID, limit=2)] == [3, 2]

    def test_state_at_version(self, store):
        store.update_state(EID, {"n": 1})
        assert store.get_state_at_version(EID, 1).data["status"] == Value.of("running")
        assert store.get_state_at_version(EID, 99) is None

    def test_snapshot_and_restore(self, store):
        store.set_variable(EID, "rows", 42)
        version = store.create_snapshot(EID)
        store.set_variable(EID, "rows", 0)

        restored = store.restore_from_snapshot(EID, version)
        assert restored.variables["rows"] == Value.of(42)
        assert restored.restored_from_version == version
        assert restored.restored_at is not None
        assert not restored.is_snapshot
        assert restored.version > version
        assert store.get_state_at_version(EID, version).is_snapshot

    def test_snapshot_does_not_replace_current(self, store):
        current = store.get_current_state(EID)
        store.create_snapshot(EID)
        assert store.get_current_state(EID) == current

    def test_restore_requires_snapshot(self, store):
        with pytest.raises(StateNotFoundError):
            store.restore_from_snapshot(EID, 1)
        with pytest.raises(StateNotFoundError):
            store.restore_from_snapshot(EID, 42)


class TestCaching:
    def test_reads_are_cached(self, repository):
        cache = InMemoryCache()
        store = ExecutionStateStore(repository, cache=cache)
        store.initialize_state(EID)
        store.get_current_state(EID)
        assert cache.stats()["hits"] >= 1

    def test_invalidate_reloads_from_repository(self, store, repository):
        store.invalidate(EID)
        assert not store.cache.exists(EID)
        assert store.get_current_state(EID) == repository.load_current(EID)

    def test_invalidate_waits_for_write_in_flight(self):
        repository = GatedRepository()
        store = ExecutionStateStore(repository)
        store.initialize_state(EID)
        repository.gate_next = True

        first = threading.Thread(target=store.set_variable, args=(EID, "a", 1))
        first.start()
        assert repository.entered.wait(timeout=2)

        def invalidate_then_write():
            store.invalidate(EID)
            store.set_variable(EID, "b", 2)

        second = threading.Thread(target=invalidate_then_write)
        second.start()
        second.join(timeout=0.2)
        assert second.is_alive()

        repository.release.set()
        first.join(timeout=2)
        second.join(timeout=2)

        state = store.get_current_state(EID)
        assert state.version == 3
        assert set(state.variables) == {"a", "b"}


class TestFailures:
    def test_save_failure_raises_and_keeps_cache(self, monkeypatch):
        repository = InMemoryStateRepository()
        store = ExecutionStateStore(repository)
        store.initialize_state(EID, {"status": "running"})

        def broken_save(state):
            raise OSError("disk full")

        monkeypatch.setattr(repository, "save", broken_save)

        with pytest.raises(StateStoreError) as exc_info:
            store.update_state(EID, {"status": "done"})
        assert isinstance(exc_info.value.cause, OSError)
        assert store.get_current_state(EID).data["status"] == Value.of("running")

    def test_initialize_failure(self):
        store = ExecutionStateStore(BrokenRepository())
        with pytest.raises(StateStoreError):
            store.initialize_state(EID)
        assert store.get_current_state(EID) is None
