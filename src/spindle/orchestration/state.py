"""Execution state store — versioned, cached, single-writer-per-execution.

The store is the read/write path for :class:`ExecutionState`. Every mutating
operation:

1. takes the execution's lock (writes for one execution are serialized),
2. reads the current state (cache first, then the repository),
3. builds a new immutable state with ``version = latest + 1``,
4. persists it, and only then updates the cache.

Reads are lock-free and served from the cache when possible. A repository
failure raises :class:`StateStoreError` and leaves the cache untouched, so a
caller never observes state that was not saved.

Snapshots are appended to history (``is_snapshot=True``) without replacing
the current state; ``restore_from_snapshot`` copies one back as the new
current state, stamped with ``restored_at``/``restored_from_version``.

Example::

    store = ExecutionStateStore(InMemoryStateRepository())
    store.initialize_state("exec-1", {"status": "running"})
    store.set_variable("exec-1", "rows", 42)
    store.get_variable("exec-1", "rows", ValueKind.STRING)   # "42"
    version = store.create_snapshot("exec-1")
    store.set_variable("exec-1", "rows", 0)
    store.restore_from_snapshot("exec-1", version)
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from dataclasses import replace
from typing import Any

from spindle.core.cache import InMemoryCache
from spindle.core.errors import SpindleError, StateNotFoundError, StateStoreError
from spindle.core.logging import get_logger
from spindle.core.settings import get_settings
from spindle.core.timestamps import utc_now
from spindle.core.values import Value, ValueKind, coerce, wrap_mapping
from spindle.orchestration.models import ExecutionState
from spindle.orchestration.persistence import StateRepository

logger = get_logger(__name__)


class ExecutionStateStore:
    """Read-through/write-through state store over a :class:`StateRepository`."""

    def __init__(
        self,
        repository: StateRepository,
        cache: InMemoryCache | None = None,
        history_limit: int | None = None,
    ):
        settings = get_settings()
        self._repository = repository
        self._cache = cache or InMemoryCache(
            max_size=settings.state_cache_max_size,
            default_ttl_seconds=settings.state_cache_ttl_seconds,
        )
        self._history_limit = history_limit or settings.state_history_limit
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @property
    def cache(self) -> InMemoryCache:
        return self._cache

    # =========================================================================
    # Internals
    # =========================================================================

    def _lock_for(self, execution_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(execution_id)
            if lock is None:
                lock = self._locks[execution_id] = threading.RLock()
            return lock

    def _load(self, execution_id: str) -> ExecutionState | None:
        cached = self._cache.get(execution_id)
        if cached is not None:
            return cached
        try:
            state = self._repository.load_current(execution_id)
        except SpindleError:
            raise
        except Exception as exc:
            raise StateStoreError(
                f"Failed to load state for {execution_id}", cause=exc
            ).with_context(execution_id=execution_id) from exc
        if state is not None:
            self._cache.set(execution_id, state)
        return state

    def _require(self, execution_id: str) -> ExecutionState:
        state = self._load(execution_id)
        if state is None:
            raise StateNotFoundError(
                f"No state for execution {execution_id}"
            ).with_context(execution_id=execution_id)
        return state

    def _next_version(self, execution_id: str) -> int:
        try:
            return self._repository.latest_version(execution_id) + 1
        except Exception as exc:
            raise StateStoreError(
                f"Failed to read state version for {execution_id}", cause=exc
            ).with_context(execution_id=execution_id) from exc

    def _persist(self, state: ExecutionState, **changes: Any) -> ExecutionState:
        """Stamp, save and cache a new current state (caller holds the lock)."""
        new_state = replace(
            state,
            version=self._next_version(state.execution_id),
            last_updated=utc_now(),
            is_snapshot=False,
            snapshot_created_at=None,
            **changes,
        )
        try:
            self._repository.save(new_state)
        except Exception as exc:
            raise StateStoreError(
                f"Failed to save state for {state.execution_id}", cause=exc
            ).with_context(execution_id=state.execution_id) from exc
        self._cache.set(state.execution_id, new_state)
        return new_state

    def _mutate(self, execution_id: str, **changes: Any) -> ExecutionState:
        with self._lock_for(execution_id):
            return self._persist(self._require(execution_id), **changes)

    # =========================================================================
    # Whole-state operations
    # =========================================================================

    def initialize_state(
        self,
        execution_id: str,
        initial: Mapping[str, Any] | None = None,
        variables: Mapping[str, Any] | None = None,
    ) -> ExecutionState:
        """Create (or reset) the state of an execution."""
        with self._lock_for(execution_id):
            state = ExecutionState(
                execution_id=execution_id,
                data=wrap_mapping(initial),
                variables=wrap_mapping(variables),
            )
            state = self._persist(state)
        logger.debug("state.initialized", execution_id=execution_id, version=state.version)
        return state

    def update_state(self, execution_id: str, partial: Mapping[str, Any]) -> ExecutionState:
        """Merge ``partial`` into the state's data; unspecified keys are kept."""
        with self._lock_for(execution_id):
            current = self._require(execution_id)
            merged = {**current.data, **wrap_mapping(partial)}
            return self._persist(current, data=merged)

    def get_current_state(self, execution_id: str) -> ExecutionState | None:
        return self._load(execution_id)

    def get_state_history(self, execution_id: str, limit: int | None = None) -> list[ExecutionState]:
        """Persisted versions, most recent first (snapshots included)."""
        try:
            return self._repository.history(execution_id, limit or self._history_limit)
        except Exception as exc:
            raise StateStoreError(
                f"Failed to load state history for {execution_id}", cause=exc
            ).with_context(execution_id=execution_id) from exc

    def get_state_at_version(self, execution_id: str, version: int) -> ExecutionState | None:
        try:
            return self._repository.load_version(execution_id, version)
        except Exception as exc:
            raise StateStoreError(
                f"Failed to load state version {version} for {execution_id}", cause=exc
            ).with_context(execution_id=execution_id) from exc

    def clear_state(self, execution_id: str) -> ExecutionState:
        """Persist an empty state (history is kept)."""
        with self._lock_for(execution_id):
            state = self._persist(ExecutionState(execution_id=execution_id))
        logger.info("state.cleared", execution_id=execution_id, version=state.version)
        return state

    def invalidate(self, execution_id: str) -> None:
        """Drop the cached state (storage is untouched).

        The per-execution lock is kept so later writers still serialize
        with any write in flight.
        """
        with self._lock_for(execution_id):
            self._cache.delete(execution_id)

    # =========================================================================
    # Variables
    # =========================================================================

    def set_variable(self, execution_id: str, key: str, value: Any) -> ExecutionState:
        with self._lock_for(execution_id):
            current = self._require(execution_id)
            variables = {**current.variables, key: Value.of(value)}
            return self._persist(current, variables=variables)

    def get_variable(
        self,
        execution_id: str,
        key: str,
        kind: ValueKind | None = None,
        default: Any = None,
    ) -> Any:
        """Return a variable, optionally coerced to ``kind``.

        Without ``kind`` the raw :class:`Value` is returned. Missing keys and
        unconvertible values yield ``default``.
        """
        state = self._load(execution_id)
        if state is None or key not in state.variables:
            return default
        value = state.variables[key]
        if kind is None:
            return value
        return coerce(value, kind, default)

    def remove_variable(self, execution_id: str, key: str) -> ExecutionState:
        with self._lock_for(execution_id):
            current = self._require(execution_id)
            if key not in current.variables:
                return current
            variables = {k: v for k, v in current.variables.items() if k != key}
            return self._persist(current, variables=variables)

    # =========================================================================
    # Node bookkeeping
    # =========================================================================

    def update_current_node(self, execution_id: str, node_id: str | None) -> ExecutionState:
        return self._mutate(execution_id, current_node=node_id)

    def mark_node_completed(self, execution_id: str, node_id: str) -> ExecutionState:
        """Add ``node_id`` to completed (no-op if present) and drop it from pending."""
        with self._lock_for(execution_id):
            current = self._require(execution_id)
            if node_id in current.completed_nodes and node_id not in current.pending_nodes:
                return current
            completed = current.completed_nodes
            if node_id not in completed:
                completed = completed + (node_id,)
            pending = tuple(n for n in current.pending_nodes if n != node_id)
            return self._persist(current, completed_nodes=completed, pending_nodes=pending)

    def add_pending_node(self, execution_id: str, node_id: str) -> ExecutionState:
        with self._lock_for(execution_id):
            current = self._require(execution_id)
            if node_id in current.pending_nodes or node_id in current.completed_nodes:
                return current
            return self._persist(current, pending_nodes=current.pending_nodes + (node_id,))

    def remove_pending_node(self, execution_id: str, node_id: str) -> ExecutionState:
        with self._lock_for(execution_id):
            current = self._require(execution_id)
            if node_id not in current.pending_nodes:
                return current
            pending = tuple(n for n in current.pending_nodes if n != node_id)
            return self._persist(current, pending_nodes=pending)

    def can_proceed_to_node(
        self,
        execution_id: str,
        node_id: str,
        dependencies: Iterable[str],
    ) -> bool:
        """True iff ``dependencies`` is empty or all of them are completed."""
        deps = set(dependencies)
        if not deps:
            return True
        state = self._load(execution_id)
        if state is None:
            return False
        return deps.issubset(state.completed_nodes)

    # =========================================================================
    # Snapshots
    # =========================================================================

    def create_snapshot(self, execution_id: str) -> int:
        """Persist a copy of the current state as a snapshot; returns its version."""
        with self._lock_for(execution_id):
            current = self._require(execution_id)
            now = utc_now()
            snapshot = replace(
                current,
                version=self._next_version(execution_id),
                is_snapshot=True,
                snapshot_created_at=now,
                last_updated=now,
            )
            try:
                self._repository.save_snapshot(snapshot)
            except SpindleError:
                raise
            except Exception as exc:
                raise StateStoreError(
                    f"Failed to save snapshot for {execution_id}", cause=exc
                ).with_context(execution_id=execution_id) from exc
        logger.info("state.snapshot_created", execution_id=execution_id, version=snapshot.version)
        return snapshot.version

    def restore_from_snapshot(self, execution_id: str, version: int) -> ExecutionState:
        """Make snapshot ``version`` the current state again.

        Raises:
            StateNotFoundError: If no snapshot with that version exists.
        """
        with self._lock_for(execution_id):
            snapshot = self.get_state_at_version(execution_id, version)
            if snapshot is None or not snapshot.is_snapshot:
                raise StateNotFoundError(
                    f"No snapshot version {version} for execution {execution_id}"
                ).with_context(execution_id=execution_id)
            restored = self._persist(
                snapshot,
                restored_at=utc_now(),
                restored_from_version=version,
            )
        logger.info(
            "state.restored",
            execution_id=execution_id,
            from_version=version,
            version=restored.version,
        )
        return restored
