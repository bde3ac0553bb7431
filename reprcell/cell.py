"""
reprcell — Invariant Cell

A cell owns a value and a predicate over it. Shared access goes through
ReadView, exclusive access through WriteGuard, and releasing a WriteGuard
re-runs the predicate before anyone else can see the value.

Violation handling is fixed per cell:
  ROLLBACK  the guard snapshots the value (copy.deepcopy) on acquisition and
            restores it when the predicate fails. Generation does not move.
  POISON    the failing value stays; every later read/write raises Poisoned
            until reset() installs a value that passes.
"""

from __future__ import annotations

import copy
import threading
from types import TracebackType
from typing import Any, Callable, Generic, TypeVar

import structlog

from reprcell.config import CellConfig
from reprcell.errors import (
    ConstructionViolation,
    InvariantViolation,
    NonDeterministicInvariant,
    Poisoned,
    ReentrantAccessError,
    ReprCellError,
)
from reprcell.locking import ReadWriteLock
from reprcell.primitives.common import new_id
from reprcell.types import ViolationPolicy

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")

_UNSET: Any = object()


class InvariantCell(Generic[T]):
    """
    Wraps a value and keeps its representation invariant.

    Construction fails with ConstructionViolation if the initial value does
    not satisfy ``predicate``; there is no other way to build a cell.
    """

    def __init__(
        self,
        value: T,
        predicate: Callable[[T], bool],
        *,
        policy: ViolationPolicy | str | None = None,
        message: str | None = None,
        config: CellConfig | None = None,
    ) -> None:
        self._config = config or CellConfig()
        self._predicate = predicate
        self._policy = ViolationPolicy(policy) if policy is not None else self._config.policy
        self._message = message if message is not None else self._config.violation_message

        self._lock = ReadWriteLock()
        # Guards generation and poison flag; never held while the predicate runs.
        self._state_lock = threading.Lock()
        self._value: T = value
        self._generation: int = 0
        self._poisoned: bool = False
        self._commit_listeners: list[Callable[[int, T], None]] = []

        self._cell_id = new_id()
        self._logger = logger.bind(component="invariant_cell", cell_id=self._cell_id)

        if not self.evaluate(value):
            self._logger.warning("construction_rejected", message=self._message)
            raise ConstructionViolation(self._message, value)

    # ─── Properties ──────────────────────────────────────────────────

    @property
    def cell_id(self) -> str:
        return self._cell_id

    @property
    def generation(self) -> int:
        """Committed exclusive-access sessions so far."""
        return self._generation

    @property
    def poisoned(self) -> bool:
        return self._poisoned

    @property
    def policy(self) -> ViolationPolicy:
        return self._policy

    @property
    def predicate(self) -> Callable[[T], bool]:
        return self._predicate

    @property
    def message(self) -> str:
        return self._message

    @property
    def config(self) -> CellConfig:
        return self._config

    # ─── Access ──────────────────────────────────────────────────────

    def read(self, timeout: float | None = None) -> ReadView[T]:
        """
        Acquire shared access. Blocks while a WriteGuard is live.

        The predicate is not re-run: it held when the last session committed.
        """
        self._check_access()
        self._lock.acquire_read(timeout)
        if self._poisoned:
            self._lock.release_read()
            raise Poisoned(self._cell_id)
        return ReadView(self)

    def write(self, timeout: float | None = None) -> WriteGuard[T]:
        """Acquire exclusive access. The predicate runs when the guard is released."""
        return self._write(timeout, validate=True)

    def get(self, timeout: float | None = None) -> T:
        """Return the current value through a short-lived ReadView."""
        with self.read(timeout) as view:
            return view.value

    def mutate(self, fn: Callable[[T], R], timeout: float | None = None) -> R:
        """Run ``fn`` on the value inside one exclusive session and return its result."""
        with self.write(timeout) as guard:
            return fn(guard.value)

    def reset(self, value: T, timeout: float | None = None) -> None:
        """
        Install ``value`` and clear poisoning.

        The new value must satisfy the predicate; if it does not, the cell keeps
        its current state and InvariantViolation is raised. A successful reset
        counts as a committed session.
        """
        self._check_reentry()
        self._lock.acquire_write(timeout)
        try:
            if not self.evaluate(value):
                raise InvariantViolation(self._message, value, self._generation + 1)
            self._value = value
            with self._state_lock:
                was_poisoned = self._poisoned
                self._poisoned = False
                self._generation += 1
            self._logger.info(
                "cell_reset",
                generation=self._generation,
                was_poisoned=was_poisoned,
            )
            self._notify_commit(self._generation)
        finally:
            self._lock.release_write()

    def into_inner(self, timeout: float | None = None) -> T:
        """Return the wrapped value once every outstanding guard is released."""
        self._check_access()
        self._lock.acquire_write(timeout)
        try:
            if self._poisoned:
                raise Poisoned(self._cell_id)
            return self._value
        finally:
            self._lock.release_write()

    def evaluate(self, value: T) -> bool:
        """
        Run the predicate against ``value``.

        With ``determinism_checks`` configured, the predicate is re-run that
        many times and must answer the same way every time.
        """
        result = bool(self._predicate(value))
        for _ in range(self._config.determinism_checks):
            if bool(self._predicate(value)) != result:
                self._logger.error("non_deterministic_invariant")
                raise NonDeterministicInvariant(
                    "Invariants should be deterministic! "
                    "The predicate for this cell returned different answers for the same value."
                )
        return result

    def clone(self) -> InvariantCell[T]:
        """An independent cell holding a deep copy of the current value."""
        return InvariantCell(
            copy.deepcopy(self.get()),
            self._predicate,
            policy=self._policy,
            message=self._message,
            config=self._config,
        )

    # ─── Session Internals ───────────────────────────────────────────

    def _write(self, timeout: float | None, *, validate: bool) -> WriteGuard[T]:
        self._check_access()
        self._lock.acquire_write(timeout)
        try:
            if self._poisoned:
                raise Poisoned(self._cell_id)
            snapshot = _UNSET
            if validate and self._policy == ViolationPolicy.ROLLBACK:
                snapshot = copy.deepcopy(self._value)
        except BaseException:
            self._lock.release_write()
            raise
        return WriteGuard(self, snapshot, validate=validate)

    def _finish_session(self, snapshot: Any, body_error: BaseException | None) -> None:
        """Validate the post-mutation value; commit or apply the violation policy."""
        value = self._value
        try:
            ok = self.evaluate(value)
        except Exception:
            self._reject(snapshot)
            raise

        if ok:
            self._commit()
            return

        attempted = self._generation + 1
        self._reject(snapshot)
        violation = InvariantViolation(self._message, value, attempted)
        if body_error is not None:
            raise violation from body_error
        raise violation

    def _commit(self) -> int:
        with self._state_lock:
            self._generation += 1
            generation = self._generation
        self._logger.debug("cell_committed", generation=generation)
        self._notify_commit(generation)
        return generation

    def _add_commit_listener(self, listener: Callable[[int, T], None]) -> None:
        """Call ``listener(generation, value)`` after every committed session."""
        self._commit_listeners.append(listener)

    def _notify_commit(self, generation: int) -> None:
        # Runs with the write lock still held, so the value is the committed one.
        for listener in self._commit_listeners:
            listener(generation, self._value)

    def _reject(self, snapshot: Any) -> None:
        if self._policy == ViolationPolicy.ROLLBACK and snapshot is not _UNSET:
            self._value = snapshot
            self._logger.warning(
                "invariant_violated",
                policy=self._policy,
                action="rolled_back",
                generation=self._generation,
            )
            return
        with self._state_lock:
            self._poisoned = True
        self._logger.warning(
            "invariant_violated",
            policy=self._policy,
            action="poisoned",
            generation=self._generation,
        )

    def _poison_if_current(self, generation: int) -> bool:
        """Poison the cell if ``generation`` is still the live one."""
        with self._state_lock:
            if self._generation != generation:
                return False
            self._poisoned = True
        self._logger.warning("invariant_violated", action="poisoned", generation=generation)
        return True

    def _check_access(self) -> None:
        self._check_reentry()
        if self._poisoned:
            raise Poisoned(self._cell_id)

    def _check_reentry(self) -> None:
        if self._lock.writer_ident == threading.get_ident():
            raise ReentrantAccessError(
                f"cell {self._cell_id} is already write-locked by this thread"
            )

    # ─── Dunder ──────────────────────────────────────────────────────

    def __copy__(self) -> InvariantCell[T]:
        return self.clone()

    def __deepcopy__(self, memo: dict[int, Any]) -> InvariantCell[T]:
        return self.clone()

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, InvariantCell):
            return NotImplemented
        return bool(self.get() == other.get())

    def __repr__(self) -> str:
        if self._poisoned:
            return f"InvariantCell(<poisoned>, generation={self._generation})"
        return f"InvariantCell({self._value!r}, generation={self._generation})"


class ReadView(Generic[T]):
    """
    Shared, read-only access to a cell's value.

    Holding a view blocks writers. Release it with ``release()`` or by leaving
    the ``with`` block.
    """

    __slots__ = ("_cell", "_released")

    def __init__(self, cell: InvariantCell[T]) -> None:
        self._cell = cell
        self._released = False

    @property
    def value(self) -> T:
        if self._released:
            raise ReprCellError("ReadView used after release")
        return self._cell._value

    @property
    def generation(self) -> int:
        return self._cell.generation

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._cell._lock.release_read()

    def __enter__(self) -> ReadView[T]:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class WriteGuard(Generic[T]):
    """
    Exclusive, mutable access to a cell's value.

    ``value`` may be mutated in place or reassigned. Releasing the guard, on
    normal exit or because the ``with`` body raised, re-validates the value.
    """

    __slots__ = ("_cell", "_snapshot", "_validate", "_released")

    def __init__(self, cell: InvariantCell[T], snapshot: Any, *, validate: bool) -> None:
        self._cell = cell
        self._snapshot = snapshot
        self._validate = validate
        self._released = False

    @property
    def value(self) -> T:
        if self._released:
            raise ReprCellError("WriteGuard used after release")
        return self._cell._value

    @value.setter
    def value(self, new: T) -> None:
        if self._released:
            raise ReprCellError("WriteGuard used after release")
        self._cell._value = new

    @property
    def released(self) -> bool:
        return self._released

    def release(self, body_error: BaseException | None = None) -> int:
        """
        End the session. Returns the cell's generation afterwards.

        Raises InvariantViolation if the value fails the predicate.
        """
        if self._released:
            return self._cell.generation
        self._released = True
        cell = self._cell
        try:
            if self._validate:
                cell._finish_session(self._snapshot, body_error)
            else:
                cell._commit()
            return cell.generation
        finally:
            self._snapshot = None
            cell._lock.release_write()

    def __enter__(self) -> WriteGuard[T]:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release(exc)
