"""
reprcell — Invariant Cache

Memoises invariant checks and derived reads by mutation generation.

A CacheEntry is trusted only while its generation equals the cell's live
generation. Commits never touch the cache; the generation bump alone makes
old entries stale and the next read recomputes (lazy memoisation).

Derived reads are keyed by the read function object, so pass a named
function rather than a fresh lambda on every call.
"""

from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar

import structlog

from reprcell.cell import InvariantCell, ReadView, WriteGuard
from reprcell.config import CellConfig
from reprcell.errors import InvariantViolation, ReprCellError
from reprcell.types import CacheEntry, CacheStats, ValidationOutcome, ViolationPolicy

if TYPE_CHECKING:
    from reprcell.eager import ValidationCoordinator

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")


class InvariantCache(Generic[T]):
    """
    An InvariantCell plus a generation-stamped memo of its invariant check
    and of any derived reads requested through ``lazy()``.
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
        self._attach(
            InvariantCell(value, predicate, policy=policy, message=message, config=config)
        )

    @classmethod
    def from_cell(cls, cell: InvariantCell[T]) -> InvariantCache[T]:
        """Wrap an existing cell. The cell must not be shared with another cache."""
        cache = cls.__new__(cls)
        cache._attach(cell)
        return cache

    def _attach(self, cell: InvariantCell[T]) -> None:
        self._cell = cell
        self._mutex = threading.Lock()
        self._entry: CacheEntry | None = None
        self._derived: dict[Callable[[T], Any], CacheEntry] = {}
        self._stats = CacheStats()
        self._coordinator: ValidationCoordinator[T] | None = None
        self._logger = logger.bind(component="invariant_cache", cell_id=cell.cell_id)

    # ─── Delegation ──────────────────────────────────────────────────

    @property
    def cell(self) -> InvariantCell[T]:
        return self._cell

    @property
    def generation(self) -> int:
        return self._cell.generation

    @property
    def poisoned(self) -> bool:
        return self._cell.poisoned

    @property
    def coordinator(self) -> ValidationCoordinator[T] | None:
        return self._coordinator

    def read(self, timeout: float | None = None) -> ReadView[T]:
        return self._cell.read(timeout)

    def write(self, timeout: float | None = None) -> WriteGuard[T]:
        return self._cell.write(timeout)

    def get(self, timeout: float | None = None) -> T:
        return self._cell.get(timeout)

    def mutate(self, fn: Callable[[T], R], timeout: float | None = None) -> R:
        return self._cell.mutate(fn, timeout)

    def reset(self, value: T, timeout: float | None = None) -> None:
        self._cell.reset(value, timeout)

    # ─── Cached Reads ────────────────────────────────────────────────

    def read_cached(self, timeout: float | None = None) -> ReadView[T]:
        """
        Shared access backed by a validated-generation check.

        The predicate runs only when no entry exists for the live generation.
        With an eager coordinator attached, a generation whose background
        validation is still running is never reported valid early: the read
        waits for it or validates inline.
        """
        view = self._cell.read(timeout)
        try:
            self._ensure_valid(view)
        except BaseException:
            view.release()
            raise
        return view

    def lazy(self, read_fn: Callable[[T], R], timeout: float | None = None) -> R:
        """
        Return ``read_fn(value)``, recomputing only after the generation moves.

        ``read_fn`` must be free of side effects.
        """
        with self._cell.read(timeout) as view:
            generation = view.generation
            with self._mutex:
                entry = self._derived.get(read_fn)
                if entry is not None and entry.is_valid_for(generation):
                    self._stats.hits += 1
                    return entry.result
                self._stats.misses += 1
            result = read_fn(view.value)
            self.store_derived(read_fn, CacheEntry(validated_generation=generation, result=result))
            return result

    def unregister(self, read_fn: Callable[[T], Any]) -> bool:
        """Drop the memo for ``read_fn``. True if one existed."""
        with self._mutex:
            removed = self._derived.pop(read_fn, None) is not None
        if self._coordinator is not None:
            removed = self._coordinator.unregister(read_fn) or removed
        return removed

    def stats(self) -> CacheStats:
        with self._mutex:
            stats = self._stats.model_copy()
            stats.derived_entries = len(self._derived)
        return stats

    # ─── Entry Maintenance ───────────────────────────────────────────

    def entry(self) -> CacheEntry | None:
        """The invariant entry, if it is valid for the live generation."""
        with self._mutex:
            entry = self._entry
        if entry is not None and entry.is_valid_for(self._cell.generation):
            return entry
        return None

    def evaluate(self, value: T) -> bool:
        """Run the cell's predicate and count the evaluation."""
        with self._mutex:
            self._stats.predicate_evaluations += 1
        return self._cell.evaluate(value)

    def store_invariant(self, entry: CacheEntry) -> bool:
        """
        Record an invariant result. Refused when the entry's generation is not
        the live one or an entry for a newer generation is already held.
        """
        with self._mutex:
            if not self._accepts(self._entry, entry):
                return False
            self._entry = entry
        return True

    def store_derived(self, read_fn: Callable[[T], Any], entry: CacheEntry) -> bool:
        with self._mutex:
            if not self._accepts(self._derived.get(read_fn), entry):
                return False
            self._derived[read_fn] = entry
        return True

    def derived_entry(self, read_fn: Callable[[T], Any]) -> CacheEntry | None:
        with self._mutex:
            entry = self._derived.get(read_fn)
        if entry is not None and entry.is_valid_for(self._cell.generation):
            return entry
        return None

    def _accepts(self, current: CacheEntry | None, entry: CacheEntry) -> bool:
        if entry.validated_generation != self._cell.generation:
            return False
        return current is None or current.validated_generation <= entry.validated_generation

    def _attach_coordinator(self, coordinator: ValidationCoordinator[T]) -> None:
        if self._coordinator is not None and self._coordinator is not coordinator:
            raise ReprCellError("cache already has a validation coordinator")
        self._coordinator = coordinator

    def _ensure_valid(self, view: ReadView[T]) -> None:
        generation = view.generation
        with self._mutex:
            entry = self._entry
            if entry is not None and entry.is_valid_for(generation):
                self._stats.hits += 1
                hit = True
            else:
                hit = False
        if hit:
            if not entry.result:
                raise InvariantViolation(self._cell.message, view.value, generation)
            return

        if self._coordinator is not None:
            report = self._coordinator.report_for_read(generation)
            if report is not None and report.outcome == ValidationOutcome.VALID:
                return
            if report is not None and report.outcome == ValidationOutcome.VIOLATION:
                raise InvariantViolation(self._cell.message, report.value, generation)

        with self._mutex:
            self._stats.misses += 1
        ok = self.evaluate(view.value)
        self.store_invariant(CacheEntry(validated_generation=generation, result=ok))
        if not ok:
            # The value was committed without a check (eager write) or was
            # mutated behind the cell's back; either way it must not be trusted.
            self._cell._poison_if_current(generation)
            self._logger.warning("cached_read_rejected", generation=generation)
            raise InvariantViolation(self._cell.message, view.value, generation)
        self._logger.debug("invariant_cached", generation=generation)
