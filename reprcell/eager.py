"""
reprcell — Eager Validation Coordinator

Moves invariant evaluation off the write path. ``write_eager`` mutates under
the cell's exclusive lock, commits the new generation without running the
predicate, and hands a snapshot of the value to a worker pool. The caller
gets a WriteHandle back immediately and may poll it, block on it, await it
or ignore it.

Every background task is stamped with the generation it validates. A result
is written to the cache only if that generation is still the live one;
otherwise it is discarded and the handle reports SUPERSEDED. A violation for
the live generation poisons the cell, since other threads may already have
seen the unverified value and rolling back would rewrite what they observed.

Registered derived reads (``register`` / ``eager``) are recomputed in the
background after every committed session, eager or not, under the same
stamping rule.
"""

from __future__ import annotations

import asyncio
import copy
import threading
from concurrent.futures import CancelledError, Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from types import TracebackType
from typing import TYPE_CHECKING, Any, Callable, Generic, TypeVar

import structlog

from reprcell.config import EagerConfig
from reprcell.errors import InvariantViolation, StaleValidation, ValidationAborted
from reprcell.types import CacheEntry, ReadStrategy, ValidationOutcome, ValidationReport

if TYPE_CHECKING:
    from reprcell.cache import InvariantCache

logger = structlog.get_logger()

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class PendingValidation:
    """The one in-flight background task for a generation."""

    submitted_generation: int
    future: Future[Any]


@dataclass(frozen=True)
class WriteHandle:
    """Reference to the background validation of one eager write."""

    generation: int
    future: Future[ValidationReport]
    cell_id: str


class ValidationCoordinator(Generic[T]):
    """
    Background invariant validation for one InvariantCache.

    Owns a ThreadPoolExecutor unless an executor is passed in; an injected
    executor is left running on ``shutdown()``.
    """

    def __init__(
        self,
        cache: InvariantCache[T],
        *,
        executor: Executor | None = None,
        config: EagerConfig | None = None,
    ) -> None:
        self._cache = cache
        cache._attach_coordinator(self)
        self._config = config or EagerConfig()
        self._owns_executor = executor is None
        self._executor: Executor = executor or ThreadPoolExecutor(
            max_workers=self._config.max_workers,
            thread_name_prefix=self._config.thread_name_prefix,
        )
        self._mutex = threading.Lock()
        self._pending: PendingValidation | None = None
        self._eager_reads: dict[Callable[[T], Any], PendingValidation | None] = {}
        self._closed = False
        self._logger = logger.bind(
            component="validation_coordinator",
            cell_id=cache.cell.cell_id,
        )
        cache.cell._add_commit_listener(self._on_commit)

    @property
    def cache(self) -> InvariantCache[T]:
        return self._cache

    @property
    def pending(self) -> PendingValidation | None:
        with self._mutex:
            return self._pending

    # ─── Writes ──────────────────────────────────────────────────────

    def write_eager(
        self,
        mutator: Callable[[T], T | None],
        timeout: float | None = None,
    ) -> WriteHandle:
        """
        Apply ``mutator`` under the exclusive lock and validate in the background.

        A non-None return from ``mutator`` replaces the value. If ``mutator``
        raises, the session still commits and is still validated before the
        exception propagates, because the value may already be partly changed.
        """
        cell = self._cache.cell
        guard = cell._write(timeout, validate=False)
        body_error: BaseException | None = None
        try:
            try:
                replacement = mutator(guard.value)
                if replacement is not None:
                    guard.value = replacement
            except BaseException as exc:
                body_error = exc
            snapshot = copy.deepcopy(guard.value)
        finally:
            generation = guard.release()

        handle = self._submit_validation(generation, snapshot)
        if body_error is not None:
            raise body_error
        return handle

    # ─── Handles ─────────────────────────────────────────────────────

    def poll_validation(self, handle: WriteHandle) -> ValidationOutcome:
        """Current state of ``handle``. Never blocks."""
        future = handle.future
        if future.cancelled():
            return ValidationOutcome.SUPERSEDED
        if not future.done():
            return ValidationOutcome.PENDING
        if future.exception() is not None:
            return ValidationOutcome.ABORTED
        return future.result().outcome

    def result(self, handle: WriteHandle, timeout: float | None = None) -> ValidationReport:
        """
        Block until ``handle`` resolves.

        Raises InvariantViolation for a violation and ValidationAborted when the
        worker pool failed. A superseded handle returns its SUPERSEDED report.
        """
        try:
            report = handle.future.result(timeout)
        except CancelledError:
            return _superseded(handle.generation)
        except ValidationAborted:
            raise
        except TimeoutError:
            raise
        except Exception as exc:
            raise ValidationAborted(f"validation of generation {handle.generation} failed") from exc
        return _raise_for(report, self._cache.cell.message)

    async def wait(self, handle: WriteHandle) -> ValidationReport:
        """Awaitable form of ``result()``."""
        try:
            report = await asyncio.wrap_future(handle.future)
        except asyncio.CancelledError:
            if handle.future.cancelled():
                return _superseded(handle.generation)
            raise
        except ValidationAborted:
            raise
        except Exception as exc:
            raise ValidationAborted(f"validation of generation {handle.generation} failed") from exc
        return _raise_for(report, self._cache.cell.message)

    def report_for_read(self, generation: int) -> ValidationReport | None:
        """
        Resolve the pending validation for ``generation`` on behalf of a cached read.

        Returns None when the reader has to validate inline: no task for that
        generation, INLINE strategy, or the task was superseded, aborted or
        timed out.
        """
        if self._config.read_strategy == ReadStrategy.INLINE:
            return None
        with self._mutex:
            pending = self._pending
        if pending is None or pending.submitted_generation != generation:
            return None
        try:
            report: ValidationReport = pending.future.result(self._config.wait_timeout_s)
        except CancelledError:
            return None
        except (TimeoutError, ValidationAborted) as exc:
            self._logger.warning(
                "pending_validation_unusable",
                generation=generation,
                error=str(exc),
            )
            return None
        if report.outcome == ValidationOutcome.SUPERSEDED:
            return None
        return report

    # ─── Eager Derived Reads ─────────────────────────────────────────

    def register(self, read_fn: Callable[[T], Any]) -> None:
        """Keep ``read_fn`` recomputed in the background after every committed session."""
        with self._mutex:
            if read_fn in self._eager_reads:
                return
        with self._cache.read() as view:
            generation = view.generation
            snapshot = copy.deepcopy(view.value)
        with self._mutex:
            if read_fn in self._eager_reads:
                return
            self._eager_reads[read_fn] = None
        self._submit_read(read_fn, generation, snapshot)

    def unregister(self, read_fn: Callable[[T], Any]) -> bool:
        with self._mutex:
            if read_fn not in self._eager_reads:
                return False
            pending = self._eager_reads.pop(read_fn)
        if pending is not None:
            pending.future.cancel()
        return True

    async def eager(self, read_fn: Callable[[T], R]) -> R:
        """
        Value of ``read_fn`` for the live generation, computed in the background.

        Registers ``read_fn`` on first use. Exceptions raised by ``read_fn``
        propagate to the awaiting caller.
        """
        await asyncio.to_thread(self.register, read_fn)
        generation = self._cache.generation
        entry = self._cache.derived_entry(read_fn)
        if entry is not None:
            return entry.result  # type: ignore[no-any-return]

        with self._mutex:
            pending = self._eager_reads.get(read_fn)
        if pending is not None and pending.submitted_generation == generation:
            try:
                computed: CacheEntry = await asyncio.wrap_future(pending.future)
                return computed.result  # type: ignore[no-any-return]
            except StaleValidation:
                pass
            except asyncio.CancelledError:
                if not pending.future.cancelled():
                    raise
        return await asyncio.to_thread(self._cache.lazy, read_fn)

    # ─── Lifecycle ───────────────────────────────────────────────────

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        """Stop accepting work. Later eager writes get ABORTED handles."""
        self._closed = True
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=cancel_futures)
        self._logger.info("validation_coordinator_shutdown")

    def __enter__(self) -> ValidationCoordinator[T]:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()

    # ─── Internals ───────────────────────────────────────────────────

    def _submit_validation(self, generation: int, snapshot: T) -> WriteHandle:
        cell_id = self._cache.cell.cell_id
        with self._mutex:
            current = self._pending
            if current is not None and current.submitted_generation > generation:
                # A later writer already submitted; this result could never be stored.
                future: Future[ValidationReport] = Future()
                future.set_result(_superseded(generation))
                return WriteHandle(generation, future, cell_id)

            future = self._schedule(self._validate, generation, snapshot)
            self._pending = PendingValidation(generation, future)

        if current is not None and not current.future.done():
            if current.future.cancel():
                self._logger.debug(
                    "validation_superseded",
                    generation=current.submitted_generation,
                    by=generation,
                )
        return WriteHandle(generation, future, cell_id)

    def _on_commit(self, generation: int, value: T) -> None:
        with self._mutex:
            if self._closed or not self._eager_reads:
                return
        self._submit_eager_reads(generation, copy.deepcopy(value))

    def _submit_eager_reads(self, generation: int, snapshot: T) -> None:
        with self._mutex:
            read_fns = list(self._eager_reads)
        for read_fn in read_fns:
            self._submit_read(read_fn, generation, snapshot)

    def _submit_read(self, read_fn: Callable[[T], Any], generation: int, snapshot: T) -> None:
        with self._mutex:
            if read_fn not in self._eager_reads:
                return
            current = self._eager_reads[read_fn]
            if current is not None and current.submitted_generation > generation:
                return
            future = self._schedule(self._compute_read, read_fn, generation, snapshot)
            self._eager_reads[read_fn] = PendingValidation(generation, future)
        if current is not None:
            current.future.cancel()

    def _schedule(self, fn: Callable[..., Any], *args: Any) -> Future[Any]:
        reason = "coordinator shut down"
        if not self._closed:
            try:
                return self._executor.submit(fn, *args)
            except RuntimeError as exc:
                reason = str(exc)
        self._logger.error("validation_not_scheduled", reason=reason)
        future: Future[Any] = Future()
        future.set_exception(ValidationAborted(f"background validation unavailable: {reason}"))
        return future

    def _validate(self, generation: int, snapshot: T) -> ValidationReport:
        """Worker-side: evaluate the snapshot and publish if still current."""
        cell = self._cache.cell
        error: BaseException | None = None
        try:
            self._check_current(generation)
            try:
                ok = self._cache.evaluate(snapshot)
            except Exception as exc:
                ok = False
                error = exc
            self._publish(generation, ok)
        except StaleValidation as stale:
            self._logger.debug(
                "validation_discarded",
                generation=stale.submitted,
                current=stale.current,
            )
            return _superseded(generation)

        if not ok:
            self._logger.warning("eager_invariant_violated", generation=generation)
            return ValidationReport(
                generation=generation,
                outcome=ValidationOutcome.VIOLATION,
                message=cell.message,
                value=snapshot,
                error=error,
            )
        return ValidationReport(generation=generation, outcome=ValidationOutcome.VALID)

    def _publish(self, generation: int, ok: bool) -> None:
        entry = CacheEntry(validated_generation=generation, result=ok)
        if not self._cache.store_invariant(entry):
            raise StaleValidation(generation, self._cache.generation)
        if not ok and not self._cache.cell._poison_if_current(generation):
            raise StaleValidation(generation, self._cache.generation)

    def _compute_read(
        self,
        read_fn: Callable[[T], Any],
        generation: int,
        snapshot: T,
    ) -> CacheEntry:
        self._check_current(generation)
        entry = CacheEntry(validated_generation=generation, result=read_fn(snapshot))
        if not self._cache.store_derived(read_fn, entry):
            raise StaleValidation(generation, self._cache.generation)
        return entry

    def _check_current(self, generation: int) -> None:
        current = self._cache.generation
        if current != generation:
            raise StaleValidation(generation, current)


def _superseded(generation: int) -> ValidationReport:
    return ValidationReport(generation=generation, outcome=ValidationOutcome.SUPERSEDED)


def _raise_for(report: ValidationReport, message: str) -> ValidationReport:
    if report.outcome == ValidationOutcome.VIOLATION:
        raise InvariantViolation(
            report.message or message,
            report.value,
            report.generation,
        ) from report.error
    return report
