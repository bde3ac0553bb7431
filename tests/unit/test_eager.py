"""
Tests for the eager ValidationCoordinator.

Covers:
  - Non-blocking writes and handle polling
  - Background violations poison the cell
  - Supersession: stale results are discarded, queued tasks cancelled
  - Scheduler failure surfaces as ABORTED / ValidationAborted
  - Cached reads never trust a generation whose validation is pending
  - Eager derived reads (register / eager / unregister)
"""

from __future__ import annotations

import asyncio
import contextlib
import threading
import time
from typing import Any
from unittest.mock import MagicMock

import pytest

from reprcell.cache import InvariantCache
from reprcell.config import EagerConfig
from reprcell.eager import ValidationCoordinator
from reprcell.errors import InvariantViolation, Poisoned, ReprCellError, ValidationAborted
from reprcell.types import ReadStrategy, ValidationOutcome


def _in_worker() -> bool:
    return threading.current_thread().name.startswith("reprcell-validate")


class Gate:
    """Predicate wrapper that parks worker-thread evaluations of 'slow' values."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def __call__(self, d: dict[str, Any]) -> bool:
        self.calls += 1
        if d.get("slow") and _in_worker():
            self.started.set()
            self.release.wait(timeout=10.0)
        return d["lo"] < d["hi"]


def _make(
    gate: Gate | None = None,
    **config: Any,
) -> tuple[InvariantCache[dict[str, Any]], ValidationCoordinator[dict[str, Any]]]:
    predicate = gate or (lambda d: d["lo"] < d["hi"])
    cache = InvariantCache({"lo": 1, "hi": 5, "slow": False}, predicate)
    coordinator = ValidationCoordinator(cache, config=EagerConfig(**config))
    return cache, coordinator


def _set(**fields: Any):
    def mutator(d: dict[str, Any]) -> None:
        d.update(fields)

    return mutator


def get_lo(d: dict[str, Any]) -> int:
    return d["lo"]


def get_lo_again(d: dict[str, Any]) -> int:
    return d["lo"]


# ─── Basic Flow ──────────────────────────────────────────────────


class TestWriteEager:
    def test_write_returns_handle_for_new_generation(self):
        cache, coordinator = _make()
        with coordinator:
            handle = coordinator.write_eager(_set(lo=3))
            assert handle.generation == 1
            assert cache.generation == 1
            report = coordinator.result(handle, timeout=5.0)
            assert report.outcome == ValidationOutcome.VALID
            assert coordinator.poll_validation(handle) == ValidationOutcome.VALID
            assert cache.entry().validated_generation == 1

    def test_poll_is_pending_while_task_runs(self):
        gate = Gate()
        cache, coordinator = _make(gate)
        with coordinator:
            handle = coordinator.write_eager(_set(slow=True))
            assert gate.started.wait(timeout=5.0)
            assert coordinator.poll_validation(handle) == ValidationOutcome.PENDING
            gate.release.set()
            coordinator.result(handle, timeout=5.0)
            assert coordinator.poll_validation(handle) == ValidationOutcome.VALID

    def test_mutator_return_value_replaces(self):
        cache = InvariantCache(1, lambda n: n > 0)
        with ValidationCoordinator(cache) as coordinator:
            handle = coordinator.write_eager(lambda n: n + 41)
            coordinator.result(handle, timeout=5.0)
            assert cache.get() == 42

    def test_background_violation_poisons(self):
        cache, coordinator = _make()
        with coordinator:
            handle = coordinator.write_eager(_set(lo=10))
            with pytest.raises(InvariantViolation) as info:
                coordinator.result(handle, timeout=5.0)
            assert info.value.generation == 1
            assert info.value.value["lo"] == 10
            assert coordinator.poll_validation(handle) == ValidationOutcome.VIOLATION
            assert cache.poisoned
            with pytest.raises(Poisoned):
                coordinator.write_eager(_set(lo=0))

    def test_predicate_error_reported_as_violation(self):
        def explode(d: dict[str, Any]) -> bool:
            if d["lo"] == 2 and _in_worker():
                raise RuntimeError("random failure")
            return d["lo"] < d["hi"]

        cache = InvariantCache({"lo": 1, "hi": 5}, explode)
        with ValidationCoordinator(cache) as coordinator:
            handle = coordinator.write_eager(_set(lo=2))
            with pytest.raises(InvariantViolation) as info:
                coordinator.result(handle, timeout=5.0)
            assert isinstance(info.value.__cause__, RuntimeError)

    def test_mutator_error_still_commits_and_validates(self):
        cache, coordinator = _make()
        with coordinator:

            def half_done(d: dict[str, Any]) -> None:
                d["hi"] = 9
                raise ValueError("interrupted")

            with pytest.raises(ValueError):
                coordinator.write_eager(half_done)
            assert cache.generation == 1
            with cache.read_cached(timeout=5.0) as view:
                assert view.value["hi"] == 9

    def test_second_coordinator_rejected(self):
        cache, coordinator = _make()
        with coordinator:
            with pytest.raises(ReprCellError):
                ValidationCoordinator(cache)


# ─── Supersession ────────────────────────────────────────────────


class TestSupersession:
    def test_late_result_for_old_generation_discarded(self):
        gate = Gate()
        cache, coordinator = _make(gate, max_workers=2)
        with coordinator:
            old = coordinator.write_eager(_set(slow=True))
            assert gate.started.wait(timeout=5.0)
            new = coordinator.write_eager(_set(slow=False, hi=7))
            assert coordinator.result(new, timeout=5.0).outcome == ValidationOutcome.VALID

            gate.release.set()
            report = coordinator.result(old, timeout=5.0)
            assert report.outcome == ValidationOutcome.SUPERSEDED
            entry = cache.entry()
            assert entry is not None
            assert entry.validated_generation == 2

    def test_late_violation_for_old_generation_not_surfaced(self):
        gate = Gate()
        cache, coordinator = _make(gate, max_workers=2)
        with coordinator:
            old = coordinator.write_eager(_set(slow=True, lo=50))
            assert gate.started.wait(timeout=5.0)
            new = coordinator.write_eager(_set(slow=False, lo=2))
            coordinator.result(new, timeout=5.0)

            gate.release.set()
            report = coordinator.result(old, timeout=5.0)
            assert report.outcome == ValidationOutcome.SUPERSEDED
            assert not cache.poisoned
            with cache.read_cached() as view:
                assert view.value["lo"] == 2

    def test_queued_validation_cancelled(self):
        gate = Gate()
        cache, coordinator = _make(gate, max_workers=1)
        with coordinator:
            first = coordinator.write_eager(_set(slow=True))
            assert gate.started.wait(timeout=5.0)
            second = coordinator.write_eager(_set(slow=False, hi=6))
            third = coordinator.write_eager(_set(hi=7))
            assert coordinator.poll_validation(second) == ValidationOutcome.SUPERSEDED

            gate.release.set()
            assert coordinator.result(third, timeout=5.0).outcome == ValidationOutcome.VALID
            assert coordinator.result(first, timeout=5.0).outcome == ValidationOutcome.SUPERSEDED
            assert coordinator.result(second).outcome == ValidationOutcome.SUPERSEDED
            assert cache.entry().validated_generation == 3

    def test_only_one_pending_validation(self):
        gate = Gate()
        cache, coordinator = _make(gate, max_workers=1)
        with coordinator:
            coordinator.write_eager(_set(slow=True))
            assert gate.started.wait(timeout=5.0)
            coordinator.write_eager(_set(slow=False))
            assert coordinator.pending.submitted_generation == 2
            gate.release.set()


# ─── Scheduler Failure ───────────────────────────────────────────


class TestAborted:
    def test_write_after_shutdown_is_aborted(self):
        cache, coordinator = _make()
        coordinator.shutdown()
        handle = coordinator.write_eager(_set(lo=2))
        assert coordinator.poll_validation(handle) == ValidationOutcome.ABORTED
        with pytest.raises(ValidationAborted):
            coordinator.result(handle)

    def test_cached_read_falls_back_inline_after_abort(self):
        cache, coordinator = _make()
        coordinator.shutdown()
        coordinator.write_eager(_set(lo=10))
        with pytest.raises(InvariantViolation):
            cache.read_cached()
        assert cache.poisoned

    def test_rejecting_executor_is_aborted(self):
        executor = MagicMock()
        executor.submit.side_effect = RuntimeError("cannot schedule new futures")
        cache = InvariantCache({"lo": 1, "hi": 5}, lambda d: d["lo"] < d["hi"])
        coordinator = ValidationCoordinator(cache, executor=executor)
        handle = coordinator.write_eager(_set(lo=2))
        assert coordinator.poll_validation(handle) == ValidationOutcome.ABORTED
        assert executor.submit.called

    def test_injected_executor_left_running(self):
        executor = MagicMock()
        cache = InvariantCache({"lo": 1, "hi": 5}, lambda d: d["lo"] < d["hi"])
        ValidationCoordinator(cache, executor=executor).shutdown()
        executor.shutdown.assert_not_called()


# ─── Read Ordering ───────────────────────────────────────────────


class TestCachedReadOrdering:
    def test_cached_read_waits_for_pending_validation(self):
        gate = Gate()
        cache, coordinator = _make(gate)
        with coordinator:
            coordinator.write_eager(_set(slow=True, hi=8))
            assert gate.started.wait(timeout=5.0)
            seen: list[int] = []

            def reader() -> None:
                with cache.read_cached() as view:
                    seen.append(view.value["hi"])

            t = threading.Thread(target=reader)
            t.start()
            t.join(timeout=0.1)
            assert t.is_alive()
            assert seen == []

            gate.release.set()
            t.join(timeout=5.0)
            assert seen == [8]
            # The reader used the background result rather than re-running the check.
            assert cache.stats().predicate_evaluations == 1

    def test_cached_read_sees_background_violation(self):
        gate = Gate()
        cache, coordinator = _make(gate)
        with coordinator:
            coordinator.write_eager(_set(slow=True, lo=99))
            assert gate.started.wait(timeout=5.0)
            errors: list[BaseException] = []

            def reader() -> None:
                try:
                    cache.read_cached()
                except (InvariantViolation, Poisoned) as exc:
                    errors.append(exc)

            t = threading.Thread(target=reader)
            t.start()
            gate.release.set()
            t.join(timeout=5.0)
            assert len(errors) == 1

    def test_inline_strategy_does_not_wait(self):
        gate = Gate()
        cache, coordinator = _make(gate, read_strategy=ReadStrategy.INLINE)
        with coordinator:
            coordinator.write_eager(_set(slow=True, hi=8))
            assert gate.started.wait(timeout=5.0)
            with cache.read_cached(timeout=5.0) as view:
                assert view.value["hi"] == 8
            gate.release.set()

    def test_wait_timeout_falls_back_inline(self):
        gate = Gate()
        cache, coordinator = _make(gate, wait_timeout_s=0.05)
        with coordinator:
            coordinator.write_eager(_set(slow=True, hi=8))
            assert gate.started.wait(timeout=5.0)
            with cache.read_cached(timeout=5.0) as view:
                assert view.value["hi"] == 8
            gate.release.set()


# ─── Async ───────────────────────────────────────────────────────


class TestAsync:
    @pytest.mark.asyncio
    async def test_wait_resolves_report(self):
        cache, coordinator = _make()
        with coordinator:
            handle = coordinator.write_eager(_set(lo=2))
            report = await coordinator.wait(handle)
            assert report.outcome == ValidationOutcome.VALID
            assert report.generation == 1

    @pytest.mark.asyncio
    async def test_wait_raises_violation(self):
        cache, coordinator = _make()
        with coordinator:
            handle = coordinator.write_eager(_set(lo=20))
            with pytest.raises(InvariantViolation):
                await coordinator.wait(handle)

    @pytest.mark.asyncio
    async def test_wait_raises_aborted(self):
        cache, coordinator = _make()
        coordinator.shutdown()
        handle = coordinator.write_eager(_set(lo=2))
        with pytest.raises(ValidationAborted):
            await coordinator.wait(handle)


class TestEagerReads:
    @pytest.mark.asyncio
    async def test_should_read_from_cache(self):
        cache, coordinator = _make()
        with coordinator:
            assert await coordinator.eager(get_lo) == 1
            assert await coordinator.eager(get_lo) == 1

    @pytest.mark.asyncio
    async def test_should_invalidate_cache_on_mutation(self):
        cache, coordinator = _make()
        with coordinator:
            assert await coordinator.eager(get_lo) == 1
            assert await coordinator.eager(get_lo) == 1
            coordinator.write_eager(_set(lo=4))
            assert await coordinator.eager(get_lo) == 4
            assert await coordinator.eager(get_lo) == 4

    @pytest.mark.asyncio
    async def test_plain_write_recomputes_in_background(self):
        threads: list[str] = []

        def spy(d: dict[str, Any]) -> int:
            threads.append(threading.current_thread().name)
            return d["lo"]

        cache, coordinator = _make()
        with coordinator:
            assert await coordinator.eager(spy) == 1
            with cache.write() as guard:
                guard.value["lo"] = 3
            coordinator._eager_reads[spy].future.result(timeout=5.0)
            assert cache.derived_entry(spy).result == 3
            assert await coordinator.eager(spy) == 3
        assert len(threads) == 2
        assert all(name.startswith("reprcell-validate") for name in threads)

    @pytest.mark.asyncio
    async def test_reset_recomputes_in_background(self):
        cache, coordinator = _make()
        with coordinator:
            assert await coordinator.eager(get_lo) == 1
            cache.reset({"lo": 2, "hi": 5, "slow": False})
            coordinator._eager_reads[get_lo].future.result(timeout=5.0)
            assert cache.derived_entry(get_lo).result == 2

    @pytest.mark.asyncio
    async def test_eager_does_not_block_event_loop(self):
        cache, coordinator = _make()
        held = threading.Event()
        ticks: list[float] = []

        def hold_write() -> None:
            with cache.write():
                held.set()
                time.sleep(0.3)

        async def heartbeat() -> None:
            while True:
                ticks.append(time.monotonic())
                await asyncio.sleep(0.02)

        with coordinator:
            writer = threading.Thread(target=hold_write)
            writer.start()
            assert held.wait(timeout=2.0)
            beat = asyncio.create_task(heartbeat())
            try:
                assert await coordinator.eager(get_lo) == 1
            finally:
                beat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await beat
            writer.join(timeout=2.0)

        gaps = [later - earlier for earlier, later in zip(ticks, ticks[1:])]
        assert len(ticks) >= 5
        assert max(gaps) < 0.2

    @pytest.mark.asyncio
    async def test_should_be_able_to_unregister(self):
        cache, coordinator = _make()
        with coordinator:
            assert await coordinator.eager(get_lo) == 1
            assert await coordinator.eager(get_lo_again) == 1
            assert await coordinator.eager(get_lo) == 1
            assert coordinator.unregister(get_lo_again)
            assert not coordinator.unregister(get_lo_again)

    @pytest.mark.asyncio
    async def test_read_error_propagates(self):
        def picky(d: dict[str, Any]) -> int:
            if d["lo"] == 2:
                raise RuntimeError("random failure")
            return d["lo"]

        cache, coordinator = _make()
        with coordinator:
            assert await coordinator.eager(picky) == 1
            coordinator.write_eager(_set(lo=2))
            with pytest.raises(RuntimeError, match="random failure"):
                await coordinator.eager(picky)
