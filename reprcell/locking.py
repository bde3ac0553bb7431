"""
reprcell — Readers/Writer Lock

Single-writer, multiple-reader lock built on ``threading.Condition``.

Writers are preferred: once a writer is waiting, new readers queue behind it
so a steady stream of readers cannot starve a mutation. There is no timeout
unless the caller passes one; a leaked guard blocks waiters forever.
"""

from __future__ import annotations

import threading
import time

from reprcell.errors import LockTimeoutError


class ReadWriteLock:
    """
    Shared/exclusive lock.

    Any number of readers may hold the lock together. A writer holds it
    alone. The lock is not re-entrant; ``writer_ident`` lets callers detect
    a thread trying to take a second guard while it still owns the writer slot.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers: int = 0
        self._writer: bool = False
        self._writers_waiting: int = 0
        self._writer_ident: int | None = None

    # ─── Shared ──────────────────────────────────────────────────────

    def acquire_read(self, timeout: float | None = None) -> None:
        deadline = _deadline(timeout)
        with self._cond:
            while self._writer or self._writers_waiting:
                _wait(self._cond, deadline, "read", timeout)
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            if self._readers <= 0:
                raise RuntimeError("release_read() without a matching acquire_read()")
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    # ─── Exclusive ───────────────────────────────────────────────────

    def acquire_write(self, timeout: float | None = None) -> None:
        deadline = _deadline(timeout)
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    _wait(self._cond, deadline, "write", timeout)
            except LockTimeoutError:
                # Readers queued behind this writer may proceed now.
                self._cond.notify_all()
                raise
            finally:
                self._writers_waiting -= 1
            self._writer = True
            self._writer_ident = threading.get_ident()

    def release_write(self) -> None:
        with self._cond:
            if not self._writer:
                raise RuntimeError("release_write() without a matching acquire_write()")
            self._writer = False
            self._writer_ident = None
            self._cond.notify_all()

    # ─── Introspection ───────────────────────────────────────────────

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def write_locked(self) -> bool:
        return self._writer

    @property
    def writer_ident(self) -> int | None:
        return self._writer_ident


def _deadline(timeout: float | None) -> float | None:
    if timeout is None:
        return None
    return time.monotonic() + max(0.0, timeout)


def _wait(
    cond: threading.Condition,
    deadline: float | None,
    mode: str,
    timeout: float | None,
) -> None:
    """Wait on ``cond`` once; raise if the deadline has already passed."""
    if deadline is None:
        cond.wait()
        return
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise LockTimeoutError(f"{mode} lock not acquired within {timeout}s")
    cond.wait(remaining)
