"""
reprcell — Error Hierarchy

All exceptions raised by invariant cells, caches and the eager validation
coordinator.

Severity guide:
  ConstructionViolation  FATAL to construction -- no cell is produced
  InvariantViolation     RECOVERABLE -- rolled back, or the cell is poisoned
  Poisoned               BLOCKING -- every access fails until reset()
  ValidationAborted      INFRASTRUCTURE -- the worker pool failed, not the data
  StaleValidation        INTERNAL -- never reaches callers
"""

from __future__ import annotations

from typing import Any


class ReprCellError(RuntimeError):
    """Base for all reprcell errors."""


class ConstructionViolation(ReprCellError):
    """The initial value does not satisfy the invariant."""

    def __init__(self, message: str, value: Any) -> None:
        super().__init__(message)
        self.message = message
        self.value = value


class InvariantViolation(ReprCellError):
    """
    A mutation left the value failing its invariant.

    ``value`` is the violating value as it stood when the check ran. Under the
    rollback policy the cell no longer holds it; under the poison policy it does.
    """

    def __init__(self, message: str, value: Any, generation: int) -> None:
        super().__init__(f"{message} (generation {generation})")
        self.message = message
        self.value = value
        self.generation = generation


class Poisoned(ReprCellError):
    """The cell holds a value that failed its invariant and refuses access."""

    def __init__(self, cell_id: str) -> None:
        super().__init__(f"cell {cell_id} is poisoned; call reset() to recover")
        self.cell_id = cell_id


class StaleValidation(ReprCellError):
    """A background result belongs to a generation that has since advanced."""

    def __init__(self, submitted: int, current: int) -> None:
        super().__init__(f"validation for generation {submitted} is stale (now {current})")
        self.submitted = submitted
        self.current = current


class ValidationAborted(ReprCellError):
    """Background validation could not run to completion."""


class TypeMismatch(ReprCellError, TypeError):
    """A checked downcast found a value of a different type."""

    def __init__(self, expected: type, actual: type) -> None:
        super().__init__(
            f"expected a cell holding {expected.__qualname__}, found {actual.__qualname__}"
        )
        self.expected = expected
        self.actual = actual


class NonDeterministicInvariant(ReprCellError):
    """Repeated evaluation of the predicate on the same value disagreed."""


class ReentrantAccessError(ReprCellError):
    """The thread holding a cell's write guard asked the same cell for another guard."""


class LockTimeoutError(ReprCellError, TimeoutError):
    """A guard could not be acquired within the requested timeout."""
