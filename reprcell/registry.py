"""
reprcell — Cell Registry

Heterogeneous storage of cells behind one handle type, with a checked
downcast back to the concrete value type.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import Any, TypeVar, overload

import structlog

from reprcell.cache import InvariantCache
from reprcell.cell import InvariantCell
from reprcell.errors import Poisoned, TypeMismatch

logger = structlog.get_logger()

T = TypeVar("T")

AnyCell = InvariantCell[Any] | InvariantCache[Any]


def value_type(cell: AnyCell) -> type:
    """
    Concrete type of the value a cell currently holds.

    Raises Poisoned for a poisoned cell: its value has no trusted type.
    """
    return type(cell.get())


@overload
def downcast(cell: InvariantCell[Any], expected: type[T]) -> InvariantCell[T]: ...
@overload
def downcast(cell: InvariantCache[Any], expected: type[T]) -> InvariantCache[T]: ...
def downcast(cell: AnyCell, expected: type[T]) -> AnyCell:
    """
    Return ``cell`` typed as holding ``expected``.

    Raises TypeMismatch if the current value is not an instance of ``expected``,
    and Poisoned if the cell is poisoned.
    """
    actual = value_type(cell)
    if not issubclass(actual, expected):
        raise TypeMismatch(expected, actual)
    return cell


def try_downcast(cell: AnyCell, expected: type[T]) -> AnyCell | None:
    """Like ``downcast`` but returns None on a type mismatch. Poisoned still propagates."""
    if not issubclass(value_type(cell), expected):
        return None
    return cell


class CellRegistry:
    """
    Named cells of mixed value types.

    Keys default to the cell's id. Lookups may pass the expected value type
    to get a checked downcast.
    """

    def __init__(self) -> None:
        self._cells: dict[str, AnyCell] = {}
        self._lock = threading.Lock()
        self._logger = logger.bind(component="cell_registry")

    def add(self, cell: AnyCell, key: str | None = None) -> str:
        if key is None:
            key = _cell_id(cell)
        with self._lock:
            if key in self._cells:
                raise KeyError(f"a cell is already registered under {key!r}")
            self._cells[key] = cell
        self._logger.debug("cell_registered", key=key, cell_id=_cell_id(cell))
        return key

    def get(self, key: str, expected: type | None = None) -> AnyCell:
        with self._lock:
            cell = self._cells[key]
        if expected is not None:
            return downcast(cell, expected)
        return cell

    def remove(self, key: str) -> AnyCell:
        with self._lock:
            return self._cells.pop(key)

    def of_type(self, expected: type) -> dict[str, AnyCell]:
        """All registered cells whose value is an instance of ``expected``.

        Poisoned cells are skipped.
        """
        with self._lock:
            items = list(self._cells.items())
        matches: dict[str, AnyCell] = {}
        for key, cell in items:
            try:
                if try_downcast(cell, expected) is not None:
                    matches[key] = cell
            except Poisoned:
                self._logger.debug("poisoned_cell_skipped", key=key)
        return matches

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._cells

    def __len__(self) -> int:
        with self._lock:
            return len(self._cells)

    def __iter__(self) -> Iterator[str]:
        with self._lock:
            return iter(list(self._cells))


def _cell_id(cell: AnyCell) -> str:
    if isinstance(cell, InvariantCache):
        return cell.cell.cell_id
    return cell.cell_id
