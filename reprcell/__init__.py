"""
reprcell — Representation Invariant Cells

Values wrapped with a predicate that must hold whenever no mutation is in
progress. InvariantCell guards access, InvariantCache memoises checks and
derived reads by mutation generation, and ValidationCoordinator moves the
check onto a worker pool.
"""

from reprcell.cache import InvariantCache
from reprcell.cell import InvariantCell, ReadView, WriteGuard
from reprcell.config import CellConfig, EagerConfig, LoggingConfig, ReprCellConfig, load_config
from reprcell.eager import PendingValidation, ValidationCoordinator, WriteHandle
from reprcell.errors import (
    ConstructionViolation,
    InvariantViolation,
    LockTimeoutError,
    NonDeterministicInvariant,
    Poisoned,
    ReentrantAccessError,
    ReprCellError,
    StaleValidation,
    TypeMismatch,
    ValidationAborted,
)
from reprcell.registry import CellRegistry, downcast, try_downcast
from reprcell.types import (
    CacheEntry,
    CacheStats,
    ReadStrategy,
    ValidationOutcome,
    ValidationReport,
    ViolationPolicy,
)

__all__ = [
    # Core
    "InvariantCell",
    "ReadView",
    "WriteGuard",
    "InvariantCache",
    "ValidationCoordinator",
    "WriteHandle",
    "PendingValidation",
    # Registry
    "CellRegistry",
    "downcast",
    "try_downcast",
    # Config
    "CellConfig",
    "EagerConfig",
    "LoggingConfig",
    "ReprCellConfig",
    "load_config",
    # Types
    "CacheEntry",
    "CacheStats",
    "ReadStrategy",
    "ValidationOutcome",
    "ValidationReport",
    "ViolationPolicy",
    # Errors
    "ReprCellError",
    "ConstructionViolation",
    "InvariantViolation",
    "Poisoned",
    "StaleValidation",
    "TypeMismatch",
    "ValidationAborted",
    "NonDeterministicInvariant",
    "ReentrantAccessError",
    "LockTimeoutError",
]
