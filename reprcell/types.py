"""
reprcell — Shared Types

Outcome enums, policy enums and the small records passed between the cell,
the cache and the validation coordinator.
"""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel


# ─── Enums ────────────────────────────────────────────────────────


class ViolationPolicy(enum.StrEnum):
    """What a cell does when a committed mutation breaks its invariant."""

    ROLLBACK = "rollback"  # restore the pre-mutation snapshot
    POISON = "poison"      # keep the bad value, refuse all access until reset()


class ValidationOutcome(enum.StrEnum):
    """State of a background validation as seen through a WriteHandle."""

    PENDING = "pending"
    VALID = "valid"
    VIOLATION = "violation"
    ABORTED = "aborted"
    SUPERSEDED = "superseded"


class ReadStrategy(enum.StrEnum):
    """How a cached read treats a generation whose validation is still pending."""

    WAIT = "wait"
    INLINE = "inline"


# ─── Records ──────────────────────────────────────────────────────


class ReprBaseModel(BaseModel):
    """Base model for all reprcell records."""

    model_config = {"populate_by_name": True, "arbitrary_types_allowed": True}


class CacheEntry(ReprBaseModel):
    """
    A memoised result stamped with the generation it was computed for.

    The entry is only trustworthy while ``validated_generation`` equals the
    owning cell's live generation.
    """

    validated_generation: int
    result: Any = None

    def is_valid_for(self, generation: int) -> bool:
        return self.validated_generation == generation


class ValidationReport(ReprBaseModel):
    """Resolved result of one background validation."""

    generation: int
    outcome: ValidationOutcome
    message: str = ""
    value: Any = None
    error: BaseException | None = None


class CacheStats(ReprBaseModel):
    hits: int = 0
    misses: int = 0
    predicate_evaluations: int = 0
    derived_entries: int = 0
