"""
reprcell — Common Primitives

Identifier helpers shared by cells, caches and registries.
"""

from __future__ import annotations

from ulid import ULID


def new_id() -> str:
    """Generate a new ULID string. Time-sortable, globally unique."""
    return str(ULID())
