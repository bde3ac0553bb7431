"""reprcell — shared primitives."""

from reprcell.primitives.common import new_id

__all__ = ["new_id"]
