"""reprcell — telemetry."""

from reprcell.telemetry.logging import setup_logging

__all__ = ["setup_logging"]
