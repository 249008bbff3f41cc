"""Input/output helpers for scenariosync."""

from .config import load_config
from .logging import StructuredLogger

__all__ = ["StructuredLogger", "load_config"]
