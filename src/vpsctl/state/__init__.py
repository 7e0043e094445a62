"""State management helpers for vpsctl."""
from __future__ import annotations

from .registry import DuplicateNameError, StateRegistry, StateRegistryError

__all__ = ["DuplicateNameError", "StateRegistry", "StateRegistryError"]
