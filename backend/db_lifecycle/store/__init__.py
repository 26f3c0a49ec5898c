"""Status store implementations."""
from .base import StateStore
from .factory import get_state_store

__all__ = ["StateStore", "get_state_store"]
