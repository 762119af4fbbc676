"""
Shared building blocks for the escrow engine: error taxonomy, settings,
logging, clocks, storage and external collaborator contracts.
"""

from .clock import Clock, FixedClock, as_utc, utc_now
from .config import EscrowSettings, get_settings
from .storage import EscrowStore, InMemoryStore

__all__ = [
    "Clock",
    "FixedClock",
    "as_utc",
    "utc_now",
    "EscrowSettings",
    "get_settings",
    "EscrowStore",
    "InMemoryStore",
]
