"""HTTP binding for the scheduler and the ledger."""

from .app import create_app
from .container import Services, build_services

__all__ = ["create_app", "Services", "build_services"]
