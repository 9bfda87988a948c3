"""
HTTP interface for the settlement service.
"""

from .dependencies import SettlementServices, get_services
from .routes import outcome_status, router

__all__ = ["SettlementServices", "get_services", "outcome_status", "router"]
