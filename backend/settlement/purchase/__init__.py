"""
Purchase pipeline: quote, verify payment, transfer, record.
"""

from .models import TERMINAL_STATES, PurchaseOutcome, PurchaseRequest, PurchaseState, Quote
from .orchestrator import PurchaseOrchestrator, resolve_rarity, validate_address, validate_token_id

__all__ = [
    "PurchaseOrchestrator",
    "PurchaseOutcome",
    "PurchaseRequest",
    "PurchaseState",
    "Quote",
    "TERMINAL_STATES",
    "resolve_rarity",
    "validate_address",
    "validate_token_id",
]
