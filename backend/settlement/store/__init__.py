"""
Sold-state storage (SQLAlchemy, async).
"""

from .database import Base, DatabaseSessionManager
from .models import PurchaseRecord, PurchaseRow
from .sold_state import SoldStateStore

__all__ = ["Base", "DatabaseSessionManager", "PurchaseRecord", "PurchaseRow", "SoldStateStore"]
