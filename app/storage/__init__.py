"""
Customs Storage Layer

Read-only query interface over the customs nomenclature, tariff lines and
regulatory documents consumed by the advisory pipeline.

Usage:
    from app.storage import get_store

    store = get_store(db.session)
    tariff = store.find_direct_tariff("MA", "847130")
"""

from .base import CustomsStore
from .sql_store import SQLCustomsStore, document_url


def get_store(session) -> CustomsStore:
    """Build the store for a SQLAlchemy session (one per request)."""
    return SQLCustomsStore(session)


__all__ = ["CustomsStore", "SQLCustomsStore", "document_url", "get_store"]
