"""
Signature store selection.
"""
from typing import Optional

from signauth.store.base import SignatureStore
from signauth.store.memory import InMemorySignatureStore

_store: Optional[SignatureStore] = None


def get_signature_store() -> SignatureStore:
    """Get the configured store singleton (STORAGE_BACKEND=memory|supabase)."""
    global _store
    if _store is None:
        from signauth.config import get_settings

        settings = get_settings()
        if settings.storage_backend == "supabase":
            from signauth.supabase_client import SupabaseSignatureStore
            _store = SupabaseSignatureStore(settings)
        else:
            _store = InMemorySignatureStore()
    return _store


__all__ = [
    "SignatureStore",
    "InMemorySignatureStore",
    "get_signature_store",
]
