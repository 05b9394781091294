"""
Database module for LeadPulse.

Provides the local JSON snapshot store and the optional Supabase mirror.
"""

from .local_store import LocalStore, STORAGE_KEY
from .supabase_client import (
    SupabaseClient,
    DatabaseConfig,
    RemoteSnapshot,
    RemoteStoreError,
    LEADS,
    TEMPLATES,
)

__all__ = [
    "LocalStore",
    "STORAGE_KEY",
    "SupabaseClient",
    "DatabaseConfig",
    "RemoteSnapshot",
    "RemoteStoreError",
    "LEADS",
    "TEMPLATES",
]
