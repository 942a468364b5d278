"""
Record stores compared by reconciliation
"""

from app.services.stores.sheets_client import SheetsClient
from app.services.stores.supabase_store import SupabaseStore

__all__ = ["SheetsClient", "SupabaseStore"]
