"""
Database module for the lead sync service.

Provides Supabase integration for lead rows and sync checkpoints.
"""

from .supabase_client import (
    SupabaseClient,
    DatabaseConfig,
    get_client
)

__all__ = [
    "SupabaseClient",
    "DatabaseConfig",
    "get_client"
]
