"""
Supabase Database Client for the lead sync service

Provides hosted storage for:
- Canonical lead records ingested from ad platforms, telephony and marketplaces
- Per-source sync checkpoints (last successfully ingested source timestamp)

The hosted table store is an external collaborator: this module only wraps
the handful of queries the sync engine and intake routes need.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Iterable, Set

from supabase import create_client, Client

from leads.normalizer import parse_timestamp
from leads.sources import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_LEADS_TABLE = "mg-digital-leads"
DEFAULT_SYNC_STATE_TABLE = "lead_sync_state"


@dataclass
class DatabaseConfig:
    """Supabase connection configuration."""
    url: str
    key: str  # service role key; the sync jobs write server-side
    leads_table: str = DEFAULT_LEADS_TABLE
    sync_state_table: str = DEFAULT_SYNC_STATE_TABLE

    @classmethod
    def from_env(cls) -> "DatabaseConfig":
        """Load config from environment variables."""
        url = os.getenv("SUPABASE_URL")
        key = (
            os.getenv("SUPABASE_SERVICE_ROLE_KEY")
            or os.getenv("SUPABASE_SERVICE_KEY")
            or os.getenv("SUPABASE_KEY")
        )

        if not url or not key:
            raise ConfigurationError(
                "Missing Supabase credentials. Set SUPABASE_URL and "
                "SUPABASE_SERVICE_ROLE_KEY (or SUPABASE_SERVICE_KEY) environment variables."
            )

        return cls(
            url=url,
            key=key,
            leads_table=os.getenv("LEADS_TABLE", DEFAULT_LEADS_TABLE),
            sync_state_table=os.getenv("SYNC_STATE_TABLE", DEFAULT_SYNC_STATE_TABLE),
        )


class SupabaseClient:
    """
    Supabase client for lead and checkpoint operations.

    Errors raised by the underlying PostgREST client are not caught here;
    a failed insert or query aborts whatever sync pass issued it.
    """

    def __init__(self, config: Optional[DatabaseConfig] = None, client: Optional[Client] = None):
        """
        Initialize Supabase client.

        Args:
            config: Database configuration. If None, loads from environment.
            client: Pre-built supabase client (tests, shared connections).
        """
        if config is None:
            config = DatabaseConfig.from_env()

        self.config = config
        self.client: Client = client if client is not None else create_client(config.url, config.key)

    # ==========================================
    # LEAD OPERATIONS
    # ==========================================

    def insert_lead(self, record: Dict) -> Dict:
        """
        Insert one canonical lead row.

        Returns:
            Created lead data (empty dict if the API returned no representation)
        """
        result = self.client.table(self.config.leads_table).insert(record).execute()
        logger.debug("Inserted %s lead %s", record.get("platform"), record.get("phone_number"))
        return result.data[0] if result.data else {}

    def lead_exists_by_external_id(
        self,
        platform: str,
        external_id: Optional[str],
        column: str = "id"
    ) -> bool:
        """
        Check whether a lead from `platform` with payload[column] == external_id exists.

        Args:
            platform: Source platform tag
            external_id: Provider-assigned identifier
            column: Key inside the stored payload holding the identifier
        """
        if not external_id:
            return False

        result = (
            self.client.table(self.config.leads_table)
            .select("id")
            .eq("platform", platform)
            .eq(f"payload->>{column}", str(external_id))
            .limit(1)
            .execute()
        )
        return bool(result.data)

    def existing_external_ids(
        self,
        platform: str,
        column: str,
        external_ids: Iterable[str]
    ) -> Set[str]:
        """
        Return the subset of `external_ids` already stored for `platform`.

        One query per call; used for page-level batch dedup.
        """
        ids = sorted({str(i) for i in external_ids if i})
        if not ids:
            return set()

        result = (
            self.client.table(self.config.leads_table)
            .select(f"external_id:payload->>{column}")
            .eq("platform", platform)
            .in_(f"payload->>{column}", ids)
            .execute()
        )
        return {str(row["external_id"]) for row in result.data or [] if row.get("external_id")}

    # ==========================================
    # SYNC CHECKPOINT OPERATIONS
    # ==========================================

    def get_last_synced_at(self, source: str) -> Optional[datetime]:
        """Fetch the persisted checkpoint for a source (None if never synced)."""
        result = (
            self.client.table(self.config.sync_state_table)
            .select("last_synced_at")
            .eq("source", source)
            .limit(1)
            .execute()
        )
        if not result.data or not result.data[0].get("last_synced_at"):
            return None

        return parse_timestamp(result.data[0]["last_synced_at"])

    def set_last_synced_at(self, source: str, timestamp: datetime):
        """Upsert the checkpoint row for a source."""
        self.client.table(self.config.sync_state_table).upsert(
            {
                "source": source,
                "last_synced_at": timestamp.astimezone(timezone.utc).isoformat(),
            },
            on_conflict="source"
        ).execute()
        logger.info("Checkpoint for %s set to %s", source, timestamp.isoformat())


# Singleton instance for convenience
_client: Optional[SupabaseClient] = None


def get_client() -> SupabaseClient:
    """Get or create singleton Supabase client."""
    global _client
    if _client is None:
        _client = SupabaseClient()
    return _client
