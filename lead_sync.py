"""
Lead Sync - pulls dealership leads from Meta lead ads and Knowlarity calls.

Wires the source clients, the Supabase store and the sync engine together
from environment configuration, and exposes a single `sync()` entry point
used by the scheduler, the HTTP routes and the CLI.

Usage:
    from lead_sync import sync

    summary = sync("meta", since="2025-01-01T00:00:00Z")
    print(summary.summary())
"""

import argparse
import logging
import os
import threading
from typing import Any, Callable, Dict, List, Optional

import pandas as pd

from database import SupabaseClient
from knowlarity import KnowlarityClient, KnowlarityLeadSource
from leads import LeadSourceError, LeadSync, SyncSummary, env_flag
from meta import MetaLeadsClient, MetaLeadSource

logger = logging.getLogger(__name__)

SOURCES = ("meta", "knowlarity")


def batch_dedup_enabled() -> bool:
    return env_flag("SYNC_BATCH_DEDUP")


def build_meta_sync(store) -> LeadSync:
    client = MetaLeadsClient.from_env()
    return LeadSync(
        MetaLeadSource(client),
        store,
        page_size=client.config.page_size,
        batch_dedup=batch_dedup_enabled(),
    )


def build_knowlarity_sync(store) -> LeadSync:
    client = KnowlarityClient.from_env()
    return LeadSync(
        KnowlarityLeadSource(client),
        store,
        page_size=client.config.page_size,
        batch_dedup=batch_dedup_enabled(),
    )


BUILDERS: Dict[str, Callable[[Any], LeadSync]] = {
    "meta": build_meta_sync,
    "knowlarity": build_knowlarity_sync,
}


class SyncRegistry:
    """
    Lazily builds and caches one LeadSync per source.

    Engines are cached so every trigger (timer, startup, HTTP) shares the
    same overlap guard. Building an engine reads its configuration, so a
    missing credential surfaces as ConfigurationError on first use, before
    any network call.
    """

    def __init__(self, store_factory: Callable[[], Any] = SupabaseClient, builders: Optional[Dict] = None):
        self._store_factory = store_factory
        self._builders = builders or BUILDERS
        self._store = None
        self._engines: Dict[str, LeadSync] = {}
        self._lock = threading.Lock()

    def store(self):
        with self._lock:
            if self._store is None:
                self._store = self._store_factory()
            return self._store

    def engine(self, source: str) -> LeadSync:
        if source not in self._builders:
            raise ValueError(f"Unknown lead source: {source}")

        store = self.store()
        with self._lock:
            if source not in self._engines:
                self._engines[source] = self._builders[source](store)
            return self._engines[source]

    def sync(self, source: str, **options: Any) -> SyncSummary:
        return self.engine(source).run(**options)


_registry: Optional[SyncRegistry] = None


def get_registry() -> SyncRegistry:
    """Get or create the process-wide registry."""
    global _registry
    if _registry is None:
        _registry = SyncRegistry()
    return _registry


def sync(source: str, **options: Any) -> SyncSummary:
    """
    Run one sync pass for `source` ("meta" or "knowlarity").

    Options: since, until, limit, form_ids (Meta only).
    """
    return get_registry().sync(source, **options)


def summaries_frame(summaries: List[SyncSummary]) -> pd.DataFrame:
    """Tabulate pass summaries for reporting."""
    rows = []
    for summary in summaries:
        row = summary.to_dict()
        row.pop("details")
        rows.append(row)
    return pd.DataFrame(
        rows,
        columns=["source", "start_time", "end_time", "checked", "inserted", "skipped", "pages", "last_synced_at"],
    )


def skip_reasons_frame(summaries: List[SyncSummary]) -> pd.DataFrame:
    """Count skipped records per source and reason."""
    rows = [
        {"source": summary.source, "reason": detail["reason"]}
        for summary in summaries
        for detail in summary.details
    ]
    if not rows:
        return pd.DataFrame(columns=["source", "reason", "count"])
    return pd.DataFrame(rows).groupby(["source", "reason"]).size().reset_index(name="count")


# =========================================
# CLI
# =========================================


def _cli(argv: Optional[List[str]] = None) -> int:
    """Run sync passes from the command line."""
    from dotenv import load_dotenv

    parser = argparse.ArgumentParser(description="Sync leads from external sources into Supabase")
    parser.add_argument("source", choices=[*SOURCES, "all"])
    parser.add_argument("--since", help="Window start (ISO timestamp)")
    parser.add_argument("--until", help="Window end (ISO timestamp, default: now)")
    parser.add_argument("--limit", type=int, help="Page size")
    parser.add_argument("--form-id", action="append", dest="form_ids", help="Meta form id (repeatable)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)

    load_dotenv()
    log_level = logging.DEBUG if args.verbose else os.environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    options: Dict[str, Any] = {"since": args.since, "until": args.until, "limit": args.limit}
    sources = SOURCES if args.source == "all" else (args.source,)

    summaries = []
    exit_code = 0
    for source in sources:
        source_options = dict(options)
        if source == "meta" and args.form_ids:
            source_options["form_ids"] = args.form_ids
        try:
            summaries.append(sync(source, **source_options))
        except (LeadSourceError, ValueError) as e:
            logger.error("%s sync failed: %s", source, e)
            exit_code = 1

    if summaries:
        print(summaries_frame(summaries).to_string(index=False))
        reasons = skip_reasons_frame(summaries)
        if not reasons.empty:
            print("\nSkipped records:")
            print(reasons.to_string(index=False))

    return exit_code


if __name__ == "__main__":
    exit(_cli())
