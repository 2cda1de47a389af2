"""
Incremental lead sync engine.

One pass pulls every record a source reports for a (since, until) window,
skips anything without an external id or required fields, skips anything
already stored for the same (platform, external id), inserts the rest and
only then moves the source checkpoint forward.

The store is anything exposing the SupabaseClient lead/checkpoint methods:
    insert_lead(record)
    lead_exists_by_external_id(platform, external_id, column)
    existing_external_ids(platform, column, ids)
    get_last_synced_at(source)
    set_last_synced_at(source, timestamp)
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from .normalizer import ValidationError, parse_timestamp, validate_lead
from .sources import LeadSource

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 100


class SyncInProgressError(RuntimeError):
    """Raised when a pass is requested while the same source is still syncing."""
    pass


@dataclass
class SyncSummary:
    """Results from one sync pass."""
    source: str
    start_time: datetime
    end_time: datetime
    checked: int = 0
    inserted: int = 0
    skipped: int = 0
    pages: int = 0
    last_synced_at: Optional[datetime] = None
    details: List[Dict] = field(default_factory=list)

    def skip(self, record_id: Optional[str], reason: str, **extra: Any) -> None:
        self.skipped += 1
        self.details.append({"external_id": record_id, "reason": reason, **extra})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "checked": self.checked,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "pages": self.pages,
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "details": self.details,
        }

    def summary(self) -> str:
        return (
            f"{self.source} sync complete: {self.checked} checked, "
            f"{self.inserted} inserted, {self.skipped} skipped"
        )


class LeadSync:
    """
    Runs sync passes for a single source.

    Features:
    - Window start from explicit value, configured override, persisted
      checkpoint or the source default, in that order
    - Per-record or page-level batch de-duplication
    - Validation failures are counted as skips, never raised
    - Checkpoint written once per successful pass, only ever forward
    - Rejects overlapping passes on the same source
    """

    def __init__(
        self,
        source: LeadSource,
        store,
        page_size: int = DEFAULT_PAGE_SIZE,
        batch_dedup: bool = False,
    ):
        """
        Args:
            source: Where records come from
            store: Persistence gateway (see module docstring)
            page_size: Default records per page
            batch_dedup: Check a whole page against the store in one query
        """
        self.source = source
        self.store = store
        self.page_size = page_size
        self.batch_dedup = batch_dedup
        self._lock = threading.Lock()
        self._checkpoint: Optional[datetime] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    @property
    def checkpoint(self) -> Optional[datetime]:
        """Last checkpoint read or written by this engine (cache only)."""
        return self._checkpoint

    def run(
        self,
        since: Optional[Any] = None,
        until: Optional[Any] = None,
        limit: Optional[int] = None,
        now: Optional[datetime] = None,
        **options: Any,
    ) -> SyncSummary:
        """
        Run one sync pass.

        Args:
            since: Explicit window start (datetime or ISO string)
            until: Explicit window end, defaults to now
            limit: Page size override
            now: Clock override
            **options: Passed to the source's prepare() hook (e.g. form_ids)

        Raises:
            SyncInProgressError: If a pass for this source is already running
            LeadSourceError: If the provider API fails
            ValueError: If since/until cannot be parsed
        """
        if not self._lock.acquire(blocking=False):
            raise SyncInProgressError(f"{self.source.name} sync already in progress")

        try:
            return self._run(since, until, limit, now, options)
        finally:
            self._lock.release()

    def _resolve_time(self, value: Any, label: str) -> Optional[datetime]:
        if value is None or value == "":
            return None
        parsed = parse_timestamp(value)
        if parsed is None:
            raise ValueError(f"Invalid {label} timestamp: {value!r}")
        return parsed

    def _run(
        self,
        since: Any,
        until: Any,
        limit: Optional[int],
        now: Optional[datetime],
        options: Dict[str, Any],
    ) -> SyncSummary:
        now = now or datetime.now(timezone.utc)
        end_time = self._resolve_time(until, "until") or now

        stored = self.store.get_last_synced_at(self.source.name)
        self._checkpoint = stored

        start_time = (
            self._resolve_time(since, "since")
            or self.source.override_since()
            or stored
            or self.source.default_since(now)
        )
        page_size = limit or self.page_size

        summary = SyncSummary(source=self.source.name, start_time=start_time, end_time=end_time)
        logger.info(
            "Starting %s sync: %s -> %s (checkpoint=%s)",
            self.source.name,
            start_time.isoformat(),
            end_time.isoformat(),
            stored.isoformat() if stored else None,
        )

        self.source.prepare(start_time, end_time, **options)

        latest: Optional[datetime] = None
        inserted_ids: Set[str] = set()
        cursor = None

        while True:
            page = self.source.fetch_page(start_time, end_time, cursor, page_size)
            summary.pages += 1
            summary.checked += len(page.records)

            known = self._known_ids(page.records) if self.batch_dedup else None

            for record in page.records:
                observed = self._process(record, summary, known, inserted_ids)
                if observed and (latest is None or observed > latest):
                    latest = observed

            if page.next_cursor is None:
                break
            cursor = page.next_cursor

        if latest and (stored is None or latest > stored):
            self.store.set_last_synced_at(self.source.name, latest)
            self._checkpoint = latest
        summary.last_synced_at = self._checkpoint

        logger.info(summary.summary())
        return summary

    def _known_ids(self, records: List[Dict]) -> Set[str]:
        ids = [self.source.external_id(record) for record in records]
        return self.store.existing_external_ids(
            self.source.platform,
            self.source.external_id_key,
            [i for i in ids if i],
        )

    def _is_duplicate(self, external_id: str, known: Optional[Set[str]]) -> bool:
        if known is not None:
            return external_id in known
        return self.store.lead_exists_by_external_id(
            self.source.platform,
            external_id,
            column=self.source.external_id_key,
        )

    def _process(
        self,
        record: Dict,
        summary: SyncSummary,
        known: Optional[Set[str]],
        inserted_ids: Set[str],
    ) -> Optional[datetime]:
        """
        Handle one raw record.

        Returns the record's source timestamp if it was inserted, else None.
        Store failures propagate and abort the pass.
        """
        external_id = self.source.external_id(record)
        if not external_id:
            summary.skip(None, "Missing external id")
            return None

        try:
            lead = validate_lead(self.source.normalize(record))
        except ValidationError as e:
            summary.skip(external_id, str(e))
            return None

        if external_id in inserted_ids or self._is_duplicate(external_id, known):
            summary.skip(external_id, "Duplicate")
            return None

        self.store.insert_lead(lead.to_record())
        inserted_ids.add(external_id)
        summary.inserted += 1
        return self.source.record_time(record)
