import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from leads import LeadSource, LeadSourceError, Page, normalize_meta_lead, parse_timestamp
from leads.normalizer import META

BASE_TIME = datetime(2025, 3, 1, 10, 0, tzinfo=timezone.utc)


class FakeStore:
    """In-memory stand-in for SupabaseClient."""

    def __init__(self):
        self.rows: List[Dict] = []
        self.checkpoints: Dict[str, datetime] = {}
        self.checkpoint_writes: List[tuple] = []
        self.exists_calls = 0
        self.batch_calls = 0
        self.fail_insert = False

    def insert_lead(self, record):
        if self.fail_insert:
            raise RuntimeError("insert failed")
        self.rows.append(record)
        return record

    def _matches(self, row, platform, column, external_id):
        return row["platform"] == platform and str(row["payload"].get(column)) == str(external_id)

    def lead_exists_by_external_id(self, platform, external_id, column="id"):
        self.exists_calls += 1
        return any(self._matches(row, platform, column, external_id) for row in self.rows)

    def existing_external_ids(self, platform, column, external_ids):
        self.batch_calls += 1
        wanted = {str(i) for i in external_ids}
        return {
            str(row["payload"].get(column))
            for row in self.rows
            if row["platform"] == platform and str(row["payload"].get(column)) in wanted
        }

    def get_last_synced_at(self, source):
        return self.checkpoints.get(source)

    def set_last_synced_at(self, source, timestamp):
        self.checkpoint_writes.append((source, timestamp))
        self.checkpoints[source] = timestamp


def meta_record(lead_id, phone="+919800000000", created=None, name="Asha Rao", **extra):
    created = created or BASE_TIME
    field_data = []
    if name is not None:
        field_data.append({"name": "full_name", "values": [name]})
    if phone is not None:
        field_data.append({"name": "phone_number", "values": [phone]})
    record = {
        "id": str(lead_id),
        "created_time": created.strftime("%Y-%m-%dT%H:%M:%S+0000"),
        "field_data": field_data,
    }
    record.update(extra)
    return record


class ListSource(LeadSource):
    """Serves pre-built pages of Meta-shaped records."""

    name = "test"
    platform = META
    external_id_key = "id"

    def __init__(self, pages: List[List[Dict]], fail_on_page: Optional[int] = None):
        self.pages = pages
        self.fail_on_page = fail_on_page
        self.fetched = 0
        self.prepared_with: Optional[Dict] = None
        self.windows: List[tuple] = []

    def prepare(self, since, until, **options):
        self.prepared_with = options

    def default_since(self, now):
        return now - timedelta(days=1)

    def fetch_page(self, since, until, cursor, page_size):
        index = cursor or 0
        self.fetched += 1
        self.windows.append((since, until))
        if self.fail_on_page is not None and index == self.fail_on_page:
            raise LeadSourceError("provider exploded", status_code=500)
        records = self.pages[index] if index < len(self.pages) else []
        next_cursor = index + 1 if index + 1 < len(self.pages) else None
        return Page(records=[dict(r) for r in records], next_cursor=next_cursor)

    def normalize(self, record):
        return normalize_meta_lead(record)

    def record_time(self, record):
        return parse_timestamp(record.get("created_time"))


class BlockingSource(ListSource):
    """Blocks inside fetch_page until released."""

    def __init__(self, pages):
        super().__init__(pages)
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_page(self, since, until, cursor, page_size):
        self.entered.set()
        self.release.wait(5)
        return super().fetch_page(since, until, cursor, page_size)


class FakeResponse:
    def __init__(self, status_code=200, json_data=None, text=None):
        self.status_code = status_code
        self._json = json_data
        self.text = text if text is not None else (json.dumps(json_data) if json_data is not None else "")

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._json is None:
            raise ValueError("No JSON body")
        return self._json


class FakeSession:
    """Records GET calls and replays queued responses."""

    def __init__(self, responses: List[FakeResponse]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []
        self.headers: Dict[str, str] = {}
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        if not self.responses:
            raise AssertionError(f"Unexpected request to {url}")
        return self.responses.pop(0)

    def close(self):
        self.closed = True


@pytest.fixture
def store():
    return FakeStore()
