"""
Meta Lead Ads (Graph API) Integration

Client for pulling leads submitted through Facebook / Instagram lead forms.

Features:
- Active lead form discovery for a page
- Time-window filtering on `time_created`
- Follows provider `paging.next` URLs until exhausted
- Request timeouts
- Structured logging
- Environment variable configuration
- Context manager support

Docs: https://developers.facebook.com/docs/marketing-api/guides/lead-ads/retrieving
"""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import requests

from leads.normalizer import META, Lead, normalize_meta_lead, parse_timestamp
from leads.sources import ConfigurationError, LeadSource, LeadSourceError, Page, env_flag

# =========================================
# Logging
# =========================================

logger = logging.getLogger(__name__)

# =========================================
# Configuration
# =========================================

DEFAULT_TIMEOUT = (3.05, 30)  # (connect, read) timeouts in seconds
DEFAULT_PAGE_SIZE = 100
DEFAULT_GRAPH_VERSION = "v20.0"
LEAD_FIELDS = "id,created_time,field_data,form_id,ad_id,adgroup_id,campaign_id"

_FORM_ID_RE = re.compile(r"^\d+$")


def parse_form_ids(*sources: Optional[Iterable[str] | str]) -> List[str]:
    """
    Merge form ids from lists and comma-separated strings.

    Keeps first-seen order, trims whitespace and drops anything that is
    not a purely numeric Graph id.
    """
    merged: List[str] = []
    for source in sources:
        if not source:
            continue
        items = source.split(",") if isinstance(source, str) else source
        for item in items:
            if not isinstance(item, str):
                continue
            form_id = item.strip()
            if form_id and _FORM_ID_RE.match(form_id) and form_id not in merged:
                merged.append(form_id)
    return merged


@dataclass
class MetaConfig:
    """
    Configuration for the Meta Graph API connection.

    Can be initialized from environment variables:
        config = MetaConfig.from_env()
    """

    access_token: str
    page_id: str
    graph_version: str = DEFAULT_GRAPH_VERSION
    form_ids: List[str] = field(default_factory=list)
    auto_discover_forms: bool = True
    since_override: Optional[datetime] = None
    page_size: int = DEFAULT_PAGE_SIZE
    timeout: Tuple[float, float] = DEFAULT_TIMEOUT

    @property
    def base_url(self) -> str:
        return f"https://graph.facebook.com/{self.graph_version}"

    @classmethod
    def from_env(cls) -> "MetaConfig":
        """
        Load configuration from environment variables.

        Environment variables:
            META_PAGE_ACCESS_TOKEN: Required page access token
            META_PAGE_ID: Required page id (used for form discovery)
            META_GRAPH_VERSION: Optional Graph API version (default: v20.0)
            META_FORM_IDS_DEFAULT: Optional comma-separated form ids
            META_FORM_AUTO_DISCOVER: Optional, add active page forms (default: true)
            META_SYNC_SINCE_OVERRIDE: Optional ISO timestamp forcing the window start
            META_SYNC_PAGE_SIZE: Optional page size (default: 100)
            META_TIMEOUT_CONNECT / META_TIMEOUT_READ: Optional timeouts
        """
        access_token = os.environ.get("META_PAGE_ACCESS_TOKEN")
        if not access_token:
            raise ConfigurationError(
                "META_PAGE_ACCESS_TOKEN is required for Meta lead sync but was not found in the environment."
            )

        page_id = os.environ.get("META_PAGE_ID")
        if not page_id:
            raise ConfigurationError(
                "META_PAGE_ID is required for Meta lead sync but was not found in the environment."
            )

        override_raw = os.environ.get("META_SYNC_SINCE_OVERRIDE")
        since_override = parse_timestamp(override_raw) if override_raw else None
        if override_raw and since_override is None:
            raise ConfigurationError(f"META_SYNC_SINCE_OVERRIDE is not a valid timestamp: {override_raw}")

        connect_timeout = float(os.environ.get("META_TIMEOUT_CONNECT", "3.05"))
        read_timeout = float(os.environ.get("META_TIMEOUT_READ", "30"))

        return cls(
            access_token=access_token,
            page_id=page_id,
            graph_version=os.environ.get("META_GRAPH_VERSION", DEFAULT_GRAPH_VERSION),
            form_ids=parse_form_ids(os.environ.get("META_FORM_IDS_DEFAULT")),
            auto_discover_forms=env_flag("META_FORM_AUTO_DISCOVER", True),
            since_override=since_override,
            page_size=int(os.environ.get("META_SYNC_PAGE_SIZE", str(DEFAULT_PAGE_SIZE))),
            timeout=(connect_timeout, read_timeout),
        )


def build_filtering_param(since: Optional[datetime], until: Optional[datetime]) -> Optional[str]:
    """Graph `filtering` expression restricting leads to (since, until)."""
    filters = []
    if since is not None:
        filters.append({
            "field": "time_created",
            "operator": "GREATER_THAN",
            "value": int(since.timestamp()),
        })
    if until is not None:
        filters.append({
            "field": "time_created",
            "operator": "LESS_THAN",
            "value": int(until.timestamp()),
        })
    return json.dumps(filters) if filters else None


# =========================================
# Client
# =========================================


class MetaLeadsClient:
    """
    Client for the Meta Graph lead ads endpoints.

    No retries: a failed request raises LeadSourceError and the caller's
    next scheduled pass picks up from the same checkpoint.

    Usage:
        with MetaLeadsClient(MetaConfig.from_env()) as client:
            forms = client.list_lead_forms()
    """

    def __init__(self, config: MetaConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "User-Agent": "mg-lead-sync/1.0",
                "Accept": "application/json",
            }
        )
        logger.debug("MetaLeadsClient initialized with base_url=%s", self.config.base_url)

    @classmethod
    def from_env(cls) -> "MetaLeadsClient":
        """Create client from environment variables."""
        return cls(config=MetaConfig.from_env())

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()

    def __enter__(self) -> "MetaLeadsClient":
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb) -> None:
        self.close()

    # =========================================
    # Internal: Requests
    # =========================================

    def _get(self, url: str, params: Optional[Dict], context: str) -> Dict:
        """
        GET a Graph URL. `params` is None when following a paging.next URL,
        which already carries the full query string.

        Raises:
            LeadSourceError: On transport failures and non-2xx responses
        """
        if params is not None:
            params = {**params, "access_token": self.config.access_token}

        try:
            response = self.session.get(url, params=params, timeout=self.config.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("%s failed: %s", context, e)
            raise LeadSourceError(f"{context} failed: {e}") from e

        logger.debug("GET %s -> %d", url.split("?")[0], response.status_code)

        if not response.ok:
            payload = None
            try:
                payload = response.json()
            except ValueError:
                pass

            if isinstance(payload, dict) and isinstance(payload.get("error"), dict) and payload["error"].get("message"):
                provider_message = payload["error"]["message"]
            elif payload is not None:
                provider_message = json.dumps(payload)
            else:
                provider_message = response.text

            raise LeadSourceError(
                f"{context} failed: {provider_message}",
                status_code=response.status_code,
                payload=payload,
            )

        try:
            return response.json()
        except ValueError as e:
            raise LeadSourceError(
                f"{context} failed: response was not JSON",
                status_code=response.status_code,
                payload=response.text,
            ) from e

    # =========================================
    # Lead Forms
    # =========================================

    def list_lead_forms(self, page_id: Optional[str] = None) -> List[Dict]:
        """List the page's lead forms (all pages of results), keeping ACTIVE ones."""
        page_id = page_id or self.config.page_id
        url: Optional[str] = f"{self.config.base_url}/{page_id}/leadgen_forms"
        params: Optional[Dict] = {"limit": DEFAULT_PAGE_SIZE}
        forms: List[Dict] = []

        while url:
            data = self._get(url, params, "Fetching Meta lead forms")
            forms.extend(data.get("data") or [])
            url = (data.get("paging") or {}).get("next")
            params = None

        active = [form for form in forms if form.get("status") == "ACTIVE"]
        logger.debug("Page %s has %d forms, %d active", page_id, len(forms), len(active))
        return active

    # =========================================
    # Leads
    # =========================================

    def fetch_leads_page(
        self,
        form_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = DEFAULT_PAGE_SIZE,
        next_url: Optional[str] = None,
    ) -> Tuple[List[Dict], Optional[str]]:
        """
        Fetch one page of leads for a form.

        Returns:
            (leads, next page URL or None)
        """
        if next_url:
            url, params = next_url, None
        else:
            url = f"{self.config.base_url}/{form_id}/leads"
            params = {"limit": limit, "fields": LEAD_FIELDS}
            filtering = build_filtering_param(since, until)
            if filtering:
                params["filtering"] = filtering

        data = self._get(url, params, f"Fetching leads for form {form_id}")
        leads = data.get("data") or []
        return leads, (data.get("paging") or {}).get("next")


# =========================================
# Sync Source
# =========================================


class MetaLeadSource(LeadSource):
    """
    Lead source walking every resolved form in turn.

    The cursor is `(form index, next page URL)`; a form is finished when
    Meta stops returning `paging.next`. Short pages are normal mid-stream.
    """

    name = "meta"
    platform = META
    external_id_key = "id"

    def __init__(self, client: MetaLeadsClient):
        self.client = client
        self.form_ids: List[str] = []
        self.form_names: Dict[str, Optional[str]] = {}
        self.auto_discovered = 0

    def prepare(self, since: datetime, until: datetime, **options: Any) -> None:
        config = self.client.config
        form_ids = parse_form_ids(options.get("form_ids"), config.form_ids)
        names: Dict[str, Optional[str]] = {form_id: None for form_id in form_ids}
        self.auto_discovered = 0

        if config.auto_discover_forms or not form_ids:
            for form in self.client.list_lead_forms():
                form_id = str(form.get("id"))
                names[form_id] = form.get("name")
                if form_id not in form_ids:
                    form_ids.append(form_id)
                    self.auto_discovered += 1

        self.form_ids = form_ids
        self.form_names = names
        logger.info(
            "Meta sync resolved %d forms (%d auto-discovered)",
            len(form_ids),
            self.auto_discovered,
        )

    def default_since(self, now: datetime) -> datetime:
        return datetime(now.year, now.month, 1, tzinfo=timezone.utc)

    def override_since(self) -> Optional[datetime]:
        return self.client.config.since_override

    def fetch_page(self, since: datetime, until: datetime, cursor: Any, page_size: int) -> Page:
        if not self.form_ids:
            return Page()

        form_index, next_url = cursor or (0, None)
        form_id = self.form_ids[form_index]
        leads, next_url = self.client.fetch_leads_page(
            form_id,
            since=since,
            until=until,
            limit=page_size,
            next_url=next_url,
        )
        for lead in leads:
            lead.setdefault("form_id", form_id)

        if next_url:
            next_cursor = (form_index, next_url)
        elif form_index + 1 < len(self.form_ids):
            next_cursor = (form_index + 1, None)
        else:
            next_cursor = None

        return Page(records=leads, next_cursor=next_cursor)

    def normalize(self, record: Dict[str, Any]) -> Lead:
        return normalize_meta_lead(record, form_name=self.form_names.get(str(record.get("form_id"))))

    def record_time(self, record: Dict[str, Any]) -> Optional[datetime]:
        return parse_timestamp(record.get("created_time"))
