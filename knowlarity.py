"""
Knowlarity Call Log Integration

Client for the Knowlarity telephony call-log API. Every inbound call
is treated as a lead keyed by the call `uuid`.

Features:
- Offset/limit pagination with provider `total_count`
- Query timestamps rendered in the account's timezone
- Request timeouts
- Environment variable configuration
- Context manager support
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import requests

from leads.normalizer import KNOWLARITY, Lead, normalize_knowlarity_record, parse_timestamp
from leads.sources import ConfigurationError, LeadSource, LeadSourceError, Page

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = (3.05, 30)  # (connect, read) timeouts in seconds
DEFAULT_API_URL = "https://kpi.knowlarity.com/Basic/v1/account/calllog"
DEFAULT_CHANNEL = "Basic"
DEFAULT_TIMEZONE = "Asia/Kolkata"
DEFAULT_LOOKBACK_MINUTES = 15
DEFAULT_PAGE_SIZE = 100

KNOWLARITY_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class KnowlarityConfig:
    """Configuration for the Knowlarity call-log API."""

    api_key: str
    auth_token: str
    api_url: str = DEFAULT_API_URL
    channel: str = DEFAULT_CHANNEL
    timezone: str = DEFAULT_TIMEZONE
    lookback_minutes: int = DEFAULT_LOOKBACK_MINUTES
    page_size: int = DEFAULT_PAGE_SIZE
    timeout: Tuple[float, float] = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls) -> "KnowlarityConfig":
        """
        Load configuration from environment variables.

        Environment variables:
            KNOWLARITY_API_KEY: Required API key (x-api-key header)
            KNOWLARITY_AUTH_TOKEN: Required authorization token
            KNOWLARITY_API_URL: Optional call-log endpoint
            KNOWLARITY_CHANNEL: Optional channel header (default: Basic)
            KNOWLARITY_TIMEZONE: Optional timezone for query timestamps (default: Asia/Kolkata)
            KNOWLARITY_SYNC_LOOKBACK_MINUTES: Optional default window (default: 15)
            KNOWLARITY_SYNC_PAGE_SIZE: Optional page size (default: 100)
            KNOWLARITY_TIMEOUT_CONNECT / KNOWLARITY_TIMEOUT_READ: Optional timeouts
        """
        api_key = os.environ.get("KNOWLARITY_API_KEY")
        auth_token = os.environ.get("KNOWLARITY_AUTH_TOKEN")
        if not api_key or not auth_token:
            raise ConfigurationError(
                "Knowlarity credentials missing. Set KNOWLARITY_API_KEY and KNOWLARITY_AUTH_TOKEN."
            )

        return cls(
            api_key=api_key,
            auth_token=auth_token,
            api_url=os.environ.get("KNOWLARITY_API_URL", DEFAULT_API_URL),
            channel=os.environ.get("KNOWLARITY_CHANNEL", DEFAULT_CHANNEL),
            timezone=os.environ.get("KNOWLARITY_TIMEZONE", DEFAULT_TIMEZONE),
            lookback_minutes=int(os.environ.get("KNOWLARITY_SYNC_LOOKBACK_MINUTES", str(DEFAULT_LOOKBACK_MINUTES))),
            page_size=int(os.environ.get("KNOWLARITY_SYNC_PAGE_SIZE", str(DEFAULT_PAGE_SIZE))),
            timeout=(
                float(os.environ.get("KNOWLARITY_TIMEOUT_CONNECT", str(DEFAULT_TIMEOUT[0]))),
                float(os.environ.get("KNOWLARITY_TIMEOUT_READ", str(DEFAULT_TIMEOUT[1]))),
            ),
        )


class KnowlarityClient:
    """Client for the Knowlarity call-log endpoint."""

    def __init__(self, config: KnowlarityConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.tz = ZoneInfo(config.timezone)
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "x-api-key": config.api_key,
                "authorization": config.auth_token,
                "channel": config.channel,
                "Accept": "application/json",
            }
        )

    @classmethod
    def from_env(cls) -> "KnowlarityClient":
        return cls(config=KnowlarityConfig.from_env())

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "KnowlarityClient":
        return self

    def __exit__(self, _exc_type, _exc_val, _exc_tb) -> None:
        self.close()

    def format_time(self, value: datetime) -> str:
        """Render a timestamp the way the call-log API expects it."""
        return value.astimezone(self.tz).strftime(KNOWLARITY_DATE_FORMAT)

    def fetch_calls_page(
        self,
        start_time: datetime,
        end_time: datetime,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> Tuple[List[Dict], Optional[int]]:
        """
        Fetch one page of call records.

        Returns:
            (records, provider total_count or None)

        Raises:
            LeadSourceError: On transport failures and non-2xx responses
        """
        params = {
            "start_time": self.format_time(start_time),
            "end_time": self.format_time(end_time),
            "limit": limit,
            "offset": offset,
        }

        try:
            response = self.session.get(self.config.api_url, params=params, timeout=self.config.timeout)
        except requests.exceptions.RequestException as e:
            logger.error("Knowlarity request failed: %s", e)
            raise LeadSourceError(f"Knowlarity request failed: {e}") from e

        logger.debug("GET calllog offset=%d limit=%d -> %d", offset, limit, response.status_code)

        if not response.ok:
            raise LeadSourceError(
                f"Knowlarity API error ({response.status_code}): {response.text}",
                status_code=response.status_code,
                payload=response.text,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise LeadSourceError(
                f"Knowlarity API returned a non-JSON body ({response.status_code})",
                status_code=response.status_code,
                payload=response.text,
            ) from e

        total = (data.get("meta") or {}).get("total_count")
        return data.get("objects") or [], int(total) if total is not None else None


class KnowlarityLeadSource(LeadSource):
    """Call-log source; the cursor is the next offset."""

    name = "knowlarity"
    platform = KNOWLARITY
    external_id_key = "uuid"

    def __init__(self, client: KnowlarityClient):
        self.client = client

    def default_since(self, now: datetime) -> datetime:
        return now - timedelta(minutes=self.client.config.lookback_minutes)

    def fetch_page(self, since: datetime, until: datetime, cursor: Any, page_size: int) -> Page:
        offset = cursor or 0
        records, total = self.client.fetch_calls_page(since, until, limit=page_size, offset=offset)
        offset += len(records)

        exhausted = (
            not records
            or len(records) < page_size
            or (total is not None and offset >= total)
        )
        return Page(records=records, next_cursor=None if exhausted else offset)

    def normalize(self, record: Dict[str, Any]) -> Lead:
        return normalize_knowlarity_record(record, self.client.tz)

    def record_time(self, record: Dict[str, Any]) -> Optional[datetime]:
        return parse_timestamp(record.get("start_time"), self.client.tz)
