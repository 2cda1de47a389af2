"""
Common shape shared by the external lead sources.

A source knows how to fetch one page of raw records for a time window,
how to turn a raw record into a canonical Lead, and which payload key holds
the provider-assigned id the sync engine de-duplicates on.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from .normalizer import Lead, external_id_for

TRUTHY = ("1", "true", "yes", "y", "on")


def env_flag(name: str, default: bool = False) -> bool:
    """Read a boolean environment flag; unset or blank means `default`."""
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in TRUTHY


class ConfigurationError(ValueError):
    """Raised when a source is missing credentials or settings."""
    pass


class LeadSourceError(RuntimeError):
    """
    Raised when a lead source API returns an error.

    Attributes:
        message: Provider error message, verbatim where available
        status_code: HTTP status code (if applicable)
        payload: Raw response body (if parseable)
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code:
            parts.append(f"(status={self.status_code})")
        return " ".join(parts)


@dataclass
class Page:
    """One page of raw records; `next_cursor` is None on the last page."""
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Any = None


class LeadSource(ABC):
    """Base class for sources the sync engine can pull from."""

    #: Checkpoint key in the sync state table
    name: str = ""
    #: Platform tag written on every lead
    platform: str = ""
    #: Payload key holding the provider-assigned id
    external_id_key: str = "id"

    def prepare(self, since: datetime, until: datetime, **options: Any) -> None:
        """Called once at the start of every pass, before the first page."""
        return None

    @abstractmethod
    def default_since(self, now: datetime) -> datetime:
        """Window start used when neither an explicit value nor a checkpoint exists."""

    def override_since(self) -> Optional[datetime]:
        """Window start forced by configuration, if any."""
        return None

    @abstractmethod
    def fetch_page(
        self,
        since: datetime,
        until: datetime,
        cursor: Any,
        page_size: int,
    ) -> Page:
        """Fetch one page starting at `cursor` (None for the first page)."""

    @abstractmethod
    def normalize(self, record: Dict[str, Any]) -> Lead:
        """Map a raw record onto a canonical Lead."""

    @abstractmethod
    def record_time(self, record: Dict[str, Any]) -> Optional[datetime]:
        """Source-side creation time of a raw record."""

    def external_id(self, record: Dict[str, Any]) -> Optional[str]:
        return external_id_for(self.platform, record)
