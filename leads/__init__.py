"""
Lead management module for the lead sync service.

Handles normalizing, validating and incrementally syncing leads from
external sources.
"""

from .normalizer import (
    Lead,
    ValidationError,
    first_present,
    normalize_knowlarity_record,
    normalize_marketplace_payload,
    normalize_meta_lead,
    parse_timestamp,
    validate_lead,
)
from .sources import (
    ConfigurationError,
    LeadSource,
    LeadSourceError,
    Page,
    env_flag,
)
from .sync import (
    LeadSync,
    SyncInProgressError,
    SyncSummary,
)

__all__ = [
    "Lead",
    "ValidationError",
    "first_present",
    "normalize_knowlarity_record",
    "normalize_marketplace_payload",
    "normalize_meta_lead",
    "parse_timestamp",
    "validate_lead",
    "ConfigurationError",
    "LeadSource",
    "LeadSourceError",
    "Page",
    "env_flag",
    "LeadSync",
    "SyncInProgressError",
    "SyncSummary",
]
