"""
Lead Normalizer - maps inbound payloads onto the canonical lead record.

Handles payloads from:
- Meta lead ads (Graph API `field_data` lists)
- Knowlarity call logs
- CarDekho / CarWale marketplace webhooks

Each target field is resolved through an ordered list of candidate keys,
so marketplaces and CRMs that name the same thing differently still map
cleanly without per-source conditionals.

Usage:
    from leads import normalize_meta_lead, validate_lead

    lead = normalize_meta_lead(raw_lead, form_name="Hector Test Drive")
    validate_lead(lead)
    record = lead.to_record()
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, List, Optional, Sequence

META = "Meta"
KNOWLARITY = "Knowlarity"
CARDEKHO = "CarDekho"
CARWALE = "CarWale"

REQUIRED_FIELDS = ("name", "phone_number")


class ValidationError(Exception):
    """Raised when a normalized lead is missing required fields."""

    def __init__(self, missing: Sequence[str]):
        self.missing = list(missing)
        super().__init__(f"Missing required fields: {', '.join(self.missing)}")


@dataclass
class Lead:
    """Canonical lead record as stored in the leads table."""
    platform: str
    name: Optional[str]
    phone_number: Optional[str]
    car_model: Optional[str] = None
    lead_url: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    status: Optional[str] = None
    meta_created_at: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        """Row for insertion; lifecycle fields are omitted when unset."""
        record = {
            "platform": self.platform,
            "name": self.name,
            "phone_number": self.phone_number,
            "car_model": self.car_model,
            "lead_url": self.lead_url,
            "payload": self.payload,
        }
        if self.status is not None:
            record["status"] = self.status
        if self.meta_created_at is not None:
            record["meta_created_at"] = self.meta_created_at
        return record


# Candidate keys per canonical field, highest priority first
META_FIELDS = {
    "phone_number": [
        "phone_number",
        "phone",
        "mobile_phone",
        "mobile",
        "phone_number_with_country_code",
    ],
    "full_name": ["full_name", "name"],
    "first_name": ["first_name"],
    "last_name": ["last_name"],
    "car_model": ["car_model", "vehicle_model", "interested_model", "model"],
}

KNOWLARITY_FIELDS = {
    "phone_number": ["customer_number", "caller_id"],
    "status": ["business_call_type"],
}

MARKETPLACE_FIELDS = {
    "name": ["name", "customer_name", "contact_name", "full_name"],
    "phone_number": ["phone_number", "phone", "mobile", "customer_mobile", "contact_phone"],
    "car_model": ["car_model", "vehicle_model", "model"],
    "lead_url": ["lead_url", "page_url", "lead_detail_url", "url"],
}

# Where each platform keeps its provider-assigned id inside the payload
EXTERNAL_ID_KEYS = {
    META: "id",
    KNOWLARITY: "uuid",
}

_TIMESTAMP_FORMATS = (
    "%Y-%m-%dT%H:%M:%S%z",
    "%Y-%m-%dT%H:%M:%S.%f%z",
    "%Y-%m-%d %H:%M:%S%z",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
)


def first_present(mapping: Dict[str, Any], keys: Sequence[str]) -> Any:
    """Return the first non-empty value among `keys` (None if none present)."""
    for key in keys:
        value = mapping.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            value = value.strip()
            if not value:
                continue
        return value
    return None


def parse_timestamp(value: Any, default_tz: tzinfo = timezone.utc) -> Optional[datetime]:
    """
    Parse provider timestamps into aware UTC datetimes.

    Accepts datetimes, ISO-8601 strings (with `Z`, `+00:00` or `+0000`
    offsets) and `YYYY-MM-DD HH:MM:SS`. Naive values are read in
    `default_tz`.
    Returns None for anything unparseable.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        parsed = None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _TIMESTAMP_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed.astimezone(timezone.utc)


def external_id_for(platform: str, payload: Dict[str, Any]) -> Optional[str]:
    """Extract the provider-assigned id used for dedup, as a string."""
    key = EXTERNAL_ID_KEYS.get(platform)
    if key is None:
        return None
    value = payload.get(key)
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def _as_text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _synthesized_name(platform: str, phone: Optional[str]) -> str:
    return f"{platform} Lead {phone}" if phone else f"{platform} Lead"


def flatten_field_data(field_data: Optional[List[Dict[str, Any]]]) -> Dict[str, Any]:
    """Turn Graph API `field_data` entries into a name -> first value dict."""
    fields: Dict[str, Any] = {}
    for entry in field_data or []:
        key = entry.get("name")
        values = entry.get("values")
        value = values[0] if isinstance(values, list) and values else values
        if key:
            fields[key] = value
    return fields


def normalize_meta_lead(raw_lead: Dict[str, Any], form_name: Optional[str] = None) -> Lead:
    """Normalize a Meta lead ads record."""
    fields = flatten_field_data(raw_lead.get("field_data"))

    phone = _as_text(first_present(fields, META_FIELDS["phone_number"]))
    full_name = first_present(fields, META_FIELDS["full_name"])
    if not full_name:
        parts = [
            first_present(fields, META_FIELDS["first_name"]),
            first_present(fields, META_FIELDS["last_name"]),
        ]
        full_name = " ".join(str(p) for p in parts if p).strip() or None

    lead_id = raw_lead.get("id")

    return Lead(
        platform=META,
        name=full_name or _synthesized_name(META, phone),
        phone_number=phone,
        car_model=_as_text(first_present(fields, META_FIELDS["car_model"])),
        lead_url=f"https://www.facebook.com/ads/leadgen/{lead_id}" if lead_id else None,
        payload={
            "id": lead_id,
            "created_time": raw_lead.get("created_time"),
            "form_id": raw_lead.get("form_id"),
            "adgroup_id": raw_lead.get("adgroup_id"),
            "ad_id": raw_lead.get("ad_id"),
            "campaign_id": raw_lead.get("campaign_id"),
            "fields": fields,
            "form_name": form_name,
        },
    )


def normalize_knowlarity_record(record: Dict[str, Any], default_tz: tzinfo = timezone.utc) -> Lead:
    """Normalize a Knowlarity call-log entry; the call itself is the lead."""
    phone = _as_text(first_present(record, KNOWLARITY_FIELDS["phone_number"]))
    started = parse_timestamp(record.get("start_time"), default_tz)

    return Lead(
        platform=KNOWLARITY,
        name=_synthesized_name(KNOWLARITY, phone),
        phone_number=phone,
        status=first_present(record, KNOWLARITY_FIELDS["status"]) or "call",
        meta_created_at=started.isoformat() if started else None,
        payload=record,
    )


def normalize_marketplace_payload(platform: str, payload: Dict[str, Any]) -> Lead:
    """Normalize a CarDekho / CarWale webhook body. No name is synthesized."""
    return Lead(
        platform=platform,
        name=_as_text(first_present(payload, MARKETPLACE_FIELDS["name"])),
        phone_number=_as_text(first_present(payload, MARKETPLACE_FIELDS["phone_number"])),
        car_model=_as_text(first_present(payload, MARKETPLACE_FIELDS["car_model"])),
        lead_url=_as_text(first_present(payload, MARKETPLACE_FIELDS["lead_url"])),
        payload=payload,
    )


def validate_lead(lead: Lead) -> Lead:
    """Raise ValidationError unless every required field is filled."""
    missing = [name for name in REQUIRED_FIELDS if not getattr(lead, name)]
    if missing:
        raise ValidationError(missing)
    return lead
