from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from leads import (
    ValidationError,
    first_present,
    normalize_knowlarity_record,
    normalize_marketplace_payload,
    normalize_meta_lead,
    parse_timestamp,
    validate_lead,
)
from leads.normalizer import CARDEKHO, CARWALE, external_id_for, flatten_field_data


def test_first_present_skips_missing_and_blank_values():
    payload = {"phone": "", "mobile": None, "customer_mobile": " 98450 ", "contact_phone": "1"}
    assert first_present(payload, ["phone_number", "phone", "mobile", "customer_mobile", "contact_phone"]) == "98450"
    assert first_present(payload, ["nothing"]) is None


def test_flatten_field_data_takes_first_value():
    fields = flatten_field_data([
        {"name": "phone_number", "values": ["+911", "+912"]},
        {"name": "city", "values": "Pune"},
        {"values": ["orphan"]},
    ])
    assert fields == {"phone_number": "+911", "city": "Pune"}


def test_meta_lead_uses_fallback_chains():
    raw = {
        "id": "555",
        "created_time": "2025-03-01T10:00:00+0000",
        "form_id": "42",
        "field_data": [
            {"name": "first_name", "values": ["Asha"]},
            {"name": "last_name", "values": ["Rao"]},
            {"name": "mobile", "values": ["+919800000000"]},
            {"name": "interested_model", "values": ["Hector"]},
        ],
    }
    lead = normalize_meta_lead(raw, form_name="Test Drive")

    assert lead.platform == "Meta"
    assert lead.name == "Asha Rao"
    assert lead.phone_number == "+919800000000"
    assert lead.car_model == "Hector"
    assert lead.lead_url == "https://www.facebook.com/ads/leadgen/555"
    assert lead.payload["id"] == "555"
    assert lead.payload["form_name"] == "Test Drive"
    assert lead.payload["fields"]["mobile"] == "+919800000000"


def test_meta_lead_synthesizes_name_from_phone():
    lead = normalize_meta_lead({"id": "1", "field_data": [{"name": "phone", "values": ["+91123"]}]})
    assert lead.name == "Meta Lead +91123"


def test_meta_lead_without_phone_gets_generic_name():
    lead = normalize_meta_lead({"id": "1", "field_data": []})
    assert lead.name == "Meta Lead"
    assert lead.phone_number is None
    assert lead.lead_url == "https://www.facebook.com/ads/leadgen/1"


def test_knowlarity_record_normalization():
    record = {
        "uuid": "abc-1",
        "caller_id": "+918888888888",
        "start_time": "2025-03-01 15:30:00",
    }
    lead = normalize_knowlarity_record(record, ZoneInfo("Asia/Kolkata"))

    assert lead.platform == "Knowlarity"
    assert lead.name == "Knowlarity Lead +918888888888"
    assert lead.status == "call"
    assert lead.meta_created_at == "2025-03-01T10:00:00+00:00"
    assert lead.payload is record


def test_knowlarity_prefers_customer_number_and_call_type():
    lead = normalize_knowlarity_record({
        "customer_number": "+911",
        "caller_id": "+912",
        "business_call_type": "Missed",
    })
    assert lead.phone_number == "+911"
    assert lead.status == "Missed"


@pytest.mark.parametrize("platform", [CARDEKHO, CARWALE])
def test_marketplace_payload(platform):
    payload = {
        "customer_name": "Ravi",
        "customer_mobile": "9845012345",
        "vehicle_model": "Astor",
        "page_url": "https://example.com/lead/1",
    }
    lead = normalize_marketplace_payload(platform, payload)

    assert lead.platform == platform
    assert lead.name == "Ravi"
    assert lead.phone_number == "9845012345"
    assert lead.car_model == "Astor"
    assert lead.lead_url == "https://example.com/lead/1"


def test_marketplace_payload_does_not_invent_a_name():
    lead = normalize_marketplace_payload(CARDEKHO, {"phone": "1"})
    assert lead.name is None


def test_validate_lead_lists_missing_fields():
    lead = normalize_marketplace_payload(CARWALE, {})
    with pytest.raises(ValidationError) as exc:
        validate_lead(lead)
    assert str(exc.value) == "Missing required fields: name, phone_number"
    assert exc.value.missing == ["name", "phone_number"]


def test_to_record_omits_unset_lifecycle_fields():
    record = normalize_meta_lead({"id": "1", "field_data": []}).to_record()
    assert "status" not in record
    assert "meta_created_at" not in record
    assert record["car_model"] is None

    call = normalize_knowlarity_record({"uuid": "x", "caller_id": "1"}).to_record()
    assert call["status"] == "call"


def test_external_id_for():
    assert external_id_for("Meta", {"id": 123}) == "123"
    assert external_id_for("Knowlarity", {"uuid": " u-1 "}) == "u-1"
    assert external_id_for("Knowlarity", {"uuid": ""}) is None
    assert external_id_for("CarDekho", {"id": "1"}) is None


@pytest.mark.parametrize("value, expected", [
    ("2025-03-01T10:00:00+0000", datetime(2025, 3, 1, 10, tzinfo=timezone.utc)),
    ("2025-03-01T10:00:00Z", datetime(2025, 3, 1, 10, tzinfo=timezone.utc)),
    ("2025-03-01 15:30:00+05:30", datetime(2025, 3, 1, 10, tzinfo=timezone.utc)),
    ("2025-03-01 10:00:00", datetime(2025, 3, 1, 10, tzinfo=timezone.utc)),
    ("not a date", None),
    (None, None),
])
def test_parse_timestamp(value, expected):
    assert parse_timestamp(value) == expected
