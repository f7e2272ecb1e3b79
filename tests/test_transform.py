import json
from datetime import date, datetime, timezone

import pytest

from locations.etl import transform
from locations.models import LocationRecord, Status


def test_record_from_dict_maps_external_names():
    record = transform.record_from_dict(
        {
            "id": 42,
            "client_id": 7,
            "storeCode": " S-001 ",
            "businessName": "Acme",
            "additionalCategories": "Tools, Paint, ",
            "fromTheBusiness": "Family owned",
            "menuURL": "<https://acme.example.com/menu>",
            "latitude": "52.5",
            "longitude": "4°53'E",
            "openingDate": "2025-06-01",
            "isAsync": "false",
            "temporarilyClosed": 1,
            "status": "ACTIVE",
            "unknownColumn": "ignored",
            "address_line2": "",
        }
    )

    assert record.record_id == "42"
    assert record.tenant_id == "7"
    assert record.store_code == "S-001"
    assert record.additional_categories == ["Tools", "Paint"]
    assert record.description == "Family owned"
    assert record.menu_url == "https://acme.example.com/menu"
    assert record.latitude == 52.5
    assert record.longitude == "4°53'E"
    assert record.opening_date == date(2025, 6, 1)
    assert record.is_async is False
    assert record.temporarily_closed is True
    assert record.status is Status.ACTIVE
    assert record.address_line2 is None


def test_record_from_dict_reads_social_list_export():
    record = transform.record_from_dict(
        {
            "socialMediaUrls": [
                {"name": "url_facebook", "url": "https://facebook.com/acme"},
                {"name": "url_instagram", "url": None},
            ]
        },
        tenant_id="t1",
    )

    assert record.social_media_urls == {"facebook": "https://facebook.com/acme", "instagram": None}


def test_record_from_dict_requires_tenant():
    with pytest.raises(ValueError):
        transform.record_from_dict({"storeCode": "S-001"})


def test_normalize_for_write_canonicalises_hours():
    record = LocationRecord(
        tenant_id="t1",
        monday_hours="Closed",
        tuesday_hours="",
        wednesday_hours=" 9:00-17:00",
        thursday_hours="9am-5pm",
        special_hours="closed",
    )

    transform.normalize_for_write(record)

    assert record.monday_hours == "x"
    assert record.tuesday_hours == "x"
    assert record.wednesday_hours == "09:00-17:00"
    assert record.thursday_hours == "9am-5pm"
    assert record.special_hours is None


@pytest.mark.parametrize(
    "field, value, expected",
    [
        ("business_name", None, None),
        ("business_name", "", None),
        ("business_name", "Acme", "Acme"),
        ("additional_categories", [], None),
        ("additional_categories", ["b", "a"], '["b", "a"]'),
        ("social_media_urls", {"x": "u2", "facebook": "u1"}, '{"facebook": "u1", "x": "u2"}'),
        ("is_async", False, "false"),
        ("opening_date", date(2025, 6, 1), "2025-06-01"),
        ("status", Status.ACTIVE, "active"),
        ("latitude", 52.5, "52.5"),
        ("monday_hours", "Closed", "x"),
        ("monday_hours", "", "x"),
        ("monday_hours", None, "x"),
    ],
)
def test_serialize_value(field, value, expected):
    assert transform.serialize_value(field, value) == expected


@pytest.mark.parametrize(
    "field, value",
    [
        ("additional_categories", ["Tools", "Paint"]),
        ("social_media_urls", {"facebook": "https://facebook.com/acme"}),
        ("temporarily_closed", True),
        ("opening_date", date(2025, 6, 1)),
        ("status", Status.PENDING),
        ("longitude", 4.89),
        ("city", "Springfield"),
    ],
)
def test_deserialize_inverts_serialize(field, value):
    assert transform.deserialize_value(field, transform.serialize_value(field, value)) == value


def test_record_to_dict_is_json_friendly():
    record = LocationRecord(
        tenant_id="t1",
        record_id="r1",
        opening_date=date(2025, 6, 1),
        created_at=datetime(2025, 3, 5, tzinfo=timezone.utc),
    )

    data = transform.record_to_dict(record)

    assert json.loads(json.dumps(data))["opening_date"] == "2025-06-01"
    assert data["status"] == "pending"
    assert data["created_at"] == "2025-03-05T00:00:00+00:00"
    assert transform.record_from_dict(data) == record


def test_identity_snapshot():
    record = LocationRecord(tenant_id="t1", store_code="S-001", business_name="Acme")

    assert json.loads(transform.identity_snapshot(record)) == {"store_code": "S-001", "business_name": "Acme"}


def test_numeric_text_columns_become_strings():
    record = transform.record_from_dict(
        {
            "storeCode": 1001,
            "primaryPhone": 4312362933.0,
            "postalCode": 62704,
            "description": 42,
            "latitude": 39.78,
            "temporarilyClosed": 0,
        },
        tenant_id="t1",
    )

    assert record.store_code == "1001"
    assert record.primary_phone == "4312362933"
    assert record.postal_code == "62704"
    assert record.description == "42"
    assert record.latitude == 39.78
    assert record.temporarily_closed is False
