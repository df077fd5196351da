"""Tests for raw record normalization."""

import json
from datetime import date, datetime

import pytest
from factories import make_raw_record, model_line

from lapsewatch.analysis.normalizer import normalize_record, parse_source_datetime
from lapsewatch.core.errors import MalformedRecord
from lapsewatch.domain.models import EntitlementCategory, EntitlementLine, RequestType


def test_salesforce_shape_is_normalized():
    raw = make_raw_record(
        models=[model_line("IC-DATABASE", "2026-03-31", productModifier="PRO", quantity="5")],
        data=[{"productCode": "DATA-US", "endDate": "2026-01-31"}],
        apps=[{"name": "Workbench", "endDate": "2025-12-31T00:00:00.000+0000"}],
    )

    record = normalize_record(raw)

    assert record.id == "a0X000000000001"
    assert record.name == "PS-1001"
    assert record.account_id == "001ACME"
    assert record.account_name == "Acme Corp"
    assert record.request_type is RequestType.new
    assert record.region == "us-east"
    assert record.tenant_name == "acme"
    assert record.created_at == datetime(2025, 1, 10, 9, 0, 0)
    assert record.parse_warning is None
    assert record.raw_payload is None

    by_category = {line.category: line for line in record.lines}
    model = by_category[EntitlementCategory.model]
    assert model.product_code == "IC-DATABASE"
    assert model.modifier == "PRO"
    assert model.quantity == 5
    assert model.end_date == date(2026, 3, 31)
    assert by_category[EntitlementCategory.data].product_code == "DATA-US"
    # App lines fall back to the display name for their code
    assert by_category[EntitlementCategory.app].product_code == "Workbench"
    assert by_category[EntitlementCategory.app].end_date == date(2025, 12, 31)


def test_legacy_flat_payload_shape():
    payload = {
        "region": "eu-west",
        "preferredSubdomain1": "globex",
        "productEntitlements": [{"productCode": "IC-INDEX", "endDate": "2026-06-30"}],
        "dataEntitlements": [{"code": "DATA-EU", "end_date": "2026-06-30"}],
    }
    raw = {
        "id": "rec-2",
        "name": "PS-2000",
        "accountId": "001GLOBEX",
        "accountName": "Globex",
        "status": "Pending",
        "requestType": "Update",
        "createdAt": "2025-02-01T00:00:00Z",
        "lastModifiedAt": "2025-02-02T00:00:00Z",
        "payload": payload,
    }

    record = normalize_record(raw)

    assert record.account_name == "Globex"
    assert record.request_type is RequestType.update
    assert record.region == "eu-west"
    assert record.tenant_name == "globex"
    assert {line.product_code for line in record.lines} == {"IC-INDEX", "DATA-EU"}


def test_both_model_locations_are_concatenated():
    payload = {
        "properties": {
            "provisioningDetail": {
                "entitlements": {"modelEntitlements": [model_line("A", "2026-01-01")]}
            }
        },
        "modelEntitlements": [model_line("B", "2026-01-01")],
    }
    record = normalize_record(make_raw_record(payload=json.dumps(payload)))

    assert sorted(line.product_code for line in record.lines) == ["A", "B"]


def test_line_without_end_date_is_perpetual():
    record = normalize_record(
        make_raw_record(models=[{"productCode": "PERPETUAL"}, model_line("IC-X", "2026-01-01")])
    )

    by_code = {line.product_code: line for line in record.lines}
    assert set(by_code) == {"PERPETUAL", "IC-X"}
    assert by_code["PERPETUAL"].end_date is None
    assert by_code["PERPETUAL"].is_perpetual
    assert not by_code["IC-X"].is_perpetual
    assert record.parse_warning is None


def test_stored_line_without_end_date_loads_as_perpetual():
    line = EntitlementLine.from_dict({"product_code": "IC-X", "category": "model"})

    assert line.end_date is None
    assert line.is_perpetual
    assert EntitlementLine.from_dict(line.to_dict()) == line


def test_invalid_payload_json_keeps_record_with_warning():
    record = normalize_record(make_raw_record(payload="{not json"))

    assert record.lines == ()
    assert record.parse_warning is not None
    assert "not valid JSON" in record.parse_warning
    assert record.raw_payload == "{not json"


def test_bad_line_date_is_flagged_not_fatal():
    record = normalize_record(
        make_raw_record(
            models=[model_line("IC-BAD", "31/12/2026"), model_line("IC-GOOD", "2026-12-31")]
        )
    )

    assert [line.product_code for line in record.lines] == ["IC-GOOD"]
    assert "IC-BAD" in record.parse_warning
    assert record.raw_payload is not None


def test_model_line_without_code_is_flagged():
    record = normalize_record(
        make_raw_record(models=[{"name": "Nameless", "endDate": "2026-01-01"}])
    )

    assert record.lines == ()
    assert "without product code" in record.parse_warning


def test_inverted_window_is_flagged_not_rejected():
    record = normalize_record(
        make_raw_record(models=[model_line("IC-X", "2025-01-01", start="2026-01-01")])
    )

    assert len(record.lines) == 1
    assert record.data_quality_flags == ("inverted_window:model:IC-X",)


def test_missing_id_raises_malformed():
    raw = make_raw_record()
    del raw["Id"]

    with pytest.raises(MalformedRecord):
        normalize_record(raw)


def test_missing_account_raises_malformed():
    raw = make_raw_record()
    del raw["Account__c"]

    with pytest.raises(MalformedRecord) as exc_info:
        normalize_record(raw)
    assert exc_info.value.details["record_id"] == "a0X000000000001"


def test_unparsable_timestamp_raises_malformed():
    with pytest.raises(MalformedRecord):
        normalize_record(make_raw_record(created="yesterday"))


@pytest.mark.parametrize(
    "raw_action,expected",
    [
        ("New", RequestType.new),
        ("Update", RequestType.update),
        ("Deprovision", RequestType.deprovision),
        ("Tenant Deprovisioning", RequestType.deprovision),
        ("Something else", RequestType.other),
        (None, RequestType.other),
    ],
)
def test_request_type_parsing(raw_action, expected):
    assert RequestType.parse(raw_action) is expected


def test_source_datetimes_become_naive_utc():
    assert parse_source_datetime("2025-01-10T09:00:00.000+0200") == datetime(2025, 1, 10, 7, 0, 0)
    assert parse_source_datetime("2025-01-10T09:00:00Z") == datetime(2025, 1, 10, 9, 0, 0)
    assert parse_source_datetime(None) is None
