"""
Snapshot normalizer.

Converts a raw provisioning record, in any payload shape the source has
historically produced, into a canonical ProvisioningRecord. Every "which
shape did this come from" decision lives here; downstream code only sees
canonical fields.

All datetimes are returned as naive UTC.
"""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Iterable, Mapping, Sequence

import structlog

from lapsewatch.core.errors import MalformedRecord
from lapsewatch.domain.models import (
    EntitlementCategory,
    EntitlementLine,
    ProvisioningRecord,
    RequestType,
)

logger = structlog.get_logger()

# Record-level aliases, in priority order. Dotted paths walk nested mappings.
RECORD_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("Id", "id", "recordId"),
    "name": ("Name", "name", "recordName"),
    "account_id": ("Account__c", "accountId", "account_id", "AccountId"),
    "account_name": (
        "Account__r.Name",
        "Account_Name__c",
        "accountName",
        "account_name",
        "Account__c",
        "accountId",
    ),
    "status": ("Status__c", "status"),
    "request_type": ("TenantRequestAction__c", "requestType", "request_type"),
    "created_at": ("CreatedDate", "createdAt", "created_at"),
    "last_modified_at": ("LastModifiedDate", "lastModifiedAt", "last_modified_at"),
    "payload": ("Payload_Data__c", "payload", "payloadData"),
    "tenant_name": ("Tenant_Name__c", "tenantName"),
}

PAYLOAD_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "region": (
        "properties.provisioningDetail.region",
        "properties.region",
        "region",
    ),
    "tenant_name": (
        "properties.provisioningDetail.tenantName",
        "properties.tenantName",
        "preferredSubdomain1",
        "preferredSubdomain2",
        "properties.preferredSubdomain1",
        "properties.preferredSubdomain2",
        "tenantName",
    ),
}

# Each category is the concatenation of every location listed for it.
ENTITLEMENT_LOCATIONS: dict[EntitlementCategory, tuple[str, ...]] = {
    EntitlementCategory.model: (
        "properties.provisioningDetail.entitlements.modelEntitlements",
        "productEntitlements",
        "modelEntitlements",
    ),
    EntitlementCategory.data: (
        "properties.provisioningDetail.entitlements.dataEntitlements",
        "dataEntitlements",
    ),
    EntitlementCategory.app: (
        "properties.provisioningDetail.entitlements.appEntitlements",
        "appEntitlements",
    ),
}

LINE_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "end_date": ("endDate", "end_date", "EndDate"),
    "start_date": ("startDate", "start_date", "StartDate"),
    "modifier": ("productModifier", "modifier"),
    "quantity": ("quantity", "Quantity", "seats"),
    "package_name": ("packageName", "package_name", "package"),
    "product_name": ("name", "productName"),
}

# Model lines never fall back to the display name for their code.
LINE_CODE_ALIASES: dict[EntitlementCategory, tuple[str, ...]] = {
    EntitlementCategory.model: ("productCode", "code", "id"),
    EntitlementCategory.data: ("productCode", "code", "id", "name"),
    EntitlementCategory.app: ("productCode", "code", "id", "name"),
}


def _lookup(data: Mapping[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def first_present(data: Mapping[str, Any], paths: Iterable[str]) -> Any:
    for path in paths:
        value = _lookup(data, path)
        if value not in (None, ""):
            return value
    return None


def parse_source_datetime(value: Any) -> datetime | None:
    """Parse Salesforce-style timestamps (``2024-01-02T03:04:05.000+0000``)."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        elif len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit():
            text = f"{text[:-2]}:{text[-2:]}"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_source_date(value: Any) -> date | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip()[:10])


def _parse_quantity(value: Any) -> int | None:
    if value in (None, ""):
        return None
    return int(float(value))


def _decode_payload(raw_payload: Any) -> tuple[Mapping[str, Any], str | None, str | None]:
    """Return (payload, raw text, warning)."""
    if raw_payload in (None, ""):
        return {}, None, None
    if isinstance(raw_payload, Mapping):
        return raw_payload, json.dumps(raw_payload, sort_keys=True, default=str), None
    text = str(raw_payload)
    try:
        decoded = json.loads(text)
    except ValueError as exc:
        return {}, text, f"payload is not valid JSON: {exc}"
    if not isinstance(decoded, Mapping):
        return {}, text, "payload is not a JSON object"
    return decoded, text, None


def _normalize_line(
    category: EntitlementCategory, item: Mapping[str, Any]
) -> tuple[EntitlementLine | None, str | None]:
    code = first_present(item, LINE_CODE_ALIASES[category])
    if code is None:
        return None, f"{category.value} line without product code"

    try:
        # No end date means a perpetual grant.
        end_date = parse_source_date(first_present(item, LINE_FIELD_ALIASES["end_date"]))
        start_date = parse_source_date(first_present(item, LINE_FIELD_ALIASES["start_date"]))
        quantity = _parse_quantity(first_present(item, LINE_FIELD_ALIASES["quantity"]))
    except (TypeError, ValueError) as exc:
        return None, f"{category.value} line {code}: {exc}"

    modifier = first_present(item, LINE_FIELD_ALIASES["modifier"])
    package_name = first_present(item, LINE_FIELD_ALIASES["package_name"])
    product_name = first_present(item, LINE_FIELD_ALIASES["product_name"])
    return (
        EntitlementLine(
            product_code=str(code),
            category=category,
            modifier=str(modifier) if modifier is not None else None,
            start_date=start_date,
            end_date=end_date,
            quantity=quantity,
            package_name=str(package_name) if package_name is not None else None,
            product_name=str(product_name) if product_name is not None else None,
        ),
        None,
    )


def extract_lines(payload: Mapping[str, Any]) -> tuple[list[EntitlementLine], list[str]]:
    lines: list[EntitlementLine] = []
    problems: list[str] = []
    for category, locations in ENTITLEMENT_LOCATIONS.items():
        for location in locations:
            items = _lookup(payload, location)
            if items is None:
                continue
            if not isinstance(items, Sequence) or isinstance(items, (str, bytes)):
                problems.append(f"{location} is not a list")
                continue
            for item in items:
                if not isinstance(item, Mapping):
                    problems.append(f"{location} contains a non-object entry")
                    continue
                line, problem = _normalize_line(category, item)
                if problem:
                    problems.append(problem)
                if line is not None:
                    lines.append(line)
    return lines, problems


def normalize_record(raw: Mapping[str, Any]) -> ProvisioningRecord:
    """Build a canonical ProvisioningRecord from a raw source record.

    Raises MalformedRecord when the record cannot be identified at all.
    Problems confined to line-item data never raise: the record is returned
    with ``parse_warning`` set and the raw payload retained.
    """
    record_id = first_present(raw, RECORD_FIELD_ALIASES["id"])
    if record_id is None:
        raise MalformedRecord("record has no id", {"keys": sorted(raw.keys())})

    account_id = first_present(raw, RECORD_FIELD_ALIASES["account_id"])
    if account_id is None:
        raise MalformedRecord("record has no account", {"record_id": str(record_id)})

    try:
        created_at = parse_source_datetime(first_present(raw, RECORD_FIELD_ALIASES["created_at"]))
        last_modified_at = parse_source_datetime(
            first_present(raw, RECORD_FIELD_ALIASES["last_modified_at"])
        )
    except (TypeError, ValueError) as exc:
        raise MalformedRecord(
            f"record has unparsable timestamps: {exc}", {"record_id": str(record_id)}
        ) from exc

    raw_payload = first_present(raw, RECORD_FIELD_ALIASES["payload"])
    payload, raw_text, warning = _decode_payload(raw_payload)
    lines, problems = extract_lines(payload)
    if warning:
        problems.insert(0, warning)

    flags = tuple(
        f"inverted_window:{line.category.value}:{line.product_code}"
        for line in lines
        if line.has_inverted_window
    )
    raw_request_type = first_present(raw, RECORD_FIELD_ALIASES["request_type"])
    tenant_name = first_present(raw, RECORD_FIELD_ALIASES["tenant_name"]) or first_present(
        payload, PAYLOAD_FIELD_ALIASES["tenant_name"]
    )
    parse_warning = "; ".join(problems) if problems else None

    if parse_warning:
        logger.warning("record_parse_warning", record_id=str(record_id), warning=parse_warning)

    return ProvisioningRecord(
        id=str(record_id),
        name=str(first_present(raw, RECORD_FIELD_ALIASES["name"]) or record_id),
        account_id=str(account_id),
        account_name=str(first_present(raw, RECORD_FIELD_ALIASES["account_name"])),
        status=first_present(raw, RECORD_FIELD_ALIASES["status"]),
        request_type=RequestType.parse(raw_request_type),
        raw_request_type=raw_request_type,
        created_at=created_at,
        last_modified_at=last_modified_at,
        region=first_present(payload, PAYLOAD_FIELD_ALIASES["region"]),
        tenant_name=tenant_name,
        lines=tuple(lines),
        parse_warning=parse_warning,
        raw_payload=raw_text if parse_warning else None,
        data_quality_flags=flags,
    )
