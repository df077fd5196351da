"""
Salesforce REST query API record source.

Token acquisition happens outside this package; the source is handed an
instance URL and a bearer token.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog
from circuitbreaker import CircuitBreakerError

from lapsewatch.clients.base import BaseHTTPClient, PermanentHTTPError, RetryableHTTPError
from lapsewatch.config import Settings
from lapsewatch.core.errors import ConfigurationError, SourceUnavailable
from lapsewatch.sources.base import RecordFilter, RecordPage

logger = structlog.get_logger()

RECORD_FIELDS = (
    "Id",
    "Name",
    "Account__c",
    "Account__r.Name",
    "Status__c",
    "TenantRequestAction__c",
    "Tenant_Name__c",
    "Payload_Data__c",
    "CreatedDate",
    "LastModifiedDate",
)


def escape_soql(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def build_query(record_filter: RecordFilter) -> str:
    soql = f"SELECT {', '.join(RECORD_FIELDS)} FROM Prof_Services_Request__c"
    clauses = []
    if record_filter.name_prefix:
        clauses.append(f"Name LIKE '{escape_soql(record_filter.name_prefix)}%'")
    if record_filter.modified_since is not None:
        stamp = record_filter.modified_since.strftime("%Y-%m-%dT%H:%M:%SZ")
        clauses.append(f"LastModifiedDate >= {stamp}")
    if clauses:
        soql += " WHERE " + " AND ".join(clauses)
    return soql + " ORDER BY LastModifiedDate ASC, Id ASC"


class SalesforceRecordSource(BaseHTTPClient):
    """Pages through ``Prof_Services_Request__c`` following ``nextRecordsUrl``."""

    def __init__(
        self,
        instance_url: str,
        access_token: str,
        *,
        api_version: str = "v59.0",
        page_size: int = 200,
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_factor: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            instance_url,
            timeout=timeout,
            max_retries=max_retries,
            backoff_factor=backoff_factor,
            transport=transport,
        )
        self._access_token = access_token
        self._api_version = api_version
        self._page_size = page_size

    @classmethod
    def from_settings(cls, settings: Settings) -> SalesforceRecordSource:
        if not settings.salesforce_instance_url or not settings.salesforce_access_token:
            raise ConfigurationError(
                "Salesforce instance URL and access token are required",
                {"setting": "LAPSEWATCH_SALESFORCE_INSTANCE_URL"},
            )
        return cls(
            settings.salesforce_instance_url,
            settings.salesforce_access_token,
            api_version=settings.salesforce_api_version,
            page_size=settings.source_page_size,
            timeout=settings.http_timeout,
            max_retries=settings.http_max_retries,
            backoff_factor=settings.http_retry_backoff_factor,
        )

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Accept": "application/json",
            "Sforce-Query-Options": f"batchSize={self._page_size}",
        }

    async def fetch_page(
        self, record_filter: RecordFilter, cursor: str | None = None
    ) -> RecordPage:
        if cursor:
            path, params = cursor, None
        else:
            path = f"/services/data/{self._api_version}/query"
            params = {"q": build_query(record_filter)}

        try:
            body: dict[str, Any] = await self.get(path, params=params)
        except (RetryableHTTPError, PermanentHTTPError) as exc:
            logger.error("record_source_unavailable", path=path, status=exc.status_code)
            raise SourceUnavailable(
                "Salesforce query failed",
                {"path": path, "status": exc.status_code, "error": str(exc)},
            ) from exc
        except CircuitBreakerError as exc:
            logger.error("record_source_circuit_open", path=path)
            raise SourceUnavailable("Salesforce circuit open", {"path": path}) from exc

        records = [
            {k: v for k, v in record.items() if k != "attributes"}
            for record in body.get("records", [])
        ]
        next_cursor = None if body.get("done", True) else body.get("nextRecordsUrl")
        logger.debug(
            "record_page_fetched",
            records=len(records),
            total_size=body.get("totalSize"),
            has_more=next_cursor is not None,
        )
        return RecordPage(records=records, next_cursor=next_cursor)

