from lapsewatch.sources.base import RecordFilter, RecordPage, RecordSource, modified_since_for
from lapsewatch.sources.memory import InMemoryRecordSource
from lapsewatch.sources.salesforce import SalesforceRecordSource

__all__ = [
    "InMemoryRecordSource",
    "RecordFilter",
    "RecordPage",
    "RecordSource",
    "SalesforceRecordSource",
    "modified_since_for",
]
