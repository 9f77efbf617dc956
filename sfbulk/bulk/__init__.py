"""
Bulk API 2.0 job lifecycle: create, upload, close, await, fetch results.
"""

from sfbulk.bulk.client import BulkApiClient, get_bulk_client
from sfbulk.bulk.exceptions import BulkJobStateError, JobWaitTimeoutError
from sfbulk.bulk.models import (
    BulkOperation,
    ColumnDelimiter,
    ContentFormat,
    IngestJobResult,
    Job,
    JobKind,
    JobState,
    JobWaitResult,
    LineEnding,
    ParallelResultsBatch,
    QueryJobResult,
    QueryResultsPage,
)
from sfbulk.bulk.results import JobResultSet, ResultStream, encode_csv, parse_csv

__all__ = [
    # Client
    "BulkApiClient",
    "get_bulk_client",
    # Exceptions
    "BulkJobStateError",
    "JobWaitTimeoutError",
    # Models
    "BulkOperation",
    "ColumnDelimiter",
    "ContentFormat",
    "IngestJobResult",
    "Job",
    "JobKind",
    "JobState",
    "JobWaitResult",
    "LineEnding",
    "ParallelResultsBatch",
    "QueryJobResult",
    "QueryResultsPage",
    # Results
    "JobResultSet",
    "ResultStream",
    "encode_csv",
    "parse_csv",
]
