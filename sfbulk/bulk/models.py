"""
Data models for Bulk API 2.0 jobs.

Server values (state, operation, delimiter, ...) are parsed into closed
enums. A value Salesforce sends that we do not know is a protocol change and
raises SalesforceSerializationError; a caller value we do not know raises
SalesforceValidationError before any request is made.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any, Type, TypeVar

from sfbulk.bulk.exceptions import BulkJobStateError, JobWaitTimeoutError
from sfbulk.integrations.salesforce.exceptions import (
    SalesforceSerializationError,
    SalesforceValidationError,
)

E = TypeVar("E", bound=Enum)


def _parse_server_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        raise SalesforceSerializationError(
            f"Unrecognized {field_name} from Salesforce: {value!r}"
        ) from None


def _parse_caller_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise SalesforceValidationError(
            f"Invalid {field_name} {value!r} (expected one of: {allowed})"
        ) from None


class JobKind(str, Enum):
    """Bulk API 2.0 job family; the value is the URL segment."""

    INGEST = "ingest"
    QUERY = "query"


class BulkOperation(str, Enum):
    """Operation performed by a bulk job."""

    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"
    HARD_DELETE = "hardDelete"
    QUERY = "query"
    QUERY_ALL = "queryAll"

    @classmethod
    def parse(cls, value: Any) -> "BulkOperation":
        return _parse_caller_enum(cls, value, "operation")

    @property
    def is_query(self) -> bool:
        return self in (BulkOperation.QUERY, BulkOperation.QUERY_ALL)

    @property
    def kind(self) -> JobKind:
        return JobKind.QUERY if self.is_query else JobKind.INGEST


class JobState(str, Enum):
    """Server-side state of a bulk job."""

    OPEN = "Open"
    UPLOAD_COMPLETE = "UploadComplete"
    IN_PROGRESS = "InProgress"
    JOB_COMPLETE = "JobComplete"
    FAILED = "Failed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.JOB_COMPLETE, JobState.FAILED, JobState.ABORTED)

    @property
    def is_success(self) -> bool:
        return self == JobState.JOB_COMPLETE

    @property
    def rank(self) -> int:
        """Position in the lifecycle; terminal states share the last rank."""
        if self.is_terminal:
            return 3
        return {
            JobState.OPEN: 0,
            JobState.UPLOAD_COMPLETE: 1,
            JobState.IN_PROGRESS: 2,
        }[self]


class ContentType(str, Enum):
    CSV = "CSV"


class ColumnDelimiter(str, Enum):
    """CSV column delimiter."""

    COMMA = "COMMA"
    TAB = "TAB"
    SEMICOLON = "SEMICOLON"
    PIPE = "PIPE"
    BACKQUOTE = "BACKQUOTE"
    CARET = "CARET"

    @property
    def char(self) -> str:
        return {
            ColumnDelimiter.COMMA: ",",
            ColumnDelimiter.TAB: "\t",
            ColumnDelimiter.SEMICOLON: ";",
            ColumnDelimiter.PIPE: "|",
            ColumnDelimiter.BACKQUOTE: "`",
            ColumnDelimiter.CARET: "^",
        }[self]


class LineEnding(str, Enum):
    """CSV line ending."""

    LF = "LF"
    CRLF = "CRLF"

    @property
    def chars(self) -> str:
        return "\r\n" if self == LineEnding.CRLF else "\n"


@dataclass(frozen=True)
class ContentFormat:
    """Payload format of a job's uploads and results."""

    content_type: ContentType = ContentType.CSV
    column_delimiter: ColumnDelimiter = ColumnDelimiter.COMMA
    line_ending: LineEnding = LineEnding.LF

    def to_dict(self) -> Dict[str, str]:
        return {
            "contentType": self.content_type.value,
            "columnDelimiter": self.column_delimiter.value,
            "lineEnding": self.line_ending.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentFormat":
        return cls(
            content_type=_parse_server_enum(
                ContentType, data.get("contentType", "CSV"), "contentType"
            ),
            column_delimiter=_parse_server_enum(
                ColumnDelimiter, data.get("columnDelimiter", "COMMA"), "columnDelimiter"
            ),
            line_ending=_parse_server_enum(
                LineEnding, data.get("lineEnding", "LF"), "lineEnding"
            ),
        )


def _normalize_api_version(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return f"{float(value):.1f}"
    return str(value)


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SalesforceSerializationError(
            f"Expected an integer for {key}, got {value!r}"
        ) from None


@dataclass(frozen=True)
class Job:
    """
    Snapshot of a bulk job as last observed on the server.

    Snapshots are never edited: every status observation produces a new
    Job, and advance() decides whether it may replace the previous one.
    """

    id: str
    kind: JobKind
    operation: BulkOperation
    state: JobState
    object: Optional[str] = None
    content_format: ContentFormat = field(default_factory=ContentFormat)
    query: Optional[str] = None
    external_id_field: Optional[str] = None
    number_records_processed: Optional[int] = None
    number_records_failed: Optional[int] = None
    created_date: Optional[str] = None
    system_modstamp: Optional[str] = None
    total_processing_time: Optional[int] = None
    api_version: Optional[str] = None
    concurrency_mode: Optional[str] = None
    error_message: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        """
        Parse a job info response.

        Raises:
            SalesforceSerializationError: Missing id or unknown enum values
        """
        if not isinstance(data, dict) or not data.get("id"):
            raise SalesforceSerializationError("Job info response has no id")

        operation = _parse_server_enum(BulkOperation, data.get("operation"), "operation")

        return cls(
            id=str(data["id"]),
            kind=operation.kind,
            operation=operation,
            state=_parse_server_enum(JobState, data.get("state"), "state"),
            object=data.get("object"),
            content_format=ContentFormat.from_dict(data),
            query=data.get("query"),
            external_id_field=data.get("externalIdFieldName"),
            number_records_processed=_optional_int(data, "numberRecordsProcessed"),
            number_records_failed=_optional_int(data, "numberRecordsFailed"),
            created_date=data.get("createdDate"),
            system_modstamp=data.get("systemModstamp"),
            total_processing_time=_optional_int(data, "totalProcessingTime"),
            api_version=_normalize_api_version(data.get("apiVersion")),
            concurrency_mode=data.get("concurrencyMode"),
            error_message=data.get("errorMessage"),
        )

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_successful(self) -> bool:
        return self.state.is_success

    @property
    def number_records_successful(self) -> Optional[int]:
        if self.number_records_processed is None or self.number_records_failed is None:
            return None
        return max(self.number_records_processed - self.number_records_failed, 0)

    def advance(self, observed: "Job") -> "Job":
        """
        Replace this snapshot with a newer observation of the same job.

        Raises:
            BulkJobStateError: Different job, a terminal job changing state,
                or a state moving backwards
        """
        if observed.id != self.id:
            raise BulkJobStateError(
                f"Observed job {observed.id} does not match job {self.id}",
                job_id=self.id,
                state=self.state.value,
            )

        if self.state.is_terminal and observed.state != self.state:
            raise BulkJobStateError(
                f"Job {self.id} is already {self.state.value}, "
                f"cannot become {observed.state.value}",
                job_id=self.id,
                state=self.state.value,
            )

        if observed.state.rank < self.state.rank:
            raise BulkJobStateError(
                f"Job {self.id} state regressed from {self.state.value} "
                f"to {observed.state.value}",
                job_id=self.id,
                state=self.state.value,
            )

        return observed


@dataclass(frozen=True)
class QueryResultsPage:
    """One page of query results."""

    csv_data: str
    locator: Optional[str] = None
    number_of_records: Optional[int] = None

    @property
    def has_more(self) -> bool:
        return self.locator is not None


@dataclass(frozen=True)
class ParallelResultsBatch:
    """Result URLs handed out by the parallelResults endpoint."""

    result_urls: List[str] = field(default_factory=list)
    next_records_url: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParallelResultsBatch":
        return cls(
            result_urls=list(data.get("resultUrl") or []),
            next_records_url=data.get("nextRecordsUrl"),
        )


@dataclass(frozen=True)
class JobWaitResult:
    """
    Outcome of await_completion.

    A timeout is reported here rather than raised; the job is still
    running server-side and the caller decides whether to keep waiting,
    abort or give up.
    """

    job: Job
    timed_out: bool
    elapsed_seconds: float
    poll_count: int
    max_wait: Optional[float] = None

    @property
    def is_successful(self) -> bool:
        return not self.timed_out and self.job.is_successful

    def raise_for_timeout(self) -> Job:
        """Return the job, or raise JobWaitTimeoutError if the wait timed out."""
        if self.timed_out:
            raise JobWaitTimeoutError(
                job_id=self.job.id,
                max_wait=self.max_wait if self.max_wait is not None else self.elapsed_seconds,
                last_state=self.job.state.value,
            )
        return self.job


@dataclass
class IngestJobResult:
    """Result of a complete ingest flow."""

    job: Job
    successful_records: List[Dict[str, str]] = field(default_factory=list)
    failed_records: List[Dict[str, str]] = field(default_factory=list)
    unprocessed_records: List[Dict[str, str]] = field(default_factory=list)

    @property
    def is_successful(self) -> bool:
        return self.job.is_successful

    @property
    def success_rate(self) -> float:
        processed = self.job.number_records_processed or 0
        if processed == 0:
            return 1.0
        return (self.job.number_records_successful or 0) / processed

    @property
    def has_failures(self) -> bool:
        return bool(self.job.number_records_failed) or bool(self.failed_records)


@dataclass
class QueryJobResult:
    """Result of a complete query flow."""

    job: Job
    records: List[Dict[str, str]] = field(default_factory=list)

    @property
    def is_successful(self) -> bool:
        return self.job.is_successful

    @property
    def record_count(self) -> int:
        return len(self.records)
