"""
CSV encoding for uploads and paginated result streams.

Results are never cached: a ResultStream pulls one page at a time from the
server, following the Sforce-Locator continuation token until it is gone.
"""

import csv
import io
import logging
from collections import abc, deque
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Sequence,
    Union,
)

from sfbulk.bulk.models import ContentFormat, Job, QueryResultsPage
from sfbulk.integrations.salesforce.exceptions import SalesforceValidationError

logger = logging.getLogger(__name__)

Row = Union[Mapping[str, Any], Sequence[Any]]
PageFetcher = Callable[[Optional[str]], Awaitable[QueryResultsPage]]


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def encode_csv(rows: Iterable[Row], content_format: Optional[ContentFormat] = None) -> str:
    """
    Encode rows as CSV using the job's delimiter and line ending.

    Rows are either mappings (the first row's keys become the header) or
    sequences (the first row is taken as the header).

    Raises:
        SalesforceValidationError: Empty input, rows of mixed shape, unknown
            columns, or sequence rows that do not match the header length
    """
    content_format = content_format or ContentFormat()
    buffer = io.StringIO()
    writer = csv.writer(
        buffer,
        delimiter=content_format.column_delimiter.char,
        lineterminator=content_format.line_ending.chars,
    )

    header: Optional[List[str]] = None
    mapping_rows = False
    for row in rows:
        if isinstance(row, (str, bytes)):
            raise SalesforceValidationError("CSV rows must be mappings or sequences, not strings")

        is_mapping = isinstance(row, abc.Mapping)
        if header is None:
            mapping_rows = is_mapping
            header = [str(column) for column in row]
            writer.writerow(header)
            if not is_mapping:
                continue
        elif is_mapping != mapping_rows:
            raise SalesforceValidationError("Rows of mixed shape: use all mappings or all sequences")

        if is_mapping:
            unknown = set(row.keys()) - set(header)
            if unknown:
                raise SalesforceValidationError(
                    f"Row has columns not in header: {sorted(unknown)}"
                )
            writer.writerow([_cell(row.get(column)) for column in header])
        else:
            values = list(row)
            if len(values) != len(header):
                raise SalesforceValidationError(
                    f"Row has {len(values)} values, header has {len(header)} columns"
                )
            writer.writerow([_cell(v) for v in values])

    if header is None:
        raise SalesforceValidationError("Cannot upload an empty set of rows")

    return buffer.getvalue()


def parse_csv(text: str, content_format: Optional[ContentFormat] = None) -> List[Dict[str, str]]:
    """Parse one CSV page (header row included) into dict records."""
    if not text or not text.strip():
        return []

    content_format = content_format or ContentFormat()
    reader = csv.DictReader(
        io.StringIO(text, newline=""),
        delimiter=content_format.column_delimiter.char,
    )
    return [dict(row) for row in reader]


class ResultStream:
    """
    Forward-only, single-use async iterator over result records.

    Usage:
        async for record in stream:
            ...
        records = await stream.collect()
    """

    def __init__(
        self,
        fetch_page: Optional[PageFetcher],
        content_format: Optional[ContentFormat] = None,
        name: str = "results",
    ):
        self._fetch_page = fetch_page
        self._content_format = content_format or ContentFormat()
        self._buffer: Deque[Dict[str, str]] = deque()
        self._locator: Optional[str] = None
        self._exhausted = fetch_page is None
        self.name = name
        self.pages_fetched = 0
        self.records_yielded = 0

    @classmethod
    def empty(cls, name: str = "results") -> "ResultStream":
        return cls(fetch_page=None, name=name)

    @property
    def exhausted(self) -> bool:
        return self._exhausted and not self._buffer

    def __aiter__(self) -> AsyncIterator[Dict[str, str]]:
        return self

    async def __anext__(self) -> Dict[str, str]:
        while not self._buffer:
            if self._exhausted:
                raise StopAsyncIteration
            await self._load_next_page()

        self.records_yielded += 1
        return self._buffer.popleft()

    async def _load_next_page(self) -> None:
        page = await self._fetch_page(self._locator)
        self.pages_fetched += 1
        self._buffer.extend(parse_csv(page.csv_data, self._content_format))
        self._locator = page.locator
        if page.locator is None:
            self._exhausted = True

        logger.debug(
            "Fetched result page",
            extra={
                "stream": self.name,
                "page": self.pages_fetched,
                "has_more": page.locator is not None,
            },
        )

    async def collect(self) -> List[Dict[str, str]]:
        """Drain the remaining records into a list."""
        return [record async for record in self]

    def __repr__(self) -> str:
        return (
            f"ResultStream(name={self.name!r}, pages_fetched={self.pages_fetched}, "
            f"exhausted={self.exhausted})"
        )


@dataclass
class JobResultSet:
    """Independent result streams of one terminal job."""

    job: Job
    successful: ResultStream
    failed: ResultStream
    unprocessed: ResultStream
