"""
Bulk API 2.0 job lifecycle client.

This client handles:
- Creating ingest and query jobs
- Uploading CSV data and closing ingest jobs
- Polling jobs to a terminal state within a bounded wait
- Streaming successful / failed / unprocessed results page by page
- Aborting and deleting jobs

Lifecycle: Open -> UploadComplete -> InProgress -> JobComplete | Failed | Aborted

Documentation: https://developer.salesforce.com/docs/atlas.en-us.api_asynch.meta/api_asynch/

Every network call goes through SalesforceClient; reads and state changes
are retried by its RetryPolicy, job creation and uploads are not.
"""

import asyncio
import logging
import random
import time
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Union

from sfbulk.auth.credentials import CredentialProvider
from sfbulk.bulk.exceptions import BulkJobStateError
from sfbulk.bulk.models import (
    BulkOperation,
    ContentFormat,
    IngestJobResult,
    Job,
    JobKind,
    JobState,
    JobWaitResult,
    ParallelResultsBatch,
    QueryJobResult,
    QueryResultsPage,
)
from sfbulk.bulk.results import JobResultSet, PageFetcher, ResultStream, Row, encode_csv, parse_csv
from sfbulk.config.client_config import ClientConfig
from sfbulk.integrations.salesforce.client import SalesforceClient, get_salesforce_client
from sfbulk.integrations.salesforce.exceptions import (
    SalesforceBusinessLogicError,
    SalesforceError,
    SalesforceNotFoundError,
    SalesforceValidationError,
)
from sfbulk.integrations.salesforce.security import is_safe_sobject_name

logger = logging.getLogger(__name__)

DEFAULT_PARALLEL_DOWNLOADS = 4

INGEST_RESULT_ENDPOINTS = {
    "successful": "successfulResults/",
    "failed": "failedResults/",
    "unprocessed": "unprocessedrecords/",
}

Payload = Union[str, bytes, Iterable[Row]]


class BulkApiClient:
    """
    Async client for the Bulk API 2.0 job lifecycle.

    Job snapshots are immutable values: every method that observes the
    server returns a new Job. Callers are responsible for ordering calls on
    a single job (create -> upload -> close -> await -> fetch).
    """

    def __init__(
        self,
        client: SalesforceClient,
        poll_interval_seconds: Optional[float] = None,
        max_wait_seconds: Optional[float] = None,
        poll_jitter: Optional[float] = None,
    ):
        """
        Initialize Bulk API client.

        Args:
            client: Transport used for every request
            poll_interval_seconds: Default interval for await_completion
            max_wait_seconds: Default max wait for await_completion
            poll_jitter: Random extra fraction added to each poll interval
        """
        config = client.config
        self._sf = client
        self._owns_client = False
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else config.poll_interval_seconds
        )
        self.max_wait_seconds = (
            max_wait_seconds if max_wait_seconds is not None else config.max_wait_seconds
        )
        self.poll_jitter = poll_jitter if poll_jitter is not None else config.poll_jitter

    @classmethod
    def from_credentials(
        cls,
        credentials: CredentialProvider,
        config: Optional[ClientConfig] = None,
    ) -> "BulkApiClient":
        """Build a client that owns (and closes) its own transport."""
        bulk = cls(SalesforceClient(credentials, config=config))
        bulk._owns_client = True
        return bulk

    @property
    def transport(self) -> SalesforceClient:
        return self._sf

    async def close(self) -> None:
        if self._owns_client:
            await self._sf.close()

    async def __aenter__(self) -> "BulkApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # =========================================================================
    # URLs
    # =========================================================================

    def _jobs_url(self, kind: JobKind) -> str:
        return self._sf.bulk_url(kind.value)

    def _job_url(self, job: Job, suffix: str = "") -> str:
        url = f"{self._jobs_url(job.kind)}/{job.id}"
        return f"{url}/{suffix}" if suffix else url

    # =========================================================================
    # Job creation
    # =========================================================================

    async def create(
        self,
        object_type: Optional[str],
        operation: Union[BulkOperation, str],
        content_format: Optional[ContentFormat] = None,
        query: Optional[str] = None,
        external_id_field: Optional[str] = None,
    ) -> Job:
        """
        Create an ingest or query job.

        Args:
            object_type: Target sObject (ignored for query jobs)
            operation: Bulk operation; query/queryAll create a query job
            content_format: Delimiter and line ending (default: CSV, COMMA, LF)
            query: SOQL for query jobs
            external_id_field: External ID field for upsert

        Returns:
            The new Job (Open for ingest, UploadComplete/InProgress for query)

        Raises:
            SalesforceValidationError: Invalid input, nothing is sent
            SalesforceError: On API errors (creation is never retried)
        """
        op = BulkOperation.parse(operation)
        content_format = content_format or ContentFormat()

        body: Dict[str, Any] = {"operation": op.value}
        if op.is_query:
            if not query or not query.strip():
                raise SalesforceValidationError(f"A query is required for {op.value} jobs")
            body["query"] = query
        else:
            if not object_type or not is_safe_sobject_name(object_type):
                raise SalesforceValidationError(f"Invalid sObject name: {object_type!r}")
            if op == BulkOperation.UPSERT and not external_id_field:
                raise SalesforceValidationError("external_id_field is required for upsert jobs")
            body["object"] = object_type
            if external_id_field:
                body["externalIdFieldName"] = external_id_field
        body.update(content_format.to_dict())

        data = await self._sf.request_json(
            "POST", self._jobs_url(op.kind), json=body, retry=False
        )
        job = Job.from_dict(data)

        logger.info(
            "Bulk job created",
            extra={
                "job_id": job.id,
                "job_kind": job.kind.value,
                "operation": job.operation.value,
                "sobject": job.object,
                "state": job.state.value,
            },
        )
        return job

    async def create_ingest_job(
        self,
        object_type: str,
        operation: Union[BulkOperation, str] = BulkOperation.INSERT,
        content_format: Optional[ContentFormat] = None,
        external_id_field: Optional[str] = None,
    ) -> Job:
        op = BulkOperation.parse(operation)
        if op.is_query:
            raise SalesforceValidationError(f"{op.value} is not an ingest operation")
        return await self.create(
            object_type, op, content_format, external_id_field=external_id_field
        )

    async def create_query_job(
        self,
        query: str,
        include_all: bool = False,
        content_format: Optional[ContentFormat] = None,
    ) -> Job:
        """Create a query job (queryAll when include_all also returns deleted/archived rows)."""
        op = BulkOperation.QUERY_ALL if include_all else BulkOperation.QUERY
        return await self.create(None, op, content_format, query=query)

    # =========================================================================
    # Ingest data
    # =========================================================================

    def _require_open_ingest(self, job: Job, action: str) -> None:
        if job.kind != JobKind.INGEST:
            raise BulkJobStateError(
                f"Cannot {action} query job {job.id}",
                job_id=job.id,
                state=job.state.value,
            )
        if job.state != JobState.OPEN:
            raise BulkJobStateError(
                f"Cannot {action} job {job.id} in state {job.state.value} (must be Open)",
                job_id=job.id,
                state=job.state.value,
            )

    async def upload_job_data(self, job: Job, payload: Payload) -> None:
        """
        Upload CSV data to an Open ingest job.

        Args:
            job: Ingest job in state Open
            payload: CSV text/bytes, or rows (mappings or sequences) to encode

        Raises:
            BulkJobStateError: Job is not an Open ingest job (nothing is sent)
            SalesforceValidationError: Empty payload
        """
        self._require_open_ingest(job, "upload data to")

        if isinstance(payload, (str, bytes)):
            body = payload
        else:
            body = encode_csv(payload, job.content_format)

        if not body or not body.strip():
            raise SalesforceValidationError("Cannot upload an empty payload")

        await self._sf.request(
            "PUT",
            self._job_url(job, "batches"),
            content=body,
            headers={"Content-Type": "text/csv"},
            expected_status={201},
            retry=False,
        )

        logger.info(
            "Bulk job data uploaded",
            extra={"job_id": job.id, "payload_bytes": len(body)},
        )

    async def close_job(self, job: Job) -> Job:
        """Mark an ingest job's upload complete so Salesforce starts processing."""
        self._require_open_ingest(job, "close")
        return await self._set_state(job, JobState.UPLOAD_COMPLETE)

    async def _set_state(self, job: Job, state: JobState) -> Job:
        data = await self._sf.request_json(
            "PATCH", self._job_url(job), json={"state": state.value}
        )
        updated = job.advance(Job.from_dict(data))

        logger.info(
            "Bulk job state changed",
            extra={
                "job_id": job.id,
                "requested_state": state.value,
                "state": updated.state.value,
            },
        )
        return updated

    # =========================================================================
    # Status
    # =========================================================================

    async def get_job(self, kind: Union[JobKind, str], job_id: str) -> Job:
        """Fetch a job snapshot by id, e.g. to resume a job started elsewhere."""
        try:
            kind = JobKind(kind)
        except ValueError:
            raise SalesforceValidationError(f"Invalid job kind: {kind!r}") from None
        if not job_id:
            raise SalesforceValidationError("job_id is required")

        data = await self._sf.request_json("GET", f"{self._jobs_url(kind)}/{job_id}")
        return Job.from_dict(data)

    async def poll_job(self, job: Job) -> Job:
        """
        Observe the job once.

        Raises:
            BulkJobStateError: Job is already terminal, or the observation
                is inconsistent with the snapshot
        """
        if job.is_terminal:
            raise BulkJobStateError(
                f"Job {job.id} is already {job.state.value}",
                job_id=job.id,
                state=job.state.value,
            )

        data = await self._sf.request_json("GET", self._job_url(job))
        observed = job.advance(Job.from_dict(data))

        logger.debug(
            "Bulk job polled",
            extra={
                "job_id": job.id,
                "state": observed.state.value,
                "records_processed": observed.number_records_processed,
            },
        )
        return observed

    async def await_completion(
        self,
        job: Job,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ) -> JobWaitResult:
        """
        Poll until the job is terminal or max_wait elapses.

        Args:
            job: Closed ingest job or query job
            poll_interval: Seconds between polls (jittered upwards)
            max_wait: Maximum seconds to wait

        Returns:
            JobWaitResult; timed_out is True if the job was still running

        Raises:
            BulkJobStateError: Ingest job still Open (it would never finish)
            SalesforceError: If a poll fails after retries
        """
        poll_interval = poll_interval if poll_interval is not None else self.poll_interval_seconds
        max_wait = max_wait if max_wait is not None else self.max_wait_seconds
        if poll_interval <= 0 or max_wait <= 0:
            raise SalesforceValidationError("poll_interval and max_wait must be positive")

        if job.is_terminal:
            return JobWaitResult(
                job=job, timed_out=False, elapsed_seconds=0.0, poll_count=0, max_wait=max_wait
            )

        if job.kind == JobKind.INGEST and job.state == JobState.OPEN:
            raise BulkJobStateError(
                f"Job {job.id} is still Open; close it before waiting for completion",
                job_id=job.id,
                state=job.state.value,
            )

        start_time = time.monotonic()
        deadline = start_time + max_wait
        poll_count = 0
        current = job

        logger.info(
            "Waiting for bulk job",
            extra={
                "job_id": job.id,
                "max_wait_seconds": max_wait,
                "poll_interval_seconds": poll_interval,
            },
        )

        while True:
            current = await self.poll_job(current)
            poll_count += 1

            if current.is_terminal:
                elapsed = time.monotonic() - start_time
                logger.info(
                    "Bulk job finished",
                    extra={
                        "job_id": job.id,
                        "state": current.state.value,
                        "records_processed": current.number_records_processed,
                        "records_failed": current.number_records_failed,
                        "elapsed_seconds": elapsed,
                        "poll_count": poll_count,
                    },
                )
                return JobWaitResult(
                    job=current,
                    timed_out=False,
                    elapsed_seconds=elapsed,
                    poll_count=poll_count,
                    max_wait=max_wait,
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break

            delay = poll_interval * (1 + random.uniform(0, self.poll_jitter))
            await asyncio.sleep(min(delay, remaining))

            if time.monotonic() >= deadline:
                break

        elapsed = time.monotonic() - start_time
        logger.warning(
            "Timed out waiting for bulk job",
            extra={
                "job_id": job.id,
                "state": current.state.value,
                "elapsed_seconds": elapsed,
                "poll_count": poll_count,
            },
        )
        return JobWaitResult(
            job=current,
            timed_out=True,
            elapsed_seconds=elapsed,
            poll_count=poll_count,
            max_wait=max_wait,
        )

    # =========================================================================
    # Results
    # =========================================================================

    def _page_fetcher(self, url: str, max_records: Optional[int] = None) -> PageFetcher:
        async def fetch(locator: Optional[str]) -> QueryResultsPage:
            params: Dict[str, Any] = {}
            if locator:
                params["locator"] = locator
            if max_records:
                params["maxRecords"] = max_records

            response = await self._sf.request(
                "GET",
                url,
                params=params or None,
                headers={"Accept": "text/csv"},
            )
            number_of_records = response.header("sforce-numberofrecords")
            return QueryResultsPage(
                csv_data=response.text,
                locator=response.locator,
                number_of_records=int(number_of_records) if number_of_records else None,
            )

        return fetch

    def _require_terminal(self, job: Job, action: str) -> None:
        if not job.is_terminal:
            raise BulkJobStateError(
                f"Cannot {action} job {job.id} in state {job.state.value} (not finished)",
                job_id=job.id,
                state=job.state.value,
            )

    async def fetch_results(self, job: Job, max_records: Optional[int] = None) -> JobResultSet:
        """
        Open fresh result streams for a terminal job.

        Nothing is requested until a stream is iterated; each call starts
        again from the first page.

        Raises:
            BulkJobStateError: Job is not terminal (nothing is sent)
        """
        self._require_terminal(job, "fetch results of")
        content_format = job.content_format

        if job.kind == JobKind.QUERY:
            return JobResultSet(
                job=job,
                successful=ResultStream(
                    self._page_fetcher(self._job_url(job, "results"), max_records),
                    content_format,
                    name="results",
                ),
                failed=ResultStream.empty("failed"),
                unprocessed=ResultStream.empty("unprocessed"),
            )

        streams = {
            name: ResultStream(
                self._page_fetcher(self._job_url(job, endpoint)),
                content_format,
                name=name,
            )
            for name, endpoint in INGEST_RESULT_ENDPOINTS.items()
        }
        return JobResultSet(job=job, **streams)

    async def get_query_results_page(
        self,
        job: Job,
        locator: Optional[str] = None,
        max_records: Optional[int] = None,
    ) -> QueryResultsPage:
        """Fetch a single raw CSV page of query results."""
        if job.kind != JobKind.QUERY:
            raise BulkJobStateError(
                f"Job {job.id} is not a query job", job_id=job.id, state=job.state.value
            )
        self._require_terminal(job, "fetch results of")

        fetch = self._page_fetcher(self._job_url(job, "results"), max_records)
        return await fetch(locator)

    async def get_parallel_result_urls(
        self,
        job: Job,
        max_records: Optional[int] = None,
    ) -> ParallelResultsBatch:
        """First batch of result URLs from the parallelResults endpoint (API 62.0+)."""
        if job.kind != JobKind.QUERY:
            raise BulkJobStateError(
                f"Job {job.id} is not a query job", job_id=job.id, state=job.state.value
            )
        self._require_terminal(job, "fetch results of")

        params = {"maxRecords": max_records} if max_records else None
        data = await self._sf.request_json(
            "GET", self._job_url(job, "parallelResults"), params=params
        )
        return ParallelResultsBatch.from_dict(data or {})

    async def fetch_query_results_parallel(
        self,
        job: Job,
        max_concurrency: int = DEFAULT_PARALLEL_DOWNLOADS,
        max_records: Optional[int] = None,
    ) -> List[Dict[str, str]]:
        """
        Download all query results through concurrent result URLs.

        Records keep the order of the result URLs. The first failed
        download is raised after the remaining downloads are cancelled.
        """
        if max_concurrency < 1:
            raise SalesforceValidationError("max_concurrency must be at least 1")

        batch = await self.get_parallel_result_urls(job, max_records)
        result_urls = list(batch.result_urls)
        while batch.next_records_url:
            data = await self._sf.request_json("GET", batch.next_records_url)
            batch = ParallelResultsBatch.from_dict(data or {})
            result_urls.extend(batch.result_urls)

        semaphore = asyncio.Semaphore(max_concurrency)

        async def download(url: str) -> List[Dict[str, str]]:
            async with semaphore:
                response = await self._sf.request("GET", url, headers={"Accept": "text/csv"})
            return parse_csv(response.text, job.content_format)

        tasks = [asyncio.ensure_future(download(url)) for url in result_urls]
        try:
            chunks = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        records = [record for chunk in chunks for record in chunk]
        logger.info(
            "Parallel query results downloaded",
            extra={
                "job_id": job.id,
                "result_url_count": len(result_urls),
                "record_count": len(records),
            },
        )
        return records

    # =========================================================================
    # Abort / delete / list
    # =========================================================================

    async def abort_job(self, job: Job) -> Job:
        """
        Abort a job.

        Aborting a job that already finished is a successful no-op. If the
        job finishes between our snapshot and the abort request, the
        rejected abort is resolved by re-reading the job.
        """
        if job.is_terminal:
            logger.debug(
                "Bulk job already finished, nothing to abort",
                extra={"job_id": job.id, "state": job.state.value},
            )
            return job

        try:
            return await self._set_state(job, JobState.ABORTED)
        except SalesforceError as e:
            if not (isinstance(e, SalesforceBusinessLogicError) or e.status_code == 400):
                raise

            observed = job.advance(await self.get_job(job.kind, job.id))
            if not observed.is_terminal:
                raise

            logger.info(
                "Bulk job finished before abort",
                extra={"job_id": job.id, "state": observed.state.value},
            )
            return observed

    async def delete_job(self, job: Job) -> None:
        """Delete a job; a job that no longer exists counts as deleted."""
        try:
            await self._sf.request("DELETE", self._job_url(job))
        except SalesforceNotFoundError:
            logger.info("Bulk job already deleted", extra={"job_id": job.id})
            return

        logger.info("Bulk job deleted", extra={"job_id": job.id})

    async def list_jobs(self, kind: Union[JobKind, str] = JobKind.INGEST) -> AsyncIterator[Job]:
        """Iterate over all jobs of a kind, following nextRecordsUrl."""
        try:
            kind = JobKind(kind)
        except ValueError:
            raise SalesforceValidationError(f"Invalid job kind: {kind!r}") from None

        url: Optional[str] = self._jobs_url(kind)
        while url:
            data = await self._sf.request_json("GET", url) or {}
            for record in data.get("records") or []:
                yield Job.from_dict(record)

            if data.get("done", True):
                break
            url = data.get("nextRecordsUrl")

    # =========================================================================
    # End-to-end flows
    # =========================================================================

    async def execute_ingest(
        self,
        object_type: str,
        operation: Union[BulkOperation, str],
        payload: Payload,
        content_format: Optional[ContentFormat] = None,
        external_id_field: Optional[str] = None,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ) -> IngestJobResult:
        """
        Create, upload, close and wait for an ingest job, then read its results.

        If the upload or close fails the job is aborted before the error is
        raised. Record sets are read for every terminal state, so a Failed
        job still reports its failed and unprocessed rows.

        Raises:
            JobWaitTimeoutError: Job did not finish within max_wait
        """
        job = await self.create_ingest_job(
            object_type, operation, content_format, external_id_field=external_id_field
        )

        try:
            await self.upload_job_data(job, payload)
            job = await self.close_job(job)
        except SalesforceError:
            await self._abort_after_failure(job)
            raise

        job = (await self.await_completion(job, poll_interval, max_wait)).raise_for_timeout()

        results = await self.fetch_results(job)
        successful, failed, unprocessed = await asyncio.gather(
            results.successful.collect(),
            results.failed.collect(),
            results.unprocessed.collect(),
        )
        return IngestJobResult(
            job=job,
            successful_records=successful,
            failed_records=failed,
            unprocessed_records=unprocessed,
        )

    async def execute_query(
        self,
        query: str,
        include_all: bool = False,
        content_format: Optional[ContentFormat] = None,
        poll_interval: Optional[float] = None,
        max_wait: Optional[float] = None,
    ) -> QueryJobResult:
        """
        Create a query job, wait for it and collect all records.

        Raises:
            JobWaitTimeoutError: Job did not finish within max_wait
        """
        job = await self.create_query_job(query, include_all, content_format)
        job = (await self.await_completion(job, poll_interval, max_wait)).raise_for_timeout()

        if not job.is_successful:
            return QueryJobResult(job=job)

        results = await self.fetch_results(job)
        return QueryJobResult(job=job, records=await results.successful.collect())

    async def _abort_after_failure(self, job: Job) -> None:
        try:
            await self.abort_job(job)
        except SalesforceError as e:
            logger.warning(
                "Failed to abort bulk job after a failed upload or close",
                extra={"job_id": job.id, "error": e.message},
            )


def get_bulk_client(
    credentials: Optional[CredentialProvider] = None,
    config: Optional[ClientConfig] = None,
) -> BulkApiClient:
    """
    Factory function to create a BulkApiClient with its own transport.

    Args:
        credentials: Credential provider (default: SalesforceCredentials.from_env())
        config: Client configuration (default: load_client_config())
    """
    bulk = BulkApiClient(get_salesforce_client(credentials, config))
    bulk._owns_client = True
    return bulk
