"""
Unit tests for the Bulk API 2.0 job lifecycle client.

Tests cover:
- Job creation and local validation
- Upload / close state guards
- Polling and await_completion (completion, timeout, deadline)
- Result streams for ingest and query jobs
- Abort, delete and job listing
- End-to-end ingest and query flows
"""

import asyncio
import json
import time
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from sfbulk.bulk.client import BulkApiClient, get_bulk_client
from sfbulk.bulk.exceptions import BulkJobStateError, JobWaitTimeoutError
from sfbulk.bulk.models import (
    BulkOperation,
    ColumnDelimiter,
    ContentFormat,
    Job,
    JobKind,
    JobState,
)
from sfbulk.config.client_config import ClientConfig
from sfbulk.integrations.salesforce.exceptions import (
    SalesforceBusinessLogicError,
    SalesforceHTTPError,
    SalesforceNotFoundError,
    SalesforceSerializationError,
    SalesforceValidationError,
)

BULK_BASE = "https://test.my.salesforce.com/services/data/v62.0/jobs"
JOB_ID = "7505g00000AbCdEAAV"
INVALID_STATE = [{"errorCode": "INVALIDJOBSTATE", "message": "Job is already complete"}]


@pytest.fixture
def job_response(make_response, job_payload):
    """Factory for job info responses."""
    def _make(state: str, operation: str = "insert", **extra):
        return make_response(200, json=job_payload(state, operation=operation, **extra))
    return _make


@pytest.fixture
def make_job(job_payload):
    def _make(state: str, operation: str = "insert", **extra) -> Job:
        return Job.from_dict(job_payload(state, operation=operation, **extra))
    return _make


def _sent_json(call):
    return json.loads(call.kwargs["content"])


class TestBulkClientInitialization:
    def test_defaults_from_config(self, sf_client):
        bulk = BulkApiClient(sf_client)
        assert bulk.poll_interval_seconds == sf_client.config.poll_interval_seconds
        assert bulk.max_wait_seconds == sf_client.config.max_wait_seconds
        assert bulk.transport is sf_client

    def test_explicit_overrides(self, sf_client):
        bulk = BulkApiClient(sf_client, poll_interval_seconds=1.5, max_wait_seconds=30)
        assert bulk.poll_interval_seconds == 1.5
        assert bulk.max_wait_seconds == 30

    @pytest.mark.asyncio
    async def test_owned_transport_closed(self, credentials):
        async with BulkApiClient.from_credentials(credentials) as bulk:
            pass
        assert bulk.transport._client.is_closed

    @pytest.mark.asyncio
    async def test_shared_transport_left_open(self, sf_client):
        async with BulkApiClient(sf_client):
            pass
        assert not sf_client._client.is_closed

    def test_factory(self, credentials):
        bulk = get_bulk_client(credentials, ClientConfig())
        assert bulk.transport.instance_url == "https://test.my.salesforce.com"


class TestJobCreation:
    """Tests for create / create_ingest_job / create_query_job."""

    @pytest.mark.asyncio
    async def test_create_ingest_job(self, bulk_client, sf_client, job_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = job_response("Open")

            job = await bulk_client.create_ingest_job("Account", BulkOperation.INSERT)

            assert job.state == JobState.OPEN
            assert job.kind == JobKind.INGEST
            call = mock_request.call_args
            assert call.kwargs["method"] == "POST"
            assert call.kwargs["url"] == f"{BULK_BASE}/ingest"
            assert _sent_json(call) == {
                "operation": "insert",
                "object": "Account",
                "contentType": "CSV",
                "columnDelimiter": "COMMA",
                "lineEnding": "LF",
            }

    @pytest.mark.asyncio
    async def test_create_upsert_sends_external_id(self, bulk_client, sf_client, job_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = job_response("Open", operation="upsert")

            await bulk_client.create(
                "Contact", "upsert", external_id_field="Legacy_Id__c"
            )

            assert _sent_json(mock_request.call_args)["externalIdFieldName"] == "Legacy_Id__c"

    @pytest.mark.asyncio
    async def test_create_query_job(self, bulk_client, sf_client, job_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = job_response("UploadComplete", operation="query")

            job = await bulk_client.create_query_job(
                "SELECT Id FROM Account",
                content_format=ContentFormat(column_delimiter=ColumnDelimiter.TAB),
            )

            assert job.kind == JobKind.QUERY
            assert job.state == JobState.UPLOAD_COMPLETE
            call = mock_request.call_args
            assert call.kwargs["url"] == f"{BULK_BASE}/query"
            body = _sent_json(call)
            assert body["query"] == "SELECT Id FROM Account"
            assert body["columnDelimiter"] == "TAB"
            assert "object" not in body

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs",
        [
            {"object_type": "Account; DROP", "operation": "insert"},
            {"object_type": "", "operation": "insert"},
            {"object_type": "Account", "operation": "merge"},
            {"object_type": "Account", "operation": "upsert"},
            {"object_type": None, "operation": "query"},
            {"object_type": None, "operation": "query", "query": "   "},
        ],
    )
    async def test_invalid_input_never_sent(self, bulk_client, sf_client, kwargs):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            with pytest.raises(SalesforceValidationError):
                await bulk_client.create(**kwargs)

            mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_ingest_helper_rejects_query_operation(self, bulk_client):
        with pytest.raises(SalesforceValidationError):
            await bulk_client.create_ingest_job("Account", "query")

    @pytest.mark.asyncio
    async def test_create_not_retried(self, bulk_client, sf_client, make_response):
        """Job creation is not idempotent, so a 503 is surfaced after one attempt."""
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(503, text="Service Unavailable")

            with pytest.raises(SalesforceHTTPError):
                await bulk_client.create_ingest_job("Account")

            assert mock_request.call_count == 1

    @pytest.mark.asyncio
    async def test_create_then_poll_not_terminal_before_close(
        self, bulk_client, sf_client, job_response
    ):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [job_response("Open"), job_response("Open")]

            job = await bulk_client.create_ingest_job("Account")
            polled = await bulk_client.poll_job(job)

            assert not polled.is_terminal
            assert polled.state == JobState.OPEN


class TestUploadAndClose:
    """Tests for upload_job_data and close_job."""

    @pytest.mark.asyncio
    async def test_upload_rows(self, bulk_client, sf_client, make_job, make_response):
        job = make_job("Open")
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(201)

            await bulk_client.upload_job_data(job, [{"Name": "Acme"}, {"Name": "Globex"}])

            call = mock_request.call_args
            assert call.kwargs["method"] == "PUT"
            assert call.kwargs["url"] == f"{BULK_BASE}/ingest/{JOB_ID}/batches"
            assert call.kwargs["headers"]["Content-Type"] == "text/csv"
            assert call.kwargs["content"] == b"Name\nAcme\nGlobex\n"

    @pytest.mark.asyncio
    async def test_upload_raw_csv(self, bulk_client, sf_client, make_job, make_response):
        job = make_job("Open")
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(201)

            await bulk_client.upload_job_data(job, "Name\nAcme\n")

            assert mock_request.call_args.kwargs["content"] == b"Name\nAcme\n"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["UploadComplete", "InProgress", "JobComplete", "Aborted"])
    async def test_upload_requires_open(self, bulk_client, sf_client, make_job, state):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            with pytest.raises(BulkJobStateError) as exc_info:
                await bulk_client.upload_job_data(make_job(state), "Name\nAcme\n")

            assert exc_info.value.state == state
            mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_upload_to_query_job(self, bulk_client, make_job):
        with pytest.raises(BulkJobStateError):
            await bulk_client.upload_job_data(make_job("UploadComplete", "query"), "a\n1\n")

    @pytest.mark.asyncio
    async def test_upload_empty_payload(self, bulk_client, make_job):
        with pytest.raises(SalesforceValidationError):
            await bulk_client.upload_job_data(make_job("Open"), "")

    @pytest.mark.asyncio
    async def test_upload_not_retried(self, bulk_client, sf_client, make_job, make_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(503, text="busy")

            with pytest.raises(SalesforceHTTPError):
                await bulk_client.upload_job_data(make_job("Open"), "Name\nAcme\n")

            assert mock_request.call_count == 1

    @pytest.mark.asyncio
    async def test_close_job(self, bulk_client, sf_client, make_job, job_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = job_response("UploadComplete")

            closed = await bulk_client.close_job(make_job("Open"))

            assert closed.state == JobState.UPLOAD_COMPLETE
            call = mock_request.call_args
            assert call.kwargs["method"] == "PATCH"
            assert call.kwargs["url"] == f"{BULK_BASE}/ingest/{JOB_ID}"
            assert _sent_json(call) == {"state": "UploadComplete"}

    @pytest.mark.asyncio
    async def test_close_query_job_rejected(self, bulk_client, make_job):
        with pytest.raises(BulkJobStateError):
            await bulk_client.close_job(make_job("UploadComplete", "query"))


class TestPolling:
    """Tests for poll_job, get_job and await_completion."""

    @pytest.mark.asyncio
    async def test_poll_terminal_rejected(self, bulk_client, make_job):
        with pytest.raises(BulkJobStateError):
            await bulk_client.poll_job(make_job("JobComplete"))

    @pytest.mark.asyncio
    async def test_poll_retries_transient(self, bulk_client, sf_client, make_job, make_response,
                                          job_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [make_response(503, text="busy"), job_response("InProgress")]

            polled = await bulk_client.poll_job(make_job("UploadComplete"))

            assert polled.state == JobState.IN_PROGRESS
            assert mock_request.call_count == 2

    @pytest.mark.asyncio
    async def test_get_job(self, bulk_client, sf_client, job_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = job_response("InProgress", operation="query")

            job = await bulk_client.get_job("query", JOB_ID)

            assert job.kind == JobKind.QUERY
            assert mock_request.call_args.kwargs["url"] == f"{BULK_BASE}/query/{JOB_ID}"

    @pytest.mark.asyncio
    async def test_get_job_invalid_kind(self, bulk_client):
        with pytest.raises(SalesforceValidationError):
            await bulk_client.get_job("batch", JOB_ID)

    @pytest.mark.asyncio
    async def test_await_open_ingest_rejected(self, bulk_client, sf_client, make_job):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            with pytest.raises(BulkJobStateError, match="still Open"):
                await bulk_client.await_completion(make_job("Open"))

            mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_await_terminal_returns_immediately(self, bulk_client, sf_client, make_job):
        job = make_job("Failed", errorMessage="InvalidBatch")
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            result = await bulk_client.await_completion(job)

            assert result.job is job
            assert result.poll_count == 0
            assert not result.timed_out
            mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_await_times_out_without_polling_after_deadline(
        self, bulk_client, sf_client, make_job, job_response
    ):
        poll_times = []

        async def respond(**kwargs):
            poll_times.append(time.monotonic())
            return job_response("InProgress")

        max_wait = 0.2
        start = time.monotonic()
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = respond

            result = await bulk_client.await_completion(
                make_job("UploadComplete"), poll_interval=0.05, max_wait=max_wait
            )

        assert result.timed_out
        assert result.job.state == JobState.IN_PROGRESS
        assert result.poll_count == len(poll_times)
        assert result.poll_count >= 2
        assert all(t < start + max_wait + 0.05 for t in poll_times)

        with pytest.raises(JobWaitTimeoutError) as exc_info:
            result.raise_for_timeout()
        assert exc_info.value.max_wait == max_wait
        assert exc_info.value.last_state == "InProgress"

    @pytest.mark.asyncio
    async def test_query_rate_limited_poll_honours_retry_after(
        self, bulk_client, sf_client, job_response, make_response
    ):
        """A 429 with Retry-After: 1 on the first poll sleeps ~1s, then succeeds."""
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request, \
                patch("sfbulk.integrations.salesforce.retry.asyncio.sleep",
                      new_callable=AsyncMock) as mock_sleep:
            mock_request.side_effect = [
                job_response("UploadComplete", operation="query"),
                make_response(429, headers={"Retry-After": "1"}),
                job_response("JobComplete", operation="query", numberRecordsProcessed=10),
            ]

            job = await bulk_client.create_query_job("SELECT Id FROM Account")
            result = await bulk_client.await_completion(job, poll_interval=0.05, max_wait=5)

        assert result.job.state == JobState.JOB_COMPLETE
        assert result.poll_count == 1
        mock_sleep.assert_awaited_once()
        assert mock_sleep.call_args.args[0] == pytest.approx(1.0)


class TestIngestScenario:
    @pytest.mark.asyncio
    async def test_insert_three_rows(self, bulk_client, sf_client, job_response, make_response):
        """Create, upload 3 rows, close and wait through two InProgress polls."""
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                job_response("Open"),
                make_response(201),
                job_response("UploadComplete"),
                job_response("InProgress", numberRecordsProcessed=0, numberRecordsFailed=0),
                job_response("InProgress", numberRecordsProcessed=2, numberRecordsFailed=0),
                job_response("JobComplete", numberRecordsProcessed=3, numberRecordsFailed=0),
            ]

            job = await bulk_client.create("Account", "insert")
            await bulk_client.upload_job_data(
                job, [{"Name": "A"}, {"Name": "B"}, {"Name": "C"}]
            )
            job = await bulk_client.close_job(job)
            result = await bulk_client.await_completion(job, poll_interval=0.05, max_wait=2)

        assert not result.timed_out
        assert result.poll_count == 3
        assert result.job.state == JobState.JOB_COMPLETE
        assert result.job.number_records_processed == 3
        assert result.job.number_records_successful == 3
        assert result.job.number_records_failed == 0


class TestResults:
    """Tests for fetch_results and query result pages."""

    @pytest.mark.asyncio
    async def test_non_terminal_rejected_without_network(self, bulk_client, sf_client, make_job):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            with pytest.raises(BulkJobStateError):
                await bulk_client.fetch_results(make_job("InProgress"))

            mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_ingest_streams(self, bulk_client, sf_client, make_job, make_response):
        responses = {
            f"{BULK_BASE}/ingest/{JOB_ID}/successfulResults/": make_response(
                200, text='"sf__Id","sf__Created","Name"\n"001","true","A"\n'
            ),
            f"{BULK_BASE}/ingest/{JOB_ID}/failedResults/": make_response(
                200, text='"sf__Id","sf__Error","Name"\n"","REQUIRED_FIELD_MISSING","B"\n'
            ),
            f"{BULK_BASE}/ingest/{JOB_ID}/unprocessedrecords/": make_response(200, text="Name\n"),
        }

        async def respond(**kwargs):
            return responses[kwargs["url"]]

        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = respond

            results = await bulk_client.fetch_results(make_job("JobComplete"))
            successful = await results.successful.collect()
            failed = await results.failed.collect()
            unprocessed = await results.unprocessed.collect()

            assert successful == [{"sf__Id": "001", "sf__Created": "true", "Name": "A"}]
            assert failed[0]["sf__Error"] == "REQUIRED_FIELD_MISSING"
            assert unprocessed == []
            assert mock_request.call_args.kwargs["headers"]["Accept"] == "text/csv"

    @pytest.mark.asyncio
    async def test_fetch_twice_gives_independent_streams(
        self, bulk_client, sf_client, make_job, make_response
    ):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(200, text="Id\n001\n002\n")
            job = make_job("JobComplete")

            first = await bulk_client.fetch_results(job)
            second = await bulk_client.fetch_results(job)

            first_records = await first.successful.collect()
            second_records = await second.successful.collect()

            assert first_records == second_records == [{"Id": "001"}, {"Id": "002"}]
            assert first.successful is not second.successful
            assert first.successful.pages_fetched == second.successful.pages_fetched == 1

    @pytest.mark.asyncio
    async def test_query_results_follow_locator(
        self, bulk_client, sf_client, make_job, make_response
    ):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                make_response(200, text="Id\n1\n", headers={"Sforce-Locator": "MTAwMDA"}),
                make_response(200, text="Id\n2\n", headers={"Sforce-Locator": "null"}),
            ]

            results = await bulk_client.fetch_results(
                make_job("JobComplete", "query"), max_records=1
            )
            records = await results.successful.collect()

            assert [r["Id"] for r in records] == ["1", "2"]
            assert await results.failed.collect() == []
            assert await results.unprocessed.collect() == []

            first, second = mock_request.call_args_list
            assert first.kwargs["url"] == f"{BULK_BASE}/query/{JOB_ID}/results"
            assert first.kwargs["params"] == {"maxRecords": 1}
            assert second.kwargs["params"] == {"locator": "MTAwMDA", "maxRecords": 1}

    @pytest.mark.asyncio
    async def test_get_query_results_page(self, bulk_client, sf_client, make_job, make_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(
                200,
                text="Id\n1\n",
                headers={"Sforce-Locator": "NEXT", "Sforce-NumberOfRecords": "1"},
            )

            page = await bulk_client.get_query_results_page(
                make_job("JobComplete", "query"), locator="PREV"
            )

            assert page.csv_data == "Id\n1\n"
            assert page.locator == "NEXT"
            assert page.has_more
            assert page.number_of_records == 1
            assert mock_request.call_args.kwargs["params"] == {"locator": "PREV"}

    @pytest.mark.asyncio
    async def test_query_page_requires_query_job(self, bulk_client, make_job):
        with pytest.raises(BulkJobStateError):
            await bulk_client.get_query_results_page(make_job("JobComplete"))

    @pytest.mark.asyncio
    async def test_parallel_results(self, bulk_client, sf_client, make_job, make_response):
        base = f"/services/data/v62.0/jobs/query/{JOB_ID}"
        responses = {
            f"{BULK_BASE}/query/{JOB_ID}/parallelResults": make_response(
                200,
                json={
                    "resultUrl": [f"{base}/results?locator=A", f"{base}/results?locator=B"],
                    "nextRecordsUrl": f"{base}/parallelResults?page=2",
                },
            ),
            f"https://test.my.salesforce.com{base}/parallelResults?page=2": make_response(
                200, json={"resultUrl": [f"{base}/results?locator=C"], "nextRecordsUrl": None}
            ),
            f"https://test.my.salesforce.com{base}/results?locator=A": make_response(
                200, text="Id\n1\n2\n"
            ),
            f"https://test.my.salesforce.com{base}/results?locator=B": make_response(
                200, text="Id\n3\n"
            ),
            f"https://test.my.salesforce.com{base}/results?locator=C": make_response(
                200, text="Id\n4\n"
            ),
        }

        async def respond(**kwargs):
            return responses[kwargs["url"]]

        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = respond

            records = await bulk_client.fetch_query_results_parallel(
                make_job("JobComplete", "query"), max_concurrency=2
            )

        assert [r["Id"] for r in records] == ["1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_parallel_results_first_failure_raised(
        self, bulk_client, sf_client, make_job, make_response
    ):
        async def respond(**kwargs):
            if kwargs["url"].endswith("parallelResults"):
                return make_response(200, json={"resultUrl": ["/r/1", "/r/2"]})
            if kwargs["url"].endswith("/r/2"):
                return make_response(404, text="gone")
            return make_response(200, text="Id\n1\n")

        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = respond

            with pytest.raises(SalesforceNotFoundError) as exc_info:
                await bulk_client.fetch_query_results_parallel(make_job("JobComplete", "query"))

        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_parallel_failure_cancels_remaining_downloads(
        self, bulk_client, sf_client, make_job, make_response
    ):
        slow_started = asyncio.Event()
        cancelled = []
        finished = []

        async def respond(**kwargs):
            url = kwargs["url"]
            if url.endswith("parallelResults"):
                return make_response(200, json={"resultUrl": ["/r/1", "/r/2"]})
            if url.endswith("/r/1"):
                await slow_started.wait()
                return make_response(404, text="gone")
            slow_started.set()
            try:
                await asyncio.sleep(0.2)
            except asyncio.CancelledError:
                cancelled.append(url)
                raise
            finished.append(url)
            return make_response(200, text="Id\n2\n")

        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = respond

            with pytest.raises(SalesforceNotFoundError):
                await bulk_client.fetch_query_results_parallel(make_job("JobComplete", "query"))

            await asyncio.sleep(0.3)

        assert cancelled == ["https://test.my.salesforce.com/r/2"]
        assert finished == []

    @pytest.mark.asyncio
    async def test_undecodable_page_is_serialization_error(
        self, bulk_client, sf_client, make_job
    ):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = httpx.Response(200, content=b"Id\n\xff\xfe\n")

            results = await bulk_client.fetch_results(make_job("JobComplete", "query"))
            with pytest.raises(SalesforceSerializationError):
                await results.successful.collect()


class TestAbortDeleteList:
    """Tests for abort_job, delete_job and list_jobs."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("state", ["JobComplete", "Failed", "Aborted"])
    async def test_abort_terminal_is_noop(self, bulk_client, sf_client, make_job, state):
        job = make_job(state)
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            assert await bulk_client.abort_job(job) is job
            mock_request.assert_not_called()

    @pytest.mark.asyncio
    async def test_abort_running(self, bulk_client, sf_client, make_job, job_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = job_response("Aborted")

            aborted = await bulk_client.abort_job(make_job("InProgress"))

            assert aborted.state == JobState.ABORTED
            assert _sent_json(mock_request.call_args) == {"state": "Aborted"}

    @pytest.mark.asyncio
    async def test_abort_lost_race_with_completion(
        self, bulk_client, sf_client, make_job, make_response, job_response
    ):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                make_response(400, json=INVALID_STATE),
                job_response("JobComplete", numberRecordsProcessed=3, numberRecordsFailed=0),
            ]

            result = await bulk_client.abort_job(make_job("InProgress"))

            assert result.state == JobState.JOB_COMPLETE
            assert mock_request.call_count == 2

    @pytest.mark.asyncio
    async def test_abort_rejected_while_running(
        self, bulk_client, sf_client, make_job, make_response, job_response
    ):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                make_response(400, json=INVALID_STATE),
                job_response("InProgress"),
            ]

            with pytest.raises(SalesforceBusinessLogicError):
                await bulk_client.abort_job(make_job("InProgress"))

    @pytest.mark.asyncio
    async def test_delete_job(self, bulk_client, sf_client, make_job, make_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(204)

            await bulk_client.delete_job(make_job("JobComplete"))

            assert mock_request.call_args.kwargs["method"] == "DELETE"
            assert mock_request.call_args.kwargs["url"] == f"{BULK_BASE}/ingest/{JOB_ID}"

    @pytest.mark.asyncio
    async def test_delete_missing_job_tolerated(
        self, bulk_client, sf_client, make_job, make_response
    ):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.return_value = make_response(404, text="not found")

            await bulk_client.delete_job(make_job("JobComplete"))

            assert mock_request.call_count == 1

    @pytest.mark.asyncio
    async def test_list_jobs_follows_next_records_url(
        self, bulk_client, sf_client, job_payload, make_response
    ):
        next_url = "/services/data/v62.0/jobs/ingest?queryLocator=01gxx0000000001"
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                make_response(
                    200,
                    json={
                        "done": False,
                        "records": [job_payload("JobComplete", job_id="750A")],
                        "nextRecordsUrl": next_url,
                    },
                ),
                make_response(
                    200,
                    json={"done": True, "records": [job_payload("Open", job_id="750B")]},
                ),
            ]

            jobs = [job async for job in bulk_client.list_jobs(JobKind.INGEST)]

            assert [j.id for j in jobs] == ["750A", "750B"]
            assert mock_request.call_args_list[1].kwargs["url"] == (
                f"https://test.my.salesforce.com{next_url}"
            )


class TestEndToEndFlows:
    @pytest.mark.asyncio
    async def test_execute_ingest(self, bulk_client, sf_client, job_response, make_response):
        job_url = f"{BULK_BASE}/ingest/{JOB_ID}"
        responses = {
            ("POST", f"{BULK_BASE}/ingest"): job_response("Open"),
            ("PUT", f"{job_url}/batches"): make_response(201),
            ("PATCH", job_url): job_response("UploadComplete"),
            ("GET", job_url): job_response(
                "JobComplete", numberRecordsProcessed=2, numberRecordsFailed=1
            ),
            ("GET", f"{job_url}/successfulResults/"): make_response(
                200, text='"sf__Id","sf__Created","Name"\n"001","true","A"\n'
            ),
            ("GET", f"{job_url}/failedResults/"): make_response(
                200, text='"sf__Id","sf__Error","Name"\n"","DUPLICATE","B"\n'
            ),
            ("GET", f"{job_url}/unprocessedrecords/"): make_response(200, text="Name\n"),
        }

        async def respond(**kwargs):
            return responses[(kwargs["method"], kwargs["url"])]

        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = respond

            result = await bulk_client.execute_ingest(
                "Account", "insert", [{"Name": "A"}, {"Name": "B"}], poll_interval=0.01
            )

        assert result.is_successful
        assert result.has_failures
        assert result.success_rate == pytest.approx(0.5)
        assert len(result.successful_records) == 1
        assert result.failed_records[0]["sf__Error"] == "DUPLICATE"
        assert result.unprocessed_records == []

    @pytest.mark.asyncio
    async def test_execute_ingest_aborts_on_upload_failure(
        self, bulk_client, sf_client, job_response, make_response
    ):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                job_response("Open"),
                make_response(
                    400, json=[{"errorCode": "INVALIDJOB", "message": "bad CSV header"}]
                ),
                job_response("Aborted"),
            ]

            with pytest.raises(SalesforceBusinessLogicError):
                await bulk_client.execute_ingest("Account", "insert", "Bogus\n1\n")

            abort_call = mock_request.call_args_list[2]
            assert abort_call.kwargs["method"] == "PATCH"
            assert _sent_json(abort_call) == {"state": "Aborted"}

    @pytest.mark.asyncio
    async def test_execute_ingest_aborts_on_close_failure(
        self, bulk_client, sf_client, job_response, make_response
    ):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                job_response("Open"),
                make_response(201),
                make_response(400, json=[{"errorCode": "INVALIDJOB", "message": "cannot close"}]),
                job_response("Aborted"),
            ]

            with pytest.raises(SalesforceBusinessLogicError):
                await bulk_client.execute_ingest("Account", "insert", "Name\nA\n")

            assert mock_request.call_count == 4
            abort_call = mock_request.call_args_list[3]
            assert abort_call.kwargs["method"] == "PATCH"
            assert _sent_json(abort_call) == {"state": "Aborted"}

    @pytest.mark.asyncio
    async def test_execute_ingest_failed_job_reads_results(
        self, bulk_client, sf_client, job_response, make_response
    ):
        job_url = f"{BULK_BASE}/ingest/{JOB_ID}"
        responses = {
            ("POST", f"{BULK_BASE}/ingest"): job_response("Open"),
            ("PUT", f"{job_url}/batches"): make_response(201),
            ("PATCH", job_url): job_response("UploadComplete"),
            ("GET", job_url): job_response(
                "Failed", numberRecordsProcessed=1, numberRecordsFailed=1
            ),
            ("GET", f"{job_url}/successfulResults/"): make_response(
                200, text='"sf__Id","sf__Created","Name"\n'
            ),
            ("GET", f"{job_url}/failedResults/"): make_response(
                200, text='"sf__Id","sf__Error","Name"\n"","REQUIRED_FIELD_MISSING","A"\n'
            ),
            ("GET", f"{job_url}/unprocessedrecords/"): make_response(200, text="Name\nB\n"),
        }

        async def respond(**kwargs):
            return responses[(kwargs["method"], kwargs["url"])]

        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = respond

            result = await bulk_client.execute_ingest(
                "Account", "insert", [{"Name": "A"}, {"Name": "B"}], poll_interval=0.01
            )

        assert not result.is_successful
        assert result.job.state == JobState.FAILED
        assert result.successful_records == []
        assert result.failed_records[0]["sf__Error"] == "REQUIRED_FIELD_MISSING"
        assert result.unprocessed_records == [{"Name": "B"}]

    @pytest.mark.asyncio
    async def test_execute_query(self, bulk_client, sf_client, job_response, make_response):
        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = [
                job_response("UploadComplete", operation="query"),
                job_response("JobComplete", operation="query", numberRecordsProcessed=2),
                make_response(200, text="Id,Name\n001,A\n002,B\n"),
            ]

            result = await bulk_client.execute_query("SELECT Id, Name FROM Account")

        assert result.is_successful
        assert result.record_count == 2
        assert result.records[1] == {"Id": "002", "Name": "B"}

    @pytest.mark.asyncio
    async def test_execute_query_timeout(self, bulk_client, sf_client, job_response):
        async def respond(**kwargs):
            if kwargs["method"] == "POST":
                return job_response("UploadComplete", operation="query")
            return job_response("InProgress", operation="query")

        with patch.object(sf_client._client, "request", new_callable=AsyncMock) as mock_request:
            mock_request.side_effect = respond

            with pytest.raises(JobWaitTimeoutError):
                await bulk_client.execute_query(
                    "SELECT Id FROM Account", poll_interval=0.02, max_wait=0.1
                )
