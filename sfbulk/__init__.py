"""
sfbulk - async Salesforce Bulk API 2.0 client.

Usage:
    from sfbulk import BulkApiClient, SalesforceClient, SalesforceCredentials

    credentials = SalesforceCredentials.from_env()
    async with SalesforceClient(credentials) as sf:
        bulk = BulkApiClient(sf)
        result = await bulk.execute_query("SELECT Id, Name FROM Account")
"""

from sfbulk.integrations.salesforce.client import SalesforceClient, get_salesforce_client
from sfbulk.auth.credentials import (
    CredentialProvider,
    SalesforceCredentials,
    RefreshingCredentialProvider,
)
from sfbulk.config.client_config import ClientConfig, CompressionConfig, load_client_config
from sfbulk.integrations.salesforce.retry import RetryConfig, RetryPolicy
from sfbulk.integrations.salesforce.exceptions import (
    ErrorKind,
    SalesforceError,
    RetriesExhaustedError,
)
from sfbulk.bulk import (
    BulkApiClient,
    get_bulk_client,
    BulkJobStateError,
    JobWaitTimeoutError,
    BulkOperation,
    ContentFormat,
    Job,
    JobKind,
    JobState,
    JobWaitResult,
)

__version__ = "0.1.0"

__all__ = [
    "SalesforceClient",
    "get_salesforce_client",
    "BulkApiClient",
    "get_bulk_client",
    "CredentialProvider",
    "SalesforceCredentials",
    "RefreshingCredentialProvider",
    "ClientConfig",
    "CompressionConfig",
    "load_client_config",
    "RetryConfig",
    "RetryPolicy",
    "ErrorKind",
    "SalesforceError",
    "RetriesExhaustedError",
    "BulkJobStateError",
    "JobWaitTimeoutError",
    "BulkOperation",
    "ContentFormat",
    "Job",
    "JobKind",
    "JobState",
    "JobWaitResult",
]
