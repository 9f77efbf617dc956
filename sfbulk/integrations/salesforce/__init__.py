"""
Salesforce HTTP integration: error taxonomy, retry policy and transport types.

The transport itself lives in sfbulk.integrations.salesforce.client and is
re-exported from the top-level sfbulk package.
"""

from sfbulk.integrations.salesforce.exceptions import (
    ErrorKind,
    SalesforceError,
    SalesforceHTTPError,
    SalesforceRateLimitError,
    SalesforceAuthenticationError,
    SalesforceAuthorizationError,
    SalesforceNotFoundError,
    SalesforcePreconditionFailedError,
    SalesforceTimeoutError,
    SalesforceConnectionError,
    SalesforceSerializationError,
    SalesforceBusinessLogicError,
    SalesforceValidationError,
    RetriesExhaustedError,
)
from sfbulk.integrations.salesforce.models import (
    ApiUsage,
    ConditionalHeaders,
    SalesforceResponse,
)
from sfbulk.integrations.salesforce.retry import (
    RetryConfig,
    RetryDecision,
    RetryPolicy,
    calculate_backoff,
    decide_retry,
)

__all__ = [
    # Exceptions
    "ErrorKind",
    "SalesforceError",
    "SalesforceHTTPError",
    "SalesforceRateLimitError",
    "SalesforceAuthenticationError",
    "SalesforceAuthorizationError",
    "SalesforceNotFoundError",
    "SalesforcePreconditionFailedError",
    "SalesforceTimeoutError",
    "SalesforceConnectionError",
    "SalesforceSerializationError",
    "SalesforceBusinessLogicError",
    "SalesforceValidationError",
    "RetriesExhaustedError",
    # Models
    "ApiUsage",
    "ConditionalHeaders",
    "SalesforceResponse",
    # Retry
    "RetryConfig",
    "RetryDecision",
    "RetryPolicy",
    "calculate_backoff",
    "decide_retry",
]
