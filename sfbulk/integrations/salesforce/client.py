"""
Salesforce HTTP transport.

This client handles:
- Executing single authenticated requests against REST, Tooling and Bulk APIs
- Gzip/deflate negotiation and optional request compression
- Conditional requests (ETag / If-Modified-Since)
- Classifying every failed response into a SalesforceError subtype
- Retrying transient failures through RetryPolicy (request / request_json)

Documentation: https://developer.salesforce.com/docs/atlas.en-us.api_rest.meta/api_rest/

SECURITY: Access tokens are resolved from the credential provider per
request and are never logged.
"""

import gzip
import json
import logging
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Collection, Dict, Optional

import httpx

from sfbulk.auth.credentials import CredentialProvider, SalesforceCredentials
from sfbulk.config.client_config import ClientConfig, load_client_config
from sfbulk.integrations.salesforce.exceptions import (
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
    parse_error_payload,
)
from sfbulk.integrations.salesforce.models import ConditionalHeaders, SalesforceResponse
from sfbulk.integrations.salesforce.retry import RetryPolicy
from sfbulk.integrations.salesforce.security import sanitize_error_message

logger = logging.getLogger(__name__)

BUSINESS_LOGIC_STATUS_CODES = frozenset({400, 409, 422})


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header given in seconds or as an HTTP date.

    Returns:
        Delay in seconds (never negative) or None if absent/unparseable
    """
    if not value:
        return None

    value = value.strip()
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass

    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max((retry_at - datetime.now(timezone.utc)).total_seconds(), 0.0)


def _build_error(error_cls, message: Optional[str], **kwargs) -> SalesforceError:
    if message:
        return error_cls(message, **kwargs)
    return error_cls(**kwargs)


def classify_error_response(response: SalesforceResponse) -> SalesforceError:
    """
    Map a non-success response onto the error taxonomy.

    Args:
        response: Response whose status is neither 2xx nor 304

    Returns:
        The matching SalesforceError subtype (not raised)
    """
    status = response.status_code

    try:
        body = response.json() if response.content else None
    except SalesforceSerializationError:
        body = None

    payload = parse_error_payload(body)
    if payload:
        message = sanitize_error_message(payload["message"] or payload["errorCode"])
    else:
        message = sanitize_error_message(
            response.content.decode("utf-8", errors="replace").strip()
        )

    kwargs: Dict[str, Any] = {
        "code": payload["errorCode"] if payload else None,
        "response": body if body is not None else {},
        "fields": payload["fields"] if payload else None,
    }

    if status == 401:
        return _build_error(SalesforceAuthenticationError, message, **kwargs)
    if status == 403:
        return _build_error(SalesforceAuthorizationError, message, **kwargs)
    if status == 404:
        return _build_error(SalesforceNotFoundError, message, **kwargs)
    if status == 412:
        return _build_error(SalesforcePreconditionFailedError, message, **kwargs)
    if status == 429:
        return _build_error(
            SalesforceRateLimitError,
            message,
            retry_after=parse_retry_after(response.header("retry-after")),
            **kwargs,
        )
    if payload and status in BUSINESS_LOGIC_STATUS_CODES:
        return SalesforceBusinessLogicError(
            f"{payload['errorCode']}: {message}",
            status_code=status,
            **kwargs,
        )

    detail = f" - {message}" if message else ""
    return SalesforceHTTPError(
        f"Salesforce API error: {status}{detail}",
        status_code=status,
        **kwargs,
    )


class SalesforceClient:
    """
    Async transport for Salesforce APIs.

    One instance owns one httpx connection pool and may be shared by any
    number of concurrent tasks. All methods are async and should be used
    with async/await.

    SECURITY: Access token must be stored securely and never logged.
    """

    def __init__(
        self,
        credentials: CredentialProvider,
        config: Optional[ClientConfig] = None,
        api_version: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize Salesforce client.

        Args:
            credentials: Provider of instance URL and access token
            config: Transport/retry/polling configuration (default: ClientConfig())
            api_version: Override the provider's API version (e.g. "62.0")
            http_client: Pre-built httpx client to share a connection pool
        """
        if not credentials.instance_url():
            raise ValueError("Salesforce instance URL is required")

        self._credentials = credentials
        self.config = config or ClientConfig()
        self._api_version = api_version
        self._retry_policy = RetryPolicy(self.config.retry) if self.config.retry else None

        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                self.config.timeout_seconds,
                connect=self.config.connect_timeout_seconds,
            ),
            limits=httpx.Limits(
                max_connections=self.config.max_connections,
                max_keepalive_connections=self.config.max_keepalive_connections,
                keepalive_expiry=self.config.keepalive_expiry_seconds,
            ),
            headers={
                "Accept": "application/json",
                "User-Agent": self.config.user_agent,
            },
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "SalesforceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        return (
            f"SalesforceClient(instance_url={self.instance_url!r}, "
            f"api_version={self.api_version!r})"
        )

    # =========================================================================
    # URL helpers
    # =========================================================================

    @property
    def instance_url(self) -> str:
        return self._credentials.instance_url().rstrip("/")

    @property
    def api_version(self) -> str:
        return self._api_version or self._credentials.api_version() or self.config.api_version

    def url(self, path: str) -> str:
        """Resolve an absolute URL, an instance-relative path or a bare path."""
        if path.startswith("http://") or path.startswith("https://"):
            return path
        if path.startswith("/"):
            return f"{self.instance_url}{path}"
        return f"{self.instance_url}/{path}"

    def rest_url(self, path: str = "") -> str:
        return f"{self.instance_url}/services/data/v{self.api_version}/{path.lstrip('/')}"

    def tooling_url(self, path: str = "") -> str:
        return self.rest_url(f"tooling/{path.lstrip('/')}")

    def bulk_url(self, path: str = "") -> str:
        return self.rest_url(f"jobs/{path.lstrip('/')}")

    # =========================================================================
    # Transport
    # =========================================================================

    def _encode_body(
        self,
        headers: Dict[str, str],
        payload: Optional[Any],
        content: Optional[Any],
    ) -> Optional[bytes]:
        body: Optional[bytes] = None

        if payload is not None:
            body = json.dumps(payload).encode("utf-8")
            headers.setdefault("Content-Type", "application/json")
        elif content is not None:
            body = content.encode("utf-8") if isinstance(content, str) else bytes(content)

        compression = self.config.compression
        if body and compression.compress_requests and len(body) >= compression.min_size:
            body = gzip.compress(body)
            headers["Content-Encoding"] = "gzip"

        return body

    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Any] = None,
        content: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
        expected_status: Optional[Collection[int]] = None,
        conditional: Optional[ConditionalHeaders] = None,
    ) -> SalesforceResponse:
        """
        Execute exactly one HTTP request and classify the outcome.

        Args:
            method: HTTP method (GET, POST, etc.)
            url: Absolute URL or instance-relative path
            headers: Extra request headers
            json: Request body to send as JSON
            content: Raw request body (str or bytes), e.g. CSV
            params: Query parameters
            expected_status: Acceptable status codes (default: any 2xx or 304)
            conditional: Conditional request headers

        Returns:
            SalesforceResponse for a successful or not-modified response

        Raises:
            SalesforceError: Classified failure; never retried here
        """
        url = self.url(url)

        request_headers = {
            "Authorization": f"Bearer {self._credentials.access_token()}",
            "Accept-Encoding": (
                "gzip, deflate" if self.config.compression.accept_compressed else "identity"
            ),
        }
        if conditional:
            request_headers.update(conditional.to_headers())
        if headers:
            request_headers.update(headers)

        body = self._encode_body(request_headers, json, content)

        try:
            response = await self._client.request(
                method=method,
                url=url,
                headers=request_headers,
                content=body,
                params=params,
            )
        except httpx.TimeoutException as e:
            logger.error(
                "Salesforce API timeout",
                extra={"method": method, "url": url, "error": str(e)},
            )
            raise SalesforceTimeoutError(f"Request timeout: {e}") from e
        except httpx.DecodingError as e:
            raise SalesforceSerializationError(f"Failed to decode response body: {e}") from e
        except httpx.RequestError as e:
            logger.error(
                "Salesforce API connection error",
                extra={"method": method, "url": url, "error": str(e)},
            )
            raise SalesforceConnectionError(f"Connection error: {e}") from e

        result = SalesforceResponse.from_httpx(response)

        if expected_status is not None and result.status_code in expected_status:
            return result

        if result.is_success or result.not_modified:
            if expected_status is not None:
                raise SalesforceHTTPError(
                    f"Unexpected status {result.status_code} (expected {sorted(expected_status)})",
                    status_code=result.status_code,
                )
            logger.debug(
                "Salesforce API response",
                extra={"method": method, "url": url, "status_code": result.status_code},
            )
            return result

        error = classify_error_response(result)
        log_extra = {
            "method": method,
            "url": url,
            "status_code": result.status_code,
            "error_kind": error.kind.value,
            "error_code": error.code,
        }
        if isinstance(error, SalesforceRateLimitError):
            logger.warning(
                "Salesforce API rate limited",
                extra={**log_extra, "retry_after": error.retry_after},
            )
        elif isinstance(error, SalesforceNotFoundError):
            logger.info("Salesforce resource not found", extra=log_extra)
        else:
            logger.error(
                "Salesforce API error",
                extra={**log_extra, "error": error.message},
            )
        raise error

    async def request(
        self,
        method: str,
        path: str,
        retry: bool = True,
        **kwargs,
    ) -> SalesforceResponse:
        """
        Execute a request, retrying transient failures.

        Args:
            method: HTTP method
            path: Absolute URL or instance-relative path
            retry: Apply the configured retry policy
            **kwargs: Forwarded to send()

        Raises:
            RetriesExhaustedError: When the retry budget is spent
            SalesforceError: Non-retryable failures
        """
        url = self.url(path)

        if not retry or self._retry_policy is None:
            return await self.send(method, url, **kwargs)

        return await self._retry_policy.execute(
            lambda: self.send(method, url, **kwargs),
            description=f"{method} {url}",
        )

    async def request_json(self, method: str, path: str, **kwargs) -> Any:
        """
        Execute a request and decode the JSON body.

        Returns:
            Decoded JSON, or None for empty and not-modified responses
        """
        response = await self.request(method, path, **kwargs)
        if response.not_modified or response.is_empty:
            return None
        return response.json()

    # =========================================================================
    # Thin endpoint wrappers
    # =========================================================================

    async def rest_get(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        conditional: Optional[ConditionalHeaders] = None,
    ) -> Any:
        return await self.request_json(
            "GET", self.rest_url(path), params=params, conditional=conditional
        )

    async def rest_post(self, path: str, payload: Any) -> Any:
        return await self.request_json("POST", self.rest_url(path), json=payload, retry=False)

    async def rest_patch(
        self,
        path: str,
        payload: Any,
        conditional: Optional[ConditionalHeaders] = None,
    ) -> Any:
        return await self.request_json(
            "PATCH", self.rest_url(path), json=payload, conditional=conditional
        )

    async def rest_delete(self, path: str) -> None:
        await self.request("DELETE", self.rest_url(path))

    async def tooling_get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self.request_json("GET", self.tooling_url(path), params=params)

    async def get_limits(self) -> Dict[str, Any]:
        """Org limits (API requests, bulk batches, storage, ...)."""
        return await self.rest_get("limits")


def get_salesforce_client(
    credentials: Optional[CredentialProvider] = None,
    config: Optional[ClientConfig] = None,
) -> SalesforceClient:
    """
    Factory function to create a SalesforceClient.

    Args:
        credentials: Credential provider (default: SalesforceCredentials.from_env())
        config: Client configuration (default: load_client_config())

    Returns:
        Configured SalesforceClient instance
    """
    return SalesforceClient(
        credentials=credentials or SalesforceCredentials.from_env(),
        config=config or load_client_config(),
    )
