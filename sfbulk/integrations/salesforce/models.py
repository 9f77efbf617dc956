"""
Data models for Salesforce transport requests and responses.
"""

import json
from dataclasses import dataclass, field
from typing import Optional, Dict, Any

import httpx

from sfbulk.integrations.salesforce.exceptions import SalesforceSerializationError


@dataclass(frozen=True)
class ConditionalHeaders:
    """Conditional request headers (ETag / timestamp preconditions)."""

    if_match: Optional[str] = None
    if_none_match: Optional[str] = None
    if_modified_since: Optional[str] = None
    if_unmodified_since: Optional[str] = None

    def to_headers(self) -> Dict[str, str]:
        headers = {}
        if self.if_match:
            headers["If-Match"] = self.if_match
        if self.if_none_match:
            headers["If-None-Match"] = self.if_none_match
        if self.if_modified_since:
            headers["If-Modified-Since"] = self.if_modified_since
        if self.if_unmodified_since:
            headers["If-Unmodified-Since"] = self.if_unmodified_since
        return headers


@dataclass(frozen=True)
class ApiUsage:
    """API usage reported in the Sforce-Limit-Info header."""

    used: int
    limit: int

    @classmethod
    def from_header(cls, value: Optional[str]) -> Optional["ApiUsage"]:
        # Format: "api-usage=25/15000"
        if not value:
            return None
        for part in value.split(","):
            part = part.strip()
            if not part.startswith("api-usage="):
                continue
            used, _, limit = part[len("api-usage="):].partition("/")
            try:
                return cls(used=int(used), limit=int(limit))
            except ValueError:
                return None
        return None

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)

    @property
    def percentage(self) -> float:
        if self.limit == 0:
            return 100.0
        return self.used / self.limit * 100.0

    def is_above_threshold(self, threshold_percent: float) -> bool:
        return self.percentage >= threshold_percent


@dataclass(frozen=True)
class SalesforceResponse:
    """
    Successful (2xx or 304) response from a single Salesforce call.

    Attributes:
        status_code: HTTP status code
        headers: Response headers with lower-cased names
        content: Raw (already decompressed) response body
    """

    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    content: bytes = b""

    @classmethod
    def from_httpx(cls, response: httpx.Response) -> "SalesforceResponse":
        return cls(
            status_code=response.status_code,
            headers={k.lower(): v for k, v in response.headers.items()},
            content=response.content or b"",
        )

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def not_modified(self) -> bool:
        return self.status_code == 304

    @property
    def is_empty(self) -> bool:
        return self.status_code == 204 or not self.content.strip()

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @property
    def text(self) -> str:
        try:
            return self.content.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SalesforceSerializationError(
                f"Response body is not valid UTF-8: {e}",
                status_code=self.status_code,
            ) from e

    def json(self) -> Any:
        """
        Decode the body as JSON.

        Raises:
            SalesforceSerializationError: If the body is not valid JSON
        """
        try:
            return json.loads(self.content)
        except (ValueError, UnicodeDecodeError) as e:
            raise SalesforceSerializationError(
                f"Malformed JSON in response body: {e}",
                status_code=self.status_code,
            ) from e

    @property
    def etag(self) -> Optional[str]:
        return self.header("etag")

    @property
    def last_modified(self) -> Optional[str]:
        return self.header("last-modified")

    @property
    def locator(self) -> Optional[str]:
        """Continuation token for paginated results (None on the last page)."""
        value = self.header("sforce-locator")
        if not value or value == "null":
            return None
        return value

    @property
    def api_usage(self) -> Optional[ApiUsage]:
        return ApiUsage.from_header(self.header("sforce-limit-info"))
