"""
Credential providers for Salesforce API access.

A provider hands the transport an instance URL and bearer token on every
request. Credentials are immutable values: a refresh produces a new value
that replaces the old one, the old one is never edited.

SECURITY: Access and refresh tokens must never be logged. The string forms
of every class here only show a short token prefix.
"""

import asyncio
import logging
import os
from typing import Awaitable, Callable, Optional, Protocol, runtime_checkable

from sfbulk.config.client_config import DEFAULT_API_VERSION
from sfbulk.integrations.salesforce.security import redact_token

logger = logging.getLogger(__name__)


@runtime_checkable
class CredentialProvider(Protocol):
    """Source of the instance URL and bearer token for each request."""

    def instance_url(self) -> str:
        ...

    def access_token(self) -> str:
        ...

    def api_version(self) -> str:
        ...


class SalesforceCredentials:
    """Immutable instance URL + access token + API version."""

    __slots__ = ("_instance_url", "_access_token", "_api_version", "_refresh_token")

    def __init__(
        self,
        instance_url: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        refresh_token: Optional[str] = None,
    ):
        if not instance_url:
            raise ValueError("instance_url is required")
        if not access_token:
            raise ValueError("access_token is required")

        object.__setattr__(self, "_instance_url", instance_url.rstrip("/"))
        object.__setattr__(self, "_access_token", access_token)
        object.__setattr__(self, "_api_version", str(api_version))
        object.__setattr__(self, "_refresh_token", refresh_token)

    def __setattr__(self, name, value):
        raise AttributeError("SalesforceCredentials is immutable")

    def instance_url(self) -> str:
        return self._instance_url

    def access_token(self) -> str:
        return self._access_token

    def api_version(self) -> str:
        return self._api_version

    def refresh_token(self) -> Optional[str]:
        return self._refresh_token

    def with_access_token(self, access_token: str) -> "SalesforceCredentials":
        """Return a copy carrying a new access token."""
        return SalesforceCredentials(
            instance_url=self._instance_url,
            access_token=access_token,
            api_version=self._api_version,
            refresh_token=self._refresh_token,
        )

    def with_api_version(self, api_version: str) -> "SalesforceCredentials":
        return SalesforceCredentials(
            instance_url=self._instance_url,
            access_token=self._access_token,
            api_version=api_version,
            refresh_token=self._refresh_token,
        )

    @classmethod
    def from_env(cls) -> "SalesforceCredentials":
        """
        Load credentials from SF_* (or SALESFORCE_*) environment variables.

        Raises:
            ValueError: If instance URL or access token is missing
        """
        instance_url = os.getenv("SF_INSTANCE_URL") or os.getenv("SALESFORCE_INSTANCE_URL")
        access_token = os.getenv("SF_ACCESS_TOKEN") or os.getenv("SALESFORCE_ACCESS_TOKEN")
        api_version = (
            os.getenv("SF_API_VERSION")
            or os.getenv("SALESFORCE_API_VERSION")
            or DEFAULT_API_VERSION
        )
        refresh_token = os.getenv("SF_REFRESH_TOKEN") or os.getenv("SALESFORCE_REFRESH_TOKEN")

        if not instance_url:
            raise ValueError(
                "Salesforce instance URL is required. Set SF_INSTANCE_URL environment variable."
            )
        if not access_token:
            raise ValueError(
                "Salesforce access token is required. Set SF_ACCESS_TOKEN environment variable."
            )

        return cls(instance_url, access_token, api_version, refresh_token)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SalesforceCredentials):
            return NotImplemented
        return (
            self._instance_url == other._instance_url
            and self._access_token == other._access_token
            and self._api_version == other._api_version
            and self._refresh_token == other._refresh_token
        )

    def __hash__(self) -> int:
        return hash((self._instance_url, self._access_token, self._api_version))

    def __repr__(self) -> str:
        refresh = redact_token(self._refresh_token) if self._refresh_token else None
        return (
            f"SalesforceCredentials(instance_url={self._instance_url!r}, "
            f"access_token={redact_token(self._access_token)!r}, "
            f"api_version={self._api_version!r}, refresh_token={refresh!r})"
        )

    __str__ = __repr__


Refresher = Callable[[SalesforceCredentials], Awaitable[SalesforceCredentials]]


class RefreshingCredentialProvider:
    """
    Provider that swaps in freshly issued credentials on demand.

    The refresher (an OAuth flow, an sf CLI call, ...) is supplied by the
    caller; this class only guarantees a single concurrent refresh and an
    atomic swap of the current value.
    """

    def __init__(self, credentials: SalesforceCredentials, refresher: Refresher):
        self._current = credentials
        self._refresher = refresher
        self._lock = asyncio.Lock()

    @property
    def current(self) -> SalesforceCredentials:
        return self._current

    def instance_url(self) -> str:
        return self._current.instance_url()

    def access_token(self) -> str:
        return self._current.access_token()

    def api_version(self) -> str:
        return self._current.api_version()

    async def refresh(self) -> SalesforceCredentials:
        """Obtain new credentials; concurrent callers share one refresh."""
        stale = self._current
        async with self._lock:
            if self._current is not stale:
                return self._current

            fresh = await self._refresher(stale)
            self._current = fresh

        logger.info(
            "Salesforce credentials refreshed",
            extra={"instance_url": fresh.instance_url()},
        )
        return fresh

    def __repr__(self) -> str:
        return f"RefreshingCredentialProvider(current={self._current!r})"
