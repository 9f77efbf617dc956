"""Credential providers for Salesforce API access."""

from sfbulk.auth.credentials import (
    CredentialProvider,
    RefreshingCredentialProvider,
    SalesforceCredentials,
)

__all__ = [
    "CredentialProvider",
    "RefreshingCredentialProvider",
    "SalesforceCredentials",
]
