"""
Root test configuration and fixtures.

Shared fixtures:
- credentials: Static SalesforceCredentials for a fake org
- fast_config: ClientConfig whose retries never sleep
- sf_client / bulk_client: Clients built on fast_config
- make_response: Factory for canned httpx.Response objects
- job_payload: Factory for Bulk API job info bodies
- temp_config_dir / make_yaml_config: YAML config files in a temp dir
"""

import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

import httpx
import pytest
import yaml

from sfbulk.auth.credentials import SalesforceCredentials
from sfbulk.bulk.client import BulkApiClient
from sfbulk.config.client_config import ClientConfig
from sfbulk.integrations.salesforce.client import SalesforceClient
from sfbulk.integrations.salesforce.retry import RetryConfig

INSTANCE_URL = "https://test.my.salesforce.com"
ACCESS_TOKEN = "00Dxx0000000001!AQEAQH.test-token-value"


@pytest.fixture
def credentials():
    return SalesforceCredentials(INSTANCE_URL, ACCESS_TOKEN, "62.0")


@pytest.fixture
def fast_config():
    """Client config with zero-delay retries."""
    return ClientConfig(
        retry=RetryConfig(max_attempts=4, base_delay_seconds=0.0, jitter_factor=0.0),
        poll_interval_seconds=0.01,
        max_wait_seconds=2.0,
        poll_jitter=0.0,
    )


@pytest.fixture
def sf_client(credentials, fast_config):
    return SalesforceClient(credentials, config=fast_config)


@pytest.fixture
def bulk_client(sf_client):
    return BulkApiClient(sf_client)


@pytest.fixture
def make_response():
    """
    Factory fixture for canned responses.

    Usage:
        make_response(200, json={"id": "750..."})
        make_response(200, text="Id,Name\\n1,A\\n", headers={"Sforce-Locator": "null"})
    """
    def _make(
        status_code: int = 200,
        json: Optional[Any] = None,
        text: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        if json is not None:
            return httpx.Response(status_code, json=json, headers=headers)
        if text is not None:
            return httpx.Response(status_code, text=text, headers=headers)
        return httpx.Response(status_code, headers=headers)
    return _make


@pytest.fixture
def job_payload():
    """
    Factory fixture for Bulk API job info bodies.

    Usage:
        job_payload("InProgress", numberRecordsProcessed=2)
    """
    def _make(
        state: str = "Open",
        job_id: str = "7505g00000AbCdEAAV",
        operation: str = "insert",
        **extra: Any,
    ) -> Dict[str, Any]:
        body = {
            "id": job_id,
            "operation": operation,
            "state": state,
            "contentType": "CSV",
            "columnDelimiter": "COMMA",
            "lineEnding": "LF",
            "apiVersion": 62.0,
            "concurrencyMode": "Parallel",
            "createdDate": "2024-01-15T10:30:00.000+0000",
            "systemModstamp": "2024-01-15T10:30:00.000+0000",
        }
        if operation in ("query", "queryAll"):
            body["query"] = "SELECT Id, Name FROM Account"
        else:
            body["object"] = "Account"
        body.update(extra)
        return body
    return _make


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("sfbulk.yml", {"api_version": "61.0"})
    """
    def _make(filename: str, config: Any) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
