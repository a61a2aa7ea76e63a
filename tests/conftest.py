"""
Pytest configuration and shared fixtures.
"""

import json

import pytest
from unittest.mock import Mock
from requests import Response
from requests.structures import CaseInsensitiveDict
from typing import Any, Dict, Optional

from simple_dynamics.core.session import DynamicsConfig


API_URL = "https://contoso.crm4.dynamics.com/api/data/v9.2/"


def make_response(
    status: int = 200,
    json_body: Any = None,
    *,
    text: Optional[str] = None,
    content: Optional[bytes] = None,
    headers: Optional[Dict[str, str]] = None,
    reason: str = "OK",
    url: str = API_URL,
) -> Response:
    """Build a real requests.Response without touching the network."""
    r = Response()
    r.status_code = status
    r.reason = reason
    r.url = url
    r.encoding = "utf-8"
    r.headers = CaseInsensitiveDict(headers or {})
    if content is not None:
        r._content = content
    elif text is not None:
        r._content = text.encode("utf-8")
    elif json_body is not None:
        r._content = json.dumps(json_body).encode("utf-8")
        r.headers.setdefault("Content-Type", "application/json; odata.metadata=minimal")
    else:
        r._content = b""
    return r


@pytest.fixture
def config():
    """A DynamicsConfig with one plural override."""
    return DynamicsConfig(
        base_url="https://contoso.crm4.dynamics.com",
        tenant_id="tenant-1",
        application_id="app-1",
        application_secret="secret-1",
        plural_overrides={"gp_person": "gp_people"},
    )


@pytest.fixture
def token_cache():
    """A token cache stub that always hands out the same token."""
    cache = Mock()
    cache.get_valid_token = Mock(return_value="tok-123")
    return cache


@pytest.fixture
def mock_session(config):
    """Create a mock DynamicsSession."""
    session = Mock()
    session.cfg = config
    session.base = API_URL
    session.request = Mock(return_value=make_response(204))
    return session


@pytest.fixture
def account_id():
    return "8f6c0a1e-3b9a-4f7d-9c51-0d4e2f9b7a10"
