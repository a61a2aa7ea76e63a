"""
Tests for simple_dynamics.core module.
"""

import json
import threading
import time
import uuid

import pytest
import requests
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional
from unittest.mock import Mock, patch

from simple_dynamics.core.session import (
    DynamicsConfig,
    DynamicsSession,
    DynamicsUpstreamError,
    DynamicsProtocolError,
    dumps_payload,
)
from simple_dynamics.core.token import CachedToken, TokenCache
from simple_dynamics.core.connection import ConnectionContext, parse_plural_overrides

from tests.conftest import API_URL, make_response


class TestDynamicsConfig:
    """Tests for DynamicsConfig dataclass."""

    def test_default_values(self, config):
        assert config.timeout == 60.0
        assert config.retries == 0
        assert config.verify is True
        assert config.token_safety_margin == 2.0

    def test_derived_urls(self):
        cfg = DynamicsConfig(
            base_url="https://contoso.crm4.dynamics.com/",
            tenant_id="tenant-1",
            application_id="app",
            application_secret="secret",
        )
        assert cfg.api_url == "https://contoso.crm4.dynamics.com/api/data/v9.2/"
        assert cfg.scope == "https://contoso.crm4.dynamics.com/.default"
        assert cfg.authority == "https://login.microsoftonline.com/tenant-1"


class TestDumpsPayload:
    """Tests for request body serialization."""

    def test_compact_json(self):
        assert dumps_payload({"name": "Contoso", "revenue": 10}) == '{"name":"Contoso","revenue":10}'

    def test_absent_value_is_omitted(self):
        assert dumps_payload({"name": "Contoso", "fax": None}) == '{"name":"Contoso"}'

    def test_explicit_null_is_also_omitted(self):
        # None means "leave untouched"; clearing a column is not possible this way
        body = json.loads(dumps_payload({"name": "Contoso", "telephone1": None}))
        assert "telephone1" not in body

    def test_nested_nulls_are_omitted(self):
        body = json.loads(dumps_payload({"a": {"b": None, "c": 1}, "items": [{"d": None}]}))
        assert body == {"a": {"c": 1}, "items": [{}]}

    def test_datetimes_are_iso_8601(self):
        body = dumps_payload({
            "scheduledstart": datetime(2024, 1, 31, 9, 30),
            "birthdate": date(1990, 5, 17),
            "accountid": uuid.UUID("8f6c0a1e-3b9a-4f7d-9c51-0d4e2f9b7a10"),
        })
        assert body == (
            '{"scheduledstart":"2024-01-31T09:30:00","birthdate":"1990-05-17",'
            '"accountid":"8f6c0a1e-3b9a-4f7d-9c51-0d4e2f9b7a10"}'
        )

    def test_dataclass_payload(self):
        @dataclass
        class Account:
            name: str
            fax: Optional[str] = None

        assert dumps_payload(Account("Contoso")) == '{"name":"Contoso"}'


class TestDynamicsUpstreamError:
    """Tests for DynamicsUpstreamError exception."""

    def test_error_attributes(self):
        r = make_response(404, {"error": {"code": "0x80040217", "message": "account Does Not Exist"}},
                          reason="Not Found")
        err = DynamicsUpstreamError.from_response("GET", "accounts(1)", r, "")
        assert err.method == "GET"
        assert err.path == "accounts(1)"
        assert err.status == 404
        assert err.reason == "Not Found"
        assert "account Does Not Exist" in err.body
        assert err.payload == ""
        assert err.context is None
        assert "code=0x80040217" in str(err)

    def test_protocol_error_carries_context(self):
        r = make_response(201, reason="Created")
        err = DynamicsProtocolError.from_response("POST", "accounts", r, '{"name":"x"}', context="missing id")
        assert isinstance(err, DynamicsUpstreamError)
        assert err.status == 201
        assert err.payload == '{"name":"x"}'
        assert str(err).startswith("missing id")

    def test_error_message_truncation(self):
        err = DynamicsUpstreamError("GET", "accounts", 500, "Server Error", "x" * 5000)
        assert len(str(err)) < 1500
        assert len(err.body) == 5000


class TestTokenCache:
    """Tests for TokenCache."""

    def _credential(self, expires_on):
        credential = Mock()
        credential.get_token = Mock(return_value=Mock(token="tok", expires_on=expires_on))
        return credential

    def test_first_call_acquires(self):
        credential = self._credential(1000)
        cache = TokenCache(credential, "https://x/.default", clock=lambda: 0.0)
        assert cache.current is None
        assert cache.get_valid_token() == "tok"
        credential.get_token.assert_called_once_with("https://x/.default")
        assert cache.current == CachedToken("tok", 1000.0)

    def test_no_refresh_well_before_expiry(self):
        now = [0.0]
        credential = self._credential(1000)
        cache = TokenCache(credential, "scope", clock=lambda: now[0])
        cache.get_valid_token()
        now[0] = 1000 - 10
        cache.get_valid_token()
        assert credential.get_token.call_count == 1

    def test_refresh_inside_safety_margin(self):
        now = [0.0]
        credential = self._credential(1000)
        cache = TokenCache(credential, "scope", clock=lambda: now[0])
        cache.get_valid_token()
        now[0] = 1000 - 1
        cache.get_valid_token()
        assert credential.get_token.call_count == 2

    def test_acquisition_error_propagates(self):
        credential = Mock()
        credential.get_token = Mock(side_effect=RuntimeError("AADSTS7000215"))
        cache = TokenCache(credential, "scope")
        with pytest.raises(RuntimeError, match="AADSTS7000215"):
            cache.get_valid_token()
        assert cache.current is None
        assert credential.get_token.call_count == 1

    def test_invalidate(self):
        credential = self._credential(time.time() + 3600)
        cache = TokenCache(credential, "scope")
        cache.get_valid_token()
        cache.invalidate()
        cache.get_valid_token()
        assert credential.get_token.call_count == 2

    def test_concurrent_callers_share_one_refresh(self):
        def slow_get_token(scope):
            time.sleep(0.05)
            return Mock(token="tok", expires_on=time.time() + 3600)

        credential = Mock()
        credential.get_token = Mock(side_effect=slow_get_token)
        cache = TokenCache(credential, "scope")

        results = []
        threads = [threading.Thread(target=lambda: results.append(cache.get_valid_token())) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == ["tok"] * 10
        assert credential.get_token.call_count == 1

    @patch("simple_dynamics.core.token.ClientSecretCredential")
    def test_from_config(self, mock_credential_class, config):
        cache = TokenCache.from_config(config)
        mock_credential_class.assert_called_once_with(
            tenant_id="tenant-1",
            client_id="app-1",
            client_secret="secret-1",
            authority="login.microsoftonline.com",
            connection_timeout=60.0,
            read_timeout=60.0,
        )
        assert cache.scope == "https://contoso.crm4.dynamics.com/.default"
        assert cache.safety_margin == 2.0


class TestDynamicsSession:
    """Tests for DynamicsSession."""

    def test_default_headers(self, config, token_cache):
        sess = DynamicsSession(config, token_cache)
        prepared = sess.build_request("GET", "accounts(1)")

        assert prepared.url == API_URL + "accounts(1)"
        assert prepared.headers["Authorization"] == "Bearer tok-123"
        assert prepared.headers["Accept"] == "application/json"
        assert prepared.headers["Accept-Charset"] == "utf-8"
        assert prepared.headers["OData-MaxVersion"] == "4.0"
        assert prepared.headers["OData-Version"] == "4.0"
        assert prepared.headers["Prefer"] == 'odata.include-annotations="*"'
        assert prepared.body is None

    def test_page_size_preference(self, config, token_cache):
        sess = DynamicsSession(config, token_cache)
        prepared = sess.build_request("GET", "accounts", page_size=250)
        assert prepared.headers["Prefer"] == 'odata.maxpagesize=250,odata.include-annotations="*"'

    def test_json_body(self, config, token_cache):
        sess = DynamicsSession(config, token_cache)
        prepared = sess.build_request("PATCH", "accounts(1)", {"name": "Contoso", "fax": None})
        assert prepared.body == b'{"name":"Contoso"}'
        assert prepared.headers["Content-Type"] == "application/json; charset=utf-8"

    def test_absolute_url_used_verbatim(self, config, token_cache):
        sess = DynamicsSession(config, token_cache)
        link = API_URL + "accounts?$skiptoken=abc"
        prepared = sess.build_request("GET", link)
        assert prepared.url == link

    def test_token_fetched_per_request(self, config, token_cache):
        sess = DynamicsSession(config, token_cache)
        sess.build_request("GET", "accounts")
        sess.build_request("GET", "contacts")
        assert token_cache.get_valid_token.call_count == 2

    def test_request_raises_structured_error(self, config, token_cache):
        sess = DynamicsSession(config, token_cache)
        sess.session.send = Mock(return_value=make_response(
            400, {"error": {"code": "0x0", "message": "bad"}}, reason="Bad Request"))

        with pytest.raises(DynamicsUpstreamError) as exc_info:
            sess.request("POST", "accounts", {"name": "Contoso"})

        err = exc_info.value
        assert err.status == 400
        assert err.method == "POST"
        assert err.path == "accounts"
        assert err.payload == '{"name":"Contoso"}'

    def test_request_without_raise(self, config, token_cache):
        sess = DynamicsSession(config, token_cache)
        sess.session.send = Mock(return_value=make_response(500, reason="Server Error"))
        r = sess.request("GET", "accounts", raise_for_error=False)
        assert r.status_code == 500

    def test_request_passes_timeout(self, config, token_cache):
        sess = DynamicsSession(config, token_cache)
        sess.session.send = Mock(return_value=make_response(200, {"value": []}))
        sess.request("GET", "accounts")
        kwargs = sess.session.send.call_args.kwargs
        assert kwargs["timeout"] == 60.0
        assert kwargs["verify"] is True

    def test_transport_error_propagates(self, config, token_cache):
        sess = DynamicsSession(config, token_cache)
        sess.session.send = Mock(side_effect=requests.ConnectionError("boom"))
        with pytest.raises(requests.ConnectionError):
            sess.request("GET", "accounts")

    def test_auth_error_blocks_request(self, config):
        tokens = Mock()
        tokens.get_valid_token = Mock(side_effect=RuntimeError("auth failed"))
        sess = DynamicsSession(config, tokens)
        sess.session.send = Mock()
        with pytest.raises(RuntimeError, match="auth failed"):
            sess.request("GET", "accounts")
        sess.session.send.assert_not_called()

    def test_context_manager(self, config, token_cache):
        with DynamicsSession(config, token_cache) as sess:
            sess.session.close = Mock()
        sess.session.close.assert_called_once()


class TestConnectionContext:
    """Tests for ConnectionContext."""

    def test_missing_base_url_raises(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="Missing base_url"):
                ConnectionContext(base_url="")

    def test_missing_credentials_raises(self):
        with patch.dict("os.environ", {}, clear=True):
            with pytest.raises(ValueError, match="Missing credentials"):
                ConnectionContext(base_url="https://contoso.crm4.dynamics.com")

    @patch.dict("os.environ", {
        "DYNAMICS_URL": "https://env.crm.dynamics.com/",
        "DYNAMICS_TENANT_ID": "t",
        "DYNAMICS_CLIENT_ID": "c",
        "DYNAMICS_CLIENT_SECRET": "s",
        "DYNAMICS_PLURAL_OVERRIDES": "gp_person=gp_people",
        "DYNAMICS_TIMEOUT": "15",
    })
    def test_reads_from_environment(self):
        conn = ConnectionContext()
        assert conn.base_url == "https://env.crm.dynamics.com"
        assert conn.plural_overrides == {"gp_person": "gp_people"}
        assert conn.config.timeout == 15.0
        assert conn.config.application_id == "c"

    def test_explicit_params_override_env(self):
        conn = ConnectionContext(
            base_url="https://explicit.crm.dynamics.com",
            tenant_id="t",
            application_id="c",
            application_secret="s",
            plural_overrides={},
        )
        assert conn.base_url == "https://explicit.crm.dynamics.com"
        assert conn.plural_overrides == {}

    def test_loads_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text(
            "DYNAMICS_URL=https://file.crm.dynamics.com\n"
            "DYNAMICS_TENANT_ID=t\n"
            "DYNAMICS_CLIENT_ID=c\n"
            "DYNAMICS_CLIENT_SECRET=s\n"
        )
        with patch.dict("os.environ", {}, clear=True):
            conn = ConnectionContext(env_file=str(env_file))
        assert conn.base_url == "https://file.crm.dynamics.com"

    @patch("simple_dynamics.core.token.ClientSecretCredential")
    def test_get_service(self, mock_credential_class):
        conn = ConnectionContext(
            base_url="https://contoso.crm.dynamics.com",
            tenant_id="t",
            application_id="c",
            application_secret="s",
            plural_overrides={"gp_person": "gp_people"},
        )
        with conn:
            api = conn.get_service()
            assert api.plural_name("gp_person") == "gp_people"
            assert api.api_url == "https://contoso.crm.dynamics.com/api/data/v9.2/"

    def test_parse_plural_overrides(self):
        assert parse_plural_overrides("a=b, c = d,broken,") == {"a": "b", "c": "d"}
        assert parse_plural_overrides(None) == {}
