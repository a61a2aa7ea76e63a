"""
simple_dynamics.core.session - Dynamics Web API HTTP Session
=============================================================

Low-level session handling for the Dynamics 365 / Dataverse Web API with:
- Client-credentials bearer tokens from a shared TokenCache
- OData v4 default headers and page-size preferences
- Compact JSON bodies that omit unset (None) properties
- Structured error extraction from OData error envelopes
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from typing import Any, Dict, Optional, Union
import json
import logging
import time

import requests
from requests import PreparedRequest, Response, Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from simple_dynamics.core.token import TokenCache


API_PATH = "/api/data/v9.2/"
MEDIA_JSON = "application/json"
ANNOTATIONS_PREFERENCE = 'odata.include-annotations="*"'


class DynamicsUpstreamError(RuntimeError):
    """
    Exception raised when the Dynamics Web API returns a non-success status.

    Attributes
    ----------
    method : str
        HTTP method of the failed request
    path : str
        Request path (relative to the API root, or an absolute next link)
    status : int
        HTTP status code
    reason : str
        HTTP reason phrase
    body : str
        Raw response body
    payload : str
        Serialized request body that was sent ("" for bodiless requests)
    context : str, optional
        Extra explanation supplied at the failure site
    """

    def __init__(
        self,
        method: str,
        path: str,
        status: int,
        reason: str = "",
        body: str = "",
        payload: str = "",
        context: Optional[str] = None,
    ):
        self.method = method
        self.path = path
        self.status = status
        self.reason = reason or ""
        self.body = body or ""
        self.payload = payload or ""
        self.context = context
        super().__init__(self._format())

    def _format(self) -> str:
        prefix = f"{self.context}: " if self.context else ""
        snippet = _summarize_error_body(self.body)[:1200]
        return (
            f"{prefix}Dynamics upstream error {self.status} {self.reason} "
            f"during {self.method} {self.path}: {snippet}"
        )

    @classmethod
    def from_response(
        cls,
        method: str,
        path: str,
        r: Response,
        payload: str = "",
        context: Optional[str] = None,
    ) -> "DynamicsUpstreamError":
        return cls(
            method=method,
            path=path,
            status=r.status_code,
            reason=r.reason or "",
            body=r.text,
            payload=payload,
            context=context,
        )


class DynamicsProtocolError(DynamicsUpstreamError):
    """
    The server answered with a success status but the response lacks
    a part the operation depends on (e.g. the OData-EntityId header).
    """


def _summarize_error_body(body: str) -> str:
    try:
        data = json.loads(body)
    except ValueError:
        return body
    if not isinstance(data, dict) or not isinstance(data.get("error"), dict):
        return body

    err = data["error"]
    parts = []
    if err.get("code"):
        parts.append(f"code={err['code']}")
    if err.get("message"):
        parts.append(f"message={err['message']}")
    return " | ".join(parts) or body


def _strip_none(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        value = {f.name: getattr(value, f.name) for f in fields(value)}
    if isinstance(value, dict):
        return {k: _strip_none(v) for k, v in value.items() if v is not None}
    if isinstance(value, (list, tuple)):
        return [_strip_none(v) for v in value]
    return value


def _json_default(value: Any) -> str:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def dumps_payload(payload: Any) -> str:
    """
    Serialize a request body as compact JSON.

    Properties whose value is None are left out entirely, at any depth.
    Omission means "leave this column untouched" on the server, so an
    explicit None cannot be used to clear a column through this path.

    Parameters
    ----------
    payload : dict, dataclass instance or list
        Body to serialize

    Returns
    -------
    str
        Compact JSON text

    Examples
    --------
    >>> dumps_payload({"name": "Contoso", "fax": None})
    '{"name":"Contoso"}'
    """
    return json.dumps(_strip_none(payload), separators=(",", ":"), default=_json_default)


@dataclass
class DynamicsConfig:
    """
    Connection configuration for a Dynamics 365 / Dataverse environment.

    Parameters
    ----------
    base_url : str
        Organization URL, e.g. "https://contoso.crm4.dynamics.com"
    tenant_id : str
        Entra ID tenant used as token authority
    application_id : str
        Client id of the app registration
    application_secret : str
        Client secret of the app registration
    plural_overrides : dict
        Logical name -> entity set name, for names the English
        rules pluralize wrongly
    timeout : float
        Request timeout in seconds (default: 60.0)
    retries : int
        Transport retry attempts (default: 0, no retries)
    backoff : float
        Backoff factor when retries are enabled
    verify : bool or str
        SSL verification (True, False, or path to CA bundle)
    user_agent : str
        User-Agent header value
    authority_host : str
        Identity authority host
    token_safety_margin : float
        Seconds before expiry at which a cached token counts as expired

    Examples
    --------
    >>> cfg = DynamicsConfig(
    ...     base_url="https://contoso.crm4.dynamics.com",
    ...     tenant_id="00000000-0000-0000-0000-000000000001",
    ...     application_id="00000000-0000-0000-0000-000000000002",
    ...     application_secret="secret",
    ...     plural_overrides={"gp_person": "gp_people"},
    ... )
    >>> cfg.api_url
    'https://contoso.crm4.dynamics.com/api/data/v9.2/'
    """
    base_url: str
    tenant_id: str
    application_id: str
    application_secret: str
    plural_overrides: Dict[str, str] = field(default_factory=dict)
    timeout: float = 60.0
    retries: int = 0
    backoff: float = 0.5
    verify: Union[bool, str] = True
    user_agent: str = "simple-dynamics/0.1"
    authority_host: str = "login.microsoftonline.com"
    token_safety_margin: float = 2.0

    @property
    def authority(self) -> str:
        return f"https://{self.authority_host}/{self.tenant_id}"

    @property
    def scope(self) -> str:
        return f"{self.base_url.rstrip('/')}/.default"

    @property
    def api_url(self) -> str:
        return self.base_url.rstrip("/") + API_PATH


class DynamicsSession:
    """
    Low-level HTTP session for the Dynamics Web API.

    Builds authenticated OData v4 requests, sends them and turns
    non-success responses into DynamicsUpstreamError. Safe to share
    between threads; the token cache is the only mutable state.

    Parameters
    ----------
    cfg : DynamicsConfig
        Connection configuration
    token_cache : TokenCache, optional
        Token source; built from cfg when omitted

    Examples
    --------
    >>> with DynamicsSession(cfg) as sess:
    ...     r = sess.request("GET", "accounts?$top=1")
    """

    def __init__(self, cfg: DynamicsConfig, token_cache: Optional[TokenCache] = None) -> None:
        self.cfg = cfg
        self.base = cfg.api_url
        self.timeout = float(cfg.timeout)
        self.verify = cfg.verify
        self.logger = logging.getLogger("simple_dynamics.odata")

        self.tokens = token_cache or TokenCache.from_config(cfg)
        self.session = self._build_session()

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self.session.close()

    def __enter__(self) -> "DynamicsSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---------------- session ----------------

    def _build_session(self) -> Session:
        sess = requests.Session()
        sess.headers.update({
            "Accept": MEDIA_JSON,
            "Accept-Charset": "utf-8",
            "OData-MaxVersion": "4.0",
            "OData-Version": "4.0",
            "Prefer": ANNOTATIONS_PREFERENCE,
            "User-Agent": self.cfg.user_agent,
        })

        retry = Retry(
            total=self.cfg.retries,
            backoff_factor=self.cfg.backoff,
            status_forcelist=(429, 502, 503, 504),
            raise_on_status=False,
        )
        adapter = HTTPAdapter(max_retries=retry, pool_connections=20, pool_maxsize=50)
        sess.mount("https://", adapter)
        sess.mount("http://", adapter)
        return sess

    # ---------------- helpers ----------------

    def _url(self, path: str) -> str:
        if path.startswith(("https://", "http://")):
            return path
        return f"{self.base}{path.lstrip('/')}"

    def _raise_for_error(self, r: Response, method: str, path: str, payload: str) -> None:
        if not r.ok:
            self.logger.warning("%s %s failed with %s %s", method, path, r.status_code, r.reason)
            raise DynamicsUpstreamError.from_response(method, path, r, payload)

    # ---------------- public ops ----------------

    def build_request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        *,
        page_size: Optional[int] = None,
        data: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> PreparedRequest:
        """
        Compose an authenticated request for one logical operation.

        Parameters
        ----------
        method : str
            HTTP method
        path : str
            Path relative to the API root, or an absolute URL
        payload : dict or dataclass, optional
            JSON body, serialized with dumps_payload
        page_size : int, optional
            Adds an odata.maxpagesize preference
        data : str, optional
            Pre-encoded body, used instead of payload
        content_type : str, optional
            Content-Type for data

        Returns
        -------
        requests.PreparedRequest
        """
        headers = {"Authorization": f"Bearer {self.tokens.get_valid_token()}"}
        if page_size is not None:
            headers["Prefer"] = f"odata.maxpagesize={int(page_size)},{ANNOTATIONS_PREFERENCE}"

        body: Optional[bytes] = None
        if data is not None:
            body = data.encode("utf-8")
            headers["Content-Type"] = content_type or "text/plain; charset=utf-8"
        elif payload is not None:
            body = dumps_payload(payload).encode("utf-8")
            headers["Content-Type"] = f"{MEDIA_JSON}; charset=utf-8"

        req = requests.Request(method.upper(), self._url(path), headers=headers, data=body)
        return self.session.prepare_request(req)

    def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        *,
        page_size: Optional[int] = None,
        data: Optional[str] = None,
        content_type: Optional[str] = None,
        raise_for_error: bool = True,
    ) -> Response:
        """
        Build, send and check a single request.

        Raises
        ------
        DynamicsUpstreamError
            On any non-2xx status when raise_for_error is True
        requests.RequestException
            When the exchange itself fails (network, TLS, timeout)
        """
        prepared = self.build_request(
            method, path, payload, page_size=page_size, data=data, content_type=content_type
        )
        t0 = time.perf_counter()
        r = self.session.send(prepared, timeout=self.timeout, verify=self.verify)
        dt = (time.perf_counter() - t0) * 1000.0
        self.logger.debug("%s %s %sms", method.upper(), prepared.url, round(dt, 1))
        if raise_for_error:
            self._raise_for_error(r, method.upper(), path, _body_text(prepared))
        return r


def _body_text(prepared: PreparedRequest) -> str:
    if prepared.body is None:
        return ""
    if isinstance(prepared.body, bytes):
        return prepared.body.decode("utf-8", errors="replace")
    return str(prepared.body)
