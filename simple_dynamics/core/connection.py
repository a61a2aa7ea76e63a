"""
simple_dynamics.core.connection - High-level connection management
===================================================================

Provides a ConnectionContext that resolves configuration from
arguments, environment variables or a .env file.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Dict, Optional

from dotenv import load_dotenv

from simple_dynamics.core.session import DynamicsConfig, DynamicsSession

if TYPE_CHECKING:
    from simple_dynamics.odata.service import DynamicsService


def parse_plural_overrides(raw: Optional[str]) -> Dict[str, str]:
    """
    Parse "singular=plural,singular=plural" into a mapping.

    Examples
    --------
    >>> parse_plural_overrides("gp_person=gp_people, gp_data=gp_data")
    {'gp_person': 'gp_people', 'gp_data': 'gp_data'}
    """
    out: Dict[str, str] = {}
    for item in (raw or "").split(","):
        if "=" not in item:
            continue
        singular, plural = item.split("=", 1)
        if singular.strip() and plural.strip():
            out[singular.strip()] = plural.strip()
    return out


class ConnectionContext:
    """
    High-level connection manager for a Dynamics environment.

    Parameters
    ----------
    base_url : str, optional
        Organization URL. Falls back to DYNAMICS_URL env var.
    tenant_id : str, optional
        Falls back to DYNAMICS_TENANT_ID env var.
    application_id : str, optional
        Falls back to DYNAMICS_CLIENT_ID env var.
    application_secret : str, optional
        Falls back to DYNAMICS_CLIENT_SECRET env var.
    plural_overrides : dict, optional
        Falls back to DYNAMICS_PLURAL_OVERRIDES ("a=b,c=d").
    verify : bool, optional
        SSL verification. Falls back to DYNAMICS_VERIFY_TLS env var.
    timeout : float, optional
        Request timeout in seconds. Falls back to DYNAMICS_TIMEOUT, then 60.
    env_file : str, optional
        .env file loaded before reading the environment

    Examples
    --------
    >>> with ConnectionContext(env_file=".env") as conn:
    ...     service = conn.get_service()
    ...     accounts = service.retrieve_all("account", "?$select=name")
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        tenant_id: Optional[str] = None,
        application_id: Optional[str] = None,
        application_secret: Optional[str] = None,
        plural_overrides: Optional[Dict[str, str]] = None,
        verify: Optional[bool] = None,
        timeout: Optional[float] = None,
        env_file: Optional[str] = None,
    ) -> None:
        if env_file:
            load_dotenv(env_file)

        self._base_url = (base_url or os.environ.get("DYNAMICS_URL", "")).rstrip("/")
        self._tenant_id = tenant_id or os.environ.get("DYNAMICS_TENANT_ID", "")
        self._application_id = application_id or os.environ.get("DYNAMICS_CLIENT_ID", "")
        self._application_secret = application_secret or os.environ.get("DYNAMICS_CLIENT_SECRET", "")

        if plural_overrides is not None:
            self._plural_overrides = dict(plural_overrides)
        else:
            self._plural_overrides = parse_plural_overrides(os.environ.get("DYNAMICS_PLURAL_OVERRIDES"))

        if verify is not None:
            self._verify = verify
        else:
            self._verify = os.environ.get("DYNAMICS_VERIFY_TLS", "true").lower() != "false"

        self._timeout = timeout if timeout is not None else float(os.environ.get("DYNAMICS_TIMEOUT", "60"))

        if not self._base_url:
            raise ValueError(
                "Missing base_url. Set DYNAMICS_URL environment variable "
                "or pass base_url parameter."
            )

        if not (self._tenant_id and self._application_id and self._application_secret):
            raise ValueError(
                "Missing credentials. Set DYNAMICS_TENANT_ID, DYNAMICS_CLIENT_ID and "
                "DYNAMICS_CLIENT_SECRET, or pass tenant_id/application_id/application_secret."
            )

        self._session: Optional[DynamicsSession] = None

    @property
    def config(self) -> DynamicsConfig:
        return DynamicsConfig(
            base_url=self._base_url,
            tenant_id=self._tenant_id,
            application_id=self._application_id,
            application_secret=self._application_secret,
            plural_overrides=dict(self._plural_overrides),
            verify=self._verify,
            timeout=self._timeout,
        )

    @property
    def session(self) -> DynamicsSession:
        """Get or create the underlying session."""
        if self._session is None:
            self._session = DynamicsSession(self.config)
        return self._session

    def close(self) -> None:
        """Close the connection."""
        if self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "ConnectionContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def get_service(self) -> "DynamicsService":
        """
        Get a DynamicsService bound to this connection.

        Returns
        -------
        DynamicsService
            CRUD/query façade using the configured plural overrides
        """
        # Import here to avoid circular imports
        from simple_dynamics.odata.service import DynamicsService
        return DynamicsService(self.session)

    @property
    def base_url(self) -> str:
        """The configured organization URL."""
        return self._base_url

    @property
    def plural_overrides(self) -> Dict[str, str]:
        return dict(self._plural_overrides)
