"""
simple_dynamics.core.token - Bearer token cache
================================================

Client-credentials token cache shared by every request of a session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional
import logging
import threading
import time

from azure.identity import ClientSecretCredential

if TYPE_CHECKING:
    from azure.core.credentials import TokenCredential
    from simple_dynamics.core.session import DynamicsConfig


@dataclass(frozen=True)
class CachedToken:
    """
    An access token and its absolute expiry.

    Attributes
    ----------
    access_token : str
        Opaque bearer token
    expires_at : float
        Expiry as POSIX timestamp (seconds)
    """
    access_token: str
    expires_at: float

    def is_valid(self, now: float, margin: float) -> bool:
        return self.expires_at > now + margin


class TokenCache:
    """
    Lazily acquires and caches a bearer token for one scope.

    Concurrent callers racing past expiry share a single acquisition:
    the first one refreshes under the lock, the others wait and then
    reuse its result. Acquisition errors from the credential propagate
    unchanged and are not retried.

    Parameters
    ----------
    credential : TokenCredential
        Anything with get_token(scope) -> AccessToken(token, expires_on)
    scope : str
        Scope to request, e.g. "https://contoso.crm.dynamics.com/.default"
    safety_margin : float
        Seconds before expiry at which the token is refreshed
    clock : callable
        Returns the current POSIX time; injectable for tests
    """

    def __init__(
        self,
        credential: "TokenCredential",
        scope: str,
        *,
        safety_margin: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credential = credential
        self.scope = scope
        self.safety_margin = float(safety_margin)
        self._clock = clock
        self._token: Optional[CachedToken] = None
        self._lock = threading.Lock()
        self.logger = logging.getLogger("simple_dynamics.auth")

    @classmethod
    def from_config(cls, cfg: "DynamicsConfig") -> "TokenCache":
        """Build a cache backed by a ClientSecretCredential for cfg."""
        credential = ClientSecretCredential(
            tenant_id=cfg.tenant_id,
            client_id=cfg.application_id,
            client_secret=cfg.application_secret,
            authority=cfg.authority_host,
            connection_timeout=cfg.timeout,
            read_timeout=cfg.timeout,
        )
        return cls(credential, cfg.scope, safety_margin=cfg.token_safety_margin)

    @property
    def current(self) -> Optional[CachedToken]:
        return self._token

    def get_valid_token(self) -> str:
        """
        Return an access token valid beyond the safety margin.

        Returns
        -------
        str
            Bearer token
        """
        token = self._token
        if token is not None and token.is_valid(self._clock(), self.safety_margin):
            return token.access_token

        with self._lock:
            token = self._token
            if token is not None and token.is_valid(self._clock(), self.safety_margin):
                return token.access_token

            self.logger.debug("Acquiring token for scope %s", self.scope)
            result = self._credential.get_token(self.scope)
            token = CachedToken(result.token, float(result.expires_on))
            self._token = token
            self.logger.info("Token refreshed, valid for %ss", int(token.expires_at - self._clock()))
            return token.access_token

    def invalidate(self) -> None:
        """Drop the cached token so the next call acquires a fresh one."""
        with self._lock:
            self._token = None
