"""
simple_dynamics.core - Core connectivity and authentication
============================================================

This module provides the foundational classes for talking to Dynamics:

- DynamicsConfig: Connection configuration
- TokenCache: Client-credentials token cache with single-flight refresh
- DynamicsSession: Low-level HTTP session building OData v4 requests
- ConnectionContext: High-level connection manager (env / .env driven)

"""

from simple_dynamics.core.session import (
    DynamicsConfig,
    DynamicsSession,
    DynamicsUpstreamError,
    DynamicsProtocolError,
    dumps_payload,
)

from simple_dynamics.core.token import CachedToken, TokenCache

from simple_dynamics.core.connection import ConnectionContext

__all__ = [
    "DynamicsConfig",
    "DynamicsSession",
    "DynamicsUpstreamError",
    "DynamicsProtocolError",
    "dumps_payload",
    "CachedToken",
    "TokenCache",
    "ConnectionContext",
]
