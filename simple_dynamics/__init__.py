"""
Simple Dynamics Connector (simple_dynamics)
===========================================

A small Python client for the Dynamics 365 / Dataverse Web API
(OData v4) using client-credentials authentication.

Usage
-----
>>> from simple_dynamics import ConnectionContext, EntityReference
>>>
>>> with ConnectionContext() as conn:
...     api = conn.get_service()
...     account_id = api.create("account", {"name": "Contoso"})
...     account = api.retrieve("account", account_id, "?$select=name")
...     contacts = api.retrieve_all("contact", "?$select=fullname", page_size=500)

Subpackages
-----------
- simple_dynamics.core: Configuration, token cache, HTTP session
- simple_dynamics.odata: CRUD/query service, naming, $batch codec

"""

__version__ = "0.1.0"

# Core exports - available at package root
from simple_dynamics.core.session import (
    DynamicsConfig,
    DynamicsSession,
    DynamicsUpstreamError,
    DynamicsProtocolError,
)

from simple_dynamics.core.token import TokenCache

from simple_dynamics.core.connection import ConnectionContext

# Convenience re-exports
from simple_dynamics.odata import (
    BatchInstruction,
    DynamicsService,
    EntityReference,
    PagedResult,
    pluralize,
)

__all__ = [
    # Version
    "__version__",
    # Core
    "DynamicsConfig",
    "DynamicsSession",
    "DynamicsUpstreamError",
    "DynamicsProtocolError",
    "TokenCache",
    "ConnectionContext",
    # OData
    "DynamicsService",
    "EntityReference",
    "BatchInstruction",
    "PagedResult",
    "pluralize",
]
