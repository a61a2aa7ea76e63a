"""
simple_dynamics.odata - Dynamics Web API operations
====================================================

This module provides the OData v4 operations on top of a session:

- DynamicsService: CRUD, paged queries, relationships, InitializeFrom, $batch
- pluralize / bind_path / odata_id_stamp: entity set naming and references
- encode_batch / decode_batch_response: $batch multipart codec
- EntityReference, BatchInstruction, PagedResult: value types

"""

from simple_dynamics.odata.models import BatchInstruction, EntityReference, PagedResult
from simple_dynamics.odata.naming import (
    add_single_reference,
    bind_path,
    odata_id_stamp,
    pluralize,
    remove_direct_references,
)
from simple_dynamics.odata.batch import BatchResponse, decode_batch_response, encode_batch
from simple_dynamics.odata.service import DynamicsService

__all__ = [
    "DynamicsService",
    "EntityReference",
    "BatchInstruction",
    "PagedResult",
    "pluralize",
    "bind_path",
    "odata_id_stamp",
    "add_single_reference",
    "remove_direct_references",
    "encode_batch",
    "decode_batch_response",
    "BatchResponse",
]
