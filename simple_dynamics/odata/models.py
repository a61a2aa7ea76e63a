"""
simple_dynamics.odata.models - Value types exchanged with the Web API
======================================================================
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")

# Maps one JSON object to a caller type; None keeps plain dicts.
Model = Optional[Callable[[Dict[str, Any]], T]]


def build(data: Any, model: "Model" = None) -> Any:
    """Apply model to a decoded JSON object, passing None through."""
    if data is None or model is None:
        return data
    return model(data)


@dataclass(frozen=True)
class EntityReference:
    """
    Pointer to a single record.

    Equality and hashing use only ``id``; logical_name and name are
    descriptive.

    Attributes
    ----------
    id : str or uuid.UUID
        Record identifier
    logical_name : str
        Logical (singular) table name, e.g. "account"
    name : str, optional
        Display name

    Examples
    --------
    >>> EntityReference("1", "account") == EntityReference("1", "contact", "x")
    True
    """
    id: Any
    logical_name: str = field(compare=False)
    name: Optional[str] = field(default=None, compare=False)


@dataclass
class BatchInstruction:
    """
    One request inside a $batch call.

    Attributes
    ----------
    command : str
        POST, PATCH, DELETE or GET
    url_segment : str
        Request target as it should appear in the inner request line
    payload : dict
        JSON body; empty for bodiless requests
    """
    command: str
    url_segment: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PagedResult(Generic[T]):
    """One page of a collection response."""
    entities: List[T] = field(default_factory=list)
    next_link: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]], model: "Model" = None) -> "PagedResult":
        if not payload:
            return cls()
        values = payload.get("value") or []
        return cls(
            entities=[build(v, model) for v in values],
            next_link=payload.get("@odata.nextLink") or None,
        )
