"""
simple_dynamics.odata.naming - Entity set names and reference binding
======================================================================

Turns logical table names into entity set (URL) names and renders
EntityReference values into the forms the Web API accepts.
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from simple_dynamics.odata.models import EntityReference


_ES_SUFFIXES = ("ch", "s", "sh", "x", "z")


def pluralize(logical_name: str, overrides: Optional[Mapping[str, str]] = None) -> str:
    """
    Map a logical table name to its entity set name.

    An exact (case-sensitive) entry in overrides wins. Otherwise the
    English surface rules apply, first match wins:

    1. ends with ch, s, sh, x or z -> append "es"
    2. ends with y -> replace "y" with "ies"
    3. ends with f -> replace "f" with "ves"
    4. anything else -> append "s"

    Parameters
    ----------
    logical_name : str
        Singular logical name, e.g. "account"
    overrides : mapping, optional
        Explicit singular -> plural table

    Returns
    -------
    str
        Entity set name

    Examples
    --------
    >>> pluralize("branch")
    'branches'
    >>> pluralize("category")
    'categories'
    >>> pluralize("gp_person", {"gp_person": "gp_people"})
    'gp_people'
    """
    if overrides and logical_name in overrides:
        return overrides[logical_name]
    if logical_name.endswith(_ES_SUFFIXES):
        return logical_name + "es"
    if logical_name.endswith("y"):
        return logical_name[:-1] + "ies"
    if logical_name.endswith("f"):
        return logical_name[:-1] + "ves"
    return logical_name + "s"


def bind_path(ref: EntityReference, overrides: Optional[Mapping[str, str]] = None) -> str:
    """Relative resource path of a record, e.g. "accounts(<id>)"."""
    return f"{pluralize(ref.logical_name, overrides)}({ref.id})"


def odata_id_stamp(ref: EntityReference, overrides: Optional[Mapping[str, str]] = None) -> str:
    """Inline entity moniker for function parameters, e.g. {'@odata.id':'accounts(<id>)'}."""
    return "{'@odata.id':'" + bind_path(ref, overrides) + "'}"


def add_single_reference(payload: Dict[str, Any], field: str, table: str, id: Any) -> Dict[str, Any]:
    """
    Set a single-valued lookup on a create/update payload.

    Writes ``<field>@odata.bind`` = ``/<table>(<id>)``. An empty id
    stores None, which dumps_payload leaves out of the body.
    """
    payload[f"{field}@odata.bind"] = f"/{table}({id})" if id else None
    return payload


def remove_direct_references(record: Dict[str, Any]) -> Dict[str, Any]:
    """
    Copy a retrieved record without its read-only ``_<name>_value``
    lookup columns.
    """
    return {
        k: v for k, v in record.items()
        if not (k.startswith("_") and k.endswith("_value"))
    }
