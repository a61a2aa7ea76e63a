"""
simple_dynamics.odata.service - Dynamics Web API Service Client
================================================================

CRUD, query, relationship and batch operations on top of a
DynamicsSession.
"""

from __future__ import annotations

from io import BytesIO
from typing import Any, Dict, Generator, List, Mapping, Optional, Sequence
import logging
import re

from simple_dynamics.core.session import DynamicsProtocolError, DynamicsSession, dumps_payload
from simple_dynamics.odata.batch import BatchResponse, decode_batch_response, encode_batch
from simple_dynamics.odata.models import (
    BatchInstruction,
    EntityReference,
    Model,
    PagedResult,
    build,
)
from simple_dynamics.odata import naming

DEFAULT_PAGE_SIZE = 5000

_ENTITY_ID_RE = re.compile(r"\(([^()]+)\)\s*$")

logger = logging.getLogger("simple_dynamics.odata")


def _select(columns: Optional[Sequence[str]]) -> str:
    return ",".join([c.strip() for c in columns or [] if c and c.strip()])


class DynamicsService:
    """
    CRUD/query façade for the Dynamics Web API.

    Every read accepts an optional ``model`` callable that turns one JSON
    object into a caller type (e.g. ``Account.from_dict``); without it
    plain dicts are returned.

    Parameters
    ----------
    sess : DynamicsSession
        Active session
    plural_overrides : mapping, optional
        Logical name -> entity set name; defaults to the session config

    Examples
    --------
    >>> with DynamicsSession(cfg) as sess:
    ...     api = DynamicsService(sess)
    ...     account_id = api.create("account", {"name": "Contoso"})
    ...     api.update("account", account_id, {"telephone1": "555-0100"})
    ...     contacts = api.get_children("contact", "_parentcustomerid_value", account_id)
    """

    def __init__(
        self,
        sess: DynamicsSession,
        plural_overrides: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.sess = sess
        if plural_overrides is None:
            plural_overrides = sess.cfg.plural_overrides
        self.plural_overrides: Dict[str, str] = dict(plural_overrides or {})

    # ---------------- naming ----------------

    @property
    def api_url(self) -> str:
        """Absolute API root, ending with a slash."""
        return self.sess.base

    def plural_name(self, logical_name: str) -> str:
        return naming.pluralize(logical_name, self.plural_overrides)

    def bind_path(self, ref: EntityReference) -> str:
        return naming.bind_path(ref, self.plural_overrides)

    def odata_id_stamp(self, ref: EntityReference) -> str:
        return naming.odata_id_stamp(ref, self.plural_overrides)

    def _record_path(self, entity_name: str, id: Any) -> str:
        return f"{self.plural_name(entity_name)}({id})"

    # ---------------- generic requests ----------------

    def get(self, path: str, model: Model = None, *, page_size: Optional[int] = None) -> Any:
        """
        GET a path and decode its JSON body.

        Parameters
        ----------
        path : str
            Path relative to the API root, or an absolute URL
        model : callable, optional
            Applied to the decoded object
        page_size : int, optional
            Adds an odata.maxpagesize preference

        Returns
        -------
        Any
            Decoded (and modelled) body, or None for an empty body
        """
        r = self.sess.request("GET", path, page_size=page_size)
        return build(r.json() if r.content else None, model)

    def post(self, path: str, payload: Any, model: Model = None) -> Any:
        """POST a JSON payload; returns the decoded body or None on 204."""
        r = self.sess.request("POST", path, payload)
        return build(r.json() if r.content else None, model)

    # ---------------- CRUD ----------------

    def create(self, entity_name: str, payload: Any) -> str:
        """
        Create a record and return its id.

        Raises
        ------
        DynamicsUpstreamError
            On a non-success status
        DynamicsProtocolError
            If the response has no parsable OData-EntityId header
        """
        path = self.plural_name(entity_name)
        r = self.sess.request("POST", path, payload)
        entity_id = r.headers.get("OData-EntityId", "")
        m = _ENTITY_ID_RE.search(entity_id)
        if not m:
            raise DynamicsProtocolError.from_response(
                "POST", path, r, dumps_payload(payload),
                context="No OData-EntityId in response headers",
            )
        logger.debug("Created %s %s", entity_name, m.group(1))
        return m.group(1)

    def update(self, entity_name: str, id: Any, payload: Any) -> None:
        """PATCH a record. None-valued properties are not sent."""
        self.sess.request("PATCH", self._record_path(entity_name, id), payload)

    def delete(self, entity_name: str, id: Any) -> None:
        self.sess.request("DELETE", self._record_path(entity_name, id))

    def retrieve(self, entity_name: str, id: Any, options: str = "", model: Model = None) -> Any:
        """
        Read one record.

        Parameters
        ----------
        entity_name : str
            Logical table name
        id : str or uuid.UUID
            Record id
        options : str
            Pre-built query suffix, e.g. "?$select=name"
        model : callable, optional
            Applied to the decoded record
        """
        return self.get(self._record_path(entity_name, id) + options, model)

    def retrieve_many(
        self,
        entity_name: str,
        options: str = "",
        page_size: int = DEFAULT_PAGE_SIZE,
        model: Model = None,
    ) -> PagedResult:
        """Read the first page of a collection query."""
        payload = self.get(self.plural_name(entity_name) + options, page_size=page_size)
        return PagedResult.from_payload(payload, model)

    def retrieve_all(
        self,
        entity_name: str,
        options: str = "",
        page_size: int = DEFAULT_PAGE_SIZE,
        model: Model = None,
    ) -> List[Any]:
        """Read every page of a collection query."""
        return self.get_all(self.plural_name(entity_name) + options, page_size, model)

    # ---------------- paging ----------------

    def iterate_pages(
        self,
        path: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        model: Model = None,
    ) -> Generator[PagedResult, None, None]:
        """
        Yield pages, following @odata.nextLink until the server stops
        sending one.

        Parameters
        ----------
        path : str
            Initial collection path
        page_size : int
            Requested odata.maxpagesize
        model : callable, optional
            Applied to each record

        Yields
        ------
        PagedResult
            Each page in server order
        """
        next_path: Optional[str] = path
        while next_path:
            page = PagedResult.from_payload(self.get(next_path, page_size=page_size), model)
            yield page
            next_path = page.next_link

    def get_all(
        self,
        path: str,
        page_size: int = DEFAULT_PAGE_SIZE,
        model: Model = None,
    ) -> List[Any]:
        """
        Read all pages into a single list.

        A failing page raises and discards the records gathered so far.
        """
        out: List[Any] = []
        for page in self.iterate_pages(path, page_size, model):
            out.extend(page.entities)
        return out

    # ---------------- binary ----------------

    def get_binary(self, path: str) -> BytesIO:
        """
        Download a file or image column into memory.

        The caller owns the returned buffer.

        Raises
        ------
        requests.HTTPError
            On any non-2xx status
        """
        r = self.sess.request("GET", path, raise_for_error=False)
        r.raise_for_status()
        return BytesIO(r.content)

    # ---------------- relationships ----------------

    def get_related(
        self,
        parent: EntityReference,
        relation_field: str,
        columns: Optional[Sequence[str]] = None,
        model: Model = None,
    ) -> List[Any]:
        """
        Read a collection-valued navigation property (e.g. N:N) by
        expanding it on the parent record.

        Returns an empty list when the parent or the property is absent.
        """
        select = _select(columns)
        expand = f"?$expand={relation_field}" + (f"($select={select})" if select else "")
        record = self.retrieve(parent.logical_name, parent.id, expand)
        if not record:
            return []
        related = record.get(relation_field)
        if not related:
            return []
        return [build(r, model) for r in related]

    def get_children(
        self,
        entity_name: str,
        relation_field: str,
        parent_id: Any,
        columns: Optional[Sequence[str]] = None,
        model: Model = None,
    ) -> List[Any]:
        """
        Read all records of entity_name whose lookup relation_field
        points to parent_id (1:N).
        """
        options = f"?$filter={relation_field} eq {parent_id}"
        select = _select(columns)
        if select:
            options += f"&$select={select}"
        return self.retrieve_all(entity_name, options, model=model)

    def add_relationship(
        self,
        parent: EntityReference,
        children: Sequence[EntityReference],
        field_name: str,
    ) -> None:
        """
        Associate children with parent through a collection-valued
        navigation property. One request per child, in order.
        """
        path = f"{self.bind_path(parent)}/{field_name}/$ref"
        for child in children:
            payload = {
                "@odata.id": f"{self.api_url}{self.bind_path(child)}",
                "@odata.context": f"{self.api_url}$metadata#$ref",
            }
            self.post(path, payload)

    def remove_relationship(self, parent: EntityReference, relation_field: str, child_id: Any) -> None:
        """Disassociate one child from parent."""
        path = f"{self.bind_path(parent)}/{relation_field}({child_id})/$ref"
        self.sess.request("DELETE", path)

    # ---------------- functions ----------------

    def initialize_from(self, entity_moniker: EntityReference, target_logical_name: str, model: Model = None) -> Any:
        """
        Call InitializeFrom to get a new-record template for
        target_logical_name mapped from an existing record.
        """
        query = (
            "InitializeFrom(EntityMoniker=@p1,TargetEntityName=@p2,TargetFieldType=@p3)"
            f"?@p1={self.odata_id_stamp(entity_moniker)}"
            f"&@p2='{target_logical_name}'"
            "&@p3=Microsoft.Dynamics.CRM.TargetFieldType'ValidForCreate'"
        )
        return self.get(query, model)

    # ---------------- batch ----------------

    def _send_batch(self, instructions: Sequence[BatchInstruction]):
        body, boundary = encode_batch(instructions)
        return self.sess.request(
            "POST",
            "$batch",
            data=body,
            content_type=f"multipart/mixed; boundary={boundary}",
        )

    def execute_batch(self, instructions: Sequence[BatchInstruction]) -> str:
        """
        Send instructions as one $batch request.

        Returns
        -------
        str
            Raw multipart response; use execute_batch_decoded for
            per-request results
        """
        return self._send_batch(instructions).text

    def execute_batch_decoded(self, instructions: Sequence[BatchInstruction]) -> List[BatchResponse]:
        """
        Send instructions as one $batch request and split the response
        using the boundary from its Content-Type.

        Returns
        -------
        list of BatchResponse
            One result per response part, in order
        """
        r = self._send_batch(instructions)
        return decode_batch_response(r.text, r.headers.get("Content-Type", ""))
