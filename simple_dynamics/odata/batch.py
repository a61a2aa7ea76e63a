"""
simple_dynamics.odata.batch - OData $batch multipart codec
===========================================================

Encodes BatchInstruction sequences as a multipart/mixed body and splits
the multipart response into per-request results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple
import json
import re
import uuid

from simple_dynamics.core.session import dumps_payload
from simple_dynamics.odata.models import BatchInstruction

CRLF = "\r\n"

_BOUNDARY_RE = re.compile(r'boundary="?([^";]+)"?', re.IGNORECASE)
_STATUS_RE = re.compile(r"^HTTP/\d\.\d\s+(\d{3})\s*(.*)$")

BATCH_COMMANDS = ("POST", "PATCH", "DELETE", "GET")


def new_boundary() -> str:
    """
    Boundary token for one batch call, e.g. ``batch_20240131093005_1f2e3d4c5b6a``.

    The random suffix keeps two batches issued within the same second apart.
    """
    return f"batch_{datetime.now():%Y%m%d%H%M%S}_{uuid.uuid4().hex[:12]}"


def _encode_part(instruction: BatchInstruction) -> str:
    body = dumps_payload(instruction.payload) if instruction.payload else ""
    return CRLF.join([
        "Content-Type: application/http",
        "Content-Transfer-Encoding: binary",
        "",
        f"{instruction.command.upper()} {instruction.url_segment} HTTP/1.1",
        "Accept: application/json",
        "Content-Type: application/json;type=entry",
        "",
        body,
    ]) + CRLF


def encode_batch(
    instructions: Sequence[BatchInstruction],
    boundary: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Serialize instructions as a multipart/mixed $batch body.

    Parameters
    ----------
    instructions : sequence of BatchInstruction
        Requests in execution order
    boundary : str, optional
        Boundary token; a fresh one from new_boundary() when omitted

    Returns
    -------
    tuple of (str, str)
        (body, boundary). Send with
        ``Content-Type: multipart/mixed; boundary=<boundary>``.

    Raises
    ------
    ValueError
        If a command is not POST, PATCH, DELETE or GET
    """
    for instruction in instructions:
        if instruction.command.upper() not in BATCH_COMMANDS:
            raise ValueError(f"Unsupported batch command: {instruction.command!r}")
    boundary = boundary or new_boundary()
    delimiter = f"--{boundary}{CRLF}"
    body = "".join(delimiter + _encode_part(i) for i in instructions)
    return body + f"--{boundary}--{CRLF}", boundary


@dataclass
class BatchResponse:
    """Result of one request inside a $batch response."""
    status: int
    reason: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def json(self) -> Any:
        return json.loads(self.body) if self.body.strip() else None


def _split_headers(block: str) -> Tuple[List[str], str]:
    head, _, rest = block.partition("\n\n")
    return [line for line in head.split("\n") if line], rest


def _decode_part(part: str) -> Optional[BatchResponse]:
    _, http = _split_headers(part.lstrip("\n"))
    lines, body = _split_headers(http.lstrip("\n"))
    if not lines:
        return None
    m = _STATUS_RE.match(lines[0].strip())
    if not m:
        return None
    headers: Dict[str, str] = {}
    for line in lines[1:]:
        name, _, value = line.partition(":")
        headers[name.strip()] = value.strip()
    return BatchResponse(int(m.group(1)), m.group(2).strip(), headers, body.strip())


def decode_batch_response(body: str, content_type: str) -> List[BatchResponse]:
    """
    Split a $batch response into its per-request results.

    Parameters
    ----------
    body : str
        Raw multipart response text
    content_type : str
        Response Content-Type carrying the boundary parameter

    Returns
    -------
    list of BatchResponse
        One entry per response part, in order

    Raises
    ------
    ValueError
        If content_type has no boundary
    """
    m = _BOUNDARY_RE.search(content_type or "")
    if not m:
        raise ValueError(f"No multipart boundary in Content-Type: {content_type!r}")
    boundary = m.group(1)

    text = body.replace(CRLF, "\n")
    text = text.split(f"--{boundary}--", 1)[0]
    out: List[BatchResponse] = []
    for part in text.split(f"--{boundary}")[1:]:
        decoded = _decode_part(part)
        if decoded is not None:
            out.append(decoded)
    return out
