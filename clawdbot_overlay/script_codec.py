"""Locking-script codec for overlay payloads.

Overlay records ride in provably unspendable outputs of the form::

    OP_FALSE OP_RETURN <protocol tag> <UTF-8 JSON object>

Encoding always emits minimal pushdata.  Decoding has to cope with two
representations of the same bytes: some script parsers hand back one chunk per
push, others fold everything after ``OP_RETURN`` into a single data blob.  Both
are accepted and yield the same list of pushes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .model import COMPACT_JSON_SEPARATORS, PROTOCOL_ID, ParsedPayload

logger = logging.getLogger(__name__)

OP_FALSE = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_RETURN = 0x6A

MAX_DIRECT_PUSH = 0x4B
MAX_PUSHDATA4 = 0xFFFFFFFF

_LENGTH_WIDTHS = {OP_PUSHDATA1: 1, OP_PUSHDATA2: 2, OP_PUSHDATA4: 4}


class ScriptDecodeError(ValueError):
    """Raised when raw script bytes cannot be split into chunks."""


@dataclass
class ScriptChunk:
    op: int
    data: Optional[bytes] = None


@dataclass
class Script:
    """A locking script split into opcode/push chunks."""

    chunks: List[ScriptChunk] = field(default_factory=list)


def push_data(data: bytes) -> bytes:
    """Return ``data`` wrapped in the smallest pushdata encoding."""

    length = len(data)
    if length == 0:
        return bytes([OP_FALSE])
    if length <= MAX_DIRECT_PUSH:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    if length <= 0xFFFF:
        return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data
    if length <= MAX_PUSHDATA4:
        return bytes([OP_PUSHDATA4]) + length.to_bytes(4, "little") + data
    raise ValueError(f"Push of {length} bytes exceeds the PUSHDATA4 limit")


def build_overlay_script(payload: dict[str, Any], protocol_tag: str = PROTOCOL_ID) -> bytes:
    """Serialize ``payload`` into an ``OP_FALSE OP_RETURN`` locking script."""

    body = json.dumps(payload, separators=COMPACT_JSON_SEPARATORS, ensure_ascii=False)
    return (
        bytes([OP_FALSE, OP_RETURN])
        + push_data(protocol_tag.encode("utf-8"))
        + push_data(body.encode("utf-8"))
    )


def encode_record(record: ParsedPayload, protocol_tag: str = PROTOCOL_ID) -> bytes:
    return build_overlay_script(record.to_payload(protocol_tag), protocol_tag)


def parse_script(raw: bytes, *, collapse_op_return: bool = False) -> Script:
    """Split ``raw`` into chunks.

    With ``collapse_op_return`` the bytes following the first ``OP_RETURN``
    become that chunk's data instead of being parsed further.
    """

    chunks: List[ScriptChunk] = []
    pos = 0
    end = len(raw)
    while pos < end:
        op = raw[pos]
        pos += 1

        if op == OP_RETURN and collapse_op_return:
            chunks.append(ScriptChunk(op=op, data=bytes(raw[pos:])))
            break

        if 0 < op <= MAX_DIRECT_PUSH:
            length = op
        elif op in _LENGTH_WIDTHS:
            width = _LENGTH_WIDTHS[op]
            if pos + width > end:
                raise ScriptDecodeError(f"Truncated length field for opcode 0x{op:02x} at offset {pos - 1}")
            length = int.from_bytes(raw[pos : pos + width], "little")
            pos += width
        else:
            chunks.append(ScriptChunk(op=op))
            continue

        if pos + length > end:
            raise ScriptDecodeError(f"Push of {length} bytes at offset {pos} runs past end of script")
        chunks.append(ScriptChunk(op=op, data=bytes(raw[pos : pos + length])))
        pos += length

    return Script(chunks=chunks)


class _PushdataCursor:
    """Forward-only reader over a blob of concatenated pushes."""

    def __init__(self, blob: bytes) -> None:
        self.blob = blob
        self.pos = 0

    def exhausted(self) -> bool:
        return self.pos >= len(self.blob)

    def read_byte(self) -> int:
        value = self.blob[self.pos]
        self.pos += 1
        return value

    def read_length(self, width: int) -> int:
        # Missing bytes read as zero.
        raw = self.blob[self.pos : self.pos + width]
        self.pos += width
        return int.from_bytes(raw, "little")

    def read_slice(self, length: int) -> bytes:
        stop = min(self.pos + length, len(self.blob))
        chunk = self.blob[self.pos : stop]
        self.pos = max(stop, self.pos)
        return bytes(chunk)


def split_pushdata_blob(blob: bytes) -> List[bytes]:
    """Re-parse a collapsed ``OP_RETURN`` blob into individual pushes.

    Lengths are clamped to what is left in the blob, and the first opcode
    that is not a push ends parsing with whatever was collected so far.
    """

    cursor = _PushdataCursor(blob)
    pushes: List[bytes] = []
    while not cursor.exhausted():
        op = cursor.read_byte()
        if 0 < op <= MAX_DIRECT_PUSH:
            length = op
        elif op in _LENGTH_WIDTHS:
            length = cursor.read_length(_LENGTH_WIDTHS[op])
        else:
            break
        pushes.append(cursor.read_slice(length))
    return pushes


def extract_pushes(script: Script | bytes) -> Optional[List[bytes]]:
    """Return the data pushes following ``OP_FALSE OP_RETURN``.

    ``None`` means the script is not an overlay data carrier: wrong prefix,
    unparseable bytes, or fewer than two pushes.
    """

    if isinstance(script, (bytes, bytearray, memoryview)):
        script = _script_from_bytes(bytes(script))
        if script is None:
            return None

    chunks = script.chunks
    if len(chunks) < 2 or chunks[0].op != OP_FALSE or chunks[1].op != OP_RETURN:
        return None

    if len(chunks) >= 4:
        # Same policy as the collapsed re-parse: a non-push ends the payload.
        pushes: List[bytes] = []
        for chunk in chunks[2:]:
            if chunk.data is None:
                break
            pushes.append(chunk.data)
    elif len(chunks) == 2 and chunks[1].data is not None:
        pushes = split_pushdata_blob(chunks[1].data)
    else:
        return None

    if len(pushes) < 2:
        return None
    return pushes


def _script_from_bytes(raw: bytes) -> Script | None:
    try:
        return parse_script(raw)
    except ScriptDecodeError as exc:
        logger.debug("Discrete parse failed (%s); retrying as collapsed OP_RETURN", exc)
    try:
        return parse_script(raw, collapse_op_return=True)
    except ScriptDecodeError:
        return None


__all__ = [
    "OP_FALSE",
    "OP_PUSHDATA1",
    "OP_PUSHDATA2",
    "OP_PUSHDATA4",
    "OP_RETURN",
    "Script",
    "ScriptChunk",
    "ScriptDecodeError",
    "build_overlay_script",
    "encode_record",
    "extract_pushes",
    "parse_script",
    "push_data",
    "split_pushdata_blob",
]
