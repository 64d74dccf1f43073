"""Frame encoding and paced chunk transfer.

A frame is one compact JSON object. It is split into chunks that carry no
header of their own, so reassembly on the peripheral depends on the channel
delivering every write exactly once and in order. Only write-with-response
characteristics satisfy that; an unacknowledged channel is not supported.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from turniectl.core.errors import (
    EncodeEmptyError,
    EncodeError,
    TransferInterruptedError,
    TransferNotReadyError,
    TransportError,
)
from turniectl.core.model import Characteristic, Chunk, ImagePayload, OutboundPayload, TextPayload

DEFAULT_CHUNK_SIZE = 100
DEFAULT_CHUNK_INTERVAL_S = 0.03
LOGGER = logging.getLogger(__name__)

WriteFn = Callable[..., Awaitable[None]]


def _frame_document(payload: OutboundPayload) -> dict[str, Any]:
    if isinstance(payload, TextPayload):
        if len(payload.text) == 0:
            raise EncodeEmptyError("Text payload is empty")
        return {"id": payload.slot, "flag": payload.kind.value, "text": payload.text}
    if isinstance(payload, ImagePayload):
        if len(payload.pixels) == 0:
            raise EncodeEmptyError("Image payload is empty")
        return {"id": payload.slot, "flag": payload.kind.value, "rgb": list(payload.pixels)}
    raise EncodeError(f"Unsupported payload type {type(payload).__name__}")


def encode_frame(payload: OutboundPayload) -> bytes:
    doc = _frame_document(payload)
    return json.dumps(doc, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def _is_continuation(byte: int) -> bool:
    return byte & 0xC0 == 0x80


def split(frame: bytes, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[Chunk]:
    """Cut ``frame`` into chunks of at most ``chunk_size`` bytes.

    Cuts are moved back to the start of a UTF-8 code point so each chunk
    decodes on its own. A code point longer than ``chunk_size`` is split.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    chunks: list[Chunk] = []
    offset = 0
    while offset < len(frame):
        end = min(offset + chunk_size, len(frame))
        cut = end
        while cut < len(frame) and cut > offset and _is_continuation(frame[cut]):
            cut -= 1
        if cut == offset:
            cut = end
        chunks.append(Chunk(index=len(chunks), data=frame[offset:cut]))
        offset = cut
    return chunks


def encode(payload: OutboundPayload, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[Chunk]:
    """Serialize ``payload`` and cut it into write-sized chunks."""
    return split(encode_frame(payload), chunk_size)


def assemble(chunks: Sequence[Chunk]) -> dict[str, Any]:
    frame = b"".join(chunk.data for chunk in chunks)
    try:
        doc = json.loads(frame.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise EncodeError(f"Chunks do not form a valid frame: {exc}") from exc
    if not isinstance(doc, dict):
        raise EncodeError("Frame must be a JSON object")
    return doc


async def send(
    chunks: Sequence[Chunk],
    channel: Characteristic | None,
    write: WriteFn,
    *,
    interval_s: float = DEFAULT_CHUNK_INTERVAL_S,
    with_response: bool = True,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> int:
    """Write ``chunks`` one after another over ``channel``.

    Consecutive writes are separated by ``interval_s`` so the peripheral can
    drain its buffer. Chunks already written when a write fails are neither
    retried nor rolled back.
    """
    if channel is None:
        raise TransferNotReadyError("Not connected or write characteristic not ready")

    LOGGER.info("Sending frame in %d chunks", len(chunks))
    for position, chunk in enumerate(chunks):
        if position:
            await sleep(interval_s)
        try:
            await write(channel, chunk.data, with_response=with_response)
        except TransportError as exc:
            raise TransferInterruptedError(
                f"Write of chunk {chunk.index + 1}/{len(chunks)} failed: {exc}"
            ) from exc
    LOGGER.debug("Frame sent (%d chunks)", len(chunks))
    return len(chunks)
