"""
Chunked transport codec.

Data channels cap the size of a single message. Payloads above the limit are
sent as a start message, ordered chunk messages and an end message, all on
the same ordered channel:

    {"transfer": "start", "transferId": "<peer>-<n>", "parts": 3}
    {"transfer": "chunk", "transferId": "<peer>-<n>", "data": "..."}
    {"transfer": "end", "transferId": "<peer>-<n>"}

The receiver keeps at most one open transfer and never surfaces partial data.
"""

import itertools
import json
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional
from .logger import log_debug, log_warning


DEFAULT_MAX_MESSAGE_LENGTH = 1000


class TransferKind(str, Enum):
    START = "start"
    CHUNK = "chunk"
    END = "end"


def fragment(transfer_id: str, payload: str, limit: int) -> List[dict]:
    """Split payload into start/chunk/end control messages of at most limit characters each."""
    if limit <= 0:
        raise ValueError("Chunk limit must be positive.")

    parts = math.ceil(len(payload) / limit)
    messages = [
        {"transfer": TransferKind.START.value, "transferId": transfer_id, "parts": parts}
    ]
    for pos in range(0, len(payload), limit):
        messages.append({
            "transfer": TransferKind.CHUNK.value,
            "transferId": transfer_id,
            "data": payload[pos:pos + limit],
        })
    messages.append({"transfer": TransferKind.END.value, "transferId": transfer_id})
    return messages


class ChunkEncoder:
    """
    Encodes outbound payloads for one client.

    Transfer ids are "<peer id>-<counter>" where the counter is local to
    this encoder, so ids are unique per sender.
    """

    def __init__(self, limit: int = DEFAULT_MAX_MESSAGE_LENGTH):
        self.limit = limit
        self._counter = itertools.count()

    def next_transfer_id(self, peer_id: str) -> str:
        return f"{peer_id}-{next(self._counter)}"

    def encode(self, peer_id: str, payload: str) -> List[str]:
        """
        Return the wire messages for payload.

        Payloads within the limit go out unchanged as a single message.
        """
        if len(payload) <= self.limit:
            return [payload]
        transfer_id = self.next_transfer_id(peer_id)
        log_debug(f"Sending {len(payload)} characters to {peer_id} as transfer {transfer_id}")
        return [json.dumps(message) for message in fragment(transfer_id, payload, self.limit)]


@dataclass
class ChunkedTransfer:
    transfer_id: str
    parts: int
    chunks: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return len(self.chunks) == self.parts


class ChunkReassembler:
    """
    Reassembles inbound chunk streams from one peer.

    receive() returns a decoded message when one is complete, None otherwise.
    Invalid chunks are dropped; an invalid end discards the whole transfer.
    """

    def __init__(self, limit: int = DEFAULT_MAX_MESSAGE_LENGTH, peer_id: str = ""):
        self.limit = limit
        self.peer_id = peer_id
        self._pending: Optional[ChunkedTransfer] = None

    @property
    def pending(self) -> Optional[ChunkedTransfer]:
        return self._pending

    def receive(self, raw) -> Optional[dict]:
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            log_debug(f"Unable to parse data channel message from {self.peer_id}")
            return None

        if not isinstance(message, dict):
            log_debug(f"Ignoring non-object data channel message from {self.peer_id}")
            return None

        if not (message.get("transfer") and message.get("transferId")):
            return message

        text = self.feed(message)
        if text is None:
            return None
        try:
            reassembled = json.loads(text)
        except ValueError:
            log_warning(f"Unable to parse reassembled transfer #{message['transferId']}")
            return None
        if not isinstance(reassembled, dict):
            log_warning(f"Reassembled transfer #{message['transferId']} is not an object")
            return None
        return reassembled

    def feed(self, message: dict) -> Optional[str]:
        """
        Apply one transfer control message.

        Returns the reassembled text when an end message completes the
        open transfer, None otherwise.
        """
        kind = message.get("transfer")
        transfer_id = message.get("transferId")

        if kind == TransferKind.START:
            self._start(transfer_id, message.get("parts"))
        elif kind == TransferKind.CHUNK:
            self._chunk(transfer_id, message.get("data"))
        elif kind == TransferKind.END:
            return self._end(transfer_id)
        else:
            log_warning(f"Unknown transfer message '{kind}' from {self.peer_id}")
        return None

    def _start(self, transfer_id, parts) -> None:
        log_debug(f"Start of transfer #{transfer_id}")
        if self._pending is not None:
            log_warning(
                f"Discarding unfinished transfer #{self._pending.transfer_id} from {self.peer_id}"
            )
        self._pending = None

        try:
            parts = int(parts)
        except (TypeError, ValueError):
            log_warning(f"Invalid part count for transfer #{transfer_id}: {parts}")
            return
        if parts < 0:
            log_warning(f"Invalid part count for transfer #{transfer_id}: {parts}")
            return

        self._pending = ChunkedTransfer(transfer_id=transfer_id, parts=parts)

    def _chunk(self, transfer_id, data) -> None:
        log_debug(f"Chunk for transfer #{transfer_id}")
        if not (isinstance(data, str) and len(data) <= self.limit):
            log_warning(f"Invalid chunk data for transfer #{transfer_id}")
        elif self._pending is None:
            log_warning(f"Unexpected chunk for transfer #{transfer_id}")
        elif transfer_id != self._pending.transfer_id:
            log_warning(f"Invalid transfer id #{transfer_id}, expected #{self._pending.transfer_id}")
        elif len(self._pending.chunks) + 1 > self._pending.parts:
            log_warning(f"Too many chunks for transfer #{transfer_id}")
        else:
            self._pending.chunks.append(data)

    def _end(self, transfer_id) -> Optional[str]:
        log_debug(f"End of transfer #{transfer_id}")
        pending, self._pending = self._pending, None

        if pending is None:
            log_warning(f"Unexpected end of transfer #{transfer_id}")
            return None
        if transfer_id != pending.transfer_id:
            log_warning(f"Invalid transfer id #{transfer_id}, expected #{pending.transfer_id}")
            return None
        if not pending.complete:
            log_warning(
                f"Transfer #{transfer_id} ended with {len(pending.chunks)} of {pending.parts} chunks"
            )
            return None

        return "".join(pending.chunks)
