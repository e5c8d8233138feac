"""
Peer Data Channel

Wraps one data channel of a peer session. Each side sends a priming token
once the channel opens; application messages travel as JSON
{"msgType", "msgData"} objects, split by the chunk codec when they exceed
the per-message limit.
"""

from ....tools.logger import log_info, log_debug, log_error
from ....tools.chunking import ChunkEncoder, ChunkReassembler
from typing import Callable, Optional
import json


DATA_CHANNEL_LABEL = "dc"
PRIMING_TOKEN = "dataChannelPrimed"


class PeerDataChannel:
    """
    Data channel to one peer.

    Callbacks:
        on_message(peer_id, message)  a decoded {"msgType", "msgData"} object
        on_primed(peer_id)            the peer's priming token arrived
        on_closed(peer_id)            the underlying channel closed
    """

    def __init__(
        self,
        data_channel,
        peer_id: str,
        encoder: ChunkEncoder,
        on_message: Callable,
        on_primed: Optional[Callable] = None,
        on_closed: Optional[Callable] = None,
    ):
        self.channel = data_channel
        self.peer_id = peer_id
        self._encoder = encoder
        self._reassembler = ChunkReassembler(encoder.limit, peer_id)
        self._on_message = on_message
        self._on_primed = on_primed
        self._on_closed = on_closed
        self._closed = False
        self._primed_sent = False
        self._setup_handlers()

    def _setup_handlers(self):
        log_debug(f"Setting up data channel handlers for peer {self.peer_id}")

        @self.channel.on("open")
        def on_open():
            log_info(f"Data channel to {self.peer_id} open")
            self._send_priming()

        @self.channel.on("close")
        def on_close():
            log_info(f"Data channel to {self.peer_id} closed")
            was_closed = self._closed
            self._closed = True
            if not was_closed and self._on_closed:
                self._on_closed(self.peer_id)

        @self.channel.on("error")
        def on_error(error):
            log_error(f"Data channel error for peer {self.peer_id}: {error}")

        @self.channel.on("message")
        def on_message(message):
            self.handle_message(message)

        # An incoming channel may already be open when it is handed over
        if getattr(self.channel, "readyState", None) == "open":
            self._send_priming()

    def _send_priming(self):
        if self._primed_sent or self._closed:
            return
        self._primed_sent = True
        self.channel.send(PRIMING_TOKEN)

    def handle_message(self, raw_message):
        if self._closed:
            return

        if isinstance(raw_message, bytes):
            try:
                raw_message = raw_message.decode("utf-8")
            except UnicodeDecodeError:
                log_debug(f"Dropping undecodable binary message from {self.peer_id}")
                return

        if raw_message == PRIMING_TOKEN:
            log_debug(f"Priming token received from {self.peer_id}")
            if self._on_primed:
                self._on_primed(self.peer_id)
            return

        message = self._reassembler.receive(raw_message)
        if message is None:
            return
        if not message.get("msgType"):
            log_debug(f"Received peer message without msgType from {self.peer_id}")
            return
        self._on_message(self.peer_id, message)

    def send(self, msg_type: str, msg_data=None):
        """Send one application message, chunked when larger than the limit."""
        payload = json.dumps({"msgType": msg_type, "msgData": msg_data})
        for wire_message in self._encoder.encode(self.peer_id, payload):
            self.channel.send(wire_message)

    def close(self):
        if self._closed:
            return
        self._closed = True
        try:
            self.channel.close()
        except Exception as e:
            log_debug(f"Error closing data channel: {e}")

    @property
    def is_closed(self) -> bool:
        return self._closed
