"""
Signaling Channel

Order-preserving, acknowledged message bus to the signaling server on top of
a Socket.IO client. Every send() returns a future resolved with the server's
acknowledgment, or failed with a SignalingError.
"""

import asyncio
from functools import partial
from typing import Optional, Tuple
import socketio
from socketio.exceptions import SocketIOError
from .contract_validation import ERROR_DATA, is_valid
from .errors import ErrorCode, PeerLinkError, SignalingError
from .logger import log_debug, log_error, log_warning


CMD_CHANNEL = "rtcCmd"
MSG_CHANNEL = "rtcMsg"
AUTH_CHANNEL = "rtcAuth"

ACK_MESSAGE = {"msgType": "ack"}

# Seconds to wait for the server to acknowledge a message
ACK_TIMEOUT_SECONDS = 10
# Delay before the single re-emit of a packet whose first emit raised
EMIT_RETRY_DELAY_SECONDS = 0.5


def build_message(msg_type: str, msg_data=None, destination=None) -> dict:
    """
    Build an outbound envelope.

    destination is either a peer id or a dict holding any of targetPeerId,
    targetRoom and targetGroup; several targets narrow delivery (logical AND).
    """
    message = {"msgType": msg_type}
    if isinstance(destination, str):
        message["targetPeerId"] = destination
    elif isinstance(destination, dict):
        for key in ("targetPeerId", "targetRoom", "targetGroup"):
            if destination.get(key):
                message[key] = destination[key]
    if msg_data is not None:
        message["msgData"] = msg_data
    return message


class SignalingChannel:
    """
    Wraps a socketio.AsyncClient.

    Outbound packets go through one queue drained by one sender task, so the
    server sees them in send() order regardless of how acknowledgments
    interleave.
    """

    def __init__(self, client: socketio.AsyncClient, ack_timeout: float = ACK_TIMEOUT_SECONDS):
        self._client = client
        self.ack_timeout = ack_timeout
        self._outbox: Optional[asyncio.Queue] = None
        self._sender_task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return bool(self._client.connected)

    def send(self, channel: str, message: dict) -> asyncio.Future:
        """Queue message on channel; the returned future resolves with the acknowledgment."""
        if not self.connected:
            raise PeerLinkError(
                ErrorCode.DEVELOPER_ERR,
                "Attempt to send message without a valid connection to the server.",
            )

        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._ensure_sender()
        self._outbox.put_nowait((channel, message, future))
        return future

    def _ensure_sender(self):
        if self._outbox is None:
            self._outbox = asyncio.Queue()
        if self._sender_task is None or self._sender_task.done():
            self._sender_task = asyncio.create_task(self._sender_loop())

    async def _sender_loop(self):
        while True:
            channel, message, future = await self._outbox.get()
            if future.done():
                continue
            try:
                await self._emit(channel, message, future)
            except asyncio.CancelledError:
                if not future.done():
                    future.set_exception(
                        SignalingError(ErrorCode.SIGNAL_ERR, "Signaling channel closed")
                    )
                raise
            except Exception as e:
                log_error(f"Failed to emit {message.get('msgType')} on {channel}: {e}")
                if not future.done():
                    future.set_exception(SignalingError(ErrorCode.SIGNAL_ERR, str(e)))

    async def _emit(self, channel: str, message: dict, future: asyncio.Future):
        log_debug(f"Sending {channel} message {message.get('msgType')}")
        callback = partial(self._on_ack, future)
        try:
            await self._client.emit(channel, message, callback=callback)
        except (SocketIOError, ConnectionError) as e:
            log_warning(f"Emit of {message.get('msgType')} failed ({e}), retrying once")
            await asyncio.sleep(EMIT_RETRY_DELAY_SECONDS)
            await self._client.emit(channel, message, callback=callback)

        loop = asyncio.get_running_loop()
        timeout = loop.call_later(self.ack_timeout, self._on_ack_timeout, future, message)
        future.add_done_callback(lambda _: timeout.cancel())

    @staticmethod
    def _on_ack(future: asyncio.Future, *args):
        if future.done():
            return
        ack = args[0] if args else dict(ACK_MESSAGE)
        if not isinstance(ack, dict):
            ack = {"msgType": "ack", "msgData": ack}
        if ack.get("msgType") == "error":
            code, text = parse_error_data(ack.get("msgData"))
            future.set_exception(SignalingError(code, text))
        else:
            ack.setdefault("msgData", None)
            future.set_result(ack)

    @staticmethod
    def _on_ack_timeout(future: asyncio.Future, message: dict):
        if not future.done():
            future.set_exception(SignalingError(
                ErrorCode.SIGNAL_ERR,
                f"No acknowledgment for {message.get('msgType')} within timeout",
            ))

    async def close(self):
        """Stop the sender task and fail every queued message."""
        if self._sender_task:
            self._sender_task.cancel()
            try:
                await self._sender_task
            except asyncio.CancelledError:
                pass
            self._sender_task = None
        if self._outbox is not None:
            while not self._outbox.empty():
                _, _, future = self._outbox.get_nowait()
                if not future.done():
                    future.set_exception(
                        SignalingError(ErrorCode.SIGNAL_ERR, "Signaling channel closed")
                    )


def parse_error_data(msg_data) -> Tuple[str, str]:
    """Extract (errorCode, errorText) from an error payload, tolerating malformed ones."""
    if is_valid(ERROR_DATA, msg_data):
        return msg_data["errorCode"], msg_data["errorText"]
    if isinstance(msg_data, dict):
        log_debug(f"Incomplete error payload: {msg_data}")
        return (
            msg_data.get("errorCode", ErrorCode.SIGNAL_ERR.value),
            msg_data.get("errorText", "Unknown server error"),
        )
    return ErrorCode.SIGNAL_ERR.value, str(msg_data)
