"""
WebRTC Signaling Module

Negotiation coordinator: drives the offer / answer / candidate / reject /
hangup protocol over the signaling channel and the native transport, and
keeps the peer session table consistent while those asynchronous steps race
with each other and with peer departure.

Every coroutine re-checks after each suspension point that the session it
works on is still the live session for that peer.
"""

import asyncio
import time
from functools import partial
from typing import Callable, List, Optional, Set
from pyee import EventEmitter

from ....tools.logger import log_info, log_debug, log_error, log_warning
from ....tools.errors import ErrorCode, ErrorReporter, PeerLinkError
from ....tools.chunking import ChunkEncoder
from ....tools.signaling_channel import CMD_CHANNEL, MSG_CHANNEL, SignalingChannel, build_message
from ....tools.timers import AggregatingTimers
from .. import PeerSession, PeerSessionTable, SessionState, invoke_callback
from ..data_channel import DATA_CHANNEL_LABEL, PRIMING_TOKEN, PeerDataChannel
from ..transport import AiortcTransport
from .offer_handler import OfferHandler
from .ice_handler import IceHandler
from .disconnect_handler import DisconnectHandler
from .media_handler import MediaHandler


NOT_CONNECTED = "not connected"
BECOMING_CONNECTED = "connection in progress to us."
IS_CONNECTED = "is connected"


class NegotiationCoordinator(OfferHandler, IceHandler, DisconnectHandler, MediaHandler):
    """
    Events emitted on ``events``:
        peer_open(peer_id)
        peer_closed(peer_id)
        peer_failing(peer_id)
        peer_recovered(peer_id, degraded_seconds)
        ice_state_change(peer_id, state)
        call_cancelled(peer_id, by_peer)
        data_channel_open(peer_id)
        data_channel_close(peer_id)
        stream_added(peer_id, tracks, stream_name)
        stream_closed(peer_id, stream_name)
    """

    def __init__(
        self,
        config,
        table: PeerSessionTable,
        signaling: SignalingChannel,
        reporter: ErrorReporter,
        router,
        media,
        events: EventEmitter,
        transport_factory: Callable = AiortcTransport,
    ):
        self.config = config
        self.table = table
        self.signaling = signaling
        self.reporter = reporter
        self.router = router
        self.media = media
        self.events = events
        self.transport_factory = transport_factory
        self.encoder = ChunkEncoder(config.max_message_length)

        self.own_id: Optional[str] = None
        # accept_checker(peer_id, decide) where decide(accepted, stream_names=None)
        self.accept_checker: Optional[Callable] = None
        # candidate_filter(candidate, is_remote) returns the candidate to use or None to veto it
        self.candidate_filter: Optional[Callable] = None
        # media_ids_lookup(peer_id) returns the peer's published mediaIds maps
        self.media_ids_lookup: Callable = lambda peer_id: []
        self.on_configuration_changed: Optional[Callable] = None

        self.ice_servers: List[dict] = list(config.ice_servers)
        self.turn_servers: Set[str] = set()
        self.stun_servers: Set[str] = set()

        self._tasks: Set[asyncio.Task] = set()
        self._track_timers = AggregatingTimers()
        self._register_peer_listeners()

    def _register_peer_listeners(self):
        self.router.set_peer_listener(self._on_channel_primed_notice, PRIMING_TOKEN)
        self.register_media_listeners()

    ## Task and signaling helpers

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log_error(f"Negotiation task failed: {task.exception()}")

    async def drain(self):
        """Wait until every spawned negotiation task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_tasks(self):
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._track_timers.cancel_all()

    def _is_live(self, session: PeerSession) -> bool:
        return not session.cancelled and self.table.get_session(session.peer_id) is session

    def _signal(self, peer_id: str, msg_type: str, msg_data=None, on_failure: Optional[Callable] = None) -> asyncio.Future:
        future = self.signaling.send(CMD_CHANNEL, build_message(msg_type, msg_data, peer_id))
        future.add_done_callback(partial(self._on_signal_done, msg_type, on_failure))
        return future

    def _send_peer_message(self, peer_id: str, msg_type: str, msg_data=None) -> asyncio.Future:
        future = self.signaling.send(MSG_CHANNEL, build_message(msg_type, msg_data, peer_id))
        future.add_done_callback(partial(self._on_signal_done, msg_type, None))
        return future

    def _on_signal_done(self, msg_type: str, on_failure: Optional[Callable], future: asyncio.Future):
        if future.cancelled():
            return
        error = future.exception()
        if error is None:
            return
        if isinstance(error, PeerLinkError):
            code, text = error.code, error.text
        else:
            code, text = ErrorCode.SIGNAL_ERR, str(error)
        log_warning(f"Sending {msg_type} failed: {text}")
        if not invoke_callback(on_failure, code, text):
            self.reporter.report(code, text)

    def _report_failure(self, session: PeerSession, code, text: str):
        """Route a failure to the caller's on_failure, else to the generic reporter."""
        if not session.notify_failure(code, text):
            self.reporter.report(code, text)

    def _fail_call(self, session: PeerSession, code, text: str):
        log_warning(f"Call with {session.peer_id} failed: {text}")
        self._report_failure(session, code, text)
        self.table.update_state(session.peer_id, SessionState.FAILED)
        self._teardown(session, reason="failed", notify=False)

    def _configuration_changed(self):
        if self.on_configuration_changed:
            self.on_configuration_changed()

    ## Transport wiring

    def build_peer_connection(self, session: PeerSession, stream_names: Optional[List[str]] = None):
        """Create the native transport of a session and wire its events."""
        log_debug(f"Building peer connection to {session.peer_id}")
        transport = self.transport_factory(list(self.ice_servers))
        session.transport = transport

        transport.on("icecandidate", partial(self._on_local_candidate, session))
        transport.on("iceconnectionstatechange", partial(self._on_ice_state, session))
        transport.on("track", partial(self._on_remote_track, session))
        transport.on("removestream", partial(self._on_remote_track_ended, session))

        self._attach_local_streams(session, stream_names)

        if self.config.data_enabled:
            if session.is_initiator:
                self._adopt_channel(session, transport.create_data_channel(DATA_CHANNEL_LABEL))
            else:
                transport.on("datachannel", partial(self._adopt_channel, session))
        return transport

    def _on_ice_state(self, session: PeerSession, state: str):
        peer_id = session.peer_id
        log_debug(f"Peer {peer_id} ICE state: {state}")
        self.events.emit("ice_state_change", peer_id, state)
        if not self._is_live(session):
            return

        if state == "checking":
            if session.state is SessionState.ACCEPTED:
                self.table.update_state(peer_id, SessionState.CONNECTING)
        elif state in ("connected", "completed"):
            if session.failing_since is not None:
                elapsed = self.table.clear_failing(peer_id)
                log_info(f"Connection to {peer_id} recovered after {elapsed:.1f}s")
                self.events.emit("peer_recovered", peer_id, elapsed)
            if session.state is not SessionState.CONNECTED:
                self.table.update_state(peer_id, SessionState.CONNECTED)
                session.connect_time = time.time()
                self.events.emit("peer_open", peer_id)
                session.notify_ready("connection")
                self._configuration_changed()
        elif state == "failed":
            self.table.update_state(peer_id, SessionState.FAILED)
            self._report_failure(session, ErrorCode.NOVIABLEICE, "No usable STUN/TURN path")
            self._teardown(session, reason="no viable path", notify=False)
        elif state == "disconnected":
            self.table.mark_failing(peer_id)
            log_warning(f"Connection to {peer_id} is failing")
            self.events.emit("peer_failing", peer_id)
        elif state == "closed":
            self._teardown(session, reason="transport closed")

    ## Data channel

    def _adopt_channel(self, session: PeerSession, channel):
        if not self._is_live(session):
            channel.close()
            return
        log_info(f"Data channel '{channel.label}' attached for peer {session.peer_id}")
        session.data_channel = PeerDataChannel(
            channel,
            session.peer_id,
            self.encoder,
            on_message=self._on_data_message,
            on_primed=self._on_channel_primed,
            on_closed=self._on_channel_closed,
        )

    def _on_data_message(self, peer_id: str, message: dict):
        self.router.distribute(peer_id, message, None)

    def _on_channel_primed(self, peer_id: str):
        """The peer's priming token arrived on the channel; confirm over the server."""
        if peer_id not in self.table or not self.signaling.connected:
            return
        self._send_peer_message(peer_id, PRIMING_TOKEN, "")

    def _on_channel_primed_notice(self, peer_id: str, msg_type: str, msg_data, targeting):
        session = self.table.get_session(peer_id)
        if session is None or session.data_channel is None:
            log_debug(f"Priming notice from {peer_id} without a data channel")
            return
        if session.data_channel_ready:
            return
        session.data_channel_ready = True
        log_info(f"Data channel to {peer_id} ready")
        session.notify_ready("datachannel")
        self.events.emit("data_channel_open", peer_id)
        self._configuration_changed()

    def _on_channel_closed(self, peer_id: str):
        session = self.table.get_session(peer_id)
        if session is not None:
            session.data_channel_ready = False
            session.data_channel = None
        self.events.emit("data_channel_close", peer_id)
        self._configuration_changed()

    ## Status

    def connection_status(self, peer_id: str) -> str:
        session = self.table.get_session(peer_id)
        if session is None:
            return NOT_CONNECTED
        if (session.sharing_audio or session.sharing_video) and not session.started_av:
            return BECOMING_CONNECTED
        if self.config.data_enabled and not session.data_channel_ready:
            return BECOMING_CONNECTED
        return IS_CONNECTED

    def does_data_channel_work(self, peer_id: str) -> bool:
        session = self.table.get_session(peer_id)
        return bool(session and session.data_channel_ready)
