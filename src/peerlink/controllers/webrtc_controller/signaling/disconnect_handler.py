"""
WebRTC Disconnect Handler

Local hangups, remote hangups and roster driven peer departure. Local
teardown is always synchronous and unconditional; only closing the native
transport runs in the background.
"""

from ....tools.logger import log_info, log_debug, log_error, log_warning
from ....tools.errors import PeerLinkError
from .. import CallOutcome, PeerSession


class DisconnectHandler:

    def _teardown(self, session: PeerSession, reason: str, notify: bool = True, by_peer: bool = False) -> bool:
        """
        Remove a session and every piece of bookkeeping for its peer.

        With notify, peer_closed is emitted when a transport existed, and
        call_cancelled(peer, True) when a peer-initiated teardown hit a
        call that never got a transport.
        """
        peer_id = session.peer_id
        if self.table.get_session(peer_id) is not session:
            return False

        self.table.remove_session(peer_id, reason)
        self.table.clear_pending(peer_id)
        session.settle(CallOutcome.FAILED)

        for stream_name in list(session.live_remote_streams):
            self.events.emit("stream_closed", peer_id, stream_name)
        session.live_remote_streams.clear()
        session.pending_tracks.clear()

        if session.data_channel is not None:
            session.data_channel.close()
            session.data_channel_ready = False

        if session.transport is not None:
            self._spawn(self._close_transport(session))
            if notify:
                self.events.emit("peer_closed", peer_id)
        elif notify and by_peer:
            self.events.emit("call_cancelled", peer_id, True)

        self._configuration_changed()
        return True

    async def _close_transport(self, session: PeerSession):
        try:
            await session.transport.close()
            log_debug(f"Transport to {session.peer_id} closed")
        except Exception as e:
            log_error(f"Error closing transport for peer {session.peer_id}: {e}")

    def hangup(self, peer_id: str) -> bool:
        """
        Hang up on a peer.

        Local state is always torn down; the peer is notified over the server
        when possible and a failed notification is only logged.
        """
        log_info(f"Hanging up on {peer_id}")
        if peer_id not in self.table.tracked_peers():
            self.table.clear_pending(peer_id)
            log_debug(f"No call with {peer_id} to hang up")
            return False

        session = self.table.get_session(peer_id)
        if session is not None:
            self._teardown(session, reason="hangup")
        else:
            self.table.clear_pending(peer_id)

        if self.signaling.connected:
            try:
                self._signal(peer_id, "hangup", on_failure=self._log_hangup_failure)
            except PeerLinkError as e:
                log_warning(f"Hangup notification to {peer_id} not sent: {e.text}")
        return True

    @staticmethod
    def _log_hangup_failure(code, text: str):
        log_warning(f"Hangup notification failed: {text}")

    def hangup_all(self) -> int:
        """Hang up on every peer; a failure on one peer never stops the others."""
        count = 0
        for peer_id in sorted(self.table.tracked_peers()):
            try:
                if self.hangup(peer_id):
                    count += 1
            except Exception as e:
                log_error(f"Error hanging up on {peer_id}: {e}")
        return count

    def on_remote_hangup(self, peer_id: str):
        log_info(f"Peer {peer_id} hung up")
        session = self.table.get_session(peer_id)
        if session is not None:
            self._teardown(session, reason="remote hangup", by_peer=True)
            return

        self.table.clear_pending(peer_id)
        self.events.emit("call_cancelled", peer_id, True)

    def handle_peer_departure(self, peer_id: str):
        """The peer left every room: drop its session or pending call, exactly once."""
        log_info(f"Peer {peer_id} left all rooms")
        session = self.table.get_session(peer_id)
        if session is not None:
            self._teardown(session, reason="peer departed", by_peer=True)
        elif peer_id in self.table.offers_pending or peer_id in self.table.acceptance_pending:
            self.table.clear_pending(peer_id)
            self.events.emit("call_cancelled", peer_id, True)
        else:
            self.table.clear_pending(peer_id)
        self.router.clear_source(peer_id)
