"""
WebRTC Media Handler

Local streams attached to calls, naming of remote streams through the
peer's published mediaIds, stream receipt acknowledgments and adding or
closing streams in the middle of a call.
"""

from functools import partial
from typing import List, Optional

from ....tools.logger import log_info, log_debug, log_warning
from ....tools.errors import ErrorCode
from ....use_cases.media import DEFAULT_STREAM_NAME
from .. import PeerSession, invoke_callback


STREAM_RECEIVED = "streamReceived"
ADDED_MEDIA_STREAM = "__addedMediaStream"
GOT_ADDED_MEDIA_STREAM = "__gotAddedMediaStream"
CLOSING_MEDIA_STREAM = "__closingMediaStream"


def _matches(track_id: str, media_ids) -> bool:
    if isinstance(media_ids, str):
        media_ids = [media_ids]
    for media_id in media_ids or []:
        if track_id == media_id or track_id.startswith(media_id) or media_id.startswith(track_id):
            return True
    return False


class MediaHandler:

    def register_media_listeners(self):
        self.router.set_peer_listener(self._on_stream_received, STREAM_RECEIVED)
        self.router.set_peer_listener(self._on_added_media_stream, ADDED_MEDIA_STREAM)
        self.router.set_peer_listener(self._on_got_added_media_stream, GOT_ADDED_MEDIA_STREAM)
        self.router.set_peer_listener(self._on_closing_media_stream, CLOSING_MEDIA_STREAM)

    def _attach_local_streams(self, session: PeerSession, stream_names: Optional[List[str]]):
        streams = []
        if stream_names:
            for name in stream_names:
                stream = self.media.get(name)
                if stream is None:
                    log_warning(f"Attempt to use unknown local stream '{name}'")
                    continue
                streams.append(stream)
        elif self.config.auto_media:
            stream = self.media.get(DEFAULT_STREAM_NAME)
            if stream is not None:
                streams.append(stream)

        for stream in streams:
            session.transport.add_stream(stream.tracks)
            session.sharing_audio = session.sharing_audio or stream.has_audio
            session.sharing_video = session.sharing_video or stream.has_video

    def get_remote_stream_name(self, peer_id: str, track_id: str) -> Optional[str]:
        session = self.table.get_session(peer_id)
        if session is not None and track_id in session.remote_stream_names:
            return session.remote_stream_names[track_id]

        for media_ids in self.media_ids_lookup(peer_id):
            for name, ids in (media_ids or {}).items():
                if _matches(track_id, ids):
                    return name
        return None

    def get_remote_stream(self, peer_id: str, stream_name: str = None) -> Optional[list]:
        session = self.table.get_session(peer_id)
        if session is None:
            self.reporter.developer_error("attempt to get stream of uncalled party", fatal=True)
        return session.live_remote_streams.get(stream_name or DEFAULT_STREAM_NAME)

    def _on_remote_track(self, session: PeerSession, track):
        if not self._is_live(session):
            return
        name = self.get_remote_stream_name(session.peer_id, track.id) or DEFAULT_STREAM_NAME
        session.remote_stream_names[track.id] = name
        session.pending_tracks.setdefault(name, []).append(track)
        # Tracks of one stream arrive one by one; collect them before announcing the stream
        self._track_timers.add(
            f"{session.peer_id}&{name}",
            partial(self._process_added_stream, session, name),
        )

    def _process_added_stream(self, session: PeerSession, name: str):
        if not self._is_live(session):
            return
        tracks = session.pending_tracks.pop(name, [])
        peer_id = session.peer_id

        if not session.started_av:
            session.started_av = True
            session.notify_ready("audiovideo")
            self._configuration_changed()

        if name in session.live_remote_streams:
            session.live_remote_streams[name].extend(tracks)
            return

        session.live_remote_streams[name] = tracks
        log_info(f"Remote stream '{name}' from {peer_id} with {len(tracks)} tracks")
        self.events.emit("stream_added", peer_id, tracks, name)
        self._send_peer_message(peer_id, STREAM_RECEIVED, {"streamName": name})

    def _on_remote_track_ended(self, session: PeerSession, track):
        if not self._is_live(session):
            return
        name = session.remote_stream_names.pop(track.id, None)
        if name is not None:
            self._close_remote_stream(session, name)

    def _close_remote_stream(self, session: PeerSession, name: str):
        if session.live_remote_streams.pop(name, None) is None:
            return
        for track_id in [key for key, value in session.remote_stream_names.items() if value == name]:
            del session.remote_stream_names[track_id]
        log_info(f"Remote stream '{name}' from {session.peer_id} closed")
        self.events.emit("stream_closed", session.peer_id, name)
        self._configuration_changed()

    def _on_stream_received(self, peer_id: str, msg_type: str, msg_data, targeting):
        session = self.table.get_session(peer_id)
        if session is None or not isinstance(msg_data, dict):
            return
        name = msg_data.get("streamName")
        ack = session.stream_acks.pop(name, None)
        invoke_callback(ack, peer_id, name)

    def add_stream_to_call(self, peer_id: str, stream_name: str = None, receipt_handler=None) -> bool:
        """Add a named local stream to an established call and renegotiate."""
        stream_name = stream_name or DEFAULT_STREAM_NAME
        stream = self.media.get(stream_name)
        session = self.table.get_session(peer_id)
        if stream is None:
            log_debug(f"Attempt to add nonexistent stream {stream_name}")
            return False
        if session is None or session.transport is None:
            log_debug("Can't add stream before a call has started.")
            return False

        session.transport.add_stream(stream.tracks)
        session.sharing_audio = session.sharing_audio or stream.has_audio
        session.sharing_video = session.sharing_video or stream.has_video
        if receipt_handler:
            session.stream_acks[stream_name] = receipt_handler
        self._spawn(self._renegotiate(session))
        return True

    async def _renegotiate(self, session: PeerSession):
        transport = session.transport
        try:
            offer = await transport.create_offer()
            if not self._is_live(session):
                return
            await transport.set_local_description(offer)
        except Exception as e:
            self.reporter.report(ErrorCode.INTERNAL_ERR, f"Unable to renegotiate with {session.peer_id}: {e}")
            return
        if self._is_live(session):
            self._send_peer_message(session.peer_id, ADDED_MEDIA_STREAM, {"sdp": transport.local_description or offer})

    def _on_added_media_stream(self, peer_id: str, msg_type: str, msg_data, targeting):
        session = self.table.get_session(peer_id)
        if session is None or session.transport is None:
            self.reporter.developer_error("Attempt to add additional stream before establishing the base call.")
            return
        self._spawn(self._answer_added_stream(session, _extract_sdp(msg_data)))

    async def _answer_added_stream(self, session: PeerSession, description: dict):
        transport = session.transport
        try:
            await transport.set_remote_description(description)
            if not self._is_live(session):
                return
            answer = await transport.create_answer()
            if not self._is_live(session):
                return
            await transport.set_local_description(answer)
        except Exception as e:
            self.reporter.report(ErrorCode.INTERNAL_ERR, f"addedMediaStream negotiation failed: {e}")
            return
        if self._is_live(session):
            self._send_peer_message(session.peer_id, GOT_ADDED_MEDIA_STREAM, {"sdp": transport.local_description or answer})

    def _on_got_added_media_stream(self, peer_id: str, msg_type: str, msg_data, targeting):
        session = self.table.get_session(peer_id)
        if session is None or session.transport is None:
            log_debug(f"{GOT_ADDED_MEDIA_STREAM} from unknown peer {peer_id}")
            return
        self._spawn(self._apply_added_stream_answer(session, _extract_sdp(msg_data)))

    async def _apply_added_stream_answer(self, session: PeerSession, description: dict):
        try:
            await session.transport.set_remote_description(description)
        except Exception as e:
            self.reporter.report(ErrorCode.INTERNAL_ERR, f"gotAddedMediaStream setRemoteDescription failed: {e}")

    def _on_closing_media_stream(self, peer_id: str, msg_type: str, msg_data, targeting):
        session = self.table.get_session(peer_id)
        if session is None or not isinstance(msg_data, dict):
            log_debug(f"{CLOSING_MEDIA_STREAM} from unknown peer {peer_id}")
            return
        self._close_remote_stream(session, msg_data.get("streamName") or DEFAULT_STREAM_NAME)

    def close_local_stream(self, stream_name: str = None) -> bool:
        """Stop a local stream and tell every connected peer that it is gone."""
        stream_name = stream_name or DEFAULT_STREAM_NAME
        if self.media.close(stream_name) is None:
            return False
        if self.signaling.connected:
            for session in self.table.sessions():
                if session.transport is not None:
                    self._send_peer_message(session.peer_id, CLOSING_MEDIA_STREAM, {"streamName": stream_name})
        return True


def _extract_sdp(msg_data) -> dict:
    if isinstance(msg_data, dict) and isinstance(msg_data.get("sdp"), dict):
        return msg_data["sdp"]
    return msg_data
