"""
Native transport adapter around aiortc.RTCPeerConnection.

aiortc gathers every local candidate while the local description is being
applied and has no trickle events, so the candidates are read back from the
local SDP and re-emitted one by one as "icecandidate" events. aiortc also
has no removestream event; "removestream" is emitted when a remote track ends.

Events:
    icecandidate(candidate: dict)
    iceconnectionstatechange(state: str)
    track(track)
    removestream(track)
    datachannel(channel)
"""

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import SessionDescription, candidate_from_sdp, candidate_to_sdp
from pyee.asyncio import AsyncIOEventEmitter
from typing import List, Optional
from ...tools.logger import log_debug, log_warning


CANDIDATE_PREFIX = "candidate:"


def build_configuration(ice_servers: List[dict]) -> RTCConfiguration:
    servers = []
    for item in ice_servers or []:
        urls = item.get("urls") or item.get("url")
        if not urls:
            log_warning(f"Skipping ICE server without urls: {item}")
            continue
        servers.append(RTCIceServer(
            urls=urls,
            username=item.get("username"),
            credential=item.get("credential"),
        ))
    return RTCConfiguration(iceServers=servers)


def description_to_dict(description: Optional[RTCSessionDescription]) -> Optional[dict]:
    if description is None:
        return None
    return {"type": description.type, "sdp": description.sdp}


class AiortcTransport(AsyncIOEventEmitter):

    def __init__(self, ice_servers: List[dict]):
        super().__init__()
        self._pc = RTCPeerConnection(configuration=build_configuration(ice_servers))
        self._setup_handlers()

    def _setup_handlers(self):
        @self._pc.on("iceconnectionstatechange")
        def on_ice_connection_state_change():
            self.emit("iceconnectionstatechange", self._pc.iceConnectionState)

        @self._pc.on("track")
        def on_track(track):
            log_debug(f"Remote {track.kind} track {track.id}")

            @track.on("ended")
            def on_ended():
                self.emit("removestream", track)

            self.emit("track", track)

        @self._pc.on("datachannel")
        def on_datachannel(channel):
            self.emit("datachannel", channel)

    @property
    def ice_connection_state(self) -> str:
        return self._pc.iceConnectionState

    @property
    def local_description(self) -> Optional[dict]:
        return description_to_dict(self._pc.localDescription)

    async def create_offer(self) -> dict:
        return description_to_dict(await self._pc.createOffer())

    async def create_answer(self) -> dict:
        return description_to_dict(await self._pc.createAnswer())

    async def set_local_description(self, description: dict):
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )
        self._emit_local_candidates()

    async def set_remote_description(self, description: dict):
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate: dict):
        text = candidate["candidate"]
        if text.startswith(CANDIDATE_PREFIX):
            text = text[len(CANDIDATE_PREFIX):]
        ice_candidate = candidate_from_sdp(text)
        ice_candidate.sdpMid = candidate.get("id")
        ice_candidate.sdpMLineIndex = candidate.get("label")
        await self._pc.addIceCandidate(ice_candidate)

    def create_data_channel(self, label: str):
        return self._pc.createDataChannel(label, ordered=True)

    def add_stream(self, tracks):
        for track in tracks:
            self._pc.addTrack(track)

    async def close(self):
        await self._pc.close()

    def _emit_local_candidates(self):
        description = self._pc.localDescription
        if description is None:
            return
        parsed = SessionDescription.parse(description.sdp)
        for index, media in enumerate(parsed.media):
            for ice_candidate in media.ice_candidates:
                self.emit("icecandidate", {
                    "type": "candidate",
                    "label": index,
                    "id": media.rtp.muxId,
                    "candidate": CANDIDATE_PREFIX + candidate_to_sdp(ice_candidate),
                })
