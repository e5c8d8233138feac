"""
WebRTC ICE Candidate Handler

Local candidates are held back until the call is accepted, then flushed
once in submission order. Remote candidates are applied only after the
session's remote description is in place; earlier ones are buffered per peer.
"""

import re
from functools import partial

from ....tools.logger import log_info, log_debug, log_warning
from ....tools.errors import ErrorCode, PeerLinkError
from ....tools.contract_validation import CANDIDATE, is_valid
from ....tools.signaling_channel import CMD_CHANNEL
from .. import PeerSession


class IceHandler:

    def _on_local_candidate(self, session: PeerSession, candidate: dict):
        if not self._is_live(session):
            return
        if self.candidate_filter:
            candidate = self.candidate_filter(candidate, False)
            if not candidate:
                log_debug(f"Local candidate for {session.peer_id} vetoed by filter")
                return

        if session.accepted:
            self._send_candidate(session, candidate)
        else:
            session.candidate_queue.append(candidate)

    def _send_candidate(self, session: PeerSession, candidate: dict):
        self._signal(
            session.peer_id,
            "candidate",
            candidate,
            on_failure=partial(self._on_candidate_failed, session),
        )

    def _on_candidate_failed(self, session: PeerSession, code, text: str):
        if self._is_live(session):
            self._report_failure(session, ErrorCode.PEER_GONE, "Candidate disappeared")

    def mark_accepted(self, session: PeerSession):
        """Mark the session accepted and flush its queued local candidates, exactly once."""
        if session.candidates_flushed:
            return
        session.accepted = True
        session.candidates_flushed = True
        queued, session.candidate_queue = session.candidate_queue, []
        log_debug(f"Flushing {len(queued)} queued candidates to {session.peer_id}")
        for candidate in queued:
            self._send_candidate(session, candidate)

    def process_remote_candidate(self, peer_id: str, candidate):
        session = self.table.get_session(peer_id)
        if (
            session is not None
            and session.transport is not None
            and session.remote_description_set
            and self._is_live(session)
        ):
            self._spawn(self._apply_remote_candidate(session, candidate))
        else:
            log_debug(f"Queueing remote candidate from {peer_id}")
            self.table.queue_remote_candidate(peer_id, candidate)

    async def flush_remote_candidates(self, session: PeerSession):
        for candidate in self.table.take_remote_candidates(session.peer_id):
            if not self._is_live(session):
                return
            await self._apply_remote_candidate(session, candidate)

    async def _apply_remote_candidate(self, session: PeerSession, candidate):
        if self.candidate_filter:
            candidate = self.candidate_filter(candidate, True)
            if not candidate:
                log_debug(f"Remote candidate from {session.peer_id} vetoed by filter")
                return
        if not is_valid(CANDIDATE, candidate):
            log_warning(f"Dropping malformed candidate from {session.peer_id}: {candidate}")
            return
        try:
            await session.transport.add_ice_candidate(candidate)
            log_debug(f"Added remote candidate for {session.peer_id}")
        except Exception as e:
            log_warning(f"Dropping bad ice candidate from {session.peer_id} ({e}): {candidate['candidate']}")

    ## ICE server configuration

    def process_ice_config(self, ice_config):
        self.turn_servers.clear()
        self.stun_servers.clear()

        servers = ice_config.get("iceServers") if isinstance(ice_config, dict) else None
        if not isinstance(servers, list):
            self.reporter.developer_error(
                "iceConfig received from server didn't have an array called iceServers, ignoring it"
            )
            return

        self.ice_servers = servers
        for item in servers:
            urls = item.get("urls") or item.get("url") or []
            if isinstance(urls, str):
                urls = [urls]
            for url in urls:
                self._process_url(url)
        log_info(f"Using {len(servers)} ICE servers")

    def _process_url(self, url: str):
        parts = re.split(r"[@:&]", url)
        if len(parts) < 2:
            return
        if url.startswith(("turn:", "turns:")):
            self.turn_servers.add(parts[1])
        elif url.startswith(("stun:", "stuns:")):
            self.stun_servers.add(parts[1])

    def is_turn_server(self, ip_address: str) -> bool:
        return ip_address in self.turn_servers

    def is_stun_server(self, ip_address: str) -> bool:
        return ip_address in self.stun_servers

    async def get_fresh_ice_config(self) -> bool:
        """Ask the server for a new ICE server list; True when one was applied."""
        try:
            ack = await self.signaling.send(CMD_CHANNEL, {"msgType": "getIceConfig", "msgData": {}})
        except PeerLinkError as e:
            self.reporter.report(e.code, e.text)
            return False

        if ack.get("msgType") != "iceConfig":
            self.reporter.report(ErrorCode.SIGNAL_ERR, f"Unexpected reply to getIceConfig: {ack.get('msgType')}")
            return False
        self.process_ice_config((ack.get("msgData") or {}).get("iceConfig"))
        return True
