"""
WebRTC Offer Handler

Outbound calls, inbound offers, answers and rejections, including the
resolution of mutual simultaneous offers (glare).
"""

import asyncio
from functools import partial
from typing import List, Optional

from ....tools.logger import log_info, log_debug, log_error, log_warning
from ....tools.errors import ErrorCode, PeerLinkError
from ....tools.contract_validation import SESSION_DESCRIPTION, is_valid
from .. import CallCallbacks, CallOutcome, PeerSession, Role, SessionState, invoke_callback


class OfferHandler:

    def _normalize_stream_names(self, stream_names) -> Optional[List[str]]:
        if stream_names is None:
            return None
        if isinstance(stream_names, str):
            return [stream_names]
        if isinstance(stream_names, (list, tuple)):
            return list(stream_names)
        self.reporter.developer_error(f"Invalid stream names: {stream_names!r}", fatal=True)

    def initiate(
        self,
        peer_id: str,
        on_ready=None,
        on_failure=None,
        on_accepted=None,
        stream_names=None,
    ) -> Optional[PeerSession]:
        """
        Start a call to a peer.

        If the peer already offered us a call, that offer is answered instead
        and no second offer is created. Returns the session of the attempt,
        or None when the attempt failed fast.
        """
        stream_names = self._normalize_stream_names(stream_names)
        if not self.signaling.connected:
            self.reporter.developer_error("Attempt to make a call prior to connecting to service", fatal=True)

        callbacks = CallCallbacks(on_ready=on_ready, on_failure=on_failure, on_accepted=on_accepted)
        log_info(f"Initiating call to {peer_id} (data={self.config.data_enabled})")

        if peer_id in self.table.offers_pending:
            log_info(f"{peer_id} already offered a call, answering it instead")
            offer = self.table.offers_pending.pop(peer_id)
            session = self._answer(peer_id, offer, stream_names, callbacks)
            if session is not None:
                session.resolve(True)
            self.events.emit("call_cancelled", peer_id, False)
            return session

        if peer_id in self.table.acceptance_pending or peer_id in self.table:
            if peer_id in self.table.acceptance_pending:
                message = "Call already pending acceptance"
            else:
                message = f"Already connected to {peer_id}"
            log_warning(message)
            if not invoke_callback(on_failure, ErrorCode.ALREADY_CONNECTED, message):
                self.reporter.report(ErrorCode.ALREADY_CONNECTED, message)
            return None

        session = self.table.create_session(peer_id, Role.INITIATOR, callbacks)
        self.table.acceptance_pending[peer_id] = True
        self._spawn(self._call_body(session, stream_names))
        return session

    async def _call_body(self, session: PeerSession, stream_names: Optional[List[str]]):
        peer_id = session.peer_id

        if self.config.use_fresh_ice_each_peer:
            fresh = await self.get_fresh_ice_config()
            if not self._is_live(session):
                return
            if not fresh:
                self._fail_call(session, ErrorCode.CALL_ERR, "Attempt to get fresh ice configuration failed")
                return

        try:
            transport = self.build_peer_connection(session, stream_names)
        except Exception as e:
            log_error(f"Unable to build peer connection to {peer_id}: {e}")
            self._fail_call(session, ErrorCode.SYSTEM_ERR, str(e))
            return

        # Give the session setup a moment to settle before creating the offer
        await asyncio.sleep(self.config.offer_delay)
        if not self._is_live(session):
            log_debug(f"Call to {peer_id} cancelled before the offer was created")
            return

        try:
            offer = await transport.create_offer()
            if not self._is_live(session):
                return
            await transport.set_local_description(offer)
        except Exception as e:
            if self._is_live(session):
                self._fail_call(session, ErrorCode.CALL_ERR, str(e))
            return
        if not self._is_live(session):
            return

        self.table.update_state(peer_id, SessionState.OUTGOING_OFFER_CREATED)
        try:
            self._signal(
                peer_id,
                "offer",
                transport.local_description or offer,
                on_failure=partial(self._on_offer_failed, session),
            )
        except PeerLinkError as e:
            self._fail_call(session, e.code, e.text)
            return
        self.table.update_state(peer_id, SessionState.AWAITING_ACCEPTANCE)

    def _on_offer_failed(self, session: PeerSession, code, text: str):
        if self._is_live(session):
            self._fail_call(session, code, text)

    def process_offer(self, peer_id: str, offer):
        if not is_valid(SESSION_DESCRIPTION, offer):
            log_warning(f"Dropping malformed offer from {peer_id}")
            return

        if peer_id in self.table.acceptance_pending and self.own_id and peer_id != self.own_id:
            if peer_id < self.own_id:
                self._resolve_glare(peer_id, offer)
            else:
                log_info(f"Glare with {peer_id}: keeping own offer, ignoring theirs")
            return

        if peer_id in self.table:
            log_warning(f"Rejecting offer from {peer_id}: a session already exists")
            self._signal(peer_id, "reject")
            return

        self.table.offers_pending[peer_id] = offer
        if self.accept_checker is None:
            self._decide_offer(peer_id, True)
            return
        try:
            self.accept_checker(peer_id, partial(self._decide_offer, peer_id))
        except Exception as e:
            log_error(f"Error in accept checker: {e}")

    def _resolve_glare(self, peer_id: str, offer: dict):
        """We hold the greater id: drop our own attempt and answer the peer's offer."""
        log_info(f"Glare with {peer_id}: discarding own offer and answering theirs")
        self.table.acceptance_pending.pop(peer_id, None)
        queued = self.table.queued_candidates.pop(peer_id, None)

        callbacks = CallCallbacks()
        own = self.table.get_session(peer_id)
        if own is not None:
            callbacks = own.callbacks
            own.resolve(True)
            self._teardown(own, reason="glare", notify=False)

        if queued:
            self.table.queued_candidates[peer_id] = queued
        session = self._answer(peer_id, offer, None, callbacks)
        if session is not None:
            session.settle(CallOutcome.ACCEPTED)

    def _decide_offer(self, peer_id: str, accepted: bool, stream_names=None):
        try:
            stream_names = self._normalize_stream_names(stream_names)
        except PeerLinkError:
            return

        offer = self.table.offers_pending.pop(peer_id, None)
        if offer is None:
            log_debug(f"Decision for {peer_id} ignored, offer no longer pending")
            return

        log_debug(f"Offer from {peer_id} accept={accepted}")
        if accepted:
            session = self._answer(peer_id, offer, stream_names, CallCallbacks())
            if session is not None:
                session.settle(CallOutcome.ACCEPTED)
        else:
            self.table.queued_candidates.pop(peer_id, None)
            self._signal(peer_id, "reject")

    def _answer(self, peer_id: str, offer: dict, stream_names, callbacks: CallCallbacks) -> Optional[PeerSession]:
        try:
            session = self.table.create_session(peer_id, Role.ANSWERER, callbacks)
        except PeerLinkError as e:
            self.reporter.report(e.code, e.text)
            return None
        self._spawn(self._answer_body(session, offer, stream_names))
        return session

    async def _answer_body(self, session: PeerSession, offer: dict, stream_names):
        peer_id = session.peer_id

        if self.config.use_fresh_ice_each_peer:
            fresh = await self.get_fresh_ice_config()
            if not self._is_live(session):
                return
            if not fresh:
                self._abort_answer(session, ErrorCode.CALL_ERR, "Failed to get fresh ice config")
                return

        try:
            transport = self.build_peer_connection(session, stream_names)
            await transport.set_remote_description(offer)
            if not self._is_live(session):
                return
            session.remote_description_set = True
            await self.flush_remote_candidates(session)
            if not self._is_live(session):
                return
            answer = await transport.create_answer()
            if not self._is_live(session):
                return
            await transport.set_local_description(answer)
        except Exception as e:
            if self._is_live(session):
                self._abort_answer(session, ErrorCode.INTERNAL_ERR, f"Unable to answer call: {e}")
            return
        if not self._is_live(session):
            return

        self.table.update_state(peer_id, SessionState.ACCEPTED)
        try:
            self._signal(
                peer_id,
                "answer",
                transport.local_description or answer,
                on_failure=partial(self._on_answer_failed, session),
            )
        except PeerLinkError as e:
            self._on_answer_failed(session, e.code, e.text)
            return
        self.mark_accepted(session)

    def _abort_answer(self, session: PeerSession, code, text: str):
        log_warning(f"Answer to {session.peer_id} failed: {text}")
        self._report_failure(session, code, text)
        if self.signaling.connected:
            self._signal(session.peer_id, "reject")
        self.table.update_state(session.peer_id, SessionState.FAILED)
        self._teardown(session, reason="answer failed", notify=False)

    def _on_answer_failed(self, session: PeerSession, code, text: str):
        if self._is_live(session):
            self._report_failure(session, code, text)
            self._teardown(session, reason="answer not delivered", notify=False)

    def process_answer(self, peer_id: str, answer):
        self.table.acceptance_pending.pop(peer_id, None)
        session = self.table.get_session(peer_id)
        if session is None or session.transport is None:
            log_debug(f"Ignoring answer from {peer_id}: no outgoing call")
            return
        if not session.is_initiator or session.accepted:
            log_warning(f"Ignoring unexpected answer from {peer_id}")
            return
        if not is_valid(SESSION_DESCRIPTION, answer):
            log_warning(f"Dropping malformed answer from {peer_id}")
            return

        log_info(f"Call to {peer_id} accepted")
        session.resolve(True)
        self.table.update_state(peer_id, SessionState.ACCEPTED)
        self.mark_accepted(session)
        self._spawn(self._apply_answer(session, answer))

    async def _apply_answer(self, session: PeerSession, answer: dict):
        try:
            await session.transport.set_remote_description(answer)
        except Exception as e:
            if self._is_live(session):
                self._fail_call(session, ErrorCode.INTERNAL_ERR, f"Unable to apply answer: {e}")
            return
        if not self._is_live(session):
            return
        session.remote_description_set = True
        await self.flush_remote_candidates(session)

    def process_reject(self, peer_id: str):
        self.table.acceptance_pending.pop(peer_id, None)
        self.table.queued_candidates.pop(peer_id, None)
        session = self.table.get_session(peer_id)
        if session is None:
            log_debug(f"Ignoring reject from {peer_id}: no call")
            return

        log_info(f"Call to {peer_id} rejected")
        session.resolve(False)
        self.table.update_state(peer_id, SessionState.REJECTED)
        self._teardown(session, reason="rejected", notify=False)
