"""
WebRTC Controller

Per-peer session bookkeeping for one client connection. The negotiation
protocol itself lives in the signaling package; this module only owns the
table of sessions and the pending-offer, pending-acceptance and
queued-candidate maps that the protocol reads and mutates.
"""

from ...tools.logger import log_info, log_debug, log_error, log_warning
from ...tools.errors import ErrorCode, PeerLinkError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set
from enum import Enum
import asyncio
import time


class Role(Enum):
    INITIATOR = "initiator"
    ANSWERER = "answerer"


class SessionState(Enum):
    """Negotiation states of a peer session."""
    IDLE = "idle"                                        # Session created, nothing sent yet
    OUTGOING_OFFER_CREATED = "outgoing_offer_created"    # Local offer created and applied
    AWAITING_ACCEPTANCE = "awaiting_acceptance"          # Offer sent, waiting for answer or reject
    ACCEPTED = "accepted"                                # Answer exchanged
    CONNECTING = "connecting"                            # Connectivity checks running
    CONNECTED = "connected"                              # Transport reported connectivity
    REJECTED = "rejected"
    FAILED = "failed"
    CLOSED = "closed"


TERMINAL_STATES = frozenset({SessionState.REJECTED, SessionState.FAILED, SessionState.CLOSED})


class CallOutcome(Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    FAILED = "failed"


def invoke_callback(callback: Optional[Callable], *args) -> bool:
    """Run an application callback, logging instead of propagating its errors."""
    if callback is None:
        return False
    try:
        callback(*args)
    except Exception as e:
        log_error(f"Error in callback {getattr(callback, '__name__', callback)}: {e}")
    return True


@dataclass
class CallCallbacks:
    """
    Caller supplied callbacks for one call attempt.

    on_ready(peer_id, kind) with kind in "connection", "datachannel", "audiovideo"
    on_failure(error_code, error_text)
    on_accepted(accepted, peer_id)
    """
    on_ready: Optional[Callable] = None
    on_failure: Optional[Callable] = None
    on_accepted: Optional[Callable] = None


@dataclass
class PeerSession:
    peer_id: str
    role: Role
    callbacks: CallCallbacks = field(default_factory=CallCallbacks)
    transport: Any = None
    state: SessionState = SessionState.IDLE
    candidate_queue: List[dict] = field(default_factory=list)
    accepted: bool = False
    candidates_flushed: bool = False
    remote_description_set: bool = False
    data_channel: Any = None
    data_channel_ready: bool = False
    stream_acks: Dict[str, Callable] = field(default_factory=dict)
    remote_stream_names: Dict[str, str] = field(default_factory=dict)
    live_remote_streams: Dict[str, list] = field(default_factory=dict)
    pending_tracks: Dict[str, list] = field(default_factory=dict)
    sharing_audio: bool = False
    sharing_video: bool = False
    started_av: bool = False
    failing_since: Optional[float] = None
    connect_time: Optional[float] = None
    created_at: float = field(default_factory=time.time)
    cancelled: bool = False
    outcome: CallOutcome = CallOutcome.PENDING
    settled: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def is_initiator(self) -> bool:
        return self.role is Role.INITIATOR

    def settle(self, outcome: CallOutcome) -> bool:
        """Record the outcome of the attempt; only the first call has any effect."""
        if self.outcome is not CallOutcome.PENDING:
            return False
        self.outcome = outcome
        self.settled.set()
        return True

    async def wait_outcome(self) -> CallOutcome:
        await self.settled.wait()
        return self.outcome

    def resolve(self, accepted: bool) -> bool:
        """Settle as accepted or rejected and fire on_accepted exactly once."""
        if not self.settle(CallOutcome.ACCEPTED if accepted else CallOutcome.REJECTED):
            return False
        invoke_callback(self.callbacks.on_accepted, accepted, self.peer_id)
        return True

    def notify_ready(self, kind: str):
        invoke_callback(self.callbacks.on_ready, self.peer_id, kind)

    def notify_failure(self, code, text: str) -> bool:
        """Settle as failed and tell the caller; False when nobody was listening."""
        self.settle(CallOutcome.FAILED)
        return invoke_callback(self.callbacks.on_failure, code, text)


class PeerSessionTable:
    """
    Authoritative map peer id -> PeerSession for one client connection.

    At most one session exists per peer; a second concurrent attempt is
    rejected rather than merged.
    """

    def __init__(self):
        self._sessions: Dict[str, PeerSession] = {}
        # Inbound offers waiting for a local decision: peer id -> raw offer
        self.offers_pending: Dict[str, dict] = {}
        # Outbound offers waiting for the remote decision
        self.acceptance_pending: Dict[str, bool] = {}
        # Remote candidates received before their session could apply them
        self.queued_candidates: Dict[str, List[dict]] = {}
        self._on_session_closed: Optional[Callable] = None

    def create_session(self, peer_id: str, role: Role, callbacks: Optional[CallCallbacks] = None) -> PeerSession:
        """
        Register a new session for a peer.

        Raises:
            PeerLinkError: ALREADY_CONNECTED if the peer already has one
        """
        if peer_id in self._sessions:
            raise PeerLinkError(
                ErrorCode.ALREADY_CONNECTED,
                f"A session with {peer_id} already exists",
            )

        session = PeerSession(peer_id=peer_id, role=role, callbacks=callbacks or CallCallbacks())
        self._sessions[peer_id] = session
        log_info(f"Created {role.value} session for peer {peer_id}")
        return session

    def get_session(self, peer_id: str) -> Optional[PeerSession]:
        return self._sessions.get(peer_id)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._sessions

    def update_state(self, peer_id: str, state: SessionState) -> bool:
        session = self._sessions.get(peer_id)
        if session:
            old_state = session.state
            session.state = state
            log_debug(f"Session {peer_id} state: {old_state.value} -> {state.value}")
            return True
        return False

    def mark_failing(self, peer_id: str) -> bool:
        session = self._sessions.get(peer_id)
        if session:
            if session.failing_since is None:
                session.failing_since = time.monotonic()
            return True
        return False

    def clear_failing(self, peer_id: str) -> Optional[float]:
        """Clear the failing mark and return how many seconds the peer was degraded."""
        session = self._sessions.get(peer_id)
        if session is None or session.failing_since is None:
            return None
        elapsed = time.monotonic() - session.failing_since
        session.failing_since = None
        return elapsed

    def remove_session(self, peer_id: str, reason: str = "requested") -> Optional[PeerSession]:
        session = self._sessions.pop(peer_id, None)
        if not session:
            return None

        session.cancelled = True
        if session.state not in TERMINAL_STATES:
            session.state = SessionState.CLOSED
        log_info(f"Removed session for peer {peer_id} (reason: {reason})")

        if self._on_session_closed:
            try:
                self._on_session_closed(peer_id, reason)
            except Exception as e:
                log_error(f"Error in session closed callback: {e}")
        return session

    def clear_pending(self, peer_id: str):
        """Forget every pending offer, acceptance and queued candidate for a peer."""
        self.offers_pending.pop(peer_id, None)
        self.acceptance_pending.pop(peer_id, None)
        self.queued_candidates.pop(peer_id, None)

    def queue_remote_candidate(self, peer_id: str, candidate: dict):
        self.queued_candidates.setdefault(peer_id, []).append(candidate)

    def take_remote_candidates(self, peer_id: str) -> List[dict]:
        return self.queued_candidates.pop(peer_id, [])

    def tracked_peers(self) -> Set[str]:
        """Peers with a session, a pending offer or a pending acceptance."""
        return set(self._sessions) | set(self.offers_pending) | set(self.acceptance_pending)

    def peers(self) -> List[str]:
        return list(self._sessions)

    def sessions(self) -> List[PeerSession]:
        return list(self._sessions.values())

    def list_sessions(self) -> Dict[str, dict]:
        """List all sessions with their info."""
        return {
            peer_id: {
                "role": session.role.value,
                "state": session.state.value,
                "accepted": session.accepted,
                "data_channel_ready": session.data_channel_ready,
                "connect_time": session.connect_time,
            }
            for peer_id, session in self._sessions.items()
        }

    def get_session_count(self) -> int:
        return len(self._sessions)

    def clear(self) -> List[PeerSession]:
        """Drop every session and pending map; returns the dropped sessions."""
        sessions = list(self._sessions.values())
        if sessions:
            log_warning(f"Clearing {len(sessions)} peer sessions")
        self._sessions.clear()
        self.offers_pending.clear()
        self.acceptance_pending.clear()
        self.queued_candidates.clear()
        return sessions

    def on_session_closed(self, callback: Callable):
        """Register a callback for when sessions are removed."""
        self._on_session_closed = callback
