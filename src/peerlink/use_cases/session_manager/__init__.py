"""
Session Manager

Everything one client connection owns: the peer session table, the room
roster, the local media registry, the negotiation coordinator, config sync
and the peer message router. Built when the Socket.IO client is created and
reset by drop() when the connection goes away; there is no module level
state.
"""

import asyncio
import json
from enum import Enum
from typing import Callable, Dict, Optional, Set
from pyee import EventEmitter

from ...tools.logger import log_info, log_debug, log_error, log_warning
from ...tools.errors import ErrorCode, ErrorReporter, PeerLinkError, SignalingError
from ...tools.contract_validation import ENVELOPE, validate_contract_with_error_response
from ...tools.signaling_channel import (
    ACK_MESSAGE,
    AUTH_CHANNEL,
    CMD_CHANNEL,
    MSG_CHANNEL,
    SignalingChannel,
    build_message,
    parse_error_data,
)
from ...tools.ssl import default_username
from ...tools.timers import ResettableTimer
from ...controllers.webrtc_controller import PeerSessionTable
from ...controllers.webrtc_controller.signaling import NegotiationCoordinator
from ...controllers.webrtc_controller.transport import AiortcTransport
from ..config_sync import ConfigSync
from ..media import LocalMediaRegistry
from ..peer_messages import PeerMessageRouter
from ..room_roster import RoomRosterSynchronizer


MEDIA_IDS_FIELD = "mediaIds"
ROOM_API_FLUSH_DELAY = 0.01
TARGET_KEYS = ("targetPeerId", "targetRoom", "targetGroup")


class CommandType(Enum):
    """Commands the server sends on the rtcCmd channel."""
    SESSION_DATA = "sessionData"
    ROOM_DATA = "roomData"
    ICE_CONFIG = "iceConfig"
    FORWARD_TO_URL = "forwardToUrl"
    OFFER = "offer"
    REJECT = "reject"
    ANSWER = "answer"
    CANDIDATE = "candidate"
    HANGUP = "hangup"
    ERROR = "error"


# Commands that only make sense with a sending peer
PEER_COMMANDS = frozenset({
    CommandType.OFFER,
    CommandType.REJECT,
    CommandType.ANSWER,
    CommandType.CANDIDATE,
    CommandType.HANGUP,
})


class SessionManager(EventEmitter):
    """
    Public API of one client connection.

    Events, besides the ones forwarded from the negotiation coordinator:
        authenticated(own_id)
        disconnected()
        error_reported(error_code, error_text)
        room_occupants(room_name, occupants, my_info)
        room_entry(entered, room_name)
        server_message(msg_type, msg_data, targeting)
        forward_to_url(url, new_window)
    """

    def __init__(self, client, config, transport_factory: Callable = AiortcTransport, signaling: SignalingChannel = None):
        super().__init__()
        self.client = client
        self.config = config
        self.signaling = signaling or SignalingChannel(client, config.ack_timeout)

        self.reporter = ErrorReporter()
        self.reporter.set_listener(self._forward_error)

        self.table = PeerSessionTable()
        self.router = PeerMessageRouter()
        self.media = LocalMediaRegistry()
        self.media.on_change = self._on_local_media_changed

        self.coordinator = NegotiationCoordinator(
            config,
            self.table,
            self.signaling,
            self.reporter,
            self.router,
            self.media,
            events=self,
            transport_factory=transport_factory,
        )
        self.roster = RoomRosterSynchronizer(self.table, self, self.coordinator.handle_peer_departure)
        self.roster.on_room_joined = self._publish_media_ids
        self.coordinator.media_ids_lookup = self._peer_media_ids
        self.coordinator.on_configuration_changed = self.update_configuration
        self.config_sync = ConfigSync(self.collect_configuration, self._send_user_cfg)

        self.own_id: Optional[str] = None
        self.session_id: Optional[str] = None
        self.session_fields: Dict[str, dict] = {}
        self.connection_fields: Dict[str, dict] = {}
        self.application_fields: Dict[str, dict] = {}
        self.presence: Optional[Dict[str, str]] = None
        self.credential = config.credential

        self._room_api_fields: Dict[str, Dict[str, dict]] = {}
        self._room_api_dirty: Set[str] = set()
        self._room_api_timer = ResettableTimer(ROOM_API_FLUSH_DELAY, self._flush_room_api_fields)

        for room_name, parameters in (config.rooms or {}).items():
            self.roster.rooms_joined[room_name] = self._room_entry(room_name, parameters)

        self._command_handlers = {
            CommandType.SESSION_DATA: self._on_session_data,
            CommandType.ROOM_DATA: self._on_room_data,
            CommandType.ICE_CONFIG: self._on_ice_config,
            CommandType.FORWARD_TO_URL: self._on_forward_to_url,
            CommandType.OFFER: self.coordinator.process_offer,
            CommandType.REJECT: lambda peer_id, msg_data: self.coordinator.process_reject(peer_id),
            CommandType.ANSWER: self.coordinator.process_answer,
            CommandType.CANDIDATE: self.coordinator.process_remote_candidate,
            CommandType.HANGUP: lambda peer_id, msg_data: self.coordinator.on_remote_hangup(peer_id),
            CommandType.ERROR: self._on_error_command,
        }

    @property
    def authenticated(self) -> bool:
        return self.own_id is not None

    def _forward_error(self, code, text: str):
        self.emit("error_reported", code, text)

    def _on_ack_done(self, future: asyncio.Future):
        """Report a failed fire-and-forget send."""
        if future.cancelled():
            return
        error = future.exception()
        if error is None:
            return
        if isinstance(error, PeerLinkError):
            self.reporter.report(error.code, error.text)
        else:
            self.reporter.report(ErrorCode.SIGNAL_ERR, str(error))

    ## Authentication

    def set_credential(self, credential):
        try:
            json.dumps(credential)
        except (TypeError, ValueError):
            self.reporter.report(ErrorCode.BAD_CREDENTIAL, "set_credential passed a non JSON serializable object")
            raise PeerLinkError(ErrorCode.BAD_CREDENTIAL, "set_credential passed a non JSON serializable object")
        self.credential = credential

    async def authenticate(self) -> str:
        """
        Log in to the server and process the returned token.

        Returns:
            str: the peer id the server assigned to this client

        Raises:
            SignalingError: the server refused the credentials or never answered
        """
        user_cfg = self.collect_configuration()
        msg_data = {
            "apiVersion": self.config.api_version,
            "applicationName": self.config.application_name,
            "setUserCfg": user_cfg,
        }
        if self.presence:
            msg_data["setPresence"] = dict(self.presence)
        username = default_username(self.config)
        if username:
            msg_data["username"] = username
        if self.roster.rooms_joined:
            msg_data["roomJoin"] = dict(self.roster.rooms_joined)
        if self.credential:
            msg_data["credential"] = self.credential

        log_info(f"Authenticating as {username or 'anonymous'} for {self.config.application_name}")
        try:
            ack = await self.signaling.send(AUTH_CHANNEL, {"msgType": "authenticate", "msgData": msg_data})
        except SignalingError as e:
            self.roster.rooms_joined.clear()
            self.reporter.report(e.code, e.text)
            raise

        self.config_sync.set_baseline(user_cfg)
        self._process_token(ack.get("msgData") or {})
        for room_name in self._room_api_fields:
            self._enqueue_room_api(room_name)

        log_info(f"Authenticated with peer id {self.own_id}")
        self.emit("authenticated", self.own_id)
        return self.own_id

    def _process_token(self, msg_data: dict):
        if msg_data.get("peerId"):
            self._set_own_id(msg_data["peerId"])
        if msg_data.get("field"):
            self.connection_fields = msg_data["field"]
        if msg_data.get("iceConfig"):
            self.coordinator.process_ice_config(msg_data["iceConfig"])
        if msg_data.get("sessionData"):
            self._process_session_data(msg_data["sessionData"])
        if msg_data.get("roomData"):
            self.roster.apply_room_data(msg_data["roomData"])
        application = msg_data.get("application") or {}
        if application.get("field"):
            self.application_fields = application["field"]

    def _set_own_id(self, own_id: Optional[str]):
        self.own_id = own_id
        self.coordinator.own_id = own_id
        self.roster.own_id = own_id

    def _process_session_data(self, session_data):
        if not isinstance(session_data, dict):
            return
        if session_data.get("sessionId"):
            self.session_id = session_data["sessionId"]
        if session_data.get("field"):
            self.session_fields = session_data["field"]

    def get_session_field(self, name: str):
        entry = self.session_fields.get(name)
        return entry.get("fieldValue") if isinstance(entry, dict) else None

    ## Inbound server traffic

    def on_channel_cmd(self, message: dict) -> Optional[dict]:
        """
        Handle one rtcCmd message and return its acknowledgment.

        Unknown command types are reported and get no acknowledgment.
        """
        is_valid, error_response = validate_contract_with_error_response(ENVELOPE, message)
        if not is_valid:
            return error_response

        msg_type = message["msgType"]
        msg_data = message.get("msgData")
        sender = message.get("senderPeerId")
        log_debug(f"Received command {msg_type}")

        try:
            command = CommandType(msg_type)
        except ValueError:
            self.reporter.report(
                ErrorCode.DEVELOPER_ERR,
                f"received unknown message type from server, msgType is {msg_type}",
            )
            return None

        if command in PEER_COMMANDS and not sender:
            log_warning(f"Dropping {msg_type} command without a sender")
        else:
            try:
                self._command_handlers[command](sender, msg_data)
            except PeerLinkError as e:
                log_error(f"Error handling {msg_type}: {e.text}")
        return dict(ACK_MESSAGE)

    def _on_session_data(self, sender, msg_data):
        self._process_session_data((msg_data or {}).get("sessionData"))

    def _on_room_data(self, sender, msg_data):
        self.roster.apply_room_data((msg_data or {}).get("roomData"))

    def _on_ice_config(self, sender, msg_data):
        self.coordinator.process_ice_config((msg_data or {}).get("iceConfig"))

    def _on_forward_to_url(self, sender, msg_data):
        msg_data = msg_data or {}
        url = (msg_data.get("forwardToUrl") or {}).get("url")
        log_info(f"Server asked to forward to {url}")
        self.emit("forward_to_url", url, bool(msg_data.get("newWindow")))

    def _on_error_command(self, sender, msg_data):
        code, text = parse_error_data(msg_data)
        self.reporter.report(code, text)

    def on_channel_msg(self, message: dict) -> dict:
        """Acknowledge one rtcMsg message and route it to peer or server listeners."""
        if not isinstance(message, dict):
            log_debug(f"Ignoring malformed message: {message!r}")
            return dict(ACK_MESSAGE)

        targeting = {key: message[key] for key in TARGET_KEYS if message.get(key)}
        sender = message.get("senderPeerId")
        if sender:
            self.router.distribute(sender, message, targeting)
        elif self.listeners("server_message"):
            self.emit("server_message", message.get("msgType"), message.get("msgData"), targeting)
        else:
            log_debug(f"Unhandled server message {message.get('msgType')}")
        return dict(ACK_MESSAGE)

    ## Rooms

    @staticmethod
    def _room_entry(room_name: str, parameters: Optional[dict]) -> dict:
        entry = {"roomName": room_name}
        if parameters:
            entry["roomParameter"] = dict(parameters)
        return entry

    async def join_room(self, room_name: str, parameters: Optional[dict] = None) -> bool:
        """
        Join a room. Before authentication the room is only recorded and
        joined as part of the login.
        """
        if room_name in self.roster.rooms_joined and self.authenticated:
            self.reporter.developer_error(f"Attempt to join room {room_name} which you are already in.")
            return False
        if parameters:
            try:
                json.dumps(parameters)
            except (TypeError, ValueError):
                self.reporter.developer_error("non JSON serializable parameter to join_room", fatal=True)

        entry = self._room_entry(room_name, parameters)
        if not self.authenticated:
            self.roster.rooms_joined[room_name] = entry
            return True

        try:
            ack = await self.signaling.send(
                CMD_CHANNEL, build_message("roomJoin", {"roomJoin": {room_name: entry}})
            )
        except SignalingError as e:
            self.reporter.report(e.code, f"Unable to enter room {room_name}: {e.text}")
            return False

        self.roster.rooms_joined[room_name] = entry
        self.roster.apply_room_data((ack.get("msgData") or {}).get("roomData"))
        return True

    async def leave_room(self, room_name: str) -> bool:
        if room_name not in self.roster.rooms_joined:
            return False
        if not self.authenticated:
            del self.roster.rooms_joined[room_name]
            return True

        try:
            ack = await self.signaling.send(
                CMD_CHANNEL, build_message("roomLeave", {"roomLeave": {room_name: {"roomName": room_name}}})
            )
        except SignalingError as e:
            self.reporter.report(e.code, f"Unable to leave room {room_name}: {e.text}")
            return False

        self.roster.apply_room_data((ack.get("msgData") or {}).get("roomData"))
        return True

    def get_rooms_joined(self) -> Dict[str, bool]:
        return self.roster.get_rooms_joined()

    async def get_room_list(self) -> dict:
        ack = await self.signaling.send(CMD_CHANNEL, build_message("getRoomList"))
        return (ack.get("msgData") or {}).get("roomList") or {}

    ## Room API fields and presence

    def set_room_api_field(self, room_name: str, field_name: Optional[str], field_value=None):
        """
        Set, or with a None value delete, one of this client's API fields in a
        room. Changes are cached until authenticated and flushed shortly
        after the last change.
        """
        if not field_name and field_value is None:
            self._room_api_fields.pop(room_name, None)
            return

        fields = self._room_api_fields.setdefault(room_name, {})
        if field_value is not None:
            try:
                json.dumps(field_value)
            except (TypeError, ValueError):
                self.reporter.developer_error("set_room_api_field passed bad object")
                return
            fields[field_name] = {"fieldName": field_name, "fieldValue": field_value}
        else:
            fields.pop(field_name, None)

        if self.authenticated:
            self._enqueue_room_api(room_name)

    def _enqueue_room_api(self, room_name: str):
        self._room_api_dirty.add(room_name)
        self._room_api_timer.schedule()

    def _flush_room_api_fields(self):
        rooms, self._room_api_dirty = sorted(self._room_api_dirty), set()
        if not self.signaling.connected:
            return
        for room_name in rooms:
            message = build_message("setRoomApiField", {
                "setRoomApiField": {
                    "roomName": room_name,
                    "field": self._room_api_fields.get(room_name, {}),
                }
            })
            self.signaling.send(CMD_CHANNEL, message).add_done_callback(self._on_ack_done)

    def _publish_media_ids(self, room_name: str):
        media_ids = self.media.media_ids()
        if media_ids:
            self.set_room_api_field(room_name, MEDIA_IDS_FIELD, media_ids)

    def _on_local_media_changed(self):
        media_ids = self.media.media_ids()
        for room_name in self.roster.rooms_joined:
            self.set_room_api_field(room_name, MEDIA_IDS_FIELD, media_ids)
        self.update_configuration()

    def _peer_media_ids(self, peer_id: str) -> list:
        return self.roster.peer_api_field_values(peer_id, MEDIA_IDS_FIELD)

    def update_presence(self, show: str, status: str = None):
        """Set the presence state ('away', 'chat', 'dnd', 'xa') and status text."""
        self.presence = {"show": show, "status": status}
        if self.authenticated and self.signaling.connected:
            self.signaling.send(
                CMD_CHANNEL, build_message("setPresence", {"setPresence": dict(self.presence)})
            ).add_done_callback(self._on_ack_done)

    ## Configuration

    def collect_configuration(self) -> dict:
        sharing = self.media.sharing()
        config = {
            "userSettings": {
                "sharingAudio": sharing["audio"],
                "sharingVideo": sharing["video"],
                "sharingData": bool(self.config.data_enabled),
                "os": self.config.os_name,
                "language": self.config.language,
                "clientVersion": self.config.client_version,
            }
        }
        p2p_list = {
            session.peer_id: {
                "connectTime": session.connect_time,
                "isInitiator": session.is_initiator,
            }
            for session in self.table.sessions()
        }
        if p2p_list:
            config["p2pList"] = p2p_list
        return config

    def update_configuration(self):
        self.config_sync.update_configuration()

    def _send_user_cfg(self, added: dict):
        if not self.signaling.connected:
            return
        self.signaling.send(
            CMD_CHANNEL, build_message("setUserCfg", {"setUserCfg": added})
        ).add_done_callback(self._on_ack_done)

    ## Messaging

    def send_data_ws(self, destination, msg_type: str, msg_data=None) -> asyncio.Future:
        """Send an application message relayed by the server; resolves with its acknowledgment."""
        log_debug(f"Sending {msg_type} via the server to {destination}")
        return self.signaling.send(MSG_CHANNEL, build_message(msg_type, msg_data, destination))

    def send_peer_message(self, destination, msg_type: str, msg_data=None) -> asyncio.Future:
        if not destination:
            self.reporter.developer_error("destination was empty in send_peer_message", fatal=True)
        return self.send_data_ws(destination, msg_type, msg_data)

    def send_server_message(self, msg_type: str, msg_data=None) -> asyncio.Future:
        return self.send_data_ws(None, msg_type, msg_data)

    def send_data_p2p(self, peer_id: str, msg_type: str, msg_data=None):
        session = self.table.get_session(peer_id)
        if session is None:
            self.reporter.developer_error(
                f"Attempt to send data peer to peer without a connection to {peer_id} first.", fatal=True
            )
        if session.data_channel is None:
            self.reporter.developer_error(
                f"Attempt to send data peer to peer without establishing a data channel to {peer_id} first.",
                fatal=True,
            )
        if not session.data_channel_ready:
            self.reporter.developer_error(
                f"Attempt to use data channel to {peer_id} before it's ready to send.", fatal=True
            )
        session.data_channel.send(msg_type, msg_data)

    def send_data(self, peer_id: str, msg_type: str, msg_data=None) -> Optional[asyncio.Future]:
        """Send over the data channel when it is ready, otherwise through the server."""
        if self.coordinator.does_data_channel_work(peer_id):
            self.send_data_p2p(peer_id, msg_type, msg_data)
            return None
        return self.send_data_ws(peer_id, msg_type, msg_data)

    def set_peer_listener(self, listener: Optional[Callable], msg_type: str = None, source: str = None):
        self.router.set_peer_listener(listener, msg_type, source)

    ## Calls

    def call(self, peer_id: str, on_ready=None, on_failure=None, on_accepted=None, stream_names=None):
        return self.coordinator.initiate(peer_id, on_ready, on_failure, on_accepted, stream_names)

    def hangup(self, peer_id: str) -> bool:
        return self.coordinator.hangup(peer_id)

    def hangup_all(self) -> int:
        return self.coordinator.hangup_all()

    def get_connection_status(self, peer_id: str) -> str:
        return self.coordinator.connection_status(peer_id)

    def set_accept_checker(self, checker: Optional[Callable]):
        self.coordinator.accept_checker = checker

    def set_ice_candidate_filter(self, candidate_filter: Optional[Callable]):
        self.coordinator.candidate_filter = candidate_filter

    def register_local_stream(self, tracks, stream_name: str = None):
        return self.media.register(tracks, stream_name)

    def add_stream_to_call(self, peer_id: str, stream_name: str = None, receipt_handler=None) -> bool:
        return self.coordinator.add_stream_to_call(peer_id, stream_name, receipt_handler)

    def close_local_stream(self, stream_name: str = None) -> bool:
        return self.coordinator.close_local_stream(stream_name)

    def get_remote_stream(self, peer_id: str, stream_name: str = None):
        return self.coordinator.get_remote_stream(peer_id, stream_name)

    ## Disconnect

    async def drop(self):
        """
        Reset everything that belongs to the lost connection.

        Joined rooms and cached room API fields survive, so a reconnect
        rejoins with the same state.
        """
        log_info("Dropping connection state")
        rooms_joined = dict(self.roster.rooms_joined)
        transports = [session.transport for session in self.table.sessions() if session.transport is not None]

        self.table.offers_pending.clear()
        self.table.acceptance_pending.clear()
        self.coordinator.hangup_all()
        self.table.clear()

        self.roster.clear()
        self.roster.rooms_joined.update(rooms_joined)
        self.config_sync.disable()
        self._room_api_timer.cancel()
        self._room_api_dirty.clear()

        await self.coordinator.cancel_tasks()
        for transport in transports:
            try:
                await transport.close()
            except Exception as e:
                log_error(f"Error closing transport: {e}")
        await self.signaling.close()

        self._set_own_id(None)
        self.session_id = None
        self.emit("disconnected")
