import asyncio
import pytest

from peerlink.tools.errors import ErrorCode, PeerLinkError, SignalingError
from peerlink.tools.signaling_channel import AUTH_CHANNEL, MSG_CHANNEL
from peerlink.use_cases.session_manager import SessionManager

from conftest import OFFER, FakeTrack, record


TOKEN = {
    "msgType": "token",
    "msgData": {
        "peerId": "me",
        "field": {"region": {"fieldName": "region", "fieldValue": "eu"}},
        "iceConfig": {"iceServers": [{"urls": "turn:relay.example.org:3478", "username": "u", "credential": "c"}]},
        "sessionData": {"sessionId": "s-1", "field": {"plan": {"fieldName": "plan", "fieldValue": "pro"}}},
        "roomData": {
            "lobby": {
                "roomName": "lobby",
                "roomStatus": "join",
                "clientList": {"me": {"username": "me"}, "p2": {"username": "bob"}},
            },
        },
        "application": {"field": {"motd": {"fieldName": "motd", "fieldValue": "hello"}}},
    },
}


@pytest.fixture
def manager(config, signaling, transport_factory):
    return SessionManager(None, config, transport_factory=transport_factory, signaling=signaling)


@pytest.fixture
async def logged_in(manager, signaling):
    signaling.replies["authenticate"] = TOKEN
    await manager.authenticate()
    return manager


async def test_authenticate_processes_token(manager, signaling):
    signaling.replies["authenticate"] = TOKEN
    authenticated = record(manager, "authenticated")

    own_id = await manager.authenticate()

    assert own_id == "me"
    assert manager.authenticated
    assert authenticated == [("me",)]
    assert manager.session_id == "s-1"
    assert manager.get_session_field("plan") == "pro"
    assert manager.coordinator.is_turn_server("relay.example.org")
    assert manager.get_rooms_joined() == {"lobby": True}
    assert manager.roster.get_room_occupants_as_list("lobby") == ["me", "p2"]
    assert manager.roster.id_to_name("p2") == "bob"

    channel, message = signaling.sent[0]
    assert channel == AUTH_CHANNEL
    assert message["msgData"]["applicationName"] == "default"
    assert message["msgData"]["setUserCfg"]["userSettings"]["sharingData"] is True


async def test_authenticate_sends_cached_rooms_and_presence(manager, signaling):
    signaling.replies["authenticate"] = TOKEN
    assert await manager.join_room("games", {"level": 3})
    manager.update_presence("away", "lunch")

    await manager.authenticate()

    msg_data = signaling.messages("authenticate")[0]["msgData"]
    assert msg_data["roomJoin"] == {"games": {"roomName": "games", "roomParameter": {"level": 3}}}
    assert msg_data["setPresence"] == {"show": "away", "status": "lunch"}
    assert signaling.messages("setPresence") == []


async def test_rejected_authentication(manager, signaling):
    signaling.replies["authenticate"] = SignalingError("BAD_CREDENTIAL", "bad password")
    errors = record(manager, "error_reported")
    await manager.join_room("games")

    with pytest.raises(SignalingError):
        await manager.authenticate()

    assert not manager.authenticated
    assert manager.get_rooms_joined() == {}
    assert errors == [("BAD_CREDENTIAL", "bad password")]


async def test_non_serializable_credential_is_refused(manager):
    with pytest.raises(PeerLinkError) as excinfo:
        manager.set_credential(object())
    assert excinfo.value.code is ErrorCode.BAD_CREDENTIAL


async def test_unknown_command_is_reported_without_ack(logged_in):
    errors = record(logged_in, "error_reported")

    assert logged_in.on_channel_cmd({"msgType": "bogus"}) is None
    assert errors[0][0] is ErrorCode.DEVELOPER_ERR


async def test_invalid_envelope_gets_error_ack(logged_in):
    ack = logged_in.on_channel_cmd({"msgData": {}})

    assert ack["msgType"] == "error"
    assert ack["msgData"]["errorCode"] == "DEVELOPER_ERR"


async def test_offer_command_is_acked_and_answered(logged_in, signaling):
    ack = logged_in.on_channel_cmd({"msgType": "offer", "senderPeerId": "p2", "msgData": OFFER})
    await logged_in.coordinator.drain()

    assert ack == {"msgType": "ack"}
    assert signaling.messages("answer")[0]["targetPeerId"] == "p2"


async def test_peer_command_without_sender_is_dropped(logged_in):
    ack = logged_in.on_channel_cmd({"msgType": "offer", "msgData": OFFER})

    assert ack == {"msgType": "ack"}
    assert logged_in.table.offers_pending == {}


async def test_error_command_is_reported(logged_in):
    errors = record(logged_in, "error_reported")

    logged_in.on_channel_cmd({"msgType": "error", "msgData": {"errorCode": "ROOM_FULL", "errorText": "no space"}})

    assert errors == [("ROOM_FULL", "no space")]


async def test_forward_to_url_is_emitted(logged_in):
    forwards = record(logged_in, "forward_to_url")

    logged_in.on_channel_cmd({
        "msgType": "forwardToUrl",
        "msgData": {"forwardToUrl": {"url": "https://example.org"}, "newWindow": True},
    })

    assert forwards == [("https://example.org", True)]


async def test_room_data_command_updates_roster(logged_in):
    logged_in.on_channel_cmd({
        "msgType": "roomData",
        "msgData": {"roomData": {"lobby": {"clientListDelta": {"removeClient": {"p2": True}}}}},
    })

    assert logged_in.roster.get_room_occupants_as_list("lobby") == ["me"]


async def test_peer_message_routing(logged_in):
    received = []
    logged_in.set_peer_listener(lambda *args: received.append(args), "chat")

    ack = logged_in.on_channel_msg({"msgType": "chat", "msgData": "hi", "senderPeerId": "p2", "targetRoom": "lobby"})

    assert ack == {"msgType": "ack"}
    assert received == [("p2", "chat", "hi", {"targetRoom": "lobby"})]


async def test_server_message_without_sender(logged_in):
    messages = record(logged_in, "server_message")

    logged_in.on_channel_msg({"msgType": "notice", "msgData": {"text": "maintenance"}})

    assert messages == [("notice", {"text": "maintenance"}, {})]


async def test_room_api_fields_are_debounced_per_room(logged_in, signaling):
    logged_in.set_room_api_field("lobby", "score", 1)
    logged_in.set_room_api_field("lobby", "level", 2)
    logged_in.set_room_api_field("games", "score", 5)
    await asyncio.sleep(0.05)

    sent = [m["msgData"]["setRoomApiField"] for m in signaling.messages("setRoomApiField")]
    assert sent == [
        {"roomName": "games", "field": {"score": {"fieldName": "score", "fieldValue": 5}}},
        {"roomName": "lobby", "field": {
            "score": {"fieldName": "score", "fieldValue": 1},
            "level": {"fieldName": "level", "fieldValue": 2},
        }},
    ]


async def test_room_api_fields_set_before_login_are_sent_after(manager, signaling):
    manager.set_room_api_field("lobby", "score", 1)
    assert signaling.messages("setRoomApiField") == []

    signaling.replies["authenticate"] = TOKEN
    await manager.authenticate()
    await asyncio.sleep(0.05)

    assert len(signaling.messages("setRoomApiField")) == 1


async def test_named_stream_publishes_media_ids(logged_in, signaling):
    logged_in.register_local_stream([FakeTrack("t1", "video")], "screen")
    await asyncio.sleep(0.05)

    fields = signaling.messages("setRoomApiField")[-1]["msgData"]["setRoomApiField"]["field"]
    assert fields["mediaIds"]["fieldValue"] == {"screen": ["t1"]}


async def test_join_and_leave_room(logged_in, signaling):
    signaling.replies["roomJoin"] = {
        "msgType": "roomData",
        "msgData": {"roomData": {"games": {"roomStatus": "join", "clientList": {"me": {}}}}},
    }
    entries = record(logged_in, "room_entry")

    assert await logged_in.join_room("games")
    assert await logged_in.join_room("games") is False
    assert "games" in logged_in.get_rooms_joined()

    signaling.replies["roomLeave"] = {
        "msgType": "roomData",
        "msgData": {"roomData": {"games": {"roomStatus": "leave"}}},
    }
    assert await logged_in.leave_room("games")
    assert "games" not in logged_in.get_rooms_joined()
    assert entries == [(True, "games"), (False, "games")]
    assert signaling.messages("roomJoin")[0]["msgData"] == {"roomJoin": {"games": {"roomName": "games"}}}


async def test_get_room_list(logged_in, signaling):
    signaling.replies["getRoomList"] = {
        "msgType": "roomList",
        "msgData": {"roomList": {"lobby": {"roomName": "lobby", "numberClients": 2}}},
    }

    assert await logged_in.get_room_list() == {"lobby": {"roomName": "lobby", "numberClients": 2}}


async def test_presence_after_login_is_sent(logged_in, signaling):
    logged_in.update_presence("dnd")

    assert signaling.messages("setPresence")[0]["msgData"] == {"setPresence": {"show": "dnd", "status": None}}


async def test_send_data_p2p_requires_a_session(logged_in):
    with pytest.raises(PeerLinkError):
        logged_in.send_data_p2p("p2", "chat", "hi")


async def test_send_data_falls_back_to_server(logged_in, signaling):
    future = logged_in.send_data("p2", "chat", {"text": "hi"})

    assert (await future)["msgType"] == "ack"
    assert signaling.messages("chat", MSG_CHANNEL) == [
        {"msgType": "chat", "targetPeerId": "p2", "msgData": {"text": "hi"}},
    ]


async def test_send_peer_message_requires_destination(logged_in):
    with pytest.raises(PeerLinkError):
        logged_in.send_peer_message(None, "chat")


async def test_connected_peer_shows_up_in_user_cfg(logged_in, signaling, transports):
    logged_in.call("p2")
    await logged_in.coordinator.drain()

    transports[0].emit("iceconnectionstatechange", "connected")
    await asyncio.sleep(0.15)

    updates = signaling.messages("setUserCfg")
    assert len(updates) == 1
    p2p_list = updates[0]["msgData"]["setUserCfg"]["p2pList"]
    assert p2p_list["p2"]["isInitiator"] is True


async def test_drop_resets_connection_state(logged_in, signaling, transports):
    disconnected = record(logged_in, "disconnected")
    logged_in.call("p2")
    await logged_in.coordinator.drain()

    await logged_in.drop()

    assert not logged_in.authenticated
    assert logged_in.table.get_session_count() == 0
    assert transports[0].closed
    assert signaling.closed
    assert disconnected == [()]
    assert logged_in.get_rooms_joined() == {"lobby": True}
    assert logged_in.roster.get_room_occupants("lobby") is None
    assert signaling.messages("hangup")[0]["targetPeerId"] == "p2"
