import asyncio
import pytest

from peerlink.controllers.webrtc_controller import PeerSessionTable
from peerlink.use_cases.room_roster import RoomRosterSynchronizer

from conftest import OFFER, candidate, record


@pytest.fixture
def departed():
    return []


@pytest.fixture
def roster(events, departed):
    roster = RoomRosterSynchronizer(PeerSessionTable(), events, departed.append)
    roster.own_id = "me"
    return roster


def client_list(*peer_ids):
    return {peer_id: {"username": f"user-{peer_id}", "apiField": {}} for peer_id in peer_ids}


async def test_join_records_room_and_fields(roster, events):
    entries = record(events, "room_entry")

    roster.apply_room_data({
        "lobby": {"roomStatus": "join", "clientList": client_list("me", "p1"), "field": {"topic": "x"}},
    })

    assert entries == [(True, "lobby")]
    assert roster.get_rooms_joined() == {"lobby": True}
    assert roster.get_room_fields("lobby") == {"topic": "x"}
    assert roster.get_room_occupants_as_list("lobby") == ["me", "p1"]


async def test_leave_forgets_room(roster, events):
    entries = record(events, "room_entry")
    roster.apply_room_data({"lobby": {"roomStatus": "join", "clientList": client_list("me")}})

    roster.apply_room_data({"lobby": {"roomStatus": "leave"}})

    assert entries == [(True, "lobby"), (False, "lobby")]
    assert roster.get_rooms_joined() == {}
    assert roster.get_room_occupants("lobby") is None


async def test_occupant_notification_reports_own_record_separately(roster, events):
    notifications = record(events, "room_occupants")
    roster.apply_snapshot("lobby", client_list("me", "p1"))

    await asyncio.sleep(0.15)

    assert len(notifications) == 1
    room_name, occupants, my_info = notifications[0]
    assert room_name == "lobby"
    assert list(occupants) == ["p1"]
    assert my_info["username"] == "user-me"


async def test_burst_of_updates_yields_one_notification(roster, events):
    notifications = record(events, "room_occupants")

    for n in range(5):
        roster.apply_snapshot("lobby", client_list(*[f"p{i}" for i in range(n + 1)]))
    await asyncio.sleep(0.15)

    assert len(notifications) == 1
    assert sorted(notifications[0][1]) == ["p0", "p1", "p2", "p3", "p4"]


async def test_continuous_updates_cannot_starve_notification(roster, events):
    notifications = record(events, "room_occupants")

    for _ in range(22):
        roster.apply_snapshot("lobby", client_list("p1"))

    assert len(notifications) == 1


async def test_delta_merges_only_api_field_and_presence(roster):
    roster.apply_snapshot("lobby", {"p1": {"username": "alice", "presence": {"show": "chat"}, "apiField": {}}})

    roster.apply_delta("lobby", {
        "updateClient": {
            "p1": {"username": "mallory", "presence": {"show": "away"}, "apiField": {"f": {"fieldName": "f", "fieldValue": 1}}},
            "p2": {"username": "bob"},
        },
    })

    occupants = roster.get_room_occupants("lobby")
    assert occupants["p1"]["username"] == "alice"
    assert occupants["p1"]["presence"] == {"show": "away"}
    assert roster.get_room_api_field("lobby", "p1", "f") == 1
    assert occupants["p2"] == {"username": "bob"}


async def test_delta_removes_clients(roster):
    roster.apply_snapshot("lobby", client_list("p1", "p2"))

    roster.apply_delta("lobby", {"removeClient": {"p1": True}})

    assert roster.get_room_occupants_as_list("lobby") == ["p2"]


async def test_peer_with_call_state_leaving_every_room_departs(roster, departed):
    roster.table.offers_pending["p1"] = OFFER
    roster.apply_snapshot("lobby", client_list("p1"))
    assert departed == []

    roster.apply_snapshot("lobby", client_list())

    assert departed == ["p1"]


async def test_peer_present_in_another_room_is_kept(roster, departed):
    roster.table.acceptance_pending["p1"] = True
    roster.apply_snapshot("lobby", client_list("p1"))
    roster.apply_snapshot("games", client_list("p1"))

    roster.apply_snapshot("lobby", client_list())

    assert departed == []


async def test_peer_with_only_queued_candidates_departs(roster, departed):
    roster.table.queue_remote_candidate("p1", candidate(1))

    roster.apply_snapshot("lobby", client_list("p2"))

    assert departed == ["p1"]


async def test_departure_handler_failure_is_isolated(events):
    calls = []

    def on_departed(peer_id):
        calls.append(peer_id)
        if peer_id == "a":
            raise RuntimeError("boom")

    roster = RoomRosterSynchronizer(PeerSessionTable(), events, on_departed)
    roster.table.offers_pending.update({"a": OFFER, "b": OFFER})

    roster.process_lost_peers({})

    assert calls == ["a", "b"]


async def test_lost_peer_is_torn_down_exactly_once(make_coordinator, events):
    coordinator = make_coordinator(own_id="me")
    roster = RoomRosterSynchronizer(coordinator.table, events, coordinator.handle_peer_departure)
    roster.own_id = "me"
    closed = record(events, "peer_closed")
    cancelled = record(events, "call_cancelled")

    roster.apply_snapshot("lobby", client_list("me", "p1", "p2"))
    coordinator.initiate("p1")
    await coordinator.drain()
    coordinator.table.offers_pending["p2"] = OFFER

    roster.apply_snapshot("lobby", client_list("me"))
    roster.apply_snapshot("lobby", client_list("me"))

    assert closed == [("p1",)]
    assert cancelled == [("p2", True)]
    assert coordinator.table.tracked_peers() == set()
    await coordinator.drain()


async def test_peer_removed_by_delta_is_torn_down_exactly_once(make_coordinator, events):
    coordinator = make_coordinator(own_id="me")
    roster = RoomRosterSynchronizer(coordinator.table, events, coordinator.handle_peer_departure)
    roster.own_id = "me"
    closed = record(events, "peer_closed")
    cancelled = record(events, "call_cancelled")

    roster.apply_snapshot("lobby", client_list("me", "p1", "p2"))
    coordinator.initiate("p1")
    await coordinator.drain()
    coordinator.table.offers_pending["p2"] = OFFER

    for _ in range(2):
        roster.apply_delta("lobby", {"removeClient": {"p1": True, "p2": True}})

    assert closed == [("p1",)]
    assert cancelled == [("p2", True)]
    assert coordinator.table.tracked_peers() == set()
    assert roster.get_room_occupants_as_list("lobby") == ["me"]
    await coordinator.drain()


async def test_name_lookups(roster):
    roster.apply_snapshot("lobby", {"p1": {"username": "alice"}, "p2": {}})
    roster.apply_snapshot("games", {"p3": {"username": "alice"}})

    assert roster.id_to_name("p1") == "alice"
    assert roster.id_to_name("p2") == "p2"
    assert roster.username_to_ids("alice") == [
        {"peerId": "p1", "roomName": "lobby"},
        {"peerId": "p3", "roomName": "games"},
    ]
    assert roster.username_to_ids("alice", "games") == [{"peerId": "p3", "roomName": "games"}]


async def test_api_field_values_across_rooms(roster):
    field = {"apiField": {"mediaIds": {"fieldName": "mediaIds", "fieldValue": {"cam": "s1"}}}}
    roster.apply_snapshot("lobby", {"p1": field})
    roster.apply_snapshot("games", {"p1": {}})

    assert roster.peer_api_field_values("p1", "mediaIds") == [{"cam": "s1"}]
    assert roster.get_room_api_field("games", "p1", "mediaIds") is None


async def test_clear_announces_empty_rooms(roster, events):
    notifications = record(events, "room_occupants")
    roster.apply_snapshot("lobby", client_list("p1"))

    roster.clear()
    await asyncio.sleep(0.15)

    assert notifications == [("lobby", {}, None)]
    assert roster.get_room_occupants("lobby") is None
