import asyncio

from peerlink.use_cases.media import DEFAULT_STREAM_NAME, LocalMediaRegistry

from conftest import ANSWER, OFFER, FakeTrack, record


async def answered_call(coordinator, peer_id="p2"):
    coordinator.process_offer(peer_id, OFFER)
    await coordinator.drain()
    return coordinator.table.get_session(peer_id)


def test_registry_media_ids_and_sharing():
    changes = []
    registry = LocalMediaRegistry()
    registry.on_change = lambda: changes.append(True)

    registry.register([FakeTrack("a1", "audio")])
    registry.register([FakeTrack("v1", "video")], "screen")

    assert registry.media_ids() == {DEFAULT_STREAM_NAME: ["a1"], "screen": ["v1"]}
    assert registry.sharing() == {"audio": True, "video": True}
    assert changes == [True]

    stream = registry.close("screen")
    assert stream.tracks[0].stopped
    assert registry.close("screen") is None
    assert changes == [True, True]


async def test_remote_tracks_are_grouped_into_named_streams(coordinator, signaling, transports, events):
    added = record(events, "stream_added")
    ready = []
    coordinator.media_ids_lookup = lambda peer_id: [{"screen": ["v1"]}]
    session = await answered_call(coordinator)
    session.callbacks.on_ready = lambda peer_id, kind: ready.append(kind)

    audio, video = FakeTrack("a1", "audio"), FakeTrack("v1", "video")
    transports[0].emit("track", audio)
    transports[0].emit("track", video)
    await asyncio.sleep(0.15)

    assert sorted((name, [t.id for t in tracks]) for _, tracks, name in added) == [
        (DEFAULT_STREAM_NAME, ["a1"]),
        ("screen", ["v1"]),
    ]
    assert ready == ["audiovideo"]
    assert session.started_av
    assert coordinator.get_remote_stream("p2", "screen") == [video]
    receipts = sorted(m["msgData"]["streamName"] for m in signaling.messages("streamReceived"))
    assert receipts == [DEFAULT_STREAM_NAME, "screen"]


async def test_ended_track_closes_its_stream(coordinator, transports, events):
    closed = record(events, "stream_closed")
    await answered_call(coordinator)
    track = FakeTrack("a1")
    transports[0].emit("track", track)
    await asyncio.sleep(0.15)

    transports[0].emit("removestream", track)

    assert closed == [("p2", DEFAULT_STREAM_NAME)]
    assert coordinator.get_remote_stream("p2") is None


async def test_add_stream_to_call_renegotiates(coordinator, signaling, transports):
    coordinator.media.register([FakeTrack("v1", "video")], "screen")
    receipts = []
    session = await answered_call(coordinator)

    assert coordinator.add_stream_to_call("p2", "screen", lambda peer_id, name: receipts.append(name))
    await coordinator.drain()

    assert session.sharing_video
    assert transports[0].streams[-1][0].id == "v1"
    assert signaling.messages("__addedMediaStream")[0]["msgData"] == {"sdp": OFFER}

    coordinator.router.distribute("p2", {"msgType": "streamReceived", "msgData": {"streamName": "screen"}})
    assert receipts == ["screen"]

    coordinator.router.distribute("p2", {"msgType": "__gotAddedMediaStream", "msgData": {"sdp": ANSWER}})
    await coordinator.drain()
    assert transports[0].remote_description == ANSWER


async def test_add_stream_needs_stream_and_call(coordinator):
    assert not coordinator.add_stream_to_call("p2", "screen")

    coordinator.media.register([FakeTrack("v1", "video")], "screen")
    assert not coordinator.add_stream_to_call("p2", "screen")


async def test_peer_added_stream_is_answered(coordinator, signaling, transports):
    await answered_call(coordinator)

    coordinator.router.distribute("p2", {"msgType": "__addedMediaStream", "msgData": {"sdp": OFFER}})
    await coordinator.drain()

    assert signaling.messages("__gotAddedMediaStream")[0]["msgData"] == {"sdp": ANSWER}


async def test_close_local_stream_notifies_peers(coordinator, signaling):
    coordinator.media.register([FakeTrack("v1", "video")], "screen")
    await answered_call(coordinator)

    assert coordinator.close_local_stream("screen")
    assert not coordinator.close_local_stream("screen")

    assert signaling.messages("__closingMediaStream")[0]["msgData"] == {"streamName": "screen"}


async def test_peer_closing_stream(coordinator, transports, events):
    closed = record(events, "stream_closed")
    coordinator.media_ids_lookup = lambda peer_id: [{"screen": "v1"}]
    await answered_call(coordinator)
    transports[0].emit("track", FakeTrack("v1", "video"))
    await asyncio.sleep(0.15)

    coordinator.router.distribute("p2", {"msgType": "__closingMediaStream", "msgData": {"streamName": "screen"}})

    assert closed == [("p2", "screen")]


async def test_default_stream_is_attached_automatically(coordinator, transports):
    coordinator.media.register([FakeTrack("a1", "audio")])

    session = await answered_call(coordinator)

    assert [t.id for t in transports[0].streams[0]] == ["a1"]
    assert session.sharing_audio and not session.sharing_video
