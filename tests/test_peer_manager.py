import asyncio

import pytest

from huddle.core.config import ClientConfig
from huddle.webrtc.peer_link import LinkState
from huddle.webrtc.peer_manager import PeerConnectionManager

from fakes import CANDIDATE, FakeTrack, SignalBus, wait_until

OFFER = {'type': 'offer', 'sdp': "v=0 remote offer"}
ANSWER = {'type': 'answer', 'sdp': "v=0 remote answer"}


@pytest.fixture
async def make_manager(client_config, pc_factory, signals):
    managers = []

    def _make(connection_id, send=None, config=None):
        manager = PeerConnectionManager(
            connection_id, send or signals, config or client_config, pc_factory=pc_factory
        )
        manager.join_room("r1")
        managers.append(manager)
        return manager

    yield _make
    for manager in managers:
        await manager.leave_room()


def fast_config(retries=1):
    return ClientConfig(stun_url="", negotiation_timeout=0.05, negotiation_retries=retries)


def record(manager, event):
    calls = []
    manager.add_connection_callback(event, lambda remote_id, data: calls.append(remote_id))
    return calls


async def test_designated_offerer_sends_offer(make_manager, signals):
    a = make_manager("a")
    a.set_local_tracks({'audio': FakeTrack('audio'), 'video': FakeTrack('video')})

    await a.handle_participant_discovered("b")

    link = a.links["b"]
    assert link.state is LinkState.NEGOTIATING
    assert link.offered and link.local_description_sent
    assert set(link.senders) == {'audio', 'video'}
    offer = signals.of('offer')[0]
    assert offer['targetConnectionId'] == "b"
    assert offer['roomId'] == "r1"
    assert offer['sdp']['type'] == 'offer'


async def test_larger_id_waits_for_offer(make_manager, signals):
    b = make_manager("b")

    await b.handle_participant_discovered("a")

    assert b.links["a"].state is LinkState.IDLE
    assert signals.messages == []


async def test_discovering_self_or_known_peer_is_ignored(make_manager, pc_factory):
    a = make_manager("a")

    await a.handle_participant_discovered("a")
    await a.handle_participant_discovered("b")
    await a.handle_participant_discovered("b")

    assert list(a.links) == ["b"]
    assert len(pc_factory.created) == 1


async def test_inbound_offer_is_answered(make_manager, signals, pc_factory):
    pc_factory.auto_connect = False
    b = make_manager("b")
    connected = record(b, 'peer_connected')

    await b.handle_offer("a", OFFER)

    link = b.links["a"]
    assert link.state is LinkState.NEGOTIATING
    assert link.remote_description_set and link.local_description_sent
    answer = signals.of('answer')[0]
    assert answer['targetConnectionId'] == "a"
    assert answer['sdp']['type'] == 'answer'

    link.pc.set_connection_state("connected")
    await wait_until(lambda: link.state is LinkState.CONNECTED)
    assert connected == ["a"]


async def test_answer_without_outstanding_offer_is_rejected(make_manager):
    b = make_manager("b")
    await b.handle_participant_discovered("a")

    await b.handle_answer("a", ANSWER)
    await b.handle_answer("nobody", ANSWER)

    link = b.links["a"]
    assert link.state is LinkState.IDLE
    assert link.pc.remoteDescription is None


async def test_remote_candidates_wait_for_remote_description(make_manager):
    a = make_manager("a")
    await a.handle_participant_discovered("b")
    link = a.links["b"]

    await a.handle_ice_candidate("b", CANDIDATE)
    assert link.pending_remote_candidates == [CANDIDATE]
    assert link.pc.candidates == []

    await a.handle_answer("b", ANSWER)

    assert len(link.pc.candidates) == 1
    assert link.pc.candidates[0].sdpMid == '0'
    assert link.pc.candidates[0].ip == "192.0.2.10"
    assert link.state is LinkState.CONNECTED


async def test_candidates_before_link_exists_are_kept(make_manager):
    b = make_manager("b")

    await b.handle_ice_candidate("a", CANDIDATE)
    assert b.links == {}

    await b.handle_offer("a", OFFER)

    assert len(b.links["a"].pc.candidates) == 1


async def test_unusable_candidate_is_dropped(make_manager):
    a = make_manager("a")
    await a.handle_participant_discovered("b")
    await a.handle_answer("b", ANSWER)
    link = a.links["b"]

    await a.handle_ice_candidate("b", {'candidate': "candidate:garbage", 'sdpMid': '0', 'sdpMLineIndex': 0})
    await a.handle_ice_candidate("b", {'candidate': "", 'sdpMid': '0', 'sdpMLineIndex': 0})

    assert link.pc.candidates == []
    assert a.links["b"] is link
    assert link.state is LinkState.CONNECTED


async def test_local_candidates_follow_description(make_manager, signals, pc_factory):
    pc_factory.auto_connect = False
    b = make_manager("b")
    await b.handle_participant_discovered("a")
    link = b.links["a"]

    link.pc.emit("icecandidate", CANDIDATE)
    assert signals.of('ice-candidate') == []

    await b.handle_offer("a", OFFER)
    actions = [m['action'] for m in signals.messages]
    assert actions == ['answer', 'ice-candidate']

    link.pc.emit("icecandidate", CANDIDATE)
    await wait_until(lambda: len(signals.of('ice-candidate')) == 2)
    assert signals.of('ice-candidate')[1]['candidate'] == CANDIDATE


async def test_failure_is_isolated_to_one_link(make_manager):
    a = make_manager("a")
    failures = record(a, 'peer_failed')
    await a.handle_participant_discovered("b")
    await a.handle_participant_discovered("c")
    link_b = a.links["b"]

    await a.handle_answer("b", {'type': 'answer', 'sdp': "garbage"})

    assert failures == ["b"]
    assert "b" not in a.links
    assert link_b.pc.closed
    assert a.links["c"].state is LinkState.NEGOTIATING


async def test_failed_connection_state_closes_link(make_manager):
    a = make_manager("a")
    await a.handle_participant_discovered("b")
    await a.handle_answer("b", ANSWER)

    a.links["b"].pc.set_connection_state("failed")

    await wait_until(lambda: "b" not in a.links)


async def test_participant_left_releases_link(make_manager):
    a = make_manager("a")
    closed = record(a, 'peer_closed')
    tracks = record(a, 'remote_track')
    await a.handle_participant_discovered("b")
    await a.handle_answer("b", ANSWER)
    link = a.links["b"]
    remote = link.pc.simulate_track('video')

    assert tracks == ["b"]
    assert a.get_remote_tracks("b") == {'video': remote}

    await a.handle_participant_left("b")

    assert closed == ["b"]
    assert link.state is LinkState.CLOSED
    assert link.pc.closed
    assert remote.readyState == "ended"
    assert a.get_link_count() == 0


async def test_leave_room_is_idempotent(make_manager, pc_factory):
    a = make_manager("a")
    local = {'audio': FakeTrack('audio'), 'video': FakeTrack('video')}
    a.set_local_tracks(local)
    await a.handle_participant_discovered("b")
    await a.handle_participant_discovered("c")

    await a.leave_room()
    await a.leave_room()

    assert a.links == {}
    assert a.local_tracks == {}
    assert a.room_id is None
    assert all(pc.closed for pc in pc_factory.created)
    assert all(track.readyState == "ended" for track in local.values())


async def test_both_sides_discovering_converge(make_manager):
    bus = SignalBus()
    a = make_manager("a", send=bus.sender("a"))
    b = make_manager("b", send=bus.sender("b"))
    bus.managers = {"a": a, "b": b}

    await asyncio.gather(a.handle_participant_discovered("b"), b.handle_participant_discovered("a"))
    await bus.flush()

    assert a.links["b"].state is LinkState.CONNECTED
    assert b.links["a"].state is LinkState.CONNECTED
    assert [origin for origin, m in bus.delivered if m['action'] == 'offer'] == ["a"]


async def test_simultaneous_offers_converge_on_smaller_id(make_manager):
    bus = SignalBus()
    a = make_manager("a", send=bus.sender("a"))
    b = make_manager("b", send=bus.sender("b"))
    bus.managers = {"a": a, "b": b}

    # b offers against the ordering rule, at the same time as a
    first_b_link = b._create_link("a")
    await b._send_offer(first_b_link)
    await a.handle_participant_discovered("b")
    await bus.flush()

    assert first_b_link.is_closed
    assert first_b_link.pc.closed
    assert len(a.links) == 1 and len(b.links) == 1
    assert a.links["b"].offered
    assert not b.links["a"].offered
    assert a.links["b"].state is LinkState.CONNECTED
    assert b.links["a"].state is LinkState.CONNECTED


async def test_offer_on_connected_link_restarts_it(make_manager):
    b = make_manager("b")
    closed = record(b, 'peer_closed')
    await b.handle_offer("a", OFFER)
    old = b.links["a"]
    assert old.state is LinkState.CONNECTED

    await b.handle_offer("a", {'type': 'offer', 'sdp': "v=0 restart"})

    assert old.pc.closed
    assert b.links["a"] is not old
    assert b.links["a"].state is LinkState.CONNECTED
    assert closed == []


async def test_unanswered_offer_retries_then_fails(make_manager, signals, pc_factory):
    a = make_manager("a", config=fast_config(retries=1))
    failures = record(a, 'peer_failed')

    await a.handle_participant_discovered("b")
    await wait_until(lambda: failures)

    assert "b" not in a.links
    assert len(signals.of('offer')) == 2
    assert len(pc_factory.created) == 2
    assert all(pc.closed for pc in pc_factory.created)


async def test_waiting_side_offers_after_timeout(make_manager, signals):
    b = make_manager("b", config=fast_config(retries=2))

    await b.handle_participant_discovered("a")
    await wait_until(lambda: signals.of('offer'))

    offer = signals.of('offer')[0]
    assert offer['targetConnectionId'] == "a"
    assert offer['sdp']['type'] == 'offer'


async def test_replace_outgoing_track_updates_every_link(make_manager):
    a = make_manager("a")
    a.set_local_tracks({'audio': FakeTrack('audio'), 'video': FakeTrack('video')})
    await a.handle_participant_discovered("b")
    await a.handle_participant_discovered("c")
    screen = FakeTrack('video')

    assert a.replace_outgoing_track('video', screen) == 2
    assert all(link.senders['video'].track is screen for link in a.links.values())
    assert a.local_tracks['video'] is screen

    assert a.replace_outgoing_track('video', None) == 2
    assert all(link.senders['video'].track is None for link in a.links.values())
    assert 'video' not in a.local_tracks


async def test_signals_after_leaving_are_ignored(make_manager, signals, pc_factory):
    b = make_manager("b")
    await b.leave_room()

    await b.handle_offer("a", OFFER)
    await b.handle_participant_discovered("z")
    await b.handle_answer("a", ANSWER)
    await b.handle_ice_candidate("a", CANDIDATE)

    assert b.links == {}
    assert b._early_candidates == {}
    assert signals.messages == []
    assert pc_factory.created == []


async def test_candidates_survive_glare_replacement(make_manager):
    b = make_manager("b")
    first_link = b._create_link("a")
    await b._send_offer(first_link)

    await b.handle_ice_candidate("a", CANDIDATE)
    assert first_link.pending_remote_candidates == [CANDIDATE]

    await b.handle_offer("a", OFFER)

    assert first_link.is_closed
    new_link = b.links["a"]
    assert new_link is not first_link
    assert len(new_link.pc.candidates) == 1
    assert new_link.pc.candidates[0].ip == "192.0.2.10"
