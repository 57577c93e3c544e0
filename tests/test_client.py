import pytest

from huddle.core.config import ClientConfig, ServerConfig
from huddle.core.exceptions import SignalingError
from huddle.relay.server import create_app
from huddle.webrtc.client import ConferenceClient
from huddle.webrtc.peer_link import LinkState

from fakes import FakeCapture, PeerConnectionFactory, wait_until


@pytest.fixture
async def relay_url(aiohttp_server):
    server = await aiohttp_server(create_app(ServerConfig(heartbeat=5.0)))
    return str(server.make_url("/ws").with_scheme("ws"))


@pytest.fixture
async def make_client(relay_url):
    clients = []

    def _make(capture=None):
        config = ClientConfig(signaling_url=relay_url, stun_url="", negotiation_timeout=5.0)
        client = ConferenceClient(config, capture=capture or FakeCapture(), pc_factory=PeerConnectionFactory())
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.close()


def connected_links(client):
    return [link for link in client.peer_manager.links.values() if link.state is LinkState.CONNECTED]


async def test_two_clients_form_a_link_and_chat(make_client):
    ann = make_client()
    bob = make_client()
    chats = []
    joined = []
    ann.on('chat', chats.append)
    ann.on('participant_joined', joined.append)

    await ann.connect()
    await ann.join("r1", display_name="Ann")
    await bob.connect()
    await bob.join("r1", display_name="Bob")

    await wait_until(lambda: len(connected_links(ann)) == 1 and len(connected_links(bob)) == 1)
    assert list(ann.peer_manager.links) == [bob.connection_id]
    assert set(ann.peer_manager.links[bob.connection_id].senders) == {'audio', 'video'}
    assert [p['displayName'] for p in joined] == ["Bob"]

    await bob.send_chat("hello")
    await wait_until(lambda: chats)
    assert chats[0]['message'] == "hello"
    assert chats[0]['displayName'] == "Bob"
    assert chats[0]['connectionId'] == bob.connection_id


async def test_departure_closes_remote_link(make_client):
    ann = make_client()
    bob = make_client()
    left = []
    ann.on('participant_left', left.append)

    await ann.connect()
    await ann.join("r1")
    await bob.connect()
    await bob.join("r1")
    await wait_until(lambda: len(connected_links(ann)) == 1)

    await bob.leave()
    await bob.leave()

    await wait_until(lambda: not ann.peer_manager.links)
    assert [p['connectionId'] for p in left] == [bob.connection_id]
    assert bob.peer_manager.links == {}


async def test_media_failure_joins_receive_only(make_client):
    ann = make_client(capture=FakeCapture(fail_user_media=True))
    bob = make_client()
    errors = []
    ann.on('media_error', errors.append)

    await ann.connect()
    await ann.join("r1")
    await bob.connect()
    await bob.join("r1")

    await wait_until(lambda: len(connected_links(ann)) == 1)
    assert len(errors) == 1
    assert ann.peer_manager.local_tracks == {}
    assert ann.room_id == "r1"


async def test_list_rooms(make_client):
    ann = make_client()
    rooms = []
    ann.on('rooms', rooms.append)

    await ann.connect()
    await ann.join("lobby", audio=False, video=False)
    await ann.list_rooms()

    await wait_until(lambda: rooms)
    assert [room['roomId'] for room in rooms[0]] == ["lobby"]


async def test_unknown_event_is_rejected():
    client = ConferenceClient(ClientConfig(stun_url=""), capture=FakeCapture())
    with pytest.raises(ValueError):
        client.on('nope', print)


async def test_connect_failure_raises_signaling_error():
    client = ConferenceClient(
        ClientConfig(signaling_url="ws://127.0.0.1:1/ws", stun_url="", negotiation_timeout=1.0),
        capture=FakeCapture(),
    )
    with pytest.raises(SignalingError):
        await client.connect()


async def test_rejoining_same_room_reuses_media(make_client):
    capture = FakeCapture()
    ann = make_client(capture=capture)

    await ann.connect()
    await ann.join("r1")
    tracks = dict(ann.peer_manager.local_tracks)
    await ann.join("r1")

    assert capture.user_media_calls == 1
    assert ann.peer_manager.local_tracks == tracks
    assert all(track.readyState == "live" for track in tracks.values())
