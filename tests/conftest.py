import pytest

from huddle.core.config import ClientConfig
from huddle.relay.room_registry import RoomRegistry
from huddle.relay.signaling_relay import SignalingRelay

from fakes import FakeCapture, PeerConnectionFactory, Recorder


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def relay(registry):
    return SignalingRelay(registry)


@pytest.fixture
def connect(relay):
    """Register a connection on the relay and return the recorder of what it receives."""
    def _connect(connection_id):
        recorder = Recorder()
        relay.connect(recorder, connection_id)
        return recorder
    return _connect


@pytest.fixture
def client_config():
    return ClientConfig(
        signaling_url="ws://127.0.0.1:1/ws",
        stun_url="",
        negotiation_timeout=30.0,
        negotiation_retries=2,
    )


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


@pytest.fixture
def capture():
    return FakeCapture()


@pytest.fixture
def signals():
    return Recorder()
