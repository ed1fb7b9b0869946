"""Shared fixtures for the RBH tests."""

import pytest

import rbh


class FakeClock:
    """Controllable replacement for time.time()."""

    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeBackend:
    """Records rule inserts instead of talking to firewalld."""

    def __init__(self, up=True, error=None):
        self.up = up
        self.error = error
        self.calls = []
        self.sinks = []
        self.closed = False

    def is_up(self):
        return self.up

    def add_rule(self, zone, rule, timeout):
        self.calls.append((zone, rule, timeout))
        if self.error is not None:
            raise self.error

    def watch_reload(self, sink):
        self.sinks.append(sink)

    def close(self):
        self.closed = True


class FakeDisconnector(rbh.Disconnector):
    """Records disconnected peers, optionally failing each time."""

    def __init__(self, error=None):
        self.error = error
        self.peers = []

    def disconnect(self, peer):
        self.peers.append(peer)
        if self.error is not None:
            raise self.error


@pytest.fixture
def make_peer():
    """Factory building a peer from a public key and a bare IP."""
    def factory(public_key, ip, port=51235, **kwargs):
        address = f'[{ip}]:{port}' if ':' in ip else f'{ip}:{port}'
        return rbh.Peer(public_key=public_key, address=address, **kwargs)
    return factory


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def disconnector():
    return FakeDisconnector()


@pytest.fixture
def firewall(backend, disconnector, clock):
    """Firewall with a 10 minute ban length and three whitelisted hosts."""
    return rbh.Firewall(
        backend,
        10,
        ['10.0.0.10', '10.0.0.20', '10.0.0.30'],
        disconnector=disconnector,
        clock=clock
    )
