import pytest

from filebroker.client import BrokerClient
from filebroker.config import BrokerConfig
from filebroker.engine import Broker


class FakeObserver:
    """Stands in for a watchdog observer; records handlers, never touches inotify."""

    def __init__(self, fail=False):
        self.fail = fail
        self.handlers = []
        self.alive = False

    def schedule(self, handler, path, recursive=False):
        self.handlers.append((handler, path))

    def start(self):
        if self.fail:
            raise OSError("inotify watch limit reached")
        self.alive = True

    def is_alive(self):
        return self.alive

    def stop(self):
        self.alive = False

    def join(self, timeout=None):
        pass


@pytest.fixture
def root(tmp_path):
    return tmp_path.resolve() / "comm"


@pytest.fixture
def config():
    return BrokerConfig(poll_interval=0.05, restart_cooldown=0.0, settle_time=0.0)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_broker(root, config, sleeps):
    created = []

    def _make(responder=None, **overrides):
        overrides.setdefault("sleep", sleeps.append)
        overrides.setdefault("observer_factory", None)
        broker = Broker.build(root, config=config, responder=responder, **overrides)
        broker.directory.ensure_layout()
        created.append(broker)
        return broker

    yield _make
    for broker in created:
        broker.stop()


@pytest.fixture
def client(root, config):
    return BrokerClient(root, config)
