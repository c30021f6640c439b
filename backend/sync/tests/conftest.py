import pytest

from sync.messaging.router import MessageRouter
from sync.rooms.models import RoomLimits
from sync.rooms.registry import RoomRegistry
from sync.strategies.pull import PullStrategy
from sync.strategies.push import PushStrategy
from sync.tests.mocks import MockConnection


@pytest.fixture
def limits():
    return RoomLimits()


@pytest.fixture
def registry(limits):
    return RoomRegistry(limits, sweep_probability=0.0)


@pytest.fixture
def pull_strategy(registry):
    return PullStrategy(registry)


@pytest.fixture
def push_strategy(registry):
    strategy = PushStrategy(registry)
    registry.on_rooms_removed = strategy.handle_rooms_removed
    registry.refresh_presence = strategy.refresh_presence
    return strategy


@pytest.fixture
def message_router(push_strategy):
    return MessageRouter(push_strategy)


@pytest.fixture
def mock_connection():
    return MockConnection()
