"""Shared fixtures for chatsync client tests."""

import pytest

from chatsync_client.types import ReconnectConfig
from tests.fakes import FakeConnector


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def fast_reconnect():
    return ReconnectConfig(min_delay=0.01, max_delay=0.04, factor=2.0)
