"""
Shared fixtures: settings, an in-memory store, and a fake Discord API served
through httpx.MockTransport.
"""

import httpx
import pytest

from activity_auth.storage import MemoryStorage
from activity_auth.tests.fakes import TEST_ENCRYPTION_KEY, FakeDiscord, make_settings


@pytest.fixture
def encryption_key():
    return TEST_ENCRYPTION_KEY


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def fake_discord():
    return FakeDiscord()


@pytest.fixture
def http_client(fake_discord):
    return httpx.AsyncClient(transport=httpx.MockTransport(fake_discord.handler))
