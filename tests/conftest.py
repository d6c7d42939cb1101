"""Shared fixtures."""

import pytest

from fakes import FakeHost, FakeSession, make_client
from mcp_client.client import MCPClient


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def client_and_host(fake_session: FakeSession) -> tuple[MCPClient, FakeHost]:
    return make_client(fake_session)
