"""Pytest configuration and shared fixtures for tether tests."""

import socket

import pytest

from tether.controller import OutputSink, Registry, RemoteCommands
from tests.helpers import FakeAgent, echo_reply


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=5s, integration=20s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(20))


@pytest.fixture
def registry():
    registry = Registry()
    yield registry
    registry.close_all()


@pytest.fixture
def sink():
    return OutputSink()


@pytest.fixture
def rpc(registry, sink):
    return RemoteCommands(registry, sink, ping_timeout=2.0, command_timeout=5.0)


@pytest.fixture
def attach_agent(registry, rpc):
    """Register a session backed by a FakeAgent. Returns (session, agent)."""
    agents = []

    def attach(respond=echo_reply, metadata=None):
        controller_end, agent_end = socket.socketpair()
        port = 40000 + len(agents)
        session = registry.register(controller_end, ("127.0.0.1", port),
                                    metadata or {"hostname": f"lab{len(agents) + 1}"})
        rpc.attach(session)
        agent = FakeAgent(agent_end, respond)
        agents.append(agent)
        return session, agent

    yield attach
    for agent in agents:
        agent.close()
