"""Unit tests for the remote command RPC layer."""

import queue
import threading
import time

import pytest

from tether import protocol
from tether.errors import (
    CommandTimeout,
    NotConnected,
    ProtocolError,
    RemoteExecutionError,
)
from tests.helpers import FakeAgent, echo_reply, wait_for

pytestmark = pytest.mark.unit


def test_ping_measures_round_trip(rpc, attach_agent):
    def slow_pong(msg):
        time.sleep(0.02)
        return echo_reply(msg)

    session, _ = attach_agent(slow_pong)
    assert session.id == 1
    assert rpc.ping(1) >= 0.02


def test_ping_unknown_session_is_not_connected(rpc, attach_agent):
    attach_agent()
    with pytest.raises(NotConnected):
        rpc.ping(2)


def test_ping_disconnected_session_is_not_connected(rpc, registry, attach_agent):
    session, agent = attach_agent()
    registry.mark_disconnected(session)
    with pytest.raises(NotConnected):
        rpc.ping(session)
    assert agent.received == []


def test_foreground_run_returns_output(rpc, attach_agent):
    session, agent = attach_agent()
    handle = rpc.run_command(session, "uname", ["-a"])
    assert handle.output == "uname -a\n"
    assert handle.background is False
    assert agent.received[0]["background"] is False


def test_foreground_calls_complete_in_issue_order(rpc, attach_agent):
    release = threading.Event()

    def gated(msg):
        if msg["cmd"] == "first":
            release.wait(2)
        return echo_reply(msg)

    session, agent = attach_agent(gated)
    completed = []

    def call(name):
        completed.append(rpc.run_command(session, name).output.strip())

    threads = []
    for name, queued in (("first", 1), ("second", 2), ("third", 3)):
        t = threading.Thread(target=call, args=(name,))
        t.start()
        threads.append(t)
        assert wait_for(lambda: session.foreground.queued == queued)

    assert wait_for(lambda: len(agent.received) == 1)
    assert [m["cmd"] for m in agent.received] == ["first"]
    release.set()
    for t in threads:
        t.join(2)

    assert completed == ["first", "second", "third"]
    assert [m["cmd"] for m in agent.received] == ["first", "second", "third"]


def test_background_run_returns_before_reply(rpc, sink, attach_agent):
    session, agent = attach_agent(lambda msg: None)

    handle = rpc.run_command(session, "sleep", ["10"], background=True)

    assert handle.background is True
    assert handle.output is None
    assert wait_for(lambda: agent.received)
    assert sink.queue.empty()


def test_background_output_is_attributed_to_its_session(rpc, sink, attach_agent):
    a, agent_a = attach_agent(lambda msg: None)
    b, agent_b = attach_agent(lambda msg: None)

    job_a = rpc.run_command(a, "build", background=True)
    job_b = rpc.run_command(b, "build", background=True)
    assert wait_for(lambda: agent_a.received and agent_b.received)

    agent_b.send(protocol.result(job_b.request_id, "from b\n", background=True))
    agent_a.send(protocol.result(job_a.request_id, "from a\n", background=True))

    first, second = sink.get(timeout=2), sink.get(timeout=2)
    assert (first.session_id, first.output) == (b.id, "from b\n")
    assert (second.session_id, second.output) == (a.id, "from a\n")
    assert second.request_id == job_a.request_id


def test_background_result_is_delivered_once(rpc, sink, attach_agent):
    session, agent = attach_agent(lambda msg: None)
    job = rpc.run_command(session, "date", background=True)
    reply = protocol.result(job.request_id, "now\n", background=True)
    agent.send(reply)
    agent.send(reply)

    assert sink.get(timeout=2).output == "now\n"
    time.sleep(0.05)
    assert sink.queue.empty()


def test_background_does_not_wait_for_foreground(rpc, attach_agent):
    release = threading.Event()

    def gated(msg):
        if msg["type"] == protocol.RUN and not msg["background"]:
            release.wait(2)
            return echo_reply(msg)
        return None

    session, agent = attach_agent(gated)
    fg = threading.Thread(target=rpc.run_command, args=(session, "slow"))
    fg.start()
    assert wait_for(lambda: session.foreground.queued == 1)

    handle = rpc.run_command(session, "quick", background=True)
    assert handle.background is True
    release.set()
    fg.join(2)


def test_lost_background_jobs_are_reported(rpc, sink, attach_agent):
    session, agent = attach_agent(lambda msg: None)
    job = rpc.run_command(session, "long", background=True)
    assert wait_for(lambda: agent.received)

    agent.close()

    result = sink.get(timeout=2)
    assert result.request_id == job.request_id
    assert "connection lost" in result.error


def test_remote_error_is_surfaced_verbatim(rpc, attach_agent):
    def failing(msg):
        return protocol.result(msg["id"], "ls: cannot access\n", "Exit code: 2")

    session, _ = attach_agent(failing)
    with pytest.raises(RemoteExecutionError) as exc:
        rpc.run_command(session, "ls", ["/missing"])
    assert "Exit code: 2" in str(exc.value)
    assert "cannot access" in str(exc.value)


def test_disconnect_mid_command_marks_session(rpc, registry, attach_agent):
    session, _ = attach_agent(lambda msg: FakeAgent.HANG_UP)

    with pytest.raises(NotConnected):
        rpc.run_command(session, "uname")

    assert registry.list() == [(session, False)]
    with pytest.raises(NotConnected):
        rpc.ping(session)


def test_queued_calls_fail_when_stream_dies(rpc, attach_agent):
    session, agent = attach_agent(lambda msg: None)
    errors = []

    def call():
        try:
            rpc.run_command(session, "x")
        except NotConnected as e:
            errors.append(e)

    threads = [threading.Thread(target=call) for _ in range(3)]
    for t in threads:
        t.start()
    assert wait_for(lambda: session.foreground.queued == 3)
    agent.close()
    for t in threads:
        t.join(2)
    assert len(errors) == 3


def test_timeout_leaves_session_usable(rpc, attach_agent):
    def ignore_runs(msg):
        return None if msg["type"] == protocol.RUN else echo_reply(msg)

    session, _ = attach_agent(ignore_runs)
    with pytest.raises(CommandTimeout):
        rpc.run_command(session, "hang", timeout=0.1)
    assert session.connected
    assert rpc.ping(session) >= 0
    assert session.pending == {}


def test_uncorrelated_reply_is_dropped(rpc, attach_agent):
    session, agent = attach_agent()
    agent.send(protocol.result(999, "stray"))
    assert rpc.run_command(session, "echo", ["ok"]).output == "echo ok\n"
    assert session.connected


def test_malformed_frame_disconnects_session(rpc, registry, attach_agent):
    session, agent = attach_agent(lambda msg: None)
    agent.conn.sendall(protocol.HEADER.pack(3) + b"abc")
    assert wait_for(lambda: not session.connected)
    with pytest.raises(NotConnected):
        rpc.ping(session)


def test_wrong_reply_type_is_protocol_error(rpc, attach_agent):
    session, _ = attach_agent(lambda msg: protocol.result(msg["id"], "not a pong"))
    with pytest.raises(ProtocolError):
        rpc.ping(session)


def test_get_system_info(rpc, attach_agent):
    session, _ = attach_agent()
    assert rpc.get_system_info(session) == {"hostname": "lab", "os": "Linux"}


def test_system_info_without_info_is_protocol_error(rpc, attach_agent):
    session, _ = attach_agent(lambda msg: protocol.result(msg["id"], ""))
    with pytest.raises(ProtocolError):
        rpc.get_system_info(session)


def test_download_and_execute(rpc, attach_agent):
    session, agent = attach_agent()
    output = rpc.download_and_execute(session, "http://lab/tool.sh", ["--fast"])
    assert output == "ran http://lab/tool.sh\n"
    assert agent.received[0]["args"] == ["--fast"]


def test_download_failure_has_readable_cause(rpc, attach_agent):
    session, _ = attach_agent(
        lambda msg: protocol.result(msg["id"], error="Could not fetch http://lab/x: 404"))
    with pytest.raises(RemoteExecutionError, match="Could not fetch"):
        rpc.download_and_execute(session, "http://lab/x")


def test_disconnect_sends_request_and_flags_session(rpc, registry, attach_agent):
    session, agent = attach_agent()
    rpc.disconnect(session)
    assert wait_for(lambda: agent.received)
    assert agent.received == [{"type": protocol.DISCONNECT}]
    assert session.connected is False


def test_non_text_output_is_protocol_error(rpc, attach_agent):
    session, _ = attach_agent(lambda msg: protocol.result(msg["id"], 5))
    with pytest.raises(ProtocolError, match="not text"):
        rpc.run_command(session, "echo", ["hi"])
    assert session.connected


def test_non_text_background_output_is_reported_as_failure(rpc, sink, attach_agent):
    session, _ = attach_agent(
        lambda msg: protocol.result(msg["id"], {"lines": 2}, background=True))
    job = rpc.run_command(session, "echo", ["hi"], background=True)
    result = sink.get(timeout=2)
    assert (result.request_id, result.output) == (job.request_id, "")
    assert result.error == "malformed result from client"
    assert result.render().startswith("[*] Client 1 (job 1) failed")


def test_unsendable_background_request_is_not_tracked(rpc, sink, attach_agent):
    session, agent = attach_agent()
    with pytest.raises(ProtocolError):
        rpc.run_command(session, "echo", ["x" * protocol.MAX_MESSAGE_SIZE], background=True)
    assert session.background == set()
    assert session.connected

    agent.close()
    assert wait_for(lambda: not session.connected)
    with pytest.raises(queue.Empty):
        sink.get(timeout=0.2)


def test_disconnect_half_closes_until_agent_hangs_up(rpc, attach_agent):
    session, agent = attach_agent()
    rpc.disconnect(session)

    # the agent reads the request, then end of stream
    agent.thread.join(2)
    assert not agent.thread.is_alive()
    assert agent.received == [{"type": protocol.DISCONNECT}]
    assert session.conn.fileno() != -1

    agent.close()
    assert wait_for(lambda: session.conn.fileno() == -1)
