"""Tests for the remote control server."""

import json

import pytest
import zmq

from squidctl.services import RemoteControlServer


@pytest.fixture
def context():
    context = zmq.Context()
    yield context
    context.term()


@pytest.fixture
def server(coordinator, devices, context):
    server = RemoteControlServer(coordinator, devices, host="127.0.0.1", port=0, context=context)
    server.start_background()
    yield server
    server.stop_background()


class Client:
    def __init__(self, context, endpoint):
        self.sock = context.socket(zmq.REQ)
        self.sock.setsockopt(zmq.RCVTIMEO, 5000)
        self.sock.setsockopt(zmq.LINGER, 0)
        self.sock.connect(endpoint)

    def send(self, message):
        raw = message if isinstance(message, str) else json.dumps(message)
        self.sock.send_string(raw)
        return self.sock.recv_json()

    def close(self):
        self.sock.close()


@pytest.fixture
def client(server, context):
    client = Client(context, server.endpoint)
    yield client
    client.close()


class TestRemoteControl:
    def test_ping(self, client):
        assert client.send({"command": "ping"}) == {"ok": True, "result": "pong"}

    def test_devices(self, client):
        reply = client.send({"command": "devices"})
        assert reply["ok"]
        assert set(reply["result"]) == {"sim", "sim2", "slow"}

    def test_start_and_status(self, client, coordinator, ocp_definition):
        reply = client.send({
            "command": "start",
            "device": "sim",
            "channel": 1,
            "definition": ocp_definition.model_dump(mode="json"),
            "tags": ["remote"],
        })
        assert reply["ok"], reply
        run_id = reply["result"]["run_id"]

        run = coordinator.get_run(run_id)
        assert coordinator.wait(run, timeout=5)

        status = client.send({"command": "status", "run_id": run_id})
        assert status["result"]["status"] == "completed"
        assert status["result"]["dc_points"] == 8
        assert run.record.tags == ["remote"]

        runs = client.send({"command": "runs"})
        assert [entry["run_id"] for entry in runs["result"]] == [run_id]

    def test_stop(self, client, coordinator, long_definition):
        reply = client.send({
            "command": "start",
            "device": "slow",
            "channel": 0,
            "definition": long_definition.model_dump(mode="json"),
        })
        run_id = reply["result"]["run_id"]

        stopped = client.send({"command": "stop", "run_id": run_id})

        assert stopped["ok"]
        assert coordinator.wait(coordinator.get_run(run_id), timeout=5)
        assert coordinator.get_run(run_id).status == "stopped"

    def test_invalid_definition(self, client):
        reply = client.send({"command": "start", "device": "sim", "definition": {"name": "x", "steps": []}})
        assert not reply["ok"]

    def test_missing_field(self, client):
        reply = client.send({"command": "start", "device": "sim"})
        assert reply == {"ok": False, "error": "Missing field 'definition'"}

    def test_unknown_run(self, client):
        reply = client.send({"command": "status", "run_id": "feedface"})
        assert not reply["ok"]
        assert "feedface" in reply["error"]

    def test_bad_messages(self, client):
        assert "Invalid JSON" in client.send("{nope")["error"]
        assert not client.send("[1, 2]")["ok"]
        assert client.send({"command": "reboot"})["error"] == "Unknown command: reboot"

    def test_execute_without_socket(self, server):
        assert server.execute(b'{"command": "ping"}')["result"] == "pong"

    def test_stop_needs_exact_run_id(self, client, coordinator, long_definition):
        run = coordinator.start("slow", 0, long_definition)

        for run_id in ("", run.id[:3]):
            reply = client.send({"command": "stop", "run_id": run_id})
            assert not reply["ok"]
        assert not run.stop_requested
        assert run.status == "running"

        assert client.send({"command": "stop", "run_id": run.id[:8]})["ok"]
        assert coordinator.wait(run, timeout=5)
        assert run.status == "stopped"
