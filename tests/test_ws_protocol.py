"""End-to-end WebSocket tests through the real app and event loop.

The app is built with RecordingEngine (see conftest), which echoes every
engine call back as an ``ECHO`` status.  Receiving the echoes proves the
full path: gateway -> dispatcher -> engine -> relay -> socket.
"""

import json

import pytest
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from psychtimer.config import POLICY_REPLACE, Settings
from psychtimer.engine import PhasedEngine
from psychtimer.gateway import CLOSE_POLICY_VIOLATION, CLOSE_REPLACED
from psychtimer.mindware import read_events, validate_event_file
from psychtimer.server import create_app


def _expect(ws, kind, message=None) -> dict:
    frame = ws.receive_json()
    assert frame["kind"] == kind, frame
    if message is not None:
        assert frame["message"] == message, frame
    return frame


class TestConnect:

    def test_instructions_sent_first_byte_exact(self, client, settings):
        with client.websocket_connect("/ws") as ws:
            frame = ws.receive_text()
        assert frame == json.dumps(
            {"kind": "INSTRUCTIONS", "message": settings.instructions},
            separators=(",", ":"),
        )

    def test_session_endpoint_tracks_connection(self, client):
        assert client.get("/api/session").json()["active"] is False
        with client.websocket_connect("/ws") as ws:
            _expect(ws, "INSTRUCTIONS")
            body = client.get("/api/session").json()
            assert body["active"] is True
            assert len(body["session_id"]) == 32


class TestCommandFlow:

    def test_commands_processed_in_send_order(self, client, engines):
        with client.websocket_connect("/ws") as ws:
            _expect(ws, "INSTRUCTIONS")
            sent = []
            for i in range(10):
                ws.send_json({"action": "KEY", "subjectID": "S1", "content": f"k{i}", "keyCode": i})
                sent.append(f"key:k{i}:{i}")
                if i % 3 == 0:
                    ws.send_json({"action": "CONTINUE"})
                    sent.append("continue")
            received = [_expect(ws, "ECHO")["message"] for _ in sent]
        assert received == sent
        assert len(engines) == 1

    def test_start_never_blocks_later_commands(self, client, engines):
        with client.websocket_connect("/ws") as ws:
            _expect(ws, "INSTRUCTIONS")
            ws.send_json({"action": "START", "subjectID": "S1"})
            _expect(ws, "ECHO", "start:S1")

            # The run never finishes; these must still get through.
            ws.send_json({"action": "KEY", "subjectID": "S1", "content": "a", "keyCode": 65})
            ws.send_json({"action": "CONTINUE"})
            ws.send_json({"action": "CANCEL", "subjectID": "S1"})
            _expect(ws, "ECHO", "key:a:65")
            _expect(ws, "ECHO", "continue")
            _expect(ws, "ECHO", "cancel:S1")
        assert engines[0].calls[0] == ("start", "S1")

    def test_unknown_action_ignored(self, client):
        with client.websocket_connect("/ws") as ws:
            _expect(ws, "INSTRUCTIONS")
            ws.send_json({"action": "JUMP"})
            ws.send_json({"subjectID": "S1"})
            ws.send_json({"action": "CONTINUE"})
            _expect(ws, "ECHO", "continue")

    def test_malformed_frame_drops_connection(self, client, engines):
        with client.websocket_connect("/ws") as ws:
            _expect(ws, "INSTRUCTIONS")
            ws.send_text("this is not valid json{{{")
            with pytest.raises(WebSocketDisconnect):
                ws.receive_text()
        assert client.get("/api/session").json()["active"] is False
        assert engines[0].calls == []

    def test_reconnect_after_drop_gets_fresh_session(self, client, engines):
        with client.websocket_connect("/ws") as ws:
            _expect(ws, "INSTRUCTIONS")
        with client.websocket_connect("/ws") as ws:
            _expect(ws, "INSTRUCTIONS")
            ws.send_json({"action": "CONTINUE"})
            _expect(ws, "ECHO", "continue")
        assert len(engines) == 2
        assert engines[0].calls == []
        assert engines[1].calls == [("continue",)]


class TestAdmissionPolicy:

    def test_second_connection_rejected(self, client):
        with client.websocket_connect("/ws") as first:
            _expect(first, "INSTRUCTIONS")
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/ws"):
                    pass
            assert exc_info.value.code == CLOSE_POLICY_VIOLATION

            # The first connection is unaffected
            first.send_json({"action": "CONTINUE"})
            _expect(first, "ECHO", "continue")

    def test_second_connection_replaces_first(self, tmp_path, recording_factory):
        settings = Settings(log_dir=tmp_path, session_policy=POLICY_REPLACE, shutdown_grace=0.1)
        app = create_app(settings, recording_factory)
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as first:
                _expect(first, "INSTRUCTIONS")
                with client.websocket_connect("/ws") as second:
                    with pytest.raises(WebSocketDisconnect) as exc_info:
                        first.receive_text()
                    assert exc_info.value.code == CLOSE_REPLACED

                    _expect(second, "INSTRUCTIONS")
                    second.send_json({"action": "CONTINUE"})
                    _expect(second, "ECHO", "continue")


class TestPhasedEngineEndToEnd:

    def test_operator_paced_run_writes_valid_event_file(self, settings):
        app = create_app(settings, PhasedEngine)
        with TestClient(app) as client:
            with client.websocket_connect("/ws") as ws:
                _expect(ws, "INSTRUCTIONS")
                ws.send_json({"action": "START", "subjectID": "S1"})
                _expect(ws, "STATUS", "Run started for S1")
                _expect(ws, "WAITING", "Baseline")

                ws.send_json({"action": "KEY", "subjectID": "S1", "content": "space", "keyCode": 32})
                ws.send_json({"action": "CONTINUE"})
                _expect(ws, "WAITING", "Stimulus")
                ws.send_json({"action": "CANCEL", "subjectID": "S1"})
                _expect(ws, "FINISHED", "Run cancelled")

        files = list(settings.log_dir.glob("S1_*.txt"))
        assert len(files) == 1
        assert validate_event_file(files[0]) == []
        assert [e.event_type for e in read_events(files[0])] == [
            "Start Event", "Baseline", "KEY", "Stimulus", "CANCEL",
        ]
