"""HTTP and WebSocket tests for the bridge server."""

import time
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from loopdesk.server import create_app


@pytest.fixture
def client(make_host) -> Any:
    with TestClient(create_app(host=make_host())) as test_client:
        yield test_client


def _wait_for_sinks(client: TestClient, count: int) -> None:
    for _ in range(100):
        if client.get("/api/health").json()["sinks"] == count:
            return
        time.sleep(0.01)
    raise AssertionError(f"expected {count} event sinks")


class TestInvoke:
    """POST /api/ipc/{channel} and the error status mapping."""

    def test_health(self, client: TestClient) -> None:
        """Health reports registry counts."""
        response = client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "watchers": 0,
            "activeExecutions": 0,
            "sinks": 0,
            "project": None,
        }

    def test_success_returns_camel_case(self, client: TestClient, tmp_path: Path) -> None:
        """A successful call returns the handler's response body."""
        target = tmp_path / "a.json"
        target.write_text("{}", encoding="utf-8")

        response = client.post("/api/ipc/file:read", json={"path": str(target)})

        assert response.status_code == 200
        body = response.json()
        assert body["content"] == "{}"
        assert body["mimeType"] == "application/json"
        assert "lastModified" in body

    def test_unknown_channel_is_404(self, client: TestClient) -> None:
        """Unregistered channels map to 404."""
        response = client.post("/api/ipc/shell:run", json={})

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["kind"] == "IPC_CHANNEL_UNKNOWN"
        assert error["error_id"] == "LD-1002"

    def test_rate_limited_is_429_with_retry_after(self, client: TestClient) -> None:
        """The sixth cli:execute within a window is 429 with Retry-After."""
        for _ in range(5):
            assert client.post("/api/ipc/cli:execute", json={}).status_code == 422

        response = client.post("/api/ipc/cli:execute", json={})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "1"
        assert response.json()["error"]["context"]["channel"] == "cli:execute"

    def test_path_traversal_is_403(self, client: TestClient) -> None:
        """System paths are refused with 403."""
        response = client.post("/api/ipc/file:read", json={"path": "/etc/passwd"})

        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "PATH_TRAVERSAL"

    def test_too_large_is_413(self, client: TestClient, tmp_path: Path) -> None:
        """Files over maxSize map to 413."""
        target = tmp_path / "big.txt"
        target.write_text("xx", encoding="utf-8")

        response = client.post("/api/ipc/file:read", json={"path": str(target), "maxSize": 1})

        assert response.status_code == 413

    def test_missing_file_is_404(self, client: TestClient, tmp_path: Path) -> None:
        """Missing files map to 404."""
        response = client.post("/api/ipc/file:read", json={"path": str(tmp_path / "gone.md")})

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "FS_NOT_FOUND"

    def test_invalid_json_is_422(self, client: TestClient) -> None:
        """A body that is not JSON is a schema error."""
        response = client.post(
            "/api/ipc/cli:cancel",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 422
        assert response.json()["error"]["kind"] == "VERIFY_SCHEMA"

    def test_schema_error_lists_fields(self, client: TestClient) -> None:
        """Schema errors carry per-field details."""
        response = client.post("/api/ipc/approval:submit", json={"stepId": "A-1", "featureId": "f"})

        assert response.status_code == 422
        fields = [d["field"] for d in response.json()["error"]["context"]["details"]]
        assert fields == ["action"]

    def test_no_project_is_409(self, client: TestClient) -> None:
        """project:state without an open project is a conflict."""
        response = client.post("/api/ipc/project:state", json={})

        assert response.status_code == 409

    def test_spawn_failure_is_500(self, client: TestClient, tmp_path: Path) -> None:
        """A command that cannot be spawned maps to 500."""
        response = client.post(
            "/api/ipc/cli:execute",
            json={"command": "echo hi", "projectPath": str(tmp_path / "missing")},
        )

        assert response.status_code == 500
        assert response.json()["error"]["kind"] == "CLI_SPAWN_FAILED"

    def test_cancel_unknown_is_404(self, client: TestClient) -> None:
        """Cancelling an unknown execution maps to 404."""
        response = client.post("/api/ipc/cli:cancel", json={"executionId": "nope"})

        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "CLI_NOT_FOUND"


class TestEventStream:
    """WS /api/events."""

    def test_streams_execution_events(self, client: TestClient, tmp_path: Path) -> None:
        """Output and completion of a command arrive as channel frames."""
        with client.websocket_connect("/api/events?channels=cli:output,cli:complete") as ws:
            _wait_for_sinks(client, 1)

            started = client.post(
                "/api/ipc/cli:execute",
                json={"command": "echo streamed", "projectPath": str(tmp_path)},
            )
            assert started.status_code == 200
            execution_id = started.json()["executionId"]

            frames: list[dict[str, Any]] = []
            while True:
                frame = ws.receive_json()
                frames.append(frame)
                if frame["channel"] == "cli:complete":
                    break

        assert all(f["payload"]["executionId"] == execution_id for f in frames)
        stdout = "".join(
            f["payload"]["content"] for f in frames if f["channel"] == "cli:output" and f["payload"]["type"] == "stdout"
        )
        assert stdout == "streamed\n"
        assert frames[-2]["payload"]["content"] == "Process exited with code 0"
        assert frames[-1]["payload"]["status"] == "completed"

    def test_unknown_channel_filter_is_rejected(self, client: TestClient) -> None:
        """Filters naming non-push channels close the socket with 4400."""
        with client.websocket_connect("/api/events?channels=cli:execute") as ws:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()

        assert exc_info.value.code == 4400

    def test_disconnect_detaches_sink(self, client: TestClient) -> None:
        """Closing the socket removes its sink from the bus."""
        with client.websocket_connect("/api/events"):
            _wait_for_sinks(client, 1)

        _wait_for_sinks(client, 0)
