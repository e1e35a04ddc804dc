import asyncio
import datetime as dt
import json
from typing import Any, List

import websockets

from kubecapture.config_loader import CollectorConfig
from kubecapture.services.collection_client import (
    CollectionOutcome,
    CollectionProtocolClient,
    CollectionTask,
    artifact_download,
)
from kubecapture.services.session_state import NodeCaptureStatus


class FakeChannel:
    def __init__(self, frames: List[Any]) -> None:
        self.frames = list(frames)
        self.sent: List[str] = []

    async def __aenter__(self) -> "FakeChannel":
        return self

    async def __aexit__(self, *exc_info) -> None:
        return None

    async def send(self, message: str) -> None:
        self.sent.append(message)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            yield frame if isinstance(frame, (str, bytes)) else json.dumps(frame)


class FakeConnector:
    def __init__(self, channel: FakeChannel) -> None:
        self.channel = channel
        self.urls: List[str] = []

    def __call__(self, url: str) -> FakeChannel:
        self.urls.append(url)
        return self.channel


def _task() -> CollectionTask:
    nodes = [NodeCaptureStatus(pod_name="tcpdump-capture-ds-x1", node_name="node-a", runtime_phase="Running")]
    return CollectionTask.from_nodes(nodes, task_id="capture-1700000000000")


def _client(frames: List[Any]):
    connector = FakeConnector(FakeChannel(frames))
    return CollectionProtocolClient("collector.local", 8765, connector=connector), connector


def test_task_message_shape() -> None:
    assert _task().to_message() == {
        "taskID": "capture-1700000000000",
        "podsToCollect": [{"name": "tcpdump-capture-ds-x1", "nodeName": "node-a"}],
    }


def test_generated_task_id_uses_capture_prefix() -> None:
    task = CollectionTask.from_nodes([])

    assert task.task_id.startswith("capture-")
    assert task.task_id[len("capture-"):].isdigit()
    assert task.targets == ()


def test_complete_frame_resolves_relative_url() -> None:
    client, connector = _client(
        [{"message": "copying node-a"}, {"message": "merging"}, {"status": "complete", "url": "/dl/abc"}]
    )
    progress: List[str] = []

    outcome = asyncio.run(client.collect(_task(), on_progress=progress.append))

    assert outcome == CollectionOutcome.success("http://collector.local:8765/dl/abc")
    assert progress == ["copying node-a", "merging"]
    assert connector.urls == ["ws://collector.local:8765/ws"]
    assert json.loads(connector.channel.sent[0])["taskID"] == "capture-1700000000000"


def test_complete_frame_keeps_absolute_url() -> None:
    client, _ = _client([{"status": "complete", "url": "https://files.example/bundle.pcap"}])

    outcome = asyncio.run(client.collect(_task()))

    assert outcome.artifact_url == "https://files.example/bundle.pcap"


def test_error_frame_is_server_failure() -> None:
    client, _ = _client([{"message": "copying"}, {"status": "error", "message": "x"}])

    outcome = asyncio.run(client.collect(_task()))

    assert outcome.ok is False
    assert outcome.failure_kind == "CollectionServerError"
    assert outcome.failure_reason == "x"


def test_complete_without_url_is_server_failure() -> None:
    client, _ = _client([{"status": "complete"}])

    outcome = asyncio.run(client.collect(_task()))

    assert outcome.failure_kind == "CollectionServerError"


def test_channel_closed_without_terminal_frame_is_connection_failure() -> None:
    client, _ = _client([{"message": "copying"}])

    outcome = asyncio.run(client.collect(_task()))

    assert outcome.failure_kind == "CollectionConnectionFailed"


def test_malformed_frames_are_ignored() -> None:
    client, _ = _client(["not json", "[1, 2]", b'{"status": "complete", "url": "/dl/z"}'])

    outcome = asyncio.run(client.collect(_task()))

    assert outcome.artifact_url == "http://collector.local:8765/dl/z"


def test_connect_failure_is_connection_failure() -> None:
    def refuse(url: str):
        raise OSError("connection refused")

    client = CollectionProtocolClient("collector.local", 8765, connector=refuse)

    outcome = asyncio.run(client.collect(_task()))

    assert outcome.failure_kind == "CollectionConnectionFailed"
    assert "connection refused" in outcome.failure_reason


def test_from_config_uses_api_server_host_and_secure_scheme() -> None:
    client = CollectionProtocolClient.from_config(CollectorConfig(scheme="wss", path="collect"), "https://10.1.2.3:6443")

    assert client.channel_url == "wss://10.1.2.3:8765/collect"
    assert client.resolve_artifact_url("/dl/a") == "https://10.1.2.3:8765/dl/a"


def test_artifact_download_filename_is_timestamped() -> None:
    download = artifact_download("http://h/dl/a", now=dt.datetime(2024, 3, 5, 7, 8, 9))

    assert download.filename == "capture-20240305-070809.pcap"
    assert download.url == "http://h/dl/a"


def test_collect_against_real_websocket_server() -> None:
    received: List[dict] = []

    async def handler(connection) -> None:
        received.append(json.loads(await connection.recv()))
        await connection.send(json.dumps({"message": "collecting 1/1"}))
        await connection.send(json.dumps({"status": "complete", "url": "/download/bundle.pcap"}))

    async def scenario():
        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            client = CollectionProtocolClient("127.0.0.1", port)
            progress: List[str] = []
            outcome = await client.collect(_task(), on_progress=progress.append)
            return port, outcome, progress

    port, outcome, progress = asyncio.run(scenario())

    assert received[0]["podsToCollect"] == [{"name": "tcpdump-capture-ds-x1", "nodeName": "node-a"}]
    assert progress == ["collecting 1/1"]
    assert outcome.artifact_url == f"http://127.0.0.1:{port}/download/bundle.pcap"
