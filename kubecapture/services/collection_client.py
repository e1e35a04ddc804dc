from __future__ import annotations

import asyncio
import contextlib
import datetime as dt
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Optional, Sequence, Tuple, Union
from urllib.parse import urljoin

import websockets
from websockets.exceptions import WebSocketException

from kubecapture.config_loader import CollectorConfig
from kubecapture.errors import CollectionConnectionFailed, CollectionServerError
from kubecapture.services.session_state import ArtifactDownload, NodeCaptureStatus

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


@dataclass(frozen=True)
class CollectionTarget:
    pod_name: str
    node_name: str


@dataclass(frozen=True)
class CollectionTask:
    task_id: str
    targets: Tuple[CollectionTarget, ...]

    @classmethod
    def from_nodes(cls, nodes: Sequence[NodeCaptureStatus], task_id: Optional[str] = None) -> "CollectionTask":
        return cls(
            task_id=task_id or f"capture-{time.time_ns() // 1_000_000}",
            targets=tuple(CollectionTarget(pod_name=n.pod_name, node_name=n.node_name) for n in nodes),
        )

    def to_message(self) -> Dict[str, Any]:
        return {
            "taskID": self.task_id,
            "podsToCollect": [{"name": t.pod_name, "nodeName": t.node_name} for t in self.targets],
        }


@dataclass(frozen=True)
class CollectionOutcome:
    artifact_url: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_kind: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.artifact_url is not None

    @classmethod
    def success(cls, artifact_url: str) -> "CollectionOutcome":
        return cls(artifact_url=artifact_url)

    @classmethod
    def failure(cls, kind: str, reason: str) -> "CollectionOutcome":
        return cls(failure_reason=reason, failure_kind=kind)


@dataclass(frozen=True)
class ProgressEvent:
    message: str


@dataclass(frozen=True)
class OutcomeEvent:
    outcome: CollectionOutcome


CollectionEvent = Union[ProgressEvent, OutcomeEvent]


def artifact_download(artifact_url: str, now: Optional[dt.datetime] = None) -> ArtifactDownload:
    stamp = (now or dt.datetime.now()).strftime("%Y%m%d-%H%M%S")
    return ArtifactDownload(url=artifact_url, filename=f"capture-{stamp}.pcap")


class CollectionProtocolClient:
    """
    Client side of the collection backend's websocket protocol.

    One channel per task: the task message goes out, then zero or more
    ``{"message": ...}`` progress frames and exactly one terminal frame
    (``{"status": "complete", "url": ...}`` or ``{"status": "error", ...}``)
    come back. There is no retry and no client-side timeout. Closing the
    event stream early closes the channel; work already running on the
    backend is not cancelled.
    """

    def __init__(
        self,
        host: str,
        port: int,
        path: str = "/ws",
        scheme: str = "ws",
        connector: Optional[Callable[..., Any]] = None,
    ) -> None:
        self._host = host
        self._port = int(port)
        self._path = path if path.startswith("/") else f"/{path}"
        self._scheme = scheme
        self._connect = connector or websockets.connect

    @classmethod
    def from_config(
        cls,
        collector: CollectorConfig,
        api_server: str,
        caller_host: Optional[str] = None,
    ) -> "CollectionProtocolClient":
        return cls(
            host=collector.resolve_host(api_server, caller_host),
            port=collector.port,
            path=collector.path,
            scheme=collector.scheme,
        )

    @property
    def channel_url(self) -> str:
        return f"{self._scheme}://{self._host}:{self._port}{self._path}"

    @property
    def http_base_url(self) -> str:
        http_scheme = "https" if self._scheme == "wss" else "http"
        return f"{http_scheme}://{self._host}:{self._port}/"

    def resolve_artifact_url(self, url: str) -> str:
        return urljoin(self.http_base_url, url)

    async def events(self, task: CollectionTask) -> AsyncIterator[CollectionEvent]:
        terminal: Optional[CollectionOutcome] = None
        log_extra = {"category": "COLLECTION", "correlation_id": task.task_id}
        LOGGER.info(
            "Opening collection channel url=%s targets=%s",
            self.channel_url,
            len(task.targets),
            extra=log_extra,
        )
        try:
            async with self._connect(self.channel_url) as channel:
                await channel.send(json.dumps(task.to_message()))
                async for raw in channel:
                    message = self._decode(raw)
                    if message is None:
                        continue
                    status = message.get("status")
                    if status == "complete":
                        terminal = self._complete_outcome(message)
                        break
                    if status == "error":
                        reason = str(message.get("message") or "collection failed")
                        terminal = CollectionOutcome.failure(CollectionServerError.kind, reason)
                        break
                    if "message" in message:
                        yield ProgressEvent(str(message["message"]))
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            LOGGER.warning("Collection channel failed error=%s", exc, extra=log_extra)
            terminal = CollectionOutcome.failure(
                CollectionConnectionFailed.kind,
                f"Connection to collection service {self.channel_url} failed: {exc}",
            )
        if terminal is None:
            terminal = CollectionOutcome.failure(
                CollectionConnectionFailed.kind,
                "Collection channel closed before the task completed",
            )
        if terminal.ok:
            LOGGER.info("Collection completed artifact_url=%s", terminal.artifact_url, extra=log_extra)
        else:
            LOGGER.warning(
                "Collection failed kind=%s reason=%s",
                terminal.failure_kind,
                terminal.failure_reason,
                extra=log_extra,
            )
        yield OutcomeEvent(terminal)

    async def collect(self, task: CollectionTask, on_progress: Optional[ProgressCallback] = None) -> CollectionOutcome:
        async with contextlib.aclosing(self.events(task)) as stream:
            async for event in stream:
                if isinstance(event, OutcomeEvent):
                    return event.outcome
                if on_progress is not None:
                    on_progress(event.message)
        return CollectionOutcome.failure(CollectionConnectionFailed.kind, "Collection stream ended without an outcome")

    def _complete_outcome(self, message: Dict[str, Any]) -> CollectionOutcome:
        url = str(message.get("url") or "").strip()
        if not url:
            return CollectionOutcome.failure(CollectionServerError.kind, "Collection completed without an artifact URL")
        return CollectionOutcome.success(self.resolve_artifact_url(url))

    @staticmethod
    def _decode(raw: Union[str, bytes]) -> Optional[Dict[str, Any]]:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        try:
            message = json.loads(text)
        except ValueError:
            LOGGER.warning("Ignoring non-JSON collection frame: %s", text[:200], extra={"category": "COLLECTION"})
            return None
        if not isinstance(message, dict):
            LOGGER.warning("Ignoring non-object collection frame: %s", text[:200], extra={"category": "COLLECTION"})
            return None
        return message
