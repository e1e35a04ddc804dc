from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from kubecapture.config_loader import AppConfig
from kubecapture.errors import NotFoundError, OrchestrationError
from kubecapture.services.collection_client import CollectionOutcome, CollectionTask

CAPTURE_DS = "tcpdump-capture-ds"
CLEANUP_DS = "tcpdump-cleanup-ds"


def make_pod(name: str, node_name: str, phase: str = "Running") -> Dict[str, Any]:
    return {
        "metadata": {"name": name, "uid": f"uid-{name}", "labels": {"app": "tcpdump-capture"}},
        "spec": {"nodeName": node_name},
        "status": {"phase": phase},
    }


class FakeGateway:
    """In-memory stand-in for the Kubernetes API with scripted failures."""

    def __init__(self, node_names: Sequence[str] = ("node-a", "node-b")) -> None:
        self.node_names = list(node_names)
        self.resources: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.pods: List[Dict[str, Any]] = []
        self.calls: List[Tuple[Any, ...]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.closed = False

    def fail(self, op: str, kind_name: str, *errors: Exception) -> None:
        self.failures.setdefault(f"{op}:{kind_name}", []).extend(errors)

    def add(self, kind_name: str, body: Dict[str, Any]) -> None:
        self.resources[(kind_name, body["metadata"]["name"])] = body
        if kind_name == "DaemonSet" and body["metadata"]["name"] == CAPTURE_DS:
            self.pods = [make_pod(f"{CAPTURE_DS}-{i}", node) for i, node in enumerate(self.node_names)]

    def _maybe_fail(self, op: str, kind_name: str) -> None:
        queue = self.failures.get(f"{op}:{kind_name}")
        if queue:
            raise queue.pop(0)

    async def get(self, kind, name, namespace=None):
        self.calls.append(("get", kind.name, name))
        self._maybe_fail("get", kind.name)
        try:
            return self.resources[(kind.name, name)]
        except KeyError:
            raise NotFoundError(f"{kind.name} {name} not found", status_code=404) from None

    async def create(self, kind, body, namespace=None):
        name = body["metadata"]["name"]
        self.calls.append(("create", kind.name, name))
        self._maybe_fail("create", kind.name)
        if (kind.name, name) in self.resources:
            raise OrchestrationError(f"{kind.name} {name} already exists", status_code=409)
        self.add(kind.name, body)
        return body

    async def delete(self, kind, name, namespace=None):
        self.calls.append(("delete", kind.name, name))
        self._maybe_fail("delete", kind.name)
        if self.resources.pop((kind.name, name), None) is None:
            raise NotFoundError(f"{kind.name} {name} not found", status_code=404)
        if kind.name == "DaemonSet" and name == CAPTURE_DS:
            self.pods = []
        return {}

    async def list(self, kind, namespace, label_selector):
        self.calls.append(("list", kind.name, label_selector))
        self._maybe_fail("list", kind.name)
        return list(self.pods)

    async def close(self) -> None:
        self.closed = True


class FakeCollector:
    def __init__(
        self,
        outcome: CollectionOutcome,
        progress: Sequence[str] = (),
        log: Optional[List[Tuple[Any, ...]]] = None,
    ) -> None:
        self.outcome = outcome
        self.progress = list(progress)
        self.tasks: List[CollectionTask] = []
        self.log = log

    async def collect(self, task, on_progress=None):
        self.tasks.append(task)
        if self.log is not None:
            self.log.append(("collect", task.task_id))
        for message in self.progress:
            if on_progress is not None:
                on_progress(message)
        return self.outcome


class RecordingSleep:
    def __init__(self, log: Optional[List[Tuple[Any, ...]]] = None) -> None:
        self.delays: List[float] = []
        self.log = log

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.log is not None:
            self.log.append(("sleep", delay))
        await asyncio.sleep(0)


@pytest.fixture
def config() -> AppConfig:
    return AppConfig()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sleeper(gateway: FakeGateway) -> RecordingSleep:
    return RecordingSleep(gateway.calls)
