from __future__ import annotations

import datetime as dt
import enum
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from kubecapture.errors import CaptureError

LOGGER = logging.getLogger(__name__)


class Phase(str, enum.Enum):
    UNKNOWN = "Unknown"
    IDLE = "Idle"
    RUNNING = "Running"
    STOPPING_ONLY = "StoppingOnly"
    STOPPING_AND_COLLECTING = "StoppingAndCollecting"
    ERROR = "Error"


TRANSITIONAL_PHASES = {Phase.STOPPING_ONLY, Phase.STOPPING_AND_COLLECTING}


@dataclass(frozen=True)
class NodeCaptureStatus:
    pod_name: str
    node_name: str
    runtime_phase: str

    @classmethod
    def from_pod(cls, pod: Dict[str, Any]) -> "NodeCaptureStatus":
        metadata = pod.get("metadata") or {}
        spec = pod.get("spec") or {}
        status = pod.get("status") or {}
        return cls(
            pod_name=str(metadata.get("name") or ""),
            node_name=str(spec.get("nodeName") or ""),
            runtime_phase=str(status.get("phase") or "Unknown"),
        )


@dataclass(frozen=True)
class SessionError:
    kind: str
    message: str
    cause: Optional[BaseException] = None
    at: dt.datetime = field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))

    @classmethod
    def from_exception(cls, exc: BaseException, message: Optional[str] = None) -> "SessionError":
        kind = getattr(exc, "kind", None) or type(exc).__name__
        cause = exc.__cause__ if isinstance(exc, CaptureError) and exc.__cause__ is not None else exc
        return cls(kind=kind, message=message or str(exc) or kind, cause=cause)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "at": self.at.isoformat()}


@dataclass(frozen=True)
class ArtifactDownload:
    url: str
    filename: str

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "filename": self.filename}


@dataclass
class CaptureSession:
    phase: Phase = Phase.UNKNOWN
    capture_filter: str = ""
    image: str = ""
    nodes: List[NodeCaptureStatus] = field(default_factory=list)
    last_error: Optional[SessionError] = None
    busy: bool = False
    progress: str = ""
    last_artifact: Optional[ArtifactDownload] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "busy": self.busy,
            "filter": self.capture_filter,
            "image": self.image,
            "nodes": [
                {"podName": n.pod_name, "nodeName": n.node_name, "runtimePhase": n.runtime_phase}
                for n in self.nodes
            ],
            "progress": self.progress,
            "error": self.last_error.to_dict() if self.last_error else None,
            "artifact": self.last_artifact.to_dict() if self.last_artifact else None,
        }


class SessionStore:
    """
    Owns the single in-memory CaptureSession.

    Status checks and mutating operations draw tickets from one monotonically
    increasing sequence. A status result is applied only if its ticket is newer
    than the last applied result and newer than the start of the latest
    mutating operation, so a slow check can never roll the session back to a
    state observed before that operation began.
    """

    def __init__(self, session: Optional[CaptureSession] = None) -> None:
        self._session = session or CaptureSession()
        self._seq = 0
        self._last_applied_seq = 0
        self._mutation_floor = 0

    @property
    def session(self) -> CaptureSession:
        return self._session

    def snapshot(self) -> CaptureSession:
        return replace(self._session, nodes=list(self._session.nodes))

    def begin_check(self) -> int:
        self._seq += 1
        return self._seq

    def begin_mutation(self) -> int:
        self._seq += 1
        self._mutation_floor = self._seq
        return self._seq

    def is_current(self, seq: int) -> bool:
        return seq > self._last_applied_seq and seq > self._mutation_floor

    def apply_check(
        self,
        seq: int,
        *,
        phase: Optional[Phase],
        nodes: Sequence[NodeCaptureStatus],
        error: Optional[SessionError],
    ) -> bool:
        if not self.is_current(seq):
            LOGGER.debug(
                "Discarding stale status result seq=%s last_applied=%s mutation_floor=%s",
                seq,
                self._last_applied_seq,
                self._mutation_floor,
                extra={"category": "SESSION"},
            )
            return False
        self._last_applied_seq = seq
        if phase is not None:
            self.set_phase(phase)
        self._session.nodes = list(nodes)
        self._session.last_error = error
        return True

    def set_phase(self, phase: Phase) -> None:
        if self._session.phase != phase:
            LOGGER.info(
                "Session phase %s -> %s",
                self._session.phase.value,
                phase.value,
                extra={"category": "SESSION"},
            )
        self._session.phase = phase

    def set_error(self, error: Optional[SessionError]) -> None:
        self._session.last_error = error

    def set_busy(self, busy: bool) -> None:
        self._session.busy = busy

    def set_progress(self, message: str) -> None:
        self._session.progress = message

    def set_request(self, capture_filter: str, image: str) -> None:
        self._session.capture_filter = capture_filter
        self._session.image = image

    def set_artifact(self, artifact: Optional[ArtifactDownload]) -> None:
        self._session.last_artifact = artifact
