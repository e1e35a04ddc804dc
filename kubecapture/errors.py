from __future__ import annotations

from typing import Optional


class CaptureError(Exception):
    kind = "CaptureError"


class OrchestrationError(CaptureError):
    """The Kubernetes API rejected a request and retrying will not help."""

    kind = "OrchestrationError"

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(OrchestrationError):
    # Absence of a resource; drives transitions rather than signalling failure.
    kind = "NotFound"


class TransientAPIError(OrchestrationError):
    kind = "TransientAPIError"


class NamespaceCreationFailed(CaptureError):
    kind = "NamespaceCreationFailed"


class SessionStartError(CaptureError):
    kind = "SessionStartError"


class SessionBusyError(CaptureError):
    kind = "SessionBusy"


class CollectionConnectionFailed(CaptureError):
    kind = "CollectionConnectionFailed"


class CollectionServerError(CaptureError):
    kind = "CollectionServerError"


class CleanupFailed(CaptureError):
    kind = "CleanupFailed"
