from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from kubecapture.config_loader import AppConfig
from kubecapture.errors import (
    CleanupFailed,
    CollectionConnectionFailed,
    NamespaceCreationFailed,
    NotFoundError,
    SessionBusyError,
    SessionStartError,
)
from kubecapture.logging_setup import correlation_context
from kubecapture.services.collection_client import (
    CollectionOutcome,
    CollectionProtocolClient,
    CollectionTask,
    artifact_download,
)
from kubecapture.services.orchestration_gateway import DAEMONSET, NAMESPACE, POD, OrchestrationGateway
from kubecapture.services.session_state import (
    TRANSITIONAL_PHASES,
    ArtifactDownload,
    CaptureSession,
    NodeCaptureStatus,
    Phase,
    SessionError,
    SessionStore,
)
from kubecapture.services.workload_specs import build_capture_spec, build_cleanup_spec

LOGGER = logging.getLogger(__name__)

Sleeper = Callable[[float], Awaitable[Any]]
CollectorFactory = Callable[[Optional[str]], CollectionProtocolClient]
ArtifactHandler = Callable[[ArtifactDownload], None]


@dataclass
class StatusResult:
    phase: Phase
    nodes: List[NodeCaptureStatus] = field(default_factory=list)
    error: Optional[SessionError] = None
    capture_filter: Optional[str] = None
    image: Optional[str] = None


def _request_from_daemonset(daemonset: Dict[str, Any]) -> tuple[Optional[str], Optional[str]]:
    """Recover (filter, image) from a deployed capture DaemonSet."""
    try:
        container = daemonset["spec"]["template"]["spec"]["containers"][0]
    except (KeyError, IndexError, TypeError):
        return None, None
    args = container.get("args") or []
    capture_filter = str(args[2]) if len(args) > 2 else ""
    image = container.get("image")
    return capture_filter, str(image) if image else None


class SessionController:
    """
    Drives one capture session at a time against the Kubernetes API and the
    collection backend.

    Public operations never raise: failures land in ``session.last_error``.
    ``start``, ``stop_only`` and ``stop_and_collect`` are mutually exclusive;
    each holds the busy guard until its deferred tail (re-check or cleanup)
    has finished.
    """

    def __init__(
        self,
        config: AppConfig,
        gateway: OrchestrationGateway,
        collector_factory: Optional[CollectorFactory] = None,
        store: Optional[SessionStore] = None,
        sleep: Sleeper = asyncio.sleep,
        on_artifact: Optional[ArtifactHandler] = None,
    ) -> None:
        self._config = config
        self._gateway = gateway
        self._collector_factory = collector_factory or self._default_collector
        self._store = store or SessionStore()
        self._sleep = sleep
        self._on_artifact = on_artifact
        self._mutation_in_flight = False
        self._checks_in_flight = 0
        self._pending: Optional[asyncio.Task[None]] = None

    @property
    def store(self) -> SessionStore:
        return self._store

    def snapshot(self) -> CaptureSession:
        return self._store.snapshot()

    async def wait_for_pending(self) -> None:
        """Wait for a scheduled re-check or cleanup tail, if any."""
        pending = self._pending
        if pending is not None:
            await pending

    async def close(self) -> None:
        pending = self._pending
        if pending is not None and not pending.done():
            pending.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pending
        await self._gateway.close()

    async def startup(self) -> CaptureSession:
        """
        Restart recovery: session state lives only in memory, so a fresh
        process re-derives the phase from the cluster.
        """
        LOGGER.info("Recovering session state from cluster", extra={"category": "SESSION"})
        return await self.check_status()

    async def check_status(self) -> CaptureSession:
        with correlation_context():
            await self._run_check(owned_by_mutation=False)
        return self.snapshot()

    async def start(self, capture_filter: str, image: str) -> bool:
        if not self._begin_mutation("start capture", {Phase.IDLE}):
            return False
        capture = self._config.capture
        with correlation_context():
            self._store.set_request(capture_filter, image)
            self._store.set_error(None)
            self._store.set_progress("")
            LOGGER.info(
                "Starting capture namespace=%s daemonset=%s image=%s filter=%r",
                capture.namespace,
                capture.daemonset_name,
                image,
                capture_filter,
                extra={"category": "SESSION"},
            )
            try:
                await self._ensure_namespace()
                spec = build_capture_spec(capture_filter, image, capture)
                await self._gateway.create(DAEMONSET, spec.to_manifest(), capture.namespace)
            except asyncio.CancelledError:
                LOGGER.warning("Capture start cancelled", extra={"category": "SESSION"})
                self._store.set_phase(Phase.IDLE)
                self._end_mutation()
                raise
            except Exception as exc:
                start_error = SessionStartError(f"Failed to start capture: {exc}")
                start_error.__cause__ = exc
                LOGGER.error("Capture start failed error=%s", exc, extra={"category": "ERRORS"})
                self._store.set_error(SessionError.from_exception(start_error))
                self._store.set_phase(Phase.IDLE)
                self._end_mutation()
                return False
            LOGGER.info("Capture workload submitted, re-checking status shortly", extra={"category": "WORKLOAD"})
            self._schedule(self._deferred_recheck())
        return True

    async def stop_only(self) -> bool:
        if not self._begin_mutation("stop capture", {Phase.RUNNING}):
            return False
        capture = self._config.capture
        with correlation_context():
            self._store.set_phase(Phase.STOPPING_ONLY)
            self._store.set_error(None)
            try:
                await self._gateway.delete(DAEMONSET, capture.daemonset_name, capture.namespace)
            except NotFoundError:
                LOGGER.info(
                    "Capture workload already absent daemonset=%s",
                    capture.daemonset_name,
                    extra={"category": "WORKLOAD"},
                )
            except asyncio.CancelledError:
                # Deletion may or may not have landed; the next check settles the phase.
                LOGGER.warning("Capture stop cancelled", extra={"category": "SESSION"})
                self._store.set_phase(Phase.RUNNING)
                self._end_mutation()
                raise
            except Exception as exc:
                LOGGER.error("Capture stop failed error=%s", exc, extra={"category": "ERRORS"})
                self._store.set_error(SessionError.from_exception(exc, f"Failed to stop capture: {exc}"))
                self._store.set_phase(Phase.ERROR)
                self._end_mutation()
                return False
            LOGGER.info("Capture workload deleted, re-checking status shortly", extra={"category": "WORKLOAD"})
            self._schedule(self._deferred_recheck())
        return True

    async def stop_and_collect(self, collector_host: Optional[str] = None) -> bool:
        """
        ``collector_host`` is the caller's own address (for the HTTP API, the
        host the request came in on). It is used when no collector host is
        configured.
        """
        if not self._begin_mutation("collect captures", {Phase.RUNNING}):
            return False
        with correlation_context():
            self._store.set_phase(Phase.STOPPING_AND_COLLECTING)
            self._store.set_error(None)
            self._store.set_progress("Submitting collection task")
            task = CollectionTask.from_nodes(self._store.session.nodes)
            LOGGER.info(
                "Collecting captures task_id=%s pods=%s",
                task.task_id,
                [t.pod_name for t in task.targets],
                extra={"category": "SESSION"},
            )
            try:
                collector = self._collector_factory(collector_host)
                outcome = await collector.collect(task, on_progress=self._store.set_progress)
            except asyncio.CancelledError:
                LOGGER.warning(
                    "Collection cancelled task_id=%s, capture workload left running",
                    task.task_id,
                    extra={"category": "COLLECTION"},
                )
                self._store.set_progress("")
                self._store.set_phase(Phase.RUNNING)
                self._end_mutation()
                raise
            except Exception as exc:
                LOGGER.exception("Collection raised unexpectedly", extra={"category": "ERRORS"})
                outcome = CollectionOutcome.failure(CollectionConnectionFailed.kind, str(exc) or type(exc).__name__)

            if not outcome.ok:
                # The capture workload is left running so the user can retry or stop.
                self._store.set_error(
                    SessionError(
                        kind=outcome.failure_kind or CollectionConnectionFailed.kind,
                        message=outcome.failure_reason or "Collection failed",
                    )
                )
                self._store.set_phase(Phase.RUNNING)
                self._end_mutation()
                return False

            download = artifact_download(outcome.artifact_url or "")
            self._store.set_artifact(download)
            self._store.set_progress(f"Capture bundle ready: {download.filename}")
            self._deliver(download)
            self._schedule(self._finish_collection())
        return True

    def _begin_mutation(self, operation: str, allowed: Set[Phase]) -> bool:
        phase = self._store.session.phase
        if self._mutation_in_flight:
            reason = f"Cannot {operation}: another operation is still in progress"
        elif phase not in allowed:
            reason = f"Cannot {operation} while the session is {phase.value}"
        else:
            self._mutation_in_flight = True
            self._store.begin_mutation()
            self._refresh_busy()
            return True
        LOGGER.warning(reason, extra={"category": "SESSION"})
        self._store.set_error(SessionError.from_exception(SessionBusyError(reason)))
        return False

    def _end_mutation(self) -> None:
        self._mutation_in_flight = False
        self._refresh_busy()

    def _refresh_busy(self) -> None:
        self._store.set_busy(self._mutation_in_flight or self._checks_in_flight > 0)

    def _schedule(self, coro: Awaitable[None]) -> None:
        self._pending = asyncio.ensure_future(coro)

    def _default_collector(self, caller_host: Optional[str] = None) -> CollectionProtocolClient:
        return CollectionProtocolClient.from_config(
            self._config.collector,
            self._config.orchestration.api_server,
            caller_host=caller_host,
        )

    def _deliver(self, download: ArtifactDownload) -> None:
        if self._on_artifact is None:
            return
        try:
            self._on_artifact(download)
        except Exception:
            LOGGER.exception("Artifact handler failed url=%s", download.url, extra={"category": "ERRORS"})

    async def _ensure_namespace(self) -> None:
        namespace = self._config.capture.namespace
        try:
            await self._gateway.get(NAMESPACE, namespace)
            return
        except NotFoundError:
            LOGGER.info("Namespace %s not found, creating it", namespace, extra={"category": "ORCHESTRATION"})
        # Any other lookup failure propagates untouched: creation is only attempted on a clear 404.
        body = {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": namespace}}
        try:
            await self._gateway.create(NAMESPACE, body)
        except Exception as exc:
            raise NamespaceCreationFailed(f"Failed to create namespace {namespace}: {exc}") from exc

    async def _deferred_recheck(self) -> None:
        try:
            # The API's list view may lag a just-applied change.
            await self._sleep(self._config.timing.recheck_delay_seconds)
            await self._run_check(owned_by_mutation=True)
        finally:
            self._end_mutation()

    async def _finish_collection(self) -> None:
        degraded: Optional[SessionError] = None
        try:
            degraded = await self._remove_capture_workload()
            cleanup_error = await self._run_cleanup_workload()
            degraded = cleanup_error or degraded
            await self._run_check(owned_by_mutation=True)
            if degraded is not None:
                # The artifact was obtained; cleanup problems are reported, not fatal.
                self._store.set_error(degraded)
        finally:
            self._end_mutation()

    async def _remove_capture_workload(self) -> Optional[SessionError]:
        capture = self._config.capture
        try:
            await self._gateway.delete(DAEMONSET, capture.daemonset_name, capture.namespace)
        except NotFoundError:
            return None
        except Exception as exc:
            LOGGER.error("Capture workload removal failed error=%s", exc, extra={"category": "CLEANUP"})
            return SessionError.from_exception(CleanupFailed(f"Failed to remove capture workload: {exc}"))
        return None

    async def _run_cleanup_workload(self) -> Optional[SessionError]:
        capture = self._config.capture
        timing = self._config.timing
        spec = build_cleanup_spec(
            self._store.session.image or capture.default_image,
            capture,
            linger_seconds=timing.cleanup_self_terminate_seconds,
        )
        self._store.set_progress("Removing residual capture files from nodes")
        LOGGER.info("Submitting cleanup workload daemonset=%s", spec.name, extra={"category": "CLEANUP"})
        try:
            await self._gateway.create(DAEMONSET, spec.to_manifest(), spec.namespace)
        except Exception as exc:
            LOGGER.error("Cleanup workload submission failed error=%s", exc, extra={"category": "CLEANUP"})
            return SessionError.from_exception(CleanupFailed(f"Failed to submit cleanup workload: {exc}"))

        await self._sleep(timing.cleanup_wait_seconds)

        try:
            await self._gateway.delete(DAEMONSET, spec.name, spec.namespace)
        except NotFoundError:
            pass
        except Exception as exc:
            LOGGER.error("Cleanup workload deletion failed error=%s", exc, extra={"category": "CLEANUP"})
            return SessionError.from_exception(CleanupFailed(f"Failed to delete cleanup workload: {exc}"))
        self._store.set_progress("Capture files collected and nodes cleaned up")
        LOGGER.info("Cleanup workload finished daemonset=%s", spec.name, extra={"category": "CLEANUP"})
        return None

    async def _run_check(self, *, owned_by_mutation: bool) -> None:
        seq = self._store.begin_check()
        self._checks_in_flight += 1
        self._refresh_busy()
        try:
            result = await self._observe()
        except Exception as exc:
            LOGGER.exception("Status check crashed", extra={"category": "ERRORS"})
            result = StatusResult(
                phase=Phase.ERROR,
                nodes=list(self._store.session.nodes),
                error=SessionError.from_exception(exc, f"Status check failed: {exc}"),
            )
        finally:
            self._checks_in_flight -= 1

        phase: Optional[Phase] = result.phase
        if (
            not owned_by_mutation
            and self._mutation_in_flight
            and self._store.session.phase in TRANSITIONAL_PHASES
        ):
            phase = None
        applied = self._store.apply_check(seq, phase=phase, nodes=result.nodes, error=result.error)
        if applied and result.image is not None:
            self._store.set_request(result.capture_filter or "", result.image)
        self._refresh_busy()

    async def _observe(self) -> StatusResult:
        capture = self._config.capture
        timing = self._config.timing
        attempts = timing.status_retry_attempts
        last_exc: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                daemonset = await self._gateway.get(DAEMONSET, capture.daemonset_name, capture.namespace)
                pods = await self._gateway.list(POD, capture.namespace, capture.label_selector)
            except NotFoundError:
                LOGGER.info("Capture workload not deployed", extra={"category": "SESSION"})
                return StatusResult(phase=Phase.IDLE)
            except Exception as exc:
                last_exc = exc
                LOGGER.warning(
                    "Status check attempt %s/%s failed error=%s",
                    attempt,
                    attempts,
                    exc,
                    extra={"category": "ORCHESTRATION"},
                )
                if attempt < attempts:
                    await self._sleep(timing.status_retry_delay_seconds)
                continue
            nodes = [NodeCaptureStatus.from_pod(pod) for pod in pods]
            capture_filter, image = _request_from_daemonset(daemonset)
            LOGGER.info("Capture workload running pods=%s", len(nodes), extra={"category": "SESSION"})
            return StatusResult(phase=Phase.RUNNING, nodes=nodes, capture_filter=capture_filter, image=image)

        assert last_exc is not None
        LOGGER.error(
            "Status check failed after %s attempts error=%s",
            attempts,
            last_exc,
            extra={"category": "ERRORS"},
        )
        return StatusResult(
            phase=Phase.ERROR,
            nodes=list(self._store.session.nodes),
            error=SessionError.from_exception(last_exc, f"Failed to check capture status: {last_exc}"),
        )
