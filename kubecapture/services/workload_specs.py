from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from kubecapture.config_loader import CaptureConfig

LOGGER = logging.getLogger(__name__)

CAPTURE_MOUNT_PATH = "/captures"
CAPTURE_VOLUME_NAME = "capture-storage"
NODE_NAME_ENV = "NODE_NAME"
CONTROL_PLANE_TAINT_KEYS = (
    "node-role.kubernetes.io/master",
    "node-role.kubernetes.io/control-plane",
)


def artifact_path(mount_path: str = CAPTURE_MOUNT_PATH) -> str:
    """Per-node artifact path, expanded by the container shell from NODE_NAME."""
    return f"{mount_path}/${{{NODE_NAME_ENV}}}.pcap"


def build_capture_script(mount_path: str = CAPTURE_MOUNT_PATH) -> str:
    # The filter never reaches this string: it arrives as "$@" (argv after $0).
    path = artifact_path(mount_path)
    return (
        f'rm -f "{path}" && '
        'echo "Starting tcpdump on all interfaces (any) with filter: $*" && '
        f'exec tcpdump -i any -s0 -w "{path}" "$@"'
    )


def build_cleanup_script(mount_path: str = CAPTURE_MOUNT_PATH, linger_seconds: int = 3) -> str:
    return (
        f"rm -f {mount_path}/*.pcap && "
        f'echo "Removed capture artifacts from {mount_path}" && '
        f"sleep {int(linger_seconds)}"
    )


def _host_path_volume(host_dir: str) -> Dict[str, Any]:
    return {"name": CAPTURE_VOLUME_NAME, "hostPath": {"path": host_dir, "type": "DirectoryOrCreate"}}


def _node_name_env() -> List[Dict[str, Any]]:
    return [{"name": NODE_NAME_ENV, "valueFrom": {"fieldRef": {"fieldPath": "spec.nodeName"}}}]


@dataclass(frozen=True)
class CaptureWorkloadSpec:
    """
    DaemonSet running one tcpdump per node.

    The filter is an opaque, caller-trusted BPF expression. It is not sanitized;
    it is handed to tcpdump as a single argv element rather than spliced into
    the shell script.
    """

    name: str
    namespace: str
    app_label: str
    host_dir: str
    image: str
    capture_filter: str

    @property
    def command(self) -> Tuple[str, ...]:
        return ("/bin/sh", "-c")

    @property
    def args(self) -> Tuple[str, ...]:
        args: Tuple[str, ...] = (build_capture_script(), "tcpdump-capture")
        if self.capture_filter:
            args += (self.capture_filter,)
        return args

    def to_manifest(self) -> Dict[str, Any]:
        labels = {"app": self.app_label}
        return {
            "apiVersion": "apps/v1",
            "kind": "DaemonSet",
            "metadata": {"name": self.name, "namespace": self.namespace, "labels": dict(labels)},
            "spec": {
                "selector": {"matchLabels": dict(labels)},
                "template": {
                    "metadata": {"labels": dict(labels)},
                    "spec": {
                        "hostNetwork": True,
                        "hostPID": True,
                        "tolerations": [
                            {"key": key, "operator": "Exists", "effect": "NoSchedule"}
                            for key in CONTROL_PLANE_TAINT_KEYS
                        ],
                        "volumes": [_host_path_volume(self.host_dir)],
                        "containers": [
                            {
                                "name": "tcpdump-container",
                                "image": self.image,
                                "command": list(self.command),
                                "args": list(self.args),
                                "env": _node_name_env(),
                                "volumeMounts": [{"name": CAPTURE_VOLUME_NAME, "mountPath": CAPTURE_MOUNT_PATH}],
                                "securityContext": {"privileged": True},
                            }
                        ],
                    },
                },
            },
        }


@dataclass(frozen=True)
class CleanupWorkloadSpec:
    """DaemonSet removing residual artifacts on every node, tainted or not."""

    name: str
    namespace: str
    app_label: str
    host_dir: str
    image: str
    linger_seconds: int = 3

    @property
    def command(self) -> Tuple[str, ...]:
        return ("/bin/sh", "-c")

    @property
    def args(self) -> Tuple[str, ...]:
        return (build_cleanup_script(linger_seconds=self.linger_seconds),)

    def to_manifest(self) -> Dict[str, Any]:
        labels = {"app": self.app_label}
        return {
            "apiVersion": "apps/v1",
            "kind": "DaemonSet",
            "metadata": {"name": self.name, "namespace": self.namespace, "labels": dict(labels)},
            "spec": {
                "selector": {"matchLabels": dict(labels)},
                "template": {
                    "metadata": {"labels": dict(labels)},
                    "spec": {
                        "tolerations": [{"operator": "Exists"}],
                        "volumes": [_host_path_volume(self.host_dir)],
                        "containers": [
                            {
                                "name": "cleanup-container",
                                "image": self.image,
                                "command": list(self.command),
                                "args": list(self.args),
                                "volumeMounts": [{"name": CAPTURE_VOLUME_NAME, "mountPath": CAPTURE_MOUNT_PATH}],
                                "securityContext": {"privileged": True},
                            }
                        ],
                    },
                },
            },
        }


def build_capture_spec(capture_filter: str, image: str, capture: CaptureConfig | None = None) -> CaptureWorkloadSpec:
    capture = capture or CaptureConfig()
    spec = CaptureWorkloadSpec(
        name=capture.daemonset_name,
        namespace=capture.namespace,
        app_label=capture.app_label,
        host_dir=capture.host_dir,
        image=image,
        capture_filter=capture_filter,
    )
    LOGGER.debug(
        "Built capture spec name=%s image=%s filter=%r",
        spec.name,
        image,
        capture_filter,
        extra={"category": "WORKLOAD"},
    )
    return spec


def build_cleanup_spec(image: str, capture: CaptureConfig | None = None, linger_seconds: int = 3) -> CleanupWorkloadSpec:
    capture = capture or CaptureConfig()
    return CleanupWorkloadSpec(
        name=capture.cleanup_daemonset_name,
        namespace=capture.namespace,
        app_label=capture.cleanup_label,
        host_dir=capture.host_dir,
        image=image,
        linger_seconds=linger_seconds,
    )
