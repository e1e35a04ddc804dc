from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/kubecapture.yaml")
DEFAULT_IMAGE = "nicolaka/netshoot:latest"
DEFAULT_COLLECTOR_PORT = 8765


class OrchestrationConfig(BaseModel):
    api_server: str = "https://kubernetes.default.svc"
    token: Optional[str] = None
    token_file: Optional[Path] = None
    verify_tls: bool = True
    ca_file: Optional[Path] = None
    request_timeout_seconds: float = 10.0

    @field_validator("api_server")
    @classmethod
    def validate_api_server(cls, value: str) -> str:
        text = (value or "").strip().rstrip("/")
        if not text.startswith(("http://", "https://")):
            raise ValueError("api_server must be an http(s) URL")
        return text

    def bearer_token(self) -> Optional[str]:
        if self.token:
            return self.token.strip()
        if self.token_file is not None and self.token_file.exists():
            return self.token_file.read_text(encoding="utf-8").strip() or None
        return None


class CaptureConfig(BaseModel):
    namespace: str = "kubexm-capture"
    daemonset_name: str = "tcpdump-capture-ds"
    cleanup_daemonset_name: str = "tcpdump-cleanup-ds"
    app_label: str = "tcpdump-capture"
    cleanup_label: str = "tcpdump-cleanup"
    host_dir: str = "/tmp/captures"
    default_image: str = DEFAULT_IMAGE
    default_filter: str = ""

    @property
    def label_selector(self) -> str:
        return f"app={self.app_label}"


class CollectorConfig(BaseModel):
    """Backend collection service address. No discovery: host and port are fixed settings."""

    host: Optional[str] = None
    port: int = DEFAULT_COLLECTOR_PORT
    path: str = "/ws"
    scheme: str = "ws"

    @field_validator("scheme")
    @classmethod
    def validate_scheme(cls, value: str) -> str:
        if value not in {"ws", "wss"}:
            raise ValueError("collector scheme must be ws or wss")
        return value

    @field_validator("path")
    @classmethod
    def normalize_path(cls, value: str) -> str:
        text = (value or "").strip()
        return text if text.startswith("/") else f"/{text}"

    def resolve_host(self, api_server: str, caller_host: Optional[str] = None) -> str:
        # Configured host, then the caller's own host, then the API server host.
        if self.host:
            return self.host
        if caller_host:
            return caller_host
        return urlsplit(api_server).hostname or "localhost"


class TimingConfig(BaseModel):
    status_retry_attempts: int = Field(default=3, ge=1)
    status_retry_delay_seconds: float = Field(default=2.0, ge=0)
    recheck_delay_seconds: float = Field(default=2.0, ge=0)
    cleanup_wait_seconds: float = Field(default=5.0, ge=0)
    cleanup_self_terminate_seconds: int = Field(default=3, ge=0)


class AppConfig(BaseModel):
    orchestration: OrchestrationConfig = Field(default_factory=OrchestrationConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    collector: CollectorConfig = Field(default_factory=CollectorConfig)
    timing: TimingConfig = Field(default_factory=TimingConfig)

    @model_validator(mode="before")
    @classmethod
    def apply_env_overrides(cls, values: object) -> object:
        if not isinstance(values, dict):
            return values
        data = dict(values)
        api_server = os.environ.get("KUBECAPTURE_API_SERVER", "").strip()
        token = os.environ.get("KUBECAPTURE_TOKEN", "").strip()
        if api_server or token:
            orchestration = dict(data.get("orchestration") or {})
            if api_server:
                orchestration["api_server"] = api_server
            if token:
                orchestration["token"] = token
            data["orchestration"] = orchestration
        collector_host = os.environ.get("KUBECAPTURE_COLLECTOR_HOST", "").strip()
        collector_port = os.environ.get("KUBECAPTURE_COLLECTOR_PORT", "").strip()
        if collector_host or collector_port:
            collector = dict(data.get("collector") or {})
            if collector_host:
                collector["host"] = collector_host
            if collector_port:
                collector["port"] = collector_port
            data["collector"] = collector
        return data


def default_config_path() -> Path:
    return Path(os.environ.get("KUBECAPTURE_CONFIG", str(DEFAULT_CONFIG_PATH))).expanduser()


def load_config(config_path: Optional[Path] = None) -> AppConfig:
    path = config_path or default_config_path()
    LOGGER.info("Loading config path=%s", path, extra={"category": "CONFIG"})
    if not path.exists():
        LOGGER.warning("Config file not found path=%s, using defaults", path, extra={"category": "CONFIG"})
        parsed: object = {}
    else:
        try:
            parsed = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid YAML in config file: {exc}") from exc

    if not isinstance(parsed, dict):
        raise ValueError("Configuration root must be a YAML object")

    try:
        cfg = AppConfig.model_validate(parsed)
    except ValidationError as exc:
        LOGGER.error("Config validation failed error=%s", exc, extra={"category": "ERRORS"})
        raise ValueError(f"Invalid configuration: {exc}") from exc
    LOGGER.info(
        "Config loaded api_server=%s namespace=%s collector_port=%s",
        cfg.orchestration.api_server,
        cfg.capture.namespace,
        cfg.collector.port,
        extra={"category": "CONFIG"},
    )
    return cfg
