from __future__ import annotations

import logging
import ssl
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import httpx

from kubecapture.config_loader import OrchestrationConfig
from kubecapture.errors import NotFoundError, OrchestrationError, TransientAPIError

LOGGER = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = {408, 429, 500, 502, 503, 504}


@dataclass(frozen=True)
class ResourceKind:
    name: str
    api_prefix: str
    plural: str
    namespaced: bool = True

    def collection_path(self, namespace: Optional[str] = None) -> str:
        if self.namespaced:
            if not namespace:
                raise ValueError(f"{self.name} is namespaced, a namespace is required")
            return f"{self.api_prefix}/namespaces/{namespace}/{self.plural}"
        return f"{self.api_prefix}/{self.plural}"

    def item_path(self, name: str, namespace: Optional[str] = None) -> str:
        return f"{self.collection_path(namespace)}/{name}"


NAMESPACE = ResourceKind("Namespace", "/api/v1", "namespaces", namespaced=False)
DAEMONSET = ResourceKind("DaemonSet", "/apis/apps/v1", "daemonsets")
POD = ResourceKind("Pod", "/api/v1", "pods")


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    text = (response.text or "").strip()
    return text[:500] or response.reason_phrase or f"HTTP {response.status_code}"


class OrchestrationGateway:
    """
    Thin async adapter over the Kubernetes REST API.

    Failures are raised as NotFoundError (404), TransientAPIError (network,
    timeouts, 408/429/5xx) or OrchestrationError (any other rejection).
    """

    def __init__(self, config: OrchestrationConfig, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self._config = config
        headers = {"Accept": "application/json"}
        token = config.bearer_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        verify: Union[bool, ssl.SSLContext] = config.verify_tls
        if config.verify_tls and config.ca_file is not None and config.ca_file.exists():
            verify = ssl.create_default_context(cafile=str(config.ca_file))
        self._client = httpx.AsyncClient(
            base_url=config.api_server,
            headers=headers,
            timeout=config.request_timeout_seconds,
            verify=verify,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def get(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("GET", kind.item_path(name, namespace))

    async def create(self, kind: ResourceKind, body: Dict[str, Any], namespace: Optional[str] = None) -> Dict[str, Any]:
        return await self._request("POST", kind.collection_path(namespace), json=body)

    async def delete(self, kind: ResourceKind, name: str, namespace: Optional[str] = None) -> Dict[str, Any]:
        return await self._request(
            "DELETE",
            kind.item_path(name, namespace),
            json={"kind": "DeleteOptions", "apiVersion": "v1", "propagationPolicy": "Background"},
        )

    async def list(self, kind: ResourceKind, namespace: Optional[str], label_selector: str) -> List[Dict[str, Any]]:
        # Cache-busted so a just-changed workload is not served from an intermediate cache.
        payload = await self._request(
            "GET",
            kind.collection_path(namespace),
            params={"labelSelector": label_selector, "_": str(time.time_ns())},
            headers={"Cache-Control": "no-cache", "Pragma": "no-cache"},
        )
        items = payload.get("items") or []
        return [item for item in items if isinstance(item, dict)]

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        start_ts = time.perf_counter()
        try:
            response = await self._client.request(method, path, json=json, params=params, headers=headers)
        except httpx.TransportError as exc:
            LOGGER.warning(
                "Kubernetes API unreachable method=%s path=%s error=%s",
                method,
                path,
                exc,
                extra={"category": "ORCHESTRATION"},
            )
            raise TransientAPIError(f"{method} {path} failed: {exc}") from exc
        elapsed_ms = int((time.perf_counter() - start_ts) * 1000)
        LOGGER.debug(
            "Kubernetes API %s %s status=%s duration_ms=%s",
            method,
            path,
            response.status_code,
            elapsed_ms,
            extra={"category": "ORCHESTRATION"},
        )
        if response.status_code == 404:
            raise NotFoundError(f"{method} {path}: not found", status_code=404)
        if response.status_code in TRANSIENT_STATUS_CODES:
            raise TransientAPIError(
                f"{method} {path} failed (HTTP {response.status_code}): {_error_message(response)}",
                status_code=response.status_code,
            )
        if response.is_error:
            raise OrchestrationError(
                f"{method} {path} failed (HTTP {response.status_code}): {_error_message(response)}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise OrchestrationError(f"{method} {path} returned invalid JSON", status_code=response.status_code) from exc
        return payload if isinstance(payload, dict) else {}
