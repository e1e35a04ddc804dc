from conftest import CAPTURE_DS, FakeCollector
from fastapi.testclient import TestClient

from kubecapture.services.collection_client import CollectionOutcome
from kubecapture.services.session_controller import SessionController
from kubecapture.services.workload_specs import build_capture_spec
from kubecapture.web.app import create_app


def _app(config, gateway, sleeper, collector=None):
    controller = SessionController(
        config,
        gateway,
        collector_factory=(lambda host: collector) if collector is not None else None,
        sleep=sleeper,
    )
    return controller, create_app(controller, default_image="img:default")


def test_startup_recovers_idle_session(config, gateway, sleeper) -> None:
    _, app = _app(config, gateway, sleeper)

    with TestClient(app) as client:
        response = client.get("/api/session")

    assert response.status_code == 200
    assert response.json()["phase"] == "Idle"
    assert response.json()["nodes"] == []
    assert "X-Correlation-Id" in response.headers


def test_start_then_status_reports_running_nodes(config, gateway, sleeper) -> None:
    controller, app = _app(config, gateway, sleeper)

    with TestClient(app) as client:
        started = client.post("/api/session/start", json={"filter": "tcp port 443"})
        client.portal.call(controller.wait_for_pending)
        status = client.get("/api/session")

    assert started.status_code == 200
    assert started.json()["busy"] is True
    body = status.json()
    assert body["phase"] == "Running"
    assert body["image"] == "img:default"
    assert body["filter"] == "tcp port 443"
    assert [n["nodeName"] for n in body["nodes"]] == ["node-a", "node-b"]
    assert gateway.closed is True


def test_rejected_operation_returns_conflict(config, gateway, sleeper) -> None:
    _, app = _app(config, gateway, sleeper)

    with TestClient(app) as client:
        response = client.post("/api/session/stop")

    assert response.status_code == 409
    assert response.json()["error"]["kind"] == "SessionBusy"


def test_collect_failure_returns_bad_gateway(config, gateway, sleeper) -> None:
    gateway.add("DaemonSet", build_capture_spec("udp", "img:tag", config.capture).to_manifest())
    collector = FakeCollector(CollectionOutcome.failure("CollectionServerError", "disk full"))
    _, app = _app(config, gateway, sleeper, collector=collector)

    with TestClient(app) as client:
        response = client.post("/api/session/collect")
        download = client.get("/api/session/download")

    assert response.status_code == 502
    assert response.json()["phase"] == "Running"
    assert response.json()["error"] == {
        "kind": "CollectionServerError",
        "message": "disk full",
        "at": response.json()["error"]["at"],
    }
    assert download.status_code == 404
    assert ("DaemonSet", CAPTURE_DS) in gateway.resources


def test_collect_success_exposes_download(config, gateway, sleeper) -> None:
    gateway.add("DaemonSet", build_capture_spec("udp", "img:tag", config.capture).to_manifest())
    collector = FakeCollector(CollectionOutcome.success("http://collector:8765/dl/abc"))
    controller, app = _app(config, gateway, sleeper, collector=collector)

    with TestClient(app) as client:
        response = client.post("/api/session/collect")
        client.portal.call(controller.wait_for_pending)
        download = client.get("/api/session/download")
        status = client.get("/api/session")

    assert response.status_code == 200
    assert download.json()["url"] == "http://collector:8765/dl/abc"
    assert download.json()["filename"].startswith("capture-")
    assert status.json()["phase"] == "Idle"


def test_start_without_any_image_is_bad_request(config, gateway, sleeper) -> None:
    controller = SessionController(config, gateway, sleep=sleeper)
    app = create_app(controller, default_image="")

    with TestClient(app) as client:
        response = client.post("/api/session/start", json={"filter": "udp"})

    assert response.status_code == 400


def test_manual_check_endpoint(config, gateway, sleeper) -> None:
    _, app = _app(config, gateway, sleeper)

    with TestClient(app) as client:
        gateway.add("DaemonSet", build_capture_spec("", "img:tag", config.capture).to_manifest())
        response = client.post("/api/session/check")

    assert response.status_code == 200
    assert response.json()["phase"] == "Running"


def test_collect_passes_request_host_to_collector(config, gateway, sleeper) -> None:
    gateway.add("DaemonSet", build_capture_spec("udp", "img:tag", config.capture).to_manifest())
    hosts = []

    def factory(host):
        hosts.append(host)
        return FakeCollector(CollectionOutcome.failure("CollectionServerError", "x"))

    controller = SessionController(config, gateway, collector_factory=factory, sleep=sleeper)
    app = create_app(controller, default_image="img:default")

    with TestClient(app, base_url="http://capture-ui.example:8000") as client:
        client.post("/api/session/collect")

    assert hosts == ["capture-ui.example"]
