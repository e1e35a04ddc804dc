from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Optional

import click
import httpx
import uvicorn

from kubecapture.config_loader import AppConfig, load_config
from kubecapture.logging_setup import setup_logging
from kubecapture.services.orchestration_gateway import OrchestrationGateway
from kubecapture.services.session_controller import SessionController
from kubecapture.services.session_state import ArtifactDownload, CaptureSession, Phase

LOGGER = logging.getLogger(__name__)


def build_controller(config: AppConfig) -> SessionController:
    gateway = OrchestrationGateway(config.orchestration)
    return SessionController(config, gateway)


def download_artifact(artifact: ArtifactDownload, download_dir: Path, timeout: float = 60.0) -> Path:
    download_dir.mkdir(parents=True, exist_ok=True)
    target = download_dir / artifact.filename
    LOGGER.info("Downloading capture bundle url=%s target=%s", artifact.url, target, extra={"category": "COLLECTION"})
    with httpx.stream("GET", artifact.url, timeout=timeout, follow_redirects=True) as response:
        response.raise_for_status()
        with target.open("wb") as fh:
            for chunk in response.iter_bytes():
                fh.write(chunk)
    return target


def render_session(session: CaptureSession) -> str:
    lines = [f"Phase: {session.phase.value}{' (busy)' if session.busy else ''}"]
    if session.image:
        lines.append(f"Image: {session.image}")
    if session.phase == Phase.RUNNING:
        lines.append(f"Filter: {session.capture_filter or '<none>'}")
    if session.nodes:
        lines.append(f"{'POD':<40} {'NODE':<30} STATUS")
        for node in session.nodes:
            lines.append(f"{node.pod_name:<40} {node.node_name:<30} {node.runtime_phase}")
    if session.progress:
        lines.append(f"Progress: {session.progress}")
    if session.last_artifact:
        lines.append(f"Download: {session.last_artifact.url} ({session.last_artifact.filename})")
    if session.last_error:
        lines.append(f"Error [{session.last_error.kind}]: {session.last_error.message}")
    return "\n".join(lines)


def _run(config: AppConfig, operation: Callable[[SessionController], Awaitable[bool]]) -> CaptureSession:
    async def _main() -> CaptureSession:
        controller = build_controller(config)
        try:
            await controller.startup()
            await operation(controller)
            await controller.wait_for_pending()
            return controller.snapshot()
        finally:
            await controller.close()

    return asyncio.run(_main())


@click.group()
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=None,
    help="YAML configuration file (default: $KUBECAPTURE_CONFIG or config/kubecapture.yaml).",
)
@click.option(
    "--log-file/--no-log-file",
    default=True,
    show_default=True,
    help="Also write logs under logs/ (otherwise console only).",
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[Path], log_file: bool) -> None:
    """kubecapture commands."""
    setup_logging(log_to_file=log_file)
    try:
        ctx.obj = load_config(config_path)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc


@main.command()
@click.pass_obj
def status(config: AppConfig) -> None:
    """Show the capture workload status."""

    async def _noop(controller: SessionController) -> bool:
        return True

    click.echo(render_session(_run(config, _noop)))


@main.command()
@click.option("--filter", "capture_filter", default=None, help="BPF filter passed verbatim to tcpdump, e.g. 'tcp port 443'.")
@click.option("--image", default=None, help="Container image providing tcpdump.")
@click.pass_obj
def start(config: AppConfig, capture_filter: Optional[str], image: Optional[str]) -> None:
    """Deploy the capture DaemonSet on every node."""
    effective_filter = config.capture.default_filter if capture_filter is None else capture_filter
    effective_image = image or config.capture.default_image
    LOGGER.info("CLI start command image=%s filter=%r", effective_image, effective_filter, extra={"category": "SESSION"})
    session = _run(config, lambda controller: controller.start(effective_filter, effective_image))
    click.echo(render_session(session))
    if session.last_error:
        raise SystemExit(1)


@main.command()
@click.pass_obj
def stop(config: AppConfig) -> None:
    """Remove the capture DaemonSet without collecting files."""
    session = _run(config, lambda controller: controller.stop_only())
    click.echo(render_session(session))
    if session.last_error:
        raise SystemExit(1)


@main.command()
@click.option(
    "--download-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Save the merged capture bundle into this directory.",
)
@click.pass_obj
def collect(config: AppConfig, download_dir: Optional[Path]) -> None:
    """Collect per-node captures into one bundle, then stop and clean up."""
    session = _run(config, lambda controller: controller.stop_and_collect())
    click.echo(render_session(session))
    if session.last_artifact and download_dir is not None:
        try:
            target = download_artifact(session.last_artifact, download_dir)
        except httpx.HTTPError as exc:
            raise click.ClickException(f"Download failed: {exc}") from exc
        click.echo(f"Saved {target}")
    if session.last_error and session.last_artifact is None:
        raise SystemExit(1)


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_obj
def web(config: AppConfig, host: str, port: int) -> None:
    """Start the HTTP API."""
    from kubecapture.web.app import create_app

    LOGGER.info("CLI web command host=%s port=%s", host, port, extra={"category": "CONFIG"})
    app = create_app(build_controller(config), default_image=config.capture.default_image)
    uvicorn.run(app, host=host, port=port, reload=False)


if __name__ == "__main__":
    main()
