from __future__ import annotations

from contextlib import contextmanager, nullcontext
import logging
from pathlib import Path
import signal
from typing import Any, Iterator, Optional

import typer
import yaml

from clusterlease.cancel import CancelToken
from clusterlease.config import JobsConfig, Settings, load_jobs_file, load_settings
from clusterlease.errors import ClusterLeaseException, LeaseCancelled
from clusterlease.logging_config import configure_logging
from clusterlease.models import ProvisionRequest
from clusterlease.proc import AdapterCommandError
from clusterlease.provisioner import DcosLaunchProvisioner
from clusterlease.services.lease import LeaseManager, LeasePolicy
from clusterlease.services.locking import named_lock
from clusterlease.services.matrix import run_jobs

logger = logging.getLogger(__name__)
app = typer.Typer(help="Lease ephemeral test clusters from dcos-launch", pretty_exceptions_show_locals=False)

EXIT_CANCELLED = 130


def build_provisioner(settings: Settings, cancel: CancelToken) -> DcosLaunchProvisioner:
    return DcosLaunchProvisioner(workdir=settings.workdir, binary=settings.launch_binary, cancel=cancel)


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override CLUSTERLEASE_LOG_LEVEL."),
    log_file: Optional[Path] = typer.Option(
        None, "--log-file", help="Also write logs to this file. Overrides CLUSTERLEASE_LOG_FILE."
    ),
) -> None:
    settings = _settings()
    configure_logging(level=log_level or settings.log_level, log_file=log_file or settings.log_file)


def _settings() -> Settings:
    try:
        return load_settings()
    except ClusterLeaseException as e:
        _exit_for_domain_error(e)


def _exit_for_domain_error(exc: ClusterLeaseException) -> None:
    logger.warning("CLI command failed with domain error: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _exit_for_command_error(exc: Exception) -> None:
    logger.error("CLI command failed: %s", exc)
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=1)


def _exit_cancelled(exc: LeaseCancelled) -> None:
    typer.echo(f"Error: {exc}", err=True)
    raise typer.Exit(code=EXIT_CANCELLED)


def _echo_yaml(data: Any) -> None:
    typer.echo(yaml.safe_dump(data, sort_keys=False), nl=False)


@contextmanager
def _cancel_on_signals(token: CancelToken) -> Iterator[CancelToken]:
    """Turn SIGINT/SIGTERM into a cancellation request for the duration of the block."""

    def _handler(signum, frame) -> None:
        token.cancel(f"received {signal.Signals(signum).name}")

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield token
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _parse_params(values: list[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint="--param")
        params[key] = value
    return params


def _load_jobs(jobs_file: Path, settings: Settings, name_suffix: str | None) -> JobsConfig:
    try:
        return load_jobs_file(jobs_file, settings=settings, name_suffix=name_suffix)
    except ClusterLeaseException as e:
        _exit_for_domain_error(e)


@app.command("run")
def run(
    jobs_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML jobs file."),
    job: Optional[list[str]] = typer.Option(None, "--job", help="Only run the named job(s)."),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts", min=1),
    destroy_on_failure: bool = typer.Option(
        False, "--destroy-on-failure", help="Destroy clusters even when their task fails."
    ),
    workers: Optional[int] = typer.Option(None, "--workers", min=1),
    name_suffix: Optional[str] = typer.Option(None, "--name-suffix", help="Appended to every cluster name."),
) -> None:
    settings = _settings()
    config = _load_jobs(jobs_file, settings, name_suffix)

    jobs = config.jobs
    if job:
        unknown = sorted(set(job) - {j.name for j in jobs})
        if unknown:
            typer.echo(f"Error: unknown job(s): {', '.join(unknown)}", err=True)
            raise typer.Exit(code=1)
        jobs = [j for j in jobs if j.name in job]

    policy = LeasePolicy(
        max_attempts=max_attempts or config.policy.max_attempts,
        keep_on_task_failure=config.policy.keep_on_task_failure and not destroy_on_failure,
        retry_delay_sec=config.policy.retry_delay_sec,
    )

    with _cancel_on_signals(CancelToken()) as cancel:
        lock = (
            named_lock(config.lock, lock_dir=settings.lock_dir, cancel=cancel)
            if config.lock
            else nullcontext()
        )
        try:
            with lock:
                results = run_jobs(
                    jobs,
                    provisioner_factory=lambda token: build_provisioner(settings, token),
                    policy=policy,
                    cancel=cancel,
                    max_workers=workers or config.max_workers,
                )
        except LeaseCancelled as e:
            _exit_cancelled(e)

    _echo_yaml([result.as_dict() for result in results])
    if any(result.status == "cancelled" for result in results):
        raise typer.Exit(code=EXIT_CANCELLED)
    if not all(result.passed for result in results):
        raise typer.Exit(code=1)


@app.command("create")
def create(
    name: str,
    template_url: str = typer.Option(..., "--template-url"),
    region: str = typer.Option(..., "--region"),
    provider: str = typer.Option("aws", "--provider"),
    param: Optional[list[str]] = typer.Option(None, "--param", help="Template parameter as KEY=VALUE."),
    max_attempts: Optional[int] = typer.Option(None, "--max-attempts", min=1),
) -> None:
    """Create a cluster and leave it running."""
    settings = _settings()
    request = ProvisionRequest(
        name=name,
        template_url=template_url,
        region=region,
        provider=provider,
        parameters=_parse_params(param or []),
    )
    with _cancel_on_signals(CancelToken()) as cancel:
        provisioner = build_provisioner(settings, cancel)
        manager = LeaseManager(
            provisioner=provisioner,
            cancel=cancel,
            policy=LeasePolicy(max_attempts=max_attempts or settings.max_attempts),
        )
        try:
            handle = manager.acquire(request)
        except LeaseCancelled as e:
            _exit_cancelled(e)
        except ClusterLeaseException as e:
            _exit_for_domain_error(e)
        try:
            info = provisioner.describe(handle)
        except (AdapterCommandError, ValueError) as e:
            logger.warning("Cluster %r is running but could not be described (info file: %s)", name, handle.info_path)
            _exit_for_command_error(e)

    _echo_yaml({"info_path": str(handle.info_path), "attempts": manager.last_attempts, **info.summary()})


@app.command("describe")
def describe(name: str) -> None:
    settings = _settings()
    provisioner = build_provisioner(settings, CancelToken())
    handle = provisioner.handle_for_name(name)
    if not handle.info_path.exists():
        typer.echo(f"Error: no cluster named {name!r} under {settings.workdir}", err=True)
        raise typer.Exit(code=1)
    try:
        info = provisioner.describe(handle)
    except (AdapterCommandError, ValueError) as e:
        _exit_for_command_error(e)
    _echo_yaml(info.summary())


@app.command("destroy")
def destroy(name: str) -> None:
    settings = _settings()
    provisioner = build_provisioner(settings, CancelToken())
    handle = provisioner.handle_for_name(name)
    if not handle.info_path.exists():
        typer.echo(f"Error: no cluster named {name!r} under {settings.workdir}", err=True)
        raise typer.Exit(code=1)
    try:
        provisioner.destroy(handle)
    except AdapterCommandError as e:
        _exit_for_command_error(e)
    _echo_yaml({"name": name, "destroyed": True})


@app.command("render-config")
def render_config(
    jobs_file: Path = typer.Argument(..., exists=True, dir_okay=False),
    name_suffix: Optional[str] = typer.Option(None, "--name-suffix"),
) -> None:
    """Print the launch config each job would use, without provisioning anything."""
    settings = _settings()
    config = _load_jobs(jobs_file, settings, name_suffix)
    provisioner = build_provisioner(settings, CancelToken())
    try:
        rendered = {job.name: provisioner.render_config(job.request) for job in config.jobs}
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)
    _echo_yaml(rendered)


if __name__ == "__main__":
    app()
