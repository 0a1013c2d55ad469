from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
import tempfile
from typing import Any

import yaml
from jsonschema import ValidationError
from jsonschema import validate as jsonschema_validate

from clusterlease.errors import ConfigException
from clusterlease.models import ProvisionRequest
from clusterlease.services.lease import DEFAULT_MAX_ATTEMPTS, LeasePolicy
from clusterlease.services.matrix import LeaseJob

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}

_NAME_PATTERN = "^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"

_JOB_FIELDS = {
    "template_url": {"type": "string", "minLength": 1},
    "region": {"type": "string", "minLength": 1},
    "provider": {"type": "string", "minLength": 1},
    "parameters": {"type": "object"},
    "command": {"type": "array", "items": {"type": "string"}, "minItems": 1},
    "env": {"type": "object", "additionalProperties": {"type": "string"}},
}

JOBS_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "lock": {"type": "string", "pattern": "^[A-Za-z0-9_.-]+$"},
        "max_workers": {"type": "integer", "minimum": 1},
        "name_suffix": {"type": "string"},
        "policy": {
            "type": "object",
            "properties": {
                "max_attempts": {"type": "integer", "minimum": 1},
                "keep_on_task_failure": {"type": "boolean"},
                "retry_delay_sec": {"type": "number", "minimum": 0},
            },
            "additionalProperties": False,
        },
        "defaults": {
            "type": "object",
            "properties": _JOB_FIELDS,
            "additionalProperties": False,
        },
        "jobs": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "properties": {"name": {"type": "string", "pattern": _NAME_PATTERN}, **_JOB_FIELDS},
                "required": ["name"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["jobs"],
    "additionalProperties": False,
}


@dataclass(frozen=True)
class Settings:
    log_level: str = "INFO"
    log_file: Path | None = None
    workdir: Path = Path(".clusterlease")
    lock_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "clusterlease-locks")
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    keep_on_failure: bool = True
    launch_binary: str = "dcos-launch"


@dataclass(frozen=True)
class JobsConfig:
    jobs: list[LeaseJob]
    policy: LeasePolicy
    lock: str | None = None
    max_workers: int | None = None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigException(f"{name} must be a boolean, got {raw!r}")


def _env_int(name: str, default: int, *, minimum: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigException(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigException(f"{name} must be >= {minimum}, got {value}")
    return value


def load_settings() -> Settings:
    """Read settings from CLUSTERLEASE_* environment variables."""
    defaults = Settings()
    lock_dir = os.getenv("CLUSTERLEASE_LOCK_DIR")
    log_file = os.getenv("CLUSTERLEASE_LOG_FILE")
    return Settings(
        log_level=os.getenv("CLUSTERLEASE_LOG_LEVEL", defaults.log_level),
        log_file=Path(log_file) if log_file else defaults.log_file,
        workdir=Path(os.getenv("CLUSTERLEASE_WORKDIR", str(defaults.workdir))),
        lock_dir=Path(lock_dir) if lock_dir else defaults.lock_dir,
        max_attempts=_env_int("CLUSTERLEASE_MAX_ATTEMPTS", defaults.max_attempts, minimum=1),
        keep_on_failure=_env_bool("CLUSTERLEASE_KEEP_ON_FAILURE", defaults.keep_on_failure),
        launch_binary=os.getenv("DCOS_LAUNCH_BIN", defaults.launch_binary),
    )


def deep_merge(base: Any, override: Any) -> Any:
    """Deep-merge two YAML-like values, recursively merging mapping keys."""
    if isinstance(base, dict) and isinstance(override, dict):
        merged: dict[str, Any] = {k: deepcopy(v) for k, v in base.items()}
        for key, value in override.items():
            if key in merged:
                merged[key] = deep_merge(merged[key], value)
            else:
                merged[key] = deepcopy(value)
        return merged
    return deepcopy(override)


def parse_jobs_document(
    document: Any,
    *,
    settings: Settings,
    name_suffix: str | None = None,
) -> JobsConfig:
    if not isinstance(document, dict):
        raise ConfigException("Jobs file must contain a mapping")
    try:
        jsonschema_validate(instance=document, schema=JOBS_FILE_SCHEMA)
    except ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path) or "<root>"
        raise ConfigException(f"Jobs file is invalid at {location}: {exc.message}") from exc

    suffix = name_suffix if name_suffix is not None else document.get("name_suffix")
    defaults = document.get("defaults", {})
    jobs: list[LeaseJob] = []
    seen: set[str] = set()
    for entry in document["jobs"]:
        merged = deep_merge(defaults, entry)
        name = merged["name"]
        if name in seen:
            raise ConfigException(f"Duplicate job name {name!r}")
        seen.add(name)
        for required in ("template_url", "region", "command"):
            if not merged.get(required):
                raise ConfigException(f"Job {name!r} is missing {required!r}")
        cluster_name = f"{name}-{suffix}" if suffix else name
        try:
            request = ProvisionRequest(
                name=cluster_name,
                template_url=merged["template_url"],
                region=merged["region"],
                provider=merged.get("provider", "aws"),
                parameters=merged.get("parameters", {}),
            )
        except ValueError as exc:
            raise ConfigException(f"Job {name!r} is invalid: {exc}") from exc
        jobs.append(
            LeaseJob(
                name=name,
                request=request,
                command=list(merged["command"]),
                env=dict(merged.get("env", {})),
            )
        )

    raw_policy = document.get("policy", {})
    policy = LeasePolicy(
        max_attempts=raw_policy.get("max_attempts", settings.max_attempts),
        keep_on_task_failure=raw_policy.get("keep_on_task_failure", settings.keep_on_failure),
        retry_delay_sec=float(raw_policy.get("retry_delay_sec", 0.0)),
    )
    return JobsConfig(
        jobs=jobs,
        policy=policy,
        lock=document.get("lock"),
        max_workers=document.get("max_workers"),
    )


def load_jobs_file(path: Path, *, settings: Settings, name_suffix: str | None = None) -> JobsConfig:
    try:
        content = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigException(f"Unable to read jobs file {path}: {exc}") from exc
    try:
        document = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise ConfigException(f"Invalid YAML in jobs file {path}: {exc}") from exc
    return parse_jobs_document(document, settings=settings, name_suffix=name_suffix)
