import importlib

import pytest
from typer.testing import CliRunner


@pytest.fixture()
def cli_runner(tmp_path, monkeypatch):
    monkeypatch.setenv("CLUSTERLEASE_WORKDIR", str(tmp_path / "work"))
    monkeypatch.setenv("CLUSTERLEASE_LOCK_DIR", str(tmp_path / "locks"))
    for name in (
        "CLUSTERLEASE_MAX_ATTEMPTS",
        "CLUSTERLEASE_KEEP_ON_FAILURE",
        "CLUSTERLEASE_LOG_LEVEL",
        "CLUSTERLEASE_LOG_FILE",
        "DCOS_LAUNCH_BIN",
    ):
        monkeypatch.delenv(name, raising=False)

    import clusterlease.cli as cli

    importlib.reload(cli)

    return CliRunner(), cli
