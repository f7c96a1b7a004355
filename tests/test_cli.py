from pathlib import Path

import pytest

from rig_bridge import cli, constants
from rig_bridge.app import RigBridgeApp
from rig_bridge.backends import RigConfigurationError


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for variable in (
        constants.ENV_BROKER_URL,
        constants.ENV_COMMAND_TOPIC,
        constants.ENV_MOTOR_MAX_POWER,
        constants.ENV_BACKEND,
        constants.ENV_LOG_LEVEL,
    ):
        monkeypatch.delenv(variable, raising=False)


def test_show_config_masks_password(tmp_path: Path, capsys) -> None:
    config_file = tmp_path / "rig-bridge.cfg"
    config_file.write_text(
        "[broker]\nusername = rig\npassword = hunter2\n", encoding="utf-8"
    )

    status = cli.main(["--config", str(config_file), "show-config"])

    output = capsys.readouterr().out
    assert status == 0
    assert "[broker]" in output
    assert "topic = train-command" in output
    assert "password = ********" in output
    assert "hunter2" not in output


def test_invalid_configuration_exits_with_usage_error(tmp_path: Path, capsys) -> None:
    config_file = tmp_path / "rig-bridge.cfg"
    config_file.write_text("[rig]\nmotor_port = B\n", encoding="utf-8")

    status = cli.main(["--config", str(config_file), "start"])

    assert status == 2
    assert "Invalid configuration" in capsys.readouterr().err


def test_start_delegates_to_app(tmp_path: Path, monkeypatch) -> None:
    received = []

    def fake_start(config):
        received.append(config)
        return 1

    monkeypatch.setattr(RigBridgeApp, "start", staticmethod(fake_start))

    status = cli.main(["--config", str(tmp_path / "missing.cfg"), "start"])

    assert status == 1
    assert len(received) == 1
    assert received[0].broker.topic == "train-command"


def test_start_reports_unknown_backend(tmp_path: Path, monkeypatch) -> None:
    def fake_start(config):
        raise RigConfigurationError("Unknown rig backend: 'bluetooth'")

    monkeypatch.setattr(RigBridgeApp, "start", staticmethod(fake_start))

    assert cli.main(["--config", str(tmp_path / "missing.cfg"), "start"]) == 2


def test_command_is_required() -> None:
    with pytest.raises(SystemExit):
        cli.main([])
