from pathlib import Path

import pytest

from espfly_link.config import load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    config = load_config(tmp_path / "missing.cfg")

    assert config.link.remote_host == "192.168.43.42"
    assert config.link.remote_port == 2390
    assert config.link.local_port == 2399
    assert config.link.control_hz == 50.0
    assert config.bridge.enabled is False
    assert config.logging.level == "INFO"
    assert config.logging.path is None


def test_load_config_reads_overrides(tmp_path: Path) -> None:
    path = tmp_path / "espfly.cfg"
    path.write_text(
        "[link]\n"
        "remote_host = 10.0.0.7\n"
        "remote_port = 5000\n"
        "control_hz = 25\n"
        "\n"
        "[bridge]\n"
        "enabled = true\n"
        "port = 9001\n"
        "\n"
        "[logging]\n"
        "level = debug\n"
        f"path = {tmp_path / 'logs' / 'link.log'}\n",
        encoding="utf-8",
    )

    config = load_config(path)

    assert config.link.remote_host == "10.0.0.7"
    assert config.link.remote_port == 5000
    assert config.link.local_port == 2399
    assert config.link.control_hz == 25.0
    assert config.bridge.enabled is True
    assert config.bridge.port == 9001
    assert config.logging.level == "debug"
    assert config.logging.path == tmp_path / "logs" / "link.log"
    assert config.path == path


def test_load_config_rejects_non_positive_rate(tmp_path: Path) -> None:
    path = tmp_path / "bad.cfg"
    path.write_text("[link]\ncontrol_hz = 0\n", encoding="utf-8")

    with pytest.raises(ValueError, match="control_hz"):
        load_config(path)
