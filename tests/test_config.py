from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict

import pytest

from bsrunner.main import build_parser, main
from bsrunner.services.config import DEFAULT_COLLECTOR_PORT, ConfigError, load_config


def _write_config(tmp_path: Path, **overrides: Any) -> Path:
    data: Dict[str, Any] = {
        "bs_username": "alice",
        "bs_password": "secret",
        "bs_key": "tunnel-key",
        "test_file": "/tests/index.html",
        "directory": str(tmp_path),
        "browsers": [
            {"browser": "firefox", "version": "20.0", "os": "win", "os_version": "7"},
            {"browser": "safari", "version": "6.0", "os": "mac"},
        ],
    }
    data.update(overrides)
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


@pytest.mark.unit
def test_load_config_reads_file(tmp_path: Path) -> None:
    config = load_config(_write_config(tmp_path))
    assert config.bs_username == "alice"
    assert config.test_file == "tests/index.html"
    assert config.directory == tmp_path
    assert [spec.label() for spec in config.browsers] == ["firefox 20.0 (win)", "safari 6.0 (mac)"]
    assert config.browsers[0].model_extra == {"os_version": "7"}
    assert config.collector_port == DEFAULT_COLLECTOR_PORT
    assert config.tunnel_jar == "ext/BrowserStackTunnel.jar"


@pytest.mark.unit
def test_cli_values_override_file_values(tmp_path: Path) -> None:
    config = load_config(
        _write_config(tmp_path),
        {"bs_username": "bob", "bs_key": None, "test_file": "", "directory": str(tmp_path / "www")},
    )
    assert config.bs_username == "bob"
    assert config.bs_key == "tunnel-key"
    assert config.test_file == "tests/index.html"
    assert config.directory == tmp_path / "www"


@pytest.mark.unit
def test_missing_value_names_the_key(tmp_path: Path) -> None:
    path = _write_config(tmp_path, bs_password="")
    with pytest.raises(ConfigError, match="bs_password not set in config or cli arguments"):
        load_config(path)


@pytest.mark.unit
def test_empty_browser_list_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="browsers not set"):
        load_config(_write_config(tmp_path, browsers=[]))


@pytest.mark.unit
def test_unreadable_config_files(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "absent.json")
    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(ConfigError, match="not valid JSON"):
        load_config(broken)


@pytest.mark.unit
def test_invalid_browser_entry_is_reported(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="browsers"):
        load_config(_write_config(tmp_path, browsers=[{"browser": "firefox"}]))


@pytest.mark.unit
def test_parser_accepts_short_and_long_flags(tmp_path: Path) -> None:
    args = build_parser().parse_args(
        ["-c", str(tmp_path / "c.json"), "-u", "bob", "-p", "pw", "-k", "key", "-t", "t.html", "-d", "www", "-v"]
    )
    assert args.config == tmp_path / "c.json"
    assert (args.bs_username, args.bs_password, args.bs_key) == ("bob", "pw", "key")
    assert (args.testfile, args.directory, args.verbose) == ("t.html", "www", True)


@pytest.mark.unit
def test_main_exits_with_usage_error_on_missing_key(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = _write_config(tmp_path, bs_key="")
    with pytest.raises(SystemExit) as excinfo:
        main(["--config", str(path)])
    assert excinfo.value.code == 2
    assert "bs_key not set in config or cli arguments" in capsys.readouterr().err
