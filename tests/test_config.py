from __future__ import annotations

from pathlib import Path

import pytest

from rcspota.core.config import build_config, default_config_path, load_config, normalize_uuid
from rcspota.core.errors import ConfigLoadError, ConfigValidationError
from rcspota.core.model import OtaConfig


def _write_config(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_defaults_when_no_user_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    loaded = load_config()
    assert loaded.source is None
    assert loaded.config == OtaConfig()


def test_user_config_from_xdg_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    path = _write_config(
        tmp_path / "cfg" / "rcspota" / "config.yaml",
        """
command_timeout_s: 5
max_retries: 4
transport:
  service_uuid: AE00
  write_with_response: true
""",
    )

    assert default_config_path() == path
    loaded = load_config()
    assert loaded.source == path
    assert loaded.config.command_timeout_s == 5.0
    assert loaded.config.max_retries == 4
    assert loaded.config.reconnect_timeout_s == OtaConfig().reconnect_timeout_s
    assert loaded.config.transport.service_uuid == "0000ae00-0000-1000-8000-00805f9b34fb"
    assert loaded.config.transport.write_with_response is True


def test_explicit_missing_path_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError):
        load_config(tmp_path / "nope.yaml")


def test_empty_file_gives_defaults(tmp_path: Path) -> None:
    path = _write_config(tmp_path / "empty.yaml", "")
    loaded = load_config(path)
    assert loaded.source == path
    assert loaded.config == OtaConfig()


def test_duplicate_keys_rejected(tmp_path: Path) -> None:
    path = _write_config(tmp_path / "dup.yaml", "max_retries: 2\nmax_retries: 3\n")
    with pytest.raises(ConfigValidationError, match="Duplicate key 'max_retries'"):
        load_config(path)


def test_non_mapping_root_rejected(tmp_path: Path) -> None:
    path = _write_config(tmp_path / "list.yaml", "- 1\n- 2\n")
    with pytest.raises(ConfigValidationError):
        load_config(path)


def test_unknown_key_fails_schema() -> None:
    with pytest.raises(ConfigValidationError, match="Schema validation failed"):
        build_config({"command_timeout": 5})


def test_out_of_range_value_names_the_field() -> None:
    with pytest.raises(ConfigValidationError, match=r"\(transfer_block_size\)"):
        build_config({"transfer_block_size": 5})


def test_offline_timeout_must_be_shorter_than_reconnect() -> None:
    with pytest.raises(ConfigValidationError, match="offline_timeout_s"):
        build_config({"offline_timeout_s": 30, "reconnect_timeout_s": 30})


def test_write_with_response_rejects_other_strings() -> None:
    with pytest.raises(ConfigValidationError, match="write_with_response"):
        build_config({"transport": {"write_with_response": "yes"}})


def test_normalize_uuid_forms() -> None:
    assert normalize_uuid("AE01", context="x") == "0000ae01-0000-1000-8000-00805f9b34fb"
    assert normalize_uuid("0000AE02", context="x") == "0000ae02-0000-1000-8000-00805f9b34fb"
    full = "C2E6FD00-E966-1000-8000-BEF9C223DF6A"
    assert normalize_uuid(full, context="x") == full.lower()
    with pytest.raises(ConfigValidationError):
        normalize_uuid("ae0", context="x")
