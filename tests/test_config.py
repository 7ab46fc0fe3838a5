"""
Tests for settings resolution, persisted overrides and data directory preparation.
"""

import json
import logging
from pathlib import Path

import pytest

from node_manager import settings
from node_manager.local.config import MergedSettings
from node_manager.local.supervisor.config_utils import (
    check_configuration,
    ensure_bitcoin_conf,
    ensure_data_dirs,
)
from node_manager.log import setup as log_setup


def test_root_dir_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(settings.ROOT_ENV_VAR, str(tmp_path))
    assert settings._resolve_root_dir() == tmp_path


def test_root_dir_ignores_missing_directory(tmp_path, monkeypatch):
    monkeypatch.setenv(settings.ROOT_ENV_VAR, str(tmp_path / "unplugged-ssd"))
    assert settings._resolve_root_dir() != tmp_path / "unplugged-ssd"


def test_overrides_apply_only_modifiable_settings(tmp_path, caplog):
    """Unknown keys, locked keys and non-path values are each reported; the rest still applies"""
    overrides = tmp_path / "config.json"
    overrides.write_text(json.dumps({
        "BINARIES_DIR": "/Volumes/Node/Binaries",
        "RPC_TIMEOUT": 99,
        "PRUNE_MB": 550,
        "ELECTRS_DATA_DIR": 42,
    }))

    with caplog.at_level(logging.WARNING, logger="node_manager.local.config"):
        cfg = MergedSettings(overrides_path=overrides)

    assert cfg.BINARIES_DIR == Path("/Volumes/Node/Binaries")
    assert cfg.RPC_TIMEOUT == settings.RPC_TIMEOUT
    assert not hasattr(cfg, "PRUNE_MB")
    assert cfg.ELECTRS_DATA_DIR == settings.ELECTRS_DATA_DIR
    assert cfg.overrides == {"BINARIES_DIR": Path("/Volumes/Node/Binaries")}

    messages = [record.getMessage() for record in caplog.records]
    assert "Attempted to override non-modifiable setting 'RPC_TIMEOUT'. Ignoring." in messages
    assert "Override setting 'PRUNE_MB' not found in default settings. Ignoring." in messages
    assert any("'ELECTRS_DATA_DIR' is not a directory path" in message for message in messages)


@pytest.mark.parametrize("content", ["{not json", "[1, 2, 3]"])
def test_malformed_overrides_are_ignored(tmp_path, content):
    overrides = tmp_path / "config.json"
    overrides.write_text(content)

    cfg = MergedSettings(overrides_path=overrides)

    assert cfg.BINARIES_DIR == settings.BINARIES_DIR


def test_update_setting_persists(tmp_path):
    overrides = tmp_path / "nested" / "config.json"
    cfg = MergedSettings(overrides_path=overrides)

    cfg.update_setting("ELECTRS_DATA_DIR", str(tmp_path / "electrs-db"))

    assert cfg.ELECTRS_DATA_DIR == tmp_path / "electrs-db"
    saved = json.loads(overrides.read_text())
    assert saved["ELECTRS_DATA_DIR"] == str(tmp_path / "electrs-db")
    assert set(saved) == {"ELECTRS_DATA_DIR"}
    assert not overrides.with_suffix(".tmp").exists()
    assert MergedSettings(overrides_path=overrides).ELECTRS_DATA_DIR == tmp_path / "electrs-db"


def test_update_setting_rejects_other_keys(tmp_path):
    cfg = MergedSettings(overrides_path=tmp_path / "config.json")
    with pytest.raises(KeyError):
        cfg.update_setting("RPC_HOST", "0.0.0.0")


def test_untouched_directories_follow_the_defaults(tmp_path):
    overrides = tmp_path / "config.json"
    MergedSettings(overrides_path=overrides).update_setting("BINARIES_DIR", "~/node-bin")

    cfg = MergedSettings(overrides_path=overrides)

    assert cfg.BINARIES_DIR == Path.home() / "node-bin"
    assert cfg.BITCOIN_DATA_DIR == settings.BITCOIN_DATA_DIR
    assert "BITCOIN_DATA_DIR" not in json.loads(overrides.read_text())


def test_reset_setting_restores_default_and_removes_file(tmp_path):
    overrides = tmp_path / "config.json"
    cfg = MergedSettings(overrides_path=overrides)
    cfg.update_setting("BITCOIN_DATA_DIR", str(tmp_path / "chain"))

    assert cfg.reset_setting("BITCOIN_DATA_DIR") == settings.BITCOIN_DATA_DIR

    assert cfg.BITCOIN_DATA_DIR == settings.BITCOIN_DATA_DIR
    assert cfg.overrides == {}
    assert not overrides.exists()


def test_update_setting_rejects_empty_path(tmp_path):
    cfg = MergedSettings(overrides_path=tmp_path / "config.json")
    with pytest.raises(ValueError):
        cfg.update_setting("BINARIES_DIR", "  ")
    assert cfg.BINARIES_DIR == settings.BINARIES_DIR
    with pytest.raises(KeyError):
        cfg.reset_setting("RPC_HOST")


def test_ensure_bitcoin_conf_writes_once(config):
    assert ensure_bitcoin_conf(config) is True
    conf = (config.BITCOIN_DATA_DIR / "bitcoin.conf").read_text()
    assert "server=1" in conf
    assert f"rpcport={config.RPC_DEFAULT_PORT}" in conf

    (config.BITCOIN_DATA_DIR / "bitcoin.conf").write_text("server=1\nrpcuser=me\n")
    assert ensure_bitcoin_conf(config) is False
    assert "rpcuser=me" in (config.BITCOIN_DATA_DIR / "bitcoin.conf").read_text()


def test_ensure_data_dirs(config):
    ensure_data_dirs(config)
    assert config.BITCOIN_DATA_DIR.is_dir()
    assert config.ELECTRS_DATA_DIR.is_dir()


def test_check_configuration(config, write_stub):
    assert check_configuration(config) is False
    write_stub("bitcoind", "exit 0")
    write_stub("electrs", "exit 0")
    assert check_configuration(config) is True


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_setup_logging_writes_file_without_node_output(tmp_path, restore_root_logger):
    log_file = tmp_path / "logs" / "node_manager.log"
    log_setup.setup_logging(logging.INFO, log_file=log_file)

    console = log_setup.get_console_handler()
    assert console is not None and console.level == logging.INFO
    logging.getLogger("node_manager.test").info("supervisor message")
    logging.getLogger("proc.bitcoind.stdout").debug("UpdateTip: new best=0000")
    for handler in restore_root_logger.handlers:
        handler.flush()

    written = log_file.read_text()
    assert "[node_manager.test] - supervisor message" in written
    assert "UpdateTip" not in written


def test_formatter_passes_node_output_through_raw():
    formatter = log_setup.MainFormatter()
    record = logging.LogRecord("proc.electrs.stderr", logging.DEBUG, __file__, 1, "raw line", None, None)
    assert formatter.format(record) == "raw line"
