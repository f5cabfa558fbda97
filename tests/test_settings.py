"""Tests for reading settings and configuring logging."""
import configparser
import logging
from pathlib import Path
import sys

# Ensure application importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from dss_app import settings


def _write_settings(tmp_path) -> Path:
    template = Path(__file__).with_name("settings_test_config.ini").read_text()
    path = tmp_path / "config.ini"
    path.write_text(template.replace("HOME_PLACEHOLDER", str(tmp_path / "home")))
    return path


def test_missing_file_gives_defaults(tmp_path):
    cfg = settings.load_settings(tmp_path / "absent.ini")
    paths = settings.paths_from_config(cfg)
    home = Path(settings.DEFAULT_HOME_DIR).expanduser()

    assert paths["config_file"] == home / "spaces" / "config.json"
    assert paths["log_file"] == home / "dss.log"
    assert paths["ssh_config"] == Path("~/.ssh/config").expanduser()
    assert settings.key_bits_from_config(cfg) == settings.DEFAULT_KEY_BITS


def test_paths_follow_settings_file(tmp_path):
    cfg = settings.load_settings(_write_settings(tmp_path))
    paths = settings.paths_from_config(cfg)

    assert paths["home_dir"] == tmp_path / "home"
    assert paths["spaces_dir"] == tmp_path / "home" / "spaces"
    assert paths["config_file"] == tmp_path / "home" / "spaces" / "config.json"
    assert paths["ssh_config"] == Path("~/custom/ssh_config").expanduser()
    assert paths["export_file"] == Path("~/exports/dss.json").expanduser()


def test_key_bits_are_clamped(tmp_path):
    cfg = settings.load_settings(_write_settings(tmp_path))
    assert settings.key_bits_from_config(cfg) == settings.MIN_KEY_BITS


def test_setup_logging_splits_levels(tmp_path):
    cfg = settings.load_settings(_write_settings(tmp_path))
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        settings.setup_logging(cfg)
        file_handlers = [h for h in root.handlers if isinstance(h, logging.FileHandler)]
        stream_handlers = [h for h in root.handlers if type(h) is logging.StreamHandler]
        assert file_handlers and file_handlers[0].level == logging.DEBUG
        assert stream_handlers and stream_handlers[0].level == logging.ERROR
        assert root.level == logging.DEBUG

        logging.getLogger("dss_app.test").debug("written to file")
        file_handlers[0].flush()
        log_text = (tmp_path / "home" / "dss.log").read_text()
        assert "DEBUG - written to file" in log_text
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)


def test_unknown_level_names_fall_back():
    cfg = configparser.ConfigParser()
    cfg.read_dict({"logging": {"level": "LOUD"}})
    assert settings._level(cfg["logging"]["level"], logging.INFO) == logging.INFO
