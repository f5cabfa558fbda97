"""Application settings and logging setup.

Settings live in an INI file (by default :data:`SETTINGS_FILE`).  Every key
is optional; helper functions below read values with a fallback so that a
missing file behaves exactly like the defaults.

Example ``config.ini``::

    [paths]
    home_dir = ~/.dss
    ssh_config = ~/.ssh/config
    export_file = ~/dss-export.json

    [keys]
    bits = 4096

    [logging]
    file = ~/.dss/dss.log
    level = INFO
    console_level = WARNING
"""

import configparser
import logging
from pathlib import Path
from typing import Dict, Optional, Union

DEFAULT_HOME_DIR = "~/.dss"
SETTINGS_FILE = Path(DEFAULT_HOME_DIR).expanduser() / "config.ini"
DEFAULT_KEY_BITS = 4096
MIN_KEY_BITS = 2048
LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def load_settings(file_path: Optional[Union[str, Path]] = None) -> configparser.ConfigParser:
    """Read the settings file, returning an empty parser if it is absent.

    Parameters
    ----------
    file_path: str | Path, optional
        Location of the INI file. Defaults to :data:`SETTINGS_FILE`.
    """
    logger = logging.getLogger(__name__)
    cfg = configparser.ConfigParser()
    path = Path(file_path).expanduser() if file_path else SETTINGS_FILE
    if not path.exists():
        logger.debug("Settings file %s not found; using defaults", path)
        return cfg
    read = cfg.read(path, encoding="utf-8")
    logger.debug("Loaded settings from %s", ", ".join(read))
    return cfg


def home_dir_from_config(cfg: configparser.ConfigParser) -> Path:
    """Return the directory holding all tool data."""
    return Path(cfg.get("paths", "home_dir", fallback=DEFAULT_HOME_DIR)).expanduser()


def paths_from_config(cfg: configparser.ConfigParser) -> Dict[str, Path]:
    """Return every filesystem location the application touches.

    Keys of the returned mapping: ``home_dir``, ``spaces_dir``,
    ``config_file``, ``ssh_config``, ``export_file`` and ``log_file``.
    """
    home = home_dir_from_config(cfg)
    spaces_dir = home / "spaces"
    return {
        "home_dir": home,
        "spaces_dir": spaces_dir,
        "config_file": spaces_dir / "config.json",
        "ssh_config": Path(
            cfg.get("paths", "ssh_config", fallback="~/.ssh/config")
        ).expanduser(),
        "export_file": Path(
            cfg.get("paths", "export_file", fallback="~/dss-export.json")
        ).expanduser(),
        "log_file": Path(
            cfg.get("logging", "file", fallback=str(home / "dss.log"))
        ).expanduser(),
    }


def key_bits_from_config(cfg: configparser.ConfigParser) -> int:
    """Return the RSA key size, never smaller than :data:`MIN_KEY_BITS`."""
    bits = cfg.getint("keys", "bits", fallback=DEFAULT_KEY_BITS)
    if bits < MIN_KEY_BITS:
        bits = MIN_KEY_BITS
    return bits


def _level(name: str, default: int) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


def setup_logging(cfg: configparser.ConfigParser) -> None:
    """Configure logging to the log file and the console.

    The file receives everything at the configured ``level``; the console
    only shows ``console_level`` and above so that regular command output
    is not drowned in log lines.
    """
    log_file = paths_from_config(cfg)["log_file"]
    file_level = _level(cfg.get("logging", "level", fallback="INFO"), logging.INFO)
    console_level = _level(
        cfg.get("logging", "console_level", fallback="WARNING"), logging.WARNING
    )

    handlers = []
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(file_level)
        handlers.append(file_handler)
    except OSError as exc:  # pragma: no cover - depends on filesystem
        print(f"Cannot write log file {log_file}: {exc}")
    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(console_level)
    handlers.append(stream_handler)

    logging.basicConfig(
        level=min(file_level, console_level),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
