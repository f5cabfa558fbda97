"""JSON storage for development spaces.

The whole document is read and rewritten on every change.  Its shape is::

    {"spaces": [{"name": ..., "email": ..., "userName": ..., "sshKeyPath": ...}],
     "activeSpace": "<name>"}

``activeSpace`` is omitted when no space is active.
"""

import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import ConfigReadError
from .settings import DEFAULT_HOME_DIR

# File where spaces are stored
CONFIG_FILE = Path(DEFAULT_HOME_DIR).expanduser() / "spaces" / "config.json"

Space = Dict[str, str]
Config = Dict[str, Any]


def slugify(name: str) -> str:
    """Return the canonical identifier of a space name.

    >>> slugify("  My Work ")
    'my-work'
    """
    return re.sub(r"\s+", "-", name.strip().lower())


def empty_config() -> Config:
    return {"spaces": []}


def _validate(data: Any, path: Path) -> Config:
    if not isinstance(data, dict) or not isinstance(data.get("spaces"), list):
        raise ConfigReadError(f"Spaces file {path} has invalid format")
    for index, space in enumerate(data["spaces"]):
        if not isinstance(space, dict) or not isinstance(space.get("name"), str):
            raise ConfigReadError(f"Spaces file {path} has an invalid entry at index {index}")
        if any(not isinstance(value, str) for value in space.values()):
            raise ConfigReadError(
                f"Spaces file {path} has non-text fields in space {space['name']!r}"
            )
    active = data.get("activeSpace")
    if active is not None and not isinstance(active, str):
        raise ConfigReadError(f"Spaces file {path} has invalid activeSpace")
    return data


def ensure_config(file_path: Union[str, Path] = CONFIG_FILE) -> None:
    """Make sure the spaces file exists and holds a usable document.

    A missing, empty or malformed file is replaced by an empty document.
    A malformed file is copied to ``<name>.bak`` first.
    """
    logger = logging.getLogger(__name__)
    path = Path(file_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        try:
            load_config(path)
            return
        except ConfigReadError as exc:
            backup = path.with_name(path.name + ".bak")
            logger.warning("%s; reinitialising (backup at %s)", exc, backup)
            shutil.copyfile(path, backup)
    else:
        logger.info("Spaces file %s not found; creating it", path)
    save_config(empty_config(), path)


def load_config(file_path: Union[str, Path] = CONFIG_FILE) -> Config:
    """Load the spaces document.

    Parameters
    ----------
    file_path: str | Path
        Location of the JSON file with spaces.

    Raises
    ------
    ConfigReadError
        If the file is not valid JSON or does not have a ``spaces`` list.
    """
    logger = logging.getLogger(__name__)
    path = Path(file_path)
    if not path.exists():
        logger.info("Spaces file %s not found", path)
        return empty_config()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ConfigReadError(f"Spaces file {path} is not valid JSON: {exc}") from exc
    config = _validate(data, path)
    logger.debug("Loaded %d spaces", len(config["spaces"]))
    return config


def save_config(config: Config, file_path: Union[str, Path] = CONFIG_FILE) -> None:
    """Persist the spaces document, overwriting the file in full."""
    logger = logging.getLogger(__name__)
    path = Path(file_path)
    data: Config = {"spaces": config.get("spaces", [])}
    if config.get("activeSpace"):
        data["activeSpace"] = config["activeSpace"]
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2)
    logger.info("Saved %d spaces to %s", len(data["spaces"]), path)


def new_space(name: str, email: str, user_name: str, ssh_key_path: str = "") -> Space:
    return {
        "name": name,
        "email": email,
        "userName": user_name,
        "sshKeyPath": ssh_key_path,
    }


def find_space(config: Config, name: Optional[str]) -> Optional[Space]:
    """Return the space called ``name``.

    An exact match on the display name wins; otherwise the slug of ``name``
    is compared with the slug of every stored name.
    """
    if not name:
        return None
    spaces: List[Space] = config.get("spaces", [])
    exact = next((s for s in spaces if s.get("name") == name), None)
    if exact is not None:
        return exact
    slug = slugify(name)
    return next((s for s in spaces if slugify(s.get("name", "")) == slug), None)


def name_taken(config: Config, name: str, exclude: Optional[Space] = None) -> bool:
    """Return ``True`` if another space already uses the slug of ``name``."""
    slug = slugify(name)
    return any(
        slugify(s.get("name", "")) == slug
        for s in config.get("spaces", [])
        if s is not exclude
    )


def is_active(config: Config, space: Space) -> bool:
    return bool(config.get("activeSpace")) and config.get("activeSpace") == space.get("name")
