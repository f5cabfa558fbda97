import logging
from pathlib import Path
from typing import Any, Dict, Union

from .. import ssh_keys
from ..settings import DEFAULT_KEY_BITS
from ..spaces import CONFIG_FILE


class KeyService:
    """Service layer for generating and describing space SSH keys."""

    def __init__(
        self,
        spaces_dir: Union[str, Path] = CONFIG_FILE.parent,
        bits: int = DEFAULT_KEY_BITS,
    ) -> None:
        self.spaces_dir = Path(spaces_dir)
        self.bits = bits
        self.logger = logging.getLogger(__name__)

    def generate(self, identifier: str, comment: str, overwrite: bool = False) -> str:
        key_path = ssh_keys.generate_key(
            identifier, comment, self.spaces_dir, self.bits, overwrite
        )
        self.logger.info("SSH key for '%s' stored at %s", identifier, key_path)
        return key_path

    def describe(self, key_path: Union[str, Path]) -> Dict[str, Any]:
        """Return what can be learned about a key without the agent."""
        if not key_path:
            return {
                "key_exists": False,
                "public_key": None,
                "fingerprint": None,
                "key_type": None,
            }
        path = Path(key_path).expanduser()
        key = ssh_keys.read_private_key(path) if path.is_file() else None
        return {
            "key_exists": path.is_file(),
            "public_key": ssh_keys.read_public_key(path),
            "fingerprint": ssh_keys.key_fingerprint(path),
            "key_type": key.get_name() if key is not None else None,
        }
