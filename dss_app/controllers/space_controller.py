import configparser
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..services.space_service import SpaceService, SwitchResult
from ..settings import key_bits_from_config, paths_from_config
from ..spaces import Config, Space


class SpaceController:
    """Controller orchestrating space operations for the command line."""

    def __init__(self, service: Optional[SpaceService] = None) -> None:
        self.service = service if service is not None else SpaceService()

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser, system: Any = None) -> "SpaceController":
        """Build a controller whose paths come from the settings file."""
        paths = paths_from_config(cfg)
        service = SpaceService(
            config_file=paths["config_file"],
            spaces_dir=paths["spaces_dir"],
            ssh_config_file=paths["ssh_config"],
            export_file=paths["export_file"],
            key_bits=key_bits_from_config(cfg),
            system=system,
        )
        return cls(service)

    # Queries ------------------------------------------------------------
    def load(self, read_only: bool = False) -> Config:
        return self.service.load(read_only)

    def space_names(self) -> List[str]:
        return self.service.space_names()

    def inspect_space(self, name: Optional[str] = None) -> Dict[str, Any]:
        return self.service.inspect_space(name)

    def test_space(self, name: Optional[str] = None) -> Tuple[str, bool, str]:
        return self.service.test_space(name)

    def onboarding_status(self) -> Dict[str, Any]:
        return self.service.onboarding_status()

    # Switching ----------------------------------------------------------
    def switch_space(
        self, name: Optional[str], dry_run: bool = False, force: bool = False
    ) -> SwitchResult:
        return self.service.switch_space(name, dry_run, force)

    def batch_switch(
        self, names: List[str], should_continue: Callable[[SwitchResult, int], bool]
    ) -> List[SwitchResult]:
        return self.service.batch_switch(names, should_continue)

    # Maintenance --------------------------------------------------------
    def add_space(
        self, name: str, email: str, user_name: str, generate_key: bool = False
    ) -> Space:
        return self.service.add_space(name, email, user_name, generate_key)

    def copy_public_key(self, space: Space) -> str:
        return self.service.copy_public_key(space)

    def remove_space(self, name: str, dry_run: bool = False) -> Dict[str, Any]:
        return self.service.remove_space(name, dry_run)

    def update_space(
        self,
        name: str,
        new_name: Optional[str] = None,
        email: Optional[str] = None,
        user_name: Optional[str] = None,
        ssh_key_path: Optional[Union[str, Path]] = None,
    ) -> Dict[str, Any]:
        return self.service.update_space(name, new_name, email, user_name, ssh_key_path)

    def bulk_update(
        self,
        names: Optional[List[str]] = None,
        email_domain: Optional[str] = None,
        user_prefix: str = "",
        user_suffix: str = "",
        regenerate_keys: bool = False,
        dry_run: bool = False,
    ) -> List[Dict[str, Any]]:
        return self.service.bulk_update(
            names, email_domain, user_prefix, user_suffix, regenerate_keys, dry_run
        )

    # Export / import ----------------------------------------------------
    def export_spaces(
        self,
        names: Optional[List[str]] = None,
        file_path: Optional[Union[str, Path]] = None,
    ) -> Tuple[Path, int]:
        return self.service.export_spaces(names, file_path)

    def read_import(
        self, file_path: Optional[Union[str, Path]] = None
    ) -> Tuple[List[Space], List[str]]:
        return self.service.read_import(file_path)

    def import_spaces(
        self, file_path: Optional[Union[str, Path]] = None
    ) -> Tuple[List[Space], List[str]]:
        return self.service.import_spaces(file_path)
