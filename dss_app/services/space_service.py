import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .. import ssh_config, system as default_system
from ..errors import (
    ActiveSpaceError,
    ConfigReadError,
    DssError,
    DuplicateNameError,
    NotFoundError,
)
from ..settings import DEFAULT_KEY_BITS
from ..spaces import (
    CONFIG_FILE,
    Config,
    Space,
    ensure_config,
    find_space,
    is_active,
    load_config,
    name_taken,
    new_space,
    save_config,
    slugify,
)
from .key_service import KeyService

EXPORT_FILE = Path("~/dss-export.json").expanduser()
EXPORT_VERSION = "1.0.0"

# Switch steps, in the order they are applied
STEP_GIT_IDENTITY = "git_identity"
STEP_AGENT_LOAD = "agent_load"
STEP_SSH_CONFIG = "ssh_config"
SWITCH_STEPS = (STEP_GIT_IDENTITY, STEP_AGENT_LOAD, STEP_SSH_CONFIG)

PENDING = "pending"
DONE = "done"
FAILED = "failed"
SKIPPED = "skipped"

OUTCOME_EMPTY = "empty"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_NO_OP = "no_op"
OUTCOME_DRY_RUN = "dry_run"
OUTCOME_SWITCHED = "switched"
OUTCOME_FAILED = "failed"

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+$")


@dataclass
class SwitchStep:
    name: str
    description: str = ""
    status: str = PENDING
    error: Optional[str] = None


@dataclass
class SwitchResult:
    """Outcome of one switch attempt.

    ``steps`` lists every side effect in execution order. After a failure
    the ``done`` entries are the changes that stay applied; nothing is
    rolled back.
    """

    outcome: str
    space: Optional[str] = None
    steps: List[SwitchStep] = field(default_factory=list)
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.outcome in (OUTCOME_SWITCHED, OUTCOME_NO_OP)

    @property
    def completed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.status == DONE]

    @property
    def failed_step(self) -> Optional[SwitchStep]:
        return next((s for s in self.steps if s.status == FAILED), None)


def _validate_email(email: str) -> str:
    email = email.strip()
    if not _EMAIL.match(email):
        raise ValueError(f"Invalid email address: {email!r}")
    return email


class SpaceService:
    """Service layer implementing space switching and maintenance.

    External programs are reached through ``system``, which defaults to the
    :mod:`dss_app.system` module. Any object providing the same functions
    can be supplied instead.
    """

    def __init__(
        self,
        config_file: Union[str, Path] = CONFIG_FILE,
        spaces_dir: Optional[Union[str, Path]] = None,
        ssh_config_file: Union[str, Path] = ssh_config.SSH_CONFIG_FILE,
        export_file: Union[str, Path] = EXPORT_FILE,
        key_bits: int = DEFAULT_KEY_BITS,
        system: Any = None,
    ) -> None:
        self.config_file = Path(config_file)
        self.spaces_dir = Path(spaces_dir) if spaces_dir else self.config_file.parent
        self.ssh_config_file = Path(ssh_config_file)
        self.export_file = Path(export_file)
        self.system = system if system is not None else default_system
        self.key_service = KeyService(self.spaces_dir, key_bits)
        self.logger = logging.getLogger(__name__)
        self.logger.debug("Using spaces file %s", self.config_file)

    # ------------------------------------------------------------------
    # Storage helpers
    # ------------------------------------------------------------------
    def load(self, read_only: bool = False) -> Config:
        """Return the spaces document, creating it on first use.

        With ``read_only`` the file is only read: a missing file yields an
        empty document and a malformed one raises ``ConfigReadError``.
        """
        if not read_only:
            ensure_config(self.config_file)
        return load_config(self.config_file)

    def _require(self, config: Config, name: Optional[str]) -> Space:
        space = find_space(config, name)
        if space is None:
            raise NotFoundError(f'Space "{name}" not found')
        return space

    def _resolve_or_active(self, config: Config, name: Optional[str]) -> Space:
        target = name or config.get("activeSpace")
        if not target:
            raise NotFoundError("No active space; specify a space name")
        return self._require(config, target)

    def _select(self, config: Config, names: Optional[Iterable[str]]) -> List[Space]:
        if not names:
            return list(config["spaces"])
        selected: List[Space] = []
        for name in names:
            space = self._require(config, name)
            if space not in selected:
                selected.append(space)
        return selected

    def space_names(self) -> List[str]:
        return [s["name"] for s in self.load(read_only=True)["spaces"]]

    # ------------------------------------------------------------------
    # Switching
    # ------------------------------------------------------------------
    def switch_space(
        self, name: Optional[str], dry_run: bool = False, force: bool = False
    ) -> SwitchResult:
        """Make ``name`` the active space.

        Applies the Git identity, loads the key into the agent and patches
        the SSH client config, in that order. The first failing step stops
        the switch and ``activeSpace`` keeps its previous value.

        Parameters
        ----------
        name: str
            Display name or slug of the target space.
        dry_run: bool, optional
            Only resolve the target and report the planned steps.
        force: bool, optional
            Re-apply the side effects even if the space is already active.
        """
        self.logger.info("Request to switch to space '%s'", name)
        config = self.load(read_only=dry_run)
        if not config["spaces"]:
            return SwitchResult(OUTCOME_EMPTY, name, message="No spaces have been added yet.")

        space = find_space(config, name)
        if space is None or not space.get("sshKeyPath"):
            self.logger.warning("Space '%s' not found or has no SSH key", name)
            return SwitchResult(
                OUTCOME_NOT_FOUND,
                name,
                message=f'Space "{name}" not found or does not have an associated SSH key.',
            )

        target = space["name"]
        if is_active(config, space) and not force:
            return SwitchResult(
                OUTCOME_NO_OP, target, message=f'Space "{target}" is already active.'
            )

        key_path = str(Path(space["sshKeyPath"]).expanduser())
        descriptions = {
            STEP_GIT_IDENTITY: "Set global Git identity to {} <{}>".format(
                space.get("userName", ""), space.get("email", "")
            ),
            STEP_AGENT_LOAD: f"Add {key_path} to ssh-agent",
            STEP_SSH_CONFIG: f"Point Host github.com in {self.ssh_config_file} at {key_path}",
        }
        steps = [SwitchStep(step, descriptions[step]) for step in SWITCH_STEPS]
        if dry_run:
            return SwitchResult(
                OUTCOME_DRY_RUN, target, steps, message=f'Would switch to space "{target}".'
            )

        actions: Dict[str, Callable[[], None]] = {
            STEP_GIT_IDENTITY: lambda: self.system.set_git_identity(
                space["userName"], space["email"]
            ),
            STEP_AGENT_LOAD: lambda: self.system.load_key_into_agent(key_path),
            STEP_SSH_CONFIG: lambda: self.system.patch_ssh_client_config(
                key_path, self.ssh_config_file
            ),
        }
        failure: Optional[SwitchStep] = None
        for step in steps:
            if failure is not None:
                step.status = SKIPPED
                continue
            try:
                actions[step.name]()
            except (DssError, OSError) as exc:
                step.status = FAILED
                step.error = str(exc)
                failure = step
                self.logger.error(
                    "Switch to '%s' failed at step %s: %s", target, step.name, exc
                )
            else:
                step.status = DONE

        if failure is not None:
            return SwitchResult(
                OUTCOME_FAILED,
                target,
                steps,
                message=f'Failed to switch to space "{target}": {failure.error}',
            )

        config["activeSpace"] = target
        save_config(config, self.config_file)
        self.logger.info("Switched to space '%s'", target)
        return SwitchResult(
            OUTCOME_SWITCHED, target, steps, message=f'Switched to and activated space "{target}".'
        )

    def batch_switch(
        self,
        names: List[str],
        should_continue: Callable[[SwitchResult, int], bool],
    ) -> List[SwitchResult]:
        """Switch to each of ``names`` in turn.

        ``should_continue`` receives every result together with the number of
        spaces still to go and stops the batch when it returns ``False``.
        """
        results: List[SwitchResult] = []
        for index, name in enumerate(names):
            result = self.switch_space(name)
            results.append(result)
            if not should_continue(result, len(names) - index - 1):
                self.logger.info("Batch switch stopped after '%s'", name)
                break
        return results

    # ------------------------------------------------------------------
    # Space maintenance
    # ------------------------------------------------------------------
    def add_space(
        self, name: str, email: str, user_name: str, generate_key: bool = False
    ) -> Space:
        name, user_name = name.strip(), user_name.strip()
        if not all([name, email.strip(), user_name]):
            raise ValueError("Space name, email and user name must be provided")
        email = _validate_email(email)

        config = self.load()
        if name_taken(config, name):
            raise DuplicateNameError(f'A space with the name "{name}" already exists.')

        key_path = ""
        if generate_key:
            key_path = self.key_service.generate(name, email)

        space = new_space(name, email, user_name, key_path)
        config["spaces"].append(space)
        save_config(config, self.config_file)
        self.logger.info("Space '%s' added (key=%s)", name, key_path or "none")
        return space

    def copy_public_key(self, space: Space) -> str:
        """Copy the public key of ``space`` to the clipboard and return it."""
        public_key = self.key_service.describe(space.get("sshKeyPath", ""))["public_key"]
        if not public_key:
            raise NotFoundError(f"No public key found for space \"{space.get('name')}\"")
        self.system.copy_to_clipboard(public_key)
        return public_key

    def remove_space(self, name: str, dry_run: bool = False) -> Dict[str, Any]:
        """Delete a space from the config.

        The key is unloaded from the agent on a best-effort basis; key files
        stay on disk.
        """
        self.logger.info("Request to remove space '%s'", name)
        config = self.load(read_only=dry_run)
        space = self._require(config, name)
        if is_active(config, space):
            raise ActiveSpaceError(
                f"Cannot remove the active space '{space['name']}'. "
                "Please switch to another space first."
            )

        key_path = space.get("sshKeyPath") or ""
        actions = []
        if key_path:
            actions.append(f"unload SSH key {key_path} from ssh-agent")
        actions.append(f"remove space '{space['name']}' from {self.config_file}")
        result: Dict[str, Any] = {
            "name": space["name"],
            "sshKeyPath": key_path,
            "actions": actions,
            "dry_run": dry_run,
            "unload_error": None,
        }
        if dry_run:
            return result

        if key_path:
            try:
                self.system.unload_key_from_agent(str(Path(key_path).expanduser()))
            except (DssError, OSError) as exc:
                self.logger.warning("Could not unload key for '%s': %s", space["name"], exc)
                result["unload_error"] = str(exc)

        config["spaces"] = [s for s in config["spaces"] if s is not space]
        save_config(config, self.config_file)
        self.logger.info("Space '%s' removed", space["name"])
        return result

    def update_space(
        self,
        name: str,
        new_name: Optional[str] = None,
        email: Optional[str] = None,
        user_name: Optional[str] = None,
        ssh_key_path: Optional[Union[str, Path]] = None,
    ) -> Dict[str, Any]:
        """Change stored fields of a space.

        Blank values leave a field untouched, except ``ssh_key_path=""``
        which detaches the key. Git and SSH state are not re-applied; the
        returned ``drift`` flag tells whether the active space was changed.
        """
        self.logger.info("Request to update space '%s'", name)
        config = self.load()
        space = self._require(config, name)
        changed: Dict[str, Tuple[str, str]] = {}

        if new_name and new_name.strip() and new_name.strip() != space["name"]:
            new_name = new_name.strip()
            if name_taken(config, new_name, exclude=space):
                raise DuplicateNameError(
                    f'Another space with the name "{new_name}" already exists.'
                )
            changed["name"] = (space["name"], new_name)
        if email and email.strip() and email.strip() != space.get("email"):
            changed["email"] = (space.get("email", ""), _validate_email(email))
        if user_name and user_name.strip() and user_name.strip() != space.get("userName"):
            changed["userName"] = (space.get("userName", ""), user_name.strip())
        if ssh_key_path is not None:
            key_value = ""
            if str(ssh_key_path):
                key = Path(ssh_key_path).expanduser()
                if not key.is_file():
                    raise FileNotFoundError(f"SSH key not found: {key}")
                key_value = str(key.resolve())
            if key_value != space.get("sshKeyPath", ""):
                changed["sshKeyPath"] = (space.get("sshKeyPath", ""), key_value)

        was_active = is_active(config, space)
        if changed:
            for key_name, (_, value) in changed.items():
                space[key_name] = value
            if was_active and "name" in changed:
                config["activeSpace"] = space["name"]
            save_config(config, self.config_file)
            self.logger.info(
                "Space '%s' updated (%s)", name, ", ".join(sorted(changed))
            )
        return {
            "space": dict(space),
            "changed": changed,
            "drift": was_active and any(k != "name" for k in changed),
        }

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    def test_space(self, name: Optional[str] = None) -> Tuple[str, bool, str]:
        """Probe GitHub with the key of ``name`` (default: the active space).

        Returns the space name, whether GitHub accepted the key and the
        message it answered with.
        """
        config = self.load()
        space = self._resolve_or_active(config, name)
        if not space.get("sshKeyPath"):
            raise NotFoundError(f"Space \"{space['name']}\" does not have an associated SSH key")
        ok, message = self.system.probe_github_auth(
            str(Path(space["sshKeyPath"]).expanduser())
        )
        return space["name"], ok, message

    def inspect_space(self, name: Optional[str] = None) -> Dict[str, Any]:
        config = self.load()
        space = self._resolve_or_active(config, name)
        key_path = space.get("sshKeyPath", "")
        details: Dict[str, Any] = dict(space)
        details.update(
            {
                "slug": slugify(space["name"]),
                "active": is_active(config, space),
            }
        )
        details.update(self.key_service.describe(key_path))

        loaded: Optional[bool] = False
        if details["key_exists"]:
            try:
                loaded = self.system.is_key_loaded(str(Path(key_path).expanduser()))
            except (DssError, OSError) as exc:
                self.logger.info("Cannot query ssh-agent: %s", exc)
                loaded = None
        details["loaded_in_agent"] = loaded

        configured = ssh_config.read_github_identity(self.ssh_config_file)
        details["ssh_config_matches"] = bool(key_path) and configured is not None and (
            Path(configured).expanduser() == Path(key_path).expanduser()
        )
        return details

    def onboarding_status(self) -> Dict[str, Any]:
        """Report which external tools exist and the current Git identity."""
        tools = {tool: self.system.tool_available(tool) for tool in ("git", "ssh", "ssh-add")}
        git_name = git_email = None
        if tools["git"]:
            try:
                git_name, git_email = self.system.get_git_identity()
            except DssError as exc:
                self.logger.warning("Cannot read Git identity: %s", exc)
        config = self.load()
        return {
            "tools": tools,
            "git_name": git_name,
            "git_email": git_email,
            "space_count": len(config["spaces"]),
            "active": config.get("activeSpace"),
        }

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------
    def export_spaces(
        self,
        names: Optional[List[str]] = None,
        file_path: Optional[Union[str, Path]] = None,
    ) -> Tuple[Path, int]:
        """Write the selected spaces to an export file, without key paths."""
        config = self.load()
        selected = self._select(config, names)
        if not selected:
            raise NotFoundError("No spaces to export")
        data = {
            "version": EXPORT_VERSION,
            "exportDate": datetime.now(timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "spaces": [
                {
                    "name": s["name"],
                    "email": s.get("email", ""),
                    "userName": s.get("userName", ""),
                    "hasSSHKey": bool(s.get("sshKeyPath")),
                }
                for s in selected
            ],
        }
        path = Path(file_path).expanduser() if file_path else self.export_file
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
        self.logger.info("Exported %d spaces to %s", len(selected), path)
        return path, len(selected)

    def read_import(
        self, file_path: Optional[Union[str, Path]] = None
    ) -> Tuple[List[Space], List[str]]:
        """Parse an export file.

        Returns the spaces that would be imported and the names skipped
        because a space with the same slug already exists.
        """
        path = Path(file_path).expanduser() if file_path else self.export_file
        if not path.exists():
            raise FileNotFoundError(f"Import file not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ConfigReadError(f"Import file {path} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("spaces"), list):
            raise ConfigReadError(f"Import file {path} has invalid format")

        config = self.load()
        new: List[Space] = []
        skipped: List[str] = []
        for entry in data["spaces"]:
            if not isinstance(entry, dict) or not str(entry.get("name", "")).strip():
                self.logger.warning("Ignoring malformed import entry %r", entry)
                continue
            name = str(entry["name"]).strip()
            if name_taken(config, name) or any(slugify(s["name"]) == slugify(name) for s in new):
                self.logger.warning("Space '%s' already exists - skipping", name)
                skipped.append(name)
                continue
            new.append(
                new_space(name, str(entry.get("email", "")), str(entry.get("userName", "")))
            )
        return new, skipped

    def import_spaces(
        self, file_path: Optional[Union[str, Path]] = None
    ) -> Tuple[List[Space], List[str]]:
        """Append the new spaces of an export file. Keys must be set up later."""
        new, skipped = self.read_import(file_path)
        if new:
            config = self.load()
            config["spaces"].extend(new)
            save_config(config, self.config_file)
            self.logger.info("Imported %d spaces", len(new))
        return new, skipped

    # ------------------------------------------------------------------
    # Bulk update
    # ------------------------------------------------------------------
    def bulk_update(
        self,
        names: Optional[List[str]] = None,
        email_domain: Optional[str] = None,
        user_prefix: str = "",
        user_suffix: str = "",
        regenerate_keys: bool = False,
        dry_run: bool = False,
    ) -> List[Dict[str, Any]]:
        """Apply the same change to several spaces.

        The e-mail domain is replaced, the user name gains ``user_prefix``
        and ``user_suffix`` unless already present, and keys are optionally
        regenerated in place. Changes are computed for every space first;
        the config is saved once after all of them were applied.
        """
        domain = (email_domain or "").strip().lstrip("@")
        if not (domain or user_prefix or user_suffix or regenerate_keys):
            raise ValueError("No bulk update requested")

        config = self.load(read_only=dry_run)
        selected = self._select(config, names)
        plans: List[Dict[str, Any]] = []
        for space in selected:
            changes: Dict[str, Tuple[str, str]] = {}
            if domain:
                local = space.get("email", "").split("@", 1)[0]
                email = f"{local}@{domain}"
                if email != space.get("email"):
                    changes["email"] = (space.get("email", ""), email)
            user = space.get("userName", "")
            if user_prefix and not user.startswith(user_prefix):
                user = user_prefix + user
            if user_suffix and not user.endswith(user_suffix):
                user = user + user_suffix
            if user != space.get("userName", ""):
                changes["userName"] = (space.get("userName", ""), user)
            plans.append(
                {
                    "name": space["name"],
                    "changes": changes,
                    "regenerate_key": regenerate_keys,
                    "active": is_active(config, space),
                }
            )

        if dry_run:
            return plans

        for space, plan in zip(selected, plans):
            for key_name, (_, value) in plan["changes"].items():
                space[key_name] = value
            if plan["regenerate_key"]:
                space["sshKeyPath"] = self.key_service.generate(
                    space["name"], space["email"], overwrite=True
                )
        save_config(config, self.config_file)
        self.logger.info("Bulk updated %d spaces", len(plans))
        return plans
