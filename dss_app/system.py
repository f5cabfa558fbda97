"""Wrappers around the external programs a space switch relies on.

Every function runs a single program through :func:`run_command` and
raises :class:`~dss_app.errors.ExternalCommandError` when it fails.  Nothing
here touches the spaces file.
"""

import logging
import shutil
import subprocess
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from . import ssh_config, ssh_keys
from .errors import ExternalCommandError, UnsupportedPlatformError

GITHUB_SSH_TARGET = "git@github.com"
AUTH_SUCCESS_PHRASE = "successfully authenticated"

CLIPBOARD_COMMANDS = {
    "darwin": ["pbcopy"],
    "win32": ["clip"],
    "linux": ["xclip", "-selection", "clipboard"],
}

logger = logging.getLogger(__name__)


def run_command(
    args: Sequence[str],
    input_text: Optional[str] = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """Run ``args`` and capture its output as text.

    Parameters
    ----------
    args: sequence of str
        Program and arguments; no shell is involved.
    input_text: str, optional
        Data written to the program's standard input.
    check: bool, optional
        Raise :class:`ExternalCommandError` on a non-zero exit status.
    """
    logger.debug("Running %s", " ".join(args))
    try:
        result = subprocess.run(
            list(args),
            input=input_text,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ExternalCommandError(args) from exc
    if check and result.returncode != 0:
        raise ExternalCommandError(args, result.returncode, result.stderr)
    return result


def tool_available(name: str) -> bool:
    return shutil.which(name) is not None


def set_git_identity(user_name: str, email: str) -> None:
    """Set the global Git user name and e-mail address."""
    run_command(["git", "config", "--global", "user.name", user_name])
    run_command(["git", "config", "--global", "user.email", email])
    logger.info("Git user set to %s <%s>", user_name, email)


def get_git_identity() -> Tuple[Optional[str], Optional[str]]:
    """Return the global Git ``(user.name, user.email)``; unset values are ``None``."""
    values = []
    for key in ("user.name", "user.email"):
        result = run_command(["git", "config", "--global", "--get", key], check=False)
        # exit status 1 means the key is not set
        if result.returncode not in (0, 1):
            raise ExternalCommandError(
                ["git", "config", "--global", "--get", key],
                result.returncode,
                result.stderr,
            )
        values.append(result.stdout.strip() or None)
    return values[0], values[1]


def load_key_into_agent(key_path: Union[str, Path]) -> None:
    """Add a private key to the running SSH agent."""
    if not Path(key_path).is_file():
        raise ExternalCommandError(
            ["ssh-add", str(key_path)], stderr=f"Key file not found: {key_path}"
        )
    run_command(["ssh-add", str(key_path)])
    logger.info("SSH key %s added to ssh-agent", key_path)


def unload_key_from_agent(key_path: Union[str, Path]) -> None:
    """Remove a private key from the running SSH agent."""
    run_command(["ssh-add", "-d", str(key_path)])
    logger.info("SSH key %s removed from ssh-agent", key_path)


def list_agent_keys() -> List[str]:
    """Return the public keys held by the SSH agent.

    An agent without identities yields an empty list; an unreachable agent
    raises :class:`ExternalCommandError`.
    """
    result = run_command(["ssh-add", "-L"], check=False)
    if result.returncode == 1:
        return []
    if result.returncode != 0:
        raise ExternalCommandError(["ssh-add", "-L"], result.returncode, result.stderr)
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def is_key_loaded(key_path: Union[str, Path]) -> bool:
    """Return ``True`` if the agent holds the key stored at ``key_path``."""
    blob = ssh_keys.public_key_blob(key_path)
    if blob is None:
        return False
    for line in list_agent_keys():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == blob:
            return True
    return False


def probe_github_auth(key_path: Union[str, Path]) -> Tuple[bool, str]:
    """Check that GitHub accepts ``key_path``.

    GitHub answers an authentication-only connection with exit status 1 even
    on success, so the success phrase in its output counts as success too.

    Returns
    -------
    tuple[bool, str]
        Whether authentication succeeded and GitHub's (or ssh's) message.
    """
    load_key_into_agent(key_path)
    args = [
        "ssh",
        "-T",
        "-o",
        "BatchMode=yes",
        "-o",
        "IdentitiesOnly=yes",
        "-i",
        str(key_path),
        GITHUB_SSH_TARGET,
    ]
    result = run_command(args, check=False)
    output = (result.stderr or result.stdout or "").strip()
    ok = result.returncode == 0 or AUTH_SUCCESS_PHRASE in output.lower()
    if ok:
        logger.info("GitHub accepted key %s", key_path)
    else:
        logger.warning("GitHub rejected key %s: %s", key_path, output)
    return ok, output


def clipboard_command(platform: Optional[str] = None) -> List[str]:
    """Return the clipboard program for ``platform`` (default: this OS)."""
    platform = platform or sys.platform
    for prefix, command in CLIPBOARD_COMMANDS.items():
        if platform.startswith(prefix):
            return list(command)
    raise UnsupportedPlatformError(
        f"Platform {platform} is not supported for clipboard operations"
    )


def copy_to_clipboard(text: str) -> None:
    """Copy ``text`` to the system clipboard."""
    run_command(clipboard_command(), input_text=text)
    logger.info("Copied %d characters to the clipboard", len(text))


def patch_ssh_client_config(
    key_path: Union[str, Path],
    ssh_config_file: Union[str, Path] = ssh_config.SSH_CONFIG_FILE,
) -> None:
    """Point the github.com block of the SSH client config at ``key_path``."""
    ssh_config.patch_ssh_config(key_path, ssh_config_file, logger)
