"""Maintenance of the ``Host github.com`` block in the SSH client config.

Only that block is ever rewritten.  It spans from its ``Host github.com``
header to the next ``Host`` header (or the end of the file); every other
line of the file is kept as is.
"""

import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple, Union

SSH_CONFIG_FILE = Path("~/.ssh/config").expanduser()
GITHUB_HOST = "github.com"

_HOST_LINE = re.compile(r"^\s*host\s+", re.IGNORECASE)
_GITHUB_HEADER = re.compile(r"^\s*host\s+github\.com\s*$", re.IGNORECASE)
_IDENTITY_FILE = re.compile(r"^\s*identityfile\s+(.+?)\s*$", re.IGNORECASE)


def github_block(key_path: Union[str, Path]) -> List[str]:
    """Return the lines of the managed block pointing at ``key_path``."""
    return [
        f"Host {GITHUB_HOST}",
        f"  HostName {GITHUB_HOST}",
        "  User git",
        f"  IdentityFile {key_path}",
        "  IdentitiesOnly yes",
    ]


def _block_spans(lines: List[str]) -> List[Tuple[int, int]]:
    """Return ``(start, end)`` index pairs of every github.com block."""
    spans = []
    index = 0
    while index < len(lines):
        if _GITHUB_HEADER.match(lines[index]):
            end = index + 1
            while end < len(lines) and not _HOST_LINE.match(lines[end]):
                end += 1
            spans.append((index, end))
            index = end
        else:
            index += 1
    return spans


def patch_ssh_config(
    key_path: Union[str, Path],
    ssh_config_file: Union[str, Path] = SSH_CONFIG_FILE,
    logger: logging.Logger = logging.getLogger(__name__),
) -> None:
    """Point the ``Host github.com`` block at ``key_path``.

    Parameters
    ----------
    key_path: str | Path
        Private key written as ``IdentityFile``.
    ssh_config_file: str | Path, optional
        SSH client configuration. Defaults to :data:`SSH_CONFIG_FILE`.
    logger: logging.Logger, optional
        Logger used for progress output.

    An existing block is replaced in place and any further github.com
    blocks are dropped; without one the block is appended.
    """
    path = Path(ssh_config_file)
    if not path.parent.exists():
        path.parent.mkdir(mode=0o700, parents=True)
    lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
    block = github_block(key_path)

    spans = _block_spans(lines)
    if spans:
        new_lines: List[str] = []
        cursor = 0
        for number, (start, end) in enumerate(spans):
            new_lines.extend(lines[cursor:start])
            if number == 0:
                new_lines.extend(block)
                if end < len(lines):
                    new_lines.append("")
            cursor = end
        new_lines.extend(lines[cursor:])
        logger.info("Replaced Host %s block in %s", GITHUB_HOST, path)
    else:
        new_lines = list(lines)
        if new_lines and new_lines[-1].strip():
            new_lines.append("")
        new_lines.extend(block)
        logger.info("Appended Host %s block to %s", GITHUB_HOST, path)

    path.write_text("\n".join(new_lines) + "\n", encoding="utf-8")
    try:
        path.chmod(0o600)
    except OSError as exc:  # pragma: no cover - depends on filesystem
        logger.warning("Could not restrict permissions of %s: %s", path, exc)


def read_github_identity(
    ssh_config_file: Union[str, Path] = SSH_CONFIG_FILE,
) -> Optional[str]:
    """Return the ``IdentityFile`` of the first github.com block, if any."""
    path = Path(ssh_config_file)
    if not path.exists():
        return None
    lines = path.read_text(encoding="utf-8").splitlines()
    for start, end in _block_spans(lines):
        for line in lines[start + 1:end]:
            match = _IDENTITY_FILE.match(line)
            if match:
                return match.group(1).strip('"')
    return None
