"""Creation and inspection of per-space SSH key pairs."""

import base64
import hashlib
import logging
from pathlib import Path
from typing import Optional, Union

import paramiko

from .errors import KeyGenerationError
from .spaces import slugify

PRIVATE_KEY_NAME = "id_rsa"


def public_key_path(key_path: Union[str, Path]) -> Path:
    """Return the ``.pub`` file belonging to a private key."""
    path = Path(key_path)
    return path.with_name(path.name + ".pub")


def generate_key(
    identifier: str,
    comment: str,
    spaces_dir: Union[str, Path],
    bits: int = 4096,
    overwrite: bool = False,
) -> str:
    """Generate an RSA key pair for a space.

    Parameters
    ----------
    identifier: str
        Space name; its slug names the directory holding the keys.
    comment: str
        Comment embedded in the public key, usually the e-mail address.
    spaces_dir: str | Path
        Directory containing one sub-directory per space.
    bits: int, optional
        RSA key size.
    overwrite: bool, optional
        Replace an existing key pair instead of failing.

    Returns
    -------
    str
        Absolute path of the private key. The public key is written next to
        it with a ``.pub`` suffix.
    """
    logger = logging.getLogger(__name__)
    slug = slugify(identifier)
    if not slug:
        raise KeyGenerationError("Space name must be provided to generate a key")

    key_dir = Path(spaces_dir).expanduser() / slug
    key_path = (key_dir / PRIVATE_KEY_NAME).resolve()
    pub_path = public_key_path(key_path)
    if key_path.exists() and not overwrite:
        raise KeyGenerationError(
            f"SSH key already exists: {key_path}. Add the space without a new key "
            f"and attach this one with `dss edit \"{identifier}\" --key {key_path}`, "
            "or delete the old key files first."
        )

    logger.info("Generating %d-bit RSA key at %s", bits, key_path)
    try:
        key_dir.mkdir(parents=True, exist_ok=True)
        key = paramiko.RSAKey.generate(bits)
        key.write_private_key_file(str(key_path))
        pub_path.write_text(
            f"{key.get_name()} {key.get_base64()} {comment}\n", encoding="utf-8"
        )
    except (paramiko.SSHException, OSError, ValueError) as exc:
        logger.exception("SSH key generation failed for '%s'", identifier)
        for leftover in (key_path, pub_path):
            try:
                leftover.unlink()
            except FileNotFoundError:
                pass
        raise KeyGenerationError(f"SSH key generation failed: {exc}") from exc

    logger.info("Generated SSH key at %s", key_path)
    return str(key_path)


def read_private_key(
    key_path: Union[str, Path],
    password: Optional[str] = None,
) -> Optional[paramiko.PKey]:
    """Load a private key of any supported type.

    RSA, ECDSA and Ed25519 keys are attempted in turn. ``None`` is returned
    if the file is missing, encrypted without ``password`` or not a key.
    """
    logger = logging.getLogger(__name__)
    key_types = [paramiko.RSAKey]
    if hasattr(paramiko, "ECDSAKey"):
        key_types.append(paramiko.ECDSAKey)
    if hasattr(paramiko, "Ed25519Key"):
        key_types.append(paramiko.Ed25519Key)

    for pkey_cls in key_types:
        try:
            logger.debug("Attempting to load %s using %s", key_path, pkey_cls.__name__)
            return pkey_cls.from_private_key_file(str(key_path), password=password)
        except paramiko.PasswordRequiredException:
            logger.warning("Password is required for key %s", key_path)
            break
        except (paramiko.SSHException, OSError) as exc:
            logger.debug("Failed loading %s as %s: %s", key_path, pkey_cls.__name__, exc)
    return None


def read_public_key(key_path: Union[str, Path]) -> Optional[str]:
    """Return the text of the ``.pub`` file next to ``key_path``, if any."""
    path = public_key_path(key_path)
    if not path.is_file():
        return None
    return path.read_text(encoding="utf-8").strip()


def public_key_blob(key_path: Union[str, Path]) -> Optional[str]:
    """Return the base64 public key blob for ``key_path``.

    The ``.pub`` file is preferred; the private key is parsed only when the
    public half is missing.
    """
    text = read_public_key(key_path)
    if text:
        parts = text.split()
        if len(parts) >= 2:
            return parts[1]
    key = read_private_key(key_path)
    return key.get_base64() if key is not None else None


def key_fingerprint(key_path: Union[str, Path]) -> Optional[str]:
    """Return the OpenSSH style ``SHA256:`` fingerprint of a key."""
    blob = public_key_blob(key_path)
    if blob is None:
        return None
    try:
        raw = base64.b64decode(blob)
    except ValueError:
        return None
    digest = base64.b64encode(hashlib.sha256(raw).digest()).decode("ascii")
    return "SHA256:" + digest.rstrip("=")
