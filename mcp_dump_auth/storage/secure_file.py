"""Owner-only file persistence shared by the credential stores.

Files are written whole to a temporary sibling and moved into place, so a
reader never observes a partially written cache entry. Directories are
created with mode 0700 and files with mode 0600. When a Fernet key is
configured the payload is encrypted at rest.
"""

import contextlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from mcp_dump_auth.utils.errors import CacheError

logger = logging.getLogger(__name__)


def build_cipher(encryption_key: str | None) -> Fernet | None:
    """Create a Fernet cipher, or None if no (usable) key is configured."""
    if not encryption_key:
        return None
    try:
        return Fernet(encryption_key.encode())
    except (ValueError, TypeError) as e:
        logger.warning(f"Failed to initialize encryption: {e}. Credentials will be stored unencrypted.")
        return None


def generate_encryption_key() -> str:
    """Generate a new Fernet encryption key."""
    return Fernet.generate_key().decode()


def ensure_private_dir(directory: Path) -> None:
    """Create a directory (and parents) readable only by the owner."""
    try:
        directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    except OSError as e:
        raise CacheError(f"failed to create cache directory {directory}: {e}") from e


def write_private_json(path: Path, data: dict[str, Any], cipher: Fernet | None = None) -> None:
    """Atomically replace ``path`` with ``data`` serialized as JSON.

    Raises:
        CacheError: If the directory or file cannot be written
    """
    ensure_private_dir(path.parent)

    payload = json.dumps(data, indent=2).encode()
    if cipher:
        payload = cipher.encrypt(payload)

    try:
        # mkstemp creates the file with mode 0600
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix=".tmp")
    except OSError as e:
        raise CacheError(f"failed to write cache file {path}: {e}") from e

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(payload)
        os.replace(tmp_name, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            os.unlink(tmp_name)
        raise CacheError(f"failed to write cache file {path}: {e}") from e


def read_json(path: Path, cipher: Fernet | None = None) -> dict[str, Any] | None:
    """Read a JSON cache file.

    Returns:
        Parsed JSON object, or None if the file is missing or unreadable
    """
    if not path.exists():
        return None

    try:
        data = path.read_bytes()
        if cipher:
            data = cipher.decrypt(data)
        parsed = json.loads(data.decode())
    except (OSError, InvalidToken, UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Ignoring unreadable cache file {path}: {e}")
        return None

    if not isinstance(parsed, dict):
        logger.warning(f"Ignoring malformed cache file {path}: expected a JSON object")
        return None
    return parsed


def remove_file(path: Path) -> None:
    """Delete a cache file, ignoring it if it does not exist.

    Raises:
        CacheError: If the file exists but cannot be removed
    """
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        raise CacheError(f"failed to remove cache file {path}: {e}") from e
