import hashlib
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


def hash_file(filepath: str | Path, chunk_size: int = 65536) -> str:
    """
    Returns the SHA-256 hex digest of the file at 'filepath', read in chunks.
    """
    sha256 = hashlib.sha256()
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def is_usable_file(path: str | Path | None) -> bool:
    """True when *path* exists and holds at least one byte."""
    return bool(path) and os.path.isfile(path) and os.path.getsize(path) > 0


def remove_file(path: str | Path) -> bool:
    """Delete *path* if it exists. Returns whether a file was removed."""
    try:
        os.remove(path)
        return True
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning(f"Could not remove {path}: {exc}")
        return False
