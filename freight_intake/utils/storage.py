#!/usr/bin/env python3
"""Disk + path storage used by the pipeline.

Documents are addressed as ``(disk, path)`` pairs.  Each disk is a directory
under ``settings.workdir``; the pipeline never builds physical paths itself
except through :meth:`LocalStorage.path`.
"""

import logging
import os
from typing import Dict, Optional

from freight_intake.config import settings

logger = logging.getLogger(__name__)


class LocalStorage:
    def __init__(self, root: Optional[str] = None, disks: Optional[Dict[str, str]] = None) -> None:
        self.root = root or settings.workdir
        self.disks = disks or {}

    def _disk_root(self, disk: str) -> str:
        return self.disks.get(disk) or os.path.join(self.root, disk)

    def path(self, disk: str, path: str) -> str:
        root = os.path.abspath(self._disk_root(disk))
        full = os.path.abspath(os.path.join(root, path))
        if os.path.commonpath([root, full]) != root:
            raise ValueError(f"Path escapes storage disk '{disk}': {path}")
        return full

    def exists(self, disk: str, path: str) -> bool:
        return os.path.isfile(self.path(disk, path))

    def get(self, disk: str, path: str) -> bytes:
        with open(self.path(disk, path), "rb") as f:
            return f.read()

    def put(self, disk: str, path: str, data: bytes) -> str:
        full = self.path(disk, path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "wb") as f:
            f.write(data)
        logger.debug(f"Stored {len(data)} bytes at {disk}:{path}")
        return path

    def size(self, disk: str, path: str) -> int:
        return os.path.getsize(self.path(disk, path))
