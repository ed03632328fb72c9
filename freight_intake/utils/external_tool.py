#!/usr/bin/env python3
"""Subprocess boundary for the image converter, PDF rasterizer and OCR engine.

Every binary the pipeline shells out to goes through an :class:`ExternalTool`
so that tests can inject a fake instead of running real processes.  Tool
invocations never raise: a missing binary, a timeout or a non-zero exit is
reported through :class:`ToolResult` and the caller degrades to its previous
artifact.
"""

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ToolResult:
    stdout: str
    exit_code: int
    error: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ExternalTool(ABC):
    """A single external binary, e.g. ``convert``, ``pdftoppm`` or ``tesseract``."""

    #: Binary name or absolute path.
    command: str = ""

    @abstractmethod
    def run(self, args: List[str], timeout: Optional[float] = None) -> ToolResult:
        """Run the tool with *args* and return its captured output.

        Implementations must not raise for tool failures.
        """

    def is_available(self) -> bool:
        return True


class SubprocessTool(ExternalTool):
    """Runs a real binary with :func:`subprocess.run`."""

    def __init__(self, command: str, default_timeout: float = 60) -> None:
        self.command = command
        self.default_timeout = default_timeout

    def is_available(self) -> bool:
        return shutil.which(self.command) is not None

    def run(self, args: List[str], timeout: Optional[float] = None) -> ToolResult:
        cmd = [self.command, *args]
        effective_timeout = timeout if timeout is not None else self.default_timeout
        logger.debug(f"Running external tool: {' '.join(cmd)}")
        try:
            proc = subprocess.run(  # noqa: S603
                cmd,
                capture_output=True,
                text=True,
                timeout=effective_timeout,
                check=False,
            )
        except FileNotFoundError:
            logger.warning(f"External tool '{self.command}' is not installed")
            return ToolResult(stdout="", exit_code=-1, error=f"{self.command}: command not found")
        except subprocess.TimeoutExpired:
            logger.warning(f"External tool '{self.command}' timed out after {effective_timeout}s")
            return ToolResult(stdout="", exit_code=-1, error=f"{self.command}: timed out after {effective_timeout}s")
        except OSError as exc:
            logger.warning(f"External tool '{self.command}' could not be started: {exc}")
            return ToolResult(stdout="", exit_code=-1, error=str(exc))

        if proc.returncode != 0:
            logger.warning(f"External tool '{self.command}' exited with code {proc.returncode}: {proc.stderr.strip()}")
        return ToolResult(stdout=proc.stdout or "", exit_code=proc.returncode, error=proc.stderr or "")
