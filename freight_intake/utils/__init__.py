"""
Utility functions and helpers for the intake pipeline.
"""

from freight_intake.utils.file_operations import hash_bytes, hash_file
from freight_intake.utils.logging import log_task_progress

__all__ = ["hash_bytes", "hash_file", "log_task_progress"]
