"""
Utility functions shared by the istatkit modules.

These functions are not part of the public API and may change without notice.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

_FNV_OFFSET_BASIS_32 = 0x811C9DC5
_FNV_PRIME_32 = 0x01000193


def fnv1a_32(key: str) -> int:
    """
    Compute the 32-bit FNV-1a hash of a string (UTF-8 encoded).

    Unlike the builtin ``hash()``, the result is stable across processes and
    interpreter runs, which makes it suitable for deriving cache TTLs.

    Example:
        >>> fnv1a_32("")
        2166136261
        >>> fnv1a_32("a")
        3826002220
    """
    value = _FNV_OFFSET_BASIS_32
    for byte in key.encode("utf-8"):
        value ^= byte
        value = (value * _FNV_PRIME_32) & 0xFFFFFFFF
    return value


def save_json_file(data: dict[str, Any], file_path: Path) -> None:
    """
    Save data as JSON to the specified file path, atomically.

    The JSON is written to a temporary file in the same directory and then
    moved over the destination with ``os.replace``, so readers never observe
    a partially written file. Parent directories are created when missing.
    Non-serializable values are converted to strings using the default=str option.

    Args:
        data: Dictionary to serialize as JSON.
        file_path: Destination path for the JSON file.

    Raises:
        RuntimeError: If the file cannot be written (wraps the original exception).

    Example:
        >>> save_json_file({"key": "value"}, Path("meta/dataflows.json"))
    """
    tmp_name: str | None = None
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=file_path.parent, prefix=f".{file_path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, mode="w", encoding="utf-8") as file:
            json.dump(
                data, file,
                indent=2, ensure_ascii=False, default=str
            )
        os.replace(tmp_name, file_path)
    except Exception as e:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        logger.error(
            f"❌ Error while writing JSON file to disk ({file_path.name}): {e}",
            exc_info=logger.isEnabledFor(logging.DEBUG)
        )
        raise RuntimeError(f"It's not possible to save JSON file in the disk ({file_path.name}): {e}") from e


def save_bytes_file(content: bytes, file_path: Path) -> None:
    """
    Write raw bytes to the specified file path, atomically.

    Same temporary-file-then-``os.replace`` strategy as ``save_json_file``,
    used for files downloaded from the demographic portal.

    Raises:
        RuntimeError: If the file cannot be written (wraps the original exception).
    """
    tmp_name: str | None = None
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=file_path.parent, prefix=f".{file_path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, mode="wb") as file:
            file.write(content)
        os.replace(tmp_name, file_path)
    except Exception as e:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        logger.error(f"❌ Error while writing file to disk ({file_path.name}): {e}")
        raise RuntimeError(f"It's not possible to save file in the disk ({file_path.name}): {e}") from e


def load_json_file(file_path: Path, default: Any = None) -> Any:
    """
    Load a JSON file, returning ``default`` when it does not exist.

    A corrupted file is logged and treated as missing, so the cache rebuilds
    it on the next write instead of failing every run.
    """
    if not file_path.exists():
        return default
    try:
        with file_path.open(mode="r", encoding="utf-8") as file:
            return json.load(file)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"⚠️ Ignoring unreadable JSON file {file_path}: {e}")
        return default


def is_timeout_exception(exc: BaseException) -> bool:
    """
    Determine if an exception indicates a timeout condition.

    Includes exceptions wrapped in MaxRetriesExceededError.

    Supported timeout exceptions:
        - RequestTimeoutError: raised by the istatkit HTTP clients
        - requests.Timeout / httpx.TimeoutException: raw library timeouts
        - TimeoutError: Python built-in
        - MaxRetriesExceededError: If last_exception is a timeout (recursive)
    """
    # Lazy imports to avoid circular dependencies
    import httpx
    import requests

    from istatkit._errors import RequestTimeoutError
    from istatkit._retry import MaxRetriesExceededError

    timeout_exceptions_types = (
        RequestTimeoutError,
        requests.Timeout,
        httpx.TimeoutException,
        TimeoutError,
    )

    if isinstance(exc, timeout_exceptions_types):
        return True

    if isinstance(exc, MaxRetriesExceededError):
        last_exc = exc.last_exception
        if last_exc is not None:
            return is_timeout_exception(last_exc)

    return False
