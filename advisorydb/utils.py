"""File, path, version and time helpers."""

from __future__ import annotations

import json
import logging
import os
import re
import stat
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Iterator

logger = logging.getLogger(__name__)

_CACHE_NAME = "advisorydb"

_RFC3339 = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d+))?"
    r"(?:([Zz])|([+-])(\d{2}):(\d{2}))"
)


def _user_cache_dir() -> str:
    if sys.platform == "win32":
        base = os.environ.get("LocalAppData", "")
        if not base:
            raise OSError("%LocalAppData% is not defined")
        return base
    if sys.platform == "darwin":
        home = os.environ.get("HOME", "")
        if not home:
            raise OSError("$HOME is not defined")
        return os.path.join(home, "Library", "Caches")
    base = os.environ.get("XDG_CACHE_HOME", "")
    if not base:
        home = os.environ.get("HOME", "")
        if not home:
            raise OSError("neither $XDG_CACHE_HOME nor $HOME are defined")
        base = os.path.join(home, ".cache")
    return base


def cache_dir() -> str:
    """Default cache directory: the user cache dir, or the temp dir as a fallback."""
    try:
        base = _user_cache_dir()
    except OSError:
        base = tempfile.gettempdir()
    return os.path.join(base, _CACHE_NAME)


def construct_version(epoch: str, version: str, release: str) -> str:
    """Build ``[epoch:]version[-release]``; an epoch of "0" is omitted."""
    text = f"{epoch}:" if epoch not in ("0", "") else ""
    text += version
    if release:
        text += f"-{release}"
    return text


def _walk_paths(path: str) -> Iterator[tuple[str, int]]:
    with os.scandir(path) as it:
        entries = sorted(it, key=lambda e: e.name)
    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            yield from _walk_paths(entry.path)
        else:
            yield entry.path, entry.stat(follow_symlinks=False).st_size


def file_walk(root: str | os.PathLike[str]) -> Iterator[tuple[str, BinaryIO]]:
    """Yield ``(path, open binary file)`` for every non-empty file under ``root``, in lexical order.

    Directories are skipped, empty files are logged and skipped.
    A missing root raises FileNotFoundError.
    """
    root = os.fspath(root)
    info = os.lstat(root)
    if stat.S_ISDIR(info.st_mode):
        files = _walk_paths(root)
    else:
        files = iter([(root, info.st_size)])
    for path, size in files:
        if size == 0:
            logger.info("invalid size: %s", path)
            continue
        with open(path, "rb") as stream:
            yield path, stream


def exists(path: str | os.PathLike[str]) -> bool:
    """True if ``path`` exists; errors other than absence are raised."""
    try:
        os.stat(path)
    except FileNotFoundError:
        return False
    return True


def unmarshal_json_file(file_name: str | os.PathLike[str]) -> Any:
    """Decode the JSON document stored in ``file_name``."""
    with open(file_name, encoding="utf-8") as f:
        return json.load(f)


def must_time_parse(value: str) -> datetime:
    """Parse an RFC 3339 timestamp, raising ValueError if it is malformed."""
    match = _RFC3339.fullmatch(value)
    if match is None:
        raise ValueError(f"cannot parse {value!r} as an RFC 3339 time")
    year, month, day, hour, minute, second = (int(g) for g in match.group(1, 2, 3, 4, 5, 6))
    microsecond = int(((match.group(7) or "") + "000000")[:6])
    if match.group(8):
        tz = timezone.utc
    else:
        delta = timedelta(hours=int(match.group(10)), minutes=int(match.group(11)))
        tz = timezone(-delta if match.group(9) == "-" else delta)
    return datetime(year, month, day, hour, minute, second, microsecond, tzinfo=tz)