"""Metadata file describing when the database was built."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from advisorydb.db import db_dir
from advisorydb.utils import must_time_parse

METADATA_FILE = "metadata.json"

ZERO_TIME = datetime(1, 1, 1, tzinfo=timezone.utc)


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.replace(microsecond=0, tzinfo=None).isoformat()
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset()
    if not offset:
        return text + "Z"
    total = int(offset.total_seconds())
    sign = "+" if total >= 0 else "-"
    total = abs(total)
    return f"{text}{sign}{total // 3600:02d}:{total % 3600 // 60:02d}"


def _parse_time(data: dict[str, Any], key: str) -> datetime:
    value = data.get(key)
    if value is None:
        return ZERO_TIME
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return must_time_parse(value)


@dataclass
class Metadata:
    """Schema version and update times of a built database."""

    version: int = 0
    next_update: datetime = ZERO_TIME
    updated_at: datetime = ZERO_TIME
    downloaded_at: datetime = ZERO_TIME

    def _to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        if self.version:
            out["Version"] = self.version
        out["NextUpdate"] = _format_time(self.next_update)
        out["UpdatedAt"] = _format_time(self.updated_at)
        out["DownloadedAt"] = _format_time(self.downloaded_at)
        return out

    @classmethod
    def _from_dict(cls, data: Any) -> Metadata:
        if not isinstance(data, dict):
            raise ValueError("metadata must be a JSON object")
        version = data.get("Version", 0)
        if not isinstance(version, int) or isinstance(version, bool):
            raise ValueError("Version must be an integer")
        return cls(
            version=version,
            next_update=_parse_time(data, "NextUpdate"),
            updated_at=_parse_time(data, "UpdatedAt"),
            downloaded_at=_parse_time(data, "DownloadedAt"),
        )


def path(cache_dir: str | os.PathLike[str]) -> str:
    """Path of the metadata file for ``cache_dir``."""
    return os.path.join(db_dir(cache_dir), METADATA_FILE)


class Client:
    """Reads and writes the metadata file of one cache directory."""

    def __init__(self, cache_dir: str | os.PathLike[str]) -> None:
        self.file_path = path(cache_dir)

    def get(self) -> Metadata:
        """Read the metadata; OSError if the file is missing, ValueError if it is malformed."""
        with open(self.file_path, encoding="utf-8") as f:
            try:
                return Metadata._from_dict(json.load(f))
            except ValueError as err:
                raise ValueError(f"unable to decode metadata: {err}") from err

    def update(self, meta: Metadata) -> None:
        """Write ``meta``, creating the directory if needed."""
        os.makedirs(os.path.dirname(self.file_path), mode=0o744, exist_ok=True)
        with open(self.file_path, "w", encoding="utf-8") as f:
            f.write(json.dumps(meta._to_dict(), separators=(",", ":")) + "\n")

    def delete(self) -> None:
        """Remove the metadata file."""
        os.remove(self.file_path)