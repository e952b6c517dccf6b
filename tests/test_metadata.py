import json
import os
from datetime import datetime, timedelta, timezone

import pytest

from advisorydb import metadata


def test_path(tmp_path):
    assert metadata.path(tmp_path) == os.path.join(str(tmp_path), "db", "metadata.json")


def test_update_writes_expected_json(tmp_path):
    client = metadata.Client(tmp_path)
    client.update(
        metadata.Metadata(
            version=2,
            next_update=datetime(2021, 1, 2, 15, 4, 5, tzinfo=timezone.utc),
            updated_at=datetime(2021, 1, 2, 3, 4, 5, tzinfo=timezone.utc),
        )
    )
    with open(metadata.path(tmp_path), encoding="utf-8") as f:
        content = f.read()
    assert content == (
        '{"Version":2,"NextUpdate":"2021-01-02T15:04:05Z",'
        '"UpdatedAt":"2021-01-02T03:04:05Z","DownloadedAt":"0001-01-01T00:00:00Z"}\n'
    )


def test_round_trip(tmp_path):
    client = metadata.Client(tmp_path)
    meta = metadata.Metadata(
        version=2,
        next_update=datetime(2021, 1, 2, 15, 4, 5, 120000, tzinfo=timezone.utc),
        updated_at=datetime(2021, 1, 2, 3, 4, 5, tzinfo=timezone(timedelta(hours=9))),
        downloaded_at=datetime(2021, 1, 3, 0, 0, 0, tzinfo=timezone.utc),
    )
    client.update(meta)
    assert client.get() == meta


def test_zero_version_is_omitted(tmp_path):
    client = metadata.Client(tmp_path)
    client.update(metadata.Metadata())
    with open(client.file_path, encoding="utf-8") as f:
        data = json.load(f)
    assert "Version" not in data
    assert client.get() == metadata.Metadata()


def test_missing_fields_default(tmp_path):
    client = metadata.Client(tmp_path)
    os.makedirs(os.path.dirname(client.file_path))
    with open(client.file_path, "w", encoding="utf-8") as f:
        f.write("{}")
    got = client.get()
    assert got.version == 0
    assert got.updated_at == metadata.ZERO_TIME


def test_get_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        metadata.Client(tmp_path).get()


def test_get_malformed_file(tmp_path):
    client = metadata.Client(tmp_path)
    os.makedirs(os.path.dirname(client.file_path))
    with open(client.file_path, "w", encoding="utf-8") as f:
        f.write("{broken")
    with pytest.raises(ValueError, match="unable to decode metadata"):
        client.get()


def test_get_malformed_time(tmp_path):
    client = metadata.Client(tmp_path)
    os.makedirs(os.path.dirname(client.file_path))
    with open(client.file_path, "w", encoding="utf-8") as f:
        f.write('{"UpdatedAt":"yesterday"}')
    with pytest.raises(ValueError, match="unable to decode metadata"):
        client.get()


def test_delete(tmp_path):
    client = metadata.Client(tmp_path)
    client.update(metadata.Metadata(version=2))
    client.delete()
    assert not os.path.exists(client.file_path)
    with pytest.raises(FileNotFoundError):
        client.delete()