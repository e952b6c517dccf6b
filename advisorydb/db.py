"""Nested-bucket key/value store and the database operations built on it."""

from __future__ import annotations

import base64
import binascii
import copy
import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Sequence

from advisorydb.types import Advisory, DataSource, Vulnerability, VulnerabilityDetail

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

ADVISORY_DETAIL_BUCKET = "advisory-detail"
DATA_SOURCE_BUCKET = "data-source"
VULNERABILITY_BUCKET = "vulnerability"
VULNERABILITY_DETAIL_BUCKET = "vulnerability-detail"
VULNERABILITY_ID_BUCKET = "vulnerability-id"

REDHAT_CPE_ROOT_BUCKET = "Red Hat CPE"
REDHAT_REPO_BUCKET = "repository"
REDHAT_NVR_BUCKET = "nvr"
REDHAT_CPE_BUCKET = "cpe"

_FILE_FORMAT = "advisorydb-kv"


class DBError(Exception):
    """Raised for any failure of the database or its operations."""


class _Node:
    """Storage of one bucket: names map to nested nodes or to raw values."""

    __slots__ = ("entries",)

    def __init__(self) -> None:
        self.entries: dict[str, _Node | bytes] = {}


class Bucket:
    """A view of one bucket inside a transaction."""

    def __init__(self, node: _Node, writable: bool) -> None:
        self._node = node
        self._writable = writable

    def _check_writable(self) -> None:
        if not self._writable:
            raise DBError("tx not writable")

    def bucket(self, name: str) -> Bucket | None:
        """The nested bucket ``name``, or None."""
        entry = self._node.entries.get(name)
        if isinstance(entry, _Node):
            return Bucket(entry, self._writable)
        return None

    def create_bucket_if_not_exists(self, name: str) -> Bucket:
        """Return the nested bucket ``name``, creating it if needed."""
        self._check_writable()
        if not name:
            raise DBError("bucket name required")
        entry = self._node.entries.get(name)
        if isinstance(entry, _Node):
            return Bucket(entry, self._writable)
        if entry is not None:
            raise DBError("incompatible value")
        node = _Node()
        self._node.entries[name] = node
        return Bucket(node, self._writable)

    def put(self, key: str, value: bytes) -> None:
        """Store ``value`` under ``key``."""
        self._check_writable()
        if not key:
            raise DBError("key required")
        if isinstance(self._node.entries.get(key), _Node):
            raise DBError("incompatible value")
        self._node.entries[key] = bytes(value)

    def get(self, key: str) -> bytes | None:
        """The value stored under ``key``; None for missing keys and buckets."""
        entry = self._node.entries.get(key)
        return entry if isinstance(entry, bytes) else None

    def delete_bucket(self, name: str) -> None:
        """Remove the nested bucket ``name`` with everything in it."""
        self._check_writable()
        entry = self._node.entries.get(name)
        if entry is None:
            raise DBError("bucket not found")
        if not isinstance(entry, _Node):
            raise DBError("incompatible value")
        del self._node.entries[name]

    def items(self) -> Iterator[tuple[str, bytes | None]]:
        """Yield ``(key, value)`` in key order; nested buckets come with None."""
        for key in sorted(self._node.entries):
            entry = self._node.entries.get(key)
            if entry is None:
                continue
            yield key, entry if isinstance(entry, bytes) else None


class Transaction:
    """Access to the top-level buckets of a database."""

    def __init__(self, root: _Node, writable: bool) -> None:
        self._root = Bucket(root, writable)
        self.writable = writable

    def bucket(self, name: str) -> Bucket | None:
        return self._root.bucket(name)

    def create_bucket_if_not_exists(self, name: str) -> Bucket:
        return self._root.create_bucket_if_not_exists(name)

    def delete_bucket(self, name: str) -> None:
        self._root.delete_bucket(name)

    def bucket_names(self) -> list[str]:
        """Names of all top-level buckets, sorted."""
        return [name for name, value in self._root.items() if value is None]


def _encode_node(node: _Node) -> dict[str, Any]:
    return {
        key: _encode_node(entry) if isinstance(entry, _Node) else base64.b64encode(entry).decode("ascii")
        for key, entry in node.entries.items()
    }


def _decode_node(data: Any) -> _Node:
    if not isinstance(data, dict):
        raise DBError("malformed bucket")
    node = _Node()
    for key, entry in data.items():
        if isinstance(entry, dict):
            node.entries[key] = _decode_node(entry)
        elif isinstance(entry, str):
            try:
                node.entries[key] = base64.b64decode(entry, validate=True)
            except binascii.Error as err:
                raise DBError(f"malformed value: {err}") from err
        else:
            raise DBError("malformed entry")
    return node


def _load(path: str) -> _Node:
    with open(path, "rb") as f:
        raw = f.read()
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise DBError(f"invalid database file: {err}") from err
    if not isinstance(document, dict) or document.get("format") != _FILE_FORMAT:
        raise DBError("invalid database file: unknown format")
    return _decode_node(document.get("root", {}))


def _save(path: str, root: _Node) -> None:
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=".db")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"format": _FILE_FORMAT, "root": _encode_node(root)}, f, separators=(",", ":"))
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class Database:
    """A file-backed store of nested buckets with all-or-nothing write transactions."""

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = os.fspath(path)
        self._lock = threading.RLock()
        self._closed = False
        if os.path.exists(self.path):
            self._root = _load(self.path)
        else:
            self._root = _Node()
            _save(self.path, self._root)

    @contextmanager
    def transaction(self, writable: bool = False) -> Iterator[Transaction]:
        """Open a transaction; a writable one is committed only if the block succeeds."""
        with self._lock:
            if self._closed:
                raise DBError("database not open")
            if not writable:
                yield Transaction(self._root, False)
                return
            working = copy.deepcopy(self._root)
            yield Transaction(working, True)
            _save(self.path, working)
            self._root = working

    def close(self) -> None:
        self._closed = True


_db: Database | None = None


def db_dir(cache_dir: str | os.PathLike[str]) -> str:
    return os.path.join(os.fspath(cache_dir), "db")


def db_path(cache_dir: str | os.PathLike[str]) -> str:
    return os.path.join(db_dir(cache_dir), "trivy.db")


def init(cache_dir: str | os.PathLike[str]) -> None:
    """Open the database under ``cache_dir``; a broken database file is replaced by an empty one."""
    global _db
    path = db_path(cache_dir)
    os.makedirs(os.path.dirname(path), mode=0o700, exist_ok=True)
    try:
        _db = Database(path)
    except DBError:
        os.remove(path)
        _db = Database(path)


def close() -> None:
    """Close the database if it is open."""
    global _db
    if _db is None:
        return
    _db.close()
    _db = None


def _require() -> Database:
    if _db is None:
        raise DBError("database is not initialised")
    return _db


def _marshal(value: Any) -> bytes:
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _unmarshal(content: bytes, message: str) -> Any:
    try:
        return json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise DBError(f"{message}: {err}") from err


def _unmarshal_object(content: bytes, message: str) -> dict[str, Any]:
    data = _unmarshal(content, message)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise DBError(f"{message}: expected a JSON object")
    return data


@dataclass
class Value:
    """A stored value with the data source of its root bucket."""

    source: DataSource
    content: bytes


class Config:
    """Database operations on the database opened by :func:`init`."""

    def connection(self) -> Database | None:
        return _db

    def batch_update(self, fn: Callable[[Transaction], Any]) -> None:
        try:
            with _require().transaction(writable=True) as tx:
                fn(tx)
        except Exception as err:
            raise DBError(f"error in batch update: {err}") from err

    # Generic helpers

    def _put(self, tx: Transaction, bkt_names: Sequence[str], key: str, value: Any) -> None:
        if not bkt_names:
            raise DBError("empty bucket name")
        try:
            bkt = tx.create_bucket_if_not_exists(bkt_names[0])
        except DBError as err:
            raise DBError(f"failed to create '{bkt_names[0]}' bucket: {err}") from err
        for name in bkt_names[1:]:
            try:
                bkt = bkt.create_bucket_if_not_exists(name)
            except DBError as err:
                raise DBError(f"failed to create a bucket: {err}") from err
        bkt.put(key, _marshal(value))

    def _get(self, bkt_names: Sequence[str], key: str) -> bytes | None:
        if not bkt_names:
            raise DBError("failed to get data from db: empty bucket name")
        with _require().transaction() as tx:
            bkt = tx.bucket(bkt_names[0])
            for name in bkt_names[1:]:
                if bkt is None:
                    break
                bkt = bkt.bucket(name)
            if bkt is None:
                return None
            return bkt.get(key)

    def _for_each(self, bkt_names: Sequence[str]) -> dict[str, Value]:
        if len(bkt_names) < 2:
            raise DBError(f"bucket must be nested: {list(bkt_names)}")
        root_name, nested = bkt_names[0], bkt_names[1:]

        values: dict[str, Value] = {}
        with _require().transaction() as tx:
            if "::" in root_name:
                roots = [name for name in tx.bucket_names() if name.startswith(root_name)]
            else:
                roots = [root_name]

            for name in roots:
                bkt = tx.bucket(name)
                if bkt is None:
                    continue
                try:
                    source = self._get_data_source(tx, name)
                except DBError as err:
                    logger.debug("Data source error: %s", err)
                    source = DataSource()
                for nested_name in nested:
                    bkt = bkt.bucket(nested_name)
                    if bkt is None:
                        break
                if bkt is None:
                    continue
                for key, content in bkt.items():
                    if not content:
                        continue
                    values[key] = Value(source=source, content=bytes(content))
        return values

    def _delete_bucket(self, bucket_name: str) -> None:
        with _require().transaction(writable=True) as tx:
            try:
                tx.delete_bucket(bucket_name)
            except DBError as err:
                raise DBError(f"failed to delete bucket: {err}") from err

    # Advisories

    def put_advisory(self, tx: Transaction, bkt_names: Sequence[str], key: str, advisory: Any) -> None:
        try:
            self._put(tx, bkt_names, key, advisory)
        except DBError as err:
            raise DBError(f"failed to put advisory: {err}") from err

    def for_each_advisory(self, sources: Sequence[str], pkg_name: str) -> dict[str, Value]:
        return self._for_each([*sources, pkg_name])

    def get_advisories(self, source: str, pkg_name: str) -> list[Advisory]:
        """Advisories of ``pkg_name`` in ``source``; a source ending in "::" scans by prefix."""
        try:
            advisories = self.for_each_advisory([source], pkg_name)
        except DBError as err:
            raise DBError(f"advisory foreach error: {err}") from err

        results = []
        for vuln_id, value in advisories.items():
            data = _unmarshal_object(value.content, "failed to unmarshal advisory JSON")
            advisory = Advisory.from_dict(data)
            advisory.vulnerability_id = vuln_id
            if not value.source.is_empty():
                advisory.data_source = DataSource(
                    id=value.source.id, name=value.source.name, url=value.source.url
                )
            results.append(advisory)
        return results

    # Advisory details

    def put_advisory_detail(
        self,
        tx: Transaction,
        vuln_id: str,
        pkg_name: str,
        nested_bkt_names: Sequence[str],
        advisory: Any,
    ) -> None:
        bkt_names = [ADVISORY_DETAIL_BUCKET, vuln_id, *nested_bkt_names]
        try:
            self._put(tx, bkt_names, pkg_name, advisory)
        except DBError as err:
            raise DBError(f"failed to put advisory detail: {err}") from err

    def save_advisory_details(self, tx: Transaction, vuln_id: str) -> None:
        """Copy every advisory stored for ``vuln_id`` into its vendor's bucket."""
        root = tx.bucket(ADVISORY_DETAIL_BUCKET)
        if root is None:
            return
        cve_bucket = root.bucket(vuln_id)
        if cve_bucket is None:
            return
        try:
            self._save_advisories(tx, cve_bucket, [], vuln_id)
        except DBError as err:
            raise DBError(f"walk advisories error: {err}") from err

    def _save_advisories(
        self, tx: Transaction, bkt: Bucket, bkt_names: list[str], vuln_id: str
    ) -> None:
        for key, content in bkt.items():
            names = [*bkt_names, key]
            if content is None:
                nested = bkt.bucket(key)
                if nested is None:
                    continue
                try:
                    self._save_advisories(tx, nested, names, vuln_id)
                except DBError as err:
                    raise DBError(f"walk advisories error: {err}") from err
                continue
            detail = _unmarshal_object(content, "failed to unmarshall the advisory detail")
            try:
                self._put(tx, names, vuln_id, detail)
            except DBError as err:
                raise DBError(f"database put error: {err}") from err

    def delete_advisory_detail_bucket(self) -> None:
        self._delete_bucket(ADVISORY_DETAIL_BUCKET)

    # Data sources

    def put_data_source(self, tx: Transaction, bkt_name: str, source: DataSource) -> None:
        try:
            bucket = tx.create_bucket_if_not_exists(DATA_SOURCE_BUCKET)
        except DBError as err:
            raise DBError(f"failed to create {DATA_SOURCE_BUCKET} bucket: {err}") from err
        bucket.put(bkt_name, _marshal(source))

    def _get_data_source(self, tx: Transaction, bkt_name: str) -> DataSource:
        bucket = tx.bucket(DATA_SOURCE_BUCKET)
        if bucket is None:
            return DataSource()
        content = bucket.get(bkt_name)
        if content is None:
            return DataSource()
        return DataSource.from_dict(_unmarshal_object(content, "JSON unmarshal error"))

    # Red Hat CPE

    def put_red_hat_repositories(self, tx: Transaction, repository: str, cpe_indices: Sequence[int]) -> None:
        try:
            self._put(tx, [REDHAT_CPE_ROOT_BUCKET, REDHAT_REPO_BUCKET], repository, list(cpe_indices))
        except DBError as err:
            raise DBError(f"Red Hat CPE error: {err}") from err

    def put_red_hat_nvrs(self, tx: Transaction, nvr: str, cpe_indices: Sequence[int]) -> None:
        try:
            self._put(tx, [REDHAT_CPE_ROOT_BUCKET, REDHAT_NVR_BUCKET], nvr, list(cpe_indices))
        except DBError as err:
            raise DBError(f"Red Hat CPE error: {err}") from err

    def put_red_hat_cpes(self, tx: Transaction, cpe_index: int, cpe: str) -> None:
        try:
            self._put(tx, [REDHAT_CPE_ROOT_BUCKET, REDHAT_CPE_BUCKET], str(cpe_index), cpe)
        except DBError as err:
            raise DBError(f"Red Hat CPE error: {err}") from err

    def red_hat_repo_to_cpes(self, repository: str) -> list[int]:
        """CPE indices of a repository; empty when unknown."""
        return self._get_cpes(REDHAT_REPO_BUCKET, repository)

    def red_hat_nvr_to_cpes(self, nvr: str) -> list[int]:
        """CPE indices of an NVR; empty when unknown."""
        return self._get_cpes(REDHAT_NVR_BUCKET, nvr)

    def _get_cpes(self, bucket: str, key: str) -> list[int]:
        try:
            content = self._get([REDHAT_CPE_ROOT_BUCKET, bucket], key)
        except DBError as err:
            raise DBError(f"unable to get '{key}': {err}") from err
        if not content:
            return []
        data = _unmarshal(content, "JSON unmarshal error")
        if data is None:
            return []
        if not isinstance(data, list) or not all(
            isinstance(i, int) and not isinstance(i, bool) for i in data
        ):
            raise DBError("JSON unmarshal error: expected a list of integers")
        return data

    # Vulnerabilities

    def put_vulnerability(self, tx: Transaction, cve_id: str, vuln: Vulnerability) -> None:
        try:
            self._put(tx, [VULNERABILITY_BUCKET], cve_id, vuln)
        except DBError as err:
            raise DBError(f"failed to put severity: {err}") from err

    def get_vulnerability(self, cve_id: str) -> Vulnerability:
        prefix = f'failed to get the vulnerability "{cve_id}"'
        with _require().transaction() as tx:
            bucket = tx.bucket(VULNERABILITY_BUCKET)
            content = bucket.get(cve_id) if bucket is not None else None
        if content is None:
            raise DBError(f"{prefix}: no vulnerability details for {cve_id}")
        try:
            data = _unmarshal_object(content, "failed to unmarshal JSON")
        except DBError as err:
            raise DBError(f"{prefix}: {err}") from err
        return Vulnerability.from_dict(data)

    def put_vulnerability_detail(
        self, tx: Transaction, cve_id: str, source: str, vuln: VulnerabilityDetail
    ) -> None:
        try:
            self._put(tx, [VULNERABILITY_DETAIL_BUCKET, cve_id], str(source), vuln)
        except DBError as err:
            raise DBError(f"failed to put vulnerability detail: {err}") from err

    def get_vulnerability_detail(self, cve_id: str) -> dict[str, VulnerabilityDetail]:
        """Details of ``cve_id`` keyed by source ID; empty when there are none."""
        try:
            values = self._for_each([VULNERABILITY_DETAIL_BUCKET, cve_id])
        except DBError as err:
            raise DBError(f"error in NVD get: {err}") from err
        return {
            source: VulnerabilityDetail.from_dict(
                _unmarshal_object(value.content, "failed to unmarshal Vulnerability JSON")
            )
            for source, value in values.items()
        }

    def delete_vulnerability_detail_bucket(self) -> None:
        self._delete_bucket(VULNERABILITY_DETAIL_BUCKET)

    # Vulnerability IDs

    def put_vulnerability_id(self, tx: Transaction, vuln_id: str) -> None:
        try:
            bucket = tx.create_bucket_if_not_exists(VULNERABILITY_ID_BUCKET)
        except DBError as err:
            raise DBError(f"failed to create {VULNERABILITY_ID_BUCKET} bucket: {err}") from err
        bucket.put(vuln_id, b"{}")

    def for_each_vulnerability_id(self, fn: Callable[[Transaction, str], Any]) -> None:
        """Call ``fn(tx, vuln_id)`` for each stored ID inside one write transaction."""
        with _require().transaction(writable=True) as tx:
            bucket = tx.bucket(VULNERABILITY_ID_BUCKET)
            if bucket is None:
                raise DBError(f"no such bucket: {VULNERABILITY_ID_BUCKET}")
            for vuln_id, _ in bucket.items():
                try:
                    fn(tx, vuln_id)
                except Exception as err:
                    raise DBError(f"error in for each: something wrong: {err}") from err

    def delete_vulnerability_id_bucket(self) -> None:
        self._delete_bucket(VULNERABILITY_ID_BUCKET)