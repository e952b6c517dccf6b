"""Ruby advisory database (RubyGems)."""

from __future__ import annotations

import errno
import os
from dataclasses import dataclass, field
from typing import Any, Iterator

import yaml

from advisorydb.db import Config, DBError, Transaction
from advisorydb.types import Advisory, DataSource, VulnerabilityDetail
from advisorydb.vulnsrc import bucket

BUNDLER_DIR = "ruby-advisory-db"
RUBYGEMS = "rubygems"

SOURCE = DataSource(
    id="ruby-advisory-db",
    name="Ruby Advisory Database",
    url="https://github.com/rubysec/ruby-advisory-db",
)

BUCKET_NAME = bucket.name(RUBYGEMS, SOURCE.name)


def _scalar(value: Any, key: str) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise ValueError(f"{key} must be a scalar")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _text(data: dict[str, Any], key: str) -> str:
    return _scalar(data.get(key), key)


def _texts(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list")
    return [_scalar(v, key) for v in value]


def _float(data: dict[str, Any], key: str) -> float:
    value = data.get(key)
    if value is None:
        return 0.0
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{key} must be a number")
    return float(value)


@dataclass
class Related:
    cve: list[str] = field(default_factory=list)
    url: list[str] = field(default_factory=list)


@dataclass
class RawAdvisory:
    """One advisory file of the Ruby advisory database."""

    gem: str = ""
    cve: str = ""
    osvdb: str = ""
    ghsa: str = ""
    title: str = ""
    url: str = ""
    description: str = ""
    cvss_v2: float = 0.0
    cvss_v3: float = 0.0
    patched_versions: list[str] = field(default_factory=list)
    unaffected_versions: list[str] = field(default_factory=list)
    related: Related = field(default_factory=Related)

    @classmethod
    def from_dict(cls, data: Any) -> RawAdvisory:
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("advisory must be a mapping")
        related = data.get("related")
        if related is None:
            related = {}
        if not isinstance(related, dict):
            raise ValueError("related must be a mapping")
        return cls(
            gem=_text(data, "gem"),
            cve=_text(data, "cve"),
            osvdb=_text(data, "osvdb"),
            ghsa=_text(data, "ghsa"),
            title=_text(data, "title"),
            url=_text(data, "url"),
            description=_text(data, "description"),
            cvss_v2=_float(data, "cvss_v2"),
            cvss_v3=_float(data, "cvss_v3"),
            patched_versions=_texts(data, "patched_versions"),
            unaffected_versions=_texts(data, "unaffected_versions"),
            related=Related(cve=_texts(related, "cve"), url=_texts(related, "url")),
        )


def _walk_files(path: str) -> Iterator[str]:
    if os.path.isdir(path) and not os.path.islink(path):
        for name in sorted(os.listdir(path)):
            yield from _walk_files(os.path.join(path, name))
    else:
        yield path


class VulnSrc:
    """Loads Ruby advisories from a ruby-advisory-db checkout."""

    def __init__(self, dbc: Config | None = None) -> None:
        self._dbc = dbc if dbc is not None else Config()

    def name(self) -> str:
        return SOURCE.id

    def update(self, directory: str | os.PathLike[str]) -> None:
        repo_path = os.path.join(os.fspath(directory), BUNDLER_DIR)
        try:
            self._update(repo_path)
        except DBError as err:
            raise DBError(f"failed to update bundler vulnerabilities: {err}") from err

    def _update(self, repo_path: str) -> None:
        root = os.path.join(repo_path, "gems")

        def write(tx: Transaction) -> None:
            try:
                self._dbc.put_data_source(tx, BUCKET_NAME, SOURCE)
            except DBError as err:
                raise DBError(f"failed to put data source: {err}") from err
            try:
                self._walk(tx, root)
            except (DBError, ValueError, OSError) as err:
                raise DBError(f"failed to walk ruby advisories: {err}") from err

        try:
            self._dbc.batch_update(write)
        except DBError as err:
            raise DBError(f"batch update failed: {err}") from err

    def _walk(self, tx: Transaction, root: str) -> None:
        if not os.path.lexists(root):
            raise FileNotFoundError(errno.ENOENT, "no such file or directory", root)
        for path in _walk_files(root):
            self._save_file(tx, path)

    def _save_file(self, tx: Transaction, path: str) -> None:
        if os.path.basename(path).upper().startswith("OSVDB"):
            return
        try:
            with open(path, "rb") as f:
                buf = f.read()
        except OSError as err:
            raise OSError(f"failed to read a file: {err}") from err

        try:
            advisory = RawAdvisory.from_dict(yaml.safe_load(buf))
        except (yaml.YAMLError, ValueError) as err:
            raise ValueError(f"failed to unmarshal YAML: {err}") from err
        if "osvdb.org" in advisory.url.lower():
            advisory.url = ""

        if advisory.cve:
            vuln_id = f"CVE-{advisory.cve}"
        elif advisory.ghsa:
            vuln_id = f"GHSA-{advisory.ghsa}"
        else:
            return

        detection = Advisory(
            patched_versions=list(advisory.patched_versions),
            unaffected_versions=list(advisory.unaffected_versions),
        )
        try:
            self._dbc.put_advisory_detail(tx, vuln_id, advisory.gem, [BUCKET_NAME], detection)
        except DBError as err:
            raise DBError(f"failed to save ruby advisory: {err}") from err

        vuln = VulnerabilityDetail(
            cvss_score=advisory.cvss_v2,
            cvss_score_v3=advisory.cvss_v3,
            references=[advisory.url, *advisory.related.url],
            title=advisory.title,
            description=advisory.description,
        )
        try:
            self._dbc.put_vulnerability_detail(tx, vuln_id, SOURCE.id, vuln)
        except DBError as err:
            raise DBError(f"failed to save ruby vulnerability detail: {err}") from err

        try:
            self._dbc.put_vulnerability_id(tx, vuln_id)
        except DBError as err:
            raise DBError(f"failed to save the vulnerability ID: {err}") from err