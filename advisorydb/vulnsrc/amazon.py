"""Amazon Linux security advisories (ALAS)."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, BinaryIO

from advisorydb.db import Config, DBError, Transaction
from advisorydb.types import Advisory, DataSource, Severity, VulnerabilityDetail
from advisorydb.utils import construct_version, file_walk

logger = logging.getLogger(__name__)

AMAZON_DIR = "amazon"
PLATFORM_FORMAT = "amazon linux {}"
TARGET_VERSIONS = ("1", "2", "2022", "2023")

SOURCE = DataSource(
    id="amazon",
    name="Amazon Linux Security Center",
    url="https://alas.aws.amazon.com/",
)


def _text(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _objects(data: dict[str, Any], key: str) -> list[dict[str, Any]]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise ValueError(f"{key} must be a list of objects")
    return value


@dataclass
class Package:
    """An affected package."""

    name: str = ""
    epoch: str = ""
    version: str = ""
    release: str = ""
    arch: str = ""


@dataclass
class Reference:
    href: str = ""


@dataclass
class ALAS:
    """One Amazon Linux security advisory."""

    id: str = ""
    title: str = ""
    severity: str = ""
    description: str = ""
    packages: list[Package] = field(default_factory=list)
    references: list[Reference] = field(default_factory=list)
    cve_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> ALAS:
        if not isinstance(data, dict):
            raise ValueError("advisory must be a JSON object")
        cve_ids = data.get("cveids") or []
        if not isinstance(cve_ids, list) or not all(isinstance(c, str) for c in cve_ids):
            raise ValueError("cveids must be a list of strings")
        return cls(
            id=_text(data, "id"),
            title=_text(data, "title"),
            severity=_text(data, "severity"),
            description=_text(data, "description"),
            packages=[
                Package(
                    name=_text(p, "name"),
                    epoch=_text(p, "epoch"),
                    version=_text(p, "version"),
                    release=_text(p, "release"),
                    arch=_text(p, "arch"),
                )
                for p in _objects(data, "packages")
            ],
            references=[Reference(href=_text(r, "href")) for r in _objects(data, "references")],
            cve_ids=list(cve_ids),
        )


def _severity_from_priority(priority: str) -> Severity:
    return {
        "low": Severity.LOW,
        "medium": Severity.MEDIUM,
        "important": Severity.HIGH,
        "critical": Severity.CRITICAL,
    }.get(priority.lower(), Severity.UNKNOWN)


class VulnSrc:
    """Loads ALAS advisories from a vuln-list checkout."""

    def __init__(self, dbc: Config | None = None) -> None:
        self._dbc = dbc if dbc is not None else Config()
        self._advisories: dict[str, list[ALAS]] = {}

    def name(self) -> str:
        return SOURCE.id

    def update(self, directory: str | os.PathLike[str]) -> None:
        root = os.path.join(os.fspath(directory), "vuln-list", AMAZON_DIR)
        for path, stream in file_walk(root):
            self._walk(path, stream)
        try:
            self._save()
        except DBError as err:
            raise DBError(f"error in Amazon save: {err}") from err

    def get(self, version: str, pkg_name: str) -> list[Advisory]:
        try:
            return self._dbc.get_advisories(PLATFORM_FORMAT.format(version), pkg_name)
        except DBError as err:
            raise DBError(f"failed to get Amazon advisories: {err}") from err

    def _walk(self, path: str, stream: BinaryIO) -> None:
        parts = path.split(os.sep)
        if len(parts) < 2:
            return
        version = parts[-2]
        if version not in TARGET_VERSIONS:
            logger.info("unsupported Amazon version: %s", version)
            return
        try:
            alas = ALAS.from_dict(json.load(stream))
        except ValueError as err:
            raise ValueError(f"failed to decode Amazon JSON: {err}") from err
        self._advisories.setdefault(version, []).append(alas)

    def _save(self) -> None:
        logger.info("Saving Amazon DB")
        self._dbc.batch_update(self._commit)

    def _commit(self, tx: Transaction) -> None:
        for major_version, alas_list in self._advisories.items():
            platform_name = PLATFORM_FORMAT.format(major_version)
            try:
                self._dbc.put_data_source(tx, platform_name, SOURCE)
            except DBError as err:
                raise DBError(f"failed to put data source: {err}") from err
            for alas in alas_list:
                references = [ref.href for ref in alas.references]
                for cve_id in alas.cve_ids:
                    for pkg in alas.packages:
                        advisory = Advisory(
                            fixed_version=construct_version(pkg.epoch, pkg.version, pkg.release)
                        )
                        try:
                            self._dbc.put_advisory_detail(tx, cve_id, pkg.name, [platform_name], advisory)
                        except DBError as err:
                            raise DBError(f"failed to save Amazon advisory: {err}") from err

                        vuln = VulnerabilityDetail(
                            severity=_severity_from_priority(alas.severity),
                            references=list(references),
                            description=alas.description,
                        )
                        try:
                            self._dbc.put_vulnerability_detail(tx, cve_id, SOURCE.id, vuln)
                        except DBError as err:
                            raise DBError(f"failed to save Amazon vulnerability detail: {err}") from err
                        try:
                            self._dbc.put_vulnerability_id(tx, cve_id)
                        except DBError as err:
                            raise DBError(f"failed to save the vulnerability ID: {err}") from err