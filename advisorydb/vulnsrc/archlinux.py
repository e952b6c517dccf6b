"""Arch Linux vulnerable issue groups."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from advisorydb.db import Config, DBError, Transaction
from advisorydb.types import Advisory, DataSource, Severity, VulnerabilityDetail, new_severity
from advisorydb.utils import file_walk

ARCH_LINUX_DIR = "arch-linux"
PLATFORM_NAME = "archlinux"

SOURCE = DataSource(
    id="arch-linux",
    name="Arch Linux Vulnerable issues",
    url="https://security.archlinux.org/",
)


def _text(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _strings(data: dict[str, Any], key: str) -> list[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(v is None or isinstance(v, str) for v in value):
        raise ValueError(f"{key} must be a list of strings")
    return [v or "" for v in value]


@dataclass
class ArchVulnGroup:
    """One Arch Linux vulnerability group (AVG)."""

    name: str = ""
    packages: list[str] = field(default_factory=list)
    status: str = ""
    severity: str = ""
    type: str = ""
    affected: str = ""
    fixed: str = ""
    issues: list[str] = field(default_factory=list)
    advisories: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> ArchVulnGroup:
        if not isinstance(data, dict):
            raise ValueError("vulnerability group must be a JSON object")
        return cls(
            name=_text(data, "name"),
            packages=_strings(data, "packages"),
            status=_text(data, "status"),
            severity=_text(data, "severity"),
            type=_text(data, "type"),
            affected=_text(data, "affected"),
            fixed=_text(data, "fixed"),
            issues=_strings(data, "issues"),
            advisories=_strings(data, "advisories"),
        )


def _convert_severity(severity: str) -> Severity:
    try:
        return new_severity(severity.upper())
    except ValueError:
        return Severity.UNKNOWN


class VulnSrc:
    """Loads Arch Linux vulnerability groups from a vuln-list checkout."""

    def __init__(self, dbc: Config | None = None) -> None:
        self._dbc = dbc if dbc is not None else Config()

    def name(self) -> str:
        return SOURCE.id

    def update(self, directory: str | os.PathLike[str]) -> None:
        root = os.path.join(os.fspath(directory), "vuln-list", ARCH_LINUX_DIR)
        groups = []
        for path, stream in file_walk(root):
            try:
                groups.append(ArchVulnGroup.from_dict(json.load(stream)))
            except ValueError as err:
                raise ValueError(f"failed to decode arch linux json ({path}): {err}") from err
        try:
            self._save(groups)
        except DBError as err:
            raise DBError(f"error in arch linux save: {err}") from err

    def get(self, pkg_name: str) -> list[Advisory]:
        try:
            return self._dbc.get_advisories(PLATFORM_NAME, pkg_name)
        except DBError as err:
            raise DBError(f"failed to get Arch Linux advisories: {err}") from err

    def _save(self, groups: list[ArchVulnGroup]) -> None:
        def write(tx: Transaction) -> None:
            try:
                self._dbc.put_data_source(tx, PLATFORM_NAME, SOURCE)
            except DBError as err:
                raise DBError(f"failed to put data source: {err}") from err
            try:
                self._commit(tx, groups)
            except DBError as err:
                raise DBError(f"commit error: {err}") from err

        self._dbc.batch_update(write)

    def _commit(self, tx: Transaction, groups: list[ArchVulnGroup]) -> None:
        for group in groups:
            for cve_id in group.issues:
                advisory = Advisory(fixed_version=group.fixed, affected_version=group.affected)
                for pkg in group.packages:
                    try:
                        self._dbc.put_advisory_detail(tx, cve_id, pkg, [PLATFORM_NAME], advisory)
                    except DBError as err:
                        raise DBError(f"failed to save arch linux advisory: {err}") from err

                    vuln = VulnerabilityDetail(severity=_convert_severity(group.severity))
                    try:
                        self._dbc.put_vulnerability_detail(tx, cve_id, SOURCE.id, vuln)
                    except DBError as err:
                        raise DBError(f"failed to save arch linux vulnerability: {err}") from err

                    try:
                        self._dbc.put_vulnerability_id(tx, cve_id)
                    except DBError as err:
                        raise DBError(f"failed to save the vulnerability ID: {err}") from err