"""Alpine secdb advisories."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from advisorydb.db import Config, DBError, Transaction
from advisorydb.types import Advisory, DataSource
from advisorydb.utils import file_walk

ALPINE_DIR = "alpine"
PLATFORM_FORMAT = "alpine {}"

SOURCE = DataSource(id="alpine", name="Alpine Secdb", url="https://secdb.alpinelinux.org/")


@dataclass
class _SecDBAdvisory:
    pkg_name: str = ""
    secfixes: dict[str, list[str]] = field(default_factory=dict)
    distroversion: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> _SecDBAdvisory:
        if not isinstance(data, dict):
            raise ValueError("advisory must be a JSON object")
        name = data.get("name") or ""
        version = data.get("distroversion") or ""
        if not isinstance(name, str) or not isinstance(version, str):
            raise ValueError("name and distroversion must be strings")
        raw = data.get("secfixes") or {}
        if not isinstance(raw, dict):
            raise ValueError("secfixes must be a JSON object")
        secfixes: dict[str, list[str]] = {}
        for fixed, ids in raw.items():
            if ids is None:
                ids = []
            if not isinstance(ids, list) or not all(i is None or isinstance(i, str) for i in ids):
                raise ValueError("secfixes entries must be lists of strings")
            secfixes[fixed] = [i or "" for i in ids]
        return cls(pkg_name=name, secfixes=secfixes, distroversion=version)


class VulnSrc:
    """Loads Alpine secdb files from a vuln-list checkout."""

    def __init__(self, dbc: Config | None = None) -> None:
        self._dbc = dbc if dbc is not None else Config()

    def name(self) -> str:
        return SOURCE.id

    def update(self, directory: str | os.PathLike[str]) -> None:
        root = os.path.join(os.fspath(directory), "vuln-list", ALPINE_DIR)
        advisories = []
        for _, stream in file_walk(root):
            try:
                advisories.append(_SecDBAdvisory.from_dict(json.load(stream)))
            except ValueError as err:
                raise ValueError(f"failed to decode Alpine advisory: {err}") from err
        try:
            self._save(advisories)
        except DBError as err:
            raise DBError(f"error in Alpine save: {err}") from err

    def get(self, release: str, pkg_name: str) -> list[Advisory]:
        try:
            return self._dbc.get_advisories(PLATFORM_FORMAT.format(release), pkg_name)
        except DBError as err:
            raise DBError(f"failed to get Alpine advisories: {err}") from err

    def _save(self, advisories: list[_SecDBAdvisory]) -> None:
        def write(tx: Transaction) -> None:
            for adv in advisories:
                version = adv.distroversion.removeprefix("v")
                platform_name = PLATFORM_FORMAT.format(version)
                try:
                    self._dbc.put_data_source(tx, platform_name, SOURCE)
                except DBError as err:
                    raise DBError(f"failed to put data source: {err}") from err
                self._save_sec_fixes(tx, platform_name, adv.pkg_name, adv.secfixes)

        self._dbc.batch_update(write)

    def _save_sec_fixes(
        self, tx: Transaction, platform: str, pkg_name: str, secfixes: dict[str, list[str]]
    ) -> None:
        for fixed_version, vuln_ids in secfixes.items():
            advisory = Advisory(fixed_version=fixed_version)
            for vuln_id in vuln_ids:
                # Entries may carry a note, e.g. "CVE-2017-2616 (+ regression fix)".
                for cve_id in vuln_id.split():
                    cve_id = cve_id.replace("CVE_", "CVE-")
                    if not cve_id.startswith("CVE-"):
                        continue
                    try:
                        self._dbc.put_advisory_detail(tx, cve_id, pkg_name, [platform], advisory)
                    except DBError as err:
                        raise DBError(f"failed to save Alpine advisory: {err}") from err
                    try:
                        self._dbc.put_vulnerability_id(tx, cve_id)
                    except DBError as err:
                        raise DBError(f"failed to save the vulnerability ID: {err}") from err