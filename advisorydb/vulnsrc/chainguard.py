"""Chainguard security data."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from advisorydb.db import Config, DBError, Transaction
from advisorydb.types import Advisory, DataSource
from advisorydb.utils import file_walk

CHAINGUARD_DIR = "chainguard"
DISTRO_NAME = "chainguard"

SOURCE = DataSource(
    id="chainguard",
    name="Chainguard Security Data",
    url="https://packages.cgr.dev/chainguard/security.json",
)


@dataclass
class _SecDBAdvisory:
    pkg_name: str = ""
    secfixes: dict[str, list[str]] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> _SecDBAdvisory:
        if not isinstance(data, dict):
            raise ValueError("advisory must be a JSON object")
        name = data.get("name") or ""
        if not isinstance(name, str):
            raise ValueError("name must be a string")
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
        return cls(pkg_name=name, secfixes=secfixes)


class VulnSrc:
    """Loads Chainguard security data from a vuln-list checkout."""

    def __init__(self, dbc: Config | None = None) -> None:
        self._dbc = dbc if dbc is not None else Config()

    def name(self) -> str:
        return SOURCE.id

    def update(self, directory: str | os.PathLike[str]) -> None:
        root = os.path.join(os.fspath(directory), "vuln-list", CHAINGUARD_DIR)
        advisories = []
        for _, stream in file_walk(root):
            try:
                advisories.append(_SecDBAdvisory.from_dict(json.load(stream)))
            except ValueError as err:
                raise ValueError(f"failed to decode Chainguard advisory: {err}") from err
        try:
            self._save(advisories)
        except DBError as err:
            raise DBError(f"error in Chainguard save: {err}") from err

    def get(self, release: str, pkg_name: str) -> list[Advisory]:
        """Advisories of ``pkg_name``; Chainguard has no releases, so ``release`` is ignored."""
        try:
            return self._dbc.get_advisories(DISTRO_NAME, pkg_name)
        except DBError as err:
            raise DBError(f"failed to get Chainguard advisories: {err}") from err

    def _save(self, advisories: list[_SecDBAdvisory]) -> None:
        def write(tx: Transaction) -> None:
            for adv in advisories:
                try:
                    self._dbc.put_data_source(tx, DISTRO_NAME, SOURCE)
                except DBError as err:
                    raise DBError(f"failed to put data source: {err}") from err
                self._save_sec_fixes(tx, DISTRO_NAME, adv.pkg_name, adv.secfixes)

        self._dbc.batch_update(write)

    def _save_sec_fixes(
        self, tx: Transaction, platform: str, pkg_name: str, secfixes: dict[str, list[str]]
    ) -> None:
        for fixed_version, vuln_ids in secfixes.items():
            advisory = Advisory(fixed_version=fixed_version)
            for vuln_id in vuln_ids:
                if not vuln_id.startswith("CVE-"):
                    continue
                try:
                    self._dbc.put_advisory_detail(tx, vuln_id, pkg_name, [platform], advisory)
                except DBError as err:
                    raise DBError(f"failed to save Chainguard advisory: {err}") from err
                try:
                    self._dbc.put_vulnerability_id(tx, vuln_id)
                except DBError as err:
                    raise DBError(f"failed to save the vulnerability ID: {err}") from err