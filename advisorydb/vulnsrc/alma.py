"""AlmaLinux product errata."""

from __future__ import annotations

import json
import logging
import os
import string
from dataclasses import dataclass, field
from typing import Any

from advisorydb.db import Config, DBError, Transaction
from advisorydb.types import Advisory, DataSource, Severity, VulnerabilityDetail
from advisorydb.utils import construct_version, file_walk

logger = logging.getLogger(__name__)

ALMA_DIR = "alma"
PLATFORM_FORMAT = "alma {}"

SOURCE = DataSource(
    id="alma",
    name="AlmaLinux Product Errata",
    url="https://errata.almalinux.org/",
)

_TARGET_ARCHES = ("noarch", "x86_64")


def _object(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a JSON object")
    return value


def _array(value: Any, what: str) -> list[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"{what} must be a JSON array")
    return value


def _text(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _int(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    return value


@dataclass
class Reference:
    href: str = ""
    type: str = ""
    id: str = ""
    title: str = ""


@dataclass
class Package:
    name: str = ""
    version: str = ""
    release: str = ""
    epoch: str = ""
    arch: str = ""
    src: str = ""
    filename: str = ""
    sum: str = ""
    sum_type: Any = None
    reboot_suggested: int = 0


@dataclass
class Module:
    stream: str = ""
    name: str = ""
    version: int = 0
    arch: str = ""
    context: str = ""


@dataclass
class Pkglist:
    name: str = ""
    shortname: str = ""
    packages: list[Package] = field(default_factory=list)
    module: Module = field(default_factory=Module)


def _reference(data: Any) -> Reference:
    data = _object(data, "reference")
    return Reference(
        href=_text(data, "href"),
        type=_text(data, "type"),
        id=_text(data, "id"),
        title=_text(data, "title"),
    )


def _package(data: Any) -> Package:
    data = _object(data, "package")
    return Package(
        name=_text(data, "name"),
        version=_text(data, "version"),
        release=_text(data, "release"),
        epoch=_text(data, "epoch"),
        arch=_text(data, "arch"),
        src=_text(data, "src"),
        filename=_text(data, "filename"),
        sum=_text(data, "sum"),
        sum_type=data.get("sum_type"),
        reboot_suggested=_int(data, "reboot_suggested"),
    )


def _module(data: Any) -> Module:
    data = _object(data, "module")
    return Module(
        stream=_text(data, "stream"),
        name=_text(data, "name"),
        version=_int(data, "version"),
        arch=_text(data, "arch"),
        context=_text(data, "context"),
    )


def _pkglist(data: Any) -> Pkglist:
    data = _object(data, "pkglist")
    return Pkglist(
        name=_text(data, "name"),
        shortname=_text(data, "shortname"),
        packages=[_package(p) for p in _array(data.get("packages"), "packages")],
        module=_module(data.get("module")),
    )


@dataclass
class Erratum:
    """One AlmaLinux erratum as published in the errata feed."""

    id: str = ""
    bs_repo_id: str = ""
    updateinfo_id: str = ""
    description: str = ""
    fromstr: str = ""
    issued_date: int = 0
    pkglist: Pkglist = field(default_factory=Pkglist)
    pushcount: str = ""
    references: list[Reference] = field(default_factory=list)
    release: str = ""
    rights: str = ""
    severity: str = ""
    solution: str = ""
    status: str = ""
    summary: str = ""
    title: str = ""
    type: str = ""
    updated_date: int = 0
    version: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> Erratum:
        data = _object(data, "erratum")
        return cls(
            id=_text(_object(data.get("_id"), "_id"), "$oid"),
            bs_repo_id=_text(_object(data.get("bs_repo_id"), "bs_repo_id"), "$oid"),
            updateinfo_id=_text(data, "updateinfo_id"),
            description=_text(data, "description"),
            fromstr=_text(data, "fromstr"),
            issued_date=_int(_object(data.get("issued_date"), "issued_date"), "$date"),
            pkglist=_pkglist(data.get("pkglist")),
            pushcount=_text(data, "pushcount"),
            references=[_reference(r) for r in _array(data.get("references"), "references")],
            release=_text(data, "release"),
            rights=_text(data, "rights"),
            severity=_text(data, "severity"),
            solution=_text(data, "solution"),
            status=_text(data, "status"),
            summary=_text(data, "summary"),
            title=_text(data, "title"),
            type=_text(data, "type"),
            updated_date=_int(_object(data.get("updated_date"), "updated_date"), "$date"),
            version=_text(data, "version"),
        )


@dataclass
class PutInput:
    platform_name: str
    cve_id: str
    vuln: VulnerabilityDetail
    advisories: dict[str, Advisory]
    erratum: Erratum


# RPM version ordering

_DIGITS = frozenset(string.digits)
_ALNUM = frozenset(string.ascii_letters + string.digits)


def _rpmvercmp(a: str, b: str) -> int:
    if a == b:
        return 0
    i = j = 0
    la, lb = len(a), len(b)
    while i < la or j < lb:
        while i < la and a[i] not in _ALNUM and a[i] not in "~^":
            i += 1
        while j < lb and b[j] not in _ALNUM and b[j] not in "~^":
            j += 1

        a_tilde = i < la and a[i] == "~"
        b_tilde = j < lb and b[j] == "~"
        if a_tilde or b_tilde:
            if not (a_tilde and b_tilde):
                return -1 if a_tilde else 1
            i += 1
            j += 1
            continue

        a_caret = i < la and a[i] == "^"
        b_caret = j < lb and b[j] == "^"
        if a_caret or b_caret:
            if i >= la:
                return -1
            if j >= lb:
                return 1
            if not b_caret:
                return -1
            if not a_caret:
                return 1
            i += 1
            j += 1
            continue

        if i >= la or j >= lb:
            break

        start_a, start_b = i, j
        numeric = a[i] in _DIGITS
        if numeric:
            while i < la and a[i] in _DIGITS:
                i += 1
            while j < lb and b[j] in _DIGITS:
                j += 1
        else:
            while i < la and a[i] in _ALNUM and a[i] not in _DIGITS:
                i += 1
            while j < lb and b[j] in _ALNUM and b[j] not in _DIGITS:
                j += 1

        seg_a, seg_b = a[start_a:i], b[start_b:j]
        if not seg_b:
            return 1 if numeric else -1
        if numeric:
            seg_a, seg_b = seg_a.lstrip("0"), seg_b.lstrip("0")
            if len(seg_a) != len(seg_b):
                return 1 if len(seg_a) > len(seg_b) else -1
        if seg_a != seg_b:
            return 1 if seg_a > seg_b else -1

    if i >= la and j >= lb:
        return 0
    return 1 if i < la else -1


def _rpm_split(value: str) -> tuple[int, str, str]:
    epoch = 0
    if ":" in value:
        head, value = value.split(":", 1)
        epoch = int(head) if head.isdigit() else 0
    version, sep, release = value.rpartition("-")
    if not sep:
        return epoch, value, ""
    return epoch, version, release


def _rpm_less_than(v1: str, v2: str) -> bool:
    e1, ver1, rel1 = _rpm_split(v1)
    e2, ver2, rel2 = _rpm_split(v2)
    if e1 != e2:
        return e1 < e2
    result = _rpmvercmp(ver1, ver2)
    if result == 0:
        result = _rpmvercmp(rel1, rel2)
    return result < 0


def _generalize_severity(severity: str) -> Severity:
    return {
        "low": Severity.LOW,
        "moderate": Severity.MEDIUM,
        "important": Severity.HIGH,
        "critical": Severity.CRITICAL,
    }.get(severity.lower(), Severity.UNKNOWN)


class Alma:
    """Default storage of AlmaLinux advisories; subclass to customise put/get."""

    def __init__(self, dbc: Config | None = None) -> None:
        self.dbc = dbc if dbc is not None else Config()

    def put(self, tx: Transaction, put_input: PutInput) -> None:
        try:
            self.dbc.put_vulnerability_detail(tx, put_input.cve_id, SOURCE.id, put_input.vuln)
        except DBError as err:
            raise DBError(f"failed to save Alma vulnerability: {err}") from err
        try:
            self.dbc.put_vulnerability_id(tx, put_input.cve_id)
        except DBError as err:
            raise DBError(f"failed to save the vulnerability ID: {err}") from err
        for pkg_name, advisory in put_input.advisories.items():
            try:
                self.dbc.put_advisory_detail(
                    tx, put_input.cve_id, pkg_name, [put_input.platform_name], advisory
                )
            except DBError as err:
                raise DBError(f"failed to save Alma advisory: {err}") from err

    def get(self, release: str, pkg_name: str) -> list[Advisory]:
        try:
            return self.dbc.get_advisories(PLATFORM_FORMAT.format(release), pkg_name)
        except DBError as err:
            raise DBError(f"failed to get Alma advisories: {err}") from err


class VulnSrc:
    """Loads AlmaLinux errata from a vuln-list checkout."""

    def __init__(self, db: Alma | None = None) -> None:
        self.db = db if db is not None else Alma()

    def name(self) -> str:
        return SOURCE.id

    def update(self, directory: str | os.PathLike[str]) -> None:
        root = os.path.join(os.fspath(directory), "vuln-list", ALMA_DIR)
        errata = self._parse(root)
        try:
            self._put(errata)
        except DBError as err:
            raise DBError(f"error in Alma save: {err}") from err

    def get(self, release: str, pkg_name: str) -> list[Advisory]:
        return self.db.get(release, pkg_name)

    def _parse(self, root: str) -> dict[str, list[Erratum]]:
        errata: dict[str, list[Erratum]] = {}
        for path, stream in file_walk(root):
            try:
                erratum = Erratum.from_dict(json.load(stream))
            except ValueError as err:
                raise ValueError(f"failed to decode Alma erratum: {err}") from err
            dirs = path.split(os.sep)
            if len(dirs) < 3:
                logger.info("invalid path: %s", path)
                continue
            errata.setdefault(dirs[-3], []).append(erratum)
        return errata

    def _put(self, errata_by_version: dict[str, list[Erratum]]) -> None:
        def write(tx: Transaction) -> None:
            for major_ver, errata in errata_by_version.items():
                platform_name = PLATFORM_FORMAT.format(major_ver)
                try:
                    self.db.dbc.put_data_source(tx, platform_name, SOURCE)
                except DBError as err:
                    raise DBError(f"failed to put data source: {err}") from err
                try:
                    self._commit(tx, platform_name, errata)
                except DBError as err:
                    raise DBError(f"Alma {major_ver} commit error: {err}") from err

        self.db.dbc.batch_update(write)

    def _commit(self, tx: Transaction, platform_name: str, errata: list[Erratum]) -> None:
        for erratum in errata:
            references = [ref.href for ref in erratum.references if ref.type != "cve"]
            module = erratum.pkglist.module
            for ref in erratum.references:
                if ref.type != "cve":
                    continue
                advisories: dict[str, Advisory] = {}
                for pkg in erratum.pkglist.packages:
                    if pkg.arch not in _TARGET_ARCHES:
                        continue
                    pkg_name = pkg.name
                    if module.name and module.stream:
                        pkg_name = f"{module.name}:{module.stream}::{pkg.name}"
                    fixed = construct_version(pkg.epoch, pkg.version, pkg.release)
                    current = advisories.get(pkg_name)
                    if current is None or _rpm_less_than(fixed, current.fixed_version):
                        advisories[pkg_name] = Advisory(fixed_version=fixed)

                vuln = VulnerabilityDetail(
                    severity=_generalize_severity(erratum.severity),
                    title=erratum.title,
                    description=erratum.description,
                    references=list(references),
                )
                try:
                    self.db.put(
                        tx,
                        PutInput(
                            platform_name=platform_name,
                            cve_id=ref.id,
                            vuln=vuln,
                            advisories=advisories,
                            erratum=erratum,
                        ),
                    )
                except DBError as err:
                    raise DBError(f"db put error: {err}") from err