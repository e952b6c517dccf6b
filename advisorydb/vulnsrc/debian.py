"""Debian security tracker advisories."""

from __future__ import annotations

import json
import logging
import os
import string
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Iterator

from advisorydb import types as db_types
from advisorydb.db import Config, DBError, Transaction
from advisorydb.utils import exists, file_walk

logger = logging.getLogger(__name__)

DEBIAN_DIR = "vuln-list-debian"

PACKAGE_TYPE = "package"
XREF_TYPE = "xref"

DISTRIBUTIONS_FILE = "distributions.json"
SOURCES_DIR = "source"
UPDATE_SOURCES_DIR = "updates-source"
CVE_DIR = "CVE"
DLA_DIR = "DLA"
DSA_DIR = "DSA"

PLATFORM_FORMAT = "debian {}"

# "removed" must not be treated as not affected.
SKIP_STATUSES = ("not-affected", "undetermined")

SOURCE = db_types.DataSource(
    id="debian",
    name="Debian Security Tracker",
    url="https://salsa.debian.org/security-tracker-team/security-tracker",
)


@dataclass
class Advisory:
    """A Debian advisory for one package in one release, before it is stored."""

    vulnerability_id: str = ""
    platform: str = ""
    pkg_name: str = ""
    vendor_ids: list[str] = field(default_factory=list)
    state: str = ""
    severity: str = ""
    fixed_version: str = ""
    title: str = ""


@dataclass
class VulnerabilityDetail:
    description: str = ""


PutFunc = Callable[[Config, Transaction, Any], None]


@dataclass(frozen=True)
class _Bucket:
    code_name: str
    pkg_name: str
    vuln_id: str = ""
    severity: str = ""


@dataclass
class _Annotation:
    type: str = ""
    release: str = ""
    package: str = ""
    kind: str = ""
    version: str = ""
    description: str = ""
    severity: str = ""
    bugs: list[str] = field(default_factory=list)


@dataclass
class _Bug:
    id: str = ""
    description: str = ""
    annotations: list[_Annotation] = field(default_factory=list)


# JSON decoding; field names match case-insensitively, exact matches first.


def _field(data: dict[str, Any], name: str) -> Any:
    if name in data:
        return data[name]
    lowered = name.lower()
    for key, value in data.items():
        if key.lower() == lowered:
            return value
    return None


def _object(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be a JSON object")
    return value


def _text(data: dict[str, Any], name: str) -> str:
    value = _field(data, name)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{name} must be a string")
    return value


def _texts(data: dict[str, Any], name: str) -> list[str]:
    value = _field(data, name)
    if value is None:
        return []
    if not isinstance(value, list) or not all(v is None or isinstance(v, str) for v in value):
        raise ValueError(f"{name} must be a list of strings")
    return [v or "" for v in value]


def _decode_bug(raw: Any) -> _Bug:
    data = _object(raw, "bug")
    header = _object(_field(data, "Header"), "Header")
    annotations_raw = _field(data, "Annotations")
    if annotations_raw is None:
        annotations_raw = []
    if not isinstance(annotations_raw, list):
        raise ValueError("Annotations must be a JSON array")
    annotations = []
    for item in annotations_raw:
        ann = _object(item, "annotation")
        annotations.append(
            _Annotation(
                type=_text(ann, "Type"),
                release=_text(ann, "Release"),
                package=_text(ann, "Package"),
                kind=_text(ann, "Kind"),
                version=_text(ann, "Version"),
                description=_text(ann, "Description"),
                severity=_text(ann, "Severity"),
                bugs=_texts(ann, "Bugs"),
            )
        )
    return _Bug(
        id=_text(header, "ID"),
        description=_text(header, "Description"),
        annotations=annotations,
    )


# Debian version ordering

_LETTERS = frozenset(string.ascii_letters)
_DIGITS = frozenset(string.digits)
_UPSTREAM_CHARS = _LETTERS | _DIGITS | frozenset(".+~-:")
_REVISION_CHARS = _LETTERS | _DIGITS | frozenset(".+~")


def _parse_version(text: str) -> tuple[int, str, str]:
    text = text.strip()
    epoch = 0
    if ":" in text:
        head, text = text.split(":", 1)
        if not head or not set(head) <= _DIGITS:
            raise ValueError(f"epoch parse error: {head!r}")
        epoch = int(head)
    upstream, sep, revision = text.rpartition("-")
    if not sep:
        upstream, revision = text, ""
    if not upstream:
        raise ValueError("upstream_version is empty")
    if upstream[0] not in _DIGITS:
        raise ValueError("upstream_version must start with digit")
    for ch in upstream:
        if ch not in _UPSTREAM_CHARS:
            raise ValueError(f"upstream_version includes invalid character {ch!r}")
    for ch in revision:
        if ch not in _REVISION_CHARS:
            raise ValueError(f"debian_revision includes invalid character {ch!r}")
    return epoch, upstream, revision


def _order(ch: str) -> int:
    if ch in _DIGITS:
        return 0
    if ch in _LETTERS:
        return ord(ch)
    if ch == "~":
        return -1
    return ord(ch) + 256


def _verrevcmp(a: str, b: str) -> int:
    i = j = 0
    la, lb = len(a), len(b)
    while i < la or j < lb:
        while (i < la and a[i] not in _DIGITS) or (j < lb and b[j] not in _DIGITS):
            ac = _order(a[i]) if i < la else 0
            bc = _order(b[j]) if j < lb else 0
            if ac != bc:
                return ac - bc
            i += 1
            j += 1
        while i < la and a[i] == "0":
            i += 1
        while j < lb and b[j] == "0":
            j += 1
        first_diff = 0
        while i < la and a[i] in _DIGITS and j < lb and b[j] in _DIGITS:
            if not first_diff:
                first_diff = ord(a[i]) - ord(b[j])
            i += 1
            j += 1
        if i < la and a[i] in _DIGITS:
            return 1
        if j < lb and b[j] in _DIGITS:
            return -1
        if first_diff:
            return first_diff
    return 0


def _sign(value: int) -> int:
    return (value > 0) - (value < 0)


def _compare_versions(v1: str, v2: str) -> int:
    """Compare two Debian versions; an empty version sorts lowest."""
    if not v1 and not v2:
        return 0
    if not v1:
        return -1
    if not v2:
        return 1
    try:
        e1, up1, rev1 = _parse_version(v1)
        e2, up2, rev2 = _parse_version(v2)
    except ValueError as err:
        raise ValueError(f"version error: {err}") from err
    if e1 != e2:
        return _sign(e1 - e2)
    result = _verrevcmp(up1, up2)
    if result == 0:
        result = _verrevcmp(rev1, rev2)
    return _sign(result)


def _has_fixed_version(sid_ver: str, code_ver: str) -> bool:
    """True if the release already ships the version fixed in sid."""
    if not sid_ver:
        return False
    return _compare_versions(code_ver, sid_ver) >= 0


def _severity_from_urgency(urgency: str) -> db_types.Severity:
    if urgency in ("unimportant", "low", "low*", "low**"):
        return db_types.Severity.LOW
    if urgency in ("medium", "medium*", "medium**"):
        return db_types.Severity.MEDIUM
    if urgency in ("high", "high*", "high**"):
        return db_types.Severity.HIGH
    return db_types.Severity.UNKNOWN


def _new_status(state: str) -> db_types.Status:
    return {
        "no-dsa": db_types.Status.AFFECTED,
        "unfixed": db_types.Status.AFFECTED,
        "ignored": db_types.Status.WILL_NOT_FIX,
        "postponed": db_types.Status.FIX_DEFERRED,
        "end-of-life": db_types.Status.END_OF_LIFE,
    }.get(state.lower(), db_types.Status.UNKNOWN)


def _default_put(dbc: Config, tx: Transaction, advisory: Any) -> None:
    if not isinstance(advisory, Advisory):
        raise TypeError("unknown type")

    detail = db_types.Advisory(
        vendor_ids=list(advisory.vendor_ids),
        status=_new_status(advisory.state),
        severity=_severity_from_urgency(advisory.severity),
        fixed_version=advisory.fixed_version,
    )
    try:
        dbc.put_advisory_detail(
            tx, advisory.vulnerability_id, advisory.pkg_name, [advisory.platform], detail
        )
    except DBError as err:
        raise DBError(f"failed to save Debian advisory: {err}") from err

    vuln = db_types.VulnerabilityDetail(title=advisory.title)
    try:
        dbc.put_vulnerability_detail(tx, advisory.vulnerability_id, SOURCE.id, vuln)
    except DBError as err:
        raise DBError(f"failed to save Debian vulnerability detail: {err}") from err

    try:
        dbc.put_vulnerability_id(tx, advisory.vulnerability_id)
    except DBError as err:
        raise DBError(f"failed to save the vulnerability ID: {err}") from err

    try:
        dbc.put_data_source(tx, advisory.platform, SOURCE)
    except DBError as err:
        raise DBError(f"failed to put data source: {err}") from err


class VulnSrc:
    """Loads the Debian security tracker from a vuln-list-debian checkout.

    ``put`` replaces the way each advisory is stored; it is called as
    ``put(dbc, tx, advisory)`` with a :class:`Advisory`.
    """

    def __init__(self, dbc: Config | None = None, put: PutFunc | None = None) -> None:
        self._dbc = dbc if dbc is not None else Config()
        self._put = put if put is not None else _default_put
        # codename -> major version, e.g. "buster" -> "10"
        self._distributions: dict[str, str] = {}
        # vulnerability ID -> short description
        self._details: dict[str, VulnerabilityDetail] = {}
        # (codename, package) -> latest version in the release
        self._pkg_versions: dict[_Bucket, str] = {}
        # (package, vulnerability, severity) -> fixed version in sid ("" if unfixed)
        self._sid_fixed_versions: dict[_Bucket, str] = {}
        # (codename, package, vulnerability) -> advisory
        self._bkt_advisories: dict[_Bucket, Advisory] = {}
        self._not_affected: set[_Bucket] = set()

    def name(self) -> str:
        return SOURCE.id

    def update(self, directory: str | os.PathLike[str]) -> None:
        self._parse(os.fspath(directory))
        self._save()

    def get(self, release: str, pkg_name: str) -> list[db_types.Advisory]:
        try:
            return self._dbc.get_advisories(PLATFORM_FORMAT.format(release), pkg_name)
        except DBError as err:
            raise DBError(f"failed to get Debian advisories: {err}") from err

    # parsing

    def _parse(self, directory: str) -> None:
        root = os.path.join(directory, DEBIAN_DIR, "tracker")
        self._parse_distributions(root)
        self._parse_sources(os.path.join(root, SOURCES_DIR))
        self._parse_sources(os.path.join(root, UPDATE_SOURCES_DIR))
        self._parse_cve(root)
        logger.info("  Parsing DLA JSON files...")
        self._parse_advisory(os.path.join(root, DLA_DIR))
        logger.info("  Parsing DSA JSON files...")
        self._parse_advisory(os.path.join(root, DSA_DIR))

    def _parse_distributions(self, root: str) -> None:
        logger.info("  Parsing distributions...")
        with open(os.path.join(root, DISTRIBUTIONS_FILE), "rb") as f:
            try:
                parsed = _object(json.load(f), "distributions")
                majors = {
                    dist: _text(_object(value, dist), "major-version")
                    for dist, value in parsed.items()
                }
            except ValueError as err:
                raise ValueError(f"failed to decode Debian distribution JSON: {err}") from err
        for dist, major in majors.items():
            # An empty major version is sid, the development release.
            if major:
                self._distributions[dist] = major

    def _parse_sources(self, directory: str) -> None:
        for code in self._distributions:
            code_path = os.path.join(directory, code)
            if not exists(code_path):
                continue
            logger.info("  Parsing %s sources...", code)
            for path, stream in file_walk(code_path):
                try:
                    data = json.load(stream)
                    if not isinstance(data, dict):
                        raise ValueError("expected a JSON object")
                    packages = _texts(data, "Package")
                    versions = _texts(data, "Version")
                except ValueError as err:
                    raise ValueError(f"failed to decode {path}: {err}") from err
                if not packages or not versions:
                    continue

                bkt = _Bucket(code, packages[0])
                version = versions[0]
                stored = self._pkg_versions.get(bkt)
                if stored is not None:
                    try:
                        newer_or_same = _compare_versions(stored, version) >= 0
                    except ValueError as err:
                        raise ValueError(f"version comparison error: {err}") from err
                    if newer_or_same:
                        continue
                self._pkg_versions[bkt] = version

    def _bugs(self, directory: str) -> Iterator[_Bug]:
        for _, stream in file_walk(directory):
            try:
                bug = _decode_bug(json.load(stream))
            except ValueError as err:
                raise ValueError(f"json decode error: {err}") from err
            yield bug

    def _parse_cve(self, root: str) -> None:
        logger.info("  Parsing CVE JSON files...")
        for bug in self._bugs(os.path.join(root, CVE_DIR)):
            severities: dict[str, str] = {}
            cve_id = bug.id
            self._details[cve_id] = VulnerabilityDetail(description=bug.description.strip("()"))

            for ann in bug.annotations:
                if ann.type != PACKAGE_TYPE:
                    continue

                # The release is empty for sid.
                bkt = _Bucket(ann.release, ann.package, cve_id)
                if ann.kind in SKIP_STATUSES:
                    self._not_affected.add(bkt)
                    continue

                if not ann.release:
                    severity = ""
                    if ann.severity:
                        severities[ann.package] = ann.severity
                        severity = ann.severity
                    # The version is empty for unfixed vulnerabilities.
                    self._sid_fixed_versions[_Bucket("", ann.package, cve_id, severity)] = ann.version
                    continue

                fixed_version = ann.version
                kind = ann.kind
                latest = self._pkg_versions.get(_Bucket(ann.release, ann.package))
                if latest is not None:
                    # A fix that has not been released yet is still unfixed.
                    try:
                        unreleased = _compare_versions(latest, fixed_version) < 0
                    except ValueError:
                        unreleased = False
                    if unreleased:
                        fixed_version = ""
                        if kind == "fixed":
                            kind = "unfixed"

                advisory = Advisory(
                    fixed_version=fixed_version,
                    severity=severities.get(ann.package, ""),
                )
                if not fixed_version:
                    advisory.state = kind

                # DLA/DSA may overwrite this advisory later.
                self._bkt_advisories[bkt] = advisory

    def _parse_advisory(self, directory: str) -> None:
        for bug in self._bugs(directory):
            cve_ids: list[str] = []
            advisory_id = bug.id
            self._details[advisory_id] = VulnerabilityDetail(
                description=bug.description.strip("()")
            )

            for ann in bug.annotations:
                if ann.type == XREF_TYPE:
                    cve_ids = ann.bugs
                    continue
                if ann.type != PACKAGE_TYPE:
                    continue

                # Advisories without CVE-IDs are stored under their own ID.
                vuln_ids = cve_ids or [advisory_id]
                for vuln_id in vuln_ids:
                    bkt = _Bucket(ann.release, ann.package, vuln_id)
                    if ann.kind in SKIP_STATUSES:
                        self._not_affected.add(bkt)
                        continue

                    current = self._bkt_advisories.get(bkt)
                    if current is None:
                        updated = Advisory(fixed_version=ann.version, vendor_ids=[advisory_id])
                    else:
                        # When several advisories fix the same CVE, the latest fix wins.
                        try:
                            result = _compare_versions(ann.version, current.fixed_version)
                        except ValueError as err:
                            raise ValueError(f"version error {advisory_id}: {err}") from err
                        updated = replace(current, vendor_ids=[*current.vendor_ids, advisory_id])
                        if result > 0:
                            updated.fixed_version = ann.version
                            updated.state = ""
                    self._bkt_advisories[bkt] = updated

    # saving

    def _save(self) -> None:
        logger.info("Saving Debian DB")
        try:
            self._dbc.batch_update(self._commit)
        except DBError as err:
            raise DBError(f"batch update error: {err}") from err
        logger.info("Saved Debian DB")

    def _commit(self, tx: Transaction) -> None:
        for sid_bkt, sid_ver in self._sid_fixed_versions.items():
            pkg_name = sid_bkt.pkg_name
            cve_id = sid_bkt.vuln_id

            # Not affected in any distribution.
            if _Bucket("", pkg_name, cve_id) in self._not_affected:
                continue

            for code in self._distributions:
                bkt = _Bucket(code, pkg_name, cve_id)
                if bkt in self._not_affected:
                    continue

                existing = self._bkt_advisories.get(bkt)
                if existing is not None and not existing.state:
                    # Stored later with its own fixed version.
                    continue

                code_ver = self._pkg_versions.get(_Bucket(code, pkg_name))
                if code_ver is None:
                    continue

                try:
                    fixed = _has_fixed_version(sid_ver, code_ver)
                except ValueError as err:
                    raise ValueError(f"version error: {err}") from err

                adv = replace(existing) if existing is not None else Advisory()
                if fixed:
                    # States such as "no-dsa" or "postponed" were wrong.
                    adv.fixed_version = sid_ver
                    adv.state = ""
                    self._bkt_advisories.pop(bkt, None)
                adv.severity = sid_bkt.severity
                self._put_advisory(tx, bkt, adv)

        for bkt, advisory in list(self._bkt_advisories.items()):
            self._put_advisory(tx, bkt, advisory)

    def _put_advisory(self, tx: Transaction, bkt: _Bucket, advisory: Advisory) -> None:
        major_version = self._distributions.get(bkt.code_name)
        if major_version is None:
            # Stale codenames such as squeeze and sarge.
            return
        detail = self._details.get(bkt.vuln_id, VulnerabilityDetail())
        filled = replace(
            advisory,
            vulnerability_id=bkt.vuln_id,
            pkg_name=bkt.pkg_name,
            platform=PLATFORM_FORMAT.format(major_version),
            # The Debian description is short, so it serves as a title.
            title=detail.description,
        )
        self._put(self._dbc, tx, filled)