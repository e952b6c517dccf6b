"""Core record types stored in the vulnerability database."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

from advisorydb.utils import must_time_parse


class Severity(enum.IntEnum):
    """Severity of a vulnerability; serialised as its integer value."""

    UNKNOWN = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    def __str__(self) -> str:
        return self.name


SEVERITY_NAMES = [str(s) for s in Severity]


def new_severity(severity: str) -> Severity:
    """Return the severity named exactly ``severity``."""
    for candidate in Severity:
        if candidate.name == severity:
            return candidate
    raise ValueError(f"unknown severity: {severity}")


def _severity_or_unknown(name: str) -> Severity:
    try:
        return new_severity(name)
    except ValueError:
        return Severity.UNKNOWN


def compare_severity_string(sev1: str, sev2: str) -> int:
    """Positive when ``sev2`` is more severe than ``sev1``; unknown names count as UNKNOWN."""
    return int(_severity_or_unknown(sev2)) - int(_severity_or_unknown(sev1))


def _severity_from_int(value: Any) -> Severity:
    try:
        return Severity(int(value))
    except (TypeError, ValueError):
        return Severity.UNKNOWN


class Status(enum.IntEnum):
    """Fix status of an advisory (VEX statuses plus vendor-specific ones)."""

    UNKNOWN = 0
    NOT_AFFECTED = 1
    AFFECTED = 2
    FIXED = 3
    UNDER_INVESTIGATION = 4
    WILL_NOT_FIX = 5
    FIX_DEFERRED = 6
    END_OF_LIFE = 7

    def __str__(self) -> str:
        return self.name.lower()


STATUSES = [str(s) for s in Status]


def new_status(status: str) -> Status:
    """Return the status named ``status``, or UNKNOWN."""
    for candidate in Status:
        if str(candidate) == status:
            return candidate
    return Status.UNKNOWN


def _status_from_int(value: Any) -> Status:
    try:
        return Status(int(value))
    except (TypeError, ValueError):
        return Status.UNKNOWN


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    offset = value.utcoffset()
    if not offset:
        return text + "Z"
    total = int(offset.total_seconds())
    sign = "+" if total >= 0 else "-"
    total = abs(total)
    return f"{text}{sign}{total // 3600:02d}:{total % 3600 // 60:02d}"


def _parse_time(value: Any) -> datetime | None:
    if value is None:
        return None
    return must_time_parse(value)


def _omit_empty(**pairs: Any) -> dict[str, Any]:
    return {key: value for key, value in pairs.items() if value}


@dataclass
class CVSS:
    v2_vector: str = ""
    v3_vector: str = ""
    v2_score: float = 0.0
    v3_score: float = 0.0


def _cvss_to_dict(cvss: CVSS) -> dict[str, Any]:
    return _omit_empty(
        V2Vector=cvss.v2_vector,
        V3Vector=cvss.v3_vector,
        V2Score=cvss.v2_score,
        V3Score=cvss.v3_score,
    )


def _cvss_from_dict(data: Mapping[str, Any]) -> CVSS:
    return CVSS(
        v2_vector=data.get("V2Vector", ""),
        v3_vector=data.get("V3Vector", ""),
        v2_score=float(data.get("V2Score", 0)),
        v3_score=float(data.get("V3Score", 0)),
    )


@dataclass
class CVSSVector:
    v2: str = ""
    v3: str = ""


@dataclass
class DataSource:
    """Where an advisory comes from."""

    id: str = ""
    name: str = ""
    url: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _omit_empty(ID=self.id, Name=self.name, URL=self.url)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DataSource:
        return cls(id=data.get("ID", ""), name=data.get("Name", ""), url=data.get("URL", ""))

    def is_empty(self) -> bool:
        return not (self.id or self.name or self.url)


@dataclass
class VulnerabilityDetail:
    """Vulnerability details as reported by one data source."""

    id: str = ""
    cvss_score: float = 0.0
    cvss_vector: str = ""
    cvss_score_v3: float = 0.0
    cvss_vector_v3: str = ""
    severity: Severity = Severity.UNKNOWN
    severity_v3: Severity = Severity.UNKNOWN
    cwe_ids: list[str] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
    title: str = ""
    description: str = ""
    published_date: datetime | None = None
    last_modified_date: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        out = _omit_empty(
            ID=self.id,
            CvssScore=self.cvss_score,
            CvssVector=self.cvss_vector,
            CvssScoreV3=self.cvss_score_v3,
            CvssVectorV3=self.cvss_vector_v3,
            Severity=int(self.severity),
            SeverityV3=int(self.severity_v3),
            CweIDs=list(self.cwe_ids),
            References=list(self.references),
            Title=self.title,
            Description=self.description,
        )
        if self.published_date is not None:
            out["PublishedDate"] = _format_time(self.published_date)
        if self.last_modified_date is not None:
            out["LastModifiedDate"] = _format_time(self.last_modified_date)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> VulnerabilityDetail:
        return cls(
            id=data.get("ID", ""),
            cvss_score=float(data.get("CvssScore", 0)),
            cvss_vector=data.get("CvssVector", ""),
            cvss_score_v3=float(data.get("CvssScoreV3", 0)),
            cvss_vector_v3=data.get("CvssVectorV3", ""),
            severity=_severity_from_int(data.get("Severity", 0)),
            severity_v3=_severity_from_int(data.get("SeverityV3", 0)),
            cwe_ids=list(data.get("CweIDs") or []),
            references=list(data.get("References") or []),
            title=data.get("Title", ""),
            description=data.get("Description", ""),
            published_date=_parse_time(data.get("PublishedDate")),
            last_modified_date=_parse_time(data.get("LastModifiedDate")),
        )


@dataclass
class Advisory:
    """A package advisory; the status is stored as an integer to keep the database small."""

    vulnerability_id: str = ""
    vendor_ids: list[str] = field(default_factory=list)
    arches: list[str] = field(default_factory=list)
    status: Status = Status.UNKNOWN
    severity: Severity = Severity.UNKNOWN
    fixed_version: str = ""
    affected_version: str = ""
    vulnerable_versions: list[str] = field(default_factory=list)
    patched_versions: list[str] = field(default_factory=list)
    unaffected_versions: list[str] = field(default_factory=list)
    data_source: DataSource | None = None
    custom: Any = None

    def to_dict(self) -> dict[str, Any]:
        out = _omit_empty(
            VulnerabilityID=self.vulnerability_id,
            VendorIDs=list(self.vendor_ids),
            Arches=list(self.arches),
            Severity=int(self.severity),
            FixedVersion=self.fixed_version,
            AffectedVersion=self.affected_version,
            VulnerableVersions=list(self.vulnerable_versions),
            PatchedVersions=list(self.patched_versions),
            UnaffectedVersions=list(self.unaffected_versions),
        )
        if self.data_source is not None:
            out["DataSource"] = self.data_source.to_dict()
        if self.custom is not None:
            out["Custom"] = self.custom
        if self.status:
            out["Status"] = int(self.status)
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Advisory:
        source = data.get("DataSource")
        return cls(
            vulnerability_id=data.get("VulnerabilityID", ""),
            vendor_ids=list(data.get("VendorIDs") or []),
            arches=list(data.get("Arches") or []),
            status=_status_from_int(data.get("Status", 0)),
            severity=_severity_from_int(data.get("Severity", 0)),
            fixed_version=data.get("FixedVersion", ""),
            affected_version=data.get("AffectedVersion", ""),
            vulnerable_versions=list(data.get("VulnerableVersions") or []),
            patched_versions=list(data.get("PatchedVersions") or []),
            unaffected_versions=list(data.get("UnaffectedVersions") or []),
            data_source=DataSource.from_dict(source) if source is not None else None,
            custom=data.get("Custom"),
        )


@dataclass
class Advisories:
    """Fixed versions per arch or vendor ID for one vulnerability."""

    fixed_version: str = ""
    entries: list[Advisory] = field(default_factory=list)
    custom: Any = None

    def to_dict(self) -> dict[str, Any]:
        out = _omit_empty(
            FixedVersion=self.fixed_version,
            Entries=[entry.to_dict() for entry in self.entries],
        )
        if self.custom is not None:
            out["Custom"] = self.custom
        return out


@dataclass
class Vulnerability:
    """Normalised vulnerability record."""

    title: str = ""
    description: str = ""
    severity: str = ""
    cwe_ids: list[str] = field(default_factory=list)
    vendor_severity: dict[str, Severity] = field(default_factory=dict)
    cvss: dict[str, CVSS] = field(default_factory=dict)
    references: list[str] = field(default_factory=list)
    published_date: datetime | None = None
    last_modified_date: datetime | None = None
    custom: Any = None

    def to_dict(self) -> dict[str, Any]:
        out = _omit_empty(
            Title=self.title,
            Description=self.description,
            Severity=self.severity,
            CweIDs=list(self.cwe_ids),
            VendorSeverity={k: int(self.vendor_severity[k]) for k in sorted(self.vendor_severity)},
            CVSS={k: _cvss_to_dict(self.cvss[k]) for k in sorted(self.cvss)},
            References=list(self.references),
        )
        if self.published_date is not None:
            out["PublishedDate"] = _format_time(self.published_date)
        if self.last_modified_date is not None:
            out["LastModifiedDate"] = _format_time(self.last_modified_date)
        if self.custom is not None:
            out["Custom"] = self.custom
        return out

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Vulnerability:
        return cls(
            title=data.get("Title", ""),
            description=data.get("Description", ""),
            severity=data.get("Severity", ""),
            cwe_ids=list(data.get("CweIDs") or []),
            vendor_severity={
                k: _severity_from_int(v) for k, v in (data.get("VendorSeverity") or {}).items()
            },
            cvss={k: _cvss_from_dict(v) for k, v in (data.get("CVSS") or {}).items()},
            references=list(data.get("References") or []),
            published_date=_parse_time(data.get("PublishedDate")),
            last_modified_date=_parse_time(data.get("LastModifiedDate")),
            custom=data.get("Custom"),
        )


@dataclass
class LastUpdated:
    date: datetime | None = None