"""Pydantic models for dependencies, findings and upgrade paths."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from depguardian import versions


class Severity(str, Enum):
    """Severity shared by vulnerabilities and supply-chain threats."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        """Numeric ordering: critical > high > medium > low."""
        return _SEVERITY_RANK[self]

    @classmethod
    def from_cvss(cls, score: float) -> "Severity":
        """Bucket a CVSS base score into a severity."""
        if score >= 9.0:
            return cls.CRITICAL
        if score >= 7.0:
            return cls.HIGH
        if score >= 4.0:
            return cls.MEDIUM
        return cls.LOW


_SEVERITY_RANK = {
    Severity.LOW: 1,
    Severity.MEDIUM: 2,
    Severity.HIGH: 3,
    Severity.CRITICAL: 4,
}


def higher_severity(first: Severity, second: Severity) -> Severity:
    """Return the more severe of two severities (first wins ties)."""
    return first if first.rank >= second.rank else second


class DependencyKind(str, Enum):
    """Which manifest section a dependency was declared in."""

    DIRECT = "direct"
    DEV = "dev"
    PEER = "peer"
    OPTIONAL = "optional"


class VulnerabilitySource(str, Enum):
    """Where a vulnerability record came from."""

    OSV = "osv"
    SNYK = "snyk"
    REGISTRY_HEURISTIC = "registry-heuristic"


class ThreatType(str, Enum):
    """Kinds of supply-chain findings."""

    TYPOSQUATTING = "typosquatting"
    MALICIOUS_SCRIPT = "malicious-script"
    SUSPICIOUS_ACTIVITY = "suspicious-activity"
    COMPROMISED_MAINTAINER = "compromised-maintainer"


class Confidence(str, Enum):
    """How directly an upgrade target is known to fix the vulnerabilities."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Inputs ---


class Dependency(BaseModel):
    """A declared dependency, as produced by a manifest or lockfile reader."""

    model_config = ConfigDict(frozen=True)

    name: str
    declared_version_range: str
    kind: DependencyKind = DependencyKind.DIRECT
    resolved_version: str | None = None  # Exact version from a lockfile

    @property
    def key(self) -> tuple[str, DependencyKind]:
        """Identity of the dependency within one scan."""
        return (self.name, self.kind)

    @property
    def current_version(self) -> str | None:
        """Best concrete version for this dependency.

        The lockfile version wins. Otherwise the declared range is coerced,
        so ``^4.17.20`` becomes ``4.17.20``.
        """
        if self.resolved_version and versions.is_valid(self.resolved_version):
            return self.resolved_version
        if versions.is_valid(self.declared_version_range):
            return self.declared_version_range
        return versions.coerce(self.declared_version_range)


# --- Registry metadata ---


class Maintainer(BaseModel):
    """A registry maintainer account."""

    model_config = ConfigDict(frozen=True)

    name: str = ""
    email: str | None = None


class VersionInfo(BaseModel):
    """Per-version registry data relevant to install-time behavior."""

    model_config = ConfigDict(frozen=True)

    version: str
    install_scripts: dict[str, str] = Field(default_factory=dict)


class PackageInfo(BaseModel):
    """Registry metadata for one package."""

    model_config = ConfigDict(frozen=True)

    name: str
    published_versions: frozenset[str] = frozenset()
    versions: dict[str, VersionInfo] = Field(default_factory=dict)
    maintainers: tuple[Maintainer, ...] = ()
    publish_timestamps: dict[str, datetime] = Field(default_factory=dict)
    repository_url: str | None = None
    latest_version: str | None = None


# --- Findings ---


class Vulnerability(BaseModel):
    """A known vulnerability affecting a package."""

    model_config = ConfigDict(frozen=True)

    id: str  # Source-qualified: GHSA-xxxx, SNYK-JS-..., CVE-...
    package_name: str
    package_version: str = "*"
    severity: Severity
    cvss_score: float | None = None
    cvss_vector: str | None = None
    title: str = ""
    description: str = ""
    cve_id: str | None = None
    patched_versions: frozenset[str] = frozenset()
    vulnerable_version_ranges: frozenset[str] = frozenset()
    source: VulnerabilitySource
    references: tuple[str, ...] = ()
    published_at: datetime | None = None
    modified_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        """Primary merge key."""
        return (self.package_name, self.id)


class SupplyChainThreat(BaseModel):
    """A supply-chain attack indicator for a package."""

    model_config = ConfigDict(frozen=True)

    type: ThreatType
    package_name: str
    severity: Severity
    description: str
    evidence: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()
    detected_at: datetime = Field(default_factory=_utcnow)


class UpgradePath(BaseModel):
    """Recommended upgrade for a vulnerable package."""

    model_config = ConfigDict(frozen=True)

    package_name: str
    current_version: str
    target_version: str
    is_breaking: bool
    fixed_vulnerability_ids: frozenset[str] = frozenset()
    new_vulnerability_ids: frozenset[str] = frozenset()
    confidence: Confidence
    risk_score: float = Field(ge=0)
    changelog_url: str | None = None

    @model_validator(mode="after")
    def _target_is_newer(self) -> "UpgradePath":
        if not versions.greater_than(self.target_version, self.current_version):
            raise ValueError(
                f"target {self.target_version} is not newer than {self.current_version}"
            )
        return self


# --- Scan summary ---


class ScanResult(BaseModel):
    """Everything a scan produced, ready for reporting."""

    model_config = ConfigDict(frozen=True)

    dependencies_scanned: int = 0
    vulnerabilities: tuple[Vulnerability, ...] = ()
    supply_chain_threats: tuple[SupplyChainThreat, ...] = ()
    upgrade_paths: tuple[UpgradePath, ...] = ()
    unresolved_packages: tuple[str, ...] = ()  # Vulnerable, but no safe upgrade
    # Installed version unknown; their findings cover every release
    unversioned_packages: tuple[str, ...] = ()
    vulnerable_packages: int = 0
    severity_counts: dict[Severity, int] = Field(default_factory=dict)
    threat_severity_counts: dict[Severity, int] = Field(default_factory=dict)
    scan_duration_seconds: float = 0.0
    scanned_at: datetime = Field(default_factory=_utcnow)
