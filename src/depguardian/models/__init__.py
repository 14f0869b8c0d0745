"""Data models and schemas."""

from depguardian.models.schemas import (
    Confidence,
    Dependency,
    DependencyKind,
    Maintainer,
    PackageInfo,
    ScanResult,
    Severity,
    SupplyChainThreat,
    ThreatType,
    UpgradePath,
    VersionInfo,
    Vulnerability,
    VulnerabilitySource,
)

__all__ = [
    "Confidence",
    "Dependency",
    "DependencyKind",
    "Maintainer",
    "PackageInfo",
    "ScanResult",
    "Severity",
    "SupplyChainThreat",
    "ThreatType",
    "UpgradePath",
    "VersionInfo",
    "Vulnerability",
    "VulnerabilitySource",
]
