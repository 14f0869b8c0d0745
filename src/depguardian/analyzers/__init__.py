"""Analyzers for vulnerabilities, supply-chain threats and upgrades."""

from depguardian.analyzers.aggregator import VulnerabilityAggregator, merge_vulnerabilities
from depguardian.analyzers.base import VulnerabilitySourceBase
from depguardian.analyzers.osv import OSVSource
from depguardian.analyzers.pipeline import ScanPipeline
from depguardian.analyzers.snyk import SnykSource
from depguardian.analyzers.supply_chain import SupplyChainDetector, ThreatCheck
from depguardian.analyzers.upgrade import SafeUpgradeResolver

__all__ = [
    "OSVSource",
    "SafeUpgradeResolver",
    "ScanPipeline",
    "SnykSource",
    "SupplyChainDetector",
    "ThreatCheck",
    "VulnerabilityAggregator",
    "VulnerabilitySourceBase",
    "merge_vulnerabilities",
]
