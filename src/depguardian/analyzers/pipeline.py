"""End-to-end scan pipeline for npm projects."""

import asyncio
import logging
import time
from collections import Counter
from collections.abc import Sequence
from pathlib import Path

import httpx

from depguardian import versions
from depguardian.adapters.base import RegistryClient
from depguardian.adapters.manifest import load_dependencies
from depguardian.adapters.npm import NpmAdapter
from depguardian.analyzers.aggregator import VulnerabilityAggregator
from depguardian.analyzers.base import VulnerabilitySourceBase
from depguardian.analyzers.osv import OSVSource
from depguardian.analyzers.snyk import SnykSource
from depguardian.analyzers.supply_chain import DEFAULT_POPULAR_PACKAGES, SupplyChainDetector
from depguardian.analyzers.upgrade import SafeUpgradeResolver
from depguardian.config import DepGuardianConfig
from depguardian.models.schemas import (
    Dependency,
    DependencyKind,
    ScanResult,
    Severity,
    UpgradePath,
    Vulnerability,
)

logger = logging.getLogger(__name__)


def count_by_severity(items: Sequence) -> dict[Severity, int]:
    """Count findings per severity, with every severity present."""
    counts = Counter(item.severity for item in items)
    return {severity: counts.get(severity, 0) for severity in Severity}


class ScanPipeline:
    """Orchestrates a full dependency scan.

    Pipeline stages:
    1. Filter the dependency list (ignore list, dev dependencies)
    2. Query vulnerability sources and run supply-chain checks concurrently
    3. Resolve upgrade paths for vulnerable packages
    4. Summarize into a ScanResult

    Use as an async context manager to share one HTTP client across every
    collaborator; outside of one, each request opens its own client.
    """

    def __init__(
        self,
        config: DepGuardianConfig | None = None,
        registry: RegistryClient | None = None,
        sources: Sequence[VulnerabilitySourceBase] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Validated configuration. Defaults to built-in defaults.
            registry: Registry adapter. Defaults to the public npm registry.
            sources: Vulnerability sources. Defaults to OSV, plus Snyk when
                configured.
            logger: Logger to report through. Defaults to the module logger.

        Raises:
            ConfigurationError: If Snyk is enabled without a token.
        """
        self.config = config or DepGuardianConfig()
        self._registry_override = registry
        self._sources_override = list(sources) if sources is not None else None
        self._log = logger or logging.getLogger(__name__)
        self._http_client: httpx.AsyncClient | None = None
        self._setup(None)

    def _build_sources(self, client: httpx.AsyncClient | None) -> list[VulnerabilitySourceBase]:
        sources: list[VulnerabilitySourceBase] = [
            OSVSource(client=client, base_url=self.config.osv.endpoint)
        ]
        if self.config.snyk_active:
            sources.append(
                SnykSource(
                    token=self.config.snyk.token,
                    client=client,
                    organization=self.config.snyk.organization,
                    base_url=self.config.snyk.endpoint,
                )
            )
        return sources

    def _setup(self, client: httpx.AsyncClient | None) -> None:
        """Wire collaborators around an optional shared client."""
        self.registry = self._registry_override or NpmAdapter(client=client)
        sources = self._sources_override
        if sources is None:
            sources = self._build_sources(client)

        self.aggregator = VulnerabilityAggregator(
            sources,
            batch_size=self.config.scanning.batch_size,
            logger=self._log,
        )
        popular = DEFAULT_POPULAR_PACKAGES + tuple(
            name
            for name in self.config.detection.extra_popular_packages
            if name not in DEFAULT_POPULAR_PACKAGES
        )
        concurrency = self.config.scanning.batch_size
        self.detector = SupplyChainDetector(
            self.registry, popular_packages=popular, logger=self._log, concurrency=concurrency
        )
        self.resolver = SafeUpgradeResolver(
            self.registry, self.aggregator, logger=self._log, concurrency=concurrency
        )

    async def __aenter__(self) -> "ScanPipeline":
        """Set up shared HTTP client."""
        self._http_client = httpx.AsyncClient(timeout=60.0, follow_redirects=True)
        self._setup(self._http_client)
        return self

    async def __aexit__(self, *args) -> None:
        """Clean up HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
        self._setup(None)

    def select_dependencies(self, dependencies: Sequence[Dependency]) -> list[Dependency]:
        """Apply the ignore list and the dev-dependency setting."""
        ignored = set(self.config.scanning.ignore_packages)
        selected = []
        for dep in dependencies:
            if dep.name in ignored:
                self._log.debug(f"Ignoring {dep.name}")
                continue
            if dep.kind == DependencyKind.DEV and not self.config.scanning.include_dev:
                continue
            selected.append(dep)
        return selected

    async def scan(self, dependencies: Sequence[Dependency]) -> ScanResult:
        """Run every stage over a dependency list.

        Args:
            dependencies: Dependencies to scan.

        Returns:
            ScanResult with vulnerabilities, threats and upgrade paths.
        """
        started = time.monotonic()
        selected = self.select_dependencies(dependencies)
        self._log.info(f"Scanning {len(selected)} dependencies")

        # Stage 2: vulnerability and supply-chain analysis are independent
        if self.config.detection.enabled:
            vulnerabilities, threats = await asyncio.gather(
                self.aggregator.scan(selected),
                self.detector.detect(selected),
            )
        else:
            vulnerabilities = await self.aggregator.scan(selected)
            threats = []

        # Stage 3: upgrade paths
        upgrade_paths, unresolved = await self.resolver.resolve_all_with_gaps(
            selected, vulnerabilities
        )

        duration = time.monotonic() - started
        self._log.info(
            f"Scan finished in {duration:.2f}s: {len(vulnerabilities)} vulnerabilities, "
            f"{len(threats)} supply chain threats"
        )

        return ScanResult(
            dependencies_scanned=len(selected),
            vulnerabilities=tuple(vulnerabilities),
            supply_chain_threats=tuple(threats),
            upgrade_paths=tuple(upgrade_paths),
            unresolved_packages=tuple(unresolved),
            unversioned_packages=tuple(
                dict.fromkeys(dep.name for dep in selected if dep.current_version is None)
            ),
            vulnerable_packages=len({vuln.package_name for vuln in vulnerabilities}),
            severity_counts=count_by_severity(vulnerabilities),
            threat_severity_counts=count_by_severity(threats),
            scan_duration_seconds=round(duration, 3),
        )

    async def scan_project(self, project_path: Path, include_transitive: bool = False) -> ScanResult:
        """Scan the dependencies declared by an npm project.

        Raises:
            ManifestError: If package.json is missing or invalid.
        """
        dependencies = load_dependencies(project_path, include_transitive=include_transitive)
        return await self.scan(dependencies)

    async def check_package(self, package_name: str, version: str | None = None) -> ScanResult:
        """Scan a single package; the latest release when no version is given.

        Raises:
            PackageNotFoundError: If the version must be looked up and the
                package does not exist.
        """
        if version is None:
            info = await self.registry.get_package_info(package_name)
            version = info.latest_version or "*"
        return await self.scan([Dependency(name=package_name, declared_version_range=version)])

    async def plan_upgrade(
        self, package_name: str, version: str
    ) -> tuple[list[Vulnerability], UpgradePath | None]:
        """Look up a package version's vulnerabilities and the upgrade fixing them."""
        if not versions.is_valid(version):
            version = versions.coerce(version) or version
        vulnerabilities = await self.aggregator.query_package(package_name, version)
        if not vulnerabilities:
            return [], None
        path = await self.resolver.resolve(package_name, version, vulnerabilities)
        return vulnerabilities, path

    async def find_safe_version(self, package_name: str, version_range: str) -> str | None:
        """Newest version in a range without critical vulnerabilities."""
        return await self.resolver.find_safe_version(package_name, version_range)
