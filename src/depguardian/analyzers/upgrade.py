"""Safe upgrade resolution for vulnerable packages.

Picks the version to upgrade to: the highest patched release within the
current major line when one exists, otherwise the lowest patched release
across a major boundary. Each pick is scored for confidence and residual
risk.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Sequence

from depguardian import versions
from depguardian.adapters.base import RegistryClient, github_compare_url
from depguardian.analyzers.aggregator import VulnerabilityAggregator
from depguardian.models.schemas import (
    Confidence,
    Dependency,
    PackageInfo,
    Severity,
    UpgradePath,
    Vulnerability,
)

logger = logging.getLogger(__name__)

# Risk weights
CURRENT_SEVERITY_RISK = {
    Severity.CRITICAL: 10,
    Severity.HIGH: 5,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}
NEW_SEVERITY_RISK = {
    Severity.CRITICAL: 8,
    Severity.HIGH: 4,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
}
FIX_CREDIT = 3
BREAKING_PENALTY = 3

# Packages resolved at once
DEFAULT_CONCURRENCY = 20


def find_fixed_versions(vulnerabilities: Iterable[Vulnerability], published: Iterable[str]) -> list[str]:
    """Published versions named as patched by any vulnerability, ascending."""
    published = set(published)
    fixed = {
        patched
        for vuln in vulnerabilities
        for patched in vuln.patched_versions
        if patched in published
    }
    return versions.sort_versions(fixed)


def choose_target(current_version: str, fixed_versions: Iterable[str]) -> str | None:
    """Pick the upgrade target among patched versions.

    Only versions newer than ``current_version`` qualify. The highest
    non-breaking one wins; failing that, the lowest breaking one.
    """
    candidates = [v for v in fixed_versions if versions.greater_than(v, current_version)]
    if not candidates:
        return None

    non_breaking = [v for v in candidates if not versions.is_breaking_upgrade(current_version, v)]
    if non_breaking:
        return versions.sort_versions(non_breaking)[-1]

    ordered = versions.sort_versions(candidates)
    return ordered[0] if ordered else None


def is_resolved_by(vulnerability: Vulnerability, target_version: str) -> bool:
    """Check whether upgrading to ``target_version`` fixes a vulnerability.

    The target must be at or above a patched version on its own major line
    (any patched version when none share the line), and must fall outside
    every vulnerable range.
    """
    patched = [v for v in vulnerability.patched_versions if versions.is_valid(v)]
    if not patched:
        return False

    same_line = [v for v in patched if versions.same_major_version(v, target_version)]
    if not any(not versions.greater_than(v, target_version) for v in same_line or patched):
        return False

    return not any(
        versions.satisfies(target_version, vulnerable_range)
        for vulnerable_range in vulnerability.vulnerable_version_ranges
    )


def calculate_confidence(
    current_version: str,
    target_version: str,
    vulnerabilities: Iterable[Vulnerability],
) -> Confidence:
    """Grade how directly the target is known to fix the vulnerabilities."""
    if any(target_version in vuln.patched_versions for vuln in vulnerabilities):
        return Confidence.HIGH
    if versions.same_major_version(current_version, target_version):
        return Confidence.MEDIUM
    return Confidence.LOW


def calculate_risk_score(
    current: Sequence[Vulnerability],
    resolved_count: int,
    new: Sequence[Vulnerability],
    is_breaking: bool,
) -> float:
    """Residual risk of taking an upgrade. Never negative."""
    score = sum(CURRENT_SEVERITY_RISK[vuln.severity] for vuln in current)
    score -= FIX_CREDIT * resolved_count
    score += sum(NEW_SEVERITY_RISK[vuln.severity] for vuln in new)
    if is_breaking:
        score += BREAKING_PENALTY
    return float(max(0, score))


class SafeUpgradeResolver:
    """Computes upgrade paths for vulnerable packages."""

    def __init__(
        self,
        registry: RegistryClient,
        aggregator: VulnerabilityAggregator,
        logger: logging.Logger | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        """Initialize the resolver.

        Args:
            registry: Source of published versions and repository URLs.
            aggregator: Used to check candidate versions for vulnerabilities.
            logger: Logger to report through. Defaults to the module logger.
            concurrency: Packages resolved at once by ``resolve_all``.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.concurrency = concurrency
        self.registry = registry
        self.aggregator = aggregator
        self._log = logger or logging.getLogger(__name__)

    async def _get_package_info(self, package_name: str) -> PackageInfo | None:
        try:
            return await self.registry.get_package_info(package_name)
        except Exception as e:
            self._log.warning(f"Failed to get available versions for {package_name}: {e}")
            return None

    def changelog_url(self, info: PackageInfo, from_version: str, to_version: str) -> str | None:
        """GitHub compare link between two releases, when the repo is on GitHub."""
        return github_compare_url(info.repository_url, from_version, to_version)

    async def resolve(
        self,
        package_name: str,
        current_version: str,
        vulnerabilities: Sequence[Vulnerability],
    ) -> UpgradePath | None:
        """Compute the safest upgrade for one package.

        Args:
            package_name: Package to upgrade.
            current_version: Installed version. Ranges are coerced.
            vulnerabilities: Known vulnerabilities of the current version.

        Returns:
            UpgradePath, or None when there is nothing newer that is patched.
        """
        if not versions.is_valid(current_version):
            coerced = versions.coerce(current_version)
            if coerced is None:
                self._log.warning(f"Cannot interpret {package_name} version {current_version!r}")
                return None
            current_version = coerced

        self._log.info(f"Calculating safe upgrade path for {package_name}@{current_version}")

        info = await self._get_package_info(package_name)
        if info is None or not info.published_versions:
            self._log.warning(f"No available versions found for {package_name}")
            return None

        patched_vulns = [v for v in vulnerabilities if v.patched_versions]
        fixed_versions = find_fixed_versions(patched_vulns, info.published_versions)
        if not fixed_versions:
            self._log.warning(f"No versions found that fix vulnerabilities for {package_name}")
            return None

        target = choose_target(current_version, fixed_versions)
        if target is None:
            self._log.warning(f"No safe upgrade path found for {package_name}")
            return None

        known_ids = {vuln.id for vuln in vulnerabilities}
        at_target = await self.aggregator.query_package(package_name, target)
        new_vulnerabilities = [vuln for vuln in at_target if vuln.id not in known_ids]

        resolved = [vuln for vuln in vulnerabilities if is_resolved_by(vuln, target)]
        is_breaking = versions.is_breaking_upgrade(current_version, target)

        path = UpgradePath(
            package_name=package_name,
            current_version=current_version,
            target_version=target,
            is_breaking=is_breaking,
            fixed_vulnerability_ids=frozenset(vuln.id for vuln in resolved),
            new_vulnerability_ids=frozenset(vuln.id for vuln in new_vulnerabilities),
            confidence=calculate_confidence(current_version, target, patched_vulns),
            risk_score=calculate_risk_score(vulnerabilities, len(resolved), new_vulnerabilities, is_breaking),
            changelog_url=self.changelog_url(info, current_version, target),
        )

        self._log.info(f"Safe upgrade path found: {current_version} -> {target}")
        return path

    async def find_safe_version(self, package_name: str, version_range: str) -> str | None:
        """Find the newest version in a range without critical vulnerabilities.

        Args:
            package_name: Package name.
            version_range: npm range such as ``^4.17.0``.

        Returns:
            The highest satisfying version with no critical finding, or None.
        """
        info = await self._get_package_info(package_name)
        if info is None:
            return None

        candidates = versions.sort_versions(
            versions.versions_in_range(info.published_versions, version_range),
            reverse=True,
        )
        for candidate in candidates:
            found = await self.aggregator.query_package(package_name, candidate)
            if not any(vuln.severity == Severity.CRITICAL for vuln in found):
                return candidate
            self._log.debug(f"{package_name}@{candidate} has critical vulnerabilities, trying older")

        return None

    async def resolve_all_with_gaps(
        self,
        dependencies: Sequence[Dependency],
        vulnerabilities: Sequence[Vulnerability],
    ) -> tuple[list[UpgradePath], list[str]]:
        """Resolve every vulnerable dependency.

        Vulnerabilities of packages absent from ``dependencies`` are skipped,
        and so are packages whose installed version is unknown: they have
        no upgrade to plan and are not reported as unresolved.

        Returns:
            ``(upgrade_paths, unresolved_package_names)``.
        """
        by_package: dict[str, list[Vulnerability]] = {}
        for vuln in vulnerabilities:
            by_package.setdefault(vuln.package_name, []).append(vuln)

        current: dict[str, str | None] = {}
        for dep in dependencies:
            current.setdefault(dep.name, dep.current_version)

        names = []
        for name in by_package:
            if name not in current:
                continue
            if current[name] is None:
                self._log.warning(f"No usable version for {name}, skipping upgrade resolution")
                continue
            names.append(name)
        self._log.info(f"Calculating upgrade paths for {len(names)} vulnerable packages")

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _resolve(name: str) -> UpgradePath | None:
            async with semaphore:
                return await self.resolve(name, current[name], by_package[name])

        results = await asyncio.gather(*(_resolve(name) for name in names))

        paths = [path for path in results if path is not None]
        unresolved = [name for name, path in zip(names, results) if path is None]

        self._log.info(f"Found {len(paths)} safe upgrade paths")
        return paths, unresolved

    async def resolve_all(
        self,
        dependencies: Sequence[Dependency],
        vulnerabilities: Sequence[Vulnerability],
    ) -> list[UpgradePath]:
        """Resolve every vulnerable dependency; see ``resolve_all_with_gaps``."""
        paths, _ = await self.resolve_all_with_gaps(dependencies, vulnerabilities)
        return paths
