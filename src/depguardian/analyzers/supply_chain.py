"""Supply chain threat detection for npm dependencies.

Implements detection for:
- Typosquatted names imitating popular packages
- Malicious install lifecycle scripts
- Suspicious publishing activity
- Risky maintainer accounts
"""

from __future__ import annotations

import asyncio
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime, timedelta, timezone

from depguardian.adapters.base import RegistryClient
from depguardian.adapters.npm import INSTALL_LIFECYCLE_SCRIPTS
from depguardian.analyzers.typosquatting import find_typosquat_target
from depguardian.models.schemas import (
    Dependency,
    PackageInfo,
    Severity,
    SupplyChainThreat,
    ThreatType,
)

logger = logging.getLogger(__name__)


# === Reference Data ===

DEFAULT_POPULAR_PACKAGES = (
    "lodash", "express", "react", "vue", "angular", "axios", "moment", "request",
    "underscore", "chalk", "commander", "webpack", "babel", "eslint", "prettier",
    "jest", "mocha", "typescript", "react-dom", "prop-types", "redux",
    "react-router", "next", "nuxt", "gatsby", "vue-router", "vuex",
    "styled-components", "emotion", "material-ui", "ant-design", "bootstrap",
    "tailwindcss",
)

# Substrings of placeholder or disposable maintainer emails
SUSPICIOUS_EMAIL_MARKERS = (
    "temp",
    "fake",
    "test",
    "example",
    "10minutemail",
    "guerrillamail",
    "mailinator",
    "yopmail",
    "trashmail",
)

RAPID_RELEASE_WINDOW = timedelta(hours=24)
RAPID_RELEASE_THRESHOLD = 5
NEW_PACKAGE_WINDOW = timedelta(days=7)

# Registry lookups in flight at once
DEFAULT_CONCURRENCY = 20


# === Pattern Definitions ===
# Applied to the concatenated install lifecycle scripts of a version.

SHELL_EXEC_PATTERNS = [
    (r"\beval\s*\(", "eval", "eval() call"),
    (r"\bFunction\s*\(", "function_constructor", "Function constructor"),
    (r"child_process", "child_process", "child_process module use"),
    (r"\bexec(?:Sync)?\s*\(", "exec", "Process execution via exec()"),
    (r"\bspawn(?:Sync)?\s*\(", "spawn", "Process execution via spawn()"),
    (r"\|\s*(?:bash|sh|zsh)\b", "pipe_shell", "Piping output to shell"),
]

REMOTE_FETCH_PATTERNS = [
    (r"\bcurl\s+", "curl", "Network download with curl"),
    (r"\bwget\s+", "wget", "Network download with wget"),
    (r"\bbun\.sh\b", "bun_install", "Bun runtime installation"),
]

DESTRUCTIVE_FS_PATTERNS = [
    (r"\brm\s+-rf\b", "rm_rf", "Recursive forced delete"),
    (r"\.bashrc", "bashrc", "Shell startup file access"),
    (r"\.profile", "profile", "Login profile access"),
    (r"/etc/", "etc_access", "System configuration access"),
]

PRIVILEGE_PATTERNS = [
    (r"\bsudo\b", "sudo", "Privilege escalation with sudo"),
    (r"\bchmod\s+777\b", "chmod_777", "World-writable permissions"),
]

OBFUSCATION_PATTERNS = [
    (r"base64", "base64", "Base64 encoding or decoding"),
    (r"crypto", "crypto", "Crypto module use"),
    (r"\\x[0-9a-fA-F]{2}(?:\\x[0-9a-fA-F]{2}){15,}", "hex_encoding", "Long hex-encoded string sequence"),
]

INSTALL_SCRIPT_PATTERNS = [
    (re.compile(regex, re.IGNORECASE), pattern_type, description)
    for pattern_set in (
        SHELL_EXEC_PATTERNS,
        REMOTE_FETCH_PATTERNS,
        DESTRUCTIVE_FS_PATTERNS,
        PRIVILEGE_PATTERNS,
        OBFUSCATION_PATTERNS,
    )
    for regex, pattern_type, description in pattern_set
]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# === Checks ===


class ThreatCheck(ABC):
    """One independent supply-chain heuristic."""

    #: Whether the check needs registry metadata to run.
    requires_registry = True

    @abstractmethod
    def check(
        self,
        package_name: str,
        info: PackageInfo | None,
        now: datetime,
    ) -> list[SupplyChainThreat]:
        """Inspect one package.

        Args:
            package_name: Dependency name.
            info: Registry metadata, or None when it could not be fetched.
            now: Reference time for age-based rules.

        Returns:
            Zero or more findings.
        """
        ...


class TyposquattingCheck(ThreatCheck):
    """Flags names one edit away from a popular package."""

    requires_registry = False

    def __init__(self, popular_packages: Sequence[str] = DEFAULT_POPULAR_PACKAGES) -> None:
        self.popular_packages = tuple(popular_packages)

    def check(
        self, package_name: str, info: PackageInfo | None, now: datetime
    ) -> list[SupplyChainThreat]:
        match = find_typosquat_target(package_name, self.popular_packages)
        if match is None:
            return []

        target, technique = match
        return [
            SupplyChainThreat(
                type=ThreatType.TYPOSQUATTING,
                package_name=package_name,
                severity=Severity.HIGH,
                description=(
                    f'Package name "{package_name}" appears to be a typosquatting '
                    f'attempt targeting "{target}"'
                ),
                evidence=(
                    f"Similar to popular package: {target}",
                    f"Technique: {technique}",
                ),
                recommendations=(
                    "Verify this is the intended package",
                    "Check package maintainer and download counts",
                    f'Consider using "{target}" instead',
                ),
                detected_at=now,
            )
        ]


class InstallScriptCheck(ThreatCheck):
    """Flags versions whose install lifecycle scripts match suspicious patterns."""

    def __init__(self, patterns: Sequence[tuple[re.Pattern, str, str]] | None = None) -> None:
        self.patterns = list(patterns) if patterns is not None else INSTALL_SCRIPT_PATTERNS

    def match_patterns(self, script_content: str) -> list[tuple[str, str]]:
        """Return ``(pattern_type, description)`` for every pattern found."""
        return [
            (pattern_type, description)
            for regex, pattern_type, description in self.patterns
            if regex.search(script_content)
        ]

    def check(
        self, package_name: str, info: PackageInfo | None, now: datetime
    ) -> list[SupplyChainThreat]:
        if info is None:
            return []

        threats = []
        for version, version_info in info.versions.items():
            script_content = " ".join(
                version_info.install_scripts[hook]
                for hook in INSTALL_LIFECYCLE_SCRIPTS
                if hook in version_info.install_scripts
            )
            if not script_content:
                continue

            matched = self.match_patterns(script_content)
            if not matched:
                continue

            threats.append(
                SupplyChainThreat(
                    type=ThreatType.MALICIOUS_SCRIPT,
                    package_name=package_name,
                    severity=Severity.CRITICAL,
                    description=f'Package "{package_name}" contains suspicious install scripts',
                    evidence=(
                        "Found suspicious patterns in install scripts",
                        *(f"Pattern: {description} ({pattern_type})" for pattern_type, description in matched),
                        f"Version: {version}",
                    ),
                    recommendations=(
                        "Review package source code immediately",
                        "Check package maintainer reputation",
                        "Consider alternative packages",
                        "Audit all dependencies that use this package",
                    ),
                    detected_at=now,
                )
            )
        return threats


class PublishActivityCheck(ThreatCheck):
    """Flags release bursts and brand-new single-version packages."""

    def __init__(
        self,
        window: timedelta = RAPID_RELEASE_WINDOW,
        threshold: int = RAPID_RELEASE_THRESHOLD,
        new_package_window: timedelta = NEW_PACKAGE_WINDOW,
    ) -> None:
        self.window = window
        self.threshold = threshold
        self.new_package_window = new_package_window

    def check(
        self, package_name: str, info: PackageInfo | None, now: datetime
    ) -> list[SupplyChainThreat]:
        if info is None or not info.publish_timestamps:
            return []

        threats = []
        publish_times = {version: _as_utc(ts) for version, ts in info.publish_timestamps.items()}

        recent = [ts for ts in publish_times.values() if now - ts < self.window]
        if len(recent) > self.threshold:
            threats.append(
                SupplyChainThreat(
                    type=ThreatType.SUSPICIOUS_ACTIVITY,
                    package_name=package_name,
                    severity=Severity.MEDIUM,
                    description=f'Package "{package_name}" has unusually high release activity',
                    evidence=(
                        f"{len(recent)} releases in the last 24 hours",
                        f"Total versions: {len(publish_times)}",
                        "This pattern may indicate version bumping attacks",
                    ),
                    recommendations=(
                        "Investigate recent version changes",
                        "Check changelog for suspicious modifications",
                        "Monitor package for further unusual activity",
                    ),
                    detected_at=now,
                )
            )

        published = info.published_versions or frozenset(publish_times)
        if len(published) == 1:
            (only_version,) = published
            first_published = publish_times.get(only_version)
            if first_published is not None and now - first_published < self.new_package_window:
                age_days = max((now - first_published).days, 0)
                threats.append(
                    SupplyChainThreat(
                        type=ThreatType.SUSPICIOUS_ACTIVITY,
                        package_name=package_name,
                        severity=Severity.MEDIUM,
                        description=(
                            f'Package "{package_name}" is very recently published '
                            "with no version history"
                        ),
                        evidence=(
                            f"First published {age_days} days ago",
                            "Only one version available",
                        ),
                        recommendations=(
                            "Exercise caution with new packages",
                            "Check maintainer history and other packages",
                            "Wait for broader adoption before use",
                        ),
                        detected_at=now,
                    )
                )

        return threats


def is_suspicious_email(email: str | None) -> bool:
    """Placeholder, disposable or malformed maintainer email."""
    email = (email or "").lower()
    if "@" not in email:
        return True
    return any(marker in email for marker in SUSPICIOUS_EMAIL_MARKERS)


class MaintainerCheck(ThreatCheck):
    """Flags suspicious maintainer emails and single-maintainer packages."""

    def __init__(self, trusted_packages: Sequence[str] = DEFAULT_POPULAR_PACKAGES) -> None:
        self.trusted_packages = frozenset(trusted_packages)

    def check(
        self, package_name: str, info: PackageInfo | None, now: datetime
    ) -> list[SupplyChainThreat]:
        if info is None or not info.maintainers:
            return []

        threats = []
        suspicious = [m for m in info.maintainers if is_suspicious_email(m.email)]
        if suspicious:
            threats.append(
                SupplyChainThreat(
                    type=ThreatType.COMPROMISED_MAINTAINER,
                    package_name=package_name,
                    severity=Severity.HIGH,
                    description=(
                        f'Package "{package_name}" has maintainers with suspicious email addresses'
                    ),
                    evidence=(
                        f"Found {len(suspicious)} suspicious maintainers",
                        *(f"Maintainer: {m.name} ({m.email or 'no email'})" for m in suspicious),
                    ),
                    recommendations=(
                        "Verify maintainer authenticity",
                        "Check maintainer's other packages",
                        "Consider packages with more reputable maintainers",
                    ),
                    detected_at=now,
                )
            )

        if len(info.maintainers) == 1 and package_name not in self.trusted_packages:
            threats.append(
                SupplyChainThreat(
                    type=ThreatType.COMPROMISED_MAINTAINER,
                    package_name=package_name,
                    severity=Severity.LOW,
                    description=f'Package "{package_name}" has only one maintainer',
                    evidence=(
                        "Single point of failure",
                        "Higher risk if maintainer account is compromised",
                    ),
                    recommendations=(
                        "Monitor maintainer account security",
                        "Consider packages with multiple maintainers",
                    ),
                    detected_at=now,
                )
            )

        return threats


def default_checks(popular_packages: Sequence[str] = DEFAULT_POPULAR_PACKAGES) -> list[ThreatCheck]:
    """The standard check order."""
    return [
        TyposquattingCheck(popular_packages),
        InstallScriptCheck(),
        PublishActivityCheck(),
        MaintainerCheck(popular_packages),
    ]


# === Detector ===


class SupplyChainDetector:
    """Runs every supply-chain check over a dependency set."""

    def __init__(
        self,
        registry: RegistryClient,
        popular_packages: Iterable[str] = DEFAULT_POPULAR_PACKAGES,
        checks: Sequence[ThreatCheck] | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        """Initialize the detector.

        Args:
            registry: Source of package metadata.
            popular_packages: Reference names for the typosquatting and
                maintainer checks.
            checks: Checks to run, in order. Defaults to ``default_checks``.
            clock: Returns "now". Defaults to the current UTC time.
            logger: Logger to report through. Defaults to the module logger.
            concurrency: Registry lookups allowed in flight at once.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.registry = registry
        self.concurrency = concurrency
        self.popular_packages = tuple(popular_packages)
        self.checks = list(checks) if checks is not None else default_checks(self.popular_packages)
        self._clock = clock or _utcnow
        self._log = logger or logging.getLogger(__name__)

    async def _fetch_info(self, name: str) -> PackageInfo | None:
        try:
            return await self.registry.get_package_info(name)
        except Exception as e:
            self._log.warning(f"Failed to fetch registry metadata for {name}: {e}")
            return None

    async def detect(self, dependencies: Sequence[Dependency]) -> list[SupplyChainThreat]:
        """Find supply-chain threats in a dependency set.

        Registry metadata is fetched once per unique package name. Packages
        whose metadata cannot be fetched are only checked by checks that
        don't need it.

        Args:
            dependencies: Dependencies to inspect.

        Returns:
            All findings, grouped by package in dependency order.
        """
        names = list(dict.fromkeys(dep.name for dep in dependencies))
        if not names:
            return []

        self._log.info(f"Analyzing {len(names)} dependencies for supply chain threats")
        now = _as_utc(self._clock())

        if any(check.requires_registry for check in self.checks):
            semaphore = asyncio.Semaphore(self.concurrency)

            async def _bounded_fetch(name: str) -> PackageInfo | None:
                async with semaphore:
                    return await self._fetch_info(name)

            infos = await asyncio.gather(*(_bounded_fetch(name) for name in names))
        else:
            infos = [None] * len(names)

        threats: list[SupplyChainThreat] = []
        for name, info in zip(names, infos):
            for check in self.checks:
                found = check.check(name, info, now)
                if found:
                    self._log.debug(f"{type(check).__name__} flagged {name}: {len(found)} findings")
                threats.extend(found)

        self._log.info(f"Found {len(threats)} supply chain threats")
        return threats
