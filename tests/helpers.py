import asyncio
from datetime import datetime, timezone

from depguardian.adapters.base import PackageNotFoundError, RegistryClient
from depguardian.analyzers.base import VulnerabilitySourceBase
from depguardian.models.schemas import (
    Maintainer,
    PackageInfo,
    Severity,
    VersionInfo,
    Vulnerability,
    VulnerabilitySource,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeRegistry(RegistryClient):
    """In-memory registry keyed by package name."""

    def __init__(self, packages=None, failing=()):
        self.packages = dict(packages or {})
        self.failing = set(failing)
        self.calls = []

    @property
    def ecosystem(self):
        return "npm"

    async def get_package_info(self, name):
        self.calls.append(name)
        if name in self.failing:
            raise RuntimeError(f"registry unavailable for {name}")
        if name not in self.packages:
            raise PackageNotFoundError(self.ecosystem, name)
        return self.packages[name]


class SlowRegistry(FakeRegistry):
    """FakeRegistry that holds every lookup briefly and records peak concurrency."""

    def __init__(self, *args, delay=0.01, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    async def get_package_info(self, name):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return await super().get_package_info(name)
        finally:
            self.in_flight -= 1


class FakeSource(VulnerabilitySourceBase):
    """Vulnerability source answering from a ``{(name, version): [...]}`` map.

    A ``None`` version key matches any version of the package.
    """

    def __init__(self, name="fake", results=None, failing=()):
        self._name = name
        self.results = dict(results or {})
        self.failing = set(failing)
        self.calls = []

    @property
    def name(self):
        return self._name

    async def query(self, package_name, version=None):
        self.calls.append((package_name, version))
        if package_name in self.failing:
            raise RuntimeError(f"{self._name} is down")
        if (package_name, version) in self.results:
            return list(self.results[(package_name, version)])
        return list(self.results.get((package_name, None), []))


class SlowSource(FakeSource):
    """FakeSource that holds every query briefly and records peak concurrency."""

    def __init__(self, *args, delay=0.01, **kwargs):
        super().__init__(*args, **kwargs)
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    async def query(self, package_name, version=None):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            return await super().query(package_name, version)
        finally:
            self.in_flight -= 1


def make_vuln(
    vuln_id="GHSA-0001",
    package_name="lodash",
    severity=Severity.HIGH,
    patched=(),
    ranges=(),
    source=VulnerabilitySource.OSV,
    **kwargs,
):
    return Vulnerability(
        id=vuln_id,
        package_name=package_name,
        severity=severity,
        patched_versions=frozenset(patched),
        vulnerable_version_ranges=frozenset(ranges),
        source=source,
        **kwargs,
    )


def make_package(
    name,
    published=(),
    scripts=None,
    maintainers=(("alice", "alice@company.io"), ("bob", "bob@company.io")),
    timestamps=None,
    repository_url=None,
):
    scripts = scripts or {}
    return PackageInfo(
        name=name,
        published_versions=frozenset(published),
        versions={
            version: VersionInfo(version=version, install_scripts=scripts.get(version, {}))
            for version in published
        },
        maintainers=tuple(Maintainer(name=n, email=e) for n, e in maintainers),
        publish_timestamps=dict(timestamps or {}),
        repository_url=repository_url,
        latest_version=max(published, default=None),
    )


