import json

import pytest

from depguardian.analyzers.pipeline import ScanPipeline, count_by_severity
from depguardian.analyzers.snyk import SnykSource
from depguardian.config import ConfigurationError, DepGuardianConfig
from depguardian.models.schemas import Dependency, DependencyKind, Severity, ThreatType

from helpers import FakeRegistry, FakeSource, make_package, make_vuln


def build_pipeline(config=None):
    registry = FakeRegistry(
        {
            "lodash": make_package("lodash", ["4.17.20", "4.17.21"]),
            "expres": make_package("expres", ["1.0.0"]),
            "jest": make_package("jest", ["29.0.0"]),
        }
    )
    source = FakeSource(
        "osv",
        {("lodash", "4.17.20"): [make_vuln("GHSA-lodash", patched=["4.17.21"], severity=Severity.HIGH)]},
    )
    return ScanPipeline(config, registry=registry, sources=[source]), registry, source


DEPENDENCIES = [
    Dependency(name="lodash", declared_version_range="^4.17.20"),
    Dependency(name="expres", declared_version_range="1.0.0"),
    Dependency(name="jest", declared_version_range="^29.0.0", kind=DependencyKind.DEV),
]


@pytest.mark.asyncio
async def test_scan_combines_all_stages():
    pipeline, _, _ = build_pipeline()

    result = await pipeline.scan(DEPENDENCIES)

    assert result.dependencies_scanned == 3
    assert [v.id for v in result.vulnerabilities] == ["GHSA-lodash"]
    assert result.vulnerable_packages == 1
    assert result.severity_counts[Severity.HIGH] == 1
    assert any(t.type == ThreatType.TYPOSQUATTING for t in result.supply_chain_threats)
    assert [(p.package_name, p.target_version) for p in result.upgrade_paths] == [("lodash", "4.17.21")]
    assert result.unresolved_packages == ()


@pytest.mark.asyncio
async def test_ignore_list_and_dev_setting():
    config = DepGuardianConfig.model_validate(
        {"scanning": {"ignore_packages": ["expres"], "include_dev": False}}
    )
    pipeline, _, source = build_pipeline(config)

    result = await pipeline.scan(DEPENDENCIES)

    assert result.dependencies_scanned == 1
    assert {name for name, _ in source.calls} == {"lodash"}
    assert not any(t.package_name == "expres" for t in result.supply_chain_threats)


@pytest.mark.asyncio
async def test_detection_can_be_disabled():
    config = DepGuardianConfig.model_validate({"detection": {"enabled": False}})
    pipeline, _, _ = build_pipeline(config)

    result = await pipeline.scan(DEPENDENCIES)

    assert result.supply_chain_threats == ()


@pytest.mark.asyncio
async def test_extra_popular_packages_extend_reference_set():
    config = DepGuardianConfig.model_validate({"detection": {"extra_popular_packages": ["acme-ui"]}})
    pipeline, _, _ = build_pipeline(config)

    result = await pipeline.scan([Dependency(name="acme-iu", declared_version_range="1.0.0")])

    assert [t.type for t in result.supply_chain_threats] == [ThreatType.TYPOSQUATTING]


@pytest.mark.asyncio
async def test_scan_project(tmp_path):
    (tmp_path / "package.json").write_text(json.dumps({"dependencies": {"lodash": "^4.17.20"}}))
    pipeline, _, _ = build_pipeline()

    result = await pipeline.scan_project(tmp_path)

    assert result.dependencies_scanned == 1
    assert result.upgrade_paths[0].target_version == "4.17.21"


@pytest.mark.asyncio
async def test_check_package_uses_latest_when_no_version():
    pipeline, _, source = build_pipeline()

    await pipeline.check_package("lodash")

    assert ("lodash", "4.17.21") in source.calls


@pytest.mark.asyncio
async def test_plan_upgrade():
    pipeline, _, _ = build_pipeline()

    vulnerabilities, path = await pipeline.plan_upgrade("lodash", "4.17.20")

    assert [v.id for v in vulnerabilities] == ["GHSA-lodash"]
    assert path.target_version == "4.17.21"


def test_snyk_source_added_when_token_present():
    config = DepGuardianConfig.model_validate({"snyk": {"token": "abc"}})
    pipeline = ScanPipeline(config)

    assert [s.name for s in pipeline.aggregator.sources] == ["osv", "snyk"]
    assert isinstance(pipeline.aggregator.sources[1], SnykSource)


def test_snyk_enabled_without_token_raises():
    config = DepGuardianConfig.model_validate({"snyk": {"enabled": True}})
    with pytest.raises(ConfigurationError):
        ScanPipeline(config)


def test_count_by_severity_lists_every_level():
    counts = count_by_severity([make_vuln(severity=Severity.LOW)])
    assert counts == {Severity.LOW: 1, Severity.MEDIUM: 0, Severity.HIGH: 0, Severity.CRITICAL: 0}


@pytest.mark.asyncio
async def test_unknown_versions_are_reported_separately():
    registry = FakeRegistry({"left-pad": make_package("left-pad", ["1.3.0"])})
    source = FakeSource("osv", {("left-pad", None): [make_vuln("GHSA-pad", package_name="left-pad")]})
    pipeline = ScanPipeline(registry=registry, sources=[source])

    result = await pipeline.scan([Dependency(name="left-pad", declared_version_range="latest")])

    assert [v.id for v in result.vulnerabilities] == ["GHSA-pad"]
    assert result.unversioned_packages == ("left-pad",)
    assert result.unresolved_packages == ()
