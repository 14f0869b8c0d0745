import json
import logging

import httpx
import pytest

from depguardian.analyzers.osv import OSVSource
from depguardian.models.schemas import Severity, VulnerabilitySource

LODASH_RECORD = {
    "id": "GHSA-jf85-cpcp-j695",
    "summary": "Prototype Pollution in lodash",
    "details": "Versions of lodash before 4.17.12 are vulnerable to Prototype Pollution.",
    "aliases": ["CVE-2019-10744"],
    "published": "2019-07-10T19:45:23Z",
    "modified": "2023-01-09T05:03:39Z",
    "severity": [
        {"type": "CVSS_V3", "score": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:H/A:H"}
    ],
    "affected": [
        {
            "package": {"ecosystem": "npm", "name": "lodash"},
            "ranges": [
                {"type": "SEMVER", "events": [{"introduced": "0"}, {"fixed": "4.17.12"}]}
            ],
        },
        {
            "package": {"ecosystem": "npm", "name": "lodash-es"},
            "ranges": [
                {"type": "SEMVER", "events": [{"introduced": "0"}, {"fixed": "4.17.15"}]}
            ],
        },
    ],
    "references": [
        {"type": "ADVISORY", "url": "https://nvd.nist.gov/vuln/detail/CVE-2019-10744"},
        {"type": "WEB", "url": "https://github.com/lodash/lodash/pull/4336"},
    ],
}


def test_parse_record_maps_fields():
    vuln = OSVSource().parse_record(LODASH_RECORD, "lodash", "4.17.11")

    assert vuln.id == "GHSA-jf85-cpcp-j695"
    assert vuln.package_version == "4.17.11"
    assert vuln.source == VulnerabilitySource.OSV
    assert vuln.cve_id == "CVE-2019-10744"
    assert vuln.cvss_score == pytest.approx(9.8)
    assert vuln.severity == Severity.CRITICAL
    assert vuln.patched_versions == frozenset({"4.17.12"})
    assert vuln.vulnerable_version_ranges == frozenset({">=0.0.0 <4.17.12"})
    assert vuln.references[0] == "https://nvd.nist.gov/vuln/detail/CVE-2019-10744"
    assert vuln.published_at.year == 2019


def test_database_severity_wins_over_cvss():
    record = dict(LODASH_RECORD, database_specific={"severity": "MODERATE"})
    assert OSVSource().parse_record(record, "lodash").severity == Severity.MEDIUM


def test_severity_defaults_to_medium():
    record = {"id": "OSV-2024-1", "affected": []}
    vuln = OSVSource().parse_record(record, "left-pad")

    assert vuln.severity == Severity.MEDIUM
    assert vuln.cvss_score is None
    assert vuln.patched_versions == frozenset()


def test_last_affected_and_open_ranges():
    record = {
        "id": "GHSA-open",
        "affected": [
            {
                "package": {"name": "pkg"},
                "ranges": [
                    {
                        "type": "ECOSYSTEM",
                        "events": [
                            {"introduced": "1.0.0"},
                            {"last_affected": "1.4.0"},
                            {"introduced": "2.0.0"},
                        ],
                    }
                ],
            }
        ],
    }
    vuln = OSVSource().parse_record(record, "pkg")
    assert vuln.vulnerable_version_ranges == frozenset({">=1.0.0 <=1.4.0", ">=2.0.0"})


@pytest.mark.asyncio
async def test_query_posts_package_and_version():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"vulns": [LODASH_RECORD]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        found = await OSVSource(client=client).query("lodash", "4.17.11")

    assert seen["url"] == "https://api.osv.dev/v1/query"
    assert seen["body"] == {
        "package": {"name": "lodash", "ecosystem": "npm"},
        "version": "4.17.11",
    }
    assert [v.id for v in found] == ["GHSA-jf85-cpcp-j695"]


@pytest.mark.asyncio
async def test_query_without_version_and_empty_response():
    def handler(request: httpx.Request) -> httpx.Response:
        assert "version" not in json.loads(request.content)
        return httpx.Response(200, json={})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await OSVSource(client=client).query("left-pad") == []


@pytest.mark.asyncio
async def test_query_raises_on_server_error():
    transport = httpx.MockTransport(lambda request: httpx.Response(503))

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await OSVSource(client=client).query("lodash", "4.17.11")


@pytest.mark.asyncio
async def test_query_many_uses_batch_endpoint_then_fetches_records():
    paths = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        if request.url.path == "/v1/querybatch":
            body = json.loads(request.content)
            assert [q["package"]["name"] for q in body["queries"]] == ["lodash", "left-pad"]
            return httpx.Response(
                200,
                json={"results": [{"vulns": [{"id": "GHSA-jf85-cpcp-j695"}]}, {}]},
            )
        assert request.url.path == "/v1/vulns/GHSA-jf85-cpcp-j695"
        return httpx.Response(200, json=LODASH_RECORD)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        found = await OSVSource(client=client).query_many(
            [("lodash", "4.17.11"), ("left-pad", "1.3.0")]
        )

    assert paths == ["/v1/querybatch", "/v1/vulns/GHSA-jf85-cpcp-j695"]
    assert [(v.id, v.package_version) for v in found] == [("GHSA-jf85-cpcp-j695", "4.17.11")]


@pytest.mark.asyncio
async def test_query_many_falls_back_to_single_queries(caplog):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/querybatch":
            return httpx.Response(500)
        name = json.loads(request.content)["package"]["name"]
        if name == "broken":
            return httpx.Response(503)
        return httpx.Response(200, json={"vulns": [LODASH_RECORD]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with caplog.at_level(logging.WARNING):
            found = await OSVSource(client=client).query_many(
                [("lodash", "4.17.11"), ("broken", "1.0.0")]
            )

    assert [v.id for v in found] == ["GHSA-jf85-cpcp-j695"]
    assert "falling back to single queries" in caplog.text
    assert "Failed to query osv for broken@1.0.0" in caplog.text
