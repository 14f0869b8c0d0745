import httpx
import pytest

from depguardian.adapters.base import PackageNotFoundError, github_compare_url, parse_github_repo
from depguardian.adapters.npm import NpmAdapter

REGISTRY_DOCUMENT = {
    "name": "left-pad",
    "dist-tags": {"latest": "1.3.0"},
    "maintainers": [{"name": "stevemao", "email": "maochenyan@gmail.com"}],
    "repository": {"type": "git", "url": "git+https://github.com/stevemao/left-pad.git"},
    "time": {
        "created": "2014-03-14T03:50:26.915Z",
        "modified": "2022-06-19T11:17:47.153Z",
        "1.2.0": "2017-11-15T23:11:09.032Z",
        "1.3.0": "2018-04-09T01:46:51.347Z",
    },
    "versions": {
        "1.2.0": {"version": "1.2.0", "scripts": {"test": "node test"}},
        "1.3.0": {
            "version": "1.3.0",
            "scripts": {"test": "node test", "postinstall": "node ./setup.js"},
        },
    },
}


@pytest.mark.asyncio
async def test_get_package_info():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/left-pad"
        return httpx.Response(200, json=REGISTRY_DOCUMENT)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        info = await NpmAdapter(client=client).get_package_info("left-pad")

    assert info.published_versions == frozenset({"1.2.0", "1.3.0"})
    assert info.latest_version == "1.3.0"
    assert info.versions["1.2.0"].install_scripts == {}
    assert info.versions["1.3.0"].install_scripts == {"postinstall": "node ./setup.js"}
    assert set(info.publish_timestamps) == {"1.2.0", "1.3.0"}
    assert info.maintainers[0].email == "maochenyan@gmail.com"
    assert info.repository_url == "https://github.com/stevemao/left-pad"


@pytest.mark.asyncio
async def test_scoped_package_name_is_encoded():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["raw_path"] = request.url.raw_path
        return httpx.Response(200, json={"name": "@types/node", "versions": {}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        await NpmAdapter(client=client).get_package_info("@types/node")

    assert seen["raw_path"] == b"/@types%2Fnode"


@pytest.mark.asyncio
async def test_missing_package_raises_not_found():
    transport = httpx.MockTransport(lambda request: httpx.Response(404))

    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(PackageNotFoundError):
            await NpmAdapter(client=client).get_package_info("does-not-exist")


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://github.com/lodash/lodash", ("lodash", "lodash")),
        ("git+https://github.com/expressjs/express.git", ("expressjs", "express")),
        ("git@github.com:facebook/react.git", ("facebook", "react")),
        ("github:vuejs/core", ("vuejs", "core")),
        ("https://gitlab.com/owner/repo", None),
        (None, None),
    ],
)
def test_parse_github_repo(url, expected):
    assert parse_github_repo(url) == expected


def test_github_compare_url():
    assert (
        github_compare_url("https://github.com/lodash/lodash", "4.17.20", "4.17.21")
        == "https://github.com/lodash/lodash/compare/v4.17.20...v4.17.21"
    )
    assert github_compare_url(None, "1.0.0", "1.0.1") is None
