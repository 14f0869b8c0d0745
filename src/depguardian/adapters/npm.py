"""NPM package registry adapter."""

import logging
from datetime import datetime

import httpx

from depguardian.adapters.base import PackageNotFoundError, RegistryClient, parse_github_repo
from depguardian.models.schemas import Maintainer, PackageInfo, VersionInfo

logger = logging.getLogger(__name__)

# Lifecycle scripts npm runs on install/uninstall without user action
INSTALL_LIFECYCLE_SCRIPTS = (
    "preinstall",
    "install",
    "postinstall",
    "preuninstall",
    "postuninstall",
    "prepare",
)

# Keys of the registry "time" map that are not versions
_TIME_META_KEYS = {"created", "modified", "unpublished"}


class NpmAdapter(RegistryClient):
    """Adapter for the NPM package registry.

    Data source:
    - Package document: https://registry.npmjs.org/{package}
    """

    REGISTRY_URL = "https://registry.npmjs.org"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        registry_url: str | None = None,
    ) -> None:
        """Initialize the adapter.

        Args:
            client: Optional httpx client for making requests.
            registry_url: Registry base URL, for mirrors.
        """
        self._client = client
        self.registry_url = (registry_url or self.REGISTRY_URL).rstrip("/")

    @property
    def ecosystem(self) -> str:
        return "npm"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client."""
        if self._client is not None:
            return self._client
        return httpx.AsyncClient(timeout=30.0)

    async def _fetch_json(self, url: str, headers: dict | None = None) -> dict | list:
        """Fetch JSON from a URL."""
        client = await self._get_client()
        try:
            response = await client.get(url, headers=headers or {})
            response.raise_for_status()
            return response.json()
        finally:
            if self._client is None:
                await client.aclose()

    async def get_package_info(self, name: str) -> PackageInfo:
        """Fetch registry metadata for an NPM package.

        Args:
            name: Package name (supports scoped packages like @org/pkg).

        Returns:
            PackageInfo with package information.

        Raises:
            PackageNotFoundError: If the package doesn't exist.
        """
        # URL-encode scoped package names
        encoded_name = name.replace("/", "%2F")
        url = f"{self.registry_url}/{encoded_name}"

        try:
            data = await self._fetch_json(url)
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                raise PackageNotFoundError(self.ecosystem, name) from e
            raise

        if not isinstance(data, dict):
            raise ValueError(f"Unexpected registry document for {name}")

        return self.parse_package_document(name, data)

    def parse_package_document(self, name: str, data: dict) -> PackageInfo:
        """Normalize a registry package document into PackageInfo."""
        raw_versions = data.get("versions") or {}
        version_infos = {}
        for version, version_data in raw_versions.items():
            if not isinstance(version_data, dict):
                version_data = {}
            version_infos[version] = VersionInfo(
                version=version,
                install_scripts=self._extract_install_scripts(version_data),
            )

        maintainers = tuple(
            Maintainer(name=m.get("name", "") or "", email=m.get("email"))
            for m in data.get("maintainers") or []
            if isinstance(m, dict)
        )

        dist_tags = data.get("dist-tags") or {}
        latest_version = dist_tags.get("latest")
        latest_data = raw_versions.get(latest_version) or {}
        repository = data.get("repository") or latest_data.get("repository")

        return PackageInfo(
            name=data.get("name", name),
            published_versions=frozenset(version_infos),
            versions=version_infos,
            maintainers=maintainers,
            publish_timestamps=self._extract_publish_times(data.get("time") or {}),
            repository_url=self._extract_repo_url(repository),
            latest_version=latest_version,
        )

    def _extract_install_scripts(self, version_data: dict) -> dict[str, str]:
        """Pick the install-time lifecycle scripts from a version manifest."""
        scripts = version_data.get("scripts") or {}
        if not isinstance(scripts, dict):
            return {}
        return {
            hook: body
            for hook, body in scripts.items()
            if hook in INSTALL_LIFECYCLE_SCRIPTS and isinstance(body, str)
        }

    def _extract_publish_times(self, time_map: dict) -> dict[str, datetime]:
        """Parse the registry "time" map into per-version timestamps."""
        timestamps = {}
        for version, published in time_map.items():
            if version in _TIME_META_KEYS or not isinstance(published, str):
                continue
            try:
                timestamps[version] = datetime.fromisoformat(published.replace("Z", "+00:00"))
            except ValueError:
                logger.debug(f"Unparsable publish time for {version}: {published}")
        return timestamps

    def _extract_repo_url(self, repository: dict | str | None) -> str | None:
        """Normalize the manifest "repository" field (object, URL or shorthand).

        GitHub locations become ``https://github.com/owner/repo``.
        """
        url = repository.get("url") if isinstance(repository, dict) else repository
        if not isinstance(url, str) or not url.strip():
            return None

        parsed = parse_github_repo(url)
        if parsed:
            owner, repo = parsed
            return f"https://github.com/{owner}/{repo}"
        return url.replace("git+", "").removesuffix(".git")
