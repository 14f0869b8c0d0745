"""Snyk vulnerability source. Requires an API token."""

import logging
from datetime import datetime

import httpx

from depguardian import __version__
from depguardian.analyzers.base import VulnerabilitySourceBase
from depguardian.config import ConfigurationError
from depguardian.models.schemas import Severity, Vulnerability, VulnerabilitySource

logger = logging.getLogger(__name__)


class SnykSource(VulnerabilitySourceBase):
    """Fetches vulnerability data from the Snyk test API.

    API docs: https://snyk.docs.apiary.io/#reference/test/npm
    """

    BASE_URL = "https://api.snyk.io"

    def __init__(
        self,
        token: str | None,
        client: httpx.AsyncClient | None = None,
        organization: str | None = None,
        base_url: str | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            token: Snyk API token.
            client: Optional httpx client. If not provided, creates one per request.
            organization: Snyk organization id to test against.
            base_url: API base URL override.

        Raises:
            ConfigurationError: If no token is given.
        """
        if not token:
            raise ConfigurationError("Snyk source requires an API token")
        self._token = token
        self._client = client
        self.organization = organization
        self.base_url = (base_url or self.BASE_URL).rstrip("/")

    @property
    def name(self) -> str:
        return "snyk"

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"token {self._token}",
            "Content-Type": "application/json",
            "User-Agent": f"depguardian/{__version__}",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client."""
        if self._client is not None:
            return self._client
        return httpx.AsyncClient(timeout=30.0)

    async def query(self, package_name: str, version: str | None = None) -> list[Vulnerability]:
        """Test a package (latest version when none is given) against Snyk."""
        encoded_name = package_name.replace("/", "%2F")
        url = f"{self.base_url}/v1/test/npm/{encoded_name}"
        if version:
            url = f"{url}/{version}"
        params = {"org": self.organization} if self.organization else None

        logger.debug(f"Testing {package_name}@{version or 'latest'} with Snyk")
        client = await self._get_client()
        try:
            response = await client.get(url, headers=self._headers(), params=params)
            if response.status_code == 404:
                return []
            response.raise_for_status()
            data = response.json()
        finally:
            if self._client is None:
                await client.aclose()

        issues = data.get("issues") or {}
        records = issues.get("vulnerabilities") or data.get("vulnerabilities") or []
        return [self.parse_record(record, package_name, version) for record in records]

    def parse_record(self, record: dict, package_name: str, version: str | None = None) -> Vulnerability:
        """Convert one Snyk issue into a Vulnerability."""
        try:
            severity = Severity(str(record.get("severity", "")).lower())
        except ValueError:
            severity = Severity.LOW

        identifiers = record.get("identifiers") or {}
        cves = record.get("cve") or identifiers.get("CVE") or []

        patched = record.get("patchedVersions") or record.get("fixedIn") or []
        vulnerable = record.get("vulnerableVersions") or (record.get("semver") or {}).get("vulnerable") or []

        references = []
        for ref in record.get("references") or []:
            url = ref.get("url") if isinstance(ref, dict) else ref
            if url:
                references.append(url)

        cvss_score = record.get("cvssScore")
        return Vulnerability(
            id=record.get("id", "UNKNOWN"),
            package_name=package_name,
            package_version=version or "*",
            severity=severity,
            cvss_score=float(cvss_score) if cvss_score is not None else None,
            cvss_vector=record.get("CVSSv3") or record.get("cvssVector"),
            title=record.get("title", "") or "",
            description=record.get("description", "") or "",
            cve_id=cves[0] if cves else None,
            patched_versions=frozenset(patched),
            vulnerable_version_ranges=frozenset(vulnerable),
            source=VulnerabilitySource.SNYK,
            references=tuple(references),
            published_at=self._parse_date(record.get("publicationTime")),
            modified_at=self._parse_date(record.get("modificationTime") or record.get("disclosureTime")),
        )

    def _parse_date(self, value: str | None) -> datetime | None:
        if not value:
            return None
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
