"""OSV (Open Source Vulnerabilities) source."""

import asyncio
import logging
import re
from datetime import datetime

import httpx
from cvss import CVSS3

from depguardian.analyzers.base import VulnerabilitySourceBase
from depguardian.models.schemas import Severity, Vulnerability, VulnerabilitySource

logger = logging.getLogger(__name__)

CVE_PATTERN = re.compile(r"CVE-\d{4}-\d{4,}")

# GitHub advisories grade with "MODERATE" instead of "MEDIUM"
SEVERITY_ALIASES = {
    "LOW": Severity.LOW,
    "MODERATE": Severity.MEDIUM,
    "MEDIUM": Severity.MEDIUM,
    "HIGH": Severity.HIGH,
    "CRITICAL": Severity.CRITICAL,
}


class OSVSource(VulnerabilitySourceBase):
    """Fetches vulnerability data from OSV (Open Source Vulnerabilities) database.

    OSV is a distributed vulnerability database for open source:
    https://osv.dev/

    No authentication required.
    """

    BASE_URL = "https://api.osv.dev/v1"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        ecosystem: str = "npm",
        base_url: str | None = None,
    ) -> None:
        """Initialize the source.

        Args:
            client: Optional httpx client. If not provided, creates one per request.
            ecosystem: OSV ecosystem name.
            base_url: API base URL override.
        """
        self._client = client
        self.ecosystem = ecosystem
        self.base_url = (base_url or self.BASE_URL).rstrip("/")

    @property
    def name(self) -> str:
        return "osv"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create an HTTP client."""
        if self._client is not None:
            return self._client
        return httpx.AsyncClient(timeout=30.0)

    async def _request(self, path: str, body: dict | None = None) -> dict:
        """POST ``body`` to an OSV endpoint, or GET it when there is no body."""
        client = await self._get_client()
        url = f"{self.base_url}/{path}"

        try:
            if body is None:
                response = await client.get(url)
            else:
                response = await client.post(url, json=body)
            response.raise_for_status()
            data = response.json()
        finally:
            if self._client is None:
                await client.aclose()

        if not isinstance(data, dict):
            raise ValueError(f"Unexpected OSV response from {path}")
        return data

    def _query_body(self, package_name: str, version: str | None) -> dict:
        body: dict = {
            "package": {
                "name": package_name,
                "ecosystem": self.ecosystem,
            }
        }
        if version:
            body["version"] = version
        return body

    async def query(self, package_name: str, version: str | None = None) -> list[Vulnerability]:
        """Fetch vulnerabilities for a package, optionally at one version."""
        logger.debug(f"Querying OSV for {package_name}@{version or '*'}")
        data = await self._request("query", self._query_body(package_name, version))
        vulns = data.get("vulns", []) or []
        return [self.parse_record(vuln, package_name, version) for vuln in vulns]

    async def query_many(
        self,
        packages: list[tuple[str, str | None]],
        logger: logging.Logger | None = None,
    ) -> list[Vulnerability]:
        """Query several packages through the ``querybatch`` endpoint.

        The batch endpoint only returns ids, so full records are fetched from
        ``vulns/{id}`` afterwards, never more at once than the batch has
        packages. If any of that fails the batch is retried one query per
        package.

        Args:
            packages: ``(package_name, version)`` pairs.
            logger: Logger for failures. Defaults to the module logger.
        """
        log = logger or logging.getLogger(__name__)
        packages = list(packages)
        if not packages:
            return []

        log.debug(f"Batch querying OSV for {len(packages)} packages")
        try:
            data = await self._request(
                "querybatch",
                {"queries": [self._query_body(name, version) for name, version in packages]},
            )
            results = data.get("results") or []
            if len(results) != len(packages):
                raise ValueError(f"Expected {len(packages)} batch results, got {len(results)}")

            ids = list(
                dict.fromkeys(
                    entry["id"] for result in results for entry in (result or {}).get("vulns") or []
                )
            )
            semaphore = asyncio.Semaphore(len(packages))

            async def _fetch_record(vuln_id: str) -> dict:
                async with semaphore:
                    return await self._request(f"vulns/{vuln_id}")

            records = dict(zip(ids, await asyncio.gather(*(_fetch_record(i) for i in ids))))
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            log.warning(f"OSV batch query failed, falling back to single queries: {e}")
            return await super().query_many(packages, logger=log)

        found = []
        for (name, version), result in zip(packages, results):
            for entry in (result or {}).get("vulns") or []:
                found.append(self.parse_record(records[entry["id"]], name, version))
        return found

    def parse_record(self, vuln: dict, package_name: str, version: str | None = None) -> Vulnerability:
        """Convert one OSV record into a Vulnerability."""
        severity, cvss_score, cvss_vector = self._parse_severity(vuln)
        affected = self._affected_entries(vuln, package_name)

        return Vulnerability(
            id=vuln.get("id", "UNKNOWN"),
            package_name=package_name,
            package_version=version or "*",
            severity=severity,
            cvss_score=cvss_score,
            cvss_vector=cvss_vector,
            title=vuln.get("summary", "") or (vuln.get("details", "") or "")[:200],
            description=vuln.get("details", "") or "",
            cve_id=self._parse_cve_id(vuln),
            patched_versions=frozenset(self._parse_fixed_versions(affected)),
            vulnerable_version_ranges=frozenset(self._parse_vulnerable_ranges(affected)),
            source=VulnerabilitySource.OSV,
            references=tuple(self._parse_references(vuln)),
            published_at=self._parse_date(vuln.get("published")),
            modified_at=self._parse_date(vuln.get("modified")),
        )

    def _affected_entries(self, vuln: dict, package_name: str) -> list[dict]:
        """Return the "affected" entries for this package (all, if none name it)."""
        affected = [a for a in vuln.get("affected", []) if isinstance(a, dict)]
        own = [a for a in affected if (a.get("package") or {}).get("name") == package_name]
        return own or affected

    def _parse_severity(self, vuln: dict) -> tuple[Severity, float | None, str | None]:
        """Extract severity, CVSS score and vector from OSV record.

        Args:
            vuln: OSV vulnerability record.

        Returns:
            Tuple of (severity, cvss_score, cvss_vector).
        """
        severity = None
        cvss_score = None
        cvss_vector = None

        # Check severity array
        for sev in vuln.get("severity", []) or []:
            if sev.get("type") != "CVSS_V3":
                continue
            score = sev.get("score", "")
            if isinstance(score, (int, float)):
                cvss_score = float(score)
            elif isinstance(score, str) and score.startswith("CVSS:3"):
                cvss_vector = score
                try:
                    cvss_score = float(CVSS3(score).base_score)
                except Exception as e:
                    logger.debug(f"Failed CVSS parse for {vuln.get('id')}: {e}")
            break

        # Check database_specific (GitHub advisories) for severity
        db_specific = vuln.get("database_specific", {}) or {}
        if isinstance(db_specific.get("severity"), str):
            severity = SEVERITY_ALIASES.get(db_specific["severity"].upper())

        # Check ecosystem_specific for npm severity
        if severity is None:
            for eco_data in vuln.get("affected", []) or []:
                eco_specific = eco_data.get("ecosystem_specific", {}) or {}
                if isinstance(eco_specific.get("severity"), str):
                    severity = SEVERITY_ALIASES.get(eco_specific["severity"].upper())
                    if severity:
                        break

        # Determine severity from CVSS score if not explicitly set
        if severity is None:
            severity = Severity.from_cvss(cvss_score) if cvss_score is not None else Severity.MEDIUM

        return severity, cvss_score, cvss_vector

    def _parse_cve_id(self, vuln: dict) -> str | None:
        """Find a CVE identifier in the record id or its aliases."""
        for candidate in [vuln.get("id", ""), *(vuln.get("aliases") or [])]:
            match = CVE_PATTERN.search(candidate or "")
            if match:
                return match.group(0)
        return None

    def _parse_fixed_versions(self, affected: list[dict]) -> list[str]:
        """Extract every fixed version from the affected ranges."""
        fixed = []
        for entry in affected:
            for rng in entry.get("ranges", []) or []:
                if rng.get("type") not in ("SEMVER", "ECOSYSTEM"):
                    continue
                for event in rng.get("events", []) or []:
                    if event.get("fixed"):
                        fixed.append(event["fixed"])
        return fixed

    def _parse_vulnerable_ranges(self, affected: list[dict]) -> list[str]:
        """Turn OSV range events into npm range strings.

        Events come as ordered introduced/fixed (or last_affected) pairs;
        each pair becomes one interval like ``>=1.0.0 <1.2.3``.
        """
        ranges = []
        for entry in affected:
            for rng in entry.get("ranges", []) or []:
                if rng.get("type") not in ("SEMVER", "ECOSYSTEM"):
                    continue
                introduced = None
                for event in rng.get("events", []) or []:
                    if "introduced" in event:
                        introduced = event["introduced"]
                        if introduced == "0":
                            introduced = "0.0.0"
                    elif "fixed" in event and introduced is not None:
                        ranges.append(f">={introduced} <{event['fixed']}")
                        introduced = None
                    elif "last_affected" in event and introduced is not None:
                        ranges.append(f">={introduced} <={event['last_affected']}")
                        introduced = None
                if introduced is not None:
                    ranges.append(f">={introduced}")
        return ranges

    def _parse_references(self, vuln: dict) -> list[str]:
        """Extract reference URLs from OSV record.

        Args:
            vuln: OSV vulnerability record.

        Returns:
            List of reference URLs.
        """
        refs = []
        for ref in vuln.get("references", []) or []:
            url = ref.get("url")
            if url:
                refs.append(url)
        return refs[:5]  # Limit to 5 references

    def _parse_date(self, value: str | None) -> datetime | None:
        if not value:
            return None
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
