"""Abstract base class for vulnerability sources."""

import asyncio
import logging
from abc import ABC, abstractmethod

from depguardian.models.schemas import Vulnerability


class VulnerabilitySourceBase(ABC):
    """Base class for vulnerability databases.

    Each source turns its own wire format into Vulnerability records for one
    package, optionally pinned to a version.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short source name used in logs."""
        ...

    @abstractmethod
    async def query(self, package_name: str, version: str | None = None) -> list[Vulnerability]:
        """Fetch vulnerabilities for a package.

        Args:
            package_name: Package name.
            version: Exact version to check. If None, every known
                vulnerability of the package is returned.

        Returns:
            List of vulnerabilities.

        Raises:
            httpx.HTTPError: On transport failures and non-2xx responses.
        """
        ...

    async def query_many(
        self,
        packages: list[tuple[str, str | None]],
        logger: logging.Logger | None = None,
    ) -> list[Vulnerability]:
        """Fetch vulnerabilities for several packages concurrently.

        Sources with a batch endpoint override this. A failing item
        contributes nothing; the rest still return.

        Args:
            packages: ``(package_name, version)`` pairs.
            logger: Logger for per-item failures. Defaults to the module logger.
        """
        log = logger or logging.getLogger(__name__)

        async def _one(package_name: str, version: str | None) -> list[Vulnerability]:
            try:
                return await self.query(package_name, version)
            except Exception as e:
                log.warning(f"Failed to query {self.name} for {package_name}@{version or '*'}: {e}")
                return []

        results = await asyncio.gather(*(_one(name, version) for name, version in packages))
        return [vuln for batch in results for vuln in batch]
