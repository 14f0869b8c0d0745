"""Multi-source vulnerability aggregation.

Queries every configured source for every dependency in fixed-size batches
(sources in parallel, one batch at a time per source), then folds the
per-source results into one deduplicated set. A failing query only loses
that one (dependency, source) pair.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterable, Sequence

from depguardian.analyzers.base import VulnerabilitySourceBase
from depguardian.models.schemas import Dependency, Vulnerability, higher_severity

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 20


def create_batches(items: Sequence, batch_size: int) -> list[list]:
    """Split items into consecutive batches of at most ``batch_size``."""
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(items[i:i + batch_size]) for i in range(0, len(items), batch_size)]


def merge_pair(existing: Vulnerability, incoming: Vulnerability) -> Vulnerability:
    """Fold a duplicate record into the first-seen one.

    Severity takes the higher of the two, references are concatenated, and
    the optional CVSS/CVE fields are filled from whichever side has them
    (first-seen wins). Everything else, ``source`` included, stays as first
    seen.
    """
    references = list(existing.references)
    references.extend(ref for ref in incoming.references if ref not in references)

    return existing.model_copy(
        update={
            "severity": higher_severity(existing.severity, incoming.severity),
            "references": tuple(references),
            "cvss_score": existing.cvss_score if existing.cvss_score is not None else incoming.cvss_score,
            "cvss_vector": existing.cvss_vector or incoming.cvss_vector,
            "cve_id": existing.cve_id or incoming.cve_id,
        }
    )


def merge_vulnerabilities(*sources: Iterable[Vulnerability]) -> list[Vulnerability]:
    """Merge vulnerability lists from several sources.

    Records are the same vulnerability when ``(package_name, id)`` match.
    Records from different sources with different ids are also merged when
    they name the same CVE for the same package.

    Args:
        *sources: Vulnerability lists, highest-priority source first.

    Returns:
        Deduplicated vulnerabilities (order not significant).
    """
    merged: dict[tuple[str, str], Vulnerability] = {}
    # (package_name, cve_id) -> primary key of the record carrying that CVE
    by_cve: dict[tuple[str, str], tuple[str, str]] = {}

    for vulnerabilities in sources:
        for vuln in vulnerabilities:
            key = vuln.key
            if key not in merged and vuln.cve_id:
                candidate = by_cve.get((vuln.package_name, vuln.cve_id))
                # Only records from another source collapse on a shared CVE
                if candidate is not None and merged[candidate].source != vuln.source:
                    key = candidate

            if key in merged:
                merged[key] = merge_pair(merged[key], vuln)
            else:
                merged[key] = vuln

            cve_id = merged[key].cve_id
            if cve_id:
                by_cve.setdefault((vuln.package_name, cve_id), key)

    return list(merged.values())


class VulnerabilityAggregator:
    """Queries vulnerability sources for a dependency set and merges results."""

    def __init__(
        self,
        sources: Sequence[VulnerabilitySourceBase],
        batch_size: int = DEFAULT_BATCH_SIZE,
        logger: logging.Logger | None = None,
    ) -> None:
        """Initialize the aggregator.

        Args:
            sources: Sources to query, highest-priority first (OSV first).
            batch_size: Dependencies queried at once per source.
            logger: Logger to report through. Defaults to the module logger.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.sources = list(sources)
        self.batch_size = batch_size
        self._log = logger or logging.getLogger(__name__)

    async def _safe_query(
        self,
        source: VulnerabilitySourceBase,
        package_name: str,
        version: str | None,
    ) -> list[Vulnerability]:
        try:
            return await source.query(package_name, version)
        except Exception as e:
            self._log.warning(
                f"Failed to query {source.name} for {package_name}@{version or '*'}: {e}"
            )
            return []

    async def _query_batch(
        self,
        source: VulnerabilitySourceBase,
        batch: list[Dependency],
    ) -> list[Vulnerability]:
        packages = [(dep.name, dep.current_version) for dep in batch]
        try:
            return await source.query_many(packages, logger=self._log)
        except Exception as e:
            self._log.warning(f"Batch query to {source.name} failed, querying one by one: {e}")
            results = await asyncio.gather(
                *(self._safe_query(source, name, version) for name, version in packages)
            )
            return [vuln for result in results for vuln in result]

    async def _scan_source(
        self,
        source: VulnerabilitySourceBase,
        dependencies: Sequence[Dependency],
    ) -> list[Vulnerability]:
        """Query one source batch by batch.

        Batches run one after another, so at most ``batch_size`` requests
        per source are in flight.
        """
        batches = create_batches(dependencies, self.batch_size)
        started = time.monotonic()

        found: list[Vulnerability] = []
        for index, batch in enumerate(batches):
            self._log.debug(
                f"Processing {source.name} batch {index + 1}/{len(batches)} with {len(batch)} packages"
            )
            found.extend(await self._query_batch(source, batch))

        self._log.info(
            f"{source.name} found {len(found)} vulnerabilities "
            f"in {time.monotonic() - started:.2f}s"
        )
        return found

    async def scan(self, dependencies: Sequence[Dependency]) -> list[Vulnerability]:
        """Find the vulnerabilities affecting a dependency set.

        Args:
            dependencies: Dependencies to check.

        Returns:
            Deduplicated vulnerabilities across all sources.
        """
        if not dependencies or not self.sources:
            return []

        self._log.debug(
            f"Scanning {len(dependencies)} dependencies with "
            f"{', '.join(s.name for s in self.sources)}"
        )
        per_source = await asyncio.gather(
            *(self._scan_source(source, dependencies) for source in self.sources)
        )
        return merge_vulnerabilities(*per_source)

    async def query_package(self, package_name: str, version: str | None) -> list[Vulnerability]:
        """Query every source for one package version and merge the results."""
        per_source = await asyncio.gather(
            *(self._safe_query(source, package_name, version) for source in self.sources)
        )
        return merge_vulnerabilities(*per_source)
