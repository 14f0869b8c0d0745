"""Abstract base class for package registry adapters."""

import re
from abc import ABC, abstractmethod

from depguardian.models.schemas import PackageInfo


class RegistryClient(ABC):
    """Base class for package registry adapters.

    Each adapter normalizes registry documents into PackageInfo, the only
    registry shape the detector and resolver consume.
    """

    @property
    @abstractmethod
    def ecosystem(self) -> str:
        """Return the ecosystem this adapter handles (OSV naming)."""
        ...

    @abstractmethod
    async def get_package_info(self, name: str) -> PackageInfo:
        """Fetch registry metadata for a single package.

        Args:
            name: Package name.

        Returns:
            PackageInfo with versions, install scripts, maintainers and
            publish timestamps.

        Raises:
            PackageNotFoundError: If the package doesn't exist.
            httpx.HTTPError: On transport failures or other non-2xx responses.
        """
        ...


def parse_github_repo(url: str | None) -> tuple[str, str] | None:
    """Parse a GitHub repository URL into ``(owner, repo)``.

    Handles https, ``git+https``, ``git://``, ``git@github.com:`` and the
    ``github:owner/repo`` shorthand.
    """
    if not url:
        return None

    url = url.replace("git+", "")
    if url.startswith("github:"):
        url = f"https://github.com/{url[7:]}"

    github_patterns = [
        r"(?:https?://)?(?:www\.)?github\.com/([^/]+)/([^/\s]+?)(?:\.git)?/?(?:[#?].*)?$",
        r"git@github\.com:([^/]+)/([^/\s]+?)(?:\.git)?$",
        r"git://github\.com/([^/]+)/([^/\s]+?)(?:\.git)?$",
    ]

    for pattern in github_patterns:
        match = re.search(pattern, url)
        if match:
            return match.group(1), match.group(2)

    return None


def github_compare_url(repository_url: str | None, from_version: str, to_version: str) -> str | None:
    """Build a GitHub compare URL between two tagged versions."""
    parsed = parse_github_repo(repository_url)
    if not parsed:
        return None
    owner, repo = parsed
    return f"https://github.com/{owner}/{repo}/compare/v{from_version}...v{to_version}"


class PackageNotFoundError(Exception):
    """Raised when a package cannot be found."""

    def __init__(self, ecosystem: str, name: str) -> None:
        self.ecosystem = ecosystem
        self.name = name
        super().__init__(f"Package '{name}' not found in {ecosystem}")
