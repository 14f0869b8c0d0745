"""Read npm manifests and lockfiles into Dependency lists."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from depguardian.models.schemas import Dependency, DependencyKind

logger = logging.getLogger(__name__)

MANIFEST_SECTIONS = {
    "dependencies": DependencyKind.DIRECT,
    "devDependencies": DependencyKind.DEV,
    "peerDependencies": DependencyKind.PEER,
    "optionalDependencies": DependencyKind.OPTIONAL,
}


class ManifestError(Exception):
    """Raised when package.json is missing or unreadable."""


def _read_json(path: Path) -> dict:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ManifestError(f"{path} not found") from e
    except (OSError, json.JSONDecodeError) as e:
        raise ManifestError(f"Failed to parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ManifestError(f"{path} does not contain a JSON object")
    return data


def parse_package_json(data: dict) -> list[Dependency]:
    """Extract declared dependencies from a parsed package.json."""
    dependencies = []
    for section, kind in MANIFEST_SECTIONS.items():
        entries = data.get(section) or {}
        if not isinstance(entries, dict):
            continue
        for name, version_range in entries.items():
            dependencies.append(
                Dependency(name=name, declared_version_range=str(version_range), kind=kind)
            )
    return dependencies


def parse_lockfile(data: dict) -> dict[str, dict]:
    """Flatten a package-lock.json into ``name -> entry``.

    Lockfile v2/v3 keep a flat ``packages`` map keyed by ``node_modules``
    paths; v1 nests entries under ``dependencies``. Nested (duplicate)
    installs keep the first, top-most entry.
    """
    entries: dict[str, dict] = {}

    packages = (data.get("packages") or {}).items()
    for path, entry in sorted(packages, key=lambda item: item[0].count("node_modules/")):
        if not path or not isinstance(entry, dict) or "version" not in entry:
            continue
        name = entry.get("name") or path.rsplit("node_modules/", 1)[-1]
        entries.setdefault(name, entry)

    def walk(tree: dict) -> None:
        for name, entry in tree.items():
            if not isinstance(entry, dict) or "version" not in entry:
                continue
            entries.setdefault(name, entry)
            walk(entry.get("dependencies") or {})

    walk(data.get("dependencies") or {})
    return entries


def _lock_kind(entry: dict) -> DependencyKind:
    if entry.get("dev"):
        return DependencyKind.DEV
    if entry.get("optional"):
        return DependencyKind.OPTIONAL
    if entry.get("peer"):
        return DependencyKind.PEER
    return DependencyKind.DIRECT


def load_dependencies(project_path: Path, include_transitive: bool = False) -> list[Dependency]:
    """Load the dependency inventory of an npm project.

    Args:
        project_path: Project directory, or a package.json file.
        include_transitive: Also return lockfile entries that are not declared
            in package.json.

    Returns:
        Dependencies with lockfile versions attached where available.

    Raises:
        ManifestError: If package.json is missing or invalid.
    """
    if project_path.is_file():
        manifest_path = project_path
        project_path = project_path.parent
    else:
        manifest_path = project_path / "package.json"

    declared = parse_package_json(_read_json(manifest_path))

    lock_path = project_path / "package-lock.json"
    if not lock_path.exists():
        return declared

    try:
        locked = parse_lockfile(_read_json(lock_path))
    except ManifestError as e:
        logger.warning(f"Ignoring lockfile: {e}")
        return declared

    dependencies = [
        dep.model_copy(update={"resolved_version": locked[dep.name]["version"]})
        if dep.name in locked
        else dep
        for dep in declared
    ]

    if include_transitive:
        declared_names = {dep.name for dep in declared}
        for name, entry in locked.items():
            if name in declared_names:
                continue
            dependencies.append(
                Dependency(
                    name=name,
                    declared_version_range=entry["version"],
                    kind=_lock_kind(entry),
                    resolved_version=entry["version"],
                )
            )

    logger.debug(f"Loaded {len(dependencies)} dependencies from {manifest_path}")
    return dependencies
