import json

import pytest

from depguardian.adapters.manifest import (
    ManifestError,
    load_dependencies,
    parse_lockfile,
    parse_package_json,
)
from depguardian.models.schemas import DependencyKind

PACKAGE_JSON = {
    "name": "demo-app",
    "dependencies": {"lodash": "^4.17.20", "express": "~4.18.0"},
    "devDependencies": {"jest": "^29.0.0"},
}


def test_parse_package_json_sections():
    deps = {dep.name: dep for dep in parse_package_json(PACKAGE_JSON)}

    assert deps["lodash"].kind == DependencyKind.DIRECT
    assert deps["jest"].kind == DependencyKind.DEV
    assert deps["express"].current_version == "4.18.0"


def test_parse_lockfile_v3_prefers_top_level_install():
    lock = {
        "lockfileVersion": 3,
        "packages": {
            "": {"name": "demo-app"},
            "node_modules/a/node_modules/lodash": {"version": "3.10.1"},
            "node_modules/lodash": {"version": "4.17.21"},
            "node_modules/@babel/core": {"version": "7.24.0", "dev": True},
        },
    }
    entries = parse_lockfile(lock)

    assert entries["lodash"]["version"] == "4.17.21"
    assert entries["@babel/core"]["version"] == "7.24.0"


def test_parse_lockfile_v1():
    lock = {
        "lockfileVersion": 1,
        "dependencies": {
            "express": {
                "version": "4.18.2",
                "dependencies": {"qs": {"version": "6.11.0"}},
            }
        },
    }
    entries = parse_lockfile(lock)
    assert entries["express"]["version"] == "4.18.2"
    assert entries["qs"]["version"] == "6.11.0"


def test_load_dependencies_attaches_lockfile_versions(tmp_path):
    (tmp_path / "package.json").write_text(json.dumps(PACKAGE_JSON))
    (tmp_path / "package-lock.json").write_text(
        json.dumps(
            {
                "lockfileVersion": 3,
                "packages": {
                    "node_modules/lodash": {"version": "4.17.21"},
                    "node_modules/ms": {"version": "2.1.3"},
                },
            }
        )
    )

    deps = {dep.name: dep for dep in load_dependencies(tmp_path)}
    assert deps["lodash"].current_version == "4.17.21"
    assert deps["express"].resolved_version is None
    assert "ms" not in deps

    with_transitive = {dep.name for dep in load_dependencies(tmp_path, include_transitive=True)}
    assert "ms" in with_transitive


def test_missing_manifest(tmp_path):
    with pytest.raises(ManifestError, match="not found"):
        load_dependencies(tmp_path)


def test_invalid_manifest(tmp_path):
    (tmp_path / "package.json").write_text("[1, 2")
    with pytest.raises(ManifestError):
        load_dependencies(tmp_path / "package.json")
