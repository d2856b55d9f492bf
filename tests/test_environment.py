from pathlib import Path
from typing import List

import pytest

from callforge.config import DependencyPolicy
from callforge.dependencies import normalize_dependencies
from callforge.environment import READY_MARKER, EnvironmentManager, compute_env_id
from callforge.errors import DependencyInstallError, DependencyPolicyViolationError


class RecordingInstaller:
    def __init__(self, fail: bool = False) -> None:
        self.calls: List[List[str]] = []
        self.fail = fail

    def __call__(self, site_dir: Path, manifest, policy) -> None:
        self.calls.append([spec.requirement() for spec in manifest])
        if self.fail:
            raise DependencyInstallError("index unreachable")
        (site_dir / "marker.py").write_text("VALUE = 1\n", encoding="utf-8")


def test_environment_is_materialized_once(tmp_path: Path) -> None:
    installer = RecordingInstaller()
    manager = EnvironmentManager(tmp_path, installer=installer)
    manifest = normalize_dependencies([{"name": "rich", "version": ">=13"}])

    first = manager.prepare(manifest)
    second = manager.prepare(manifest)

    assert installer.calls == [["rich>=13"]]
    assert first.cache_hit is False
    assert second.cache_hit is True
    assert first.env_id == second.env_id == compute_env_id(manifest, DependencyPolicy())
    assert (first.env_dir / READY_MARKER).exists()
    assert (first.site_dir / "marker.py").exists()
    assert second.to_record()["env_cache_hit"] is True


def test_manifest_and_policy_change_the_env_id() -> None:
    manifest = normalize_dependencies(["rich"])
    public = compute_env_id(manifest, DependencyPolicy())
    assert public != compute_env_id(normalize_dependencies(["rich", "orjson"]), DependencyPolicy())
    internal = DependencyPolicy(
        source_mode="internal_only", internal_index_url="https://pkgs.invalid"
    )
    assert public != compute_env_id(manifest, internal)


def test_policy_is_checked_before_install(tmp_path: Path) -> None:
    installer = RecordingInstaller()
    manager = EnvironmentManager(
        tmp_path, DependencyPolicy(blocked=["requests"]), installer=installer
    )
    with pytest.raises(DependencyPolicyViolationError):
        manager.prepare(normalize_dependencies(["requests"]))
    assert installer.calls == []
    assert list(tmp_path.iterdir()) == []


def test_failed_install_leaves_no_partial_environment(tmp_path: Path) -> None:
    manager = EnvironmentManager(tmp_path, installer=RecordingInstaller(fail=True))
    manifest = normalize_dependencies(["rich"])
    with pytest.raises(DependencyInstallError) as excinfo:
        manager.prepare(manifest)
    assert excinfo.value.retriable is True
    assert not (tmp_path / compute_env_id(manifest, DependencyPolicy())).exists()


def test_unreadable_marker_triggers_rebuild(tmp_path: Path) -> None:
    installer = RecordingInstaller()
    manager = EnvironmentManager(tmp_path, installer=installer)
    manifest = normalize_dependencies(["rich"])
    handle = manager.prepare(manifest)
    (handle.env_dir / READY_MARKER).write_text("{broken", encoding="utf-8")

    rebuilt = manager.prepare(manifest)

    assert rebuilt.cache_hit is False
    assert len(installer.calls) == 2
