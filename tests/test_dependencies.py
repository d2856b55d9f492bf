import pytest
from hypothesis import given
from hypothesis import strategies as st

from callforge.config import DependencyPolicy
from callforge.dependencies import (
    DependencySpec,
    enforce_dependency_policy,
    ensure_additive,
    normalize_dependencies,
)
from callforge.errors import (
    DependencyManifestIncompatibleError,
    DependencyPolicyViolationError,
    InvalidDependencyManifestError,
)

NAMES = st.text(alphabet="abcdefghijklmnopqrstuvwxyz_-", min_size=1, max_size=12)


@given(st.lists(NAMES, max_size=8))
def test_normalization_is_sorted_unique_and_idempotent(names) -> None:
    raw = [{"name": name.upper()} for name in names]
    manifest = normalize_dependencies(raw)
    assert [spec.name for spec in manifest] == sorted({name.lower() for name in names})
    assert normalize_dependencies([spec.to_dict() for spec in manifest]) == manifest


def test_default_version_and_string_entries() -> None:
    manifest = normalize_dependencies(["Rich", {"name": "orjson", "version": " >=3 "}])
    assert manifest == [DependencySpec("orjson", ">=3"), DependencySpec("rich", ">= 0")]
    assert manifest[1].requirement() == "rich"
    assert manifest[0].requirement() == "orjson>=3"


def test_nil_manifest_is_empty() -> None:
    assert normalize_dependencies(None) == []


@pytest.mark.parametrize(
    "raw",
    [
        "rich",
        [{"version": "1"}],
        [{"name": "bad name"}],
        [{"name": "rich", "version": 3}],
        [{"name": "rich", "version": "1"}, {"name": "RICH", "version": "2"}],
    ],
)
def test_invalid_manifests_are_rejected(raw) -> None:
    with pytest.raises(InvalidDependencyManifestError) as excinfo:
        normalize_dependencies(raw)
    assert excinfo.value.retriable is False


def test_additive_check() -> None:
    previous = normalize_dependencies(["nokogiri"])
    ensure_additive(previous, normalize_dependencies(["nokogiri", "httparty"]))
    with pytest.raises(DependencyManifestIncompatibleError) as excinfo:
        ensure_additive(previous, normalize_dependencies([{"name": "nokogiri", "version": "2"}]))
    assert excinfo.value.metadata["conflicts"] == [
        {"name": "nokogiri", "previous": ">= 0", "current": "2"}
    ]


def test_policy_blocks_and_allows() -> None:
    manifest = normalize_dependencies(["requests", "rich"])
    enforce_dependency_policy(manifest, DependencyPolicy(allowed=["requests", "rich"]))
    with pytest.raises(DependencyPolicyViolationError):
        enforce_dependency_policy(manifest, DependencyPolicy(blocked=["Requests"]))
    with pytest.raises(DependencyPolicyViolationError):
        enforce_dependency_policy(manifest, DependencyPolicy(allowed=["rich"]))
    with pytest.raises(DependencyPolicyViolationError):
        enforce_dependency_policy(manifest, DependencyPolicy(source_mode="internal_only"))
