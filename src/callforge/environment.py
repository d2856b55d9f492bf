from __future__ import annotations

import logging
import platform
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import DependencyPolicy
from .dependencies import DependencySpec, enforce_dependency_policy, manifest_to_records
from .errors import DependencyActivationError, DependencyInstallError
from .utils import (
    atomic_write_json,
    ensure_dir,
    monotonic_ms,
    read_json,
    stable_hash,
    utc_timestamp,
)

logger = logging.getLogger(__name__)

ENV_SCHEMA_VERSION = "v1"
READY_MARKER = "env.json"

Installer = Callable[[Path, Sequence[DependencySpec], DependencyPolicy], None]


@dataclass(frozen=True)
class EnvironmentHandle:
    env_id: str
    env_dir: Path
    site_dir: Path
    cache_hit: bool
    prepared_at: str
    prepare_ms: float

    def to_record(self) -> Dict[str, Any]:
        return {
            "env_id": self.env_id,
            "env_dir": str(self.env_dir),
            "env_cache_hit": self.cache_hit,
            "env_prepared_at": self.prepared_at,
            "env_prepare_ms": self.prepare_ms,
        }


def compute_env_id(manifest: Sequence[DependencySpec], policy: DependencyPolicy) -> str:
    return stable_hash(
        {
            "manifest": manifest_to_records(manifest),
            "python": platform.python_version(),
            "source_mode": policy.source_mode,
            "index_url": policy.internal_index_url or "",
        }
    )


def pip_installer(
    site_dir: Path, manifest: Sequence[DependencySpec], policy: DependencyPolicy
) -> None:
    command: List[str] = [
        sys.executable,
        "-m",
        "pip",
        "install",
        "--disable-pip-version-check",
        "--no-input",
        "--target",
        str(site_dir),
    ]
    if policy.source_mode == "internal_only" and policy.internal_index_url:
        command.extend(["--index-url", policy.internal_index_url])
    command.extend(spec.requirement() for spec in manifest)
    try:
        result = subprocess.run(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=600,
            check=False,
        )
    except subprocess.TimeoutExpired as exc:
        raise DependencyInstallError("dependency install timed out") from exc
    except OSError as exc:
        raise DependencyInstallError(f"dependency install could not start: {exc}") from exc
    if result.returncode != 0:
        tail = (result.stdout or b"").decode("utf-8", errors="replace")[-400:]
        raise DependencyInstallError(
            f"pip exited with status {result.returncode}", metadata={"output_tail": tail}
        )


class EnvironmentManager:
    def __init__(
        self,
        root: Path,
        policy: Optional[DependencyPolicy] = None,
        installer: Optional[Installer] = None,
    ) -> None:
        self.root = Path(root)
        self.policy = policy or DependencyPolicy()
        self.installer = installer or pip_installer

    def prepare(self, manifest: Sequence[DependencySpec]) -> EnvironmentHandle:
        enforce_dependency_policy(manifest, self.policy)
        started = time.monotonic()
        env_id = compute_env_id(manifest, self.policy)
        env_dir = self.root / env_id
        site_dir = env_dir / "site"
        marker = env_dir / READY_MARKER
        if marker.exists():
            try:
                ready = read_json(marker)
            except ValueError:
                ready = None
            if isinstance(ready, dict) and ready.get("env_id") == env_id:
                logger.debug("environment cache hit %s", env_id)
                return EnvironmentHandle(
                    env_id=env_id,
                    env_dir=env_dir,
                    site_dir=site_dir,
                    cache_hit=True,
                    prepared_at=str(ready.get("prepared_at", "")),
                    prepare_ms=monotonic_ms(started),
                )
            logger.warning("environment marker for %s is unreadable; rebuilding", env_id)
        if env_dir.exists():
            shutil.rmtree(env_dir)
        ensure_dir(site_dir)
        logger.info("materializing environment %s for %d dependencies", env_id, len(manifest))
        try:
            self.installer(site_dir, manifest, self.policy)
        except DependencyInstallError:
            shutil.rmtree(env_dir, ignore_errors=True)
            raise
        if not site_dir.is_dir():
            raise DependencyActivationError(f"environment {env_id} has no site directory")
        prepared_at = utc_timestamp()
        atomic_write_json(
            marker,
            {
                "schema_version": ENV_SCHEMA_VERSION,
                "env_id": env_id,
                "dependencies": manifest_to_records(manifest),
                "prepared_at": prepared_at,
            },
        )
        return EnvironmentHandle(
            env_id=env_id,
            env_dir=env_dir,
            site_dir=site_dir,
            cache_hit=False,
            prepared_at=prepared_at,
            prepare_ms=monotonic_ms(started),
        )
