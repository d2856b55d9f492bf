from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

from .agent import Agent
from .artifacts import ArtifactStore
from .config import Settings
from .controller import AttemptLifecycleController
from .dependencies import DependencySpec
from .environment import EnvironmentManager
from .generator import CodeGenerator
from .guardrails import GuardrailPolicy
from .observability import CallLog
from .registry import ToolRegistry
from .sandbox import ExecutionSandbox
from .utils import ensure_dir
from .worker import WorkerSupervisor

logger = logging.getLogger(__name__)


class Runtime:
    """Owns every collaborator a call needs and the per-role shared state.

    Nothing here is module-global: two runtimes with different homes never
    see each other's artifacts, registry, workers or contexts.
    """

    def __init__(
        self,
        settings: Settings,
        generator: CodeGenerator,
        *,
        artifacts: Optional[ArtifactStore] = None,
        registry: Optional[ToolRegistry] = None,
        environments: Optional[EnvironmentManager] = None,
        supervisor: Optional[WorkerSupervisor] = None,
        guardrails: Optional[GuardrailPolicy] = None,
        call_log: Optional[CallLog] = None,
        sandbox: Optional[ExecutionSandbox] = None,
    ) -> None:
        self.settings = settings
        self.generator = generator
        self.artifacts = artifacts or ArtifactStore(settings.artifacts_dir)
        self.registry = registry or ToolRegistry(settings.registry_path)
        self.environments = environments or EnvironmentManager(
            settings.envs_dir, settings.dependency_policy
        )
        self.supervisor = supervisor or WorkerSupervisor(
            max_restarts=settings.worker_max_restarts,
            timeout_seconds=settings.worker_timeout_seconds,
        )
        self.guardrails = guardrails or GuardrailPolicy()
        self.call_log = call_log or CallLog(
            settings.call_log_path, max_records=settings.call_log_max_records
        )
        self.sandbox = sandbox or ExecutionSandbox()
        self.controller = AttemptLifecycleController(self)
        self._contexts: Dict[str, Dict[str, Any]] = {}
        self._manifests: Dict[str, List[DependencySpec]] = {}

    @classmethod
    def open(
        cls, generator: CodeGenerator, settings: Optional[Settings] = None, **collaborators: Any
    ) -> "Runtime":
        settings = settings or Settings()
        ensure_dir(settings.home)
        logger.debug("opening runtime at %s", settings.home)
        return cls(settings, generator, **collaborators)

    def agent(
        self,
        role: str,
        *,
        contracts: Optional[Dict[str, Dict[str, Any]]] = None,
        deliverable: Optional[Dict[str, Any]] = None,
        depth: int = 0,
        trace_id: Optional[str] = None,
        parent_call_id: Optional[str] = None,
    ) -> Agent:
        return Agent(
            role,
            self,
            contracts=contracts,
            deliverable=deliverable,
            depth=depth,
            trace_id=trace_id,
            parent_call_id=parent_call_id,
        )

    def context_for(self, role: str) -> Dict[str, Any]:
        return self._contexts.setdefault(role, {})

    def role_manifest(self, role: str) -> List[DependencySpec]:
        return list(self._manifests.get(role, []))

    def remember_manifest(self, role: str, manifest: Sequence[DependencySpec]) -> None:
        merged = {spec.name: spec for spec in self._manifests.get(role, [])}
        for spec in manifest:
            merged[spec.name] = spec
        self._manifests[role] = sorted(merged.values())

    def shutdown(self) -> None:
        self.supervisor.shutdown()

    def __enter__(self) -> "Runtime":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()
