from __future__ import annotations

from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import stable_hash


class PromotionPolicy(BaseModel):
    version: str = "solver_promotion_v1"
    min_calls: int = Field(default=10, ge=0)
    min_sessions: int = Field(default=2, ge=0)
    min_contract_pass_rate: float = 0.95
    max_guardrail_retry_exhausted: int = 0
    max_outcome_retry_exhausted: int = 0
    max_wrong_boundary_count: int = 0
    max_provenance_violations: int = 0
    min_state_key_consistency_ratio: float = 0.5
    regression_min_calls: int = 3
    regression_failure_rate: float = 0.6
    short_window: int = 20
    medium_window: int = 200
    max_sessions_tracked: int = 200
    max_shadow_evaluations: int = 200

    def fingerprint(self) -> str:
        return stable_hash(self.model_dump())


class DependencyPolicy(BaseModel):
    allowed: List[str] = Field(default_factory=list)
    blocked: List[str] = Field(default_factory=list)
    source_mode: Literal["public", "internal_only"] = "public"
    internal_index_url: Optional[str] = None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CALLFORGE_")

    home: Path = Field(default_factory=lambda: Path.home() / ".callforge")
    model: str = "default"
    max_generation_attempts: int = Field(default=2, ge=1)
    guardrail_recovery_budget: int = Field(default=1, ge=0)
    fresh_outcome_repair_budget: int = Field(default=1, ge=0)
    fresh_execution_repair_budget: int = Field(default=1, ge=0)
    provider_timeout_seconds: float = Field(default=120.0, gt=0)
    worker_timeout_seconds: float = Field(default=30.0, gt=0)
    worker_max_restarts: int = Field(default=2, ge=0)
    max_repairs_before_regen: int = Field(default=3, ge=0)
    max_attempt_failures_recorded: int = 8
    max_failure_message_length: int = 400
    call_log_max_records: int = Field(default=1000, ge=1)
    prompt_version: str = "callforge_prompt_v1"
    runtime_version: str = "callforge_runtime_v1"
    promotion_shadow_mode_enabled: bool = True
    promotion_enforcement_enabled: bool = False
    continuity_enforcement_enabled: bool = False
    dynamic_dispatch_methods: List[str] = Field(
        default_factory=lambda: ["ask", "chat", "discuss", "host"]
    )
    promotion_policy: PromotionPolicy = Field(default_factory=PromotionPolicy)
    dependency_policy: DependencyPolicy = Field(default_factory=DependencyPolicy)

    @property
    def artifacts_dir(self) -> Path:
        return self.home / "artifacts"

    @property
    def registry_path(self) -> Path:
        return self.home / "registry" / "tools.json"

    @property
    def call_log_path(self) -> Path:
        return self.home / "logs" / "calls.jsonl"

    @property
    def envs_dir(self) -> Path:
        return self.home / "envs"
