"""Recovery models — rollback points, safety advisories, resume and retry results."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from execflow.models.graph import BackoffStrategy, RetryPolicy

# === Rollback ===


class RollbackPoint(BaseModel):
    node_id: str
    node_name: str = ""
    timestamp: datetime
    state: dict = Field(default_factory=dict)
    can_rollback: bool
    reason: str | None = None


class SafetyWarning(BaseModel):
    """Advisory: rolling back past this node cannot undo what it already did."""

    node_id: str
    node_type: str = ""
    kind: Literal["external_side_effect", "committed_output"]
    message: str


class RollbackValidation(BaseModel):
    safe: bool
    warnings: list[SafetyWarning] = Field(default_factory=list)


class RecoveryError(BaseModel):
    code: str
    message: str
    details: dict = Field(default_factory=dict)


class RollbackResult(BaseModel):
    """Outcome of a rollback.

    ``affected_nodes`` lists the node ids removed from the record (execution
    order). ``compensated_nodes`` lists the nodes whose compensation ran, in the
    order it ran. On a failed rollback the record is left untouched and
    ``untouched_nodes`` names the nodes whose compensation never ran.
    ``warnings`` is filled when a rollback that required safety was refused.
    """

    success: bool
    execution_id: str
    target_node_id: str
    affected_nodes: list[str] = Field(default_factory=list)
    compensated_nodes: list[str] = Field(default_factory=list)
    untouched_nodes: list[str] = Field(default_factory=list)
    failed_node: str | None = None
    warnings: list[SafetyWarning] = Field(default_factory=list)
    status: str | None = None
    error: RecoveryError | None = None


# === Resume ===


class ResumeContext(BaseModel):
    execution_id: str
    checkpoint_node_id: str | None = None
    resume_from_node: str | None = None
    skipped_nodes: list[str] = Field(default_factory=list)
    preserved_state: dict = Field(default_factory=dict)


class ResumeResult(BaseModel):
    success: bool
    execution_id: str
    context: ResumeContext | None = None
    status: str | None = None
    error: RecoveryError | None = None


# === Retry ===


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    backoff_strategy: BackoffStrategy = "exponential"
    initial_delay: int = Field(default=1000, ge=0)  # ms
    max_delay: int = Field(default=10000, ge=0)  # ms
    retryable_errors: list[str] = Field(default_factory=list)

    @classmethod
    def from_policy(cls, policy: RetryPolicy) -> RetryConfig:
        """Build from a graph's retry policy (``max_retries`` excludes the first try)."""
        return cls(
            max_attempts=max(1, policy.max_retries + 1),
            backoff_strategy=policy.backoff,
            initial_delay=policy.initial_delay,
            max_delay=policy.max_delay,
            retryable_errors=list(policy.retryable_errors),
        )


class RetryResult(BaseModel):
    success: bool
    attempts: int
    errors: list[str] = Field(default_factory=list)
    final_status: Literal["COMPLETED", "FAILED"]
    duration: int = 0  # ms
    result: Any = None
    retryable: bool = True
