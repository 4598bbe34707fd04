"""Graph validation result models."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

Severity = Literal["error", "warning"]


class ValidationIssue(BaseModel):
    """One structural finding about a graph. Returned, never raised."""

    code: str
    message: str
    severity: Severity = "error"
    node_id: str | None = None
    edge_id: str | None = None
    field: str | None = None
    details: dict = Field(default_factory=dict)


class ValidationStats(BaseModel):
    total_nodes: int = 0
    total_edges: int = 0
    start_nodes: int = 0
    end_nodes: int = 0
    max_depth: int = 0


class ValidationResult(BaseModel):
    valid: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    stats: ValidationStats = Field(default_factory=ValidationStats)

    def codes(self) -> list[str]:
        return [i.code for i in self.errors] + [i.code for i in self.warnings]
