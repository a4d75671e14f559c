"""
Data models for the rules service.
"""

from typing import Dict, Any, Optional, List
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionModeType(str, Enum):
    """Execution mode types."""
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"
    MIXED = "mixed"


GROUP_MODES = (ExecutionModeType.PARALLEL.value, ExecutionModeType.SEQUENTIAL.value)
SELECTOR_MODES = tuple(m.value for m in ExecutionModeType)


@dataclass(frozen=True)
class RuleMetadata:
    """Rule metadata. Replaced wholesale on refresh, never mutated."""
    id: str
    version: str
    tags: frozenset = field(default_factory=frozenset)
    last_modified: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not isinstance(self.tags, frozenset):
            object.__setattr__(self, "tags", frozenset(self.tags))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "version": self.version,
            "tags": sorted(self.tags),
            "last_modified": self.last_modified.isoformat(),
        }


@dataclass(frozen=True)
class CacheEntry:
    """Rule content plus metadata, owned by the rule cache."""
    metadata: RuleMetadata
    data: bytes


@dataclass(frozen=True)
class RollbackSnapshot:
    """Prior version of a rule kept for rollback."""
    rule_id: str
    data: bytes
    metadata: RuleMetadata
    reason: str
    captured_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "version": self.metadata.version,
            "reason": self.reason,
            "captured_at": self.captured_at.isoformat(),
            "size_bytes": len(self.data),
        }


@dataclass
class ExecutionGroup:
    """A group of rules run under one sub-mode inside a mixed selector."""
    rules: List[str]
    mode: str = ExecutionModeType.PARALLEL.value


@dataclass
class ExecutionMode:
    """Execution mode; ``groups`` applies to mixed mode only."""
    type: str = ExecutionModeType.PARALLEL.value
    groups: Optional[List[ExecutionGroup]] = None

    @classmethod
    def parallel(cls) -> "ExecutionMode":
        return cls(ExecutionModeType.PARALLEL.value)

    @classmethod
    def sequential(cls) -> "ExecutionMode":
        return cls(ExecutionModeType.SEQUENTIAL.value)

    @classmethod
    def mixed(cls, groups: List[ExecutionGroup]) -> "ExecutionMode":
        return cls(ExecutionModeType.MIXED.value, groups)


@dataclass
class RuleSelector:
    """Which rules to run and how."""
    ids: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    mode: ExecutionMode = field(default_factory=ExecutionMode)


@dataclass
class DependencyInfo:
    depends_on: List[str] = field(default_factory=list)
    dependents: List[str] = field(default_factory=list)


@dataclass
class ResolvedRulePlan:
    """Deduplicated rule ids plus a staged execution order."""
    rule_ids: List[str]
    execution_order: List[List[str]]
    dependencies: Dict[str, DependencyInfo] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_ids": list(self.rule_ids),
            "execution_order": [list(stage) for stage in self.execution_order],
            "dependencies": {
                rule_id: {"depends_on": info.depends_on, "dependents": info.dependents}
                for rule_id, info in self.dependencies.items()
            },
        }


@dataclass
class LoadedRule:
    """Unit returned by a rule loader."""
    data: bytes
    metadata: RuleMetadata


# API models

class ExecutionGroupModel(BaseModel):
    rules: List[str] = Field(..., description="Rule IDs in the group")
    mode: str = Field("parallel", description="parallel or sequential")


class ExecutionModeModel(BaseModel):
    type: str = Field("parallel", description="parallel, sequential or mixed")
    groups: Optional[List[ExecutionGroupModel]] = Field(None, description="Groups for mixed mode")


class RuleSelectorModel(BaseModel):
    ids: Optional[List[str]] = Field(None, description="Rule IDs to run")
    tags: Optional[List[str]] = Field(None, description="Tags every selected rule must carry")
    mode: ExecutionModeModel = Field(default_factory=ExecutionModeModel)

    def to_selector(self) -> RuleSelector:
        groups = None
        if self.mode.groups is not None:
            groups = [ExecutionGroup(rules=list(g.rules), mode=g.mode) for g in self.mode.groups]
        return RuleSelector(
            ids=list(self.ids) if self.ids is not None else None,
            tags=list(self.tags) if self.tags is not None else None,
            mode=ExecutionMode(type=self.mode.type, groups=groups),
        )


class ExecuteRequest(BaseModel):
    """Request model for selector execution."""
    selector: RuleSelectorModel
    input: Dict[str, Any] = Field(default_factory=dict, description="Input document")


class BatchExecuteRequest(BaseModel):
    """Request model for batch execution."""
    selector: RuleSelectorModel
    inputs: List[Dict[str, Any]] = Field(..., description="Independent input documents")
    continue_on_error: bool = Field(True, description="Keep running remaining rules for an input after a failure")


class EvaluateRequest(BaseModel):
    input: Dict[str, Any] = Field(default_factory=dict, description="Input document")


class ExecutionResponse(BaseModel):
    """Response model for an execution."""
    results: Dict[str, Any]
    execution_time_ms: float
    errors: Optional[Dict[str, Dict[str, Any]]] = None
    final_input: Optional[Any] = None
    plan: Optional[Dict[str, Any]] = None
    metrics: Optional[Dict[str, Any]] = None


class InvalidateRequest(BaseModel):
    rule_ids: List[str] = Field(..., description="Rules to evict")
    create_snapshot: bool = Field(True, description="Snapshot current content before evicting")


class RefreshRequest(BaseModel):
    rule_ids: Optional[List[str]] = Field(None, description="Rules to refresh; all when omitted")
    strategy: str = Field("upstream-wins", description="Conflict resolution strategy")
    force: bool = Field(False, description="Refresh regardless of version drift")


class RollbackRequest(BaseModel):
    rule_id: str
    snapshot_index: int = Field(0, ge=0)
