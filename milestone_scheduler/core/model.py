from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional


RiskLevel = Literal["low", "medium", "high"]
DependencyType = Literal["prerequisite", "parallel"]
MilestoneStatus = Literal["pending", "in_progress", "completed"]

RISK_LEVELS: tuple[str, ...] = ("high", "medium", "low")
DEPENDENCY_TYPES: tuple[str, ...] = ("prerequisite", "parallel")


@dataclass(frozen=True)
class Milestone:
    id: str
    contract_id: str
    sequence_number: int
    title: str = ""
    # Authored convenience only; the graph is built from MilestoneDependency edges.
    dependencies: list[str] = field(default_factory=list)
    category: str = "delivery"
    priority: int = 3
    risk_level: RiskLevel = "low"
    criticality_score: int = 0

    # Derived by the CPM engine; overwritten on every scheduling pass.
    critical_path: bool = False

    estimated_start_date: Optional[datetime] = None
    estimated_end_date: Optional[datetime] = None
    actual_start_date: Optional[datetime] = None
    actual_end_date: Optional[datetime] = None
    estimated_duration: Optional[timedelta] = None
    actual_duration: Optional[timedelta] = None

    percentage_complete: float = 0.0
    contingency_plans: list[str] = field(default_factory=list)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def status(self) -> MilestoneStatus:
        if self.percentage_complete >= 100:
            return "completed"
        if self.percentage_complete <= 0:
            return "pending"
        return "in_progress"

    @property
    def is_complete(self) -> bool:
        return self.percentage_complete >= 100


@dataclass(frozen=True)
class MilestoneDependency:
    id: str
    milestone_id: str  # the dependent
    depends_on_id: str  # the prerequisite
    dependency_type: DependencyType = "prerequisite"

    @property
    def constrains_timing(self) -> bool:
        return self.dependency_type == "prerequisite"


@dataclass(frozen=True)
class ProgressUpdate:
    milestone_id: str
    percentage_complete: float


@dataclass(frozen=True)
class ProgressEntry:
    id: str
    milestone_id: str
    percentage_complete: float
    status: str
    recorded_at: datetime
    notes: str = ""
    recorded_by: str = "system"


@dataclass(frozen=True)
class ContractGraph:
    contract_id: str
    milestones_by_id: dict[str, Milestone]
    edges: list[MilestoneDependency]
    # Adjacency over every edge type; drives ordering and cycle checks.
    predecessors: dict[str, list[str]]
    successors: dict[str, list[str]]
    # Prerequisite-only adjacency; drives CPM timing.
    prerequisite_predecessors: dict[str, list[str]]
    prerequisite_successors: dict[str, list[str]]

    def sources(self) -> list[str]:
        return sorted(nid for nid, preds in self.predecessors.items() if not preds)

    def sinks(self) -> list[str]:
        return sorted(nid for nid, succs in self.successors.items() if not succs)

    def parallel_groups(self) -> list[tuple[str, str]]:
        return sorted(
            (e.milestone_id, e.depends_on_id)
            for e in self.edges
            if e.dependency_type == "parallel"
        )


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
