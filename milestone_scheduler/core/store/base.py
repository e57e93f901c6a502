from __future__ import annotations

from contextlib import AbstractContextManager
from datetime import datetime
from typing import Optional, Protocol

from milestone_scheduler.core.model import Milestone, MilestoneDependency, ProgressEntry, ProgressUpdate


class MilestoneStore(Protocol):
    """Persistence collaborator consumed by the engine.

    Implementations own storage only. Referential integrity between milestones
    and dependency edges (cascading deletes, same-contract endpoints, acyclicity)
    is enforced by the batch coordinator, not by the store.

    Writes issued inside `transaction()` must be all-or-nothing: an exception
    escaping the block discards every write made inside it.
    """

    def load_milestones_by_contract(self, contract_id: str) -> list[Milestone]: ...

    def load_dependencies_by_contract(self, contract_id: str) -> list[MilestoneDependency]: ...

    def get_milestone(self, milestone_id: str) -> Milestone: ...

    def get_dependency(self, dependency_id: str) -> MilestoneDependency: ...

    def create_milestone(self, milestone: Milestone) -> None: ...

    def update_milestone(self, milestone: Milestone) -> None: ...

    def delete_milestone(self, milestone_id: str) -> None: ...

    def create_dependency(self, edge: MilestoneDependency) -> None: ...

    def delete_dependency(self, dependency_id: str) -> None: ...

    def batch_update_status(
        self,
        milestone_ids: list[str],
        status: str,
        *,
        in_progress_percentage: float = 50.0,
        now: Optional[datetime] = None,
    ) -> None: ...

    def batch_update_progress(self, updates: list[ProgressUpdate], *, now: Optional[datetime] = None) -> None: ...

    def add_progress_entry(self, entry: ProgressEntry) -> None: ...

    def load_progress_history(self, milestone_ids: list[str]) -> list[ProgressEntry]: ...

    def transaction(self) -> AbstractContextManager[None]: ...
