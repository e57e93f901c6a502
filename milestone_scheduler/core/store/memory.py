from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Iterator, Optional

from milestone_scheduler.core.errors import MilestoneNotFoundError, StoreError
from milestone_scheduler.core.model import (
    Milestone,
    MilestoneDependency,
    ProgressEntry,
    ProgressUpdate,
    utc_now,
)

logger = logging.getLogger(__name__)


def status_percentage(status: str, in_progress_percentage: float = 50.0) -> float:
    if status == "pending":
        return 0.0
    if status == "in_progress":
        return in_progress_percentage
    if status == "completed":
        return 100.0
    raise StoreError(code="E_INVALID_STATUS", message=f"invalid status: {status}", path="status")


class InMemoryMilestoneStore:
    """Map-backed MilestoneStore with snapshot transactions.

    A single re-entrant lock guards the maps. `transaction()` holds that lock for
    the duration of the block and restores the pre-block snapshot if the block
    raises, so nested transactions roll back independently.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._milestones: dict[str, Milestone] = {}
        self._dependencies: dict[str, MilestoneDependency] = {}
        self._progress: list[ProgressEntry] = []

    # Reads

    def load_milestones_by_contract(self, contract_id: str) -> list[Milestone]:
        with self._lock:
            out = [m for m in self._milestones.values() if m.contract_id == contract_id]
        return sorted(out, key=lambda m: (m.sequence_number, m.id))

    def load_dependencies_by_contract(self, contract_id: str) -> list[MilestoneDependency]:
        """Edges with at least one endpoint owned by the contract.

        Edges whose other endpoint is missing or foreign are returned as-is; the
        graph builder reports them.
        """
        with self._lock:
            owned = {m.id for m in self._milestones.values() if m.contract_id == contract_id}
            out = [
                e
                for e in self._dependencies.values()
                if e.milestone_id in owned or e.depends_on_id in owned
            ]
        return sorted(out, key=lambda e: e.id)

    def get_milestone(self, milestone_id: str) -> Milestone:
        with self._lock:
            m = self._milestones.get(milestone_id)
        if m is None:
            raise MilestoneNotFoundError(
                code="E_MILESTONE_NOT_FOUND",
                message=f"milestone with ID {milestone_id} not found",
                path=milestone_id,
            )
        return m

    def get_dependency(self, dependency_id: str) -> MilestoneDependency:
        with self._lock:
            e = self._dependencies.get(dependency_id)
        if e is None:
            raise StoreError(
                code="E_DEPENDENCY_NOT_FOUND",
                message=f"milestone dependency with ID {dependency_id} not found",
                path=dependency_id,
            )
        return e

    def load_progress_history(self, milestone_ids: list[str]) -> list[ProgressEntry]:
        wanted = set(milestone_ids)
        with self._lock:
            out = [p for p in self._progress if p.milestone_id in wanted]
        return sorted(out, key=lambda p: (p.recorded_at, p.id))

    # Writes

    def create_milestone(self, milestone: Milestone) -> None:
        with self._lock:
            if milestone.id in self._milestones:
                raise StoreError(
                    code="E_DUPLICATE_MILESTONE",
                    message=f"milestone with ID {milestone.id} already exists",
                    contract_id=milestone.contract_id,
                    path=milestone.id,
                )
            self._milestones[milestone.id] = milestone

    def update_milestone(self, milestone: Milestone) -> None:
        with self._lock:
            if milestone.id not in self._milestones:
                raise MilestoneNotFoundError(
                    code="E_MILESTONE_NOT_FOUND",
                    message=f"milestone with ID {milestone.id} not found",
                    contract_id=milestone.contract_id,
                    path=milestone.id,
                )
            self._milestones[milestone.id] = milestone

    def delete_milestone(self, milestone_id: str) -> None:
        with self._lock:
            if self._milestones.pop(milestone_id, None) is None:
                raise MilestoneNotFoundError(
                    code="E_MILESTONE_NOT_FOUND",
                    message=f"milestone with ID {milestone_id} not found",
                    path=milestone_id,
                )

    def create_dependency(self, edge: MilestoneDependency) -> None:
        with self._lock:
            if edge.id in self._dependencies:
                raise StoreError(
                    code="E_DUPLICATE_DEPENDENCY",
                    message=f"milestone dependency with ID {edge.id} already exists",
                    path=edge.id,
                )
            self._dependencies[edge.id] = edge

    def delete_dependency(self, dependency_id: str) -> None:
        with self._lock:
            if self._dependencies.pop(dependency_id, None) is None:
                raise StoreError(
                    code="E_DEPENDENCY_NOT_FOUND",
                    message=f"milestone dependency with ID {dependency_id} not found",
                    path=dependency_id,
                )

    def batch_update_status(
        self,
        milestone_ids: list[str],
        status: str,
        *,
        in_progress_percentage: float = 50.0,
        now: Optional[datetime] = None,
    ) -> None:
        percentage = status_percentage(status, in_progress_percentage)
        self.batch_update_progress(
            [ProgressUpdate(milestone_id=mid, percentage_complete=percentage) for mid in milestone_ids],
            now=now,
        )

    def batch_update_progress(self, updates: list[ProgressUpdate], *, now: Optional[datetime] = None) -> None:
        ts = now or utc_now()
        with self.transaction():
            for u in updates:
                current = self.get_milestone(u.milestone_id)
                self._milestones[u.milestone_id] = replace(
                    current, percentage_complete=u.percentage_complete, updated_at=ts
                )

    def add_progress_entry(self, entry: ProgressEntry) -> None:
        with self._lock:
            self._progress.append(entry)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = (dict(self._milestones), dict(self._dependencies), list(self._progress))
            try:
                yield
            except BaseException:
                self._milestones, self._dependencies, self._progress = snapshot
                logger.debug("store transaction rolled back")
                raise
