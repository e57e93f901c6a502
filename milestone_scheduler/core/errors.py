from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, TypeVar


@dataclass(frozen=True)
class SchedulerError(Exception):
    """Base error envelope. Engine failures are deterministic for a given store snapshot."""

    code: str
    message: str
    contract_id: Optional[str] = None
    path: Optional[str] = None

    def __str__(self) -> str:
        parts: list[str] = []
        if self.contract_id:
            parts.append(self.contract_id)
        if self.path:
            parts.append(self.path)
        loc = ":".join(parts) if parts else "<contract>"
        return f"{loc}: {self.code}: {self.message}"


class GraphBuildError(SchedulerError):
    pass


@dataclass(frozen=True)
class CycleDetectedError(SchedulerError):
    # Every milestone whose in-degree never reached zero.
    milestone_ids: tuple[str, ...] = ()
    cycles: tuple[tuple[str, ...], ...] = ()


@dataclass(frozen=True)
class InconsistentDurationError(SchedulerError):
    milestone_id: Optional[str] = None


class BatchMutationError(SchedulerError):
    pass


class StoreError(SchedulerError):
    pass


class MilestoneNotFoundError(StoreError):
    pass


class ContractLoadError(SchedulerError):
    pass


class ConfigError(SchedulerError):
    pass


E = TypeVar("E", bound=SchedulerError)


def sorted_errors(errors: Iterable[E]) -> list[E]:
    """Stable report order: contract, then path, then code."""
    return sorted(errors, key=lambda e: (e.contract_id or "", e.path or "", e.code))
