from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, cast

import yaml

from milestone_scheduler.core.errors import ContractLoadError, sorted_errors
from milestone_scheduler.core.model import (
    DEPENDENCY_TYPES,
    RISK_LEVELS,
    DependencyType,
    Milestone,
    MilestoneDependency,
    ProgressEntry,
    RiskLevel,
)
from milestone_scheduler.core.store.memory import InMemoryMilestoneStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContractDocument:
    contract_id: str
    milestones: list[Milestone]
    dependencies: list[MilestoneDependency]
    progress_history: list[ProgressEntry] = field(default_factory=list)
    file: Optional[str] = None


def load_contract(path: str) -> dict[str, Any]:
    """Load a YAML/JSON contract file.

    Returns a dict with keys: contract_id, milestones, dependencies,
    progress_history. Does not coerce types; parse_contract owns shape checking.
    """

    p = Path(path)
    if not p.exists():
        raise ContractLoadError(code="E_FILE_NOT_FOUND", message="file does not exist", path=str(p))

    suffix = p.suffix.lower()
    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:  # pragma: no cover
        raise ContractLoadError(code="E_FILE_READ", message=str(e), path=str(p)) from e

    try:
        if suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(raw_text)
        elif suffix == ".json":
            data = json.loads(raw_text)
        else:
            raise ContractLoadError(
                code="E_UNSUPPORTED_FORMAT",
                message="supported formats are .yaml/.yml and .json",
                path=str(p),
            )
    except ContractLoadError:
        raise
    except (yaml.YAMLError, ValueError) as e:
        code = "E_YAML_PARSE" if suffix in {".yaml", ".yml"} else "E_JSON_PARSE"
        raise ContractLoadError(code=code, message=str(e), path=str(p)) from e

    if not isinstance(data, dict):
        raise ContractLoadError(
            code="E_INVALID_TOP_LEVEL",
            message="top-level document must be a mapping/object",
            path=str(p),
        )

    normalized: dict[str, Any] = {
        "contract_id": data.get("contract_id"),
        "milestones": data.get("milestones"),
        "dependencies": data.get("dependencies", []),
        "progress_history": data.get("progress_history", []),
    }
    normalized["__file__"] = str(p)
    logger.debug("loaded contract file %s", p)
    return normalized


def parse_datetime(value: Any) -> datetime:
    """Coerce a YAML/JSON timestamp to an aware UTC datetime.

    Accepts datetime, date (midnight UTC) or ISO-8601 strings; naive values are UTC.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime.combine(value, time.min)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class _Fields:
    """Per-record field reader that collects errors instead of raising."""

    def __init__(self, raw: dict[str, Any], prefix: str, owner: Optional[str], errors: list[ContractLoadError]):
        self.raw = raw
        self.prefix = prefix
        self.owner = owner
        self.errors = errors
        self.ok = True

    def fail(self, key: str, code: str, message: str) -> None:
        self.ok = False
        self.errors.append(ContractLoadError(code=code, message=message, contract_id=self.owner, path=f"{self.prefix}.{key}"))

    def required_str(self, key: str) -> str:
        v = self.raw.get(key)
        if not isinstance(v, str) or not v.strip():
            self.fail(key, "E_REQUIRED_FIELD", f"{key} is required and must be a non-empty string")
            return ""
        return v

    def optional_str(self, key: str, default: str) -> str:
        v = self.raw.get(key, default)
        if not isinstance(v, str):
            self.fail(key, "E_INVALID_TYPE", f"{key} must be a string")
            return default
        return v

    def integer(self, key: str, default: Optional[int] = None, *, lo: Optional[int] = None, hi: Optional[int] = None) -> int:
        v = self.raw.get(key, default)
        if isinstance(v, bool) or not isinstance(v, int):
            self.fail(key, "E_REQUIRED_FIELD" if v is None else "E_INVALID_TYPE", f"{key} must be an integer")
            return 0
        if (lo is not None and v < lo) or (hi is not None and v > hi):
            self.fail(key, "E_OUT_OF_RANGE", f"{key} must be within {lo}..{hi}, got {v}")
        return v

    def number(self, key: str, default: float, *, lo: float, hi: float) -> float:
        v = self.raw.get(key, default)
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            self.fail(key, "E_INVALID_TYPE", f"{key} must be a number")
            return default
        if not lo <= v <= hi:
            self.fail(key, "E_OUT_OF_RANGE", f"{key} must be within {lo:g}..{hi:g}, got {v}")
        return float(v)

    def boolean(self, key: str, default: bool) -> bool:
        v = self.raw.get(key, default)
        if not isinstance(v, bool):
            self.fail(key, "E_INVALID_TYPE", f"{key} must be a boolean")
            return default
        return v

    def enum(self, key: str, default: str, allowed: Iterable[str]) -> str:
        allowed = list(allowed)
        v = self.raw.get(key, default)
        if v not in allowed:
            self.fail(key, "E_INVALID_ENUM", f"{key} must be one of {allowed}")
            return default
        return cast(str, v)

    def str_list(self, key: str) -> list[str]:
        v = self.raw.get(key, [])
        if v is None:
            return []
        if not isinstance(v, list) or not all(isinstance(x, str) for x in v):
            self.fail(key, "E_INVALID_TYPE", f"{key} must be an array of strings")
            return []
        return list(v)

    def timestamp(self, key: str) -> Optional[datetime]:
        v = self.raw.get(key)
        if v is None:
            return None
        try:
            return parse_datetime(v)
        except ValueError:
            self.fail(key, "E_INVALID_DATE", f"{key} must be an ISO-8601 date or datetime")
            return None

    def days(self, key: str) -> Optional[timedelta]:
        # Negative durations pass through; the scheduler rejects them per milestone.
        v = self.raw.get(key)
        if v is None:
            return None
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            self.fail(key, "E_INVALID_TYPE", f"{key} must be a number of days")
            return None
        try:
            if not math.isfinite(v):
                self.fail(key, "E_INVALID_TYPE", f"{key} must be a finite number of days")
                return None
            return timedelta(days=v)
        except OverflowError:
            self.fail(key, "E_OUT_OF_RANGE", f"{key} is too large: {v}")
            return None


def parse_contract(doc: dict[str, Any]) -> tuple[Optional[ContractDocument], list[ContractLoadError]]:
    """Shape-check a loaded contract.

    Returns (document, errors). Document is None when errors exist. Graph-level
    problems (dangling edges, cycles) are left to the graph builder and sorter.
    """
    file = cast(Optional[str], doc.get("__file__"))
    errors: list[ContractLoadError] = []

    contract_id = doc.get("contract_id")
    if not isinstance(contract_id, str) or not contract_id.strip():
        errors.append(
            ContractLoadError(
                code="E_REQUIRED_FIELD",
                message="contract_id is required and must be a non-empty string",
                contract_id=None,
                path="contract_id",
            )
        )
        contract_id = ""
    owner = contract_id or None

    raw_milestones = doc.get("milestones")
    if not isinstance(raw_milestones, list):
        errors.append(
            ContractLoadError(
                code="E_REQUIRED_FIELD",
                message="milestones is required and must be an array",
                contract_id=owner,
                path="milestones",
            )
        )
        return None, sorted_errors(errors)

    milestones: list[Milestone] = []
    seen: set[str] = set()
    for i, raw in enumerate(raw_milestones):
        m = _parse_milestone(raw, f"milestones[{i}]", contract_id, owner, errors)
        if m is None:
            continue
        if m.id in seen:
            errors.append(
                ContractLoadError(
                    code="E_DUPLICATE_ID",
                    message=f"duplicate milestone id: {m.id}",
                    contract_id=owner,
                    path=f"milestones[{i}].id",
                )
            )
            continue
        seen.add(m.id)
        milestones.append(m)

    dependencies: list[MilestoneDependency] = []
    for i, raw in enumerate(_records(doc.get("dependencies"), "dependencies", owner, errors)):
        e = _parse_dependency(raw, f"dependencies[{i}]", owner, errors)
        if e is not None:
            dependencies.append(e)

    history: list[ProgressEntry] = []
    for i, raw in enumerate(_records(doc.get("progress_history"), "progress_history", owner, errors)):
        h = _parse_progress(raw, f"progress_history[{i}]", owner, errors)
        if h is not None:
            history.append(h)

    if errors:
        return None, sorted_errors(errors)

    return (
        ContractDocument(
            contract_id=contract_id,
            milestones=milestones,
            dependencies=dependencies,
            progress_history=history,
            file=file,
        ),
        [],
    )


def hydrate_store(doc: ContractDocument, store: Optional[InMemoryMilestoneStore] = None) -> InMemoryMilestoneStore:
    """Write a parsed contract into a store, in one transaction."""
    store = store or InMemoryMilestoneStore()
    with store.transaction():
        for m in doc.milestones:
            store.create_milestone(m)
        for e in doc.dependencies:
            store.create_dependency(e)
        for h in doc.progress_history:
            store.add_progress_entry(h)
    logger.debug(
        "hydrated contract %s: %d milestones, %d dependencies, %d progress entries",
        doc.contract_id,
        len(doc.milestones),
        len(doc.dependencies),
        len(doc.progress_history),
    )
    return store


def _records(
    v: Any, key: str, owner: Optional[str], errors: list[ContractLoadError]
) -> list[dict[str, Any]]:
    if v is None:
        return []
    if not isinstance(v, list):
        errors.append(
            ContractLoadError(code="E_INVALID_TYPE", message=f"{key} must be an array", contract_id=owner, path=key)
        )
        return []
    out: list[dict[str, Any]] = []
    for i, raw in enumerate(v):
        if not isinstance(raw, dict):
            errors.append(
                ContractLoadError(
                    code="E_INVALID_TYPE",
                    message="entry must be an object",
                    contract_id=owner,
                    path=f"{key}[{i}]",
                )
            )
            out.append({"__invalid__": True})
            continue
        out.append(raw)
    return out


def _parse_milestone(
    raw: Any, prefix: str, contract_id: str, owner: Optional[str], errors: list[ContractLoadError]
) -> Optional[Milestone]:
    if not isinstance(raw, dict):
        errors.append(ContractLoadError(code="E_INVALID_TYPE", message="milestone must be an object", contract_id=owner, path=prefix))
        return None

    f = _Fields(raw, prefix, owner, errors)
    mid = f.required_str("id")
    sequence_number = f.integer("sequence_number", lo=0)
    m = Milestone(
        id=mid,
        contract_id=contract_id,
        sequence_number=sequence_number,
        title=f.optional_str("title", ""),
        dependencies=f.str_list("dependencies"),
        category=f.optional_str("category", "delivery"),
        priority=f.integer("priority", 3),
        risk_level=cast(RiskLevel, f.enum("risk_level", "low", RISK_LEVELS)),
        criticality_score=f.integer("criticality_score", 0, lo=0, hi=100),
        critical_path=f.boolean("critical_path", False),
        estimated_start_date=f.timestamp("estimated_start_date"),
        estimated_end_date=f.timestamp("estimated_end_date"),
        actual_start_date=f.timestamp("actual_start_date"),
        actual_end_date=f.timestamp("actual_end_date"),
        estimated_duration=f.days("estimated_duration_days"),
        actual_duration=f.days("actual_duration_days"),
        percentage_complete=f.number("percentage_complete", 0.0, lo=0, hi=100),
        contingency_plans=f.str_list("contingency_plans"),
        created_at=f.timestamp("created_at"),
        updated_at=f.timestamp("updated_at"),
    )
    return m if f.ok else None


def _parse_dependency(
    raw: dict[str, Any], prefix: str, owner: Optional[str], errors: list[ContractLoadError]
) -> Optional[MilestoneDependency]:
    if raw.get("__invalid__"):
        return None
    f = _Fields(raw, prefix, owner, errors)
    milestone_id = f.required_str("milestone_id")
    depends_on_id = f.required_str("depends_on_id")
    edge = MilestoneDependency(
        id=f.optional_str("id", f"dep-{milestone_id}-{depends_on_id}"),
        milestone_id=milestone_id,
        depends_on_id=depends_on_id,
        dependency_type=cast(DependencyType, f.enum("dependency_type", "prerequisite", DEPENDENCY_TYPES)),
    )
    return edge if f.ok else None


def _parse_progress(
    raw: dict[str, Any], prefix: str, owner: Optional[str], errors: list[ContractLoadError]
) -> Optional[ProgressEntry]:
    if raw.get("__invalid__"):
        return None
    f = _Fields(raw, prefix, owner, errors)
    milestone_id = f.required_str("milestone_id")
    pct = f.number("percentage_complete", 0.0, lo=0, hi=100)
    recorded_at = f.timestamp("recorded_at")
    if raw.get("recorded_at") is None:
        f.fail("recorded_at", "E_REQUIRED_FIELD", "recorded_at is required")
    if not f.ok or recorded_at is None:
        return None
    status = "completed" if pct >= 100 else "pending" if pct <= 0 else "in_progress"
    return ProgressEntry(
        id=f.optional_str("id", f"pe-{milestone_id}-{recorded_at.isoformat()}"),
        milestone_id=milestone_id,
        percentage_complete=pct,
        status=status,
        recorded_at=recorded_at,
        notes=f.optional_str("notes", ""),
        recorded_by=f.optional_str("recorded_by", "system"),
    )
