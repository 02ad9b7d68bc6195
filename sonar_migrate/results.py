"""Step, project and run results used for status derivation and reporting."""

import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

import structlog

from sonar_migrate.models import TransferStats

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StepStatus(str, Enum):
    """Outcome of one named unit of work."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    PARTIAL = "partial"


@dataclass(slots=True)
class StepResult:
    step: str
    status: StepStatus
    detail: str | None = None
    error: str | None = None
    duration_ms: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"step": self.step, "status": self.status.value}
        if self.detail is not None:
            data["detail"] = self.detail
        if self.error is not None:
            data["error"] = self.error
        if self.duration_ms is not None:
            data["duration_ms"] = self.duration_ms
        return data


@dataclass(slots=True)
class SyncStats:
    """Counters of an issue or hotspot metadata sync."""

    matched: int = 0
    transitioned: int = 0
    assigned: int = 0
    commented: int = 0
    tagged: int = 0
    skipped: int = 0
    failed: int = 0

    def add(self, other: "SyncStats") -> None:
        for name in self.__slots__:
            setattr(self, name, getattr(self, name) + getattr(other, name))

    @property
    def step_status(self) -> StepStatus:
        """``partial`` when some matched items failed, ``failed`` when all did."""
        if self.failed == 0:
            return StepStatus.SUCCESS
        if self.failed >= self.matched:
            return StepStatus.FAILED
        return StepStatus.PARTIAL

    def to_dict(self) -> dict[str, int]:
        return asdict(self)

    def describe(self) -> str:
        return (
            f"{self.matched} matched, {self.transitioned} transitioned, "
            f"{self.commented} comments, {self.failed} failed"
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


async def run_step(
    steps: list[StepResult],
    name: str,
    func: Callable[[], Awaitable[T]],
    fatal: bool = False,
    describe: Callable[[T], str | None] | None = None,
    classify: Callable[[T], StepStatus] | None = None,
) -> T | None:
    """Run one step and append its :class:`StepResult` to ``steps``.

    Args:
        steps: Result list the step is recorded in.
        name: Step name shown in reports.
        func: Coroutine function doing the work.
        fatal: Re-raise a failure instead of only recording it.
        describe: Builds the ``detail`` text from the return value.
        classify: Derives the status from the return value; success otherwise.

    Returns:
        The value returned by ``func``, or None if it failed and is not fatal.
    """
    start = time.monotonic()
    try:
        value = await func()
    except Exception as e:
        steps.append(
            StepResult(
                step=name,
                status=StepStatus.FAILED,
                error=str(e),
                duration_ms=_elapsed_ms(start),
            )
        )
        logger.warning("Step failed", step=name, error=str(e), fatal=fatal)
        if fatal:
            raise
        return None

    steps.append(
        StepResult(
            step=name,
            status=classify(value) if classify else StepStatus.SUCCESS,
            detail=describe(value) if describe else None,
            duration_ms=_elapsed_ms(start),
        )
    )
    return value


def skip_step(steps: list[StepResult], name: str, detail: str) -> None:
    steps.append(StepResult(step=name, status=StepStatus.SKIPPED, detail=detail))


@dataclass(slots=True)
class ProjectResult:
    """Ordered steps of one project migration and the status derived from them."""

    project_key: str
    org_key: str | None = None
    steps: list[StepResult] = field(default_factory=list)
    stats: TransferStats = field(default_factory=TransferStats)
    issue_sync: SyncStats = field(default_factory=SyncStats)
    hotspot_sync: SyncStats = field(default_factory=SyncStats)
    status: StepStatus = StepStatus.SUCCESS
    fatal_error: str | None = None
    duration_ms: int | None = None

    @property
    def branches_transferred(self) -> list[str]:
        return self.stats.branches_transferred

    @property
    def failed_steps(self) -> list[StepResult]:
        return [s for s in self.steps if s.status == StepStatus.FAILED]

    def step(self, name: str) -> StepResult | None:
        for step in self.steps:
            if step.step == name:
                return step
        return None

    def finalize(self) -> StepStatus:
        """Derive the project status from its steps.

        ``failed`` when a defining step failed fatally or every non-skipped
        step failed, ``partial`` when something failed or was only partly
        done, ``success`` otherwise.
        """
        failed = self.failed_steps
        non_skipped = [s for s in self.steps if s.status != StepStatus.SKIPPED]
        if self.fatal_error is not None:
            self.status = StepStatus.FAILED
        elif failed and len(failed) == len(non_skipped):
            self.status = StepStatus.FAILED
        elif failed or any(s.status == StepStatus.PARTIAL for s in self.steps):
            self.status = StepStatus.PARTIAL
        else:
            self.status = StepStatus.SUCCESS
        return self.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_key": self.project_key,
            "org_key": self.org_key,
            "status": self.status.value,
            "fatal_error": self.fatal_error,
            "duration_ms": self.duration_ms,
            "stats": asdict(self.stats),
            "issue_sync": self.issue_sync.to_dict(),
            "hotspot_sync": self.hotspot_sync.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(slots=True)
class OrgResult:
    """Organization-wide steps run for one destination organization."""

    org_key: str
    steps: list[StepResult] = field(default_factory=list)
    project_keys: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "org_key": self.org_key,
            "error": self.error,
            "project_keys": self.project_keys,
            "steps": [s.to_dict() for s in self.steps],
        }


@dataclass(slots=True)
class MigrationResults:
    """Everything a full migration run reports."""

    start_time: str = field(default_factory=lambda: datetime.now().isoformat())
    end_time: str | None = None
    dry_run: bool = False
    server_steps: list[StepResult] = field(default_factory=list)
    org_results: list[OrgResult] = field(default_factory=list)
    projects: list[ProjectResult] = field(default_factory=list)
    quality_gates: int = 0
    quality_profiles: int = 0
    groups: int = 0
    portfolios: int = 0
    issue_sync: SyncStats = field(default_factory=SyncStats)
    hotspot_sync: SyncStats = field(default_factory=SyncStats)
    total_lines_of_code: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def count(self, status: StepStatus) -> int:
        return sum(1 for p in self.projects if p.status == status)

    @property
    def success(self) -> bool:
        return not self.errors and all(
            p.status == StepStatus.SUCCESS for p in self.projects
        )

    def record_project(self, result: ProjectResult) -> None:
        """Add a finalized project result and log its outcome."""
        self.projects.append(result)
        self.total_lines_of_code += result.stats.lines_of_code
        self.issue_sync.add(result.issue_sync)
        self.hotspot_sync.add(result.hotspot_sync)
        failed = result.failed_steps
        if failed or result.fatal_error:
            self.errors.append(
                {
                    "project": result.project_key,
                    "error": result.fatal_error,
                    "failed_steps": [{"step": s.step, "error": s.error} for s in failed],
                }
            )
        log = logger.bind(project=result.project_key, org=result.org_key)
        if result.status == StepStatus.SUCCESS:
            log.info("Project migrated successfully")
        elif result.status == StepStatus.PARTIAL:
            log.warning(
                "Project partially migrated", failed_steps=[s.step for s in failed]
            )
        else:
            log.error(
                "Project migration failed",
                error=result.fatal_error,
                failed_steps=[s.step for s in failed],
            )

    def summary(self) -> dict[str, Any]:
        return {
            "projects_total": len(self.projects),
            "projects_succeeded": self.count(StepStatus.SUCCESS),
            "projects_partial": self.count(StepStatus.PARTIAL),
            "projects_failed": self.count(StepStatus.FAILED),
            "quality_gates": self.quality_gates,
            "quality_profiles": self.quality_profiles,
            "groups": self.groups,
            "portfolios": self.portfolios,
            "issues_matched": self.issue_sync.matched,
            "issues_transitioned": self.issue_sync.transitioned,
            "hotspots_matched": self.hotspot_sync.matched,
            "hotspots_status_changed": self.hotspot_sync.transitioned,
            "total_lines_of_code": self.total_lines_of_code,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": self.start_time,
            "end_time": self.end_time,
            "dry_run": self.dry_run,
            "success": self.success,
            "summary": self.summary(),
            "server_steps": [s.to_dict() for s in self.server_steps],
            "organizations": [o.to_dict() for o in self.org_results],
            "projects": [p.to_dict() for p in self.projects],
            "errors": self.errors,
        }

    def write_report(self, report_dir: Path) -> Path:
        """Write ``migration-report.json`` into ``report_dir``."""
        report_dir.mkdir(parents=True, exist_ok=True)
        report_path = report_dir / "migration-report.json"
        with open(report_path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)
        logger.info("Migration report saved", report_path=str(report_path))
        return report_path
