"""Per-run context passed through the migration instead of module globals."""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from sonar_migrate.config import Config, PerformanceConfig
from sonar_migrate.state import StateTracker


@dataclass(slots=True)
class ConcurrencyLimits:
    """One semaphore per operation class, each sized independently."""

    source_extraction: asyncio.Semaphore
    hotspot_extraction: asyncio.Semaphore
    issue_sync: asyncio.Semaphore
    hotspot_sync: asyncio.Semaphore
    project_migration: asyncio.Semaphore

    @classmethod
    def from_config(cls, config: PerformanceConfig) -> "ConcurrencyLimits":
        return cls(
            source_extraction=asyncio.Semaphore(config.source_extraction),
            hotspot_extraction=asyncio.Semaphore(config.hotspot_extraction),
            issue_sync=asyncio.Semaphore(config.issue_sync),
            hotspot_sync=asyncio.Semaphore(config.hotspot_sync),
            project_migration=asyncio.Semaphore(config.project_migration),
        )


@dataclass(slots=True)
class RunContext:
    """Configuration, limits, paths and branch filters of one run."""

    config: Config
    limits: ConcurrencyLimits
    project_branch_includes: dict[str, set[str]] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: Config) -> "RunContext":
        return cls(config=config, limits=ConcurrencyLimits.from_config(config.performance))

    @property
    def dry_run(self) -> bool:
        return self.config.migrate.dry_run

    @property
    def output_dir(self) -> Path:
        return self.config.migrate.output_dir

    @property
    def mappings_dir(self) -> Path:
        return self.output_dir / "mappings"

    @property
    def reports_dir(self) -> Path:
        return self.output_dir / "reports"

    @property
    def profile_diff_dir(self) -> Path:
        return self.output_dir / "quality-profiles"

    def state_tracker_for(self, project_key: str) -> StateTracker:
        """A new tracker bound to the project's own state file."""
        return StateTracker(self.config.migrate.state_file(project_key))

    def branch_allowed(self, project_key: str, branch_name: str) -> bool:
        """Whether the transfer settings and overrides permit a branch."""
        if branch_name in self.config.transfer.exclude_branches:
            return False
        includes = self.project_branch_includes.get(project_key)
        return includes is None or branch_name in includes
