"""Per-project transfer of every branch from SonarQube to SonarCloud."""

import time
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from sonar_migrate.clients.sonarcloud import SonarCloudClient
from sonar_migrate.clients.sonarqube import SonarQubeClient
from sonar_migrate.config import TargetOrgConfig
from sonar_migrate.context import RunContext
from sonar_migrate.errors import NotFoundError, TransferError
from sonar_migrate.extraction import project_from_api
from sonar_migrate.models import (
    Binding,
    Project,
    ProjectConfig,
    ProjectSnapshot,
    TransferStats,
)
from sonar_migrate.protocols import DataExtractor, ReportPipeline
from sonar_migrate.resources import (
    MigrationSummary,
    ProjectConfigMigrator,
    sync_hotspots,
    sync_issues,
)
from sonar_migrate.results import (
    ProjectResult,
    StepResult,
    StepStatus,
    SyncStats,
    run_step,
    skip_step,
)
from sonar_migrate.state import StateTracker

logger = structlog.get_logger(__name__)

REPORT_VERSION = "1.0.0"


def _config_status(summary: MigrationSummary) -> StepStatus:
    return summary.step_status


async def discover_project(client: SonarQubeClient, project_key: str) -> Project:
    """Load a single project and its branches from the source server.

    Raises:
        NotFoundError: If the project does not exist.
    """
    raw = await client.get_project(project_key)
    if raw is None:
        raise NotFoundError(f"Project not found on SonarQube: {project_key}")
    project = project_from_api(raw, await client.list_branches(project_key))
    project.validate_branches()
    return project


class TransferPipeline:
    """Transfers the branches of projects into one destination organization.

    The project configuration is replayed right after the project is
    created, one non-fatal step per kind of setting. The main branch goes
    first and must succeed. Other branches follow one at a time; a failing
    branch is recorded and the loop moves on.
    """

    def __init__(
        self,
        context: RunContext,
        extractor: DataExtractor,
        dest_client: SonarCloudClient,
        report_pipeline: ReportPipeline,
        org: TargetOrgConfig,
        source_client: SonarQubeClient | None = None,
        project_bindings: dict[str, Binding] | None = None,
    ) -> None:
        self.context = context
        self.extractor = extractor
        self.dest_client = dest_client
        self.report_pipeline = report_pipeline
        self.org = org
        self.source_client = source_client
        self.project_bindings = project_bindings or {}
        self._logger = logger.bind(org=org.key)

    @property
    def incremental(self) -> bool:
        return self.context.config.transfer.mode == "incremental"

    async def _resolve_name(self, project: Project) -> str:
        if project.name or self.source_client is None:
            return project.name or project.key
        try:
            raw = await self.source_client.get_project(project.key)
        except Exception as e:
            self._logger.warning(
                "Could not fetch project name", project=project.key, error=str(e)
            )
            return project.key
        return (raw or {}).get("name") or project.key

    async def _test_connections(self) -> None:
        if self.source_client is not None:
            await self.source_client.test_connection()
        await self.dest_client.test_connection()

    async def _upload(
        self, snapshot: ProjectSnapshot, branch: str, reference_branch: str
    ) -> dict[str, Any]:
        messages = self.report_pipeline.build_all(snapshot, self.org)
        payload = self.report_pipeline.encode_all(messages)
        metadata = {
            "project_key": snapshot.project.key,
            "organization": self.org.key,
            "branch": branch,
            "reference_branch": reference_branch,
            "version": REPORT_VERSION,
        }
        if self.context.config.migrate.wait:
            return await self.report_pipeline.upload_and_wait(payload, metadata)
        return await self.report_pipeline.upload(payload, metadata)

    async def _sync_metadata(
        self,
        result: ProjectResult,
        steps: list[StepResult],
        snapshot: ProjectSnapshot,
        label: str,
        dest_branch: str | None,
        tracker: StateTracker,
    ) -> None:
        project_key = snapshot.project.key
        settings = self.context.config.migrate
        limits = self.context.limits

        if settings.skip_issue_sync:
            skip_step(steps, f"Sync issues [{label}]", "disabled by configuration")
        else:
            issue_stats = await run_step(
                steps,
                f"Sync issues [{label}]",
                lambda: sync_issues(
                    project_key,
                    snapshot.issues,
                    self.dest_client,
                    limits.issue_sync,
                    branch=dest_branch,
                    tracker=tracker if self.incremental else None,
                ),
                describe=SyncStats.describe,
                classify=lambda stats: stats.step_status,
            )
            if issue_stats is not None:
                result.issue_sync.add(issue_stats)

        if settings.skip_hotspot_sync:
            skip_step(steps, f"Sync hotspots [{label}]", "disabled by configuration")
        else:
            hotspot_stats = await run_step(
                steps,
                f"Sync hotspots [{label}]",
                lambda: sync_hotspots(
                    project_key,
                    snapshot.hotspots,
                    self.dest_client,
                    limits.hotspot_sync,
                    branch=dest_branch,
                ),
                describe=SyncStats.describe,
                classify=lambda stats: stats.step_status,
            )
            if hotspot_stats is not None:
                result.hotspot_sync.add(hotspot_stats)

    async def _config_step(
        self,
        steps: list[StepResult],
        name: str,
        apply: Callable[[ProjectConfig], Awaitable[MigrationSummary]],
        config: ProjectConfig | None,
    ) -> None:
        if config is None:
            skip_step(steps, name, "project configuration not extracted")
            return
        await run_step(
            steps,
            name,
            lambda: apply(config),
            describe=MigrationSummary.describe,
            classify=_config_status,
        )

    async def _migrate_config(self, project: Project, result: ProjectResult) -> None:
        """Replay settings, tags, links, new code definition, DevOps binding,
        quality gate, quality profiles and permissions of a project."""
        steps = result.steps
        migrator = ProjectConfigMigrator(self.dest_client, project.key)
        config = await run_step(
            steps,
            "Extract project configuration",
            lambda: self.extractor.extract_project_config(project.key),
        )

        await self._config_step(steps, "Project settings", migrator.migrate_settings, config)
        await self._config_step(steps, "Project tags", migrator.migrate_tags, config)
        await self._config_step(steps, "Project links", migrator.migrate_links, config)
        await self._config_step(
            steps, "New code definitions", migrator.migrate_new_code_period, config
        )
        await run_step(
            steps,
            "DevOps binding",
            lambda: migrator.migrate_binding(self.project_bindings.get(project.key)),
            describe=MigrationSummary.describe,
            classify=_config_status,
        )
        await self._config_step(
            steps, "Assign quality gate", migrator.assign_quality_gate, config
        )
        if self.context.config.migrate.skip_quality_profile_sync:
            skip_step(steps, "Assign quality profiles", "disabled by configuration")
        else:
            await self._config_step(
                steps, "Assign quality profiles", migrator.assign_quality_profiles, config
            )
        await self._config_step(
            steps, "Project permissions", migrator.migrate_permissions, config
        )

    def _complete_branch(
        self, tracker: StateTracker, branch: str, branch_steps: list[StepResult]
    ) -> None:
        if any(s.status == StepStatus.FAILED for s in branch_steps):
            return
        tracker.mark_branch_completed(branch)
        tracker.save()

    async def _transfer_main_branch(
        self, project: Project, result: ProjectResult, tracker: StateTracker
    ) -> tuple[ProjectSnapshot, str]:
        """Extract, upload and sync the main branch.

        Raises:
            TransferError: If extraction or upload fails.
        """
        steps: list[StepResult] = []
        try:
            dest_main = await self.dest_client.get_main_branch_name(project.key)
            snapshot = await run_step(
                steps,
                f"Extract [{dest_main}]",
                lambda: self.extractor.extract_all(project),
                fatal=True,
            )
            await run_step(
                steps,
                f"Upload scanner report [{dest_main}]",
                lambda: self._upload(snapshot, dest_main, dest_main),
                fatal=True,
            )
        except Exception as e:
            raise TransferError(
                f"Main branch transfer failed: {e}", project_key=project.key
            ) from e
        finally:
            result.steps.extend(steps)

        branch_stats = TransferStats.from_snapshot(snapshot)
        branch_stats.branches_transferred.append(dest_main)
        result.stats.add(branch_stats)

        sync_steps: list[StepResult] = []
        await self._sync_metadata(result, sync_steps, snapshot, dest_main, None, tracker)
        result.steps.extend(sync_steps)
        self._complete_branch(tracker, dest_main, sync_steps)
        return snapshot, dest_main

    async def _transfer_branch(
        self,
        branch: str,
        base: ProjectSnapshot,
        dest_main: str,
        result: ProjectResult,
        tracker: StateTracker,
    ) -> None:
        steps: list[StepResult] = []
        try:
            snapshot = await run_step(
                steps,
                f"Extract [{branch}]",
                lambda: self.extractor.extract_branch(branch, base),
                fatal=True,
            )
            await run_step(
                steps,
                f"Upload scanner report [{branch}]",
                lambda: self._upload(snapshot, branch, dest_main),
                fatal=True,
            )
            branch_stats = TransferStats.from_snapshot(snapshot)
            branch_stats.branches_transferred.append(branch)
            result.stats.add(branch_stats)

            await self._sync_metadata(result, steps, snapshot, branch, branch, tracker)
            self._complete_branch(tracker, branch, steps)
        except Exception as e:
            self._logger.error(
                "Failed to transfer branch, continuing with remaining branches",
                project=base.project.key,
                branch=branch,
                error=str(e),
            )
        finally:
            result.steps.extend(steps)

    def _pending_branches(self, project: Project, tracker: StateTracker) -> list[str]:
        log = self._logger.bind(project=project.key)
        if not self.context.config.transfer.sync_all_branches:
            return []

        pending = []
        for branch in project.branches:
            if branch.is_main:
                continue
            if not self.context.branch_allowed(project.key, branch.name):
                log.info("Branch excluded", branch=branch.name)
                continue
            if self.incremental and tracker.is_branch_completed(branch.name):
                log.info("Branch already completed, skipping", branch=branch.name)
                continue
            pending.append(branch.name)
        return pending

    async def transfer_project(
        self,
        project: Project,
        tracker: StateTracker,
        test_connections: bool = False,
    ) -> ProjectResult:
        """Transfer one project and all of its eligible branches.

        Args:
            project: Source project with its branches.
            tracker: State tracker bound to this project's state file.
            test_connections: Check both servers before doing any work.

        Returns:
            The finalized project result. A failure to discover the branches,
            to create the destination project or to transfer the main branch
            is reported as ``fatal_error``.
        """
        log = self._logger.bind(project=project.key)
        start = time.monotonic()
        result = ProjectResult(project_key=project.key, org_key=self.org.key)
        log.info("Starting project transfer")

        try:
            tracker.initialize()
            if project.extraction_error is not None:
                result.steps.append(
                    StepResult(
                        step="Discover branches",
                        status=StepStatus.FAILED,
                        error=project.extraction_error,
                    )
                )
                raise TransferError(
                    f"Branch discovery failed: {project.extraction_error}",
                    project_key=project.key,
                )
            if test_connections:
                await self._test_connections()
            name = await self._resolve_name(project)
            await run_step(
                result.steps,
                "Create project",
                lambda: self.dest_client.ensure_project(project.key, name),
                fatal=True,
                describe=lambda created: "created" if created else "already exists",
            )
            await self._migrate_config(project, result)
            base, dest_main = await self._transfer_main_branch(project, result, tracker)

            for branch in self._pending_branches(project, tracker):
                await self._transfer_branch(branch, base, dest_main, result, tracker)

            await run_step(
                result.steps,
                "Record sync state",
                lambda: tracker.record_transfer(result.stats),
            )
        except Exception as e:
            result.fatal_error = str(e)
            log.error("Project transfer failed", error=str(e))

        result.duration_ms = int((time.monotonic() - start) * 1000)
        result.finalize()
        log.info(
            "Project transfer finished",
            status=result.status.value,
            branches=result.branches_transferred,
        )
        return result
