"""Migration orchestrator for moving a SonarQube server into SonarCloud organizations."""

import asyncio
import json
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

import structlog

from sonar_migrate.clients.sonarcloud import SonarCloudClient
from sonar_migrate.clients.sonarqube import SonarQubeClient
from sonar_migrate.config import Config, TargetOrgConfig
from sonar_migrate.context import RunContext
from sonar_migrate.errors import ConfigurationError
from sonar_migrate.extraction import SonarQubeExtractor
from sonar_migrate.models import (
    ExtractionSnapshot,
    OrgAssignment,
    PermissionTemplates,
    Project,
    QualityProfile,
    ResourceMappings,
)
from sonar_migrate.overrides import (
    MappingData,
    apply_csv_overrides,
    load_directory,
    map_projects_to_organizations,
    map_resources_to_organizations,
    write_mapping_csvs,
)
from sonar_migrate.protocols import ReportPipeline, load_report_pipeline
from sonar_migrate.resilience import RemoteCallPolicy
from sonar_migrate.resources import (
    GlobalPermissionMigrator,
    GroupMigrator,
    MigrationSummary,
    PermissionTemplateMigrator,
    PortfolioMigrator,
    QualityGateMigrator,
    QualityProfileMigrator,
    classify_profile_diff,
    compare_quality_profiles,
    describe_profile_diff,
)
from sonar_migrate.results import (
    MigrationResults,
    OrgResult,
    ProjectResult,
    StepResult,
    StepStatus,
    run_step,
    skip_step,
)
from sonar_migrate.transfer import TransferPipeline

logger = structlog.get_logger(__name__)

DestClientFactory = Callable[[TargetOrgConfig], SonarCloudClient]


def _describe(summary: MigrationSummary) -> str:
    return summary.describe()


def _classify(summary: MigrationSummary) -> StepStatus:
    return summary.step_status


class MigrationOrchestrator:
    """Runs a full migration across every configured organization.

    Phases:
    - Connect to SonarQube and extract server-wide data
    - Map projects to organizations and apply mapping overrides
    - Dry run: write the mapping CSVs and stop
    - Per organization: organization-wide resources, projects, portfolios
    - Write the JSON report

    Failures are isolated to the smallest unit: a resource, a branch, a
    project or an organization.
    """

    def __init__(
        self,
        config: Config,
        report_pipeline: ReportPipeline | None = None,
        source_client: SonarQubeClient | None = None,
        extractor: SonarQubeExtractor | None = None,
        dest_client_factory: DestClientFactory | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Migration configuration.
            report_pipeline: Scanner report pipeline; loaded from
                ``config.report_pipeline`` when omitted.
            source_client: SonarQube client; built from configuration when omitted.
            extractor: Source extractor; built around the source client when omitted.
            dest_client_factory: Builds the client of one organization.
        """
        self.config = config
        self.context = RunContext.from_config(config)
        self._report_pipeline = report_pipeline
        self._source_client = source_client
        self._extractor = extractor
        self._dest_client_factory = dest_client_factory or self._default_dest_client
        self._logger = logger.bind(orchestrator=True)

    def _policy(self) -> RemoteCallPolicy:
        return RemoteCallPolicy.from_config(self.config.rate_limit)

    def _default_dest_client(self, org: TargetOrgConfig) -> SonarCloudClient:
        return SonarCloudClient.from_config(org, policy=self._policy())

    def _resolve_report_pipeline(self) -> ReportPipeline:
        if self._report_pipeline is not None:
            return self._report_pipeline
        if not self.config.report_pipeline:
            raise ConfigurationError(
                "No scanner report pipeline configured (set 'report_pipeline')"
            )
        self._report_pipeline = load_report_pipeline(self.config.report_pipeline)
        return self._report_pipeline

    async def migrate_all(self) -> MigrationResults:
        """Migrate everything from SonarQube to the configured organizations.

        Returns:
            Results of the run. The report is written to
            ``<output_dir>/reports/migration-report.json``, also when an
            unexpected error aborts the run; that error is listed in it.

        Raises:
            ConfigurationError: If no report pipeline is available for a real run.
        """
        results = MigrationResults(dry_run=self.context.dry_run)
        self._logger.info(
            "Starting migration",
            organizations=[org.key for org in self.config.organizations],
            dry_run=self.context.dry_run,
        )

        report_pipeline = None
        if not self.context.dry_run:
            report_pipeline = self._resolve_report_pipeline()

        source_client = self._source_client or SonarQubeClient.from_config(
            self.config.source, policy=self._policy()
        )
        try:
            snapshot = await self._extract(source_client, results)
            if snapshot is not None:
                await self._migrate(snapshot, source_client, report_pipeline, results)
        except Exception as e:
            self._logger.error("Migration aborted", error=str(e))
            results.errors.append({"step": "Migrate", "error": str(e)})
            raise
        finally:
            if self._source_client is None:
                await source_client.close()
            results.end_time = datetime.now().isoformat()
            results.write_report(self.context.reports_dir)

        self._logger.info("Migration completed", **results.summary())
        return results

    async def _extract(
        self, source_client: SonarQubeClient, results: MigrationResults
    ) -> ExtractionSnapshot | None:
        """Run the server-level steps. Returns None when a fatal one failed."""
        steps = results.server_steps
        extractor = self._extractor or SonarQubeExtractor(
            source_client, self.context.limits
        )
        try:
            await run_step(
                steps, "Connect to SonarQube", source_client.test_connection, fatal=True
            )
            projects: list[Project] = await run_step(
                steps,
                "Extract projects",
                extractor.extract_projects,
                fatal=True,
                describe=lambda found: f"{len(found)} projects",
            )
        except Exception as e:
            self._logger.error("Migration aborted", error=str(e))
            results.errors.append({"step": steps[-1].step, "error": str(e)})
            return None

        snapshot = ExtractionSnapshot(projects=projects)
        snapshot.project_bindings = (
            await run_step(
                steps,
                "Extract DevOps bindings",
                lambda: extractor.extract_bindings(projects),
                describe=lambda bound: f"{len(bound)} bound projects",
            )
            or {}
        )
        snapshot.quality_gates = (
            await run_step(steps, "Extract quality gates", extractor.extract_quality_gates)
            or []
        )
        if self.config.migrate.skip_quality_profile_sync:
            skip_step(steps, "Extract quality profiles", "disabled by configuration")
        else:
            snapshot.quality_profiles = (
                await run_step(
                    steps, "Extract quality profiles", extractor.extract_quality_profiles
                )
                or []
            )
        snapshot.groups = (
            await run_step(steps, "Extract groups", extractor.extract_groups) or []
        )
        snapshot.global_permissions = (
            await run_step(
                steps, "Extract global permissions", extractor.extract_global_permissions
            )
            or []
        )
        snapshot.permission_templates = (
            await run_step(
                steps,
                "Extract permission templates",
                extractor.extract_permission_templates,
            )
            or PermissionTemplates()
        )
        snapshot.portfolios = (
            await run_step(steps, "Extract portfolios", extractor.extract_portfolios)
            or []
        )
        self._extractor = extractor
        return snapshot

    def _map(
        self, snapshot: ExtractionSnapshot
    ) -> tuple[ExtractionSnapshot, list[OrgAssignment], ResourceMappings]:
        mapping = map_projects_to_organizations(
            snapshot.projects, snapshot.project_bindings, self.config.organizations
        )
        assignments = mapping.org_assignments

        mappings_dir = self.config.migrate.mappings_dir
        if mappings_dir is None:
            return (
                snapshot,
                assignments,
                map_resources_to_organizations(snapshot, assignments),
            )

        tables = load_directory(mappings_dir)
        self._logger.info(
            "Applying mapping overrides",
            mappings_dir=str(mappings_dir),
            tables=sorted(tables),
        )
        override = apply_csv_overrides(tables, snapshot, assignments)
        self.context.project_branch_includes = override.project_branch_includes
        return override.snapshot, override.assignments, override.resource_mappings

    async def _migrate(
        self,
        snapshot: ExtractionSnapshot,
        source_client: SonarQubeClient,
        report_pipeline: ReportPipeline | None,
        results: MigrationResults,
    ) -> None:
        snapshot, assignments, resource_mappings = self._map(snapshot)

        if self.context.dry_run:
            written = write_mapping_csvs(
                MappingData(
                    snapshot=snapshot,
                    assignments=assignments,
                    resource_mappings=resource_mappings,
                    project_bindings=snapshot.project_bindings,
                ),
                self.context.mappings_dir,
            )
            self._logger.info(
                "Dry run complete, review the mapping CSVs and rerun with them",
                mappings_dir=str(self.context.mappings_dir),
                files=len(written),
            )
            return

        for assignment in assignments:
            if not assignment.projects:
                self._logger.info("No projects for organization", org=assignment.org.key)
                continue
            org_result = await self._migrate_organization(
                assignment,
                snapshot,
                resource_mappings,
                source_client,
                report_pipeline,
                results,
            )
            results.org_results.append(org_result)

    async def _migrate_organization(
        self,
        assignment: OrgAssignment,
        snapshot: ExtractionSnapshot,
        resource_mappings: ResourceMappings,
        source_client: SonarQubeClient,
        report_pipeline: ReportPipeline,
        results: MigrationResults,
    ) -> OrgResult:
        org = assignment.org
        log = self._logger.bind(org=org.key)
        org_result = OrgResult(org_key=org.key)
        log.info("Migrating organization", projects=len(assignment.projects))

        client: SonarCloudClient | None = None
        try:
            try:
                client = self._dest_client_factory(org)
                await run_step(
                    org_result.steps,
                    "Connect to SonarCloud",
                    client.test_connection,
                    fatal=True,
                )
            except Exception as e:
                if not org_result.steps:
                    org_result.steps.append(
                        StepResult(
                            step="Connect to SonarCloud",
                            status=StepStatus.FAILED,
                            error=str(e),
                        )
                    )
                org_result.error = str(e)
                results.errors.append({"org": org.key, "error": str(e)})
                log.error("Skipping organization", error=str(e))
                return org_result

            await self._migrate_org_resources(
                client,
                source_client,
                org.key,
                snapshot,
                resource_mappings,
                org_result,
                results,
            )

            pipeline = TransferPipeline(
                self.context,
                self._extractor,
                client,
                report_pipeline,
                org,
                source_client=source_client,
                project_bindings=snapshot.project_bindings,
            )
            project_results = await self._migrate_projects(pipeline, assignment.projects)
            for project_result in project_results:
                results.record_project(project_result)
                if project_result.status != StepStatus.FAILED:
                    org_result.project_keys.append(project_result.project_key)

            summary = await self._resource_step(
                org_result,
                "Portfolios",
                lambda: PortfolioMigrator(client, org_result.project_keys).migrate_all(
                    resource_mappings.portfolios_by_org.get(org.key, [])
                ),
                results,
            )
            if summary is not None:
                results.portfolios += summary.migrated
        finally:
            if client is not None:
                await client.close()

        return org_result

    async def _resource_step(
        self,
        org_result: OrgResult,
        name: str,
        func: Callable[[], Awaitable[MigrationSummary]],
        results: MigrationResults,
    ) -> MigrationSummary | None:
        """Run one organization-wide migrator and report its failed items."""
        summary = await run_step(
            org_result.steps, name, func, describe=_describe, classify=_classify
        )
        if summary is not None and summary.errors():
            results.errors.append(
                {"org": org_result.org_key, "step": name, "failures": summary.errors()}
            )
        return summary

    def _write_profile_diff(self, org_key: str, report: dict[str, Any]) -> None:
        path = self.context.profile_diff_dir / org_key / "quality-profile-diff.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(report, indent=2))
        self._logger.info("Quality profile diff written", org=org_key, path=str(path))

    async def _compare_profiles(
        self,
        client: SonarCloudClient,
        source_client: SonarQubeClient,
        org_key: str,
        profiles: list[QualityProfile],
    ) -> dict[str, Any]:
        report = await compare_quality_profiles(profiles, source_client, client)
        self._write_profile_diff(org_key, report)
        return report

    async def _migrate_org_resources(
        self,
        client: SonarCloudClient,
        source_client: SonarQubeClient,
        org_key: str,
        snapshot: ExtractionSnapshot,
        resource_mappings: ResourceMappings,
        org_result: OrgResult,
        results: MigrationResults,
    ) -> None:
        """Organization-wide steps, each recorded and none fatal."""
        groups = await self._resource_step(
            org_result,
            "Groups",
            lambda: GroupMigrator(client).migrate_all(
                resource_mappings.groups_by_org.get(org_key, [])
            ),
            results,
        )
        if groups is not None:
            results.groups += groups.migrated

        await self._resource_step(
            org_result,
            "Global permissions",
            lambda: GlobalPermissionMigrator(client).migrate_all(
                snapshot.global_permissions
            ),
            results,
        )

        gates = await self._resource_step(
            org_result,
            "Quality gates",
            lambda: QualityGateMigrator(client).migrate_all(
                resource_mappings.gates_by_org.get(org_key, [])
            ),
            results,
        )
        if gates is not None:
            results.quality_gates += gates.migrated

        if self.config.migrate.skip_quality_profile_sync:
            skip_step(org_result.steps, "Quality profiles", "disabled by configuration")
            skip_step(
                org_result.steps, "Compare quality profiles", "disabled by configuration"
            )
        else:
            org_profiles = resource_mappings.profiles_by_org.get(org_key, [])
            profiles = await self._resource_step(
                org_result,
                "Quality profiles",
                lambda: QualityProfileMigrator(client).migrate_all(org_profiles),
                results,
            )
            if profiles is not None:
                results.quality_profiles += profiles.migrated
            await run_step(
                org_result.steps,
                "Compare quality profiles",
                lambda: self._compare_profiles(
                    client, source_client, org_key, org_profiles
                ),
                describe=describe_profile_diff,
                classify=classify_profile_diff,
            )

        await self._resource_step(
            org_result,
            "Permission templates",
            lambda: PermissionTemplateMigrator(client).migrate_with_defaults(
                resource_mappings.templates_by_org.get(org_key, []),
                snapshot.permission_templates.default_templates,
            ),
            results,
        )

    async def _migrate_projects(
        self, pipeline: TransferPipeline, projects: list[Project]
    ) -> list[ProjectResult]:
        """Transfer projects with at most ``project_migration`` running at once."""
        semaphore = self.context.limits.project_migration

        async def migrate_one(project: Project) -> ProjectResult:
            async with semaphore:
                tracker = self.context.state_tracker_for(project.key)
                return await pipeline.transfer_project(project, tracker)

        return list(await asyncio.gather(*(migrate_one(p) for p in projects)))
