"""Project configuration replayed onto a destination project."""

from collections.abc import Awaitable, Callable, Sequence
from functools import partial
from typing import Any

import structlog

from sonar_migrate.clients.sonarcloud import SonarCloudClient
from sonar_migrate.models import Binding, NewCodePeriod, ProjectConfig
from sonar_migrate.resources.base import MigrationResult, MigrationSummary
from sonar_migrate.resources.groups import SYSTEM_GROUPS

logger = structlog.get_logger(__name__)

# SonarCloud has no new code period endpoints, only this setting
NEW_CODE_PERIOD_SETTING = "sonar.leak.period"

Change = tuple[str, Callable[[], Awaitable[Any]]]


def new_code_period_value(period: NewCodePeriod) -> str | None:
    """Value of ``sonar.leak.period`` for a SonarQube definition, if it has one."""
    if period.type == "NUMBER_OF_DAYS":
        return period.value
    if period.type == "PREVIOUS_VERSION":
        return "previous_version"
    return None


class ProjectConfigMigrator:
    """Applies one project's configuration to its destination project.

    Each method returns a :class:`MigrationSummary` with one result per
    change, so a failing change never stops the others.
    """

    def __init__(self, dest_client: SonarCloudClient, project_key: str) -> None:
        self.dest_client = dest_client
        self.project_key = project_key
        self._logger = logger.bind(org=dest_client.organization, project=project_key)

    async def _apply(
        self,
        name: str,
        changes: Sequence[Change],
        skipped: Sequence[tuple[str, str]] = (),
    ) -> MigrationSummary:
        summary = MigrationSummary(resource_name=name)
        for source_id, reason in skipped:
            summary.results.append(
                MigrationResult(
                    success=True,
                    source_id=source_id,
                    skipped=True,
                    metadata={"skip_reason": reason},
                )
            )
        for source_id, change in changes:
            try:
                await change()
            except Exception as e:
                self._logger.warning(f"Failed to apply {name}", item=source_id, error=str(e))
                summary.results.append(
                    MigrationResult(success=False, source_id=source_id, error=str(e))
                )
                continue
            summary.results.append(MigrationResult(success=True, source_id=source_id))
        return summary

    async def assign_quality_gate(self, config: ProjectConfig) -> MigrationSummary:
        changes = []
        if config.quality_gate:
            changes.append(
                (
                    config.quality_gate,
                    partial(
                        self.dest_client.assign_quality_gate,
                        self.project_key,
                        config.quality_gate,
                    ),
                )
            )
        return await self._apply("quality gate", changes)

    async def assign_quality_profiles(self, config: ProjectConfig) -> MigrationSummary:
        changes = [
            (
                f"{name} ({language})",
                partial(
                    self.dest_client.add_quality_profile_to_project,
                    self.project_key,
                    language,
                    name,
                ),
            )
            for language, name in sorted(config.quality_profiles.items())
        ]
        return await self._apply("quality profiles", changes)

    async def migrate_permissions(self, config: ProjectConfig) -> MigrationSummary:
        """Grant each (group, permission) pair; system groups are left alone."""
        changes: list[Change] = []
        skipped = []
        for group in config.permissions:
            if group.name in SYSTEM_GROUPS:
                skipped.append((group.name, "system group"))
                continue
            for permission in group.permissions:
                changes.append(
                    (
                        f"{group.name}: {permission}",
                        partial(
                            self.dest_client.add_group_permission,
                            group.name,
                            permission,
                            project_key=self.project_key,
                        ),
                    )
                )
        return await self._apply("project permissions", changes, skipped)

    async def migrate_settings(self, config: ProjectConfig) -> MigrationSummary:
        changes = []
        for setting in config.settings:
            value = setting.value or ",".join(setting.values)
            if not value:
                continue
            changes.append(
                (
                    setting.key,
                    partial(
                        self.dest_client.set_project_setting,
                        self.project_key,
                        setting.key,
                        value,
                    ),
                )
            )
        return await self._apply("project settings", changes)

    async def migrate_tags(self, config: ProjectConfig) -> MigrationSummary:
        changes = []
        if config.tags:
            changes.append(
                (
                    ",".join(config.tags),
                    partial(self.dest_client.set_project_tags, self.project_key, config.tags),
                )
            )
        return await self._apply("project tags", changes)

    async def migrate_links(self, config: ProjectConfig) -> MigrationSummary:
        changes = [
            (
                link.name,
                partial(
                    self.dest_client.create_project_link,
                    self.project_key,
                    link.name,
                    link.url,
                ),
            )
            for link in config.links
        ]
        return await self._apply("project links", changes)

    async def migrate_new_code_period(self, config: ProjectConfig) -> MigrationSummary:
        period = config.new_code_period
        changes = []
        skipped = []
        if period is not None:
            value = new_code_period_value(period)
            if value is None:
                skipped.append((period.type, "not supported by SonarCloud"))
            else:
                changes.append(
                    (
                        period.type,
                        partial(
                            self.dest_client.set_project_setting,
                            self.project_key,
                            NEW_CODE_PERIOD_SETTING,
                            value,
                        ),
                    )
                )
        return await self._apply("new code definition", changes, skipped)

    async def migrate_binding(self, binding: Binding | None) -> MigrationSummary:
        changes = []
        if binding is not None:
            changes.append(
                (
                    f"{binding.alm}:{binding.repository}",
                    partial(self.dest_client.set_devops_binding, self.project_key, binding),
                )
            )
        return await self._apply("DevOps binding", changes)
