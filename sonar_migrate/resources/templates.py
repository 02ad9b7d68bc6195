"""Permission templates and portfolios."""

from collections.abc import Collection, Sequence

from sonar_migrate.clients.sonarcloud import SonarCloudClient
from sonar_migrate.errors import PartialMigrationError
from sonar_migrate.models import (
    DefaultTemplate,
    PermissionTemplate,
    Portfolio,
)
from sonar_migrate.resources.base import (
    MigrationResult,
    MigrationSummary,
    ResourceMigrator,
)


class PermissionTemplateMigrator(ResourceMigrator[PermissionTemplate]):
    """Creates permission templates, their group grants and default associations."""

    def __init__(self, dest_client: SonarCloudClient) -> None:
        super().__init__(dest_client)
        # Source template id -> destination template id
        self.template_ids: dict[str, str] = {}

    @property
    def resource_name(self) -> str:
        return "Permission templates"

    def resource_id(self, resource: PermissionTemplate) -> str:
        return resource.name

    async def migrate_resource(self, resource: PermissionTemplate) -> str | None:
        created = await self.dest_client.create_permission_template(
            resource.name, resource.description, resource.project_key_pattern
        )
        dest_id = str(created.get("id") or "")
        if not dest_id:
            return None
        self.template_ids[resource.id] = dest_id

        failures = []
        for permission in resource.permissions:
            for group in permission.groups:
                try:
                    await self.dest_client.add_group_to_template(
                        dest_id, group, permission.key
                    )
                except Exception as e:
                    failures.append(f"{group} / {permission.key}: {e}")
        if failures:
            raise PartialMigrationError("Some group grants failed", dest_id, failures)
        return dest_id

    async def migrate_with_defaults(
        self,
        templates: Sequence[PermissionTemplate],
        default_templates: Sequence[DefaultTemplate],
    ) -> MigrationSummary:
        """Migrate templates, then mark the migrated defaults as default.

        A default that cannot be set is added to the summary as a failed item
        named ``default template (<qualifier>)``.
        """
        summary = await self.migrate_all(templates)
        for default in default_templates:
            dest_id = self.template_ids.get(default.template_id)
            if not dest_id:
                continue
            try:
                await self.dest_client.set_default_template(dest_id, default.qualifier)
            except Exception as e:
                self._logger.warning(
                    "Failed to set default template",
                    qualifier=default.qualifier,
                    error=str(e),
                )
                summary.results.append(
                    MigrationResult(
                        success=False,
                        source_id=f"default template ({default.qualifier})",
                        error=str(e),
                    )
                )
        return summary


class PortfolioMigrator(ResourceMigrator[Portfolio]):
    """Creates portfolios holding only projects migrated to this organization."""

    def __init__(
        self, dest_client: SonarCloudClient, migrated_project_keys: Collection[str]
    ) -> None:
        super().__init__(dest_client)
        self.migrated_project_keys = set(migrated_project_keys)

    @property
    def resource_name(self) -> str:
        return "Portfolios"

    def resource_id(self, resource: Portfolio) -> str:
        return resource.key

    def skip_reason(self, resource: Portfolio) -> str | None:
        if not any(m.key in self.migrated_project_keys for m in resource.projects):
            return "no member project migrated to this organization"
        return None

    async def migrate_resource(self, resource: Portfolio) -> str | None:
        await self.dest_client.create_portfolio(
            resource.key, resource.name, resource.description, resource.visibility
        )
        for member in resource.projects:
            if member.key not in self.migrated_project_keys:
                continue
            await self.dest_client.add_project_to_portfolio(resource.key, member.key)
        return resource.key
