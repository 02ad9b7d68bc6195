"""Groups and organization-level group permissions."""

from sonar_migrate.errors import MigrationError
from sonar_migrate.models import Group, GroupPermissions
from sonar_migrate.resources.base import ResourceMigrator

# Created by SonarCloud for every organization
SYSTEM_GROUPS = frozenset({"Anyone", "sonar-users", "sonar-administrators", "Members", "Owners"})


class GroupMigrator(ResourceMigrator[Group]):
    """Creates custom user groups. System groups are skipped."""

    @property
    def resource_name(self) -> str:
        return "Groups"

    def resource_id(self, resource: Group) -> str:
        return resource.name

    def skip_reason(self, resource: Group) -> str | None:
        if resource.name in SYSTEM_GROUPS or resource.default:
            return "system group"
        return None

    async def migrate_resource(self, resource: Group) -> str | None:
        created = await self.dest_client.create_group(resource.name, resource.description)
        return str(created.get("id") or resource.name)


class GlobalPermissionMigrator(ResourceMigrator[GroupPermissions]):
    """Grants organization-level permissions to groups.

    Each (group, permission) pair is granted separately; a group counts as
    failed if any of its grants failed.
    """

    @property
    def resource_name(self) -> str:
        return "Global permissions"

    def resource_id(self, resource: GroupPermissions) -> str:
        return resource.name

    async def migrate_resource(self, resource: GroupPermissions) -> str | None:
        failures = []
        for permission in resource.permissions:
            try:
                await self.dest_client.add_group_permission(resource.name, permission)
            except Exception as e:
                failures.append(f"{permission}: {e}")
        if failures:
            raise MigrationError("; ".join(failures))
        return resource.name
