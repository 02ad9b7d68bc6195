"""Assignment of projects and server-wide resources to destination organizations."""

from collections.abc import Mapping, Sequence

import structlog

from sonar_migrate.config import TargetOrgConfig
from sonar_migrate.errors import ConfigurationError
from sonar_migrate.models import (
    Binding,
    BindingGroup,
    ExtractionSnapshot,
    OrgAssignment,
    OrgMapping,
    Project,
    ResourceMappings,
)

logger = structlog.get_logger(__name__)


def _owner_segment(identifier: str) -> str:
    parts = identifier.split("/")
    return parts[0] if len(parts) > 1 else identifier


def build_binding_group_key(binding: Binding) -> str:
    """Derive the key grouping projects of one DevOps organization.

    GitHub and GitLab repositories group by owner (``org/repo`` gives
    ``github:org``), Bitbucket by workspace taken from the slug, Azure DevOps
    by repository name. Identifiers without a ``/`` are used whole.
    """
    repo = binding.repository or binding.slug or ""
    alm = binding.alm

    if alm in ("github", "gitlab"):
        return f"{alm}:{_owner_segment(repo)}"
    if alm == "azure":
        return f"azure:{binding.repository or binding.slug or 'default'}"
    if alm in ("bitbucket", "bitbucketcloud"):
        return f"bitbucket:{_owner_segment(binding.slug or repo)}"
    return f"{alm}:{repo}"


def map_projects_to_organizations(
    projects: Sequence[Project],
    bindings: Mapping[str, Binding],
    target_orgs: Sequence[TargetOrgConfig],
) -> OrgMapping:
    """Partition projects across the configured destination organizations.

    Args:
        projects: Every project discovered on the source server.
        bindings: DevOps binding per project key; unbound projects are absent.
        target_orgs: Destination organizations in configuration order.

    Returns:
        The binding groups, the unbound projects and one assignment per
        organization. Every project lands in exactly one assignment.

    Raises:
        ConfigurationError: If no destination organization is configured.
    """
    if not target_orgs:
        raise ConfigurationError("At least one target organization is required")

    binding_groups: dict[str, BindingGroup] = {}
    unbound_projects: list[Project] = []

    for project in projects:
        binding = bindings.get(project.key)
        if binding is None:
            unbound_projects.append(project)
            continue
        group_key = build_binding_group_key(binding)
        group = binding_groups.get(group_key)
        if group is None:
            group = BindingGroup(
                alm=binding.alm, identifier=group_key, url=binding.url or ""
            )
            binding_groups[group_key] = group
        group.projects.append(project)

    logger.info(
        "Grouped projects by DevOps binding",
        binding_groups=len(binding_groups),
        unbound_projects=len(unbound_projects),
    )

    if len(target_orgs) == 1:
        assignments = [
            OrgAssignment(
                org=target_orgs[0],
                projects=list(projects),
                binding_groups=list(binding_groups.values()),
            )
        ]
        return OrgMapping(
            binding_groups=list(binding_groups.values()),
            unbound_projects=unbound_projects,
            org_assignments=assignments,
        )

    by_key = {org.key: OrgAssignment(org=org) for org in target_orgs}
    default_org = target_orgs[0]

    for group_key, group in binding_groups.items():
        lowered = group_key.lower()
        target = next(
            (org for org in target_orgs if org.key.lower() in lowered), None
        )
        if target is None:
            logger.warning(
                "Binding group matches no organization, using default",
                binding_group=group_key,
                org=default_org.key,
                projects=len(group.projects),
            )
            target = default_org
        by_key[target.key].projects.extend(group.projects)
        by_key[target.key].binding_groups.append(group)

    if unbound_projects:
        by_key[default_org.key].projects.extend(unbound_projects)

    return OrgMapping(
        binding_groups=list(binding_groups.values()),
        unbound_projects=unbound_projects,
        org_assignments=[by_key[org.key] for org in target_orgs],
    )


def map_resources_to_organizations(
    snapshot: ExtractionSnapshot, assignments: Sequence[OrgAssignment]
) -> ResourceMappings:
    """Decide which server-wide resources each organization needs.

    Quality gates, quality profiles, groups and permission templates are
    copied to every organization. A portfolio goes to each organization that
    received at least one of its member projects.
    """
    mappings = ResourceMappings()

    for assignment in assignments:
        org_key = assignment.org.key
        mappings.gates_by_org[org_key] = list(snapshot.quality_gates)
        mappings.profiles_by_org[org_key] = list(snapshot.quality_profiles)
        mappings.groups_by_org[org_key] = list(snapshot.groups)
        mappings.templates_by_org[org_key] = list(
            snapshot.permission_templates.templates
        )
        project_keys = assignment.project_keys
        mappings.portfolios_by_org[org_key] = [
            portfolio
            for portfolio in snapshot.portfolios
            if any(member.key in project_keys for member in portfolio.projects)
        ]

    return mappings
