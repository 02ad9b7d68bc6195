"""Re-apply operator-edited mapping CSVs to a fresh extraction.

``apply_csv_overrides`` deep-copies its inputs once and the per-table helpers
work on that copy, so the caller's snapshot and assignments are left untouched.
"""

from collections.abc import Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass, field

import structlog

from sonar_migrate.models import (
    ExtractionSnapshot,
    Group,
    GroupPermissions,
    OrgAssignment,
    PermissionTemplate,
    PermissionTemplates,
    Portfolio,
    PortfolioMember,
    QualityGate,
    QualityProfile,
    ResourceMappings,
    TemplatePermission,
)
from sonar_migrate.overrides.csv_store import (
    GATE_MAPPINGS_CSV,
    GLOBAL_PERMISSIONS_CSV,
    GROUP_MAPPINGS_CSV,
    INCLUDE_COLUMN,
    PORTFOLIO_MAPPINGS_CSV,
    PROFILE_MAPPINGS_CSV,
    PROJECTS_CSV,
    TEMPLATE_MAPPINGS_CSV,
    OverrideTable,
    is_included,
)
from sonar_migrate.overrides.org_mapper import map_resources_to_organizations

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class OverrideResult:
    """Filtered copies produced by :func:`apply_csv_overrides`."""

    snapshot: ExtractionSnapshot
    assignments: list[OrgAssignment]
    resource_mappings: ResourceMappings
    project_branch_includes: dict[str, set[str]] = field(default_factory=dict)


def _excluded(table: OverrideTable, *columns: str) -> set[tuple[str, ...]]:
    return {
        tuple(row.get(c, "") for c in columns)
        for row in table.rows
        if not is_included(row.get(INCLUDE_COLUMN))
    }


def apply_projects_table(
    table: OverrideTable, assignments: list[OrgAssignment]
) -> tuple[set[str], dict[str, set[str]]]:
    """Work out excluded projects and per-project branch include-sets.

    Returns:
        Tuple of (excluded project keys, branch include-set per project key).
        Only projects with at least one excluded branch get an include-set.
    """
    excluded_keys: set[str] = set()
    branch_includes: dict[str, set[str]] = {}

    if not table.has_column("Branch"):
        excluded_keys = {key for (key,) in _excluded(table, "Project Key")}
    else:
        for project_key, rows in table.group_by("Project Key").items():
            included: set[str] = set()
            excluded: set[str] = set()
            # Rows without a branch name decide for the project as a whole
            project_row_included = False
            for row in rows:
                branch = row.get("Branch", "")
                row_included = is_included(row.get(INCLUDE_COLUMN))
                if not branch:
                    project_row_included = project_row_included or row_included
                elif row_included:
                    included.add(branch)
                else:
                    excluded.add(branch)
            if not included and not project_row_included:
                excluded_keys.add(project_key)
            elif included and excluded:
                branch_includes[project_key] = included

    if excluded_keys:
        logger.info(
            "Excluding projects from mapping overrides",
            count=len(excluded_keys),
            projects=sorted(excluded_keys),
        )
        for assignment in assignments:
            assignment.projects = [
                p for p in assignment.projects if p.key not in excluded_keys
            ]
            for group in assignment.binding_groups:
                group.projects = [
                    p for p in group.projects if p.key not in excluded_keys
                ]
    if branch_includes:
        logger.info(
            "Branch-level filtering from mapping overrides",
            projects=len(branch_includes),
        )
    return excluded_keys, branch_includes


def apply_gate_table(
    table: OverrideTable, gates: list[QualityGate]
) -> list[QualityGate]:
    excluded = {name for (name,) in _excluded(table, "Gate Name")}
    if excluded:
        logger.info("Excluding quality gates", gates=sorted(excluded))
    return [g for g in gates if g.name not in excluded]


def apply_profile_table(
    table: OverrideTable, profiles: list[QualityProfile]
) -> list[QualityProfile]:
    """Filter quality profiles by (name, language)."""
    excluded = _excluded(table, "Profile Name", "Language")
    if excluded:
        logger.info("Excluding quality profiles", count=len(excluded))
    return [p for p in profiles if (p.name, p.language) not in excluded]


def apply_group_table(table: OverrideTable, groups: list[Group]) -> list[Group]:
    excluded = {name for (name,) in _excluded(table, "Group Name")}
    if excluded:
        logger.info("Excluding groups", groups=sorted(excluded))
    return [g for g in groups if g.name not in excluded]


def apply_global_permissions_table(
    table: OverrideTable, permissions: list[GroupPermissions]
) -> list[GroupPermissions]:
    """Drop excluded (group, permission) pairs, then groups left with none."""
    excluded = _excluded(table, "Group Name", "Permission")
    if not excluded:
        return list(permissions)

    logger.info("Excluding global permission assignments", count=len(excluded))
    result = []
    for group in permissions:
        kept = [p for p in group.permissions if (group.name, p) not in excluded]
        if kept:
            result.append(GroupPermissions(name=group.name, permissions=kept))
    return result


def apply_template_table(
    table: OverrideTable, templates: PermissionTemplates
) -> PermissionTemplates:
    """Filter permission templates using header and detail rows.

    A header row (empty ``Permission Key``) marked excluded drops the template.
    Otherwise its permissions are rebuilt from the included detail rows.
    Templates the file does not mention are kept unchanged.
    """
    rows_by_name = table.group_by("Template Name")
    kept: list[PermissionTemplate] = []
    dropped = 0

    for template in templates.templates:
        rows = rows_by_name.get(template.name)
        if rows is None:
            kept.append(template)
            continue

        header = next((r for r in rows if not r.get("Permission Key")), None)
        if header is not None and not is_included(header.get(INCLUDE_COLUMN)):
            dropped += 1
            continue

        groups_by_key: dict[str, list[str]] = {}
        for row in rows:
            key = row.get("Permission Key")
            if not key or not is_included(row.get(INCLUDE_COLUMN)):
                continue
            groups_by_key.setdefault(key, []).append(row.get("Group Name", ""))

        kept.append(
            PermissionTemplate(
                id=template.id,
                name=template.name,
                description=template.description,
                project_key_pattern=template.project_key_pattern,
                permissions=[
                    TemplatePermission(key=key, groups=groups)
                    for key, groups in groups_by_key.items()
                ],
            )
        )

    if dropped:
        logger.info("Excluding permission templates", count=dropped)

    kept_ids = {t.id for t in kept}
    known_ids = {t.id for t in templates.templates}
    defaults = [
        d
        for d in templates.default_templates
        if d.template_id not in known_ids or d.template_id in kept_ids
    ]
    return PermissionTemplates(templates=kept, default_templates=defaults)


def apply_portfolio_table(
    table: OverrideTable, portfolios: list[Portfolio]
) -> list[Portfolio]:
    """Filter portfolios using header and detail rows.

    A header row (empty ``Member Project Key``) marked excluded drops the
    portfolio. Otherwise its members are rebuilt from the included detail
    rows. Portfolios the file does not mention are kept unchanged.
    """
    rows_by_key = table.group_by("Portfolio Key")
    result: list[Portfolio] = []
    dropped = 0

    for portfolio in portfolios:
        rows = rows_by_key.get(portfolio.key)
        if rows is None:
            result.append(portfolio)
            continue

        header = next((r for r in rows if not r.get("Member Project Key")), None)
        if header is not None and not is_included(header.get(INCLUDE_COLUMN)):
            dropped += 1
            continue

        members = [
            PortfolioMember(
                key=row["Member Project Key"], name=row.get("Member Project Name", "")
            )
            for row in rows
            if row.get("Member Project Key") and is_included(row.get(INCLUDE_COLUMN))
        ]
        result.append(
            Portfolio(
                key=portfolio.key,
                name=portfolio.name,
                description=portfolio.description,
                visibility=portfolio.visibility,
                projects=members,
            )
        )

    if dropped:
        logger.info("Excluding portfolios", count=dropped)
    return result


def apply_csv_overrides(
    tables: Mapping[str, OverrideTable],
    snapshot: ExtractionSnapshot,
    assignments: Sequence[OrgAssignment],
) -> OverrideResult:
    """Apply mapping override tables to an extraction and its org assignments.

    Tables are applied independently and only when present. The inputs are
    never modified; the result shares no mutable state with them. Resource
    mappings are recomputed from the filtered data.

    Args:
        tables: Parsed CSVs keyed by file name, as returned by ``load_directory``.
        snapshot: Server-wide extraction for this run.
        assignments: Output of ``map_projects_to_organizations``.

    Returns:
        Filtered snapshot, filtered assignments, fresh resource mappings and
        the per-project branch include-sets.
    """
    filtered = deepcopy(snapshot)
    filtered_assignments = deepcopy(list(assignments))
    branch_includes: dict[str, set[str]] = {}

    if PROJECTS_CSV in tables:
        excluded_keys, branch_includes = apply_projects_table(
            tables[PROJECTS_CSV], filtered_assignments
        )
        filtered.projects = [p for p in filtered.projects if p.key not in excluded_keys]
    if GATE_MAPPINGS_CSV in tables:
        filtered.quality_gates = apply_gate_table(
            tables[GATE_MAPPINGS_CSV], filtered.quality_gates
        )
    if PROFILE_MAPPINGS_CSV in tables:
        filtered.quality_profiles = apply_profile_table(
            tables[PROFILE_MAPPINGS_CSV], filtered.quality_profiles
        )
    if GROUP_MAPPINGS_CSV in tables:
        filtered.groups = apply_group_table(tables[GROUP_MAPPINGS_CSV], filtered.groups)
    if GLOBAL_PERMISSIONS_CSV in tables:
        filtered.global_permissions = apply_global_permissions_table(
            tables[GLOBAL_PERMISSIONS_CSV], filtered.global_permissions
        )
    if TEMPLATE_MAPPINGS_CSV in tables:
        filtered.permission_templates = apply_template_table(
            tables[TEMPLATE_MAPPINGS_CSV], filtered.permission_templates
        )
    if PORTFOLIO_MAPPINGS_CSV in tables:
        filtered.portfolios = apply_portfolio_table(
            tables[PORTFOLIO_MAPPINGS_CSV], filtered.portfolios
        )

    return OverrideResult(
        snapshot=filtered,
        assignments=filtered_assignments,
        resource_mappings=map_resources_to_organizations(
            filtered, filtered_assignments
        ),
        project_branch_includes=branch_includes,
    )
