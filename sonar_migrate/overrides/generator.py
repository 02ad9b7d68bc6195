"""Dry-run mapping CSV generation.

Every file starts with an ``Include`` column set to ``yes`` so that feeding an
unedited dry-run output back into a migration changes nothing.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from sonar_migrate.models import (
    Binding,
    ExtractionSnapshot,
    OrgAssignment,
    ResourceMappings,
)
from sonar_migrate.overrides.csv_store import (
    GATE_MAPPINGS_CSV,
    GLOBAL_PERMISSIONS_CSV,
    GROUP_MAPPINGS_CSV,
    ORGANIZATIONS_CSV,
    PORTFOLIO_MAPPINGS_CSV,
    PROFILE_MAPPINGS_CSV,
    PROJECTS_CSV,
    TEMPLATE_MAPPINGS_CSV,
    write_csv,
)

logger = structlog.get_logger(__name__)

INCLUDED = "yes"
NO_BINDING = "(no binding)"

Rows = list[Sequence[Any]]


@dataclass(slots=True)
class MappingData:
    """Everything the generator needs from one dry run."""

    snapshot: ExtractionSnapshot
    assignments: list[OrgAssignment]
    resource_mappings: ResourceMappings
    project_bindings: Mapping[str, Binding] = field(default_factory=dict)


def organizations_rows(data: MappingData) -> Rows:
    rows: Rows = [
        [
            "Include",
            "Target Organization",
            "Binding Group",
            "ALM Platform",
            "Projects Count",
        ]
    ]
    for assignment in data.assignments:
        for group in assignment.binding_groups:
            rows.append(
                [INCLUDED, assignment.org.key, group.identifier, group.alm, len(group.projects)]
            )
        bound = {p.key for g in assignment.binding_groups for p in g.projects}
        unbound = [p for p in assignment.projects if p.key not in bound]
        if unbound:
            rows.append([INCLUDED, assignment.org.key, NO_BINDING, "none", len(unbound)])
    return rows


def projects_rows(data: MappingData) -> Rows:
    """One row per branch; projects without branch data get one project row."""
    rows: Rows = [
        [
            "Include",
            "Project Key",
            "Project Name",
            "Branch",
            "Is Main",
            "Target Organization",
            "ALM Platform",
            "Repository",
            "Visibility",
            "Last Analysis",
        ]
    ]
    for assignment in data.assignments:
        for project in assignment.projects:
            binding = data.project_bindings.get(project.key)
            common = [
                assignment.org.key,
                binding.alm if binding else "none",
                binding.repository if binding else "",
                project.visibility or "public",
                project.last_analysis_date or "",
            ]
            name = project.name or project.key
            if not project.branches:
                rows.append([INCLUDED, project.key, name, "", "", *common])
                continue
            for branch in project.branches:
                rows.append(
                    [INCLUDED, project.key, name, branch.name, branch.is_main, *common]
                )
    return rows


def gate_rows(data: MappingData) -> Rows:
    rows: Rows = [
        [
            "Include",
            "Gate Name",
            "Is Default",
            "Is Built-In",
            "Conditions Count",
            "Target Organization",
        ]
    ]
    for org_key, gates in data.resource_mappings.gates_by_org.items():
        for gate in gates:
            rows.append(
                [
                    INCLUDED,
                    gate.name,
                    gate.is_default,
                    gate.is_built_in,
                    len(gate.conditions),
                    org_key,
                ]
            )
    return rows


def profile_rows(data: MappingData) -> Rows:
    rows: Rows = [
        [
            "Include",
            "Profile Name",
            "Language",
            "Is Default",
            "Parent",
            "Active Rules",
            "Target Organization",
        ]
    ]
    for org_key, profiles in data.resource_mappings.profiles_by_org.items():
        for profile in profiles:
            rows.append(
                [
                    INCLUDED,
                    profile.name,
                    profile.language,
                    profile.is_default,
                    profile.parent_name or "",
                    profile.active_rule_count,
                    org_key,
                ]
            )
    return rows


def group_rows(data: MappingData) -> Rows:
    rows: Rows = [["Include", "Group Name", "Description", "Target Organization"]]
    for org_key, groups in data.resource_mappings.groups_by_org.items():
        for group in groups:
            rows.append([INCLUDED, group.name, group.description or "", org_key])
    return rows


def global_permission_rows(data: MappingData) -> Rows:
    rows: Rows = [["Include", "Group Name", "Permission"]]
    for group in data.snapshot.global_permissions:
        for permission in group.permissions:
            rows.append([INCLUDED, group.name, permission])
    return rows


def template_rows(data: MappingData) -> Rows:
    """Header row per template followed by one row per (permission, group)."""
    rows: Rows = [
        [
            "Include",
            "Template Name",
            "Description",
            "Key Pattern",
            "Permission Key",
            "Group Name",
        ]
    ]
    for template in data.snapshot.permission_templates.templates:
        rows.append(
            [
                INCLUDED,
                template.name,
                template.description or "",
                template.project_key_pattern or "",
                "",
                "",
            ]
        )
        for permission in template.permissions:
            for group in permission.groups:
                rows.append([INCLUDED, template.name, "", "", permission.key, group])
    return rows


def portfolio_rows(data: MappingData) -> Rows:
    """Header row per portfolio followed by one row per member project."""
    rows: Rows = [
        [
            "Include",
            "Portfolio Key",
            "Portfolio Name",
            "Member Project Key",
            "Member Project Name",
        ]
    ]
    for portfolio in data.snapshot.portfolios:
        rows.append([INCLUDED, portfolio.key, portfolio.name, "", ""])
        for member in portfolio.projects:
            rows.append([INCLUDED, portfolio.key, portfolio.name, member.key, member.name])
    return rows


GENERATORS = (
    (ORGANIZATIONS_CSV, organizations_rows),
    (PROJECTS_CSV, projects_rows),
    (GROUP_MAPPINGS_CSV, group_rows),
    (PROFILE_MAPPINGS_CSV, profile_rows),
    (GATE_MAPPINGS_CSV, gate_rows),
    (PORTFOLIO_MAPPINGS_CSV, portfolio_rows),
    (TEMPLATE_MAPPINGS_CSV, template_rows),
    (GLOBAL_PERMISSIONS_CSV, global_permission_rows),
)


def write_mapping_csvs(data: MappingData, output_dir: Path) -> list[Path]:
    """Write every mapping CSV into ``output_dir``.

    Args:
        data: Snapshot, assignments and resource mappings of the dry run.
        output_dir: Target directory, created if missing.

    Returns:
        Paths of the written files.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    written = []
    for file_name, build_rows in GENERATORS:
        path = output_dir / file_name
        path.write_text(write_csv(build_rows(data)), encoding="utf-8")
        logger.debug("Generated mapping file", file=str(path))
        written.append(path)

    logger.info("Generated mapping CSVs", output_dir=str(output_dir), files=len(written))
    return written
