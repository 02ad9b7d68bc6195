"""Value types for extracted SonarQube data and organization assignments."""

from dataclasses import dataclass, field
from typing import Any

from sonar_migrate.config import TargetOrgConfig
from sonar_migrate.errors import ValidationError


@dataclass(slots=True)
class Branch:
    """A branch of a SonarQube project."""

    name: str
    is_main: bool = False
    analysis_date: str | None = None


@dataclass(slots=True)
class Binding:
    """DevOps platform binding of a project (GitHub, GitLab, Azure, Bitbucket)."""

    alm: str
    repository: str = ""
    slug: str = ""
    url: str = ""
    monorepo: bool = False
    # ALM setting key on the source server
    setting_key: str = ""


@dataclass(slots=True)
class Project:
    """Project metadata with its branches."""

    key: str
    name: str = ""
    visibility: str = "public"
    last_analysis_date: str | None = None
    branches: list[Branch] = field(default_factory=list)
    # Set when the branches could not be read or validated
    extraction_error: str | None = None

    @property
    def main_branch(self) -> Branch | None:
        for branch in self.branches:
            if branch.is_main:
                return branch
        return None

    def validate_branches(self) -> None:
        """Check that exactly one branch is main and branch names are unique.

        A project without any branch information is accepted.

        Raises:
            ValidationError: If the branch list violates either rule.
        """
        if not self.branches:
            return
        errors = []
        main_count = sum(1 for b in self.branches if b.is_main)
        if main_count != 1:
            errors.append(f"expected exactly one main branch, found {main_count}")
        names = [b.name for b in self.branches]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            errors.append(f"duplicate branch names: {', '.join(duplicates)}")
        if errors:
            raise ValidationError(
                f"Invalid branches for project {self.key}: {'; '.join(errors)}",
                errors,
            )


@dataclass(slots=True)
class Comment:
    login: str = ""
    created_at: str = ""
    markdown: str = ""


@dataclass(slots=True)
class Issue:
    """An issue as seen on either server."""

    key: str
    rule: str
    component: str
    line: int | None = None
    status: str = "OPEN"
    resolution: str | None = None
    assignee: str | None = None
    tags: list[str] = field(default_factory=list)
    comments: list[Comment] = field(default_factory=list)


@dataclass(slots=True)
class Hotspot:
    """A security hotspot as seen on either server."""

    key: str
    rule: str
    component: str
    line: int | None = None
    status: str = "TO_REVIEW"
    resolution: str | None = None
    comments: list[Comment] = field(default_factory=list)


@dataclass(slots=True)
class QualityGate:
    name: str
    is_default: bool = False
    is_built_in: bool = False
    conditions: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class QualityProfile:
    """A quality profile; ``backup`` holds the XML used for restoring it."""

    name: str
    language: str
    key: str = ""
    is_default: bool = False
    is_built_in: bool = False
    parent_name: str | None = None
    active_rule_count: int = 0
    backup: str | None = None


@dataclass(slots=True)
class Group:
    name: str
    description: str = ""
    default: bool = False


@dataclass(slots=True)
class GroupPermissions:
    """Permissions granted to one group, server-wide or on one project."""

    name: str
    permissions: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TemplatePermission:
    key: str
    groups: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PermissionTemplate:
    id: str
    name: str
    description: str = ""
    project_key_pattern: str = ""
    permissions: list[TemplatePermission] = field(default_factory=list)


@dataclass(slots=True)
class DefaultTemplate:
    template_id: str
    qualifier: str = "TRK"


@dataclass(slots=True)
class PermissionTemplates:
    templates: list[PermissionTemplate] = field(default_factory=list)
    default_templates: list[DefaultTemplate] = field(default_factory=list)


@dataclass(slots=True)
class PortfolioMember:
    key: str
    name: str = ""


@dataclass(slots=True)
class Portfolio:
    key: str
    name: str
    description: str = ""
    visibility: str = "public"
    projects: list[PortfolioMember] = field(default_factory=list)


@dataclass(slots=True)
class ExtractionSnapshot:
    """Server-wide data extracted from SonarQube for one run.

    Treated as immutable once extraction finishes; filtering produces a new
    snapshot instead of editing this one.
    """

    projects: list[Project] = field(default_factory=list)
    project_bindings: dict[str, Binding] = field(default_factory=dict)
    quality_gates: list[QualityGate] = field(default_factory=list)
    quality_profiles: list[QualityProfile] = field(default_factory=list)
    groups: list[Group] = field(default_factory=list)
    global_permissions: list[GroupPermissions] = field(default_factory=list)
    permission_templates: PermissionTemplates = field(
        default_factory=PermissionTemplates
    )
    portfolios: list[Portfolio] = field(default_factory=list)

    def project(self, key: str) -> Project | None:
        for project in self.projects:
            if project.key == key:
                return project
        return None


@dataclass(slots=True)
class ProjectSnapshot:
    """Data extracted for one branch of one project, ready to be reported."""

    project: Project
    branch: str
    issues: list[Issue] = field(default_factory=list)
    hotspots: list[Hotspot] = field(default_factory=list)
    components: list[dict[str, Any]] = field(default_factory=list)
    sources: list[dict[str, Any]] = field(default_factory=list)
    measures: dict[str, str] = field(default_factory=dict)

    @property
    def lines_of_code(self) -> int:
        try:
            return int(self.measures.get("ncloc", 0))
        except (TypeError, ValueError):
            return 0


@dataclass(slots=True)
class ProjectSetting:
    """A project-level setting; multi-valued settings use ``values``."""

    key: str
    value: str | None = None
    values: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ProjectLink:
    name: str
    url: str


@dataclass(slots=True)
class NewCodePeriod:
    """New code definition of a project (``NUMBER_OF_DAYS``, ``PREVIOUS_VERSION``...)."""

    type: str
    value: str | None = None


@dataclass(slots=True)
class ProjectConfig:
    """Project configuration replayed after the destination project exists."""

    quality_gate: str | None = None
    # Language -> quality profile name
    quality_profiles: dict[str, str] = field(default_factory=dict)
    permissions: list[GroupPermissions] = field(default_factory=list)
    settings: list[ProjectSetting] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    links: list[ProjectLink] = field(default_factory=list)
    new_code_period: NewCodePeriod | None = None


@dataclass(slots=True)
class BindingGroup:
    """Projects sharing one DevOps organization/group/workspace."""

    alm: str
    identifier: str
    url: str = ""
    projects: list[Project] = field(default_factory=list)


@dataclass(slots=True)
class OrgAssignment:
    """Projects and binding groups assigned to one destination organization."""

    org: TargetOrgConfig
    projects: list[Project] = field(default_factory=list)
    binding_groups: list[BindingGroup] = field(default_factory=list)

    @property
    def project_keys(self) -> set[str]:
        return {p.key for p in self.projects}


@dataclass(slots=True)
class OrgMapping:
    binding_groups: list[BindingGroup] = field(default_factory=list)
    unbound_projects: list[Project] = field(default_factory=list)
    org_assignments: list[OrgAssignment] = field(default_factory=list)


@dataclass(slots=True)
class ResourceMappings:
    """Server-wide resources needed by each organization, keyed by org key."""

    gates_by_org: dict[str, list[QualityGate]] = field(default_factory=dict)
    profiles_by_org: dict[str, list[QualityProfile]] = field(default_factory=dict)
    groups_by_org: dict[str, list[Group]] = field(default_factory=dict)
    portfolios_by_org: dict[str, list[Portfolio]] = field(default_factory=dict)
    templates_by_org: dict[str, list[PermissionTemplate]] = field(
        default_factory=dict
    )


@dataclass(slots=True)
class TransferStats:
    """Counts reported for one transferred branch or aggregated for a project."""

    issues_transferred: int = 0
    components_transferred: int = 0
    sources_transferred: int = 0
    lines_of_code: int = 0
    branches_transferred: list[str] = field(default_factory=list)

    def add(self, other: "TransferStats") -> None:
        self.issues_transferred += other.issues_transferred
        self.components_transferred += other.components_transferred
        self.sources_transferred += other.sources_transferred
        self.lines_of_code += other.lines_of_code
        self.branches_transferred.extend(other.branches_transferred)

    @classmethod
    def from_snapshot(cls, snapshot: ProjectSnapshot) -> "TransferStats":
        return cls(
            issues_transferred=len(snapshot.issues),
            components_transferred=len(snapshot.components),
            sources_transferred=len(snapshot.sources),
            lines_of_code=snapshot.lines_of_code,
        )
