"""Extraction of server-wide and per-branch data from SonarQube."""

import asyncio
from typing import Any

import structlog

from sonar_migrate.clients.sonarqube import SonarQubeClient
from sonar_migrate.context import ConcurrencyLimits
from sonar_migrate.models import (
    Binding,
    Branch,
    Comment,
    DefaultTemplate,
    Group,
    GroupPermissions,
    Hotspot,
    Issue,
    NewCodePeriod,
    PermissionTemplate,
    PermissionTemplates,
    Portfolio,
    PortfolioMember,
    Project,
    ProjectConfig,
    ProjectLink,
    ProjectSetting,
    ProjectSnapshot,
    QualityGate,
    QualityProfile,
    TemplatePermission,
)

logger = structlog.get_logger(__name__)

MEASURE_KEYS = ["ncloc", "files", "lines"]


def _comments(raw: list[dict[str, Any]] | None) -> list[Comment]:
    return [
        Comment(
            login=c.get("login", ""),
            created_at=c.get("createdAt", ""),
            markdown=c.get("markdown") or c.get("htmlText") or "",
        )
        for c in raw or []
    ]


def _line(raw: dict[str, Any]) -> int | None:
    return raw.get("line") or (raw.get("textRange") or {}).get("startLine")


def issue_from_api(raw: dict[str, Any]) -> Issue:
    return Issue(
        key=raw["key"],
        rule=raw.get("rule", ""),
        component=raw.get("component", ""),
        line=_line(raw),
        status=raw.get("status", "OPEN"),
        resolution=raw.get("resolution"),
        assignee=raw.get("assignee"),
        tags=list(raw.get("tags") or []),
        comments=_comments(raw.get("comments")),
    )


def hotspot_from_api(raw: dict[str, Any]) -> Hotspot:
    rule = raw.get("ruleKey") or (raw.get("rule") or {}).get("key") or ""
    component = raw.get("component", "")
    if isinstance(component, dict):
        component = component.get("key", "")
    return Hotspot(
        key=raw["key"],
        rule=rule,
        component=component,
        line=_line(raw),
        status=raw.get("status", "TO_REVIEW"),
        resolution=raw.get("resolution"),
        comments=_comments(raw.get("comment") or raw.get("comments")),
    )


def project_from_api(raw: dict[str, Any], branches: list[dict[str, Any]]) -> Project:
    return Project(
        key=raw["key"],
        name=raw.get("name") or raw["key"],
        visibility=raw.get("visibility", "public"),
        last_analysis_date=raw.get("lastAnalysisDate"),
        branches=[
            Branch(
                name=b["name"],
                is_main=bool(b.get("isMain")),
                analysis_date=b.get("analysisDate"),
            )
            for b in branches
        ],
    )


class SonarQubeExtractor:
    """Reads everything a migration needs from the source server.

    Source file fetches and hotspot detail fetches are bounded by their own
    concurrency limits.
    """

    def __init__(self, client: SonarQubeClient, limits: ConcurrencyLimits) -> None:
        self.client = client
        self.limits = limits
        self._logger = logger.bind(extractor="sonarqube")

    async def extract_projects(self) -> list[Project]:
        """List projects with their branches.

        Only listing the projects can fail the call. A project whose branches
        cannot be read or are invalid is returned without branches and with
        ``extraction_error`` set, so that only that project fails later on.
        """
        raw_projects = await self.client.list_projects()

        async def with_branches(raw: dict[str, Any]) -> Project:
            try:
                async with self.limits.source_extraction:
                    branches = await self.client.list_branches(raw["key"])
                project = project_from_api(raw, branches)
                project.validate_branches()
            except Exception as e:
                self._logger.warning(
                    "Failed to extract branches", project=raw["key"], error=str(e)
                )
                project = project_from_api(raw, [])
                project.extraction_error = str(e)
            return project

        projects = await asyncio.gather(*(with_branches(r) for r in raw_projects))
        self._logger.info(
            "Extracted projects",
            count=len(projects),
            failed=sum(1 for p in projects if p.extraction_error),
        )
        return list(projects)

    async def extract_project_config(self, project_key: str) -> ProjectConfig:
        """Read the quality gate, profiles, permissions, settings, tags, links
        and new code definition of one project."""
        gate = await self.client.get_project_quality_gate(project_key)
        profiles = await self.client.list_project_quality_profiles(project_key)
        permissions = await self.client.list_project_permissions(project_key)
        settings = await self.client.list_project_settings(project_key)
        links = await self.client.list_project_links(project_key)
        period = await self.client.get_new_code_period(project_key)

        new_code_period = None
        if period and period.get("type") and not period.get("inherited"):
            new_code_period = NewCodePeriod(type=period["type"], value=period.get("value"))

        return ProjectConfig(
            quality_gate=(gate or {}).get("name"),
            quality_profiles={p["language"]: p["name"] for p in profiles},
            permissions=[
                GroupPermissions(name=raw["name"], permissions=list(raw["permissions"]))
                for raw in permissions
                if raw.get("permissions")
            ],
            settings=[
                ProjectSetting(
                    key=raw["key"],
                    value=raw.get("value"),
                    values=list(raw.get("values") or []),
                )
                for raw in settings
                if not raw.get("inherited")
            ],
            tags=await self.client.get_project_tags(project_key),
            links=[
                ProjectLink(name=raw.get("name") or raw.get("type", ""), url=raw["url"])
                for raw in links
                if raw.get("url")
            ],
            new_code_period=new_code_period,
        )

    async def extract_bindings(self, projects: list[Project]) -> dict[str, Binding]:
        async def binding_of(project: Project) -> tuple[str, dict[str, Any] | None]:
            async with self.limits.source_extraction:
                return project.key, await self.client.get_binding(project.key)

        bindings = {}
        for key, raw in await asyncio.gather(*(binding_of(p) for p in projects)):
            if raw and raw.get("alm"):
                bindings[key] = Binding(
                    alm=raw["alm"],
                    repository=raw.get("repository", ""),
                    slug=raw.get("slug", ""),
                    url=raw.get("url", ""),
                    monorepo=bool(raw.get("monorepo")),
                    setting_key=raw.get("key", ""),
                )
        self._logger.info("Extracted DevOps bindings", bound=len(bindings))
        return bindings

    async def extract_quality_gates(self) -> list[QualityGate]:
        gates = []
        for raw in await self.client.list_quality_gates():
            details = await self.client.get_quality_gate(raw["name"])
            gates.append(
                QualityGate(
                    name=raw["name"],
                    is_default=bool(raw.get("isDefault")),
                    is_built_in=bool(raw.get("isBuiltIn")),
                    conditions=list(details.get("conditions") or []),
                )
            )
        return gates

    async def extract_quality_profiles(self) -> list[QualityProfile]:
        async def with_backup(raw: dict[str, Any]) -> QualityProfile:
            backup = None
            if not raw.get("isBuiltIn"):
                async with self.limits.source_extraction:
                    backup = await self.client.backup_quality_profile(
                        raw["language"], raw["name"]
                    )
            return QualityProfile(
                name=raw["name"],
                language=raw["language"],
                key=raw.get("key", ""),
                is_default=bool(raw.get("isDefault")),
                is_built_in=bool(raw.get("isBuiltIn")),
                parent_name=raw.get("parentName"),
                active_rule_count=int(raw.get("activeRuleCount") or 0),
                backup=backup,
            )

        raw_profiles = await self.client.list_quality_profiles()
        return list(await asyncio.gather(*(with_backup(r) for r in raw_profiles)))

    async def extract_groups(self) -> list[Group]:
        return [
            Group(
                name=raw["name"],
                description=raw.get("description") or "",
                default=bool(raw.get("default")),
            )
            for raw in await self.client.list_groups()
        ]

    async def extract_global_permissions(self) -> list[GroupPermissions]:
        return [
            GroupPermissions(name=raw["name"], permissions=list(raw["permissions"]))
            for raw in await self.client.list_global_permissions()
            if raw.get("permissions")
        ]

    async def extract_permission_templates(self) -> PermissionTemplates:
        payload = await self.client.search_permission_templates()
        templates = []
        for raw in payload.get("permissionTemplates") or []:
            permissions = []
            for perm in raw.get("permissions") or []:
                groups: list[str] = []
                if perm.get("groupsCount"):
                    groups = [
                        g["name"]
                        for g in await self.client.list_template_groups(
                            raw["id"], perm["key"]
                        )
                    ]
                permissions.append(TemplatePermission(key=perm["key"], groups=groups))
            templates.append(
                PermissionTemplate(
                    id=raw["id"],
                    name=raw["name"],
                    description=raw.get("description") or "",
                    project_key_pattern=raw.get("projectKeyPattern") or "",
                    permissions=permissions,
                )
            )
        defaults = [
            DefaultTemplate(template_id=d["templateId"], qualifier=d.get("qualifier", "TRK"))
            for d in payload.get("defaultTemplates") or []
        ]
        return PermissionTemplates(templates=templates, default_templates=defaults)

    async def extract_portfolios(self) -> list[Portfolio]:
        portfolios = []
        for raw in await self.client.list_portfolios():
            if raw.get("qualifier", "VW") != "VW":
                continue
            details = await self.client.get_portfolio(raw["key"])
            members = [
                PortfolioMember(key=p["key"], name=p.get("name", ""))
                for p in details.get("selectedProjects") or details.get("projects") or []
                if isinstance(p, dict)
            ]
            portfolios.append(
                Portfolio(
                    key=raw["key"],
                    name=raw.get("name") or raw["key"],
                    description=details.get("desc") or details.get("description") or "",
                    visibility=details.get("visibility", "public"),
                    projects=members,
                )
            )
        return portfolios

    async def _issues(self, project_key: str, branch: str) -> list[Issue]:
        issues = []
        async for page in self.client.iter_issue_pages(project_key, branch):
            issues.extend(issue_from_api(raw) for raw in page)
        return issues

    async def _hotspots(self, project_key: str, branch: str) -> list[Hotspot]:
        async def detailed(raw: dict[str, Any]) -> Hotspot:
            async with self.limits.hotspot_extraction:
                return hotspot_from_api(
                    {**raw, **await self.client.get_hotspot(raw["key"])}
                )

        raw_hotspots = []
        async for page in self.client.iter_hotspot_pages(project_key, branch):
            raw_hotspots.extend(page)
        return list(await asyncio.gather(*(detailed(r) for r in raw_hotspots)))

    async def _sources(
        self, project_key: str, branch: str, files: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        async def fetch(component: dict[str, Any]) -> dict[str, Any]:
            async with self.limits.source_extraction:
                text = await self.client.get_source(component["key"], branch)
            return {"key": component["key"], "path": component.get("path"), "source": text}

        return list(await asyncio.gather(*(fetch(f) for f in files)))

    async def _extract_branch(self, project: Project, branch: str) -> ProjectSnapshot:
        log = self._logger.bind(project=project.key, branch=branch)
        log.info("Extracting branch")
        components = await self.client.list_files(project.key, branch)
        snapshot = ProjectSnapshot(
            project=project,
            branch=branch,
            issues=await self._issues(project.key, branch),
            hotspots=await self._hotspots(project.key, branch),
            components=components,
            sources=await self._sources(project.key, branch, components),
            measures=await self.client.get_measures(project.key, MEASURE_KEYS, branch),
        )
        log.info(
            "Extracted branch",
            issues=len(snapshot.issues),
            hotspots=len(snapshot.hotspots),
            components=len(snapshot.components),
        )
        return snapshot

    async def extract_all(self, project: Project) -> ProjectSnapshot:
        """Extract the main branch of a project."""
        main = project.main_branch
        return await self._extract_branch(project, main.name if main else "master")

    async def extract_branch(
        self, branch_name: str, base: ProjectSnapshot
    ) -> ProjectSnapshot:
        return await self._extract_branch(base.project, branch_name)
