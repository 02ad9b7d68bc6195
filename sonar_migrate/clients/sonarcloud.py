"""Client for one destination SonarCloud organization."""

import asyncio
from typing import Any

from sonar_migrate.clients.base import BaseAPIClient
from sonar_migrate.config import TargetOrgConfig
from sonar_migrate.errors import APIError, ClientError, NotFoundError, ValidationError
from sonar_migrate.models import Binding
from sonar_migrate.resilience import RemoteCallPolicy

DEFAULT_MAIN_BRANCH = "master"
ANALYSIS_POLL_SECONDS = 2.0
ANALYSIS_TIMEOUT_SECONDS = 300.0


def is_already_exists(error: Exception) -> bool:
    """Whether a create call failed only because the entity exists."""
    return isinstance(error, ClientError) and "already exist" in str(error).lower()


class SonarCloudClient(BaseAPIClient):
    """SonarCloud web API endpoints scoped to one organization."""

    service_name = "SonarCloud"

    def __init__(
        self,
        base_url: str,
        token: str,
        organization: str,
        policy: RemoteCallPolicy | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url, token, policy=policy, **kwargs)
        self.organization = organization
        self._logger = self._logger.bind(org=organization)

    @classmethod
    def from_config(
        cls, config: TargetOrgConfig, policy: RemoteCallPolicy | None = None
    ) -> "SonarCloudClient":
        return cls(str(config.url), config.token, config.key, policy=policy)

    async def test_connection(self) -> None:
        """Verify the token and that the organization exists.

        Raises:
            NotFoundError: If the organization is unknown.
        """
        payload = await self.get(
            "/api/organizations/search", {"organizations": self.organization}
        )
        if not payload.get("organizations"):
            raise NotFoundError(
                f"Organization not found: {self.organization}",
                endpoint="/api/organizations/search",
            )
        self._logger.info("Connected to SonarCloud")

    # Projects

    async def project_exists(self, project_key: str) -> bool:
        payload = await self.get(
            "/api/projects/search",
            {"projects": project_key, "organization": self.organization},
        )
        return bool(payload.get("components"))

    async def ensure_project(self, project_key: str, name: str | None = None) -> bool:
        """Create the project unless it already exists.

        Returns:
            True if the project was created by this call.
        """
        if await self.project_exists(project_key):
            self._logger.info("Project already exists", project=project_key)
            return False
        await self.post(
            "/api/projects/create",
            {
                "project": project_key,
                "name": name or project_key,
                "organization": self.organization,
            },
        )
        self._logger.info("Created project", project=project_key)
        return True

    async def get_main_branch_name(self, project_key: str) -> str:
        payload = await self.get("/api/project_branches/list", {"project": project_key})
        for branch in payload.get("branches") or []:
            if branch.get("isMain"):
                return branch["name"]
        return DEFAULT_MAIN_BRANCH

    async def get_analysis_task(self, task_id: str) -> dict[str, Any]:
        payload = await self.get("/api/ce/task", {"id": task_id})
        return payload.get("task") or {}

    async def wait_for_analysis(
        self,
        task_id: str,
        timeout_seconds: float = ANALYSIS_TIMEOUT_SECONDS,
        poll_seconds: float = ANALYSIS_POLL_SECONDS,
    ) -> dict[str, Any]:
        """Poll a compute-engine task until it finishes.

        Raises:
            APIError: If the analysis fails, is canceled or times out.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_seconds
        while True:
            task = await self.get_analysis_task(task_id)
            status = task.get("status")
            if status == "SUCCESS":
                return task
            if status in ("FAILED", "CANCELED"):
                raise APIError(
                    f"Analysis {status.lower()}: {task.get('errorMessage') or 'unknown error'}"
                )
            if loop.time() > deadline:
                raise APIError(f"Analysis timeout after {timeout_seconds} seconds")
            await asyncio.sleep(poll_seconds)

    async def set_project_setting(self, project_key: str, key: str, value: str) -> None:
        await self.post(
            "/api/settings/set", {"key": key, "value": value, "component": project_key}
        )

    async def set_project_tags(self, project_key: str, tags: list[str]) -> None:
        await self.post(
            "/api/project_tags/set", {"project": project_key, "tags": ",".join(tags)}
        )

    async def create_project_link(self, project_key: str, name: str, url: str) -> None:
        await self.post(
            "/api/project_links/create",
            {"projectKey": project_key, "name": name, "url": url},
        )

    async def set_devops_binding(self, project_key: str, binding: Binding) -> None:
        """Bind a project to its repository on GitHub, GitLab, Azure or Bitbucket.

        Raises:
            ValidationError: If the platform is not supported.
        """
        data: dict[str, Any] = {"project": project_key, "almSetting": binding.setting_key}
        alm = binding.alm.lower()
        if alm == "github":
            path = "/api/alm_settings/set_github_binding"
            data.update(
                repository=binding.repository, monorepo=str(binding.monorepo).lower()
            )
        elif alm == "gitlab":
            path = "/api/alm_settings/set_gitlab_binding"
            data["repository"] = binding.repository
        elif alm == "azure":
            path = "/api/alm_settings/set_azure_binding"
            data.update(projectName=binding.repository, repositoryName=binding.slug)
        elif alm in ("bitbucket", "bitbucketcloud"):
            path = "/api/alm_settings/set_bitbucket_binding"
            data.update(repository=binding.repository, slug=binding.slug)
        else:
            raise ValidationError(f"Unsupported DevOps platform: {binding.alm}")
        await self.post(path, data)

    # Groups and permissions

    async def create_group(self, name: str, description: str = "") -> dict[str, Any]:
        payload = await self.post(
            "/api/user_groups/create",
            {"name": name, "description": description, "organization": self.organization},
        )
        return payload.get("group") or {"name": name}

    async def add_group_permission(
        self, group_name: str, permission: str, project_key: str | None = None
    ) -> None:
        data = {
            "groupName": group_name,
            "permission": permission,
            "organization": self.organization,
        }
        if project_key:
            data["projectKey"] = project_key
        await self.post("/api/permissions/add_group", data)

    async def create_permission_template(
        self, name: str, description: str = "", project_key_pattern: str = ""
    ) -> dict[str, Any]:
        data = {"name": name, "organization": self.organization}
        if description:
            data["description"] = description
        if project_key_pattern:
            data["projectKeyPattern"] = project_key_pattern
        payload = await self.post("/api/permissions/create_template", data)
        return payload.get("permissionTemplate") or {}

    async def add_group_to_template(
        self, template_id: str, group_name: str, permission: str
    ) -> None:
        await self.post(
            "/api/permissions/add_group_to_template",
            {
                "templateId": template_id,
                "groupName": group_name,
                "permission": permission,
                "organization": self.organization,
            },
        )

    async def set_default_template(self, template_id: str, qualifier: str = "TRK") -> None:
        await self.post(
            "/api/permissions/set_default_template",
            {
                "templateId": template_id,
                "qualifier": qualifier,
                "organization": self.organization,
            },
        )

    # Quality gates and profiles

    async def create_quality_gate(self, name: str) -> dict[str, Any]:
        return await self.post(
            "/api/qualitygates/create", {"name": name, "organization": self.organization}
        )

    async def create_quality_gate_condition(
        self, gate_id: str, metric: str, op: str, error: str
    ) -> None:
        await self.post(
            "/api/qualitygates/create_condition",
            {
                "gateId": gate_id,
                "metric": metric,
                "op": op,
                "error": error,
                "organization": self.organization,
            },
        )

    async def set_default_quality_gate(self, gate_id: str) -> None:
        await self.post(
            "/api/qualitygates/set_as_default",
            {"id": gate_id, "organization": self.organization},
        )

    async def assign_quality_gate(self, project_key: str, gate_name: str) -> None:
        """Use the gate named ``gate_name`` for a project."""
        gate = await self.get(
            "/api/qualitygates/show", {"name": gate_name, "organization": self.organization}
        )
        await self.post(
            "/api/qualitygates/select",
            {
                "gateId": gate["id"],
                "projectKey": project_key,
                "organization": self.organization,
            },
        )

    async def add_quality_profile_to_project(
        self, project_key: str, language: str, profile_name: str
    ) -> None:
        await self.post(
            "/api/qualityprofiles/add_project",
            {
                "language": language,
                "qualityProfile": profile_name,
                "project": project_key,
                "organization": self.organization,
            },
        )

    async def search_quality_profiles(self) -> list[dict[str, Any]]:
        payload = await self.get(
            "/api/qualityprofiles/search", {"organization": self.organization}
        )
        return payload.get("profiles") or []

    async def list_active_rules(self, profile_key: str) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "/api/rules/search",
            "rules",
            {
                "qprofile": profile_key,
                "activation": "true",
                "organization": self.organization,
            },
        )

    async def restore_quality_profile(self, backup_xml: str) -> dict[str, Any]:
        return await self.post(
            "/api/qualityprofiles/restore",
            {"organization": self.organization},
            files={"backup": ("backup.xml", backup_xml.encode("utf-8"), "application/xml")},
        )

    async def set_default_quality_profile(self, language: str, name: str) -> None:
        await self.post(
            "/api/qualityprofiles/set_default",
            {
                "language": language,
                "qualityProfile": name,
                "organization": self.organization,
            },
        )

    # Portfolios

    async def create_portfolio(
        self, key: str, name: str, description: str = "", visibility: str = "public"
    ) -> dict[str, Any]:
        return await self.post(
            "/api/views/create",
            {
                "key": key,
                "name": name,
                "description": description,
                "visibility": visibility,
                "organization": self.organization,
            },
        )

    async def add_project_to_portfolio(self, portfolio_key: str, project_key: str) -> None:
        await self.post(
            "/api/views/add_project", {"key": portfolio_key, "project": project_key}
        )

    # Issues and hotspots

    async def search_issues(
        self, project_key: str, branch: str | None = None
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "componentKeys": project_key,
            "organization": self.organization,
            "additionalFields": "comments",
        }
        if branch:
            params["branch"] = branch
        return await self.fetch_all("/api/issues/search", "issues", params)

    async def transition_issue(self, issue_key: str, transition: str) -> None:
        await self.post(
            "/api/issues/do_transition", {"issue": issue_key, "transition": transition}
        )

    async def assign_issue(self, issue_key: str, assignee: str) -> None:
        await self.post("/api/issues/assign", {"issue": issue_key, "assignee": assignee})

    async def add_issue_comment(self, issue_key: str, text: str) -> None:
        await self.post("/api/issues/add_comment", {"issue": issue_key, "text": text})

    async def set_issue_tags(self, issue_key: str, tags: list[str]) -> None:
        await self.post("/api/issues/set_tags", {"issue": issue_key, "tags": ",".join(tags)})

    async def search_hotspots(
        self, project_key: str, branch: str | None = None
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"projectKey": project_key}
        if branch:
            params["branch"] = branch
        return await self.fetch_all("/api/hotspots/search", "hotspots", params)

    async def change_hotspot_status(
        self, hotspot_key: str, status: str, resolution: str | None = None
    ) -> None:
        data = {"hotspot": hotspot_key, "status": status}
        if resolution:
            data["resolution"] = resolution
        await self.post("/api/hotspots/change_status", data)

    async def add_hotspot_comment(self, hotspot_key: str, text: str) -> None:
        await self.post("/api/hotspots/add_comment", {"hotspot": hotspot_key, "text": text})
