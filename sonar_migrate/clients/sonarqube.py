"""Read-only client for the source SonarQube server."""

from collections.abc import AsyncIterator
from typing import Any

from sonar_migrate.clients.base import BaseAPIClient
from sonar_migrate.config import SourceConfig
from sonar_migrate.errors import NotFoundError
from sonar_migrate.resilience import RemoteCallPolicy


class SonarQubeClient(BaseAPIClient):
    """SonarQube web API endpoints used during extraction."""

    service_name = "SonarQube"

    @classmethod
    def from_config(
        cls, config: SourceConfig, policy: RemoteCallPolicy | None = None
    ) -> "SonarQubeClient":
        return cls(str(config.url), config.token, policy=policy)

    async def test_connection(self) -> dict[str, Any]:
        """Check that the server is up.

        Returns:
            The server status document (``status``, ``version``).
        """
        status = await self.get("/api/system/status")
        self._logger.info(
            "Connected to SonarQube",
            version=status.get("version"),
            status=status.get("status"),
        )
        return status

    async def list_projects(self) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "/api/projects/search", "components", {"qualifiers": "TRK"}
        )

    async def get_project(self, project_key: str) -> dict[str, Any] | None:
        payload = await self.get(
            "/api/projects/search", {"projects": project_key, "qualifiers": "TRK"}
        )
        components = payload.get("components") or []
        return components[0] if components else None

    async def list_branches(self, project_key: str) -> list[dict[str, Any]]:
        payload = await self.get("/api/project_branches/list", {"project": project_key})
        return payload.get("branches") or []

    async def get_binding(self, project_key: str) -> dict[str, Any] | None:
        """DevOps binding of a project, or None when the project is unbound."""
        try:
            payload = await self.get(
                "/api/alm_settings/get_binding", {"project": project_key}
            )
        except NotFoundError:
            return None
        return payload or None

    def iter_issue_pages(
        self, project_key: str, branch: str | None = None
    ) -> AsyncIterator[list[dict[str, Any]]]:
        params: dict[str, Any] = {
            "componentKeys": project_key,
            "additionalFields": "comments",
        }
        if branch:
            params["branch"] = branch
        return self.iter_pages("/api/issues/search", "issues", params)

    def iter_hotspot_pages(
        self, project_key: str, branch: str | None = None
    ) -> AsyncIterator[list[dict[str, Any]]]:
        params: dict[str, Any] = {"projectKey": project_key}
        if branch:
            params["branch"] = branch
        return self.iter_pages("/api/hotspots/search", "hotspots", params)

    async def get_hotspot(self, hotspot_key: str) -> dict[str, Any]:
        return await self.get("/api/hotspots/show", {"hotspot": hotspot_key})

    async def list_files(
        self, project_key: str, branch: str | None = None
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"component": project_key, "qualifiers": "FIL"}
        if branch:
            params["branch"] = branch
        return await self.fetch_all("/api/components/tree", "components", params)

    async def get_source(self, file_key: str, branch: str | None = None) -> str:
        params: dict[str, Any] = {"key": file_key}
        if branch:
            params["branch"] = branch
        return await self.get_text("/api/sources/raw", params)

    async def get_measures(
        self, project_key: str, metric_keys: list[str], branch: str | None = None
    ) -> dict[str, str]:
        params: dict[str, Any] = {
            "component": project_key,
            "metricKeys": ",".join(metric_keys),
        }
        if branch:
            params["branch"] = branch
        payload = await self.get("/api/measures/component", params)
        measures = (payload.get("component") or {}).get("measures") or []
        return {m["metric"]: m.get("value", "") for m in measures}

    async def list_quality_gates(self) -> list[dict[str, Any]]:
        payload = await self.get("/api/qualitygates/list")
        return payload.get("qualitygates") or []

    async def get_quality_gate(self, name: str) -> dict[str, Any]:
        return await self.get("/api/qualitygates/show", {"name": name})

    async def list_quality_profiles(self) -> list[dict[str, Any]]:
        payload = await self.get("/api/qualityprofiles/search")
        return payload.get("profiles") or []

    async def backup_quality_profile(self, language: str, name: str) -> str:
        return await self.get_text(
            "/api/qualityprofiles/backup",
            {"language": language, "qualityProfile": name},
        )

    async def list_active_rules(self, profile_key: str) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "/api/rules/search", "rules", {"qprofile": profile_key, "activation": "true"}
        )

    # Project configuration

    async def get_project_quality_gate(self, project_key: str) -> dict[str, Any] | None:
        payload = await self.get("/api/qualitygates/get_by_project", {"project": project_key})
        return payload.get("qualityGate")

    async def list_project_quality_profiles(self, project_key: str) -> list[dict[str, Any]]:
        payload = await self.get("/api/qualityprofiles/search", {"project": project_key})
        return payload.get("profiles") or []

    async def list_project_permissions(self, project_key: str) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "/api/permissions/groups", "groups", {"projectKey": project_key}
        )

    async def list_project_settings(self, project_key: str) -> list[dict[str, Any]]:
        payload = await self.get("/api/settings/values", {"component": project_key})
        return payload.get("settings") or []

    async def get_project_tags(self, project_key: str) -> list[str]:
        payload = await self.get("/api/components/show", {"component": project_key})
        return list((payload.get("component") or {}).get("tags") or [])

    async def list_project_links(self, project_key: str) -> list[dict[str, Any]]:
        payload = await self.get("/api/project_links/search", {"projectKey": project_key})
        return payload.get("links") or []

    async def get_new_code_period(self, project_key: str) -> dict[str, Any] | None:
        """New code definition of a project, or None on servers without it."""
        try:
            return await self.get("/api/new_code_periods/show", {"project": project_key})
        except NotFoundError:
            return None

    async def list_groups(self) -> list[dict[str, Any]]:
        return await self.fetch_all("/api/user_groups/search", "groups")

    async def list_global_permissions(self) -> list[dict[str, Any]]:
        return await self.fetch_all("/api/permissions/groups", "groups")

    async def search_permission_templates(self) -> dict[str, Any]:
        return await self.get("/api/permissions/search_templates")

    async def list_template_groups(
        self, template_id: str, permission: str
    ) -> list[dict[str, Any]]:
        return await self.fetch_all(
            "/api/permissions/template_groups",
            "groups",
            {"templateId": template_id, "permission": permission},
        )

    async def list_portfolios(self) -> list[dict[str, Any]]:
        """Portfolios, or an empty list on editions without them."""
        try:
            payload = await self.get("/api/views/list")
        except NotFoundError:
            self._logger.warning("Portfolios not available on this SonarQube edition")
            return []
        return payload.get("views") or []

    async def get_portfolio(self, key: str) -> dict[str, Any]:
        return await self.get("/api/views/show", {"key": key})
