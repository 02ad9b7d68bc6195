"""Quality gates and quality profiles."""

from collections.abc import Sequence
from datetime import datetime
from typing import Any

import structlog

from sonar_migrate.clients.sonarcloud import SonarCloudClient
from sonar_migrate.clients.sonarqube import SonarQubeClient
from sonar_migrate.errors import PartialMigrationError
from sonar_migrate.models import QualityGate, QualityProfile
from sonar_migrate.resources.base import ResourceMigrator
from sonar_migrate.results import StepStatus

logger = structlog.get_logger(__name__)


class QualityGateMigrator(ResourceMigrator[QualityGate]):
    """Recreates custom quality gates with their conditions.

    Built-in gates are skipped since SonarCloud ships its own. A gate whose
    conditions could not all be created is kept and reported as incomplete.
    """

    @property
    def resource_name(self) -> str:
        return "Quality gates"

    def resource_id(self, resource: QualityGate) -> str:
        return resource.name

    def skip_reason(self, resource: QualityGate) -> str | None:
        return "built-in" if resource.is_built_in else None

    async def migrate_resource(self, resource: QualityGate) -> str | None:
        created = await self.dest_client.create_quality_gate(resource.name)
        gate_id = str(created.get("id") or created.get("name") or resource.name)

        failures = []
        for condition in resource.conditions:
            try:
                await self.dest_client.create_quality_gate_condition(
                    gate_id,
                    condition["metric"],
                    condition.get("op", "GT"),
                    str(condition.get("error", "")),
                )
            except Exception as e:
                failures.append(f"{condition.get('metric')}: {e}")

        if resource.is_default:
            await self.dest_client.set_default_quality_gate(gate_id)
        if failures:
            raise PartialMigrationError("Some conditions failed", gate_id, failures)
        return gate_id


class QualityProfileMigrator(ResourceMigrator[QualityProfile]):
    """Restores custom quality profiles from their SonarQube backups."""

    @property
    def resource_name(self) -> str:
        return "Quality profiles"

    def resource_id(self, resource: QualityProfile) -> str:
        return f"{resource.name} ({resource.language})"

    def skip_reason(self, resource: QualityProfile) -> str | None:
        if resource.is_built_in:
            return "built-in"
        if not resource.backup:
            return "no backup available"
        return None

    async def migrate_resource(self, resource: QualityProfile) -> str | None:
        restored = await self.dest_client.restore_quality_profile(resource.backup or "")
        if resource.is_default:
            await self.dest_client.set_default_quality_profile(
                resource.language, resource.name
            )
        profile = restored.get("profile") or {}
        return profile.get("key")


def _rule_entry(rule: dict[str, Any]) -> dict[str, str]:
    return {
        "key": rule.get("key", ""),
        "name": rule.get("name", ""),
        "type": rule.get("type", ""),
        "severity": rule.get("severity", ""),
    }


async def compare_quality_profiles(
    profiles: Sequence[QualityProfile],
    source_client: SonarQubeClient,
    dest_client: SonarCloudClient,
) -> dict[str, Any]:
    """Compare the active rules of each profile on both servers.

    Profiles are matched by language and name. ``missing_rules`` are active
    on SonarQube only, ``added_rules`` on SonarCloud only. Profiles that
    could not be compared are listed under ``failed``.
    """
    log = logger.bind(org=dest_client.organization)
    dest_profiles = {
        (p["language"], p["name"]): p for p in await dest_client.search_quality_profiles()
    }
    report: dict[str, Any] = {
        "generated_at": datetime.now().isoformat(),
        "summary": {"languages_compared": 0, "total_missing_rules": 0, "total_added_rules": 0},
        "languages": {},
        "failed": [],
    }

    for profile in profiles:
        dest = dest_profiles.get((profile.language, profile.name))
        if dest is None or not profile.key:
            log.debug("No destination profile to compare", profile=profile.name)
            continue
        try:
            source_rules = await source_client.list_active_rules(profile.key)
            dest_rules = await dest_client.list_active_rules(dest["key"])
        except Exception as e:
            log.warning("Failed to compare profile", profile=profile.name, error=str(e))
            report["failed"].append(
                {"profile": profile.name, "language": profile.language, "error": str(e)}
            )
            continue

        source_by_key = {r["key"]: r for r in source_rules if r.get("key")}
        dest_by_key = {r["key"]: r for r in dest_rules if r.get("key")}
        missing = [_rule_entry(r) for k, r in source_by_key.items() if k not in dest_by_key]
        added = [_rule_entry(r) for k, r in dest_by_key.items() if k not in source_by_key]
        if missing:
            log.warning(
                "Rules missing from SonarCloud profile",
                profile=profile.name,
                language=profile.language,
                count=len(missing),
            )

        language_key = profile.language
        if language_key in report["languages"]:
            language_key = f"{profile.language}:{profile.name}"
        report["languages"][language_key] = {
            "sonarqube_profile": profile.name,
            "sonarcloud_profile": dest["name"],
            "sonarqube_rule_count": len(source_rules),
            "sonarcloud_rule_count": len(dest_rules),
            "missing_rules": missing,
            "added_rules": added,
        }
        report["summary"]["languages_compared"] += 1
        report["summary"]["total_missing_rules"] += len(missing)
        report["summary"]["total_added_rules"] += len(added)

    return report


def describe_profile_diff(report: dict[str, Any]) -> str:
    summary = report["summary"]
    return (
        f"{summary['languages_compared']} compared, "
        f"{summary['total_missing_rules']} rules missing, "
        f"{summary['total_added_rules']} rules added"
    )


def classify_profile_diff(report: dict[str, Any]) -> StepStatus:
    if not report["failed"]:
        return StepStatus.SUCCESS
    if report["summary"]["languages_compared"] == 0:
        return StepStatus.FAILED
    return StepStatus.PARTIAL
