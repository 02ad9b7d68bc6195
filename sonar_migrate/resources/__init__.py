"""Destination resource migrators and metadata sync."""

from .base import MigrationResult, MigrationSummary, ResourceMigrator
from .groups import GlobalPermissionMigrator, GroupMigrator
from .hotspot_sync import sync_hotspots
from .issue_sync import sync_issues
from .project_config import ProjectConfigMigrator
from .quality import (
    QualityGateMigrator,
    QualityProfileMigrator,
    classify_profile_diff,
    compare_quality_profiles,
    describe_profile_diff,
)
from .templates import PermissionTemplateMigrator, PortfolioMigrator

__all__ = [
    "GlobalPermissionMigrator",
    "GroupMigrator",
    "MigrationResult",
    "MigrationSummary",
    "PermissionTemplateMigrator",
    "PortfolioMigrator",
    "ProjectConfigMigrator",
    "QualityGateMigrator",
    "QualityProfileMigrator",
    "ResourceMigrator",
    "classify_profile_diff",
    "compare_quality_profiles",
    "describe_profile_diff",
    "sync_hotspots",
    "sync_issues",
]
