"""Abstract base class for organization-wide resource migrators."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog

from sonar_migrate.clients.sonarcloud import SonarCloudClient, is_already_exists
from sonar_migrate.errors import PartialMigrationError
from sonar_migrate.results import StepStatus

logger = structlog.get_logger(__name__)

T = TypeVar("T")  # Type variable for resource data


@dataclass(slots=True)
class MigrationResult:
    """Result of migrating one resource."""

    success: bool
    source_id: str
    dest_id: str | None = None
    skipped: bool = False
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class MigrationSummary:
    """Aggregated results of one migrator run."""

    resource_name: str
    results: list[MigrationResult] = field(default_factory=list)

    @property
    def migrated(self) -> int:
        return sum(1 for r in self.results if r.success and not r.skipped)

    @property
    def skipped(self) -> int:
        return sum(1 for r in self.results if r.skipped)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    @property
    def incomplete(self) -> int:
        """Resources created with some of their parts missing."""
        return sum(1 for r in self.results if r.success and r.error)

    @property
    def step_status(self) -> StepStatus:
        if self.failed == 0 and self.incomplete == 0:
            return StepStatus.SUCCESS
        if self.migrated == 0 and self.skipped == 0:
            return StepStatus.FAILED
        return StepStatus.PARTIAL

    def describe(self) -> str:
        text = f"{self.migrated} migrated, {self.skipped} skipped, {self.failed} failed"
        if self.incomplete:
            text += f", {self.incomplete} incomplete"
        return text

    def errors(self) -> list[dict[str, Any]]:
        return [
            {"source_id": r.source_id, "error": r.error}
            for r in self.results
            if r.error is not None
        ]


class ResourceMigrator(ABC, Generic[T]):
    """Creates one kind of organization-wide resource in SonarCloud.

    Subclasses name the resource, identify items and implement the creation
    of a single item. Items that already exist in the destination count as
    skipped, other failures are recorded per item and never abort the run.
    ``migrate_resource`` raises :class:`PartialMigrationError` when the item
    was created but some of its parts were not; it then counts as incomplete.
    """

    def __init__(self, dest_client: SonarCloudClient) -> None:
        self.dest_client = dest_client
        self._logger = logger.bind(
            migrator=self.__class__.__name__, org=dest_client.organization
        )

    @property
    @abstractmethod
    def resource_name(self) -> str:
        """Human-readable name for this resource type."""

    @abstractmethod
    def resource_id(self, resource: T) -> str:
        """Identity used in results and logs."""

    def skip_reason(self, resource: T) -> str | None:
        """Why a resource is not migrated at all, or None to migrate it."""
        return None

    @abstractmethod
    async def migrate_resource(self, resource: T) -> str | None:
        """Create one resource and return its destination identifier."""

    async def migrate_all(self, resources: Sequence[T]) -> MigrationSummary:
        summary = MigrationSummary(resource_name=self.resource_name)
        self._logger.info(f"Migrating {self.resource_name}", total=len(resources))

        for resource in resources:
            source_id = self.resource_id(resource)
            reason = self.skip_reason(resource)
            if reason:
                summary.results.append(
                    MigrationResult(
                        success=True,
                        source_id=source_id,
                        skipped=True,
                        metadata={"skip_reason": reason},
                    )
                )
                continue

            try:
                dest_id = await self.migrate_resource(resource)
                summary.results.append(
                    MigrationResult(success=True, source_id=source_id, dest_id=dest_id)
                )
            except PartialMigrationError as e:
                self._logger.warning(
                    f"Partially migrated {self.resource_name}",
                    resource=source_id,
                    failures=e.failures,
                )
                summary.results.append(
                    MigrationResult(
                        success=True, source_id=source_id, dest_id=e.dest_id, error=str(e)
                    )
                )
            except Exception as e:
                if is_already_exists(e):
                    self._logger.debug("Already exists in destination", resource=source_id)
                    summary.results.append(
                        MigrationResult(
                            success=True,
                            source_id=source_id,
                            skipped=True,
                            metadata={"skip_reason": "already exists"},
                        )
                    )
                    continue
                self._logger.warning(
                    f"Failed to migrate {self.resource_name}",
                    resource=source_id,
                    error=str(e),
                )
                summary.results.append(
                    MigrationResult(success=False, source_id=source_id, error=str(e))
                )

        self._logger.info(
            f"Finished migrating {self.resource_name}",
            migrated=summary.migrated,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        return summary
