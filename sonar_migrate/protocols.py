"""Contracts of the collaborators the transfer pipeline depends on.

The scanner report pipeline (building, encoding and uploading the analysis
report) is supplied from outside; ``load_report_pipeline`` resolves it from a
``module:attribute`` import path.
"""

import importlib
from typing import Any, Protocol, runtime_checkable

from sonar_migrate.config import TargetOrgConfig
from sonar_migrate.errors import ConfigurationError
from sonar_migrate.models import Project, ProjectConfig, ProjectSnapshot


@runtime_checkable
class DataExtractor(Protocol):
    """Reads everything to migrate from the source server."""

    async def extract_all(self, project: Project) -> ProjectSnapshot:
        """Extract the main branch of a project."""
        ...

    async def extract_branch(
        self, branch_name: str, base: ProjectSnapshot
    ) -> ProjectSnapshot: ...

    async def extract_project_config(self, project_key: str) -> ProjectConfig: ...


@runtime_checkable
class ReportPipeline(Protocol):
    """Builds, encodes and uploads scanner reports."""

    def build_all(self, snapshot: ProjectSnapshot, org: TargetOrgConfig) -> Any: ...

    def encode_all(self, messages: Any) -> bytes: ...

    async def upload(self, payload: bytes, metadata: dict[str, Any]) -> dict[str, Any]:
        """Submit a report. Returns at least ``{"task_id": ...}``."""
        ...

    async def upload_and_wait(
        self, payload: bytes, metadata: dict[str, Any]
    ) -> dict[str, Any]:
        """Submit a report and wait for its server-side analysis."""
        ...


def load_report_pipeline(import_path: str, **kwargs: Any) -> ReportPipeline:
    """Instantiate a report pipeline from ``module:attribute``.

    The attribute is called with ``kwargs`` and must return an object
    implementing :class:`ReportPipeline`.

    Raises:
        ConfigurationError: If the path is malformed, cannot be imported, or
            produces something that is not a report pipeline.
    """
    module_name, sep, attribute = import_path.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(
            f"Report pipeline must be given as 'module:attribute', got {import_path!r}"
        )
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attribute)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(
            f"Cannot load report pipeline {import_path!r}: {e}"
        ) from e

    pipeline = factory(**kwargs)
    if not isinstance(pipeline, ReportPipeline):
        raise ConfigurationError(
            f"{import_path!r} did not produce a report pipeline"
        )
    return pipeline
