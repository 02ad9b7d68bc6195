"""SonarQube to SonarCloud Migration Tool.

A Python CLI & library for migrating SonarQube servers into one or more
SonarCloud organizations, resumable and driven by editable mapping CSVs.
"""

__version__ = "0.1.0"

from sonar_migrate.config import Config
from sonar_migrate.orchestration import MigrationOrchestrator
from sonar_migrate.state import StateTracker
from sonar_migrate.transfer import TransferPipeline

__all__ = [
    "Config",
    "MigrationOrchestrator",
    "StateTracker",
    "TransferPipeline",
    "__version__",
]
