"""Durable sync progress for resumable, incremental transfers."""

import asyncio
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_serializer
from pydantic import ValidationError as PydanticValidationError

from sonar_migrate.errors import StateError
from sonar_migrate.models import TransferStats

logger = structlog.get_logger(__name__)

MAX_HISTORY_ENTRIES = 10


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HistoryEntry(BaseModel):
    """Summary of one finished transfer."""

    model_config = ConfigDict(populate_by_name=True)

    timestamp: str
    issues_transferred: int = Field(default=0, alias="issuesTransferred")
    components_transferred: int = Field(default=0, alias="componentsTransferred")
    sources_transferred: int = Field(default=0, alias="sourcesTransferred")
    lines_of_code: int = Field(default=0, alias="linesOfCode")


class SyncState(BaseModel):
    """Persisted state document of one project."""

    model_config = ConfigDict(populate_by_name=True)

    last_sync_timestamp: str | None = Field(default=None, alias="lastSyncTimestamp")
    processed_issue_ids: set[str] = Field(default_factory=set, alias="processedIssueIds")
    completed_branches: set[str] = Field(default_factory=set, alias="completedBranches")
    history: list[HistoryEntry] = Field(default_factory=list)

    @field_serializer("processed_issue_ids", "completed_branches")
    def _sorted(self, value: set[str]) -> list[str]:
        return sorted(value)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class StateStorage:
    """JSON file holding one :class:`SyncState` document."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._logger = logger.bind(state_file=str(self.path))

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict[str, Any] | None:
        """Read the state document.

        Returns:
            The parsed document, or None if the file does not exist.

        Raises:
            StateError: If the file cannot be read or is not valid JSON.
        """
        if not self.path.exists():
            self._logger.debug("State file does not exist")
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in state file {self.path}: {e}") from e
        except OSError as e:
            raise StateError(f"Failed to load state from {self.path}: {e}") from e
        if not isinstance(data, dict):
            raise StateError(f"State file {self.path} must contain a JSON object")
        return data

    def save(self, data: dict[str, Any]) -> None:
        """Write the document atomically (temp file then rename).

        Raises:
            StateError: If the file cannot be written.
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateError(f"Failed to save state to {self.path}: {e}") from e
        self._logger.debug("Saved state")

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            raise StateError(f"Failed to clear state {self.path}: {e}") from e


class StateTracker:
    """In-memory sync state of one project backed by a :class:`StateStorage`.

    ``initialize()`` must be called before any other method. One tracker is
    created per project state file, so workers never share an instance.
    """

    def __init__(self, path: Path) -> None:
        self.storage = StateStorage(path)
        self._state: SyncState | None = None
        self._lock = asyncio.Lock()
        self._logger = logger.bind(state_file=str(path))

    @property
    def initialized(self) -> bool:
        return self._state is not None

    @property
    def state(self) -> SyncState:
        if self._state is None:
            raise StateError("State tracker used before initialize()")
        return self._state

    def initialize(self) -> SyncState:
        """Load the stored state, or start empty when there is none.

        Calling it again after a successful load is a no-op.

        Raises:
            StateError: If the stored document is corrupt.
        """
        if self._state is not None:
            return self._state

        data = self.storage.load()
        if data is None:
            self._state = SyncState()
            self._logger.info("No existing state found, starting fresh")
            return self._state

        try:
            self._state = SyncState.model_validate(data)
        except PydanticValidationError as e:
            raise StateError(f"Invalid state document in {self.storage.path}: {e}") from e

        self._logger.info(
            "Loaded existing state",
            last_sync=self._state.last_sync_timestamp,
            processed_issues=len(self._state.processed_issue_ids),
            completed_branches=len(self._state.completed_branches),
        )
        return self._state

    @property
    def last_sync(self) -> str | None:
        return self.state.last_sync_timestamp

    def is_issue_processed(self, issue_key: str) -> bool:
        return issue_key in self.state.processed_issue_ids

    def mark_issue_processed(self, issue_key: str) -> None:
        self.state.processed_issue_ids.add(issue_key)

    def mark_issues_processed(self, issue_keys: list[str]) -> None:
        self.state.processed_issue_ids.update(issue_keys)

    def is_branch_completed(self, branch_name: str) -> bool:
        return branch_name in self.state.completed_branches

    def mark_branch_completed(self, branch_name: str) -> None:
        if branch_name not in self.state.completed_branches:
            self.state.completed_branches.add(branch_name)
            self._logger.info("Branch marked as completed", branch=branch_name)

    def update_last_sync(self, timestamp: str | None = None) -> str:
        self.state.last_sync_timestamp = timestamp or utc_now_iso()
        return self.state.last_sync_timestamp

    async def record_transfer(self, stats: TransferStats) -> HistoryEntry:
        """Append a history entry, move the sync timestamp and persist.

        History keeps the most recent entries only.
        """
        async with self._lock:
            timestamp = utc_now_iso()
            entry = HistoryEntry(
                timestamp=timestamp,
                issues_transferred=stats.issues_transferred,
                components_transferred=stats.components_transferred,
                sources_transferred=stats.sources_transferred,
                lines_of_code=stats.lines_of_code,
            )
            state = self.state
            state.history.append(entry)
            if len(state.history) > MAX_HISTORY_ENTRIES:
                state.history = state.history[-MAX_HISTORY_ENTRIES:]
            state.last_sync_timestamp = timestamp
            self.save()
            return entry

    def save(self) -> None:
        self.storage.save(self.state.to_document())

    def reset(self) -> None:
        """Forget all progress and write the empty state."""
        self._logger.info("Resetting state")
        self._state = SyncState()
        self.save()

    def summary(self) -> dict[str, Any]:
        state = self.state
        return {
            "last_sync": state.last_sync_timestamp,
            "processed_issues_count": len(state.processed_issue_ids),
            "completed_branches": sorted(state.completed_branches),
            "sync_history_count": len(state.history),
        }
