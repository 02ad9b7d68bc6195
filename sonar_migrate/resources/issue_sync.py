"""Replaying issue metadata (status, assignee, comments, tags) onto SonarCloud."""

import asyncio
from collections.abc import Sequence
from typing import Any

import structlog

from sonar_migrate.clients.sonarcloud import SonarCloudClient
from sonar_migrate.extraction import issue_from_api
from sonar_migrate.models import Comment, Issue
from sonar_migrate.results import SyncStats
from sonar_migrate.state import StateTracker

logger = structlog.get_logger(__name__)

MIGRATED_COMMENT_PREFIX = "[Migrated from SonarQube]"


def build_match_key(rule: str, component: str, line: int | None) -> str | None:
    """``rule|file path|line``, or None when rule or path is missing.

    The path is the part of the component key after the last ``:``, so the
    key is independent of the project key on either server.
    """
    file_path = component.rsplit(":", 1)[-1] if component else ""
    if not rule or not file_path:
        return None
    return f"{rule}|{file_path}|{line or 0}"


def match_items(
    source_items: Sequence[Any], dest_items: Sequence[Any]
) -> list[tuple[Any, Any]]:
    """Pair source and destination items by match key.

    Several destination items may share a key; each source item takes the
    first one not yet taken.
    """
    candidates: dict[str, list[Any]] = {}
    for item in dest_items:
        key = build_match_key(item.rule, item.component, item.line)
        if key:
            candidates.setdefault(key, []).append(item)

    pairs = []
    for item in source_items:
        key = build_match_key(item.rule, item.component, item.line)
        remaining = candidates.get(key) if key else None
        if remaining:
            pairs.append((item, remaining.pop(0)))
    return pairs


def transition_for(issue: Issue) -> str | None:
    """The SonarCloud transition reproducing a SonarQube status and resolution."""
    if issue.resolution == "FALSE-POSITIVE":
        return "falsepositive"
    if issue.resolution == "WONTFIX":
        return "wontfix"
    return {
        "CONFIRMED": "confirm",
        "RESOLVED": "resolve",
        "CLOSED": "resolve",
        "ACCEPTED": "accept",
        "REOPENED": "reopen",
    }.get(issue.status)


def migrated_comment_text(comment: Comment) -> str:
    return (
        f"{MIGRATED_COMMENT_PREFIX} {comment.login or 'unknown'} "
        f"({comment.created_at}): {comment.markdown}"
    )


async def _sync_issue(
    source: Issue, dest: Issue, client: SonarCloudClient, stats: SyncStats
) -> None:
    if source.status != dest.status:
        transition = transition_for(source)
        if transition:
            await client.transition_issue(dest.key, transition)
            stats.transitioned += 1

    if source.assignee and source.assignee != dest.assignee:
        await client.assign_issue(dest.key, source.assignee)
        stats.assigned += 1

    for comment in source.comments:
        await client.add_issue_comment(dest.key, migrated_comment_text(comment))
        stats.commented += 1

    if source.tags:
        await client.set_issue_tags(dest.key, source.tags)
        stats.tagged += 1


async def sync_issues(
    project_key: str,
    source_issues: Sequence[Issue],
    client: SonarCloudClient,
    semaphore: asyncio.Semaphore,
    branch: str | None = None,
    tracker: StateTracker | None = None,
) -> SyncStats:
    """Sync issue metadata of one branch from SonarQube to SonarCloud.

    Args:
        project_key: Destination project key.
        source_issues: Issues extracted from SonarQube.
        client: Destination client.
        semaphore: Bounds concurrent per-issue syncs.
        branch: Branch the issues belong to.
        tracker: When given, already processed issues are skipped and newly
            synced ones are marked processed.

    Returns:
        Sync counters. A failing issue is counted, never raised.
    """
    log = logger.bind(project=project_key, branch=branch)
    stats = SyncStats()

    pending = list(source_issues)
    if tracker is not None:
        pending = [i for i in pending if not tracker.is_issue_processed(i.key)]
        stats.skipped = len(source_issues) - len(pending)

    dest_issues = [
        issue_from_api(raw) for raw in await client.search_issues(project_key, branch)
    ]
    pairs = match_items(pending, dest_issues)
    stats.matched = len(pairs)
    log.info(
        "Matched issues",
        source=len(pending),
        destination=len(dest_issues),
        matched=stats.matched,
    )

    synced: list[str] = []

    async def run(source: Issue, dest: Issue) -> None:
        async with semaphore:
            try:
                await _sync_issue(source, dest, client, stats)
                synced.append(source.key)
            except Exception as e:
                stats.failed += 1
                log.debug("Failed to sync issue", issue=source.key, error=str(e))

    await asyncio.gather(*(run(s, d) for s, d in pairs))

    if tracker is not None:
        tracker.mark_issues_processed(synced)

    log.info("Issue sync finished", **stats.to_dict())
    return stats
