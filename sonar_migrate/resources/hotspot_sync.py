"""Replaying security hotspot reviews and comments onto SonarCloud."""

import asyncio
from collections.abc import Sequence

import structlog

from sonar_migrate.clients.sonarcloud import SonarCloudClient
from sonar_migrate.extraction import hotspot_from_api
from sonar_migrate.models import Hotspot
from sonar_migrate.resources.issue_sync import match_items, migrated_comment_text
from sonar_migrate.results import SyncStats

logger = structlog.get_logger(__name__)

TO_REVIEW = "TO_REVIEW"
REVIEWED = "REVIEWED"


def review_resolution(hotspot: Hotspot) -> str | None:
    """SonarCloud resolution for a reviewed SonarQube hotspot."""
    if hotspot.resolution in ("ACKNOWLEDGED", "FIXED"):
        return hotspot.resolution
    if hotspot.resolution == "SAFE" or hotspot.status == REVIEWED:
        return "SAFE"
    return None


async def _sync_hotspot(
    source: Hotspot, dest: Hotspot, client: SonarCloudClient, stats: SyncStats
) -> None:
    if source.status != TO_REVIEW and dest.status == TO_REVIEW:
        resolution = review_resolution(source)
        if resolution:
            await client.change_hotspot_status(dest.key, REVIEWED, resolution)
            stats.transitioned += 1

    for comment in source.comments:
        await client.add_hotspot_comment(dest.key, migrated_comment_text(comment))
        stats.commented += 1


async def sync_hotspots(
    project_key: str,
    source_hotspots: Sequence[Hotspot],
    client: SonarCloudClient,
    semaphore: asyncio.Semaphore,
    branch: str | None = None,
) -> SyncStats:
    """Sync hotspot review status and comments of one branch.

    A hotspot reviewed on SonarQube that is still to review on SonarCloud is
    marked reviewed with the same resolution. Per-hotspot failures are
    counted in the returned stats.
    """
    log = logger.bind(project=project_key, branch=branch)
    stats = SyncStats()

    dest_hotspots = [
        hotspot_from_api(raw)
        for raw in await client.search_hotspots(project_key, branch)
    ]
    pairs = match_items(source_hotspots, dest_hotspots)
    stats.matched = len(pairs)

    async def run(source: Hotspot, dest: Hotspot) -> None:
        async with semaphore:
            try:
                await _sync_hotspot(source, dest, client, stats)
            except Exception as e:
                stats.failed += 1
                log.debug("Failed to sync hotspot", hotspot=source.key, error=str(e))

    await asyncio.gather(*(run(s, d) for s, d in pairs))

    log.info("Hotspot sync finished", **stats.to_dict())
    return stats
