"""Per-podcast episode sync: decide which records update and which insert."""
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Set, Tuple

from slugify import slugify

from models import (
    EpisodeSyncItem, CacheEpisode, CachePodcastResponse,
    EpisodeUpdate, NewEpisode, PodcastSyncResult,
)

logger = logging.getLogger('castkeeper.sync')

DEFAULT_EPISODE_TYPE = 'full'
DEFAULT_FILE_SIZE = '0'


def build_new_episode(item: EpisodeSyncItem, meta: CacheEpisode, podcast_uuid: str,
                      podcast_title: str, podcast_author: str, podcast_slug: str) -> NewEpisode:
    """Combine the user's sync state with cache metadata into a full row."""
    return NewEpisode(
        uuid=item.uuid,
        url=meta.url,
        title=meta.title,
        podcast_title=podcast_title,
        podcast_uuid=podcast_uuid,
        published=meta.published,
        duration=meta.duration or item.duration,
        file_type=meta.file_type or '',
        size=str(meta.file_size) if meta.file_size else DEFAULT_FILE_SIZE,
        playing_status=item.playing_status,
        played_up_to=item.played_up_to,
        is_deleted=1 if item.is_deleted else 0,
        starred=1 if item.starred else 0,
        episode_type=meta.type or DEFAULT_EPISODE_TYPE,
        episode_season=meta.season or 0,
        episode_number=meta.number or 0,
        author=podcast_author,
        slug=meta.slug,
        podcast_slug=podcast_slug,
    )


def classify_episodes(items: List[EpisodeSyncItem], existing: Set[str],
                      cache: Dict[str, CacheEpisode], podcast_uuid: str,
                      podcast_title: str, podcast_author: str,
                      podcast_slug: str) -> Tuple[List[EpisodeUpdate], List[NewEpisode], int]:
    """Split interacted sync records into updates and inserts.

    Records already stored become EpisodeUpdate. Unknown records become
    NewEpisode when the cache has metadata for them and are dropped
    otherwise.

    Returns:
        Tuple of (updates, inserts, dropped count)
    """
    updates = []
    inserts = []
    dropped = 0

    for item in items:
        if item.uuid in existing:
            updates.append(EpisodeUpdate(
                uuid=item.uuid,
                playing_status=item.playing_status,
                played_up_to=item.played_up_to,
                starred=1 if item.starred else 0,
                is_deleted=1 if item.is_deleted else 0,
            ))
            continue

        meta = cache.get(item.uuid)
        if meta is None:
            logger.debug(f"[{podcast_title}] No cache metadata for episode {item.uuid}, skipping")
            dropped += 1
            continue

        inserts.append(build_new_episode(
            item, meta, podcast_uuid, podcast_title, podcast_author, podcast_slug
        ))

    return updates, inserts, dropped


def _fetch_remote(client, token: str, podcast_uuid: str) -> Tuple[List[EpisodeSyncItem], CachePodcastResponse]:
    """Fetch sync data and cache metadata for one podcast in parallel."""
    with ThreadPoolExecutor(max_workers=2) as executor:
        sync_future = executor.submit(client.fetch_episode_sync_data, token, podcast_uuid)
        cache_future = executor.submit(client.fetch_episode_cache_metadata, podcast_uuid)
        return sync_future.result(), cache_future.result()


def sync_podcast_episodes(client, db, token: str, podcast_uuid: str, podcast_title: str,
                          podcast_author: str = '', podcast_slug: str = '') -> PodcastSyncResult:
    """Bring stored episodes for one podcast in line with the remote.

    Raises:
        RemoteFetchError: If either remote read fails
        sqlite3.Error: If a store write fails
    """
    podcast_slug = podcast_slug or slugify(podcast_title or podcast_uuid)

    sync_items, cache_response = _fetch_remote(client, token, podcast_uuid)
    db.update_podcast_episode_count(podcast_uuid, cache_response.episode_count)

    interacted = [item for item in sync_items if item.has_interaction]
    result = PodcastSyncResult(interacted=len(interacted))
    if not interacted:
        logger.info(f"[{podcast_title}] No interacted episodes ({len(sync_items)} total)")
        return result

    existing = db.get_existing_episode_uuids([item.uuid for item in interacted])
    updates, inserts, dropped = classify_episodes(
        interacted, existing, cache_response.episodes_by_uuid(),
        podcast_uuid, podcast_title, podcast_author, podcast_slug
    )

    if updates:
        result.updated = db.update_episode_sync_data(updates)
    if inserts:
        result.inserted = db.insert_new_episodes(inserts)
    result.dropped = dropped

    logger.info(
        f"[{podcast_title}] {result.interacted} interacted: {result.updated} updated, "
        f"{result.inserted} inserted, {result.dropped} without metadata"
    )
    return result
