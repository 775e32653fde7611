"""Typed shapes for remote API responses and store records.

Remote payloads are loosely shaped JSON. Each from_dict() guards absent or
null fields with an explicit default so the sync code never has to.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any


def _int(value, default: int = 0) -> int:
    """Coerce a JSON number (or null/str) to int."""
    if value is None or value == '':
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _str(value, default: str = '') -> str:
    return default if value is None else str(value)


# ========== Remote Shapes ==========

@dataclass
class HistoryChange:
    """One change record from the yearly history endpoint."""
    action: int
    episode: str
    modified_at: str  # epoch milliseconds, as sent by the API

    @classmethod
    def from_dict(cls, data: Dict) -> 'HistoryChange':
        return cls(
            action=_int(data.get('action')),
            episode=_str(data.get('episode')),
            modified_at=_str(data.get('modifiedAt')),
        )


@dataclass
class HistoryYearResponse:
    """Response of a history/year query (count-only or full)."""
    count: int = 0
    changes: List[HistoryChange] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'HistoryYearResponse':
        data = data or {}
        history = data.get('history') or {}
        changes = history.get('changes') or []
        return cls(
            count=_int(data.get('count')),
            changes=[HistoryChange.from_dict(c) for c in changes],
        )


@dataclass
class EpisodeSyncItem:
    """Per-episode user state from the podcast episodes sync endpoint."""
    uuid: str
    playing_status: int = 0  # 0 unknown, 1 not started, 2 in progress, 3 played
    played_up_to: int = 0
    is_deleted: bool = False
    starred: bool = False
    duration: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def has_interaction(self) -> bool:
        """True when the user has started or finished the episode."""
        return self.playing_status > 0 or self.played_up_to > 0

    @classmethod
    def from_dict(cls, data: Dict) -> 'EpisodeSyncItem':
        return cls(
            uuid=_str(data.get('uuid')),
            playing_status=_int(data.get('playingStatus')),
            played_up_to=_int(data.get('playedUpTo')),
            is_deleted=bool(data.get('isDeleted')),
            starred=bool(data.get('starred')),
            duration=_int(data.get('duration')),
            raw=data,
        )


@dataclass
class CacheEpisode:
    """Episode metadata from the public podcast cache."""
    uuid: str
    title: str = ''
    slug: str = ''
    url: str = ''
    file_type: str = ''
    file_size: int = 0
    duration: int = 0
    published: str = ''
    type: str = ''
    season: int = 0
    number: int = 0

    @classmethod
    def from_dict(cls, data: Dict) -> 'CacheEpisode':
        return cls(
            uuid=_str(data.get('uuid')),
            title=_str(data.get('title')),
            slug=_str(data.get('slug')),
            url=_str(data.get('url')),
            file_type=_str(data.get('file_type')),
            file_size=_int(data.get('file_size')),
            duration=_int(data.get('duration')),
            published=_str(data.get('published')),
            type=_str(data.get('type')),
            season=_int(data.get('season')),
            number=_int(data.get('number')),
        )


@dataclass
class CachePodcastResponse:
    """Full podcast listing from the metadata cache."""
    episode_count: int = 0
    has_more_episodes: bool = False
    podcast_uuid: str = ''
    title: str = ''
    author: str = ''
    slug: str = ''
    episodes: List[CacheEpisode] = field(default_factory=list)

    def episodes_by_uuid(self) -> Dict[str, CacheEpisode]:
        return {ep.uuid: ep for ep in self.episodes}

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> 'CachePodcastResponse':
        data = data or {}
        podcast = data.get('podcast') or {}
        episodes = podcast.get('episodes') or []
        return cls(
            episode_count=_int(data.get('episode_count'), len(episodes)),
            has_more_episodes=bool(data.get('has_more_episodes')),
            podcast_uuid=_str(podcast.get('uuid')),
            title=_str(podcast.get('title')),
            author=_str(podcast.get('author')),
            slug=_str(podcast.get('slug')),
            episodes=[CacheEpisode.from_dict(ep) for ep in episodes],
        )


@dataclass
class Podcast:
    """A subscribed podcast from the user's podcast list."""
    uuid: str
    title: str = ''
    author: str = ''
    description: str = ''
    url: str = ''
    slug: str = ''
    date_added: str = ''
    folder_uuid: str = ''
    sort_position: int = 0
    is_private: bool = False
    auto_start_from: int = 0
    auto_skip_last: int = 0
    episodes_sort_order: int = 0
    last_episode_uuid: str = ''
    last_episode_published: str = ''
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Dict) -> 'Podcast':
        return cls(
            uuid=_str(data.get('uuid')),
            title=_str(data.get('title')),
            author=_str(data.get('author')),
            description=_str(data.get('description')),
            url=_str(data.get('url')),
            slug=_str(data.get('slug')),
            date_added=_str(data.get('dateAdded')),
            folder_uuid=_str(data.get('folderUuid')),
            sort_position=_int(data.get('sortPosition')),
            is_private=bool(data.get('isPrivate')),
            auto_start_from=_int(data.get('autoStartFrom')),
            auto_skip_last=_int(data.get('autoSkipLast')),
            episodes_sort_order=_int(data.get('episodesSortOrder')),
            last_episode_uuid=_str(data.get('lastEpisodeUuid')),
            last_episode_published=_str(data.get('lastEpisodePublished')),
            raw=data,
        )


@dataclass
class Bookmark:
    """A bookmark (timestamped marker inside an episode)."""
    bookmark_uuid: str
    podcast_uuid: str = ''
    episode_uuid: str = ''
    time: int = 0
    title: str = ''
    created_at: str = ''
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: Dict) -> 'Bookmark':
        return cls(
            bookmark_uuid=_str(data.get('bookmarkUuid')),
            podcast_uuid=_str(data.get('podcastUuid')),
            episode_uuid=_str(data.get('episodeUuid')),
            time=_int(data.get('time')),
            title=_str(data.get('title')),
            created_at=_str(data.get('createdAt')),
            raw=data,
        )


# ========== Sync Records ==========

@dataclass
class HistoryEntry:
    """Deduplicated play: most recent listen per episode. Never stored as-is."""
    uuid: str
    played_at: str


@dataclass
class EpisodeUpdate:
    """Mutable sync fields applied to an already stored episode."""
    uuid: str
    playing_status: int
    played_up_to: int
    starred: int
    is_deleted: int


@dataclass
class NewEpisode:
    """Complete episode row built from sync data plus cache metadata."""
    uuid: str
    url: str
    title: str
    podcast_title: str
    podcast_uuid: str
    published: str
    duration: int
    file_type: str
    size: str
    playing_status: int
    played_up_to: int
    is_deleted: int
    starred: int
    episode_type: str
    episode_season: int
    episode_number: int
    author: str
    slug: str
    podcast_slug: str


@dataclass
class PlayedAtResult:
    """Outcome of a monotonic played_at pass."""
    updated: int = 0
    skipped: int = 0


@dataclass
class PodcastSyncResult:
    """Counts from one podcast's episode sync."""
    interacted: int = 0
    updated: int = 0
    inserted: int = 0
    dropped: int = 0


@dataclass
class BackupProgress:
    """Progress counter snapshot for one backup run."""
    run_id: str
    total: int
    completed: int
    finished_now: bool = False  # True only for the call that completed the run
