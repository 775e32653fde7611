"""Shared pytest fixtures for backup service tests."""
import os
import sys
import tempfile
import shutil
import pytest
from unittest.mock import MagicMock

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from database import Database
from models import (
    Podcast, Bookmark, NewEpisode, EpisodeSyncItem, CacheEpisode,
    CachePodcastResponse, HistoryYearResponse,
)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test data."""
    tmpdir = tempfile.mkdtemp(prefix='castkeeper_test_')
    yield tmpdir
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def temp_db(temp_dir):
    """Create a temporary database for testing.

    IMPORTANT: Database uses singleton pattern - we must reset _instance
    to get a fresh database for each test.
    """
    # Reset singleton to ensure fresh database
    Database._instance = None

    db = Database(data_dir=temp_dir)
    yield db

    # Reset singleton after test
    Database._instance = None


def make_podcast(uuid, title=None, sort_position=0, **kwargs):
    """Build a Podcast as the list endpoint would return it."""
    return Podcast(
        uuid=uuid,
        title=title or f"Podcast {uuid}",
        author=kwargs.pop('author', 'Author'),
        slug=kwargs.pop('slug', f"podcast-{uuid}".lower()),
        sort_position=sort_position,
        raw={'uuid': uuid},
        **kwargs
    )


def make_bookmark(bookmark_uuid, episode_uuid='ep-1', created_at='2024-01-01T00:00:00.000Z'):
    return Bookmark(
        bookmark_uuid=bookmark_uuid,
        podcast_uuid='pod-1',
        episode_uuid=episode_uuid,
        time=120,
        title=f"Bookmark {bookmark_uuid}",
        created_at=created_at,
        raw={'bookmarkUuid': bookmark_uuid},
    )


def make_new_episode(uuid, podcast_uuid='pod-1', **kwargs):
    """Build a NewEpisode with sensible defaults."""
    fields = dict(
        uuid=uuid,
        url=f"https://example.com/{uuid}.mp3",
        title=f"Episode {uuid}",
        podcast_title='Test Podcast',
        podcast_uuid=podcast_uuid,
        published='2024-01-01T00:00:00Z',
        duration=3600,
        file_type='audio/mpeg',
        size='1000',
        playing_status=2,
        played_up_to=60,
        is_deleted=0,
        starred=0,
        episode_type='full',
        episode_season=0,
        episode_number=0,
        author='Author',
        slug=f"episode-{uuid}".lower(),
        podcast_slug='test-podcast',
    )
    fields.update(kwargs)
    return NewEpisode(**fields)


def make_sync_item(uuid, playing_status=0, played_up_to=0, starred=False,
                   is_deleted=False, duration=0):
    return EpisodeSyncItem(
        uuid=uuid,
        playing_status=playing_status,
        played_up_to=played_up_to,
        starred=starred,
        is_deleted=is_deleted,
        duration=duration,
    )


def make_cache(episodes, episode_count=None):
    """Build a CachePodcastResponse from CacheEpisode list."""
    return CachePodcastResponse(
        episode_count=len(episodes) if episode_count is None else episode_count,
        podcast_uuid='pod-1',
        title='Test Podcast',
        episodes=episodes,
    )


def make_cache_episode(uuid, **kwargs):
    fields = dict(
        uuid=uuid,
        title=f"Episode {uuid}",
        slug=f"episode-{uuid}".lower(),
        url=f"https://example.com/{uuid}.mp3",
        file_type='audio/mpeg',
        file_size=1000,
        duration=1800,
        published='2024-01-01T00:00:00Z',
        type='full',
    )
    fields.update(kwargs)
    return CacheEpisode(**fields)


@pytest.fixture
def mock_client():
    """PocketCastsClient stand-in with empty responses by default."""
    client = MagicMock()
    client.login.return_value = 'test-token'
    client.fetch_current_podcasts.return_value = []
    client.fetch_current_bookmarks.return_value = []
    client.fetch_episode_sync_data.return_value = []
    client.fetch_episode_cache_metadata.return_value = make_cache([])
    client.fetch_history_year.return_value = HistoryYearResponse(count=0)
    return client


@pytest.fixture
def app_client(temp_db):
    """Flask test client with the API blueprint mounted."""
    from flask import Flask
    from api import api

    app = Flask(__name__)
    app.register_blueprint(api)
    app.config['TESTING'] = True
    app.config['DEBUG'] = False

    with app.test_client() as client:
        yield client
