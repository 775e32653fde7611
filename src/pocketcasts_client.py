"""Pocket Casts HTTP API client.

Thin typed wrapper over the endpoints the backup pipeline reads. Every
failure (non-2xx status or transport error) surfaces as RemoteFetchError
carrying the status code and the resource that was being fetched.
"""
import logging
from typing import Dict, List, Optional

import requests

from config import API_BASE_URL, CACHE_BASE_URL, REQUEST_TIMEOUT
from models import (
    HistoryYearResponse, EpisodeSyncItem, CachePodcastResponse,
    Podcast, Bookmark,
)

logger = logging.getLogger(__name__)

USER_AGENT = 'Castkeeper/1.0'


class RemoteFetchError(Exception):
    """Raised when a remote API call fails.

    Attributes:
        status_code: HTTP status, or 0 for transport errors
        resource: What was being fetched (year, podcast uuid, list name)
    """

    def __init__(self, message: str, status_code: int = 0, resource: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.resource = resource


class PocketCastsClient:
    """Client for the Pocket Casts sync API and public metadata cache."""

    def __init__(self, api_url: str = None, cache_url: str = None,
                 timeout: int = REQUEST_TIMEOUT, session: requests.Session = None):
        self.api_url = (api_url or API_BASE_URL).rstrip('/')
        self.cache_url = (cache_url or CACHE_BASE_URL).rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'User-Agent': USER_AGENT})

    def _request(self, method: str, url: str, description: str, resource: str,
                 token: str = None, body: Dict = None) -> Dict:
        """Issue a request and return the decoded JSON body.

        Raises:
            RemoteFetchError: On transport failure or non-success status
        """
        headers = {}
        if token:
            headers['Authorization'] = f"Bearer {token}"
        if body is not None:
            headers['Content-Type'] = 'application/json'

        try:
            response = self.session.request(
                method, url, json=body, headers=headers,
                timeout=self.timeout, allow_redirects=True
            )
        except requests.RequestException as e:
            raise RemoteFetchError(f"Failed to fetch {description}: {e}", 0, resource) from e

        if not response.ok:
            logger.warning(f"{method} {url} returned {response.status_code}: {response.text[:200]}")
            raise RemoteFetchError(
                f"Failed to fetch {description}: {response.status_code}",
                response.status_code,
                resource
            )

        try:
            return response.json()
        except ValueError as e:
            raise RemoteFetchError(
                f"Failed to fetch {description}: invalid JSON", response.status_code, resource
            ) from e

    def login(self, email: str, password: str) -> str:
        """Exchange account credentials for a bearer token."""
        data = self._request(
            'POST', f"{self.api_url}/user/login", 'login token', 'login',
            body={'email': email, 'password': password, 'scope': 'webplayer'}
        )
        token = data.get('token') if isinstance(data, dict) else None
        if not token:
            raise RemoteFetchError("Failed to fetch login token: no token in response", 200, 'login')
        return token

    def fetch_history_year(self, token: str, year: int, count_only: bool) -> HistoryYearResponse:
        """Fetch one year of listen history, or just its entry count."""
        data = self._request(
            'POST', f"{self.api_url}/history/year", f"history for {year}", str(year),
            token=token, body={'version': '1', 'count': count_only, 'year': year}
        )
        return HistoryYearResponse.from_dict(data)

    def fetch_episode_sync_data(self, token: str, podcast_uuid: str) -> List[EpisodeSyncItem]:
        """Fetch the user's per-episode state for one podcast."""
        data = self._request(
            'POST', f"{self.api_url}/user/podcast/episodes",
            f"episode sync data for {podcast_uuid}", podcast_uuid,
            token=token, body={'uuid': podcast_uuid}
        )
        episodes = (data or {}).get('episodes') or []
        return [EpisodeSyncItem.from_dict(ep) for ep in episodes]

    def fetch_episode_cache_metadata(self, podcast_uuid: str) -> CachePodcastResponse:
        """Fetch full episode metadata for a podcast from the public cache."""
        data = self._request(
            'GET', f"{self.cache_url}/mobile/podcast/full/{podcast_uuid}",
            f"podcast metadata for {podcast_uuid}", podcast_uuid
        )
        return CachePodcastResponse.from_dict(data)

    def fetch_current_podcasts(self, token: str) -> List[Podcast]:
        """Fetch the current subscription list."""
        data = self._request(
            'POST', f"{self.api_url}/user/podcast/list", 'podcast list', 'podcast-list',
            token=token, body={}
        )
        podcasts = (data or {}).get('podcasts') or []
        return [Podcast.from_dict(p) for p in podcasts]

    def fetch_current_bookmarks(self, token: str) -> List[Bookmark]:
        """Fetch all current bookmarks."""
        data = self._request(
            'POST', f"{self.api_url}/user/bookmark/list", 'bookmarks', 'bookmark-list',
            token=token, body={}
        )
        bookmarks = (data or {}).get('bookmarks') or []
        return [Bookmark.from_dict(b) for b in bookmarks]
