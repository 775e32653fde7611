"""REST API for the backup service."""
import logging
import time
from flask import Blueprint, jsonify, request
from functools import wraps

logger = logging.getLogger('castkeeper.api')

# Track server start time for uptime calculation
_start_time = time.time()

api = Blueprint('api', __name__, url_prefix='/api/v1')

MAX_PAGE_SIZE = 500


def get_database():
    """Get database instance."""
    from database import Database
    return Database()


def get_work_queue():
    """Get work queue bound to the database."""
    from work_queue import WorkQueue
    return WorkQueue(get_database())


def log_request(f):
    """Decorator to log API requests with detailed info (IP, user-agent, response time)."""
    @wraps(f)
    def decorated(*args, **kwargs):
        start_time = time.time()
        client_ip = request.headers.get('X-Forwarded-For', request.remote_addr)
        user_agent = request.headers.get('User-Agent', 'Unknown')[:100]

        try:
            result = f(*args, **kwargs)
            elapsed = (time.time() - start_time) * 1000  # ms
            status = result.status_code if hasattr(result, 'status_code') else 200
            logger.info(f"{request.method} {request.path} {status} {elapsed:.0f}ms [{client_ip}] [{user_agent}]")
            return result
        except Exception as e:
            elapsed = (time.time() - start_time) * 1000
            logger.error(f"{request.method} {request.path} ERROR {elapsed:.0f}ms [{client_ip}] - {e}")
            raise
    return decorated


def json_response(data, status=200):
    """Create JSON response with proper headers."""
    response = jsonify(data)
    response.status_code = status
    return response


def error_response(message, status=400, details=None):
    """Create error response."""
    data = {'error': message, 'status': status}
    if details:
        data['details'] = details
    return json_response(data, status)


def _request_filters():
    """Collect ?filter= values, repeated or comma separated."""
    values = []
    for raw in request.args.getlist('filter'):
        values.extend(part.strip() for part in raw.split(',') if part.strip())
    return values


# ========== Backup Endpoints ==========

@api.route('/backup', methods=['POST'])
@log_request
def trigger_backup():
    """Queue a backup run."""
    from backup import queue_backup_run

    unit_id = queue_backup_run(get_work_queue())
    return json_response({'message': 'Backup queued', 'unitId': unit_id}, 202)


@api.route('/backup/status', methods=['GET'])
@log_request
def backup_status():
    """Latest run progress, queue summary and stored totals."""
    db = get_database()
    progress = db.get_backup_progress()

    run = None
    if progress:
        run = {
            'runId': progress['run_id'],
            'total': progress['total'],
            'completed': progress['completed'],
            'historyQueued': bool(progress['history_enqueued']),
            'startedAt': progress['started_at'],
            'updatedAt': progress['updated_at'],
        }

    return json_response({
        'status': 'running',
        'uptime': int(time.time() - _start_time),
        'run': run,
        'queue': db.get_work_queue_status(),
        'stats': db.get_stats(),
    })


# ========== Episode Endpoints ==========

@api.route('/episodes', methods=['GET'])
@log_request
def list_episodes():
    """List stored episodes, most recently played first."""
    db = get_database()

    try:
        limit = min(int(request.args.get('limit', 50)), MAX_PAGE_SIZE)
        offset = int(request.args.get('offset', 0))
    except ValueError:
        return error_response('limit and offset must be integers', 400)
    if limit < 1 or offset < 0:
        return error_response('limit must be positive and offset non-negative', 400)

    filters = db.parse_filters(_request_filters())
    episodes = db.get_episodes(limit=limit, offset=offset, filters=filters)

    return json_response({
        'episodes': [
            {
                'uuid': ep['uuid'],
                'title': ep['title'],
                'podcastUuid': ep['podcast_uuid'],
                'podcastTitle': ep['podcast_title'],
                'url': ep['url'],
                'published': ep['published'],
                'duration': ep['duration'],
                'playingStatus': ep['playing_status'],
                'playedUpTo': ep['played_up_to'],
                'starred': bool(ep['starred']),
                'archived': bool(ep['is_deleted']),
                'playedAt': ep['played_at'],
            }
            for ep in episodes
        ],
        'total': db.get_episode_count(filters),
        'limit': limit,
        'offset': offset,
        'filters': filters,
    })


# ========== Podcast Endpoints ==========

@api.route('/podcasts', methods=['GET'])
@log_request
def list_podcasts():
    """List podcasts, including unsubscribed ones, with listening stats."""
    db = get_database()

    podcasts = []
    for podcast in db.get_podcasts_with_stats():
        podcasts.append({
            'uuid': podcast['uuid'],
            'title': podcast['title'],
            'author': podcast['author'],
            'slug': podcast['slug'],
            'url': podcast['url'],
            'episodeCount': podcast['episode_count'],
            'totalEpisodes': podcast['total_episodes'],
            'playedCount': podcast['played_count'],
            'starredCount': podcast['starred_count'],
            'totalPlayedTime': podcast['total_played_time'],
            'dateAdded': podcast['date_added'],
            'deletedAt': podcast['deleted_at'],
        })

    return json_response({'podcasts': podcasts})


# ========== Bookmark Endpoints ==========

@api.route('/bookmarks', methods=['GET'])
@log_request
def list_bookmarks():
    """List bookmarks with their episode titles when known."""
    db = get_database()

    bookmarks = []
    for bookmark in db.get_bookmarks_with_episodes():
        bookmarks.append({
            'bookmarkUuid': bookmark['bookmark_uuid'],
            'podcastUuid': bookmark['podcast_uuid'],
            'episodeUuid': bookmark['episode_uuid'],
            'time': bookmark['time'],
            'title': bookmark['title'],
            'createdAt': bookmark['created_at'],
            'deletedAt': bookmark['deleted_at'],
            'episodeTitle': bookmark['episode_title'],
            'podcastTitle': bookmark['podcast_title'],
            'episodeDuration': bookmark['episode_duration'],
        })

    return json_response({'bookmarks': bookmarks})
