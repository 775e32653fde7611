"""Listen history merge across the yearly history endpoint.

The remote keeps history in one bucket per calendar year. Walking from the
current year backward, each year is checked with a count query first; the
first empty year ends the walk. Plays are deduplicated per episode and the
newest year wins, so each episode ends up with its most recent play.
"""
import logging
from typing import List, Optional, Set

from config import HISTORY_FLOOR_YEAR, PLAY_ACTION
from models import HistoryEntry
from utils.time import epoch_ms_to_iso, current_year as utc_current_year

logger = logging.getLogger('castkeeper.history')


def get_listen_history(client, token: str, current_year: Optional[int] = None) -> List[HistoryEntry]:
    """Build the deduplicated play history for the account.

    Args:
        client: PocketCastsClient (or anything with fetch_history_year)
        token: Bearer token from login
        current_year: Year to start from; defaults to the current UTC year

    Returns:
        HistoryEntry list in first-seen order (newest year first)

    Raises:
        RemoteFetchError: If any count or full query fails. Nothing
            partial is returned.
    """
    start_year = current_year if current_year is not None else utc_current_year()
    seen: Set[str] = set()
    entries: List[HistoryEntry] = []

    for year in range(start_year, HISTORY_FLOOR_YEAR - 1, -1):
        count_response = client.fetch_history_year(token, year, count_only=True)
        logger.info(f"[History] Year {year}: {count_response.count} entries reported")
        if count_response.count == 0:
            logger.info(f"[History] No entries for {year}, stopping")
            break

        response = client.fetch_history_year(token, year, count_only=False)
        plays = 0
        added = 0
        duplicates = 0
        malformed = 0
        for change in response.changes:
            if change.action != PLAY_ACTION:
                continue
            plays += 1

            played_at = None
            if change.episode and change.modified_at:
                try:
                    played_at = epoch_ms_to_iso(change.modified_at)
                except ValueError:
                    pass
            if played_at is None:
                logger.warning(f"[History] Year {year}: dropping malformed play record {change}")
                malformed += 1
                continue

            if change.episode in seen:
                duplicates += 1
                continue
            seen.add(change.episode)
            entries.append(HistoryEntry(uuid=change.episode, played_at=played_at))
            added += 1

        logger.info(
            f"[History] Year {year}: {len(response.changes)} changes, {plays} plays, "
            f"{added} new, {duplicates} duplicates, {malformed} malformed, "
            f"{len(response.changes) - plays} non-play"
        )

    if entries:
        played = sorted(e.played_at for e in entries)
        logger.info(
            f"[History] Merged {len(entries)} episodes "
            f"(oldest {played[0]}, newest {played[-1]})"
        )
    else:
        logger.info("[History] No listen history found")

    return entries
