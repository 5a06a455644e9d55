import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

import requests

from db import get_db, get_placeholder
from game import DIFFICULTIES

logger = logging.getLogger(__name__)

LEADERBOARD_LIMIT = 20
TIME_FRAMES = ['daily', 'weekly', 'all-time']
SCOPES = ['global', 'country']

GEOIP_URL = os.environ.get('GEOIP_URL', 'http://ip-api.com/json/')
DEFAULT_COUNTRY = 'NG'
COUNTRY_CACHE_TTL = 24 * 60 * 60

ENTRY_FIELDS = [
    'id', 'uid', 'display_name', 'photo_url', 'score', 'accuracy', 'average_time',
    'difficulty', 'country', 'timestamp', 'day_id', 'week_id',
]


def get_period_ids(now: Optional[datetime] = None):
    """Return (day_id, week_id) for a UTC timestamp, e.g. ('2026-01-05', '2026-W2')."""
    now = now or datetime.now(timezone.utc)
    day_id = now.date().isoformat()
    iso = now.isocalendar()
    week_id = f"{iso[0]}-W{iso[1]}"
    return day_id, week_id


def submit_score(user, score, accuracy, average_time, difficulty, country, now=None):
    """Insert a leaderboard entry.

    `user` is a mapping with uid, display_name and photo_url. Failures are
    logged and swallowed so a broken store never interrupts a game; the
    new row id is returned on success, None otherwise.
    """
    now = now or datetime.now(timezone.utc)
    day_id, week_id = get_period_ids(now)
    conn = None
    try:
        conn = get_db()
        cur = conn.cursor()
        ph = get_placeholder()
        values = (
            str(user['uid']),
            user.get('display_name') or 'Anonymous',
            user.get('photo_url'),
            int(score),
            round(float(accuracy), 1),
            round(float(average_time), 1),
            difficulty,
            (country or DEFAULT_COUNTRY).upper(),
            now.isoformat(),
            day_id,
            week_id,
        )
        sql = f'''
            INSERT INTO scores (uid, display_name, photo_url, score, accuracy, average_time,
                                difficulty, country, timestamp, day_id, week_id)
            VALUES ({', '.join([ph] * len(values))})
        '''
        if get_placeholder() == '%s':
            cur.execute(sql + ' RETURNING id', values)
            entry_id = dict(cur.fetchone())['id']
        else:
            cur.execute(sql, values)
            entry_id = cur.lastrowid
        conn.commit()
        return entry_id
    except Exception:
        logger.exception("Error submitting score for %s", user.get('uid'))
        return None
    finally:
        if conn is not None:
            conn.close()


def query_leaderboard(difficulty, time_frame='all-time', scope='global', country=None,
                      limit=LEADERBOARD_LIMIT, now=None) -> List[Dict]:
    """Return the top entries for a difficulty, best first."""
    if difficulty not in DIFFICULTIES:
        raise ValueError(f'Unknown difficulty: {difficulty}')
    if time_frame not in TIME_FRAMES:
        raise ValueError(f'Unknown time frame: {time_frame}')
    if scope not in SCOPES:
        raise ValueError(f'Unknown scope: {scope}')

    ph = get_placeholder()
    clauses = [f'difficulty = {ph}']
    params = [difficulty]

    day_id, week_id = get_period_ids(now)
    if time_frame == 'daily':
        clauses.append(f'day_id = {ph}')
        params.append(day_id)
    elif time_frame == 'weekly':
        clauses.append(f'week_id = {ph}')
        params.append(week_id)

    if scope == 'country' and country:
        clauses.append(f'country = {ph}')
        params.append(country.upper())

    params.append(int(limit))
    conn = get_db()
    try:
        cur = conn.cursor()
        cur.execute(f'''
            SELECT {', '.join(ENTRY_FIELDS)} FROM scores
            WHERE {' AND '.join(clauses)}
            ORDER BY score DESC, average_time ASC
            LIMIT {ph}
        ''', tuple(params))
        return [dict(row) for row in cur.fetchall()]
    finally:
        conn.close()


def dedupe_entries(entries: List[Dict]) -> List[Dict]:
    """Keep one entry per uid: the higher score, then the lower average time.

    The result is ranked by (score desc, average_time asc) and each entry
    gets a 1-based 'rank'.
    """
    best: Dict[str, Dict] = {}
    for entry in entries:
        current = best.get(entry['uid'])
        if current is None or _sort_key(entry) < _sort_key(current):
            best[entry['uid']] = entry

    ranked = sorted(best.values(), key=_sort_key)
    return [dict(entry, rank=i + 1) for i, entry in enumerate(ranked)]


def _sort_key(entry):
    return (-entry['score'], entry['average_time'])


def get_leaderboard(difficulty, time_frame='all-time', scope='global', country=None, now=None):
    """Query the store and collapse it to one row per player."""
    entries = query_leaderboard(difficulty, time_frame, scope, country, now=now)
    return dedupe_entries(entries)


def detect_user_country(ip=None, cache=None, timeout=5):
    """Return the ISO-2 country code for an IP address.

    `cache` is any mutable mapping (the Flask session in the web app); a
    lookup younger than a day is reused. When the lookup fails the cached
    value is returned even if stale, else DEFAULT_COUNTRY.
    """
    cache = cache if cache is not None else {}
    cached = cache.get('user_country')
    cached_at = cache.get('user_country_time')
    if cached and cached_at and time.time() - cached_at < COUNTRY_CACHE_TTL:
        return cached

    url = GEOIP_URL + (ip or '')
    try:
        resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
        code = (resp.json().get('countryCode') or 'US').upper()
    except (requests.RequestException, ValueError) as e:
        logger.warning("Failed to detect country: %s", e)
        return cached or DEFAULT_COUNTRY

    cache['user_country'] = code
    cache['user_country_time'] = time.time()
    return code


def snapshot_stream(fetch, poll_interval=3.0, sleep=time.sleep, keepalive_every=10,
                    max_seconds=None, clock=time.monotonic):
    """Yield server-sent events for leaderboard snapshots.

    `fetch` is polled every `poll_interval` seconds; a `data:` event is sent
    for the first snapshot and whenever it changes, and a comment line keeps
    idle connections open. With `max_seconds` the stream ends after that long
    and the browser's EventSource reconnects on its own.
    """
    last = None
    idle = 0
    started = clock()
    while max_seconds is None or clock() - started < max_seconds:
        payload = json.dumps(fetch(), sort_keys=True, default=str)
        if payload != last:
            last = payload
            idle = 0
            yield f"data: {payload}\n\n"
        else:
            idle += 1
            if idle >= keepalive_every:
                idle = 0
                yield ": keep-alive\n\n"
        sleep(poll_interval)
