import json
import logging

from db import get_db, get_placeholder

logger = logging.getLogger(__name__)

EVENT_NAMES = {
    'game_started',
    'flag_guessed',
    'difficulty_changed',
    'region_changed',
    'score_submitted',
}


def track_event(name, properties=None, user_id=None):
    """Record an analytics event. Best effort: errors are logged, never raised."""
    if name not in EVENT_NAMES:
        logger.warning("Ignoring unknown analytics event %r", name)
        return False

    # Flat property map only
    flat = {
        key: value for key, value in (properties or {}).items()
        if value is None or isinstance(value, (str, int, float, bool))
    }

    conn = None
    try:
        conn = get_db()
        cur = conn.cursor()
        ph = get_placeholder()
        cur.execute(f'''
            INSERT INTO events (name, user_id, properties_json)
            VALUES ({ph}, {ph}, {ph})
        ''', (name, user_id, json.dumps(flat, sort_keys=True)))
        conn.commit()
        return True
    except Exception as e:
        logger.warning("Analytics tracking error for %s: %s", name, e)
        return False
    finally:
        if conn is not None:
            conn.close()


def track_game_start(difficulty, region, subregion, user_id=None):
    return track_event('game_started', {
        'difficulty': difficulty,
        'region': region,
        'subregion': subregion,
    }, user_id)


def track_guess(country, cca3, is_correct, difficulty, region, subregion, is_timeout, user_id=None):
    return track_event('flag_guessed', {
        'country': country,
        'cca3': cca3,
        'is_correct': is_correct,
        'difficulty': difficulty,
        'region': region,
        'subregion': subregion,
        'is_timeout': is_timeout,
    }, user_id)


def track_difficulty_change(difficulty, user_id=None):
    return track_event('difficulty_changed', {'difficulty': difficulty}, user_id)


def track_region_change(region, subregion, user_id=None):
    return track_event('region_changed', {'region': region, 'subregion': subregion}, user_id)


def track_score_submitted(score, accuracy, difficulty, user_id=None):
    return track_event('score_submitted', {
        'score': score,
        'accuracy': accuracy,
        'difficulty': difficulty,
    }, user_id)
