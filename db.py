import logging
import os
import sqlite3
from datetime import datetime, timedelta, timezone

logger = logging.getLogger(__name__)

# Database configuration
DATABASE_URL = os.environ.get('DATABASE_URL', '')
if DATABASE_URL and DATABASE_URL.startswith('postgres'):
    # PostgreSQL for production
    USE_POSTGRES = True
    if DATABASE_URL.startswith('postgres://'):
        DATABASE_URL = DATABASE_URL.replace('postgres://', 'postgresql://', 1)
else:
    # SQLite for local development
    USE_POSTGRES = False

DATABASE = os.environ.get('DATABASE_PATH') or os.path.join(
    os.path.dirname(os.path.abspath(__file__)), 'flagmaster.db')

# Unfinished and finished games alike are dropped after a day without updates
GAME_MAX_AGE = timedelta(hours=24)


def get_placeholder():
    """Return the correct placeholder for the current database."""
    return '%s' if USE_POSTGRES else '?'


def get_db():
    if USE_POSTGRES:
        import psycopg2
        from psycopg2.extras import RealDictCursor
        conn = psycopg2.connect(DATABASE_URL)
        conn.cursor_factory = RealDictCursor
        return conn
    else:
        conn = sqlite3.connect(DATABASE)
        conn.row_factory = sqlite3.Row
        return conn


def init_db():
    conn = get_db()
    cur = conn.cursor()

    if USE_POSTGRES:
        id_column = 'SERIAL PRIMARY KEY'
    else:
        id_column = 'INTEGER PRIMARY KEY AUTOINCREMENT'

    cur.execute(f'''
        CREATE TABLE IF NOT EXISTS users (
            id {id_column},
            google_id TEXT UNIQUE,
            email TEXT,
            display_name TEXT NOT NULL,
            photo_url TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    # Scores are insert-only; day_id/week_id are the period buckets the
    # leaderboard filters on.
    cur.execute(f'''
        CREATE TABLE IF NOT EXISTS scores (
            id {id_column},
            uid TEXT NOT NULL,
            display_name TEXT NOT NULL,
            photo_url TEXT,
            score INTEGER NOT NULL,
            accuracy REAL NOT NULL,
            average_time REAL NOT NULL,
            difficulty TEXT NOT NULL,
            country TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            day_id TEXT NOT NULL,
            week_id TEXT NOT NULL
        )
    ''')

    cur.execute(f'''
        CREATE TABLE IF NOT EXISTS games (
            id TEXT PRIMARY KEY,
            user_id INTEGER,
            difficulty TEXT NOT NULL,
            region TEXT NOT NULL,
            subregion TEXT NOT NULL,
            state_json TEXT NOT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            results_json TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')
    conn.commit()

    # Add columns if they don't exist (for existing databases)
    for col_sql in [
        'ALTER TABLE games ADD COLUMN results_json TEXT',
    ]:
        try:
            cur.execute(col_sql)
            conn.commit()
        except Exception:
            conn.rollback()

    cur.execute(f'''
        CREATE TABLE IF NOT EXISTS events (
            id {id_column},
            name TEXT NOT NULL,
            user_id INTEGER,
            properties_json TEXT NOT NULL,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
    ''')

    conn.commit()

    index_statements = [
        'CREATE INDEX IF NOT EXISTS idx_scores_difficulty ON scores(difficulty)',
        'CREATE INDEX IF NOT EXISTS idx_scores_day ON scores(difficulty, day_id)',
        'CREATE INDEX IF NOT EXISTS idx_scores_week ON scores(difficulty, week_id)',
        'CREATE INDEX IF NOT EXISTS idx_scores_country ON scores(country)',
        'CREATE INDEX IF NOT EXISTS idx_events_name ON events(name)',
        'CREATE INDEX IF NOT EXISTS idx_games_updated ON games(updated_at)',
    ]

    for stmt in index_statements:
        try:
            cur.execute(stmt)
        except Exception as e:
            logger.warning("Index creation note: %s", e)
            if USE_POSTGRES:
                conn.rollback()

    conn.commit()
    conn.close()

    prune_games()


def prune_games(max_age=GAME_MAX_AGE, now=None):
    """Delete games not touched within `max_age`. Returns the number removed."""
    now = now or datetime.now(timezone.utc)
    # CURRENT_TIMESTAMP is stored as UTC 'YYYY-MM-DD HH:MM:SS'
    cutoff = (now - max_age).strftime('%Y-%m-%d %H:%M:%S')
    conn = get_db()
    cur = conn.cursor()
    ph = get_placeholder()
    cur.execute(f'DELETE FROM games WHERE updated_at < {ph}', (cutoff,))
    removed = cur.rowcount
    conn.commit()
    conn.close()
    if removed:
        logger.info("Pruned %d stale games", removed)
    return removed
