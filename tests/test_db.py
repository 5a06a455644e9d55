"""Tests for schema setup and game pruning."""

from datetime import datetime, timezone

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


def insert_game(database, game_id, updated_at):
    conn = database.get_db()
    cur = conn.cursor()
    cur.execute('''
        INSERT INTO games (id, difficulty, region, subregion, state_json, updated_at)
        VALUES (?, 'beginner', 'all', 'all', '{}', ?)
    ''', (game_id, updated_at))
    conn.commit()
    conn.close()


def game_ids(database):
    conn = database.get_db()
    cur = conn.cursor()
    cur.execute('SELECT id FROM games ORDER BY id')
    ids = [row['id'] for row in cur.fetchall()]
    conn.close()
    return ids


class TestPruneGames:
    """Tests for prune_games."""

    def test_stale_games_are_removed(self, database) -> None:
        """Games untouched for a day are deleted; recent ones stay."""
        insert_game(database, 'old', '2026-01-04 11:59:00')
        insert_game(database, 'recent', '2026-01-05 11:00:00')

        assert database.prune_games(now=NOW) == 1
        assert game_ids(database) == ['recent']

    def test_nothing_to_prune(self, database) -> None:
        """A fresh table is left alone."""
        assert database.prune_games(now=NOW) == 0


class TestInitDb:
    """Tests for init_db."""

    def test_can_run_twice(self, database) -> None:
        """Re-running setup on an existing database keeps the games table usable."""
        database.init_db()
        insert_game(database, 'g1', '2999-01-01 00:00:00')
        assert game_ids(database) == ['g1']
