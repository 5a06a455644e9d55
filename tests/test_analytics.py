"""Tests for the analytics event sink."""

import json

import analytics


def stored_events(database):
    conn = database.get_db()
    cur = conn.cursor()
    cur.execute('SELECT name, user_id, properties_json FROM events ORDER BY id')
    rows = [dict(row) for row in cur.fetchall()]
    conn.close()
    return rows


class TestTrackEvent:
    """Tests for track_event and its helpers."""

    def test_guess_is_recorded(self, database) -> None:
        """A guess is stored with its flat properties."""
        assert analytics.track_guess('France', 'FRA', True, 'beginner', 'all', 'all', False, user_id=4)

        [event] = stored_events(database)
        assert event['name'] == 'flag_guessed'
        assert event['user_id'] == 4
        properties = json.loads(event['properties_json'])
        assert properties['cca3'] == 'FRA'
        assert properties['is_correct'] is True
        assert properties['is_timeout'] is False

    def test_nested_values_are_dropped(self, database) -> None:
        """Only scalar properties are kept."""
        analytics.track_event('game_started', {'difficulty': 'hard', 'extra': {'a': 1}})
        [event] = stored_events(database)
        assert json.loads(event['properties_json']) == {'difficulty': 'hard'}

    def test_unknown_event(self, database) -> None:
        """Events outside the catalogue are ignored."""
        assert not analytics.track_event('page_scrolled', {})
        assert stored_events(database) == []

    def test_failures_are_swallowed(self, monkeypatch) -> None:
        """A failing sink never raises."""
        def broken():
            raise RuntimeError('database is down')

        monkeypatch.setattr(analytics, 'get_db', broken)
        assert analytics.track_difficulty_change('medium') is False
