import os
import tempfile

import pytest

# The app initializes its database on import; keep that out of the repo.
os.environ.setdefault('DATABASE_PATH', os.path.join(tempfile.mkdtemp(), 'import.db'))
os.environ.pop('DATABASE_URL', None)
os.environ.pop('GOOGLE_CLIENT_ID', None)

import db  # noqa: E402


def make_country(name, cca3, region, subregion, population):
    return {
        'name': {'common': name, 'official': name},
        'cca3': cca3,
        'flags': {'png': f'https://flagcdn.com/w320/{cca3.lower()}.png',
                  'svg': f'https://flagcdn.com/{cca3.lower()}.svg',
                  'alt': f'The flag of {name}'},
        'region': region,
        'subregion': subregion,
        'population': population,
    }


SAMPLE_COUNTRIES = [
    make_country('France', 'FRA', 'Europe', 'Western Europe', 67_000_000),
    make_country('Germany', 'DEU', 'Europe', 'Western Europe', 83_000_000),
    make_country('Belgium', 'BEL', 'Europe', 'Western Europe', 11_500_000),
    make_country('Netherlands', 'NLD', 'Europe', 'Western Europe', 17_500_000),
    make_country('Italy', 'ITA', 'Europe', 'Southern Europe', 60_000_000),
    make_country('Spain', 'ESP', 'Europe', 'Southern Europe', 47_000_000),
    make_country('Japan', 'JPN', 'Asia', 'Eastern Asia', 125_000_000),
    make_country('China', 'CHN', 'Asia', 'Eastern Asia', 1_410_000_000),
    make_country('India', 'IND', 'Asia', 'Southern Asia', 1_420_000_000),
    make_country('Nigeria', 'NGA', 'Africa', 'Western Africa', 218_000_000),
    make_country('Kenya', 'KEN', 'Africa', 'Eastern Africa', 54_000_000),
    make_country('Brazil', 'BRA', 'Americas', 'South America', 215_000_000),
]


@pytest.fixture
def countries():
    return [dict(c) for c in SAMPLE_COUNTRIES]


@pytest.fixture
def database(tmp_path, monkeypatch):
    """A fresh SQLite database for each test."""
    monkeypatch.setattr(db, 'USE_POSTGRES', False)
    monkeypatch.setattr(db, 'DATABASE', str(tmp_path / 'flagmaster.db'))
    db.init_db()
    return db


@pytest.fixture
def flask_app(database, monkeypatch, countries):
    import app as app_module

    monkeypatch.setattr(app_module, 'get_countries', lambda: countries)
    app_module.app.config['TESTING'] = True
    return app_module


@pytest.fixture
def client(flask_app):
    return flask_app.app.test_client()
