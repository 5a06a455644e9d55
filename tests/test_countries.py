"""Tests for the country data source."""

import pytest
import requests

import countries
from countries import CountryDataError, fetch_all_countries, get_countries


class FakeResponse:
    def __init__(self, payload=None, status=200):
        self.payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f'{self.status_code} Error')

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


API_PAYLOAD = [
    {
        'name': {'common': 'Kenya', 'official': 'Republic of Kenya'},
        'cca3': 'ken',
        'flags': {'png': 'https://flagcdn.com/w320/ke.png', 'svg': 'https://flagcdn.com/ke.svg',
                  'alt': 'The flag of Kenya '},
        'region': 'Africa',
        'subregion': 'Eastern Africa',
        'population': 53771300,
    },
    {
        'name': {'common': 'Antarctica', 'official': 'Antarctica'},
        'cca3': 'ATA',
        'flags': {'png': 'https://flagcdn.com/w320/aq.png', 'svg': 'https://flagcdn.com/aq.svg'},
        'region': 'Antarctic',
        'population': 1000,
    },
    {'name': {'common': 'Nowhere'}, 'flags': {}},
]


@pytest.fixture(autouse=True)
def empty_cache():
    countries.clear_cache()
    yield
    countries.clear_cache()


class TestFetchAllCountries:
    """Tests for fetch_all_countries."""

    def test_normalizes_records(self, monkeypatch) -> None:
        """Records are cleaned up and sorted by name; unusable ones are dropped."""
        seen = {}

        def fake_get(url, params, timeout, headers):
            seen['params'] = params
            return FakeResponse(API_PAYLOAD)

        monkeypatch.setattr(countries.requests, 'get', fake_get)
        result = fetch_all_countries()

        assert seen['params'] == {'fields': 'name,flags,cca3,region,subregion,population'}
        assert [c['cca3'] for c in result] == ['ATA', 'KEN']
        kenya = result[1]
        assert kenya['flags']['alt'] == 'The flag of Kenya'
        assert kenya['subregion'] == 'Eastern Africa'
        assert result[0]['subregion'] == ''
        assert 'alt' not in result[0]['flags']

    @pytest.mark.parametrize('response', [
        FakeResponse(status=502),
        FakeResponse({'message': 'not a list'}),
        FakeResponse(ValueError('bad json')),
    ])
    def test_bad_responses(self, monkeypatch, response) -> None:
        """Non-success statuses and malformed payloads raise CountryDataError."""
        monkeypatch.setattr(countries.requests, 'get', lambda *args, **kwargs: response)
        with pytest.raises(CountryDataError):
            fetch_all_countries()

    def test_network_error(self, monkeypatch) -> None:
        """An unreachable API raises CountryDataError."""
        def fake_get(*args, **kwargs):
            raise requests.ConnectionError('unreachable')

        monkeypatch.setattr(countries.requests, 'get', fake_get)
        with pytest.raises(CountryDataError):
            fetch_all_countries()


class TestGetCountries:
    """Tests for the cached accessor."""

    def test_fetches_once(self, monkeypatch) -> None:
        """The list is fetched once and then served from the cache."""
        calls = []

        def fake_get(*args, **kwargs):
            calls.append(1)
            return FakeResponse(API_PAYLOAD)

        monkeypatch.setattr(countries.requests, 'get', fake_get)
        first = get_countries()
        second = get_countries()
        assert first is second
        assert len(calls) == 1

        get_countries(force_refresh=True)
        assert len(calls) == 2

    def test_failure_is_not_cached(self, monkeypatch) -> None:
        """After a failed fetch the next call tries again."""
        responses = iter([FakeResponse(status=503), FakeResponse(API_PAYLOAD)])
        monkeypatch.setattr(countries.requests, 'get', lambda *args, **kwargs: next(responses))

        with pytest.raises(CountryDataError):
            get_countries()
        assert len(get_countries()) == 2
