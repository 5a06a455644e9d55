import logging
import os
import threading
import time
from typing import Dict, List

import requests

logger = logging.getLogger(__name__)

COUNTRIES_API_URL = os.environ.get('COUNTRIES_API_URL', 'https://restcountries.com/v3.1/all')
COUNTRY_FIELDS = 'name,flags,cca3,region,subregion,population'
USER_AGENT = 'flagmaster/1.0'
CACHE_TTL = 60 * 60 * 24

_cache = {'countries': None, 'loaded_at': 0.0}
_cache_lock = threading.Lock()


class CountryDataError(Exception):
    """The country data source could not be reached or sent bad data."""


def _normalize_country(item: Dict) -> Dict:
    name = item.get('name') or {}
    flags = item.get('flags') or {}
    country = {
        'name': {
            'common': (name.get('common') or '').strip(),
            'official': (name.get('official') or '').strip(),
        },
        'cca3': (item.get('cca3') or '').strip().upper(),
        'flags': {
            'png': (flags.get('png') or '').strip(),
            'svg': (flags.get('svg') or '').strip(),
        },
        'region': (item.get('region') or '').strip(),
        'subregion': (item.get('subregion') or '').strip(),
        'population': int(item.get('population') or 0),
    }
    if flags.get('alt'):
        country['flags']['alt'] = flags['alt'].strip()
    return country


def fetch_all_countries(timeout=20) -> List[Dict]:
    """Fetch every country from the REST API.

    Raises CountryDataError on network errors, non-2xx responses and
    payloads that are not a list of country objects. Entries without a
    cca3 code or a common name are skipped.
    """
    try:
        resp = requests.get(
            COUNTRIES_API_URL,
            params={'fields': COUNTRY_FIELDS},
            timeout=timeout,
            headers={'User-Agent': USER_AGENT},
        )
        resp.raise_for_status()
        data = resp.json()
    except (requests.RequestException, ValueError) as e:
        raise CountryDataError(f'Failed to fetch countries: {e}') from e

    if not isinstance(data, list):
        raise CountryDataError('Failed to fetch countries: unexpected payload')

    countries: Dict[str, Dict] = {}
    for item in data:
        if not isinstance(item, dict):
            continue
        country = _normalize_country(item)
        if not country['cca3'] or not country['name']['common']:
            continue
        countries[country['cca3']] = country

    result = sorted(countries.values(), key=lambda c: c['name']['common'])
    logger.info("Loaded %d countries from %s", len(result), COUNTRIES_API_URL)
    return result


def get_countries(force_refresh=False) -> List[Dict]:
    """Return the cached country list, fetching it when stale."""
    with _cache_lock:
        fresh = time.time() - _cache['loaded_at'] < CACHE_TTL
        if _cache['countries'] is not None and fresh and not force_refresh:
            return _cache['countries']
        countries = fetch_all_countries()
        _cache['countries'] = countries
        _cache['loaded_at'] = time.time()
        return countries


def clear_cache():
    with _cache_lock:
        _cache['countries'] = None
        _cache['loaded_at'] = 0.0
