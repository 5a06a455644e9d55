import random
import time
from typing import Dict, List, Optional

# Regions offered by the selector; subregion names match the restcountries data.
REGIONS = [
    {'id': 'all', 'label': 'All World'},
    {'id': 'africa', 'label': 'Africa', 'subregions': ['Northern Africa', 'Western Africa', 'Eastern Africa', 'Middle Africa', 'Southern Africa']},
    {'id': 'americas', 'label': 'Americas', 'subregions': ['North America', 'Central America', 'South America', 'Caribbean']},
    {'id': 'asia', 'label': 'Asia', 'subregions': ['Eastern Asia', 'Western Asia', 'South-Eastern Asia', 'Southern Asia', 'Central Asia']},
    {'id': 'europe', 'label': 'Europe', 'subregions': ['Western Europe', 'Eastern Europe', 'Southern Europe', 'Northern Europe', 'Central Europe', 'Southeast Europe']},
    {'id': 'oceania', 'label': 'Oceania'},
]

DIFFICULTIES = ['beginner', 'medium', 'hard', 'genius']

# Pool size per difficulty (None = every country)
DIFFICULTY_LIMITS = {
    'beginner': 50,
    'medium': 100,
    'hard': 200,
    'genius': None,
}

# Seconds allowed per flag
TIMER_LIMITS = {
    'beginner': 15,
    'medium': 10,
    'hard': 7,
    'genius': 2,
}

ALL = 'all'
OPTIONS_PER_QUESTION = 3
PASS_ACCURACY = 80
# Allowance for request latency when checking an answer against the deadline
GRACE_SECONDS = 1.0


class NotEnoughCountries(Exception):
    """Raised when the filtered pool cannot support a question."""

    def __init__(self, available):
        self.available = available
        super().__init__(f'Not enough flags found ({available}); try changing the filters or level.')


def generate_question(pool: List[Dict], correct: Dict, rng=None) -> Dict:
    """Build a question for `correct` with distractors drawn from `pool`.

    Countries from the same subregion are preferred as distractors, then the
    same region, then anything else. Each wider tier is only used while
    fewer than two candidates have been found.
    """
    rng = rng or random
    needed = OPTIONS_PER_QUESTION - 1
    correct_code = correct['cca3']

    others = []
    seen = {correct_code}
    for country in pool:
        if country['cca3'] not in seen:
            seen.add(country['cca3'])
            others.append(country)

    candidates = [c for c in others if c.get('subregion') and c.get('subregion') == correct.get('subregion')]
    if len(candidates) < needed:
        chosen = {c['cca3'] for c in candidates}
        candidates += [c for c in others if c['cca3'] not in chosen and c.get('region') == correct.get('region')]
    if len(candidates) < needed:
        chosen = {c['cca3'] for c in candidates}
        candidates += [c for c in others if c['cca3'] not in chosen]

    distractors = rng.sample(candidates, min(needed, len(candidates)))
    options = [correct] + distractors
    rng.shuffle(options)

    return {
        'correct_country': correct,
        'options': options,
    }


def filter_by_difficulty(countries: List[Dict], difficulty: str) -> List[Dict]:
    if difficulty not in DIFFICULTY_LIMITS:
        raise ValueError(f'Unknown difficulty: {difficulty}')
    ranked = sorted(countries, key=lambda c: c.get('population') or 0, reverse=True)
    limit = DIFFICULTY_LIMITS[difficulty]
    return ranked if limit is None else ranked[:limit]


def filter_by_region(countries: List[Dict], region: str, subregion: str) -> List[Dict]:
    filtered = countries
    if region and region.lower() != ALL:
        filtered = [c for c in filtered if (c.get('region') or '').lower() == region.lower()]
    if subregion and subregion.lower() != ALL:
        filtered = [c for c in filtered if (c.get('subregion') or '').lower() == subregion.lower()]
    return filtered


def build_pool(countries: List[Dict], difficulty: str, region: str = ALL, subregion: str = ALL) -> List[Dict]:
    """Return the playable pool for the selected level and region."""
    return filter_by_region(filter_by_difficulty(countries, difficulty), region, subregion)


def next_difficulty(difficulty: str) -> Optional[str]:
    index = DIFFICULTIES.index(difficulty)
    if index + 1 < len(DIFFICULTIES):
        return DIFFICULTIES[index + 1]
    return None


class RoundController:
    """Question-by-question state for one game.

    The queue holds the cca3 codes not yet shown in the current cycle; the
    next flag is popped from its end. Each question is resolved exactly once,
    either by an answer or by a timeout, whichever arrives first.
    """

    def __init__(self, pool: List[Dict], difficulty: str, rng=None, clock=time.time):
        if difficulty not in TIMER_LIMITS:
            raise ValueError(f'Unknown difficulty: {difficulty}')
        if len(pool) < OPTIONS_PER_QUESTION:
            raise NotEnoughCountries(len(pool))
        self.pool = pool
        self.by_code = {c['cca3']: c for c in pool}
        self.difficulty = difficulty
        self.rng = rng or random
        self.clock = clock

        self.queue: List[str] = []
        self.last_code: Optional[str] = None
        self.current: Optional[Dict] = None
        self.score = 0
        self.total = 0
        self.times: List[float] = []
        self.level_complete = False

    @property
    def time_limit(self) -> int:
        return TIMER_LIMITS[self.difficulty]

    @property
    def accuracy(self) -> float:
        return round(self.score / self.total * 100, 1) if self.total else 0.0

    @property
    def average_time(self) -> float:
        return round(sum(self.times) / len(self.times), 1) if self.times else 0.0

    @property
    def seen(self) -> int:
        if self.current is None:
            return 0
        return len(self.by_code) - len(self.queue)

    def refill(self):
        codes = list(self.by_code)
        self.rng.shuffle(codes)
        # The end of the list is popped first; keep the flag just shown away from it
        if self.last_code and len(codes) > 2 and codes[-1] == self.last_code:
            codes.insert(0, codes.pop())
        self.queue = codes

    def next_question(self) -> Dict:
        if not self.queue:
            self.refill()
        code = self.queue.pop()
        question = generate_question(self.pool, self.by_code[code], rng=self.rng)

        self.last_code = code
        self.level_complete = False
        self.current = {
            'cca3': code,
            'options': [c['cca3'] for c in question['options']],
            'started_at': self.clock(),
            'resolved': False,
            'selected': None,
            'correct': None,
            'timed_out': False,
            'elapsed': None,
        }
        return question

    def answer(self, cca3: str) -> Dict:
        return self._resolve(cca3, timed_out=False)

    def timeout(self) -> Dict:
        return self._resolve(None, timed_out=True)

    def _resolve(self, cca3, timed_out):
        current = self.current
        if current is None:
            raise LookupError('No question has been asked yet')
        if current['resolved']:
            return self._outcome(accepted=False)

        elapsed = self.clock() - current['started_at']
        if not timed_out and elapsed > self.time_limit + GRACE_SECONDS:
            timed_out = True
        if timed_out:
            cca3 = None
            elapsed = float(self.time_limit)
        elif cca3 not in current['options']:
            raise ValueError(f'{cca3} is not one of the options')

        correct = cca3 == current['cca3']
        current.update({
            'resolved': True,
            'selected': cca3,
            'correct': correct,
            'timed_out': timed_out,
            'elapsed': round(min(elapsed, self.time_limit), 2),
        })
        self.total += 1
        self.times.append(current['elapsed'])
        if correct:
            self.score += 1
        if not self.queue:
            self.level_complete = True
        return self._outcome(accepted=True)

    def _outcome(self, accepted):
        current = self.current
        return {
            'accepted': accepted,
            'correct': current['correct'],
            'timed_out': current['timed_out'],
            'selected': current['selected'],
            'correct_cca3': current['cca3'],
            'elapsed': current['elapsed'],
            'score': self.score,
            'total': self.total,
            'accuracy': self.accuracy,
            'seen': self.seen,
            'pool_size': len(self.by_code),
            'level_complete': self.level_complete,
        }

    def results(self) -> Dict:
        passed = self.total > 0 and self.accuracy >= PASS_ACCURACY
        return {
            'score': self.score,
            'total': self.total,
            'accuracy': self.accuracy,
            'average_time': self.average_time,
            'difficulty': self.difficulty,
            'passed': passed,
            'next_difficulty': next_difficulty(self.difficulty) if passed else None,
        }

    def to_dict(self) -> Dict:
        return {
            'difficulty': self.difficulty,
            'codes': list(self.by_code),
            'queue': self.queue,
            'last_code': self.last_code,
            'current': self.current,
            'score': self.score,
            'total': self.total,
            'times': self.times,
            'level_complete': self.level_complete,
        }

    @classmethod
    def from_dict(cls, data: Dict, countries: List[Dict], rng=None, clock=time.time):
        """Rebuild a controller from `to_dict` output and the country list."""
        by_code = {c['cca3']: c for c in countries}
        pool = [by_code[code] for code in data['codes'] if code in by_code]
        controller = cls(pool, data['difficulty'], rng=rng, clock=clock)
        controller.queue = [code for code in data['queue'] if code in controller.by_code]
        controller.last_code = data.get('last_code')
        controller.current = data.get('current')
        controller.score = data.get('score', 0)
        controller.total = data.get('total', 0)
        controller.times = list(data.get('times', []))
        controller.level_complete = data.get('level_complete', False)
        return controller
