import json
import logging
import os
import time
import uuid
from datetime import datetime

from authlib.integrations.flask_client import OAuth
from dotenv import load_dotenv
from flask import (Flask, Response, jsonify, redirect, render_template, request,
                   session, stream_with_context, url_for)
from flask_login import LoginManager, UserMixin, current_user, login_user, logout_user
from werkzeug.middleware.proxy_fix import ProxyFix

# Load environment variables before the modules that read them at import
load_dotenv()

import analytics  # noqa: E402
import db  # noqa: E402
from countries import CountryDataError, get_countries  # noqa: E402
from game import (ALL, DIFFICULTIES, REGIONS, NotEnoughCountries, RoundController,  # noqa: E402
                  build_pool)
from leaderboard import (SCOPES, TIME_FRAMES, detect_user_country, get_leaderboard,  # noqa: E402
                         snapshot_stream, submit_score)

logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
    format='%(asctime)s %(levelname)s %(name)s: %(message)s',
)

app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', 'flagmaster-dev-secret-key-change-in-production')
app.config['LEADERBOARD_POLL_SECONDS'] = float(os.environ.get('LEADERBOARD_POLL_SECONDS', 3))
# Each open stream holds a worker; run gunicorn with threaded or gevent workers
app.config['LEADERBOARD_STREAM_SECONDS'] = float(os.environ.get('LEADERBOARD_STREAM_SECONDS', 300))

# Trust proxy headers for HTTPS when deployed behind a proxy
app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)

# Flask-Login setup
login_manager = LoginManager()
login_manager.init_app(app)

# OAuth setup
oauth = OAuth(app)
google = None

GOOGLE_CLIENT_ID = os.environ.get('GOOGLE_CLIENT_ID')
GOOGLE_CLIENT_SECRET = os.environ.get('GOOGLE_CLIENT_SECRET')

if GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET:
    google = oauth.register(
        name='google',
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        server_metadata_url='https://accounts.google.com/.well-known/openid-configuration',
        client_kwargs={'scope': 'openid email profile'}
    )
    app.logger.info("Google OAuth registered")
else:
    app.logger.warning("Google OAuth not configured - missing credentials")


# User class for Flask-Login
class User(UserMixin):
    def __init__(self, id, display_name, email=None, google_id=None, photo_url=None):
        self.id = id
        self.display_name = display_name
        self.email = email
        self.google_id = google_id
        self.photo_url = photo_url

    @property
    def uid(self):
        """Identity used on the leaderboard."""
        return self.google_id or str(self.id)

    def to_dict(self):
        return {
            'id': self.id,
            'uid': self.uid,
            'display_name': self.display_name,
            'photo_url': self.photo_url,
        }


def _user_from_row(row):
    row = dict(row)
    return User(
        id=row['id'],
        display_name=row['display_name'],
        email=row.get('email'),
        google_id=row.get('google_id'),
        photo_url=row.get('photo_url'),
    )


@login_manager.user_loader
def load_user(user_id):
    conn = db.get_db()
    cur = conn.cursor()
    ph = db.get_placeholder()
    cur.execute(f'SELECT * FROM users WHERE id = {ph}', (user_id,))
    user_row = cur.fetchone()
    conn.close()

    if user_row:
        return _user_from_row(user_row)
    return None


def get_or_create_user_by_google(google_id, email, name, picture):
    """Get or create user from Google OAuth data."""
    conn = db.get_db()
    cur = conn.cursor()
    ph = db.get_placeholder()

    cur.execute(f'SELECT * FROM users WHERE google_id = {ph}', (google_id,))
    user = cur.fetchone()

    if user:
        # Keep name and avatar in sync with the Google profile
        cur.execute(f'UPDATE users SET display_name = {ph}, photo_url = {ph}, email = {ph} WHERE google_id = {ph}',
                    (name, picture, email, google_id))
    else:
        cur.execute(f'''
            INSERT INTO users (google_id, email, display_name, photo_url)
            VALUES ({ph}, {ph}, {ph}, {ph})
        ''', (google_id, email, name, picture))
    conn.commit()

    cur.execute(f'SELECT * FROM users WHERE google_id = {ph}', (google_id,))
    user = cur.fetchone()
    conn.close()
    return dict(user)


def client_ip():
    # ProxyFix has already resolved X-Forwarded-For into remote_addr
    return request.remote_addr


def current_user_id():
    return current_user.id if current_user.is_authenticated else None


# ============ GAME STORAGE ============

def create_game(controller, region, subregion):
    game_id = str(uuid.uuid4())
    conn = db.get_db()
    cur = conn.cursor()
    ph = db.get_placeholder()
    cur.execute(f'''
        INSERT INTO games (id, user_id, difficulty, region, subregion, state_json, version)
        VALUES ({ph}, {ph}, {ph}, {ph}, {ph}, {ph}, 0)
    ''', (game_id, current_user_id(), controller.difficulty, region, subregion,
          json.dumps(controller.to_dict())))
    conn.commit()
    conn.close()
    return game_id


def load_game(game_id):
    """Return (row, controller) for a stored game, or (None, None)."""
    conn = db.get_db()
    cur = conn.cursor()
    ph = db.get_placeholder()
    cur.execute(f'SELECT * FROM games WHERE id = {ph}', (game_id,))
    row = cur.fetchone()
    conn.close()
    if not row:
        return None, None
    row = dict(row)
    controller = RoundController.from_dict(json.loads(row['state_json']), get_countries())
    return row, controller


def save_game(game_id, controller, version):
    """Write the game state if nobody else has since `version`."""
    conn = db.get_db()
    cur = conn.cursor()
    ph = db.get_placeholder()
    cur.execute(f'''
        UPDATE games SET state_json = {ph}, version = version + 1, updated_at = CURRENT_TIMESTAMP
        WHERE id = {ph} AND version = {ph}
    ''', (json.dumps(controller.to_dict()), game_id, version))
    updated = cur.rowcount == 1
    conn.commit()
    conn.close()
    return updated


def mark_finished(game_id, results, version):
    """Store the final results once. Returns False if the game moved on or was already finished."""
    conn = db.get_db()
    cur = conn.cursor()
    ph = db.get_placeholder()
    cur.execute(f'''
        UPDATE games SET results_json = {ph}, version = version + 1, updated_at = CURRENT_TIMESTAMP
        WHERE id = {ph} AND version = {ph} AND results_json IS NULL
    ''', (json.dumps(results), game_id, version))
    updated = cur.rowcount == 1
    conn.commit()
    conn.close()
    return updated


def update_results(game_id, results):
    conn = db.get_db()
    cur = conn.cursor()
    ph = db.get_placeholder()
    cur.execute(f'UPDATE games SET results_json = {ph} WHERE id = {ph}',
                (json.dumps(results), game_id))
    conn.commit()
    conn.close()


def game_access_error(row):
    """Error response for a game the viewer may not play, else None."""
    if row is None:
        return jsonify({'error': 'Game not found'}), 404
    if row['user_id'] is not None and row['user_id'] != current_user_id():
        return jsonify({'error': 'This game belongs to another player'}), 403
    return None


def game_finished_error():
    return jsonify({'error': 'Game is already finished'}), 409


def country_summary(country):
    return {
        'cca3': country['cca3'],
        'name': country['name']['common'],
    }


def question_payload(controller, question):
    """What the browser needs to show a question, without revealing the answer."""
    flags = question['correct_country']['flags']
    return {
        # The API's alt text usually names the country
        'flag': {
            'svg': flags.get('svg'),
            'png': flags.get('png'),
            'alt': 'Flag to identify',
        },
        'options': [country_summary(c) for c in question['options']],
        'time_limit': controller.time_limit,
        'seen': controller.seen,
        'pool_size': len(controller.by_code),
        'score': controller.score,
        'total': controller.total,
        'accuracy': controller.accuracy,
    }


def current_question(controller):
    current = controller.current
    return {
        'correct_country': controller.by_code[current['cca3']],
        'options': [controller.by_code[code] for code in current['options']],
    }


def game_settings_from_request(data):
    difficulty = (data.get('difficulty') or 'beginner').lower()
    region = data.get('region') or ALL
    subregion = data.get('subregion') or ALL
    return difficulty, region, subregion


def country_data_unavailable(error):
    app.logger.error("Country data unavailable: %s", error)
    return jsonify({
        'error': 'Could not load the flags. Please try again.',
        'retry': True,
    }), 503


def not_enough_countries(error):
    return jsonify({
        'empty': True,
        'available': error.available,
        'message': 'Not enough flags found. Try changing the filters or level.',
    })


# ============ AUTH ROUTES ============

@app.route('/auth/google')
def google_login():
    """Redirect to Google for OAuth."""
    if google is None:
        return redirect(url_for('index'))
    redirect_uri = url_for('google_callback', _external=True)
    return google.authorize_redirect(redirect_uri)


@app.route('/auth/google/callback')
def google_callback():
    """Handle Google OAuth callback."""
    if google is None:
        return redirect(url_for('index'))
    try:
        token = google.authorize_access_token()
        user_info = token.get('userinfo')

        if user_info:
            name = user_info.get('name') or user_info['email'].split('@')[0]
            user_data = get_or_create_user_by_google(
                google_id=user_info['sub'],
                email=user_info.get('email'),
                name=name,
                picture=user_info.get('picture', '')
            )
            login_user(_user_from_row(user_data))
    except Exception:
        app.logger.exception("OAuth error")

    return redirect(url_for('index'))


@app.route('/auth/logout')
def logout():
    """Log out user."""
    logout_user()
    session.clear()
    return redirect(url_for('index'))


@app.route('/api/me')
def get_current_user():
    """Get current logged in user info."""
    if current_user.is_authenticated:
        return jsonify({
            'authenticated': True,
            'user': current_user.to_dict(),
        })
    return jsonify({'authenticated': False, 'login_available': google is not None})


# ============ PAGE ROUTES ============

@app.route('/')
def index():
    return render_template('index.html', regions=REGIONS, difficulties=DIFFICULTIES)


@app.route('/leaderboard')
def leaderboard_page():
    return render_template('leaderboard.html', difficulties=DIFFICULTIES,
                           time_frames=TIME_FRAMES, scopes=SCOPES)


# ============ GAME API ROUTES ============

@app.route('/api/regions')
def api_regions():
    return jsonify({'regions': REGIONS, 'difficulties': DIFFICULTIES})


@app.route('/api/countries')
def api_countries():
    difficulty, region, subregion = game_settings_from_request(request.args)
    if difficulty not in DIFFICULTIES:
        return jsonify({'error': f'Invalid difficulty: {difficulty}'}), 400

    try:
        pool = build_pool(get_countries(), difficulty, region, subregion)
    except CountryDataError as e:
        return country_data_unavailable(e)

    return jsonify({
        'countries': pool,
        'count': len(pool),
        'empty': len(pool) < 3,
    })


@app.route('/api/start-game', methods=['POST'])
def start_game():
    data = request.get_json(silent=True) or {}
    difficulty, region, subregion = game_settings_from_request(data)
    if difficulty not in DIFFICULTIES:
        return jsonify({'error': f'Invalid difficulty: {difficulty}'}), 400

    try:
        pool = build_pool(get_countries(), difficulty, region, subregion)
        controller = RoundController(pool, difficulty)
    except CountryDataError as e:
        return country_data_unavailable(e)
    except NotEnoughCountries as e:
        return not_enough_countries(e)

    question = controller.next_question()
    game_id = create_game(controller, region, subregion)
    analytics.track_game_start(difficulty, region, subregion, current_user_id())

    return jsonify({
        'success': True,
        'game_id': game_id,
        'difficulty': difficulty,
        'question': question_payload(controller, question),
    })


@app.route('/api/submit-answer', methods=['POST'])
def submit_answer():
    """Resolve the current question with an answer or a timeout.

    Only the first resolution of a question counts; a click racing a
    timeout gets the already recorded outcome back with accepted=False.
    """
    data = request.get_json(silent=True) or {}
    game_id = data.get('game_id')
    answer = data.get('answer')
    timed_out = bool(data.get('timeout'))

    if not timed_out and not answer:
        return jsonify({'error': 'An answer or a timeout is required'}), 400

    try:
        for _ in range(3):
            row, controller = load_game(game_id)
            error = game_access_error(row)
            if error:
                return error
            if row['results_json']:
                return game_finished_error()
            if controller.current is None:
                return jsonify({'error': 'No active question'}), 400

            try:
                outcome = controller.timeout() if timed_out else controller.answer(answer)
            except ValueError as e:
                return jsonify({'error': str(e)}), 400

            if not outcome['accepted'] or save_game(game_id, controller, row['version']):
                break
        else:
            return jsonify({'error': 'Game is busy, try again'}), 409
    except CountryDataError as e:
        return country_data_unavailable(e)
    except NotEnoughCountries as e:
        return not_enough_countries(e)

    correct_country = controller.by_code[outcome['correct_cca3']]
    if outcome['accepted']:
        analytics.track_guess(
            country=correct_country['name']['common'],
            cca3=correct_country['cca3'],
            is_correct=outcome['correct'],
            difficulty=controller.difficulty,
            region=row['region'],
            subregion=row['subregion'],
            is_timeout=outcome['timed_out'],
            user_id=current_user_id(),
        )

    outcome['correct_country'] = country_summary(correct_country)
    return jsonify(outcome)


@app.route('/api/next-question', methods=['POST'])
def next_question():
    data = request.get_json(silent=True) or {}
    game_id = data.get('game_id')

    try:
        row, controller = load_game(game_id)
        error = game_access_error(row)
        if error:
            return error
        if row['results_json']:
            return game_finished_error()

        # An unanswered question is shown again rather than skipped
        if controller.current and not controller.current['resolved']:
            return jsonify({'question': question_payload(controller, current_question(controller))})

        question = controller.next_question()
        if not save_game(game_id, controller, row['version']):
            return jsonify({'error': 'Game is busy, try again'}), 409
    except CountryDataError as e:
        return country_data_unavailable(e)
    except NotEnoughCountries as e:
        return not_enough_countries(e)

    return jsonify({'question': question_payload(controller, question)})


@app.route('/api/finish-game', methods=['POST'])
def finish_game():
    """Report the results and, for signed-in players, post the score.

    A game is finished once: repeated calls get the stored results back
    and never post a second score.
    """
    data = request.get_json(silent=True) or {}
    game_id = data.get('game_id')

    try:
        row, controller = load_game(game_id)
    except CountryDataError as e:
        return country_data_unavailable(e)
    except NotEnoughCountries as e:
        return not_enough_countries(e)
    error = game_access_error(row)
    if error:
        return error
    if row['results_json']:
        return jsonify(json.loads(row['results_json']))

    results = controller.results()
    results['submitted'] = False
    if not mark_finished(game_id, results, row['version']):
        row, _ = load_game(game_id)
        if row and row['results_json']:
            return jsonify(json.loads(row['results_json']))
        return jsonify({'error': 'Game is busy, try again'}), 409

    if current_user.is_authenticated and controller.total > 0:
        country = detect_user_country(client_ip(), session)
        entry_id = submit_score(
            current_user.to_dict(),
            score=results['score'],
            accuracy=results['accuracy'],
            average_time=results['average_time'],
            difficulty=results['difficulty'],
            country=country,
        )
        if entry_id is not None:
            results['submitted'] = True
            update_results(game_id, results)
            analytics.track_score_submitted(results['score'], results['accuracy'],
                                            results['difficulty'], current_user.id)

    return jsonify(results)


@app.route('/api/track', methods=['POST'])
def track_setting_change():
    """Record difficulty and region changes made in the selectors."""
    data = request.get_json(silent=True) or {}
    event = data.get('event')

    if event == 'difficulty_changed':
        difficulty = data.get('difficulty')
        if difficulty not in DIFFICULTIES:
            return jsonify({'error': f'Invalid difficulty: {difficulty}'}), 400
        analytics.track_difficulty_change(difficulty, current_user_id())
    elif event == 'region_changed':
        analytics.track_region_change(data.get('region') or ALL, data.get('subregion') or ALL,
                                      current_user_id())
    else:
        return jsonify({'error': f'Unknown event: {event}'}), 400

    return jsonify({'success': True})


# ============ LEADERBOARD API ============

def leaderboard_args():
    difficulty = request.args.get('difficulty', 'beginner')
    time_frame = request.args.get('time_frame', 'all-time')
    scope = request.args.get('scope', 'global')
    country = request.args.get('country')
    if scope == 'country' and not country:
        country = detect_user_country(client_ip(), session)
    return difficulty, time_frame, scope, country


def invalid_leaderboard_args(difficulty, time_frame, scope):
    if difficulty not in DIFFICULTIES:
        return f'Invalid difficulty: {difficulty}'
    if time_frame not in TIME_FRAMES:
        return f'Invalid time frame: {time_frame}'
    if scope not in SCOPES:
        return f'Invalid scope: {scope}'
    return None


@app.route('/api/leaderboard')
def api_leaderboard():
    difficulty, time_frame, scope, country = leaderboard_args()
    error = invalid_leaderboard_args(difficulty, time_frame, scope)
    if error:
        return jsonify({'error': error}), 400

    try:
        entries = get_leaderboard(difficulty, time_frame, scope, country)
    except Exception:
        app.logger.exception("Error fetching leaderboard")
        entries = []

    return jsonify({
        'entries': entries,
        'difficulty': difficulty,
        'time_frame': time_frame,
        'scope': scope,
        'country': country,
    })


@app.route('/api/leaderboard/stream')
def api_leaderboard_stream():
    """Server-sent events carrying a fresh snapshot whenever the ranking changes."""
    difficulty, time_frame, scope, country = leaderboard_args()
    error = invalid_leaderboard_args(difficulty, time_frame, scope)
    if error:
        return jsonify({'error': error}), 400

    def fetch():
        try:
            return get_leaderboard(difficulty, time_frame, scope, country)
        except Exception:
            app.logger.exception("Error fetching leaderboard")
            return []

    stream = snapshot_stream(fetch, poll_interval=app.config['LEADERBOARD_POLL_SECONDS'],
                             max_seconds=app.config['LEADERBOARD_STREAM_SECONDS'])
    return Response(stream_with_context(stream), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'})


@app.route('/api/detect-country')
def api_detect_country():
    return jsonify({'country': detect_user_country(client_ip(), session)})


@app.route('/api/health')
def health_check():
    """Health check endpoint for monitoring."""
    start = time.time()

    try:
        conn = db.get_db()
        cur = conn.cursor()
        cur.execute('SELECT COUNT(*) as count FROM scores')
        score_count = dict(cur.fetchone())['count']
        cur.execute('SELECT COUNT(*) as count FROM users')
        user_count = dict(cur.fetchone())['count']
        conn.close()

        db_time = time.time() - start
        return jsonify({
            'status': 'degraded' if db_time > 1.0 else 'healthy',
            'timestamp': datetime.now().isoformat(),
            'metrics': {
                'total_users': user_count,
                'total_scores': score_count,
                'db_query_time_ms': round(db_time * 1000, 2)
            },
            'database': 'postgresql' if db.USE_POSTGRES else 'sqlite'
        })

    except Exception as e:
        app.logger.exception("Health check failed")
        return jsonify({
            'status': 'unhealthy',
            'error': str(e),
            'timestamp': datetime.now().isoformat()
        }), 500


# ============ MAIN ============

# Initialize database on app load (works with gunicorn)
try:
    app.logger.info("Initializing %s database", 'postgresql' if db.USE_POSTGRES else 'sqlite')
    db.init_db()
except Exception:
    app.logger.exception("Error initializing database")

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5001))
    debug = os.environ.get('FLASK_ENV', 'development') == 'development'
    app.run(debug=debug, port=port, host='0.0.0.0')
