import itertools
import os
import sys
import pytest

# Ensure the backend root (containing the `quizrace` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from quizrace import create_app, db, socketio


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    FRAUD_THRESHOLD = 0.8
    FRAUD_MIN_ANSWER_TIME = 0.5
    FRAUD_SIGNAL_WEIGHTS = {}
    MAX_SAME_DEVICE_PARTICIPANTS = 3
    MAX_DAILY_PARTICIPATIONS = 5
    TIMEOUT_WARNING_RATIO = 0.8
    ABANDON_AFTER_SEC = 1800
    SWEEP_INTERVAL_SEC = 0


class FakeClock:
    """Manually advanced clock for deterministic timing."""

    def __init__(self, start=1_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds
        return self.now


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def flask_app(clock):
    application = create_app(TestConfig)
    application.extensions['quizrace'].clock = clock
    with application.app_context():
        # Ensure models are imported so tables are created
        import quizrace.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def file_app(tmp_path, clock):
    """App on a file-backed sqlite database; each thread gets its own connection."""

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'quizrace.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'timeout': 30, 'check_same_thread': False}}

    application = create_app(FileConfig)
    application.extensions['quizrace'].clock = clock
    with application.app_context():
        import quizrace.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def engine(flask_app):
    return flask_app.extensions['quizrace']


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    if test_client.is_connected('/ws'):
        test_client.disconnect(namespace='/ws')


def create_game(max_players=3, total_questions=4, free_questions=2, timeout=10.0, auto_restart=True, answer='A'):
    from quizrace.models import Game, Question
    game = Game(
        name=f'Race {next(_game_names)}',
        max_players=max_players,
        total_questions=total_questions,
        free_questions=free_questions,
        question_timeout_seconds=timeout,
        auto_restart=auto_restart,
    )
    db.session.add(game)
    db.session.flush()
    for position in range(1, total_questions + 1):
        db.session.add(Question(
            game_id=game.id,
            position=position,
            text=f'Question {position}',
            option_a='first',
            option_b='second',
            option_c='third',
            correct_answer=answer,
        ))
    db.session.commit()
    return game


_game_names = itertools.count(1)


@pytest.fixture()
def make_game(flask_app):
    return create_game


@pytest.fixture()
def make_file_game(file_app):
    return create_game


@pytest.fixture()
def make_participant(flask_app):
    """Register a participant with its own email, session and device."""
    counter = itertools.count(1)

    def _make(game, email=None):
        n = next(counter)
        engine = flask_app.extensions['quizrace']
        return engine.participants.register(
            game.id,
            email or f'player{n}@example.com',
            f'session-{n}',
            f'device-{n}',
            ip_address='127.0.0.1',
        )

    return _make


def play(engine, clock, participant, times, pay=True, answer='A'):
    """Start and answer every question, pausing for payment after the free ones.

    Returns the last AnswerOutcome.
    """
    pid = participant.id
    sid, fp = participant.session_id, participant.device_fingerprint
    free = participant.round.game.free_questions
    engine.participants.start(pid, sid, fp)
    outcome = None
    for number, seconds in enumerate(times, start=1):
        if number == free + 1 and pay:
            engine.participants.pause(pid, sid, fp)
            clock.advance(30)
            engine.participants.confirm_payment(pid)
            engine.participants.resume(pid, sid, fp)
        clock.advance(seconds)
        outcome = engine.participants.submit_answer(pid, number, answer, 'A', sid, fp)
        if not outcome.ok:
            break
    return outcome


@pytest.fixture()
def player(engine, clock):
    def _play(participant, times, **kwargs):
        return play(engine, clock, participant, times, **kwargs)
    return _play
