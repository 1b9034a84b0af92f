import time
from datetime import timedelta

from sqlalchemy import and_, or_

from quizrace import db, socketio
from quizrace.errors import QuizRaceError
from quizrace.models import Participant, utcnow


_sweeper_started = set()


def _stale_participants(cutoff):
    idle = and_(
        Participant.game_status == Participant.GAME_IN_PROGRESS,
        Participant.last_activity_at < cutoff,
    )
    # Paid or registered long ago but never started; an admitted one holds its round open
    unstarted = and_(
        Participant.game_status == Participant.GAME_NOT_STARTED,
        or_(
            Participant.admitted_at < cutoff,
            and_(Participant.admitted_at.is_(None), Participant.created_at < cutoff),
        ),
    )
    return Participant.query.filter(or_(idle, unstarted)).order_by(Participant.id).all()


def sweep_once(app, engine=None) -> dict:
    """Mark idle participants abandoned and retry resolution of full rounds.

    Must run inside an app context.
    """
    engine = engine or app.extensions['quizrace']
    cutoff = utcnow() - timedelta(seconds=int(app.config.get('ABANDON_AFTER_SEC', 1800)))
    abandoned = 0
    timed_out = 0
    for participant in _stale_participants(cutoff):
        try:
            if participant.game_status == Participant.GAME_IN_PROGRESS and engine.participants.check_timeout(participant.id):
                timed_out += 1
            elif engine.participants.abandon(participant.id):
                abandoned += 1
        except QuizRaceError as exc:
            # Participant moved on while we were looking; next pass sees the new state
            app.logger.info(f"[sweep-skip] participant={participant.id} error={exc.code}")
    completed = engine.capacity.resolve_pending_rounds()
    result = {'abandoned': abandoned, 'timed_out': timed_out, 'rounds_completed': completed}
    app.logger.info(f"[sweep] abandoned={abandoned} timed_out={timed_out} rounds_completed={completed}")
    return result


def schedule_sweeper(app) -> None:
    """Start the background sweep loop.

    - No-ops in TESTING mode unless ENABLE_SCHEDULER_IN_TESTS is set
    - No-ops when SWEEP_INTERVAL_SEC is 0
    - Ensures a single loop per app
    """
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return
    interval = int(app.config.get('SWEEP_INTERVAL_SEC', 60))
    if interval <= 0 or id(app) in _sweeper_started:
        return
    _sweeper_started.add(id(app))
    app.logger.info(f"[sweeper-start] interval={interval}s")

    def _worker():
        while True:
            time.sleep(interval)
            with app.app_context():
                try:
                    sweep_once(app)
                except Exception:
                    app.logger.exception("[sweep-failed]")
                    db.session.rollback()

    socketio.start_background_task(_worker)
