"""Round admission, fill detection and auto-restart.

Every mutation of ``Round.paid_participant_count`` and ``Round.status`` runs
inside ``_critical``: one database transaction, entered while holding the
round's (or game's) keyed lock, with the row read ``FOR UPDATE``. Events are
published only after the transaction commits.

Lock order is always game before round. The admission path releases the
round lock before it takes the game lock to create a successor round.
"""

from contextlib import ExitStack, contextmanager

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quizrace import db
from quizrace.errors import (
    InvalidStateError,
    NotFoundError,
    RetryableStoreError,
    RoundFullError,
    ValidationError,
)
from quizrace.models import Game, Participant, Round, utcnow
from . import events as ev

UNFINISHED_GAME_STATUSES = (Participant.GAME_NOT_STARTED, Participant.GAME_IN_PROGRESS)


class RoundCapacityController:
    def __init__(self, locks, events, winners):
        self.locks = locks
        self.events = events
        self.winners = winners

    @contextmanager
    def _critical(self, operation: str):
        pending = []
        try:
            yield pending
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.error(f"[store-error] op={operation} error={exc.__class__.__name__}: {exc}")
            raise RetryableStoreError(f'{operation} failed, retry', operation=operation) from exc
        except Exception:
            db.session.rollback()
            raise
        self.events.publish(pending)

    def _lock_round_row(self, round_id: int) -> Round:
        rnd = Round.query.filter_by(id=round_id).with_for_update().populate_existing().first()
        if rnd is None:
            raise NotFoundError('Round not found', round_id=round_id)
        return rnd

    def _lock_game_row(self, game_id: int) -> Game:
        game = Game.query.filter_by(id=game_id).with_for_update().populate_existing().first()
        if game is None:
            raise NotFoundError('Game not found', game_id=game_id)
        return game

    def _round_game_id(self, round_id: int) -> int:
        game_id = db.session.query(Round.game_id).filter(Round.id == round_id).scalar()
        if game_id is None:
            raise NotFoundError('Round not found', round_id=round_id)
        return game_id

    def _create_round(self, game: Game, pending: list) -> Round:
        last = db.session.query(func.max(Round.round_number)).filter(Round.game_id == game.id).scalar() or 0
        rnd = Round(game_id=game.id, round_number=last + 1)
        db.session.add(rnd)
        db.session.flush()
        pending.append((ev.ROUND_CREATED, {'round_id': rnd.id, 'game_id': game.id, 'round_number': rnd.round_number}))
        current_app.logger.info(f"[round-created] game={game.id} round={rnd.id} number={rnd.round_number}")
        return rnd

    def _mark_full(self, rnd: Round, pending: list) -> None:
        rnd.status = Round.STATUS_FULL
        rnd.full_at = utcnow()
        pending.append((ev.ROUND_FULL, {
            'round_id': rnd.id,
            'game_id': rnd.game_id,
            'paid_participant_count': rnd.paid_participant_count,
        }))
        current_app.logger.info(f"[round-full] round={rnd.id} game={rnd.game_id} paid={rnd.paid_participant_count}")

    def _try_complete(self, rnd: Round, pending: list) -> bool:
        """Resolve a full round once no admitted player is still playing."""
        if rnd.status != Round.STATUS_FULL:
            return False
        unfinished = Participant.query.filter(
            Participant.round_id == rnd.id,
            Participant.payment_status == Participant.PAYMENT_PAID,
            Participant.admitted_at.isnot(None),
            Participant.game_status.in_(UNFINISHED_GAME_STATUSES),
        ).count()
        if unfinished:
            current_app.logger.info(f"[round-pending] round={rnd.id} still_playing={unfinished}")
            return False

        winner = self.winners.select(rnd.id)
        now = utcnow()
        rnd.status = Round.STATUS_COMPLETED
        rnd.completed_at = now
        if winner is not None:
            rnd.winner_participant_id = winner.id
            rnd.winner_selected_at = now
        pending.append((ev.ROUND_COMPLETED, {
            'round_id': rnd.id,
            'game_id': rnd.game_id,
            'winner_participant_id': rnd.winner_participant_id,
        }))
        current_app.logger.info(f"[round-completed] round={rnd.id} winner={rnd.winner_participant_id}")
        return True

    def get_or_create_active_round(self, game_id: int) -> Round:
        """Return the game's open round, creating the next one when needed.

        An active round whose paid count already reached capacity is closed
        first; it is never handed out.
        """
        with ExitStack() as held:
            held.enter_context(self.locks.game(game_id))
            with self._critical('get_or_create_active_round') as pending:
                game = self._lock_game_row(game_id)
                if not game.is_active:
                    raise InvalidStateError('Game is not accepting entries', game_id=game_id)
                current = (
                    Round.query.filter_by(game_id=game_id, status=Round.STATUS_ACTIVE)
                    .order_by(Round.round_number.desc())
                    .with_for_update()
                    .populate_existing()
                    .first()
                )
                if current is not None and current.paid_participant_count < game.max_players:
                    return current
                if current is not None:
                    held.enter_context(self.locks.round(current.id))
                    current = self._lock_round_row(current.id)
                    if current.status == Round.STATUS_ACTIVE:
                        self._mark_full(current, pending)
                        self._try_complete(current, pending)
                return self._create_round(game, pending)

    def admit_paid_participant(self, round_id: int, participant_id: int = None) -> Round:
        """Count one paid participant against the round's capacity.

        Raises RoundFullError when the round is no longer active or has no
        seat left. Reaching capacity marks the round full and attempts
        resolution in the same transaction.
        """
        with self.locks.round(round_id):
            with self._critical('admit_paid_participant') as pending:
                rnd = self._lock_round_row(round_id)
                game = db.session.get(Game, rnd.game_id)
                if participant_id is not None:
                    participant = Participant.query.filter_by(id=participant_id).populate_existing().first()
                    if participant is None or participant.round_id != round_id:
                        raise ValidationError('Participant does not belong to this round', participant_id=participant_id)
                    if participant.payment_status != Participant.PAYMENT_PAID:
                        raise InvalidStateError('Only paid participants can be admitted', participant_id=participant_id)
                    if participant.admitted_at is not None:
                        return rnd
                if rnd.status != Round.STATUS_ACTIVE or rnd.paid_participant_count + 1 > game.max_players:
                    current_app.logger.warning(
                        f"[admit-rejected] round={round_id} status={rnd.status} paid={rnd.paid_participant_count} max={game.max_players}"
                    )
                    raise RoundFullError(round_id=round_id)

                rnd.paid_participant_count += 1
                if participant_id is not None:
                    participant.admitted_at = utcnow()
                current_app.logger.info(
                    f"[admit] round={round_id} participant={participant_id} paid={rnd.paid_participant_count}/{game.max_players}"
                )
                filled = rnd.paid_participant_count >= game.max_players
                if filled:
                    self._mark_full(rnd, pending)
                    self._try_complete(rnd, pending)
                game_id, round_number, auto_restart = game.id, rnd.round_number, game.auto_restart

        if filled and auto_restart:
            self.ensure_successor_round(game_id, round_number)
        return rnd

    def ensure_successor_round(self, game_id: int, round_number: int) -> Round:
        """Open round ``round_number + 1`` unless it, or any active round, exists."""
        with self.locks.game(game_id):
            try:
                with self._critical('ensure_successor_round') as pending:
                    game = self._lock_game_row(game_id)
                    existing = Round.query.filter_by(game_id=game_id, round_number=round_number + 1).first()
                    if existing is not None:
                        return existing
                    active = Round.query.filter_by(game_id=game_id, status=Round.STATUS_ACTIVE).first()
                    if active is not None:
                        return active
                    return self._create_round(game, pending)
            except RetryableStoreError as exc:
                if not isinstance(exc.__cause__, IntegrityError):
                    raise
                current_app.logger.info(f"[successor-exists] game={game_id} number={round_number + 1}")
                return Round.query.filter_by(game_id=game_id, round_number=round_number + 1).first()

    def resolve_round(self, round_id: int) -> Round:
        """Fill-detection step; a no-op unless the round is full."""
        with self.locks.round(round_id):
            with self._critical('resolve_round') as pending:
                rnd = self._lock_round_row(round_id)
                self._try_complete(rnd, pending)
                return rnd

    def participant_finished(self, round_id: int):
        status = db.session.query(Round.status).filter(Round.id == round_id).scalar()
        if status == Round.STATUS_FULL:
            return self.resolve_round(round_id)
        return None

    def release_paid_participant(self, round_id: int, participant_id: int) -> Round:
        """Undo an admission after a payment failure or refund.

        Completed rounds are frozen. A full round reopens only when the game
        has no other active round.
        """
        game_id = self._round_game_id(round_id)
        with self.locks.game(game_id), self.locks.round(round_id):
            with self._critical('release_paid_participant') as pending:
                self._lock_game_row(game_id)
                rnd = self._lock_round_row(round_id)
                participant = Participant.query.filter_by(id=participant_id).populate_existing().first()
                if participant is None or participant.round_id != round_id or participant.admitted_at is None:
                    return rnd
                if rnd.status == Round.STATUS_COMPLETED:
                    current_app.logger.info(f"[release-frozen] round={round_id} participant={participant_id}")
                    return rnd

                participant.admitted_at = None
                rnd.paid_participant_count = max(0, rnd.paid_participant_count - 1)
                current_app.logger.info(
                    f"[release] round={round_id} participant={participant_id} paid={rnd.paid_participant_count}"
                )
                if rnd.status == Round.STATUS_FULL:
                    other_active = Round.query.filter(
                        Round.game_id == game_id,
                        Round.status == Round.STATUS_ACTIVE,
                        Round.id != round_id,
                    ).count()
                    if other_active:
                        self._try_complete(rnd, pending)
                    else:
                        rnd.status = Round.STATUS_ACTIVE
                        rnd.full_at = None
                        pending.append((ev.ROUND_REOPENED, {
                            'round_id': rnd.id,
                            'game_id': game_id,
                            'paid_participant_count': rnd.paid_participant_count,
                        }))
                        current_app.logger.info(f"[round-reopened] round={round_id}")
                return rnd

    def cancel_round(self, round_id: int, reason: str = '') -> Round:
        with self.locks.round(round_id):
            with self._critical('cancel_round') as pending:
                rnd = self._lock_round_row(round_id)
                if rnd.status == Round.STATUS_COMPLETED:
                    raise InvalidStateError('Completed rounds cannot be cancelled', round_id=round_id)
                if rnd.status == Round.STATUS_CANCELLED:
                    return rnd
                rnd.status = Round.STATUS_CANCELLED
                rnd.cancel_reason = (reason or '')[:255]
                paid = Participant.query.filter_by(round_id=round_id, payment_status=Participant.PAYMENT_PAID).all()
                for p in paid:
                    pending.append((ev.REFUND_REQUESTED, {
                        'participant_id': p.id,
                        'round_id': round_id,
                        'reason': reason or 'round_cancelled',
                    }))
                pending.append((ev.ROUND_CANCELLED, {
                    'round_id': round_id,
                    'game_id': rnd.game_id,
                    'reason': reason,
                    'refunds': len(paid),
                }))
                current_app.logger.info(f"[round-cancelled] round={round_id} refunds={len(paid)} reason={reason!r}")
                return rnd

    def resolve_pending_rounds(self, game_id: int = None) -> list:
        """Retry resolution of every full round; returns ids that completed."""
        query = db.session.query(Round.id).filter(Round.status == Round.STATUS_FULL)
        if game_id is not None:
            query = query.filter(Round.game_id == game_id)
        completed = []
        for (round_id,) in query.order_by(Round.id).all():
            rnd = self.resolve_round(round_id)
            if rnd.status == Round.STATUS_COMPLETED:
                completed.append(round_id)
        return completed

    def statistics(self, round_id: int) -> dict:
        rnd = db.session.get(Round, round_id)
        if rnd is None:
            raise NotFoundError('Round not found', round_id=round_id)
        completed = Participant.query.filter_by(round_id=round_id, game_status=Participant.GAME_COMPLETED)
        average = (
            db.session.query(func.avg(Participant.total_time))
            .filter(Participant.round_id == round_id, Participant.total_time.isnot(None))
            .scalar()
        )
        stats = rnd.to_dict()
        stats.update({
            'completed_participants': completed.count(),
            'average_completion_time': float(average) if average is not None else None,
            'full_at': rnd.full_at.isoformat() if rnd.full_at else None,
            'winner_selected_at': rnd.winner_selected_at.isoformat() if rnd.winner_selected_at else None,
        })
        return stats
