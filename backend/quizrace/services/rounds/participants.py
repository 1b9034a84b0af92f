"""Participant lifecycle.

Game status: ``not_started -> in_progress -> completed | failed | abandoned``.
Payment status moves independently: ``pending -> paid | failed | cancelled``
and ``paid -> refunded | failed``.

A participant row is written only by requests for that participant. Every
write is a conditional UPDATE on the state the request read; when no row
matches, another request got there first and the write is rejected with
StaleStateError instead of overwriting it.
"""

import json
import re
from dataclasses import asdict, dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quizrace import db
from quizrace.errors import (
    AlreadyRegisteredError,
    ForbiddenError,
    GameOverError,
    InvalidStateError,
    NotFoundError,
    PaymentRequiredError,
    RetryableStoreError,
    RoundFullError,
    StaleStateError,
    ValidationError,
)
from quizrace.models import Game, Participant, Round, utcnow
from . import events as ev
from .timing import AnswerRecord, TimingTracker

VALID_ANSWERS = ('A', 'B', 'C')
EMAIL_RE = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')
CONTINUITY_RETRIES = 3


class OutcomeKind(str, Enum):
    ACCEPTED = 'accepted'
    COMPLETED = 'completed'
    TIMED_OUT = 'timed_out'
    WRONG_ANSWER = 'wrong_answer'
    FORBIDDEN = 'forbidden'


@dataclass
class AnswerOutcome:
    kind: OutcomeKind
    participant: Participant
    record: Optional[AnswerRecord] = None
    error: Optional[GameOverError] = None

    @property
    def ok(self) -> bool:
        return self.kind in (OutcomeKind.ACCEPTED, OutcomeKind.COMPLETED)

    def raise_for_outcome(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict:
        payload = {
            'result': self.kind.value,
            'participant': self.participant.to_dict(),
        }
        if self.record is not None:
            payload['question_time'] = round(self.record.time_taken, 6)
        if self.error is not None:
            payload['error'] = self.error.to_dict()
        return payload


class ParticipantStateMachine:
    def __init__(self, scorer, capacity, events, clock, warning_ratio=0.8):
        self.scorer = scorer
        self.capacity = capacity
        self.events = events
        self.clock = clock
        self.warning_ratio = warning_ratio

    # -- loading ---------------------------------------------------------

    def get(self, participant_id: int) -> Participant:
        participant = Participant.query.filter_by(id=participant_id).populate_existing().first()
        if participant is None:
            raise NotFoundError('Participant not found', participant_id=participant_id)
        return participant

    def _game(self, participant: Participant) -> Game:
        return participant.round.game

    def _tracker(self, participant: Participant, game: Game) -> TimingTracker:
        data = json.loads(participant.timing_state) if participant.timing_state else None
        return TimingTracker.from_dict(
            data,
            total_questions=game.total_questions,
            free_questions=game.free_questions,
            question_timeout=game.question_timeout_seconds,
            clock=self.clock,
            warning_ratio=self.warning_ratio,
        )

    # -- writes ----------------------------------------------------------

    def _update(self, participant_id: int, expected: dict, values: dict) -> None:
        try:
            count = (
                Participant.query.filter_by(id=participant_id, **expected)
                .update(values, synchronize_session=False)
            )
            if count != 1:
                db.session.rollback()
                current_app.logger.warning(f"[stale] participant={participant_id} expected={expected}")
                raise StaleStateError(participant_id=participant_id)
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise RetryableStoreError('Participant update failed, retry', participant_id=participant_id) from exc

    def _fraud_values(self, participant: Participant, signals) -> dict:
        flags = participant.flags + [getattr(s, 'value', s) for s in signals]
        score = self.scorer.evaluate(flags)
        return {
            'fraud_flags': json.dumps(flags) if flags else None,
            'fraud_score': score,
            'is_fraudulent': self.scorer.is_fraudulent(score),
        }

    def _after_terminal(self, participant_id: int, round_id: int, status: str, reason: str = None) -> None:
        participant = self.get(participant_id)
        name = ev.PARTICIPANT_COMPLETED if status == Participant.GAME_COMPLETED else ev.PARTICIPANT_FAILED
        self.events.append(name, participant_id=participant_id, round_id=round_id, reason=reason)
        if participant.is_admitted:
            self.capacity.participant_finished(round_id)

    def _enforce_continuity(self, participant: Participant, session_id, device_fingerprint) -> Optional[ForbiddenError]:
        """Apply continuity fraud signals and the failure in one commit.

        Returns the ForbiddenError to surface, or None when the request
        comes from the registered session and device.
        """
        signals = self.scorer.continuity_signals(participant, session_id, device_fingerprint)
        if not signals:
            return None

        for _ in range(CONTINUITY_RETRIES):
            values = self._fraud_values(participant, signals)
            values['total_time'] = None
            ended_now = not participant.is_finished
            if ended_now:
                values.update({
                    'game_status': Participant.GAME_FAILED,
                    'failure_reason': ForbiddenError.reason,
                    'completed_at': utcnow(),
                })
            expected = {'game_status': participant.game_status, 'fraud_flags': participant.fraud_flags}
            try:
                self._update(participant.id, expected, values)
            except StaleStateError:
                participant = self.get(participant.id)
                continue
            current_app.logger.warning(
                f"[continuity] participant={participant.id} signals={[s.value for s in signals]} score={values['fraud_score']}"
            )
            self.events.append(
                ev.PARTICIPANT_FLAGGED,
                participant_id=participant.id,
                round_id=participant.round_id,
                signals=[s.value for s in signals],
                fraud_score=values['fraud_score'],
            )
            if ended_now:
                self._after_terminal(participant.id, participant.round_id, Participant.GAME_FAILED, ForbiddenError.reason)
            return ForbiddenError(participant_id=participant.id, signals=[s.value for s in signals])
        raise StaleStateError(participant_id=participant.id)

    def _fail(self, participant: Participant, reason: str, tracker: TimingTracker = None) -> None:
        values = {
            'game_status': Participant.GAME_FAILED,
            'failure_reason': reason,
            'completed_at': utcnow(),
            'last_activity_at': utcnow(),
            'total_time': None,
        }
        if tracker is not None:
            tracker.stop()
            values['timing_state'] = json.dumps(tracker.to_dict())
        self._update(
            participant.id,
            {'game_status': Participant.GAME_IN_PROGRESS, 'current_question': participant.current_question},
            values,
        )
        current_app.logger.info(
            f"[participant-failed] participant={participant.id} round={participant.round_id} reason={reason} question={participant.current_question}"
        )
        self._after_terminal(participant.id, participant.round_id, Participant.GAME_FAILED, reason)

    # -- registration & gameplay -----------------------------------------

    def _registered(self, round_id: int, email: str) -> bool:
        return Participant.query.filter_by(round_id=round_id, email=email).first() is not None

    def register(self, game_id: int, email: str, session_id: str, device_fingerprint: str,
                 ip_address: str = None) -> Participant:
        email = (email or '').strip().lower()
        if not EMAIL_RE.match(email):
            raise ValidationError('A valid email is required')
        if not session_id or not device_fingerprint:
            raise ValidationError('session_id and device_fingerprint are required')
        if db.session.get(Game, game_id) is None:
            raise NotFoundError('Game not found', game_id=game_id)

        rnd = self.capacity.get_or_create_active_round(game_id)
        if self._registered(rnd.id, email):
            raise AlreadyRegisteredError(round_id=rnd.id)

        now = utcnow()
        device_count = Participant.query.filter(
            Participant.device_fingerprint == device_fingerprint,
            Participant.created_at >= now - timedelta(hours=24),
        ).count()
        email_count = Participant.query.filter(
            Participant.email == email,
            Participant.created_at >= now.replace(hour=0, minute=0, second=0, microsecond=0),
        ).count()
        signals = self.scorer.registration_signals(device_count, email_count)
        flags = [s.value for s in signals]
        score = self.scorer.evaluate(flags)

        participant = Participant(
            round_id=rnd.id,
            email=email,
            session_id=session_id,
            device_fingerprint=device_fingerprint,
            ip_address=ip_address,
            fraud_flags=json.dumps(flags) if flags else None,
            fraud_score=score,
            is_fraudulent=self.scorer.is_fraudulent(score),
        )
        try:
            db.session.add(participant)
            Round.query.filter_by(id=rnd.id).update(
                {Round.participant_count: Round.participant_count + 1},
                synchronize_session=False,
            )
            db.session.commit()
        except IntegrityError:
            # Concurrent registration with the same email won the unique constraint
            db.session.rollback()
            raise AlreadyRegisteredError(round_id=rnd.id)
        except SQLAlchemyError as exc:
            db.session.rollback()
            raise RetryableStoreError('Registration failed, retry') from exc

        current_app.logger.info(f"[register] participant={participant.id} round={rnd.id} game={game_id}")
        if flags:
            current_app.logger.warning(f"[register-flagged] participant={participant.id} signals={flags} score={score}")
        return participant

    def start(self, participant_id: int, session_id: str, device_fingerprint: str) -> Participant:
        participant = self.get(participant_id)
        forbidden = self._enforce_continuity(participant, session_id, device_fingerprint)
        if forbidden:
            raise forbidden
        if participant.game_status != Participant.GAME_NOT_STARTED:
            raise InvalidStateError('Game already started', game_status=participant.game_status)
        if participant.round.status == Round.STATUS_CANCELLED:
            raise InvalidStateError('Round was cancelled', round_id=participant.round_id)
        if participant.is_fraudulent:
            self._update(participant.id, {'game_status': Participant.GAME_NOT_STARTED}, {
                'game_status': Participant.GAME_FAILED,
                'failure_reason': 'fraud',
                'completed_at': utcnow(),
            })
            current_app.logger.warning(f"[start-blocked] participant={participant.id} round={participant.round_id}")
            self._after_terminal(participant.id, participant.round_id, Participant.GAME_FAILED, 'fraud')
            raise ForbiddenError('Participant is blocked by fraud screening', participant_id=participant.id)

        tracker = self._tracker(participant, self._game(participant))
        tracker.start()
        now = utcnow()
        self._update(participant.id, {'game_status': Participant.GAME_NOT_STARTED}, {
            'game_status': Participant.GAME_IN_PROGRESS,
            'current_question': 1,
            'timing_state': json.dumps(tracker.to_dict()),
            'started_at': now,
            'last_activity_at': now,
        })
        current_app.logger.info(f"[start] participant={participant.id} round={participant.round_id}")
        return self.get(participant.id)

    def submit_answer(self, participant_id: int, question_number, answer: str, correct_answer: str,
                      session_id: str, device_fingerprint: str) -> AnswerOutcome:
        normalized = (answer or '').strip().upper()
        if normalized not in VALID_ANSWERS:
            raise ValidationError('Answer must be one of A, B or C')
        try:
            question_number = int(question_number)
        except (TypeError, ValueError):
            raise ValidationError('question_number must be an integer')

        participant = self.get(participant_id)
        forbidden = self._enforce_continuity(participant, session_id, device_fingerprint)
        if forbidden:
            return AnswerOutcome(OutcomeKind.FORBIDDEN, self.get(participant_id), error=forbidden)

        if participant.game_status != Participant.GAME_IN_PROGRESS:
            raise InvalidStateError('Game is not in progress', game_status=participant.game_status)
        if question_number != participant.current_question:
            # Duplicate or out-of-order submission
            raise StaleStateError(expected=participant.current_question, received=question_number)
        if participant.round.status == Round.STATUS_CANCELLED:
            raise InvalidStateError('Round was cancelled', round_id=participant.round_id)
        game = self._game(participant)
        if question_number > game.free_questions:
            if participant.payment_status != Participant.PAYMENT_PAID:
                raise PaymentRequiredError(participant_id=participant.id)
            if not participant.is_admitted:
                raise InvalidStateError('Participant was not admitted to the round', participant_id=participant.id)

        tracker = self._tracker(participant, game)
        try:
            record = tracker.record_answer(question_number, normalized, correct_answer)
        except GameOverError as exc:
            self._fail(participant, exc.reason, tracker)
            kind = OutcomeKind.TIMED_OUT if exc.reason == 'timeout' else OutcomeKind.WRONG_ANSWER
            return AnswerOutcome(kind, self.get(participant_id), error=exc)

        signals = self.scorer.latency_signals(record.time_taken)
        if tracker.is_finished:
            signals += self.scorer.timing_pattern_signals(tracker.question_times())
        values = self._fraud_values(participant, signals) if signals else {}
        fraudulent = values.get('is_fraudulent', participant.is_fraudulent)
        now = utcnow()
        values.update({
            'current_question': question_number + 1,
            'answers': json.dumps(participant.answer_records + [asdict(record)]),
            'timing_state': json.dumps(tracker.to_dict()),
            'pre_payment_time': tracker.pre_payment_time,
            'post_payment_time': tracker.post_payment_time,
            'last_activity_at': now,
        })
        if fraudulent:
            tracker.stop()
            values.update({
                'game_status': Participant.GAME_FAILED,
                'failure_reason': 'fraud',
                'timing_state': json.dumps(tracker.to_dict()),
                'completed_at': now,
                'total_time': None,
            })
        elif tracker.is_finished:
            values.update({
                'game_status': Participant.GAME_COMPLETED,
                'total_time': tracker.total_time(),
                'completed_at': now,
            })
        self._update(
            participant.id,
            {'game_status': Participant.GAME_IN_PROGRESS, 'current_question': question_number},
            values,
        )
        if signals:
            current_app.logger.warning(
                f"[fraud-signal] participant={participant.id} signals={[s.value for s in signals]} score={values['fraud_score']}"
            )

        if fraudulent:
            self._after_terminal(participant.id, participant.round_id, Participant.GAME_FAILED, 'fraud')
            error = ForbiddenError('Fraud score threshold reached', participant_id=participant.id)
            return AnswerOutcome(OutcomeKind.FORBIDDEN, self.get(participant_id), record=record, error=error)
        if tracker.is_finished:
            current_app.logger.info(
                f"[completed] participant={participant.id} round={participant.round_id} total={tracker.total_time():.6f}"
            )
            self._after_terminal(participant.id, participant.round_id, Participant.GAME_COMPLETED)
            return AnswerOutcome(OutcomeKind.COMPLETED, self.get(participant_id), record=record)
        return AnswerOutcome(OutcomeKind.ACCEPTED, self.get(participant_id), record=record)

    def pause(self, participant_id: int, session_id: str, device_fingerprint: str) -> dict:
        """Stop the clock after the last free question while payment runs."""
        participant = self.get(participant_id)
        forbidden = self._enforce_continuity(participant, session_id, device_fingerprint)
        if forbidden:
            raise forbidden
        if participant.game_status != Participant.GAME_IN_PROGRESS:
            raise InvalidStateError('Game is not in progress', game_status=participant.game_status)
        game = self._game(participant)
        if participant.current_question != game.free_questions + 1:
            raise InvalidStateError('Timing pauses only after the last free question')
        if participant.payment_status != Participant.PAYMENT_PENDING:
            raise InvalidStateError('Payment is not pending', payment_status=participant.payment_status)

        tracker = self._tracker(participant, game)
        tracker.pause()
        self._update(
            participant.id,
            {'game_status': Participant.GAME_IN_PROGRESS, 'current_question': participant.current_question},
            {'timing_state': json.dumps(tracker.to_dict()), 'last_activity_at': utcnow()},
        )
        current_app.logger.info(f"[pause] participant={participant.id}")
        return tracker.status()

    def resume(self, participant_id: int, session_id: str, device_fingerprint: str) -> dict:
        participant = self.get(participant_id)
        forbidden = self._enforce_continuity(participant, session_id, device_fingerprint)
        if forbidden:
            raise forbidden
        if participant.game_status != Participant.GAME_IN_PROGRESS:
            raise InvalidStateError('Game is not in progress', game_status=participant.game_status)
        if participant.payment_status != Participant.PAYMENT_PAID:
            raise PaymentRequiredError(participant_id=participant.id)
        if not participant.is_admitted:
            raise InvalidStateError('Participant was not admitted to the round', participant_id=participant.id)

        tracker = self._tracker(participant, self._game(participant))
        tracker.resume()
        self._update(
            participant.id,
            {'game_status': Participant.GAME_IN_PROGRESS, 'current_question': participant.current_question},
            {'timing_state': json.dumps(tracker.to_dict()), 'last_activity_at': utcnow()},
        )
        current_app.logger.info(f"[resume] participant={participant.id} paused_for={tracker.paused_duration:.3f}s")
        return tracker.status()

    def timing_status(self, participant_id: int) -> dict:
        participant = self.get(participant_id)
        status = self._tracker(participant, self._game(participant)).status()
        status['game_status'] = participant.game_status
        return status

    def check_timeout(self, participant_id: int) -> bool:
        """Fail a participant whose current question ran past its deadline."""
        participant = self.get(participant_id)
        if participant.game_status != Participant.GAME_IN_PROGRESS:
            return False
        tracker = self._tracker(participant, self._game(participant))
        if not tracker.is_timed_out():
            return False
        self._fail(participant, 'timeout', tracker)
        return True

    def abandon(self, participant_id: int) -> bool:
        participant = self.get(participant_id)
        if participant.game_status not in (Participant.GAME_NOT_STARTED, Participant.GAME_IN_PROGRESS):
            return False
        self._update(
            participant.id,
            {'game_status': participant.game_status, 'current_question': participant.current_question},
            {'game_status': Participant.GAME_ABANDONED, 'completed_at': utcnow(), 'total_time': None},
        )
        current_app.logger.info(f"[abandoned] participant={participant.id} round={participant.round_id}")
        self._after_terminal(participant.id, participant.round_id, Participant.GAME_ABANDONED, 'abandoned')
        return True

    # -- payment sub-state -------------------------------------------------

    def _transition_payment(self, participant_id: int, allowed_from: tuple, to: str) -> bool:
        participant = self.get(participant_id)
        if participant.payment_status == to:
            return False
        if participant.payment_status not in allowed_from:
            raise InvalidStateError(
                f'Cannot move payment from {participant.payment_status} to {to}',
                participant_id=participant_id,
            )
        previous = participant.payment_status
        self._update(participant.id, {'payment_status': previous}, {'payment_status': to})
        current_app.logger.info(f"[payment] participant={participant_id} {previous} -> {to}")
        return True

    def mark_paid(self, participant_id: int) -> bool:
        return self._transition_payment(participant_id, (Participant.PAYMENT_PENDING,), Participant.PAYMENT_PAID)

    def mark_cancelled(self, participant_id: int) -> bool:
        return self._transition_payment(participant_id, (Participant.PAYMENT_PENDING,), Participant.PAYMENT_CANCELLED)

    def mark_payment_failed(self, participant_id: int) -> bool:
        changed = self._transition_payment(
            participant_id, (Participant.PAYMENT_PENDING, Participant.PAYMENT_PAID), Participant.PAYMENT_FAILED
        )
        if changed:
            self._after_payment_loss(participant_id, 'payment_failed')
        return changed

    def mark_refunded(self, participant_id: int) -> bool:
        changed = self._transition_payment(participant_id, (Participant.PAYMENT_PAID,), Participant.PAYMENT_REFUNDED)
        if changed:
            self._after_payment_loss(participant_id, 'refunded')
        return changed

    def _after_payment_loss(self, participant_id: int, reason: str) -> None:
        participant = self.get(participant_id)
        if participant.is_admitted:
            self.capacity.release_paid_participant(participant.round_id, participant.id)
            participant = self.get(participant_id)
        if participant.game_status == Participant.GAME_IN_PROGRESS:
            self._fail(participant, reason)

    def confirm_payment(self, participant_id: int) -> Round:
        """Payment collaborator entry point: mark paid, then claim a seat."""
        self.mark_paid(participant_id)
        participant = self.get(participant_id)
        try:
            return self.capacity.admit_paid_participant(participant.round_id, participant.id)
        except RoundFullError:
            self.events.append(
                ev.REFUND_REQUESTED,
                participant_id=participant.id,
                round_id=participant.round_id,
                reason='round_full',
            )
            current_app.logger.warning(f"[admit-refund] participant={participant.id} round={participant.round_id}")
            raise
