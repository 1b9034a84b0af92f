import pytest
from sqlalchemy.exc import IntegrityError

from quizrace import db
from quizrace.errors import (
    AlreadyRegisteredError,
    ForbiddenError,
    InvalidStateError,
    PaymentRequiredError,
    RoundFullError,
    StaleStateError,
    ValidationError,
)
from quizrace.models import Participant, Round
from quizrace.services.rounds import events as ev
from quizrace.services.rounds.participants import OutcomeKind


def ident(participant):
    return participant.session_id, participant.device_fingerprint


def test_register_places_participant_in_active_round(engine, make_game, make_participant):
    game = make_game()
    alice = make_participant(game, email='Alice@Example.com ')
    assert alice.email == 'alice@example.com'
    assert alice.game_status == Participant.GAME_NOT_STARTED
    assert alice.payment_status == Participant.PAYMENT_PENDING
    rnd = Round.query.get(alice.round_id)
    assert rnd.round_number == 1
    assert rnd.participant_count == 1

    with pytest.raises(AlreadyRegisteredError):
        make_participant(game, email='alice@example.com')
    with pytest.raises(ValidationError):
        make_participant(game, email='not-an-email')


def test_same_email_twice_in_round_violates_constraint(engine, make_game):
    game = make_game()
    first = engine.participants.register(game.id, 'dup@example.com', 'session-a', 'device-a')
    db.session.add(Participant(
        round_id=first.round_id, email='dup@example.com', session_id='session-b', device_fingerprint='device-b',
    ))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_racing_registration_maps_to_already_registered(engine, make_game, monkeypatch):
    game = make_game()
    first = engine.participants.register(game.id, 'race@example.com', 'session-a', 'device-a')
    # Both requests passed the read check before either committed
    monkeypatch.setattr(engine.participants, '_registered', lambda round_id, email: False)

    with pytest.raises(AlreadyRegisteredError) as exc:
        engine.participants.register(game.id, 'Race@Example.com', 'session-b', 'device-b')
    assert exc.value.status_code == 409
    assert db.session.get(Round, first.round_id).participant_count == 1
    assert Participant.query.filter_by(email='race@example.com').count() == 1


def test_full_game_records_split_times(engine, make_game, make_participant, player):
    game = make_game(max_players=5)
    alice = make_participant(game)
    outcome = player(alice, [2.0, 3.5, 2.5, 4.5])

    assert outcome.kind == OutcomeKind.COMPLETED
    p = engine.participants.get(alice.id)
    assert p.game_status == Participant.GAME_COMPLETED
    assert p.pre_payment_time == pytest.approx(5.5)
    assert p.post_payment_time == pytest.approx(7.0)
    assert p.total_time == pytest.approx(12.5)
    assert [a['question_number'] for a in p.answer_records] == [1, 2, 3, 4]
    assert p.is_fraudulent is False
    assert engine.events.events(ev.PARTICIPANT_COMPLETED)[-1].payload['participant_id'] == alice.id


def test_timeout_fails_participant(engine, clock, make_game, make_participant):
    game = make_game()
    bob = make_participant(game)
    sid, fp = ident(bob)
    engine.participants.start(bob.id, sid, fp)
    clock.advance(11.0)

    outcome = engine.participants.submit_answer(bob.id, 1, 'A', 'A', sid, fp)
    assert outcome.kind == OutcomeKind.TIMED_OUT
    assert outcome.error.reason == 'timeout'
    p = engine.participants.get(bob.id)
    assert p.game_status == Participant.GAME_FAILED
    assert p.failure_reason == 'timeout'
    assert p.total_time is None

    with pytest.raises(InvalidStateError):
        engine.participants.submit_answer(bob.id, 1, 'A', 'A', sid, fp)


def test_wrong_answer_fails_participant(engine, clock, make_game, make_participant):
    game = make_game()
    carol = make_participant(game)
    sid, fp = ident(carol)
    engine.participants.start(carol.id, sid, fp)
    clock.advance(1.0)
    outcome = engine.participants.submit_answer(carol.id, 1, 'b', 'A', sid, fp)
    assert outcome.kind == OutcomeKind.WRONG_ANSWER
    with pytest.raises(type(outcome.error)):
        outcome.raise_for_outcome()
    assert engine.participants.get(carol.id).failure_reason == 'wrong_answer'


def test_session_mismatch_is_forbidden_and_flagged(engine, clock, make_game, make_participant):
    game = make_game()
    dave = make_participant(game)
    sid, fp = ident(dave)
    engine.participants.start(dave.id, sid, fp)
    clock.advance(1.0)

    outcome = engine.participants.submit_answer(dave.id, 1, 'A', 'A', 'someone-else', fp)
    assert outcome.kind == OutcomeKind.FORBIDDEN
    assert isinstance(outcome.error, ForbiddenError)
    p = engine.participants.get(dave.id)
    assert p.fraud_score >= 0.8
    assert p.is_fraudulent is True
    assert p.game_status == Participant.GAME_FAILED
    assert p.total_time is None
    assert 'session_mismatch' in p.flags
    assert engine.events.events(ev.PARTICIPANT_FLAGGED)


def test_continuity_checked_on_pause_and_start(engine, make_game, make_participant):
    game = make_game()
    erin = make_participant(game)
    with pytest.raises(ForbiddenError):
        engine.participants.start(erin.id, erin.session_id, 'other-device')
    assert engine.participants.get(erin.id).is_fraudulent is True


def test_duplicate_submission_is_stale(engine, clock, make_game, make_participant):
    game = make_game()
    frank = make_participant(game)
    sid, fp = ident(frank)
    engine.participants.start(frank.id, sid, fp)
    clock.advance(1.0)
    first = engine.participants.submit_answer(frank.id, 1, 'A', 'A', sid, fp)
    assert first.kind == OutcomeKind.ACCEPTED

    with pytest.raises(StaleStateError):
        engine.participants.submit_answer(frank.id, 1, 'A', 'A', sid, fp)
    assert len(engine.participants.get(frank.id).answer_records) == 1


def test_invalid_answer_rejected_before_state_change(engine, clock, make_game, make_participant):
    game = make_game()
    gina = make_participant(game)
    sid, fp = ident(gina)
    engine.participants.start(gina.id, sid, fp)
    clock.advance(1.0)
    with pytest.raises(ValidationError):
        engine.participants.submit_answer(gina.id, 1, 'D', 'A', sid, fp)
    p = engine.participants.get(gina.id)
    assert p.current_question == 1
    assert p.game_status == Participant.GAME_IN_PROGRESS


def test_fast_answer_accepted_but_scored(engine, clock, make_game, make_participant):
    game = make_game()
    hank = make_participant(game)
    sid, fp = ident(hank)
    engine.participants.start(hank.id, sid, fp)
    clock.advance(0.3)
    outcome = engine.participants.submit_answer(hank.id, 1, 'A', 'A', sid, fp)
    assert outcome.kind == OutcomeKind.ACCEPTED
    p = engine.participants.get(hank.id)
    assert p.flags == ['answer_too_fast']
    assert p.fraud_score == pytest.approx(0.3)
    assert p.is_fraudulent is False


def test_post_payment_question_requires_payment(engine, clock, make_game, make_participant):
    game = make_game()
    ivy = make_participant(game)
    sid, fp = ident(ivy)
    engine.participants.start(ivy.id, sid, fp)
    for number in (1, 2):
        clock.advance(2.0 + number)
        engine.participants.submit_answer(ivy.id, number, 'A', 'A', sid, fp)

    with pytest.raises(PaymentRequiredError):
        engine.participants.submit_answer(ivy.id, 3, 'A', 'A', sid, fp)
    engine.participants.pause(ivy.id, sid, fp)
    with pytest.raises(PaymentRequiredError):
        engine.participants.resume(ivy.id, sid, fp)


def test_pause_only_after_free_questions(engine, make_game, make_participant):
    game = make_game()
    jack = make_participant(game)
    sid, fp = ident(jack)
    engine.participants.start(jack.id, sid, fp)
    with pytest.raises(InvalidStateError):
        engine.participants.pause(jack.id, sid, fp)


def test_payment_pause_does_not_count(engine, clock, make_game, make_participant, player):
    game = make_game(max_players=5)
    kim = make_participant(game)
    player(kim, [1.5, 3.0, 2.0, 2.5])
    p = engine.participants.get(kim.id)
    assert p.total_time == pytest.approx(9.0)
    assert engine.participants.timing_status(kim.id)['paused_duration'] == pytest.approx(30)


def test_payment_failure_after_admission_releases_seat(engine, clock, make_game, make_participant):
    game = make_game()
    leo = make_participant(game)
    sid, fp = ident(leo)
    engine.participants.start(leo.id, sid, fp)
    for number in (1, 2):
        clock.advance(2.0)
        engine.participants.submit_answer(leo.id, number, 'A', 'A', sid, fp)
    engine.participants.confirm_payment(leo.id)
    assert Round.query.get(leo.round_id).paid_participant_count == 1

    assert engine.participants.mark_payment_failed(leo.id) is True
    p = engine.participants.get(leo.id)
    assert p.payment_status == Participant.PAYMENT_FAILED
    assert p.admitted_at is None
    assert p.game_status == Participant.GAME_FAILED
    assert Round.query.get(leo.round_id).paid_participant_count == 0


def test_payment_transitions_are_idempotent(engine, make_game, make_participant):
    game = make_game()
    mia = make_participant(game)
    assert engine.participants.mark_paid(mia.id) is True
    assert engine.participants.mark_paid(mia.id) is False
    with pytest.raises(InvalidStateError):
        engine.participants.mark_cancelled(mia.id)
    assert engine.participants.mark_refunded(mia.id) is True


def test_confirm_payment_on_closed_round_requests_refund(engine, make_game, make_participant):
    game = make_game(max_players=1, auto_restart=False)
    first = make_participant(game)
    second = make_participant(game)
    engine.participants.confirm_payment(first.id)

    with pytest.raises(RoundFullError):
        engine.participants.confirm_payment(second.id)
    refunds = engine.events.events(ev.REFUND_REQUESTED)
    assert refunds[-1].payload == {'participant_id': second.id, 'round_id': second.round_id, 'reason': 'round_full'}
    assert engine.participants.get(second.id).admitted_at is None


def test_check_timeout_and_abandon(engine, clock, make_game, make_participant):
    game = make_game()
    nora = make_participant(game)
    otto = make_participant(game)
    engine.participants.start(nora.id, *ident(nora))
    clock.advance(12.0)
    assert engine.participants.check_timeout(nora.id) is True
    assert engine.participants.get(nora.id).failure_reason == 'timeout'
    assert engine.participants.check_timeout(nora.id) is False

    assert engine.participants.abandon(otto.id) is True
    assert engine.participants.get(otto.id).game_status == Participant.GAME_ABANDONED
    assert engine.participants.abandon(otto.id) is False
