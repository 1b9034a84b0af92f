from flask import Blueprint, jsonify, request, current_app

from quizrace.errors import InvalidStateError, ValidationError
from quizrace.models import Participant
from quizrace.services.rounds.participants import OutcomeKind, VALID_ANSWERS


rounds = Blueprint('rounds', __name__)


def _engine():
    return current_app.extensions['quizrace']


def _identity():
    """Session id and device fingerprint the client registered with."""
    return request.headers.get('X-Session-Id'), request.headers.get('X-Device-Fingerprint')


def _next_question(participant: Participant):
    game = participant.round.game
    number = participant.current_question
    if participant.game_status != Participant.GAME_IN_PROGRESS or number > game.total_questions:
        return None
    if number > game.free_questions and not participant.is_admitted:
        return None
    return _engine().questions.question_for(game.id, number).to_dict(number)


@rounds.route('/games/<int:game_id>/participants', methods=['POST'])
def register_participant(game_id):
    data = request.get_json(silent=True) or {}
    session_id, fingerprint = _identity()
    participant = _engine().participants.register(
        game_id,
        data.get('email'),
        session_id,
        fingerprint,
        ip_address=request.remote_addr,
    )
    return jsonify({
        'participant': participant.to_dict(),
        'round': participant.round.to_dict(),
    }), 201


@rounds.route('/games/<int:game_id>/rounds/active', methods=['GET'])
def active_round(game_id):
    rnd = _engine().capacity.get_or_create_active_round(game_id)
    return jsonify(rnd.to_dict())


@rounds.route('/participants/<int:participant_id>/start', methods=['POST'])
def start(participant_id):
    session_id, fingerprint = _identity()
    participant = _engine().participants.start(participant_id, session_id, fingerprint)
    return jsonify({'participant': participant.to_dict(), 'question': _next_question(participant)})


@rounds.route('/participants/<int:participant_id>/answer', methods=['POST'])
def answer(participant_id):
    data = request.get_json(silent=True) or {}
    if (data.get('answer') or '').strip().upper() not in VALID_ANSWERS:
        raise ValidationError('Answer must be one of A, B or C')
    try:
        number = int(data.get('question_number'))
    except (TypeError, ValueError):
        raise ValidationError('question_number must be an integer')

    engine = _engine()
    session_id, fingerprint = _identity()
    game_id = engine.participants.get(participant_id).round.game_id
    question = engine.questions.question_for(game_id, number)
    outcome = engine.participants.submit_answer(
        participant_id, number, data['answer'], question.correct_answer, session_id, fingerprint
    )
    payload = outcome.to_dict()
    if outcome.kind == OutcomeKind.ACCEPTED:
        payload['question'] = _next_question(outcome.participant)
        payload['payment_required'] = payload['question'] is None
    status = 200 if outcome.ok else outcome.error.status_code
    return jsonify(payload), status


@rounds.route('/participants/<int:participant_id>/pause', methods=['POST'])
def pause(participant_id):
    session_id, fingerprint = _identity()
    return jsonify(_engine().participants.pause(participant_id, session_id, fingerprint))


@rounds.route('/participants/<int:participant_id>/resume', methods=['POST'])
def resume(participant_id):
    session_id, fingerprint = _identity()
    engine = _engine()
    status = engine.participants.resume(participant_id, session_id, fingerprint)
    status['question'] = _next_question(engine.participants.get(participant_id))
    return jsonify(status)


@rounds.route('/participants/<int:participant_id>/timing', methods=['GET'])
def timing(participant_id):
    return jsonify(_engine().participants.timing_status(participant_id))


@rounds.route('/participants/<int:participant_id>/payment', methods=['POST'])
def payment(participant_id):
    """Payment collaborator callback: {"status": "paid" | "failed" | "refunded" | "cancelled"}."""
    data = request.get_json(silent=True) or {}
    status = data.get('status')
    machine = _engine().participants
    if status == Participant.PAYMENT_PAID:
        machine.confirm_payment(participant_id)
    elif status == Participant.PAYMENT_FAILED:
        machine.mark_payment_failed(participant_id)
    elif status == Participant.PAYMENT_REFUNDED:
        machine.mark_refunded(participant_id)
    elif status == Participant.PAYMENT_CANCELLED:
        machine.mark_cancelled(participant_id)
    else:
        raise ValidationError('status must be one of paid, failed, refunded, cancelled')
    participant = machine.get(participant_id)
    return jsonify({'participant': participant.to_dict(), 'round': participant.round.to_dict()})


@rounds.route('/rounds/<int:round_id>', methods=['GET'])
def round_detail(round_id):
    return jsonify(_engine().capacity.statistics(round_id))


@rounds.route('/rounds/<int:round_id>/cancel', methods=['POST'])
def cancel(round_id):
    data = request.get_json(silent=True) or {}
    rnd = _engine().capacity.cancel_round(round_id, data.get('reason') or '')
    return jsonify(rnd.to_dict())


@rounds.route('/rounds/<int:round_id>/winner', methods=['GET'])
def winner(round_id):
    engine = _engine()
    stats = engine.winners.winner_stats(round_id)
    if stats is None:
        rnd = engine.capacity.statistics(round_id)
        if rnd['status'] != 'completed':
            raise InvalidStateError('Round has not completed yet', round_id=round_id)
    return jsonify({'winner': stats, 'validation': engine.winners.validate(round_id)})
