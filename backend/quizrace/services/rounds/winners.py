from typing import Optional

from flask import current_app

from quizrace import db
from quizrace.models import Participant, Round


class WinnerSelector:
    """Deterministic fastest-time winner selection.

    ``select`` runs inside the caller's transaction so the winner flag and the
    round's ``completed`` transition commit together.
    """

    def eligible_query(self, round_id: int):
        return Participant.query.filter(
            Participant.round_id == round_id,
            Participant.payment_status == Participant.PAYMENT_PAID,
            Participant.game_status == Participant.GAME_COMPLETED,
            Participant.is_fraudulent.is_(False),
            Participant.total_time.isnot(None),
            Participant.admitted_at.isnot(None),
        ).order_by(Participant.total_time.asc(), Participant.id.asc())

    def select(self, round_id: int) -> Optional[Participant]:
        existing = Participant.query.filter_by(round_id=round_id, is_winner=True).first()
        if existing:
            return existing

        winner = self.eligible_query(round_id).first()
        if winner is None:
            current_app.logger.info(f"[winner-none] round={round_id} no eligible participants")
            return None

        tied = self.eligible_query(round_id).filter(Participant.total_time == winner.total_time).count()
        if tied > 1:
            current_app.logger.info(
                f"[winner-tie] round={round_id} time={winner.total_time:.6f} tied={tied} picked={winner.id}"
            )

        winner.is_winner = True
        db.session.add(winner)
        db.session.flush()
        current_app.logger.info(
            f"[winner-selected] round={round_id} participant={winner.id} time={winner.total_time:.6f}"
        )
        return winner

    def validate(self, round_id: int) -> dict:
        """Audit a round's winner against the eligibility rules."""
        rnd = db.session.get(Round, round_id)
        if rnd is None:
            return {'valid': False, 'errors': ['Round not found'], 'warnings': []}

        errors = []
        warnings = []
        if rnd.status != Round.STATUS_COMPLETED:
            errors.append('Round is not completed')

        flagged = Participant.query.filter_by(round_id=round_id, is_winner=True).all()
        if len(flagged) > 1:
            errors.append(f'{len(flagged)} participants are flagged as winner')

        winner = db.session.get(Participant, rnd.winner_participant_id) if rnd.winner_participant_id else None
        if rnd.winner_participant_id and winner is None:
            errors.append('Winner participant not found')
        if winner is not None:
            if winner.round_id != round_id:
                errors.append('Winner belongs to another round')
            if winner.payment_status != Participant.PAYMENT_PAID:
                errors.append('Winner does not have paid status')
            if winner.game_status != Participant.GAME_COMPLETED:
                errors.append('Winner did not complete the game')
            if winner.is_fraudulent:
                errors.append('Winner is marked as fraudulent')
            if winner.total_time is None:
                errors.append('Winner has no completion time recorded')
            else:
                faster = self.eligible_query(round_id).filter(Participant.total_time < winner.total_time).count()
                if faster:
                    warnings.append(f'{faster} participants completed faster than the declared winner')
        elif rnd.status == Round.STATUS_COMPLETED and self.eligible_query(round_id).count():
            errors.append('Completed round has eligible participants but no winner')

        return {
            'valid': not errors,
            'errors': errors,
            'warnings': warnings,
            'round_status': rnd.status,
            'winner_id': rnd.winner_participant_id,
        }

    def winner_stats(self, round_id: int) -> Optional[dict]:
        winner = Participant.query.filter_by(round_id=round_id, is_winner=True).first()
        if winner is None:
            return None
        rank = self.eligible_query(round_id).filter(Participant.total_time < winner.total_time).count() + 1
        stats = winner.to_dict()
        stats['completion_rank'] = rank
        stats['eligible_count'] = self.eligible_query(round_id).count()
        return stats
