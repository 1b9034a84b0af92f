"""Domain errors raised by the round engine.

Every error carries an HTTP status code so the API layer can render it
without a per-route translation table.
"""


class QuizRaceError(Exception):
    status_code = 400
    code = 'error'

    def __init__(self, message: str = None, **details):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self):
        payload = {'error': self.message, 'code': self.code}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(QuizRaceError):
    """Malformed input."""
    code = 'validation_error'


class NotFoundError(QuizRaceError):
    """Record not found."""
    status_code = 404
    code = 'not_found'


class GameOverError(QuizRaceError):
    """The participant's game has ended."""
    status_code = 409
    code = 'game_over'
    reason = None


class QuestionTimeoutError(GameOverError):
    """Time's up for this question."""
    code = 'timeout'
    reason = 'timeout'


class WrongAnswerError(GameOverError):
    """Wrong answer."""
    code = 'wrong_answer'
    reason = 'wrong_answer'


class ForbiddenError(GameOverError):
    """Request does not come from the session and device that registered."""
    status_code = 403
    code = 'forbidden'
    reason = 'device_continuity'


class InvalidStateError(QuizRaceError):
    """Operation not allowed in the current state."""
    status_code = 409
    code = 'invalid_state'


class StaleStateError(QuizRaceError):
    """Participant state changed underneath this request; re-fetch and retry."""
    status_code = 409
    code = 'stale_state'


class RoundFullError(QuizRaceError):
    """Round has no capacity left; request a new round."""
    status_code = 409
    code = 'round_full'


class AlreadyRegisteredError(QuizRaceError):
    """This email already entered the current round."""
    status_code = 409
    code = 'already_registered'


class PaymentRequiredError(QuizRaceError):
    """Payment must be confirmed before continuing."""
    status_code = 402
    code = 'payment_required'


class RetryableStoreError(QuizRaceError):
    """Store failure inside a critical section; the whole operation was rolled back."""
    status_code = 503
    code = 'retry'
