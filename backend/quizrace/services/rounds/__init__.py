"""Round/participant engine.

``RoundEngine`` wires one instance of each component; ``create_app`` keeps it
on ``app.extensions['quizrace']``. Tests build their own engine with a fake
clock.
"""

import time
from dataclasses import dataclass
from typing import Dict

from quizrace.errors import NotFoundError
from quizrace.models import Question
from .capacity import RoundCapacityController
from .events import EventLog
from .fraud import FraudScorer
from .locks import RoundLocks
from .participants import AnswerOutcome, OutcomeKind, ParticipantStateMachine
from .timing import TimingTracker
from .winners import WinnerSelector


@dataclass(frozen=True)
class QuestionView:
    question_id: int
    correct_answer: str
    options: Dict[str, str]
    text: str = ''

    def to_dict(self, number: int) -> dict:
        # correct_answer stays server-side
        return {'id': self.question_id, 'number': number, 'text': self.text, 'options': self.options}


class QuestionBank:
    """Reads questions from the ``question`` table."""

    def question_for(self, game_id: int, number: int) -> QuestionView:
        question = Question.query.filter_by(game_id=game_id, position=number).first()
        if question is None:
            raise NotFoundError('Question not found', game_id=game_id, question_number=number)
        return QuestionView(
            question_id=question.id,
            correct_answer=question.correct_answer,
            options={'A': question.option_a, 'B': question.option_b, 'C': question.option_c},
            text=question.text,
        )


class RoundEngine:
    def __init__(self, config, clock=time.time, events=None, questions=None):
        self.locks = RoundLocks()
        self.events = events if events is not None else EventLog()
        self.questions = questions if questions is not None else QuestionBank()
        self.scorer = FraudScorer.from_config(config)
        self.winners = WinnerSelector()
        self.capacity = RoundCapacityController(self.locks, self.events, self.winners)
        self.participants = ParticipantStateMachine(
            self.scorer,
            self.capacity,
            self.events,
            clock,
            warning_ratio=float(config.get('TIMEOUT_WARNING_RATIO', 0.8)),
        )

    @property
    def clock(self):
        return self.participants.clock

    @clock.setter
    def clock(self, value):
        self.participants.clock = value


__all__ = [
    'AnswerOutcome',
    'EventLog',
    'FraudScorer',
    'OutcomeKind',
    'QuestionBank',
    'QuestionView',
    'RoundEngine',
    'RoundLocks',
    'TimingTracker',
]
