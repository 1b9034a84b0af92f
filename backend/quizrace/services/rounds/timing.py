"""Split timer for a single participant.

Time is measured per question from the moment the question is shown until
the answer is recorded. Answers to free questions accumulate into the
pre-payment bucket, later answers into the post-payment bucket. The
payment pause never enters any per-question measurement: ``resume`` restarts
the clock for the current question.

The tracker is persisted between requests with ``to_dict``/``from_dict``.
Its clock defaults to ``time.time`` since requests for one participant may
be served by different processes; deadlines are always derived from server
timestamps, never from client-reported durations.
"""

import time
from dataclasses import dataclass, asdict
from typing import Callable, List, Optional

from quizrace.errors import InvalidStateError, QuestionTimeoutError, WrongAnswerError


@dataclass(frozen=True)
class AnswerRecord:
    question_number: int
    time_taken: float
    correct: bool


class TimingTracker:
    """Wall-clock timer; a monotonic clock is not comparable across the processes that serve one participant."""

    STATE_NOT_STARTED = 'not_started'
    STATE_RUNNING = 'running'
    STATE_PAUSED = 'paused'
    STATE_FINISHED = 'finished'
    STATE_STOPPED = 'stopped'

    def __init__(
        self,
        total_questions: int,
        free_questions: int,
        question_timeout: float,
        clock: Callable[[], float] = time.time,
        warning_ratio: float = 0.8,
    ):
        self.total_questions = total_questions
        self.free_questions = free_questions
        self.question_timeout = question_timeout
        self.clock = clock
        self.warning_ratio = warning_ratio

        self.state = self.STATE_NOT_STARTED
        self.started_at: Optional[float] = None
        self.question_started_at: Optional[float] = None
        self.paused_at: Optional[float] = None
        self.paused_duration = 0.0
        self.records: List[AnswerRecord] = []
        self.pre_payment_time = 0.0
        self.post_payment_time = 0.0

    @property
    def current_question(self) -> int:
        return len(self.records) + 1

    @property
    def is_finished(self) -> bool:
        return self.state == self.STATE_FINISHED

    def start(self) -> float:
        """Record T0 when question 1 is displayed."""
        if self.state != self.STATE_NOT_STARTED:
            raise InvalidStateError('Timing already started', state=self.state)
        now = self.clock()
        self.started_at = now
        self.question_started_at = now
        self.state = self.STATE_RUNNING
        return now

    def record_answer(self, question_number: int, answer: str, correct_answer: str) -> AnswerRecord:
        """Measure and record an answer for the current question.

        Raises QuestionTimeoutError or WrongAnswerError; both stop the tracker
        for good.
        """
        if self.state == self.STATE_PAUSED:
            raise InvalidStateError('Timing is paused until payment is confirmed')
        if self.state != self.STATE_RUNNING:
            raise InvalidStateError('Timing is not running', state=self.state)
        if question_number != self.current_question:
            raise InvalidStateError(
                'Answers must follow question order',
                expected=self.current_question,
                received=question_number,
            )

        now = self.clock()
        elapsed = now - self.question_started_at
        if elapsed > self.question_timeout:
            self.state = self.STATE_STOPPED
            raise QuestionTimeoutError(
                question_number=question_number,
                elapsed=round(elapsed, 6),
                limit=self.question_timeout,
            )
        if (answer or '').strip().upper() != (correct_answer or '').strip().upper():
            self.state = self.STATE_STOPPED
            raise WrongAnswerError(question_number=question_number)

        record = AnswerRecord(question_number=question_number, time_taken=elapsed, correct=True)
        self.records.append(record)
        self.question_started_at = now
        if question_number <= self.free_questions:
            self.pre_payment_time += elapsed
        else:
            self.post_payment_time += elapsed
        if len(self.records) >= self.total_questions:
            self.state = self.STATE_FINISHED
        return record

    def pause(self) -> float:
        if self.state != self.STATE_RUNNING:
            raise InvalidStateError('Only running timing can be paused', state=self.state)
        self.paused_at = self.clock()
        self.state = self.STATE_PAUSED
        return self.paused_at

    def resume(self) -> float:
        if self.state != self.STATE_PAUSED or self.paused_at is None:
            raise InvalidStateError('resume() without a matching pause()', state=self.state)
        now = self.clock()
        self.paused_duration += now - self.paused_at
        self.paused_at = None
        self.question_started_at = now
        self.state = self.STATE_RUNNING
        return now

    def stop(self) -> None:
        self.state = self.STATE_STOPPED

    def total_time(self) -> float:
        return sum(r.time_taken for r in self.records)

    def question_times(self) -> List[float]:
        return [r.time_taken for r in self.records]

    def current_elapsed(self) -> Optional[float]:
        if self.state != self.STATE_RUNNING:
            return None
        return self.clock() - self.question_started_at

    def is_timed_out(self) -> bool:
        elapsed = self.current_elapsed()
        return elapsed is not None and elapsed > self.question_timeout

    def status(self) -> dict:
        status = {
            'state': self.state,
            'current_question': self.current_question,
            'questions_completed': len(self.records),
            'question_times': self.question_times(),
            'pre_payment_time': self.pre_payment_time,
            'post_payment_time': self.post_payment_time,
            'paused_duration': self.paused_duration,
        }
        elapsed = self.current_elapsed()
        if elapsed is not None:
            status['current_question_elapsed'] = elapsed
            status['time_remaining'] = max(0.0, self.question_timeout - elapsed)
            status['is_timeout_warning'] = elapsed > self.question_timeout * self.warning_ratio
        return status

    def to_dict(self) -> dict:
        return {
            'state': self.state,
            'started_at': self.started_at,
            'question_started_at': self.question_started_at,
            'paused_at': self.paused_at,
            'paused_duration': self.paused_duration,
            'records': [asdict(r) for r in self.records],
            'pre_payment_time': self.pre_payment_time,
            'post_payment_time': self.post_payment_time,
        }

    @classmethod
    def from_dict(cls, data, total_questions, free_questions, question_timeout,
                  clock=time.time, warning_ratio=0.8):
        tracker = cls(total_questions, free_questions, question_timeout, clock=clock, warning_ratio=warning_ratio)
        if not data:
            return tracker
        tracker.state = data.get('state', cls.STATE_NOT_STARTED)
        tracker.started_at = data.get('started_at')
        tracker.question_started_at = data.get('question_started_at')
        tracker.paused_at = data.get('paused_at')
        tracker.paused_duration = data.get('paused_duration', 0.0)
        tracker.records = [AnswerRecord(**r) for r in data.get('records', [])]
        tracker.pre_payment_time = data.get('pre_payment_time', 0.0)
        tracker.post_payment_time = data.get('post_payment_time', 0.0)
        return tracker
