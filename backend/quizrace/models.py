from quizrace import db
from quizrace.errors import ValidationError
from datetime import datetime, timezone
import json


def utcnow():
    """Naive UTC timestamp; every DateTime column stores UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    slug = db.Column(db.String(128), unique=True, index=True)
    max_players = db.Column(db.Integer, nullable=False)
    total_questions = db.Column(db.Integer, nullable=False)
    free_questions = db.Column(db.Integer, nullable=False)  # answered before payment
    question_timeout_seconds = db.Column(db.Float, nullable=False, default=10.0)
    auto_restart = db.Column(db.Boolean, nullable=False, default=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    rounds = db.relationship('Round', back_populates='game', lazy='dynamic')

    def __init__(self, **kwargs):
        kwargs.setdefault('question_timeout_seconds', 10.0)
        kwargs.setdefault('auto_restart', True)
        super(Game, self).__init__(**kwargs)
        if not self.slug and self.name:
            self.slug = '-'.join(self.name.lower().split())
        if not self.max_players or self.max_players < 1:
            raise ValidationError('max_players must be at least 1')
        if not self.total_questions or self.total_questions < 2:
            raise ValidationError('total_questions must be at least 2')
        if self.free_questions is None or not 0 < self.free_questions < self.total_questions:
            raise ValidationError('free_questions must be between 1 and total_questions - 1')
        if self.question_timeout_seconds <= 0:
            raise ValidationError('question_timeout_seconds must be positive')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'slug': self.slug,
            'max_players': self.max_players,
            'total_questions': self.total_questions,
            'free_questions': self.free_questions,
            'question_timeout_seconds': self.question_timeout_seconds,
            'auto_restart': self.auto_restart,
            'is_active': self.is_active,
        }


class Question(db.Model):
    """Question bank row. Read-only to the round engine."""
    __tablename__ = 'question'
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)
    text = db.Column(db.Text, nullable=False)
    option_a = db.Column(db.String(255), nullable=False)
    option_b = db.Column(db.String(255), nullable=False)
    option_c = db.Column(db.String(255), nullable=False)
    correct_answer = db.Column(db.String(1), nullable=False)

    __table_args__ = (
        db.UniqueConstraint('game_id', 'position', name='uq_question_game_position'),
    )

    def to_dict(self):
        # Never expose correct_answer to clients
        return {
            'id': self.id,
            'position': self.position,
            'text': self.text,
            'options': {'A': self.option_a, 'B': self.option_b, 'C': self.option_c},
        }


class Round(db.Model):
    __tablename__ = 'game_round'

    STATUS_ACTIVE = 'active'
    STATUS_FULL = 'full'
    STATUS_COMPLETED = 'completed'
    STATUS_CANCELLED = 'cancelled'
    STATUSES = (STATUS_ACTIVE, STATUS_FULL, STATUS_COMPLETED, STATUS_CANCELLED)

    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False, index=True)
    round_number = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=STATUS_ACTIVE, index=True)
    participant_count = db.Column(db.Integer, nullable=False, default=0)
    paid_participant_count = db.Column(db.Integer, nullable=False, default=0)
    started_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    full_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    winner_participant_id = db.Column(
        db.Integer,
        db.ForeignKey('participant.id', name='fk_round_winner_participant_id', use_alter=True),
        nullable=True,
    )
    winner_selected_at = db.Column(db.DateTime, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)
    game = db.relationship('Game', back_populates='rounds')

    __table_args__ = (
        db.UniqueConstraint('game_id', 'round_number', name='uq_round_game_number'),
        db.CheckConstraint('paid_participant_count >= 0', name='ck_round_paid_non_negative'),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault('status', self.STATUS_ACTIVE)
        kwargs.setdefault('participant_count', 0)
        kwargs.setdefault('paid_participant_count', 0)
        super(Round, self).__init__(**kwargs)
        if self.status not in self.STATUSES:
            raise ValidationError(f'Invalid round status {self.status!r}')

    @property
    def is_open(self):
        return self.status == self.STATUS_ACTIVE

    def to_dict(self):
        return {
            'id': self.id,
            'game_id': self.game_id,
            'round_number': self.round_number,
            'status': self.status,
            'participant_count': self.participant_count,
            'paid_participant_count': self.paid_participant_count,
            'max_players': self.game.max_players if self.game else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'winner_participant_id': self.winner_participant_id,
        }


class Participant(db.Model):
    __tablename__ = 'participant'

    PAYMENT_PENDING = 'pending'
    PAYMENT_PAID = 'paid'
    PAYMENT_FAILED = 'failed'
    PAYMENT_CANCELLED = 'cancelled'
    PAYMENT_REFUNDED = 'refunded'
    PAYMENT_STATUSES = (PAYMENT_PENDING, PAYMENT_PAID, PAYMENT_FAILED, PAYMENT_CANCELLED, PAYMENT_REFUNDED)

    GAME_NOT_STARTED = 'not_started'
    GAME_IN_PROGRESS = 'in_progress'
    GAME_COMPLETED = 'completed'
    GAME_FAILED = 'failed'
    GAME_ABANDONED = 'abandoned'
    GAME_STATUSES = (GAME_NOT_STARTED, GAME_IN_PROGRESS, GAME_COMPLETED, GAME_FAILED, GAME_ABANDONED)
    TERMINAL_GAME_STATUSES = (GAME_COMPLETED, GAME_FAILED, GAME_ABANDONED)

    id = db.Column(db.Integer, primary_key=True)
    round_id = db.Column(db.Integer, db.ForeignKey('game_round.id'), nullable=False, index=True)
    email = db.Column(db.String(255), nullable=False, index=True)
    # Continuity only: every request for this participant must present the same pair
    session_id = db.Column(db.String(128), nullable=False)
    device_fingerprint = db.Column(db.String(128), nullable=False, index=True)
    ip_address = db.Column(db.String(64), nullable=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_PENDING)
    game_status = db.Column(db.String(16), nullable=False, default=GAME_NOT_STARTED)
    current_question = db.Column(db.Integer, nullable=False, default=0)
    pre_payment_time = db.Column(db.Float, nullable=False, default=0.0)
    post_payment_time = db.Column(db.Float, nullable=False, default=0.0)
    total_time = db.Column(db.Float, nullable=True)
    is_winner = db.Column(db.Boolean, nullable=False, default=False)
    is_fraudulent = db.Column(db.Boolean, nullable=False, default=False)
    fraud_score = db.Column(db.Float, nullable=False, default=0.0)
    fraud_flags = db.Column(db.Text, nullable=True)  # JSON-encoded list of signal names
    answers = db.Column(db.Text, nullable=True)  # JSON-encoded list of answer records
    timing_state = db.Column(db.Text, nullable=True)  # JSON-encoded TimingTracker
    failure_reason = db.Column(db.String(64), nullable=True)
    admitted_at = db.Column(db.DateTime, nullable=True)
    started_at = db.Column(db.DateTime, nullable=True)
    last_activity_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    round = db.relationship('Round', foreign_keys=[round_id], backref=db.backref('participants', lazy='dynamic'))

    __table_args__ = (
        db.UniqueConstraint('round_id', 'email', name='uq_participant_round_email'),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault('payment_status', self.PAYMENT_PENDING)
        kwargs.setdefault('game_status', self.GAME_NOT_STARTED)
        kwargs.setdefault('current_question', 0)
        kwargs.setdefault('fraud_score', 0.0)
        super(Participant, self).__init__(**kwargs)
        if self.payment_status not in self.PAYMENT_STATUSES:
            raise ValidationError(f'Invalid payment status {self.payment_status!r}')
        if self.game_status not in self.GAME_STATUSES:
            raise ValidationError(f'Invalid game status {self.game_status!r}')

    @property
    def flags(self):
        return json.loads(self.fraud_flags) if self.fraud_flags else []

    @property
    def answer_records(self):
        return json.loads(self.answers) if self.answers else []

    @property
    def is_admitted(self):
        return self.admitted_at is not None

    @property
    def is_finished(self):
        return self.game_status in self.TERMINAL_GAME_STATUSES

    def to_dict(self):
        return {
            'id': self.id,
            'round_id': self.round_id,
            'payment_status': self.payment_status,
            'game_status': self.game_status,
            'current_question': self.current_question,
            'pre_payment_time': self.pre_payment_time,
            'post_payment_time': self.post_payment_time,
            'total_time': self.total_time,
            'is_winner': self.is_winner,
            'is_fraudulent': self.is_fraudulent,
            'fraud_score': self.fraud_score,
            'failure_reason': self.failure_reason,
            'answers': self.answer_records,
        }
